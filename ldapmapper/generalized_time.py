"""
RFC 4517 generalized time parsing and formatting.

The syntax is::

    YYYYMMDD HH [MM [SS]] [(.|,) fraction] (Z | (+|-)HH[MM])

The fraction, when present, belongs to whichever of hour, minute or second
is the last field given.  A fraction directly after the day belongs to an
implied hour ``00``, so ``20240115.5Z`` is 00:30.  Every string we write is
UTC.
"""

import datetime
import re

import pytz

from .exceptions import GeneralizedTimeError

#: Output formats, from the coarsest to the finest.
FORMAT_YMDH = "%Y%m%d%H"
FORMAT_YMDHM = "%Y%m%d%H%M"
FORMAT_YMDHMS = "%Y%m%d%H%M%S"

_DIGITS = re.compile(r"\d+")
_TIMEZONE = re.compile(r"(?:Z|[+-](?:[01]\d|2[0-3])(?:[0-5]\d)?)")

#: The length of the unit each fraction position applies to.
_UNITS = {
    10: datetime.timedelta(hours=1),
    12: datetime.timedelta(minutes=1),
    14: datetime.timedelta(seconds=1),
}


def _invalid(value: str, reason: str) -> GeneralizedTimeError:
    return GeneralizedTimeError(f"Invalid generalized time '{value}': {reason}")


def _two_digits(value: str, pos: int, name: str, upper: int) -> int:
    chunk = value[pos : pos + 2]
    if len(chunk) != 2 or not chunk.isdigit():  # noqa: PLR2004
        raise _invalid(value, f"{name} must be two digits")
    number = int(chunk)
    if number > upper:
        raise _invalid(value, f"{name} out of range")
    return number


def parse_generalized_time(value: str) -> datetime.datetime:  # noqa: PLR0912
    """
    Parse a generalized time string into an aware UTC datetime.

    Args:
        value: the string to parse

    Raises:
        GeneralizedTimeError: ``value`` is not valid generalized time

    Returns:
        The point in time, with ``tzinfo=pytz.utc``.

    """
    if len(value) < 8 or not value[:8].isdigit():  # noqa: PLR2004
        raise _invalid(value, "expected YYYYMMDD")
    year, month, day = int(value[:4]), int(value[4:6]), int(value[6:8])
    hour = minute = second = 0
    pos = 8
    fraction_pos: int | None = None

    if pos < len(value) and value[pos].isdigit():
        hour = _two_digits(value, pos, "hour", 23)
        pos += 2
        for name, upper in (("minute", 59), ("second", 59)):
            if pos < len(value) and value[pos].isdigit():
                number = _two_digits(value, pos, name, upper)
                if name == "minute":
                    minute = number
                else:
                    second = number
                pos += 2
            else:
                break
    if pos < len(value) and value[pos] in ".,":
        # A fraction straight after the date applies to hour 00
        fraction_pos = max(pos, 10)
        match = _DIGITS.match(value, pos + 1)
        if not match:
            raise _invalid(value, "fraction needs at least one digit")
        fraction = float("0." + match.group())
        pos = match.end()
    elif pos == 8:  # noqa: PLR2004
        raise _invalid(value, "hour is required")

    match = _TIMEZONE.fullmatch(value, pos)
    if not match:
        if pos >= len(value):
            raise _invalid(value, "time zone is required")
        raise _invalid(value, "malformed time zone")
    tz = match.group()

    try:
        dt = datetime.datetime(year, month, day, hour, minute, second)  # noqa: DTZ001
    except ValueError as e:
        raise _invalid(value, str(e)) from e
    if fraction_pos is not None:
        dt += _UNITS[fraction_pos] * fraction
    if tz != "Z":
        offset = datetime.timedelta(hours=int(tz[1:3]), minutes=int(tz[3:5] or 0))
        dt = dt - offset if tz[0] == "+" else dt + offset
    return pytz.utc.localize(dt)


def format_generalized_time(
    value: datetime.datetime,
    fmt: str = FORMAT_YMDHMS,
    fractional: bool = False,
) -> str:
    """
    Format ``value`` as generalized time in UTC.

    Naive datetimes are taken to be UTC already.

    Args:
        value: the datetime to format

    Keyword Args:
        fmt: one of :py:data:`FORMAT_YMDH`, :py:data:`FORMAT_YMDHM` or
            :py:data:`FORMAT_YMDHMS`
        fractional: if ``True``, append milliseconds; otherwise the value is
            truncated to the precision of ``fmt``

    Returns:
        The formatted string, always ending with ``Z``.

    """
    if value.tzinfo is None:
        value = pytz.utc.localize(value)
    value = value.astimezone(pytz.utc)
    out = value.strftime(fmt)
    if fractional:
        out += f".{value.microsecond // 1000:03d}"
    return out + "Z"
