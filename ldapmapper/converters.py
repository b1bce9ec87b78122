"""
Generic string converters.

Types without a dedicated field class can still be stored through
:py:class:`~ldapmapper.fields.ConvertedField` as long as a converter has been
registered for them here.  A converter is a pair of callables turning a value
into a ``str`` and back.
"""

import decimal
import ipaddress
import uuid
from collections.abc import Callable
from pathlib import PurePosixPath
from typing import Any, NamedTuple


class Converter(NamedTuple):
    to_string: Callable[[Any], str]
    from_string: Callable[[str], Any]


_registry: dict[type, Converter] = {}


def register_converter(
    python_type: type,
    to_string: Callable[[Any], str] = str,
    from_string: Callable[[str], Any] | None = None,
) -> None:
    """
    Associate ``python_type`` with a string converter.

    Args:
        python_type: the type to register

    Keyword Args:
        to_string: turns a value into its stored form; defaults to ``str``
        from_string: rebuilds a value from its stored form; defaults to
            calling ``python_type`` on the string

    """
    _registry[python_type] = Converter(to_string, from_string or python_type)


def get_converter(python_type: type) -> Converter | None:
    """
    Return the converter for ``python_type`` or its nearest registered
    superclass, or ``None`` if there isn't one.
    """
    for klass in python_type.__mro__:
        if klass in _registry:
            return _registry[klass]
    return None


register_converter(uuid.UUID)
register_converter(decimal.Decimal)
register_converter(float, repr)
register_converter(PurePosixPath)
register_converter(ipaddress.IPv4Address)
register_converter(ipaddress.IPv6Address)
