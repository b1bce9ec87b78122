"""
Scalar and container field codecs.

Each field converts between an in-memory Python value and the list of byte
strings python-ldap stores for one attribute.  Fields encode single elements
with :py:meth:`Field.encode_value` / :py:meth:`Field.decode_value`; the
``to_db_value`` / ``from_db_value`` pair wraps those for the whole attribute,
handling absence and the optional empty-value sentinel.

Relationship and embedded fields live in :py:mod:`ldapmapper.related`.
"""

import collections.abc
import datetime
from collections.abc import Callable, Iterable, Sequence
from typing import TYPE_CHECKING, Any, cast

import pytz
from django.core import exceptions
from django.core import validators as dj_validators
from django.db.models.fields import NOT_PROVIDED
from django.utils.dateparse import parse_datetime
from django.utils.functional import cached_property
from django.utils.translation import gettext_lazy as _

from .converters import Converter, get_converter
from .exceptions import (
    ConfigurationError,
    DecodeError,
    DuplicateOrderingIndex,
    GeneralizedTimeError,
    MissingOrderingIndex,
    UnsupportedFieldType,
)
from .generalized_time import (
    FORMAT_YMDHMS,
    format_generalized_time,
    parse_generalized_time,
)

if TYPE_CHECKING:
    from .models import Model


#: Type alias for field validators
Validator = Callable[[Any], None]

#: The container kinds a multi-valued field can declare.
CONTAINER_KINDS: dict[str, Callable[[Iterable[Any]], Any]] = {
    "list": list,
    "set": set,
}


def make_container(kind: str, items: Iterable[Any]) -> Any:
    """
    Build the container declared by a multi-valued field.

    Args:
        kind: ``"list"`` (ordered) or ``"set"`` (unordered)
        items: the elements

    Raises:
        ConfigurationError: ``kind`` is not a known container kind

    Returns:
        A new container holding ``items``.

    """
    try:
        factory = CONTAINER_KINDS[kind]
    except KeyError as e:
        msg = f"Unknown container kind '{kind}'; use one of {sorted(CONTAINER_KINDS)}"
        raise ConfigurationError(msg) from e
    return factory(items)


def encode_ordered(values: Sequence[bytes]) -> list[bytes]:
    """
    Prefix each value with its position, as ``{<index>}<value>``.
    """
    return [f"{{{i}}}".encode() + value for i, value in enumerate(values)]


def decode_ordered(values: Sequence[bytes]) -> list[bytes]:
    """
    Strip the ``{<index>}`` prefixes from ``values`` and return them sorted by
    index.

    Raises:
        MissingOrderingIndex: a value has no (parseable) prefix
        DuplicateOrderingIndex: two values share an index

    """
    indexed: dict[int, bytes] = {}
    for value in values:
        end = value.find(b"}")
        if not value.startswith(b"{") or end == -1:
            msg = f"missing ordering index at value {value!r}"
            raise MissingOrderingIndex(msg)
        try:
            index = int(value[1:end])
        except ValueError as e:
            msg = f"missing ordering index at value {value!r}: can't parse index"
            raise MissingOrderingIndex(msg) from e
        if index in indexed:
            msg = f"duplicate ordering index {index} at value {value!r}"
            raise DuplicateOrderingIndex(msg)
        indexed[index] = value[end + 1 :]
    return [indexed[i] for i in sorted(indexed)]


class Field:
    """
    Base field class for ldapmapper models.

    Keyword Args:
        verbose_name: The human-readable name of the field.
        name: The name of the field
        primary_key: If True, this field is the primary key for the model and
            supplies the RDN of its entries.
        max_length: The maximum length of the field.
        blank: If True, the field is allowed to be blank.
        null: If True, the field is allowed to be empty in the LDAP server.
        default: The default value for the field.
        editable: If False, the field is never written back to LDAP.
        choices: A list of choices for the field.
        help_text: Help text for the field.
        validators: A list of validators for the field.
        error_messages: A dictionary of error messages for the field.
        db_column: The attribute name in the LDAP schema.
        empty_value: A sentinel stored instead of "no value", for attributes
            the schema requires to be present.

    """

    #: Are empty strings allowed to be stored in this field?
    empty_strings_allowed: bool = True
    #: A list of values that should be considered as empty.
    empty_values: list[Any] = list(dj_validators.EMPTY_VALUES)  # noqa: RUF012
    #: Counter for field creation order, used for sorting fields.
    creation_counter: int = 0
    #: Default set of validators for the field.
    default_validators: list[Validator] = []  # noqa: RUF012
    #: Default error messages for the field.
    default_error_messages: dict[str, str] = {  # type: ignore[assignment]  # noqa: RUF012
        "invalid_choice": _("Value %(value)r is not a valid choice."),  # type: ignore[dict-item]
        "null": _("This field cannot be null."),  # type: ignore[dict-item]
        "blank": _("This field cannot be blank."),  # type: ignore[dict-item]
    }

    #: Does this field point at other model instances?
    is_relation: bool = False
    #: Is this field a nested value type?
    embedded: bool = False
    #: Does this field hold a container of values?
    many: bool = False

    def __init__(  # noqa: PLR0913
        self,
        verbose_name: str | None = None,
        name: str | None = None,
        primary_key: bool = False,
        max_length: int | None = None,
        blank: bool = False,
        null: bool = False,
        default: Any = NOT_PROVIDED,
        editable: bool = True,
        choices: list[Any] | None = None,
        help_text: str = "",
        validators: Sequence[Validator] = (),
        error_messages: dict[str, str] | None = None,
        db_column: str | None = None,
        empty_value: str | None = None,
    ) -> None:
        self.name = name
        self.verbose_name = verbose_name
        self.primary_key = primary_key
        self.max_length = max_length
        self.blank, self.null = blank, null
        self.default = default
        self.editable = editable
        if isinstance(choices, collections.abc.Iterator):
            choices = list(choices)
        self.choices: list[Any] = choices or []
        self.help_text = help_text
        self.db_column = db_column
        self.empty_value = empty_value

        self.model: type[Model] | None = None

        self.creation_counter = Field.creation_counter
        Field.creation_counter += 1

        self._validators = list(validators)

        messages: dict[str, str] = {}
        for c in reversed(self.__class__.__mro__):
            messages.update(getattr(c, "default_error_messages", {}))
        messages.update(error_messages or {})
        self.error_messages = messages

    def __repr__(self) -> str:
        path = f"{self.__class__.__module__}.{self.__class__.__qualname__}"
        name = getattr(self, "name", None)
        if name is not None:
            return f"<{path}: {name}>"
        return f"<{path}>"

    def __lt__(self, other: "Field") -> bool:
        if isinstance(other, Field):
            return self.creation_counter < other.creation_counter
        return NotImplemented

    @property
    def ldap_attribute(self) -> str:
        """
        Get the LDAP attribute name for this field.

        Returns:
            The LDAP attribute name (db_column if set, otherwise field name).

        """
        return cast("str", self.db_column or self.name)

    def has_default(self) -> bool:
        return self.default is not NOT_PROVIDED

    def get_default(self) -> Any:
        """
        Get the default value for this field.

        Returns:
            The default value for the field.

        """
        if self.has_default():
            if callable(self.default):
                return self.default()
            return self.default
        return None

    @cached_property
    def validators(self) -> list[Validator]:
        return [*self.default_validators, *self._validators]

    # -----------------------
    # Codec
    # -----------------------

    def encode_value(self, value: Any) -> bytes:
        """
        Encode one element for storage.  Subclasses override this.

        Args:
            value: the Python value

        Returns:
            The stored bytes.

        """
        if isinstance(value, bytes):
            return value
        return str(value).encode("utf-8")

    def decode_value(self, value: bytes) -> Any:
        """
        Decode one stored element.  Subclasses override this.

        Args:
            value: the stored bytes

        Returns:
            The Python value.

        """
        return value.decode("utf-8")

    def is_empty(self, value: Any) -> bool:
        return value is None or (
            not isinstance(value, bool) and value in self.empty_values
        )

    def strip_empty_value(self, value: list[bytes]) -> list[bytes]:
        """
        Remove the empty-value sentinel from the stored values of our
        attribute.
        """
        if self.empty_value is None:
            return list(value)
        sentinel = self.empty_value.encode("utf-8")
        return [v for v in value if v != sentinel]

    def with_empty_value(self, value: list[bytes]) -> list[bytes]:
        """
        Return ``value``, or our empty-value sentinel if ``value`` is empty
        and we declare one.
        """
        if not value and self.empty_value is not None:
            return [self.empty_value.encode("utf-8")]
        return value

    def from_db_value(self, value: list[bytes]) -> Any:
        """
        Convert the stored values of our attribute to our Python value.

        Args:
            value: A list of byte strings from LDAP.

        Returns:
            The decoded value, or ``None`` if the attribute holds nothing but
            the empty-value sentinel.

        """
        values = self.strip_empty_value(value)
        if not values:
            return None
        return self.decode_value(values[0])

    def to_db_value(self, value: Any) -> dict[str, list[bytes]]:
        """
        Convert a Python value to LDAP format.

        Args:
            value: The Python value to convert.

        Returns:
            A dictionary mapping our LDAP attribute name to a list of bytes.
            The list is empty when the attribute should not exist.

        """
        items = [] if self.is_empty(value) else [self.encode_value(value)]
        return {self.ldap_attribute: self.with_empty_value(items)}

    # -----------------------
    # Validation
    # -----------------------

    def to_python(self, value: Any) -> Any:
        return value

    def run_validators(self, value: Any) -> None:
        """
        Run all validators on the given value.

        Args:
            value: The value to validate.

        Raises:
            ValidationError: If any validator fails.

        """
        if self.is_empty(value):
            return
        errors = []
        for v in self.validators:
            try:
                v(value)
            except exceptions.ValidationError as e:  # noqa: PERF203
                if hasattr(e, "code") and e.code in self.error_messages:
                    e.message = self.error_messages[e.code]
                errors.extend(e.error_list)
        if errors:
            raise exceptions.ValidationError(errors)

    def validate(self, value: Any, model_instance: "Model") -> None:  # noqa: ARG002
        """
        Validate the value and raise ValidationError if necessary.

        Raises:
            ValidationError: If validation fails.

        """
        if not self.editable:
            return
        if self.choices and not self.is_empty(value):
            if value not in [key for key, _label in self.choices]:
                raise exceptions.ValidationError(
                    self.error_messages["invalid_choice"],
                    code="invalid_choice",
                    params={"value": value},
                )
        if value is None and not self.null:
            raise exceptions.ValidationError(self.error_messages["null"], code="null")
        if not self.blank and self.is_empty(value):
            raise exceptions.ValidationError(self.error_messages["blank"], code="blank")

    def clean(self, value: Any, model_instance: "Model") -> Any:
        """
        Convert the value's type and run validation.

        Returns:
            The cleaned value.

        Raises:
            ValidationError: If validation fails.

        """
        value = self.to_python(value)
        self.validate(value, model_instance)
        self.run_validators(value)
        return value

    # -----------------------
    # Model plumbing
    # -----------------------

    def set_attributes_from_name(self, name: str) -> None:
        self.name = self.name or name
        self.attname = self.name
        if self.verbose_name is None and self.name:
            self.verbose_name = self.name.replace("_", " ")

    def value_from_object(self, obj: "Model") -> Any:
        return getattr(obj, cast("str", self.name))

    def contribute_to_class(self, cls, name: str) -> None:
        """
        Register the field with the model class it belongs to.

        Args:
            cls: The model class to register with.
            name: The name of the field.

        """
        self.set_attributes_from_name(name)
        self.model = cls
        cls._meta.add_field(self)


class CharField(Field):
    """
    A field for storing character strings.
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        if self.max_length is not None:
            self.validators.append(dj_validators.MaxLengthValidator(self.max_length))

    def to_python(self, value: Any) -> str | None:
        if isinstance(value, str) or value is None:
            return value
        return str(value)


class IntegerField(Field):
    """
    A field for storing integer values as their decimal string.
    """

    empty_strings_allowed: bool = False
    default_error_messages: dict[str, str] = {  # noqa: RUF012
        "invalid": _("'%(value)s' value must be an integer."),  # type: ignore[dict-item]
    }

    def encode_value(self, value: int) -> bytes:
        return str(int(value)).encode("utf-8")

    def decode_value(self, value: bytes) -> int:
        try:
            return int(value)
        except ValueError as e:
            msg = f'Field "{self.name}" expected an integer, got {value!r}'
            raise DecodeError(msg) from e

    def to_python(self, value: Any) -> int | None:
        if value is None:
            return value
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise exceptions.ValidationError(
                self.error_messages["invalid"],
                code="invalid",
                params={"value": value},
            ) from e


class BooleanField(Field):
    """
    A boolean field which stores data internally as bool() but stores the
    strings ``TRUE`` and ``FALSE`` in LDAP, as the Boolean syntax requires.
    Decoding ignores case.
    """

    empty_strings_allowed: bool = False
    default_error_messages: dict[str, str] = {  # type: ignore[assignment]  # noqa: RUF012
        "invalid": _("'%(value)s' value must be either True or False."),  # type: ignore[dict-item]
    }

    #: The string value used to represent True in LDAP.
    LDAP_TRUE: str = "TRUE"
    #: The string value used to represent False in LDAP.
    LDAP_FALSE: str = "FALSE"

    def encode_value(self, value: bool) -> bytes:
        return (self.LDAP_TRUE if value else self.LDAP_FALSE).encode("utf-8")

    def decode_value(self, value: bytes) -> bool:
        text = value.decode("utf-8").lower()
        if text == self.LDAP_TRUE.lower():
            return True
        if text == self.LDAP_FALSE.lower():
            return False
        msg = f'Field "{self.name}" (BooleanField) got unexpected data from LDAP: {value!r}'
        raise DecodeError(msg)

    def to_python(self, value: None | bool | str) -> bool | None:
        if self.null and self.is_empty(value):
            return None
        if value in (True, False):
            return bool(value)
        if value in ("t", "True", "TRUE", "1"):
            return True
        if value in ("f", "False", "FALSE", "0"):
            return False
        raise exceptions.ValidationError(
            self.error_messages["invalid"],
            code="invalid",
            params={"value": value},
        )


class AllCapsBooleanField(BooleanField):
    """
    Kept for models written against django-ldaporm, where
    :py:class:`BooleanField` wrote lower case.  It now behaves exactly like
    :py:class:`BooleanField`.
    """


class DateTimeField(Field):
    """
    A field for storing points in time as generalized time.

    Values are always written in UTC.  They are truncated to whole seconds
    unless ``fractional=True``, which keeps milliseconds.  Reading accepts
    every generalized time variant and returns an aware UTC datetime.

    Keyword Args:
        fractional: write milliseconds
        time_format: the strftime pattern for the date and time part

    """

    empty_strings_allowed: bool = False
    default_error_messages: dict[str, str] = {  # type: ignore[assignment]  # noqa: RUF012
        "invalid": _(
            "'%(value)s' value has an invalid format. It must be in "
            "YYYY-MM-DD HH:MM[:ss[.uuuuuu]][TZ] format."
        ),  # type: ignore[dict-item]
    }

    def __init__(
        self,
        *args,
        fractional: bool = False,
        time_format: str = FORMAT_YMDHMS,
        **kwargs,
    ) -> None:
        self.fractional = fractional
        self.time_format = time_format
        super().__init__(*args, **kwargs)

    def encode_value(self, value: datetime.datetime) -> bytes:
        return format_generalized_time(
            value, fmt=self.time_format, fractional=self.fractional
        ).encode("utf-8")

    def decode_value(self, value: bytes) -> datetime.datetime:
        return parse_generalized_time(value.decode("utf-8"))

    def to_python(self, value: Any) -> datetime.datetime | None:
        if value is None or isinstance(value, datetime.datetime):
            return value
        if isinstance(value, datetime.date):
            return pytz.utc.localize(
                datetime.datetime(value.year, value.month, value.day)  # noqa: DTZ001
            )
        parsed = parse_datetime(value)
        if parsed is None:
            try:
                return parse_generalized_time(value)
            except GeneralizedTimeError as e:
                raise exceptions.ValidationError(
                    self.error_messages["invalid"],
                    code="invalid",
                    params={"value": value},
                ) from e
        if parsed.tzinfo is None:
            parsed = pytz.utc.localize(parsed)
        return parsed


class BinaryField(Field):
    """
    A field for storing binary data, such as photos or certificates.

    By default the whole value is stored as one raw attribute value.  With
    ``as_string_list=True`` each byte is stored as its own decimal string
    value instead (honouring ``ordered``), for schemas that only accept
    strings.

    Keyword Args:
        as_string_list: store one string value per byte
        ordered: prefix each per-byte value with its ``{index}``

    """

    empty_strings_allowed: bool = False

    def __init__(
        self, *args, as_string_list: bool = False, ordered: bool = False, **kwargs
    ) -> None:
        self.as_string_list = as_string_list
        self.ordered = ordered
        super().__init__(*args, **kwargs)

    def to_python(self, value: bytes | bytearray | None) -> bytes | None:
        if isinstance(value, bytearray):
            return bytes(value)
        return value

    def from_db_value(self, value: list[bytes]) -> bytes | None:
        values = self.strip_empty_value(value)
        if not values:
            return None
        if not self.as_string_list:
            return values[0]
        if self.ordered:
            values = decode_ordered(values)
        try:
            return bytes(int(v) for v in values)
        except ValueError as e:
            msg = f'Field "{self.name}" got a non-byte value from LDAP'
            raise DecodeError(msg) from e

    def to_db_value(self, value: bytes | bytearray | None) -> dict[str, list[bytes]]:
        items: list[bytes] = []
        if value:
            if self.as_string_list:
                items = [str(b).encode("utf-8") for b in bytes(value)]
                if self.ordered:
                    items = encode_ordered(items)
            else:
                items = [bytes(value)]
        return {self.ldap_attribute: self.with_empty_value(items)}


class ConvertedField(Field):
    """
    A field for any type with a registered string converter (see
    :py:mod:`ldapmapper.converters`).

    Args:
        python_type: the type of the values this field holds

    Raises:
        UnsupportedFieldType: no converter is registered for ``python_type``

    """

    def __init__(self, python_type: type, *args, **kwargs) -> None:
        converter = get_converter(python_type)
        if converter is None:
            msg = f"No converter registered for type {python_type.__name__}"
            raise UnsupportedFieldType(msg)
        self.python_type = python_type
        self.converter: Converter = converter
        super().__init__(*args, **kwargs)

    def encode_value(self, value: Any) -> bytes:
        return self.converter.to_string(value).encode("utf-8")

    def decode_value(self, value: bytes) -> Any:
        try:
            return self.converter.from_string(value.decode("utf-8"))
        except ValueError as e:
            msg = f'Field "{self.name}" could not convert {value!r} to {self.python_type.__name__}'
            raise DecodeError(msg) from e

    def to_python(self, value: Any) -> Any:
        if value is None or isinstance(value, self.python_type):
            return value
        return self.converter.from_string(str(value))


class ListField(Field):
    """
    A multi-valued attribute, one stored value per element.

    Args:
        base_field: the field that encodes and decodes each element

    Keyword Args:
        container: ``"list"`` or ``"set"``
        ordered: prefix each stored value with ``{<index>}`` so that order
            survives the round trip through the directory

    """

    many: bool = True

    def __init__(
        self,
        base_field: Field | None = None,
        *args,
        container: str = "list",
        ordered: bool = False,
        **kwargs,
    ) -> None:
        if container not in CONTAINER_KINDS:
            msg = f"Unknown container kind '{container}'"
            raise ConfigurationError(msg)
        self.base_field = base_field or CharField()
        self.container = container
        self.ordered = ordered
        super().__init__(*args, **kwargs)

    def get_default(self) -> Any:
        if self.has_default():
            return super().get_default()
        return make_container(self.container, [])

    def from_db_value(self, value: list[bytes]) -> Any:
        values = self.strip_empty_value(value)
        if self.ordered:
            values = decode_ordered(values)
        return make_container(
            self.container, (self.base_field.decode_value(v) for v in values)
        )

    def to_db_value(self, value: Any) -> dict[str, list[bytes]]:
        items: list[bytes] = []
        if value:
            if isinstance(value, (str, bytes)):
                value = [value]
            items = [self.base_field.encode_value(v) for v in value if v is not None]
            if self.ordered:
                items = encode_ordered(items)
        return {self.ldap_attribute: self.with_empty_value(items)}

    def to_python(self, value: Any) -> Any:
        if not value:
            return make_container(self.container, [])
        if isinstance(value, str):
            value = value.splitlines()
        return make_container(
            self.container, (self.base_field.to_python(v) for v in value)
        )


class CharListField(ListField):
    """
    A list of strings.
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(CharField(), *args, **kwargs)


class IntegerListField(ListField):
    """
    A list of integers.
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(IntegerField(), *args, **kwargs)
