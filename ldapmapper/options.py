"""
Model options and metadata.

This module provides the Options class that holds everything the mapping
layer knows about a model: its fields, where its entries live, its object
classes, its subclasses and the mapping strategy chosen for each field.
"""

from bisect import bisect
from typing import TYPE_CHECKING, cast

from django.core.exceptions import FieldDoesNotExist
from django.utils.functional import cached_property
from django.utils.text import camel_case_to_spaces, format_lazy
from django.utils.translation import override

from .exceptions import ConfigurationError, UnsupportedFieldType
from .fields import CharListField
from .location import LocationInfo, parse_location
from .managers import LdapManager
from .strategies import select_strategy

if TYPE_CHECKING:
    from .fields import Field
    from .models import Model
    from .strategies import MappingStrategy

#: The default attributes for the Options class.
DEFAULT_NAMES = (
    "ldap_server",
    "manager_class",
    "basedn",
    "objectclass",
    "extra_objectclasses",
    "verbose_name",
    "verbose_name_plural",
    "ordering",
    "abstract",
    "embedded",
)

#: Options that apply only to the class whose ``Meta`` declares them.
NON_INHERITED_NAMES = ("abstract",)


class Options:
    """
    Options class for model metadata and configuration.

    This gets instantiated by parsing the ``Meta`` class for the model, and is
    available as ``model._meta`` on the model class.

    If you are subclassing another model, the ``Meta`` classes will be merged in
    MRO (Method Resolution Order) for the subclass, except for ``abstract``,
    which is never inherited.

    Args:
        meta: The Meta class from the model definition.

    """

    def __init__(self, meta) -> None:
        # LDAP related
        #: The key into ``settings.LDAP_SERVERS`` setting that this model uses.
        self.ldap_server: str = "default"
        #: The default manager class to use for this model.
        self.manager_class: type[LdapManager] = LdapManager
        #: The location string for this model: a DN, a hierarchical pattern
        #: or an LDAP URL.  See :py:mod:`ldapmapper.location`.
        self.basedn: str | None = None
        #: The objectclass (or list of objectclasses) for this model.  These
        #: are ANDed into every search filter to eliminate objects that are
        #: not of this type.
        self.objectclass: str | list[str] | None = None
        #: Extra objectclasses to add to this model when we are creating new
        #: records only.
        self.extra_objectclasses: list[str] = []
        #: Abstract models are never searched directly.
        self.abstract: bool = False
        #: Embedded models are value types used only through
        #: :py:class:`~ldapmapper.related.EmbeddedField` and
        #: :py:class:`~ldapmapper.related.EmbeddedListField`.
        self.embedded: bool = False

        # other
        #: The verbose name for this model.
        self.verbose_name: str | None = None
        #: The verbose name plural for this model.
        self.verbose_name_plural: str | None = None
        #: The default ordering for query results.  Field names can be
        #: prefixed with ``-`` to order in descending order.
        self.ordering: list[str] = []

        #: This is set up by the :py:class:`~ldapmapper.models.LdapModelBase`
        #: metaclass.
        self.model_name: str | None = None
        #: This is set up by the :py:class:`~ldapmapper.models.LdapModelBase`
        #: metaclass.
        self.object_name: str | None = None
        self.meta = meta
        #: The Field with ``primary_key=True``; it supplies the RDN.
        self.pk: Field | None = None
        #: This is set up by the :py:class:`~ldapmapper.models.LdapModelBase`
        #: metaclass.
        self.concrete_model: type[Model] | None = None
        #: This is set up by :py:meth:`LdapManager.contribute_to_class`.
        self.base_manager: LdapManager | None = None
        #: This is set up by the :py:class:`~ldapmapper.models.LdapModelBase`
        #: metaclass.
        self.local_fields: list[Field] = []
        #: Every model that inherits from this one, most general first.
        self.subclasses: list[type[Model]] = []

    @property
    def label(self) -> str:
        return cast("str", self.object_name)

    @property
    def label_lower(self) -> str:
        return cast("str", self.model_name)

    @property
    def verbose_name_raw(self) -> str:
        """
        Return the untranslated verbose name.
        """
        with override(None):
            return str(self.verbose_name)

    def contribute_to_class(self, cls: type["Model"], name: str) -> None:  # noqa: ARG002
        """
        Used by the :py:class:`~ldapmapper.models.LdapModelBase` metaclass to
        add this :py:class:`Options` instance to a model class.

        Args:
            cls: The model class to contribute to.
            name: The name of the options attribute.

        Raises:
            TypeError: ``class Meta`` has attributes we don't know about

        """
        cls._meta = self
        self.model = cls
        # First, construct the default values for these options.
        self.object_name = cls.__name__
        self.model_name = self.object_name.lower()
        self.verbose_name = camel_case_to_spaces(self.object_name)

        # Next, apply any overridden values from 'class Meta'.
        if self.meta:
            meta_attrs = {
                k: v for k, v in self.meta.__dict__.items() if not k.startswith("_")
            }
            for attr_name in DEFAULT_NAMES:
                if attr_name in meta_attrs:
                    setattr(self, attr_name, meta_attrs.pop(attr_name))
                elif attr_name not in NON_INHERITED_NAMES and hasattr(
                    self.meta, attr_name
                ):
                    setattr(self, attr_name, getattr(self.meta, attr_name))

            # Any leftover attributes must be invalid.
            if meta_attrs != {}:
                msg = "'class Meta' got invalid attribute(s): {}".format(
                    ",".join(meta_attrs)
                )
                raise TypeError(msg)
        if self.verbose_name_plural is None:
            self.verbose_name_plural = format_lazy("{}s", self.verbose_name)  # type: ignore[assignment]
        del self.meta

    def _prepare(self, model: type["Model"]) -> None:
        """
        Used by the :py:class:`~ldapmapper.models.LdapModelBase` metaclass to
        prepare the model after all fields have been added.

        Args:
            model: The model class to prepare.

        Raises:
            ConfigurationError: the model has no primary key, defines its own
                objectclass field, or has a malformed location string

        """
        if self.pk is None and not (self.embedded and not self.objectclasses):
            msg = f"'{self.object_name}' model doesn't have a primary key"
            raise ConfigurationError(msg)
        # don't call self.fields_map here, because that gets cached
        names = {f.name for f in self._get_fields()}
        for f in self._get_fields():
            if f.ldap_attribute.lower() == "objectclass":
                msg = (
                    "The objectclass field is defined automatically; don't "
                    f"manually define it on the '{self.object_name}' model"
                )
                raise ConfigurationError(msg)
        if self.basedn:
            location = parse_location(self.basedn)
            if location.parent_field and location.parent_field not in names:
                msg = (
                    f"{self.object_name}: Meta.basedn names parent field "
                    f"'{location.parent_field}', which is not a field on the model"
                )
                raise ConfigurationError(msg)
        objectclass = CharListField(editable=False, max_length=255)
        model.add_to_class("objectclass", objectclass)

    def add_field(self, field: "Field") -> None:
        self.local_fields.insert(bisect(self.local_fields, field), field)
        self.setup_pk(field)

    def setup_pk(self, field: "Field") -> None:
        if not self.pk and field.primary_key:
            self.pk = field

    def __repr__(self) -> str:
        return f"<Options for {self.object_name}>"

    @property
    def objectclasses(self) -> list[str]:
        """
        Our object classes as a list, whether ``Meta.objectclass`` was a
        string or a list.
        """
        if not self.objectclass:
            return []
        if isinstance(self.objectclass, str):
            return [self.objectclass]
        return list(self.objectclass)

    @cached_property
    def location(self) -> LocationInfo:
        """
        The parsed form of :py:attr:`basedn`.
        """
        return parse_location(self.basedn)

    @cached_property
    def fields(self) -> list["Field"]:
        return self._get_fields()

    def get_fields(self, include_parents: bool = True) -> list["Field"]:  # noqa: ARG002
        return self._get_fields()

    def _get_fields(self) -> list["Field"]:
        return self.local_fields

    @cached_property
    def fields_map(self) -> dict[str, "Field"]:
        """
        Get a mapping of field names to field instances.
        """
        return {cast("str", field.name): field for field in self._get_fields()}

    @cached_property
    def attributes_map(self) -> dict[str, str]:
        """
        Get a mapping of field names to LDAP attribute names.  The query
        compiler uses this to translate field references.
        """
        return {cast("str", f.name): f.ldap_attribute for f in self._get_fields()}

    @cached_property
    def attribute_to_field_name_map(self) -> dict[str, str]:
        """
        Get a mapping of lower cased LDAP attribute names to field names.
        """
        return {f.ldap_attribute.lower(): cast("str", f.name) for f in self._get_fields()}

    @cached_property
    def strategies(self) -> dict[str, "MappingStrategy"]:
        """
        The mapping strategy for each field, chosen once on first use.

        Raises:
            UnsupportedFieldType: no strategy exists for one of our fields

        """
        res = {}
        for field in self._get_fields():
            strategy = select_strategy(field)
            if strategy is None:
                msg = (
                    f"{self.object_name}.{field.name}: unsupported field type "
                    "for this datastore"
                )
                raise UnsupportedFieldType(msg)
            res[cast("str", field.name)] = strategy
        return res

    def get_strategy(self, field_name: str) -> "MappingStrategy":
        return self.strategies[field_name]

    @cached_property
    def attributes(self) -> list[str]:
        """
        The LDAP attributes a search for our entries must request.
        """
        names: list[str] = []
        for strategy in self.strategies.values():
            for name in strategy.attribute_names():
                if name not in names:
                    names.append(name)
        return names

    def get_field(self, field_name: str) -> "Field":
        """
        Return a field instance given its name.

        Raises:
            FieldDoesNotExist: If no field with the given name exists.

        """
        try:
            return self.fields_map[field_name]
        except KeyError as e:
            msg = f"{self.object_name} has no field named '{field_name}'"
            raise FieldDoesNotExist(msg) from e
