"""
Model base classes and metaclass.

This module provides the base :py:class:`Model` class and the
:py:class:`LdapModelBase` metaclass.  The metaclass builds the
:py:class:`~ldapmapper.options.Options` for each model, copies inherited
fields, registers the model by name so that relations can refer to it as a
string, and installs the model's manager as ``objects``.
"""

import copy
import inspect
from typing import TYPE_CHECKING, Any, Optional, cast

from django.core.exceptions import ValidationError
from django.db.models.signals import class_prepared, post_init, pre_init

from .exceptions import ConfigurationError, ObjectNotFound
from .fields import Field
from .location import dn_equal
from .managers import LdapManager
from .options import Options

if TYPE_CHECKING:
    from .transaction import Transaction
    from .typing import LDAPData

#: Every concrete model, keyed by class name.
_registry: dict[str, type["Model"]] = {}


def get_model(name: str) -> type["Model"]:
    """
    Look up a model class by name.

    Args:
        name: the class name

    Raises:
        ConfigurationError: no model with that name has been defined

    Returns:
        The model class.

    """
    try:
        return _registry[name]
    except KeyError as e:
        msg = f"No model named '{name}' has been defined"
        raise ConfigurationError(msg) from e


def get_models() -> list[type["Model"]]:
    return list(_registry.values())


class ModelState:
    """
    Per-instance persistence state.
    """

    def __init__(self) -> None:
        #: ``True`` until the instance has been stored in or loaded from the
        #: directory.
        self.adding: bool = True
        #: ``True`` while the manager is inserting the instance.
        self.inserting: bool = False
        #: ``True`` once the instance's entry has been deleted.
        self.deleted: bool = False
        #: For embedded values stored as child entries: the owning instance.
        self.owner: Model | None = None


class LdapModelBase(type):
    """
    Metaclass for models.
    """

    def __new__(cls, name, bases, attrs, **kwargs):
        super_new = super().__new__
        parents = [b for b in bases if isinstance(b, LdapModelBase)]
        if not parents:
            return super_new(cls, name, bases, attrs)

        # Create the class.
        module = attrs.pop("__module__")
        new_attrs = {"__module__": module}
        classcell = attrs.pop("__classcell__", None)
        if classcell is not None:
            new_attrs["__classcell__"] = classcell
        new_class = super_new(cls, name, bases, new_attrs, **kwargs)
        attr_meta = attrs.pop("Meta", None)
        parent_meta_class = getattr(new_class, "Meta", None)
        if attr_meta is None and parent_meta_class is not None:
            # An empty subclass, so that only inheritable options carry over
            attr_meta = type("Meta", (parent_meta_class,), {})
        meta = attr_meta
        if meta is not None:
            new_class.Meta = meta  # type: ignore[attr-defined]

        new_class.add_to_class("_meta", Options(meta))

        # Inherited fields come first, in their original order
        for parent in parents:
            parent_meta = getattr(parent, "_meta", None)
            if parent_meta is None:
                continue
            for field in parent_meta.local_fields:
                if field.name == "objectclass" or field.name in attrs:
                    continue
                new_class.add_to_class(field.name, copy.copy(field))

        # Add all attributes to the class.  This is where the fields get
        # initialized
        for obj_name, obj in attrs.items():
            new_class.add_to_class(obj_name, obj)

        new_class._meta.concrete_model = new_class  # type: ignore[attr-defined]
        new_class._prepare()

        for ancestor in new_class.__mro__[1:]:
            ancestor_meta = getattr(ancestor, "_meta", None)
            if ancestor_meta is not None:
                ancestor_meta.subclasses.append(new_class)
        _registry[name] = new_class
        return new_class

    def add_to_class(cls, name: str, value: Any) -> None:
        """
        Add an attribute to the class, calling contribute_to_class if available.

        Args:
            name: The name of the attribute to add.
            value: The value to assign to the attribute.

        """
        if not inspect.isclass(value) and hasattr(value, "contribute_to_class"):
            value.contribute_to_class(cls, name)
        else:
            setattr(cls, name, value)

    def _prepare(cls) -> None:
        """
        Finish the class once self._meta has been populated.

        Importantly, this is where the Manager class gets added.
        """
        opts = cls._meta  # type: ignore[attr-defined]
        opts._prepare(cls)

        # Give the class a docstring -- its definition.
        if cls.__doc__ is None:
            cls.__doc__ = "{}({})".format(
                cls.__name__,
                ", ".join(f.name for f in opts.fields),
            )

        if any(f.name == "objects" for f in opts.fields):
            msg = (
                f"Model {cls.__name__} must specify a custom Manager, because it has a "
                "field named 'objects'."
            )
            raise ValueError(msg)
        manager = opts.manager_class()
        cls.add_to_class("objects", manager)
        class_prepared.send(sender=cls)


class Model(metaclass=LdapModelBase):
    """
    Base class for models.

    Instances are plain Python objects until they are saved.  Simple fields
    are set as ordinary instance attributes; relation and embedded fields go
    through a descriptor that loads them from the directory on first access.
    """

    class DoesNotExist(ObjectNotFound):
        """Raised when a model instance is not found in LDAP."""

    class InvalidField(Exception):
        """Raised when an invalid field is referenced."""

    class MultipleObjectsReturned(Exception):
        """
        Raised when a query returns more than one object when only one was
        expected.
        """

    #: The model's metadata and configuration options.
    _meta: Options
    #: The default manager for this model.
    objects: LdapManager

    def __init__(self, *args, **kwargs) -> None:
        """
        Initialize a new model instance.

        Args:
            *args: Positional arguments for field values.
            **kwargs: Keyword arguments for field values and special attributes.

        Raises:
            IndexError: If the number of positional arguments exceeds the number
                of fields.
            TypeError: If an invalid keyword argument is provided.

        """
        cls = self.__class__
        opts = self._meta
        self._state = ModelState()
        self._dn: str | None = kwargs.pop("_dn", None)

        pre_init.send(sender=cls, args=args, kwargs=kwargs)

        if len(args) > len(opts.fields):
            msg = "Number of args exceeds number of fields"
            raise IndexError(msg)

        fields_iter = iter(opts.fields)
        for val, field in zip(args, fields_iter, strict=False):
            setattr(self, cast("str", field.name), val)
            kwargs.pop(cast("str", field.name), None)

        # Now we're left with the unprocessed fields that *must* come from
        # keywords, or default.
        for field in fields_iter:
            try:
                val = kwargs.pop(cast("str", field.name))
            except KeyError:
                # This is done with an exception rather than the default
                # argument on pop because we don't want get_default() to be
                # evaluated, and then not used.
                val = field.get_default()
            setattr(self, cast("str", field.name), val)

        if kwargs:
            for kwarg in kwargs:
                msg = f"'{kwarg}' is an invalid keyword argument for this function"
                raise TypeError(msg)
        super().__init__()
        post_init.send(sender=cls, instance=self)

    @classmethod
    def from_db(cls, data: "LDAPData") -> "Model":
        """
        Create a model instance from one search result.

        Fields whose strategy needs no extra directory round trip are decoded
        now; relation and child-entry fields are left for their descriptors
        to load on first access.

        Args:
            data: a ``(dn, attrs)`` tuple as returned by python-ldap

        Returns:
            The loaded instance, no longer in the "adding" state.

        """
        dn, attrs = data
        # Case sensitivity does not matter in LDAP, but it does when we're
        # looking up keys in our dict here.
        lowered = {k.lower(): v for k, v in attrs.items()}
        instance = cls.__new__(cls)
        instance._state = ModelState()
        instance._state.adding = False
        instance._dn = dn
        for name, strategy in cls._meta.strategies.items():
            if strategy.lazy:
                continue
            setattr(instance, name, strategy.fetch(instance, lowered))
        post_init.send(sender=cls, instance=instance)
        return instance

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}: {self}>"

    def __str__(self) -> str:
        return f"{self.__class__.__name__} object ({self._dn or self.pk})"

    def __eq__(self, other: object) -> bool:
        """
        Compare this model instance with another.

        Equal means:

        - The same concrete class
        - The same stored DN, if both have one; otherwise the same primary key

        Args:
            other: The object to compare with.

        Returns:
            True if the objects are equal, False otherwise.

        """
        if not isinstance(other, Model):
            return False
        if self._meta.concrete_model != other._meta.concrete_model:
            return False
        if self._dn and other._dn:
            return dn_equal(self._dn, other._dn)
        my_pk = self.pk
        if my_pk is None:
            return self is other
        return my_pk == other.pk

    def __hash__(self) -> int:
        pk = self.pk
        if isinstance(pk, str):
            pk = pk.lower()
        if pk is None:
            return id(self)
        return hash((self._meta.concrete_model, pk))

    def _get_pk_val(self, meta: Options | None = None) -> Any:
        _meta: Options = meta or self._meta
        if _meta.pk is None:
            return None
        return getattr(self, cast("str", _meta.pk.name), None)

    def _set_pk_val(self, value: Any) -> None:
        field = cast("Field", self._meta.pk)
        setattr(self, cast("str", field.name), value)

    #: The primary key property for this model instance.
    pk = property(_get_pk_val, _set_pk_val)

    @property
    def dn(self) -> str:
        """
        The distinguished name of this instance: the DN it was loaded or
        stored with, or else the DN it would be stored at now.
        """
        if self._dn:
            return self._dn
        return self._meta.base_manager.dn(self)  # type: ignore[union-attr]

    def save(self, transaction: Optional["Transaction"] = None) -> None:
        """
        Insert or update this instance.

        Keyword Args:
            transaction: the transaction to work in; if ``None`` the work is
                committed before returning

        """
        manager = cast("LdapManager", self._meta.base_manager)
        if self._state.adding:
            manager.insert(self, transaction=transaction)
        else:
            manager.update(self, transaction=transaction)

    def delete(self, transaction: Optional["Transaction"] = None) -> None:
        """
        Delete this instance's entry, cleaning up references to it first.
        """
        manager = cast("LdapManager", self._meta.base_manager)
        manager.delete(self, transaction=transaction)

    def refresh_from_db(self) -> None:
        manager = cast("LdapManager", self._meta.base_manager)
        manager.fetch(self)

    def clean(self) -> None:
        """
        Hook for doing any extra model-wide validation after we've cleaned
        field via :py:meth:`clean_fields`.
        """

    def full_clean(self, exclude: list[str] | None = None) -> None:
        """
        Perform full validation on the model instance.

        Args:
            exclude: List of field names to exclude from validation.

        Raises:
            ValidationError: If validation fails.

        """
        errors: dict[str, Any] = {}
        exclude = [] if exclude is None else list(exclude)

        try:
            self.clean_fields(exclude=exclude)
        except ValidationError as e:
            errors = e.update_error_dict(errors)

        # Form.clean() is run even if other validation fails, so do the
        # same with Model.clean() for consistency.
        try:
            self.clean()
        except ValidationError as e:
            errors = e.update_error_dict(errors)

        if errors:
            raise ValidationError(errors)

    def clean_fields(self, exclude: list[str] | None = None) -> None:
        """
        Clean and validate individual fields.  Relation and embedded fields
        that have not been loaded are skipped.

        Args:
            exclude: List of field names to exclude from validation.

        Raises:
            ValidationError: If field validation fails.

        """
        if exclude is None:
            exclude = []

        errors: dict[str, Any] = {}
        for f in self._meta.fields:
            if f.name in exclude or not f.editable:
                continue
            if (f.is_relation or f.embedded) and f.name not in self.__dict__:
                continue
            raw_value = getattr(self, cast("str", f.name))
            try:
                setattr(self, cast("str", f.name), f.clean(raw_value, self))
            except ValidationError as e:
                errors[cast("str", f.name)] = e.error_list

        if errors:
            raise ValidationError(errors)
