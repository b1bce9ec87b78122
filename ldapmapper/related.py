"""
Fields whose values are other model instances.

There are two families:

* **Reference fields** (:py:class:`ReferenceField`,
  :py:class:`ReferenceListField`) point at independent entries.  The side
  that stores the correlation values is the *owner*; the other side names the
  owner's field with ``mapped_by`` and finds its partners by searching.
* **Embedded fields** (:py:class:`EmbeddedField`,
  :py:class:`EmbeddedListField`) hold value objects that belong to their
  owner.  If the embedded model declares no object class its attributes are
  stored inline in the owner's entry; otherwise each value is a child entry
  directly below the owner.

Both families load lazily: the value is fetched from the directory the first
time the attribute is read, and cached on the instance after that.
"""

from typing import TYPE_CHECKING, Any, cast

from .exceptions import ConfigurationError
from .fields import CONTAINER_KINDS, Field, make_container

if TYPE_CHECKING:
    from .models import Model

#: The values accepted for ``mapping_strategy``.
MAPPING_STRATEGIES = ("dn", "attribute")


class LazyFieldDescriptor:
    """
    Load a relation or embedded field on first access.

    Assigning to the attribute replaces the cached value; the manager only
    writes relation fields that have been read or assigned.
    """

    def __init__(self, field: "ModelValuedField") -> None:
        self.field = field

    def __get__(self, instance: "Model | None", owner: Any = None) -> Any:
        if instance is None:
            return self
        name = cast("str", self.field.name)
        if name not in instance.__dict__:
            instance.__dict__[name] = self.field.load(instance)
        return instance.__dict__[name]

    def __set__(self, instance: "Model", value: Any) -> None:
        instance.__dict__[cast("str", self.field.name)] = value


class ModelValuedField(Field):
    """
    Base class for fields holding model instances.

    Args:
        to: the target model, its class name, or ``"self"``

    Keyword Args:
        container: ``"list"`` or ``"set"``, for the multi-valued subclasses

    """

    def __init__(self, to: "type[Model] | str", *args, container: str = "list", **kwargs) -> None:
        if container not in CONTAINER_KINDS:
            msg = f"Unknown container kind '{container}'"
            raise ConfigurationError(msg)
        self.to = to
        self.container = container
        kwargs.setdefault("null", True)
        kwargs.setdefault("blank", True)
        super().__init__(*args, **kwargs)

    @property
    def remote_model(self) -> "type[Model]":
        """
        The model class this field points at.

        Raises:
            ConfigurationError: the target names a model that was never defined

        """
        from .models import get_model  # noqa: PLC0415

        if isinstance(self.to, str):
            if self.to == "self":
                return cast("type[Model]", self.model)
            return get_model(self.to)
        return self.to

    def get_default(self) -> Any:
        if self.has_default():
            return super().get_default()
        if self.many:
            return make_container(self.container, [])
        return None

    def is_loaded(self, instance: "Model") -> bool:
        """
        Return ``True`` if this field has been read or assigned on
        ``instance``.
        """
        return self.name in instance.__dict__

    def load(self, instance: "Model") -> Any:
        """
        Fetch our value for ``instance`` through our mapping strategy.

        New and deleted instances have nothing stored in the directory, so
        they get our default instead.
        """
        if instance._state.adding or instance._state.deleted:
            return self.get_default()
        strategy = instance._meta.get_strategy(cast("str", self.name))
        return strategy.fetch(instance)

    def to_python(self, value: Any) -> Any:
        if self.many:
            if value is None:
                return make_container(self.container, [])
            return make_container(self.container, value)
        return value

    def contribute_to_class(self, cls, name: str) -> None:
        # Subclasses inherit a copy of this field; it keeps pointing at the
        # class that declared it.
        if self.to == "self":
            self.to = cls
        super().contribute_to_class(cls, name)
        setattr(cls, name, LazyFieldDescriptor(self))


class RelatedField(ModelValuedField):
    """
    Base class for reference fields.

    Args:
        to: the target model, its class name, or ``"self"``

    Keyword Args:
        mapping_strategy: force the encoding of the stored references,
            either ``"dn"`` (store the target's DN) or ``"attribute"`` (store
            the value of ``join_attribute`` on the target)
        mapped_by: the name of the field on the target model that stores the
            references.  Setting it makes this the non-owner side.
        join_attribute: the target attribute whose value we store.  Defaults
            to the target's primary key attribute when
            ``mapping_strategy="attribute"``.
        dependent: delete the targets that are removed from this field, and
            the targets of this field when the owner is deleted

    """

    is_relation: bool = True

    def __init__(  # noqa: PLR0913
        self,
        to: "type[Model] | str",
        *args,
        mapping_strategy: str | None = None,
        mapped_by: str | None = None,
        join_attribute: str | None = None,
        dependent: bool = False,
        **kwargs,
    ) -> None:
        self.mapping_strategy = mapping_strategy
        self.mapped_by = mapped_by
        self.join_attribute = join_attribute
        self.dependent = dependent
        super().__init__(to, *args, **kwargs)

    @property
    def is_owner(self) -> bool:
        return self.mapped_by is None

    @property
    def owner_field(self) -> "RelatedField":
        """
        The field that stores the correlation values: ourselves, or the
        target's field named by ``mapped_by``.

        Raises:
            ConfigurationError: ``mapped_by`` names no reference field on the
                target model

        """
        if self.is_owner:
            return self
        target = self.remote_model
        field = target._meta.fields_map.get(cast("str", self.mapped_by))
        if field is None or not isinstance(field, RelatedField):
            msg = (
                f"{cast('type[Model]', self.model).__name__}.{self.name}: "
                f"mapped_by='{self.mapped_by}' is not a reference field on "
                f"{target.__name__}"
            )
            raise ConfigurationError(msg)
        return field


class ReferenceField(RelatedField):
    """
    A reference to a single other entry.
    """


class ReferenceListField(RelatedField):
    """
    A collection of references to other entries.
    """

    many: bool = True


class EmbeddedField(ModelValuedField):
    """
    A single embedded value object.

    Args:
        to: the embedded model; it must have ``Meta.embedded = True``

    """

    embedded: bool = True

    @property
    def inline(self) -> bool:
        """
        ``True`` if the embedded model has no object class, so that its
        attributes live in the owner's entry.
        """
        return not self.remote_model._meta.objectclasses


class EmbeddedListField(EmbeddedField):
    """
    A collection of embedded value objects, each stored as a child entry of
    the owner.
    """

    many: bool = True
