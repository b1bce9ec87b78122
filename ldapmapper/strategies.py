"""
Mapping strategies: how each field is read from and written to the directory.

Every field gets exactly one strategy, chosen once by
:py:func:`select_strategy` and cached on
:py:attr:`ldapmapper.options.Options.strategies`.  The set of strategies is
closed; :py:class:`MappingKind` names them.

A strategy has four operations:

* :py:meth:`MappingStrategy.attribute_names`: the attributes a search must
  request for the field;
* :py:meth:`MappingStrategy.fetch`: produce the field's value for an object;
* :py:meth:`MappingStrategy.insert` / :py:meth:`MappingStrategy.update`:
  write the field's value into the attribute buffer of the entry being
  stored.

``insert`` and ``update`` never talk to the directory about the entry being
stored; the manager does that with the buffer they fill in.  The relation
strategies do talk to the directory about *other* entries, to keep
references consistent.
"""

import enum
import logging
from typing import TYPE_CHECKING, Any, ClassVar, Optional, cast

from ldapmapper import ldap

from .exceptions import AmbiguousMatch, ObjectNotFound
from .fields import Field, make_container
from .location import compose_dn, dn_equal, dn_size, dn_startswith, parent_dn
from .relations import (
    RelationInfo,
    add_reference,
    correlation_value,
    load_referenced,
    relation_info,
    remove_reference,
)
from .typing import AttributeBuffer

if TYPE_CHECKING:
    from .managers import LdapManager
    from .models import Model
    from .related import EmbeddedField, ModelValuedField, RelatedField
    from .transaction import Transaction

logger = logging.getLogger("django-ldapmapper")


class MappingKind(enum.Enum):
    SIMPLE = "simple"
    SIMPLE_CONTAINER = "simple-container"
    EMBEDDED = "embedded"
    RELATION_BY_DN = "relation-by-dn"
    RELATION_BY_ATTRIBUTE = "relation-by-attribute"
    RELATION_BY_HIERARCHY = "relation-by-hierarchy"


def _as_list(field: Field, value: Any) -> list[Any]:
    if field.many:
        return [v for v in (value or []) if v is not None]
    return [] if value is None else [value]


def _manager(obj: "Model") -> "LdapManager":
    return cast("LdapManager", obj._meta.base_manager)


def _claim_stored(members: list["Model"], stored: list["Model"]) -> None:
    """
    Point each new instance in ``members`` that would be written at the DN of
    an entry in ``stored`` at that entry, so that it is updated in place
    instead of inserted over it.
    """
    for member in members:
        if not member._state.adding:
            continue
        dn = member.dn
        for old in stored:
            if old._dn and dn_equal(old._dn, dn):
                member._dn = old._dn
                member._state.adding = False
                break


def _is_kept(old: "Model", members: list["Model"]) -> bool:
    return any(dn_equal(old.dn, member.dn) for member in members)


class MappingStrategy:
    """
    Base class for mapping strategies.

    Args:
        field: the field this strategy maps

    """

    #: Which strategy this is.
    kind: ClassVar[MappingKind]
    #: ``False`` if :py:meth:`fetch` only needs the search result of the
    #: object itself, so the value can be decoded as soon as the entry is
    #: read.  ``True`` if the value is loaded on first access instead.
    lazy: bool = True

    def __init__(self, field: Field) -> None:
        self.field = field

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}: {self.field.model.__name__}.{self.field.name}>"  # type: ignore[union-attr]

    @property
    def name(self) -> str:
        return cast("str", self.field.name)

    def attribute_names(self) -> list[str]:
        return []

    def fetch(
        self,
        obj: "Model",
        attrs: AttributeBuffer | None = None,
        transaction: Optional["Transaction"] = None,
    ) -> Any:
        """
        Produce the value of our field for ``obj``.

        Args:
            obj: an object loaded from the directory

        Keyword Args:
            attrs: the search result for ``obj``, with lower cased attribute
                names, if we have it
            transaction: the transaction we're working in

        """
        raise NotImplementedError

    def insert(
        self,
        obj: "Model",
        value: Any,
        buffer: AttributeBuffer,
        transaction: "Transaction",
    ) -> None:
        """
        Write ``value`` into ``buffer`` before ``obj`` is added.
        """

    def post_insert(self, obj: "Model", value: Any, transaction: "Transaction") -> None:
        """
        Do any work that needs the entry of ``obj`` to exist.
        """

    def update(
        self,
        obj: "Model",
        value: Any,
        buffer: AttributeBuffer,
        transaction: "Transaction",
    ) -> None:
        """
        Write ``value`` into ``buffer`` before ``obj`` is modified.
        """

    def delete(self, obj: "Model", transaction: "Transaction") -> None:
        """
        Do any work needed before the entry of ``obj`` is deleted.
        """


# -----------------------
# Simple values
# -----------------------


class SimpleStrategy(MappingStrategy):
    """
    A scalar value stored in one attribute of the entry.
    """

    kind = MappingKind.SIMPLE
    lazy = False

    def attribute_names(self) -> list[str]:
        return [self.field.ldap_attribute]

    def fetch(self, obj, attrs=None, transaction=None) -> Any:
        if attrs is None:
            attrs = _manager(obj).read_entry(obj.dn, self.attribute_names())
        return self.field.from_db_value(attrs.get(self.field.ldap_attribute.lower(), []))

    def insert(self, obj, value, buffer, transaction) -> None:
        buffer.update(self.field.to_db_value(value))

    def update(self, obj, value, buffer, transaction) -> None:
        buffer.update(self.field.to_db_value(value))


class SimpleContainerStrategy(SimpleStrategy):
    """
    A list or set of values stored as the values of one attribute.
    """

    kind = MappingKind.SIMPLE_CONTAINER


# -----------------------
# Embedded values
# -----------------------


class EmbeddedStrategy(MappingStrategy):
    """
    Value objects owned by the entry.

    If the embedded model has no object class its fields are stored inline,
    as attributes of the owner's entry.  Otherwise each value is a child entry
    directly below the owner, named by its primary key.
    """

    kind = MappingKind.EMBEDDED

    def __init__(self, field: "EmbeddedField") -> None:
        super().__init__(field)
        self.inline = field.inline
        self.lazy = not self.inline

    @property
    def target(self) -> "type[Model]":
        return cast("ModelValuedField", self.field).remote_model

    def inline_fields(self) -> list[Field]:
        return [
            f
            for f in self.target._meta.fields
            if f.name != "objectclass" and not (f.is_relation or f.embedded)
        ]

    def attribute_names(self) -> list[str]:
        if self.inline:
            return [f.ldap_attribute for f in self.inline_fields()]
        return []

    def fetch(self, obj, attrs=None, transaction=None) -> Any:
        if self.inline:
            if attrs is None:
                attrs = _manager(obj).read_entry(obj.dn, self.attribute_names())
            if not any(f.ldap_attribute.lower() in attrs for f in self.inline_fields()):
                return None
            value = self.target.from_db(("", attrs))
            value._dn = None
            return value
        manager = cast("LdapManager", self.target._meta.base_manager)
        children = manager.get_entries(
            base=obj.dn,
            scope=ldap.SCOPE_ONELEVEL,  # type: ignore[attr-defined]
        )
        for child in children:
            child._state.owner = obj
        if self.field.many:
            return make_container(cast("ModelValuedField", self.field).container, children)
        if len(children) > 1:
            msg = (
                f"{obj!r}.{self.name}: Must be unique, but found {len(children)} "
                "child entries"
            )
            raise AmbiguousMatch(msg)
        return children[0] if children else None

    def _write_inline(self, value: Any, buffer: AttributeBuffer) -> None:
        for f in self.inline_fields():
            field_value = None if value is None else getattr(value, cast("str", f.name))
            buffer.update(f.to_db_value(field_value))

    def insert(self, obj, value, buffer, transaction) -> None:
        if self.inline:
            self._write_inline(value, buffer)

    def post_insert(self, obj, value, transaction) -> None:
        if self.inline:
            return
        for member in _as_list(self.field, value):
            member._state.owner = obj
            _manager(member).insert(member, transaction=transaction)

    def update(self, obj, value, buffer, transaction) -> None:
        if self.inline:
            self._write_inline(value, buffer)
            return
        new = _as_list(self.field, value)
        for member in new:
            member._state.owner = obj
        stored = _as_list(self.field, self.fetch(obj, transaction=transaction))
        _claim_stored(new, stored)
        for old_member in stored:
            if not _is_kept(old_member, new):
                transaction.mark_for_deletion(old_member)
        for member in new:
            transaction.unmark_for_deletion(member)
            transaction.mark_for_persist(member)


# -----------------------
# References by DN or by attribute
# -----------------------


class ReferenceStrategy(MappingStrategy):
    """
    Base class for references whose owner stores correlation values.

    Args:
        field: a reference field, on either side

    """

    #: ``True`` for DN references.
    by_dn: ClassVar[bool] = True

    def __init__(self, field: "RelatedField") -> None:
        super().__init__(field)
        self.info: RelationInfo = relation_info(field, self.by_dn)

    @property
    def related(self) -> "RelatedField":
        return cast("RelatedField", self.field)

    def attribute_names(self) -> list[str]:
        if self.info.is_owner:
            return [self.info.attribute]
        return []

    def _result(self, obj: "Model", targets: list["Model"]) -> Any:
        if self.field.many:
            return make_container(self.related.container, targets)
        if len(targets) > 1 and not self.info.is_owner:
            msg = (
                f"{obj!r}.{self.name}: Must be unique, but {len(targets)} "
                f"entries reference it"
            )
            raise AmbiguousMatch(msg)
        return targets[0] if targets else None

    def stored_values(self, obj: "Model") -> list[str]:
        """
        The correlation values currently stored in the entry of ``obj``.
        """
        values = _manager(obj).read_attribute(cast("str", obj._dn), self.info.attribute)
        return self.info.strip_empty_value(values)

    def fetch(self, obj, attrs=None, transaction=None) -> Any:
        if self.info.is_owner:
            if attrs is None:
                values = self.stored_values(obj)
            else:
                raw = attrs.get(self.info.attribute.lower(), [])
                values = self.info.strip_empty_value([v.decode("utf-8") for v in raw])
            targets = [load_referenced(self.info, v) for v in values]
            return self._result(obj, [t for t in targets if t is not None])
        my_value = correlation_value(self.info, obj, transaction)
        term = f"({self.info.attribute}={ldap.filter.escape_filter_chars(my_value)})"
        manager = cast("LdapManager", self.info.owner_model._meta.base_manager)
        return self._result(obj, manager.get_entries(extra_filter=term))

    # owner side

    def _owner_values(
        self, targets: list["Model"], transaction: "Transaction"
    ) -> list[bytes]:
        values = []
        for target in targets:
            if target._state.adding and not transaction.is_inserting(target):
                transaction.mark_for_persist(target)
            values.append(correlation_value(self.info, target, transaction))
        return [v.encode("utf-8") for v in self.info.with_empty_value(values)]

    # non-owner side

    def _link(
        self, obj: "Model", target: "Model", my_value: str, transaction: "Transaction"
    ) -> None:
        if transaction.is_inserting(target):
            return
        if target._state.adding:
            # The target will store the reference itself when it is inserted
            owner_field = self.info.owner_field
            name = cast("str", owner_field.name)
            if owner_field.many:
                current = list(target.__dict__.get(name) or [])
                if obj not in current:
                    current.append(obj)
                target.__dict__[name] = make_container(owner_field.container, current)
            else:
                target.__dict__[name] = obj
            transaction.mark_for_persist(target)
            return
        add_reference(self.info, target.dn, my_value)

    def insert(self, obj, value, buffer, transaction) -> None:
        if self.info.is_owner:
            buffer[self.info.attribute] = self._owner_values(
                _as_list(self.field, value), transaction
            )

    def post_insert(self, obj, value, transaction) -> None:
        if self.info.is_owner:
            return
        my_value = correlation_value(self.info, obj, transaction)
        for target in _as_list(self.field, value):
            self._link(obj, target, my_value, transaction)

    def update(self, obj, value, buffer, transaction) -> None:
        new = _as_list(self.field, value)
        if self.info.is_owner:
            if self.related.dependent and obj._dn:
                stored = [load_referenced(self.info, v) for v in self.stored_values(obj)]
                for old_target in stored:
                    if old_target is not None and old_target not in new:
                        transaction.mark_for_deletion(old_target)
            buffer[self.info.attribute] = self._owner_values(new, transaction)
            return
        my_value = correlation_value(self.info, obj, transaction)
        old = _as_list(self.field, self.fetch(obj, transaction=transaction))
        for old_target in old:
            if old_target not in new:
                remove_reference(self.info, old_target.dn, my_value)
                if self.related.dependent:
                    transaction.mark_for_deletion(old_target)
        for target in new:
            if target not in old:
                self._link(obj, target, my_value, transaction)
                if not self.field.many:
                    transaction.mark_for_persist(target)
                    transaction.unmark_for_deletion(target)

    def delete(self, obj, transaction) -> None:
        if not self.related.dependent:
            return
        for target in _as_list(self.field, self.fetch(obj, transaction=transaction)):
            transaction.mark_for_deletion(target)


class RelationByDnStrategy(ReferenceStrategy):
    """
    References stored as the DNs of the referenced entries.
    """

    kind = MappingKind.RELATION_BY_DN
    by_dn = True


class RelationByAttributeStrategy(ReferenceStrategy):
    """
    References stored as the join attribute values of the referenced
    entries, e.g. ``memberUid`` holding ``uid`` values.
    """

    kind = MappingKind.RELATION_BY_ATTRIBUTE
    by_dn = False


# -----------------------
# References by tree structure
# -----------------------


class RelationByHierarchyStrategy(MappingStrategy):
    """
    A parent/child relation expressed by where entries live in the tree.

    The *parent link* is the field named in the model's location pattern
    (``{field}``); its value is the entry above ours.  A *child collection*
    is a field ``mapped_by`` the parent link of its target model; its values
    are the target entries directly below ours.  Neither stores any
    attribute.
    """

    kind = MappingKind.RELATION_BY_HIERARCHY

    def __init__(self, field: "RelatedField") -> None:
        super().__init__(field)
        self.is_parent_link = field.is_owner

    @property
    def related(self) -> "RelatedField":
        return cast("RelatedField", self.field)

    @property
    def target(self) -> "type[Model]":
        return self.related.remote_model

    def fetch(self, obj, attrs=None, transaction=None) -> Any:
        if self.is_parent_link:
            location = obj._meta.location
            if not obj._dn:
                return None
            above = parent_dn(obj._dn, 1 + dn_size(location.suffix))
            if location.dn and dn_equal(above, location.dn):
                return None
            manager = cast("LdapManager", self.target._meta.base_manager)
            try:
                return manager.get_by_dn(above)
            except ObjectNotFound:
                return None
        manager = cast("LdapManager", self.target._meta.base_manager)
        base = compose_dn(obj.dn, self.target._meta.location.suffix)
        children = manager.get_entries(
            base=base,
            scope=ldap.SCOPE_ONELEVEL,  # type: ignore[attr-defined]
        )
        for child in children:
            child.__dict__[cast("str", self.related.mapped_by)] = obj
        return make_container(self.related.container, children)

    def ensure_parent(self, value: "Model | None", transaction: "Transaction") -> None:
        # The parent entry has to exist before we can add ours below it
        if (
            value is not None
            and value._state.adding
            and not transaction.is_inserting(value)
        ):
            _manager(value).insert(value, transaction=transaction)

    def must_delete(self, obj: "Model", child: "Model") -> bool:
        """
        Return ``True`` if ``child``, removed from our collection, still
        belongs to ``obj`` and so should be deleted.
        """
        if child._dn and dn_startswith(child._dn, obj.dn):
            return True
        parent = child.__dict__.get(cast("str", self.related.mapped_by))
        return parent is None or parent == obj

    def _adopt(self, obj: "Model", children: list["Model"], transaction: "Transaction") -> None:
        name = cast("str", self.related.mapped_by)
        for child in children:
            if child.__dict__.get(name) is None:
                child.__dict__[name] = obj
            transaction.unmark_for_deletion(child)
            transaction.mark_for_persist(child)

    def insert(self, obj, value, buffer, transaction) -> None:
        if self.is_parent_link:
            self.ensure_parent(value, transaction)

    def post_insert(self, obj, value, transaction) -> None:
        if not self.is_parent_link:
            self._adopt(obj, _as_list(self.field, value), transaction)

    def update(self, obj, value, buffer, transaction) -> None:
        if self.is_parent_link:
            if value is None and not obj._meta.location.dn:
                transaction.mark_for_deletion(obj)
            self.ensure_parent(value, transaction)
            return
        new = _as_list(self.field, value)
        name = cast("str", self.related.mapped_by)
        for child in new:
            if child.__dict__.get(name) is None:
                child.__dict__[name] = obj
        stored = _as_list(self.field, self.fetch(obj, transaction=transaction))
        _claim_stored(new, stored)
        for child in stored:
            if not _is_kept(child, new) and self.must_delete(obj, child):
                transaction.mark_for_deletion(child)
        self._adopt(obj, new, transaction)


# -----------------------
# Selection
# -----------------------


def is_hierarchy_field(field: "RelatedField") -> bool:
    """
    Return ``True`` if ``field`` is the parent link of its model's location
    pattern, or a collection of the children linked by such a field.
    """
    if field.is_owner:
        model = cast("type[Model]", field.model)
        return model._meta.location.parent_field == field.name
    return field.remote_model._meta.location.parent_field == field.mapped_by


def select_strategy(field: Field) -> MappingStrategy | None:  # noqa: PLR0911
    """
    Choose the mapping strategy for ``field``.  The first rule that matches
    wins:

    1. a field with a codec and no relationship: simple or simple container
    2. an embedded field
    3. an explicit ``mapping_strategy`` of ``"dn"`` or ``"attribute"``
    4. a ``join_attribute`` on the field or the owner field it is mapped by
    5. the parent link or a child collection of a hierarchical mapping
    6. anything else: a reference by DN

    Args:
        field: the field

    Returns:
        The strategy, or ``None`` if this datastore cannot store ``field``.

    """
    from .related import MAPPING_STRATEGIES, EmbeddedField, RelatedField  # noqa: PLC0415

    if not field.is_relation and not field.embedded:
        if field.many:
            return SimpleContainerStrategy(field)
        return SimpleStrategy(field)
    if isinstance(field, EmbeddedField):
        if field.inline and field.many:
            return None
        return EmbeddedStrategy(field)
    if not isinstance(field, RelatedField):
        return None
    owner = field.owner_field
    hint = owner.mapping_strategy or field.mapping_strategy
    if hint is not None:
        if hint not in MAPPING_STRATEGIES:
            return None
        if hint == "dn":
            return RelationByDnStrategy(field)
        return RelationByAttributeStrategy(field)
    if owner.join_attribute or field.join_attribute:
        return RelationByAttributeStrategy(field)
    if is_hierarchy_field(field):
        return RelationByHierarchyStrategy(field)
    return RelationByDnStrategy(field)
