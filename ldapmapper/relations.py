"""
Keeping both sides of a reference consistent.

A reference between two models is stored on one side only, the *owner*: its
entries hold, in one attribute, a correlation value for each referenced
entry.  The correlation value is either the referenced entry's DN or the
value of one of its attributes (the *join attribute*).  The other side,
declared with ``mapped_by``, finds its partners by searching for entries
whose owner attribute holds its own correlation value.

When the non-owner side changes, the owner entries have to be changed to
match.  Those changes are made immediately with ``MOD_REPLACE``.  Like
every read-modify-write here, they are not protected against concurrent
writers.
"""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, cast

from ldapmapper import ldap

from .exceptions import ConfigurationError, ObjectNotFound
from .location import dn_equal
from .resolver import and_filters, resolve_dn, search_base, search_filter, search_scope

if TYPE_CHECKING:
    from .managers import LdapManager
    from .models import Model
    from .related import RelatedField
    from .transaction import Transaction

logger = logging.getLogger("django-ldapmapper")


@dataclass(frozen=True)
class RelationInfo:
    """
    Everything we need to know about a reference field to maintain it.
    """

    #: The field being mapped; either side of the reference.
    field: "RelatedField"
    #: The field whose entries store the correlation values.
    owner_field: "RelatedField"
    #: ``True`` if correlation values are DNs.
    by_dn: bool
    #: For attribute references: the attribute of the referenced entries
    #: whose value is stored.
    join_attribute: str | None = None

    @property
    def is_owner(self) -> bool:
        return self.field is self.owner_field

    @property
    def attribute(self) -> str:
        """
        The owner attribute holding the correlation values.
        """
        return self.owner_field.ldap_attribute

    @property
    def owner_model(self) -> "type[Model]":
        return cast("type[Model]", self.owner_field.model)

    @property
    def referenced_model(self) -> "type[Model]":
        """
        The model whose entries the stored values point at.
        """
        return self.owner_field.remote_model

    @property
    def empty_value(self) -> str | None:
        return self.owner_field.empty_value

    def strip_empty_value(self, values: list[str]) -> list[str]:
        if self.empty_value is None:
            return list(values)
        return [v for v in values if v != self.empty_value]

    def with_empty_value(self, values: list[str]) -> list[str]:
        if not values and self.empty_value is not None:
            return [self.empty_value]
        return values

    def matches(self, first: str, second: str) -> bool:
        if self.by_dn:
            return dn_equal(first, second)
        return first == second


def relation_info(field: "RelatedField", by_dn: bool) -> RelationInfo:
    """
    Describe the reference ``field`` participates in.

    Args:
        field: a reference field, on either side
        by_dn: ``True`` for DN references, ``False`` for attribute references

    Returns:
        The description.

    """
    owner_field = field.owner_field
    join_attribute = None
    if not by_dn:
        join_attribute = owner_field.join_attribute or field.join_attribute
        if join_attribute is None:
            pk = owner_field.remote_model._meta.pk
            if pk is None:
                msg = (
                    f"{owner_field.model.__name__}.{owner_field.name}: "  # type: ignore[union-attr]
                    "an attribute reference needs a join_attribute"
                )
                raise ConfigurationError(msg)
            join_attribute = pk.ldap_attribute
    return RelationInfo(
        field=field, owner_field=owner_field, by_dn=by_dn, join_attribute=join_attribute
    )


def correlation_value(
    info: RelationInfo, target: "Model", transaction: "Transaction | None" = None
) -> str:
    """
    The value the owner stores to point at ``target``.

    Raises:
        ConfigurationError: the join attribute is not a field of ``target``

    """
    if info.by_dn:
        return target._dn or resolve_dn(target, transaction=transaction)
    meta = target._meta
    name = meta.attribute_to_field_name_map.get(cast("str", info.join_attribute).lower())
    if name is None:
        msg = (
            f"{meta.object_name} has no field for join attribute "
            f"'{info.join_attribute}'"
        )
        raise ConfigurationError(msg)
    field = meta.get_field(name)
    value = getattr(target, name)
    if value is None:
        msg = f"{target!r} has no value for join attribute '{info.join_attribute}'"
        raise ConfigurationError(msg)
    return field.encode_value(value).decode("utf-8")


def load_referenced(info: RelationInfo, value: str) -> "Model | None":
    """
    Load the entry an owner value points at, or ``None`` if it is gone.
    """
    manager = info.referenced_model.objects
    try:
        if info.by_dn:
            return manager.get_by_dn(value)
        return manager.get_by_attribute(cast("str", info.join_attribute), value)
    except ObjectNotFound:
        logger.warning(
            "ldapmapper.relations.dangling-reference attribute=%s value=%s",
            info.attribute,
            value,
        )
        return None


def _owner_manager(info: RelationInfo) -> "LdapManager":
    return cast("LdapManager", info.owner_model._meta.base_manager)


def add_reference(info: RelationInfo, dn: str, value: str) -> None:
    """
    Append ``value`` to the owner attribute of the entry at ``dn``, dropping
    the empty-value sentinel.  Nothing happens if it is already there.
    """
    manager = _owner_manager(info)
    current = info.strip_empty_value(manager.read_attribute(dn, info.attribute))
    if any(info.matches(v, value) for v in current):
        return
    logger.debug(
        "ldapmapper.relations.add-reference dn=%s attribute=%s value=%s",
        dn,
        info.attribute,
        value,
    )
    manager.replace_attribute(dn, info.attribute, [*current, value])


def remove_reference(info: RelationInfo, dn: str, value: str) -> None:
    """
    Remove ``value`` from the owner attribute of the entry at ``dn``.  If
    that leaves the attribute empty and the owner field has an empty-value
    sentinel, the sentinel is stored instead.
    """
    manager = _owner_manager(info)
    current = info.strip_empty_value(manager.read_attribute(dn, info.attribute))
    remaining = [v for v in current if not info.matches(v, value)]
    if len(remaining) == len(current):
        return
    logger.debug(
        "ldapmapper.relations.remove-reference dn=%s attribute=%s value=%s",
        dn,
        info.attribute,
        value,
    )
    manager.replace_attribute(dn, info.attribute, info.with_empty_value(remaining))


def find_owner_dns(info: RelationInfo, model: "type[Model]", value: str) -> list[str]:
    """
    Return the DNs of the entries of ``model`` whose owner attribute holds
    ``value``.
    """
    base = search_base(model)
    if not base:
        return []
    term = f"({info.attribute}={ldap.filter.escape_filter_chars(value)})"
    manager = cast("LdapManager", model._meta.base_manager)
    try:
        results = manager.search(
            and_filters(search_filter(model), term),
            [info.attribute],
            basedn=base,
            scope=search_scope(model),
        )
    except ObjectNotFound:
        return []
    return [dn for dn, _ in results]


def _owner_relations(obj: "Model", by_dn: bool) -> list[tuple["type[Model]", RelationInfo]]:
    """
    Every owner reference field, on any concrete model, that can point at
    ``obj``.
    """
    from .models import get_models  # noqa: PLC0415
    from .related import RelatedField  # noqa: PLC0415
    from .strategies import MappingKind  # noqa: PLC0415

    kind = MappingKind.RELATION_BY_DN if by_dn else MappingKind.RELATION_BY_ATTRIBUTE
    res = []
    for model in get_models():
        meta = model._meta
        if meta.abstract or meta.embedded:
            continue
        for field in meta.fields:
            if not isinstance(field, RelatedField) or not field.is_owner:
                continue
            if not isinstance(obj, field.remote_model):
                continue
            strategy = meta.get_strategy(cast("str", field.name))
            if strategy.kind is kind:
                res.append((model, cast("RelationInfo", strategy.info)))  # type: ignore[attr-defined]
    return res


def delete_dn_references(obj: "Model") -> None:
    """
    Strip the DN of ``obj`` from every owner entry that points at it.  Run
    before ``obj`` is deleted.
    """
    dn = obj.dn
    for model, info in _owner_relations(obj, by_dn=True):
        for owner_dn in find_owner_dns(info, model, dn):
            if dn_equal(owner_dn, dn):
                continue
            remove_reference(info, owner_dn, dn)


def delete_attribute_references(obj: "Model") -> None:
    """
    Strip the join attribute value of ``obj`` from every owner entry that
    points at it.  Run before ``obj`` is deleted.
    """
    for model, info in _owner_relations(obj, by_dn=False):
        try:
            value = correlation_value(info, obj)
        except ConfigurationError:
            # no join value, so nothing can point at obj
            continue
        for owner_dn in find_owner_dns(info, model, value):
            if dn_equal(owner_dn, obj.dn):
                continue
            remove_reference(info, owner_dn, value)
