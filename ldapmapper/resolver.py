"""
Computing the DN of an object, and where to search for a model's entries.

The DN of an object depends on its model's location (see
:py:mod:`ldapmapper.location`):

* an embedded value stored as a child entry lives directly below its owner;
* a ``base`` scope location is a single fixed entry;
* a hierarchical location composes ``parentDn + suffix + rdn``, where the
  parent is the object referenced by the parent field;
* anything else is ``rdn`` below the fixed container DN.

The RDN is always built from the primary key.
"""

import logging
from typing import TYPE_CHECKING, Any, Optional, cast

from ldapmapper import ldap

from .exceptions import ConfigurationError, ObjectNotFound, RecursiveDNComposition
from .location import compose_dn, dn_size, make_rdn, parent_dn

if TYPE_CHECKING:
    from .models import Model
    from .transaction import Transaction

logger = logging.getLogger("django-ldapmapper")


def rdn_for(obj: "Model") -> str:
    """
    Build the RDN of ``obj`` from its primary key.

    Raises:
        ConfigurationError: the model has no primary key, or it is empty

    """
    field = obj._meta.pk
    if field is None:
        msg = f"{obj._meta.object_name} has no primary key to build an RDN from"
        raise ConfigurationError(msg)
    value = getattr(obj, cast("str", field.name))
    if value is None or value == "":
        msg = f"Cannot compute the DN of {obj!r}: its primary key is empty"
        raise ConfigurationError(msg)
    return make_rdn(field.ldap_attribute, field.encode_value(value).decode("utf-8"))


def parent_link(obj: "Model") -> tuple[bool, Any]:
    """
    Return whether the parent field of ``obj`` has been loaded or assigned,
    and its value if so.  This never loads it from the directory.
    """
    name = cast("str", obj._meta.location.parent_field)
    if name in obj.__dict__:
        return True, obj.__dict__[name]
    return False, None


def resolve_dn(
    obj: "Model",
    force: bool = False,
    transaction: Optional["Transaction"] = None,
    _visited: set[int] | None = None,
) -> str:
    """
    Compute the DN of ``obj`` from its current state.

    Args:
        obj: the object

    Keyword Args:
        force: ignore the in-memory parent reference and ask the directory
            where the entry lives
        transaction: the transaction we're working in

    Raises:
        RecursiveDNComposition: resolving the DN visits ``obj`` twice
        ObjectNotFound: a forced lookup found no entry and there is no
            fallback DN
        ConfigurationError: the model's location cannot produce a DN

    Returns:
        The DN.

    """
    visited = set() if _visited is None else _visited
    if id(obj) in visited:
        msg = f"Recursive DN composition while resolving the DN of {obj!r}"
        raise RecursiveDNComposition(msg)
    visited.add(id(obj))

    meta = obj._meta
    location = meta.location
    owner = obj._state.owner
    if owner is not None:
        return compose_dn(
            resolve_dn(owner, transaction=transaction, _visited=visited), rdn_for(obj)
        )
    if location.scope == ldap.SCOPE_BASE:  # type: ignore[attr-defined]
        if not location.dn:
            msg = f"{meta.object_name}: a base scope location needs a DN"
            raise ConfigurationError(msg)
        return location.dn
    if location.is_hierarchical:
        rdn = rdn_for(obj)
        if not force:
            loaded, parent = parent_link(obj)
            if loaded and parent is not None:
                base_dn = resolve_dn(parent, transaction=transaction, _visited=visited)
                return compose_dn(base_dn, location.suffix, rdn)
            if not loaded and obj._dn:
                # The parent reference was never touched, so the entry is
                # still below the parent it was loaded from.
                levels = 1 + dn_size(location.suffix)
                return compose_dn(parent_dn(obj._dn, levels), location.suffix, rdn)
            if location.dn:
                return compose_dn(location.dn, location.suffix, rdn)
        return _lookup_dn(obj, rdn)
    if not location.dn:
        msg = f"{meta.object_name} has no location to compute a DN from"
        raise ConfigurationError(msg)
    return compose_dn(location.dn, rdn_for(obj))


def _lookup_dn(obj: "Model", rdn: str) -> str:
    """
    Find the entry for ``obj`` below its parent type's search base and
    rebuild its DN from the parent DN it was found under.
    """
    meta = obj._meta
    location = meta.location
    parent_model = meta.get_field(cast("str", location.parent_field)).remote_model  # type: ignore[attr-defined]
    manager = meta.base_manager
    base = search_base(parent_model)
    searchfilter = rdn_filter(type(obj), rdn)
    logger.debug(
        "ldapmapper.resolver.lookup base=%s filter=%s", base, searchfilter
    )
    try:
        results = manager.search(  # type: ignore[union-attr]
            searchfilter,
            [meta.pk.ldap_attribute],  # type: ignore[union-attr]
            basedn=base,
            scope=search_scope(type(obj)),
        )
    except ObjectNotFound:
        results = []
    if results:
        found_parent = parent_dn(results[0][0], 1 + dn_size(location.suffix))
        return compose_dn(found_parent, location.suffix, rdn)
    if location.dn:
        return compose_dn(location.dn, location.suffix, rdn)
    msg = f"No entry for {obj!r} below {base}"
    raise ObjectNotFound(msg)


def rdn_filter(model: "type[Model]", rdn: str) -> str:
    """
    Build ``(&<objectclass filter>(attr=value))`` for the leftmost RDN of
    ``rdn``.
    """
    attr, value, _ = ldap.dn.str2dn(rdn)[0][0]
    term = f"({attr}={ldap.filter.escape_filter_chars(value)})"
    return and_filters(search_filter(model), term)


def and_filters(*filters: str | None) -> str:
    """
    AND together the filters that are not ``None``.
    """
    parts = [f for f in filters if f]
    if len(parts) == 1:
        return parts[0]
    return "(&{})".format("".join(parts))


def search_base(
    model: "type[Model]", _visited: set["type[Model]"] | None = None
) -> str | None:
    """
    Where searches for ``model`` start.

    For a hierarchical model without a fallback DN this is the search base of
    the parent model with our suffix added; otherwise it is the location DN.

    Raises:
        RecursiveDNComposition: the parent chain of models loops back on itself

    """
    location = model._meta.location
    if location.is_hierarchical and not location.dn:
        visited = set() if _visited is None else _visited
        if model in visited:
            msg = f"Recursive DN composition computing the search base of {model.__name__}"
            raise RecursiveDNComposition(msg)
        visited.add(model)
        parent_model = model._meta.get_field(cast("str", location.parent_field)).remote_model  # type: ignore[attr-defined]
        return compose_dn(search_base(parent_model, visited), location.suffix)
    return location.dn


def search_scope(model: "type[Model]") -> int:
    """
    ``SCOPE_ONELEVEL`` for flat models, ``SCOPE_SUBTREE`` for hierarchical
    ones; a scope given in an LDAP URL location wins.
    """
    location = model._meta.location
    if location.scope is not None:
        return location.scope
    if location.is_hierarchical:
        return ldap.SCOPE_SUBTREE  # type: ignore[attr-defined]
    return ldap.SCOPE_ONELEVEL  # type: ignore[attr-defined]


def search_filter(model: "type[Model]") -> str | None:
    """
    The filter that selects entries of ``model``: its object classes ANDed
    with the filter from its location, if any.
    """
    objectclasses = model._meta.objectclasses
    if not objectclasses:
        return None
    url_filter = model._meta.location.filter
    terms = [
        f"(objectClass={ldap.filter.escape_filter_chars(oc)})" for oc in objectclasses
    ]
    if len(terms) == 1 and not url_filter:
        return terms[0]
    if url_filter and not url_filter.startswith("("):
        url_filter = f"({url_filter})"
    return "(&{}{})".format("".join(terms), url_filter or "")
