"""
Location metadata and distinguished name helpers.

A model's ``Meta.basedn`` is a *location string*.  It is one of:

* a bare DN: ``ou=people,dc=example,dc=com``
* a hierarchical pattern: ``<suffix>{<parentField>}``, optionally followed by
  ``|<fixedDn>``, e.g. ``ou=members,{department}|ou=people,dc=example,dc=com``
* an LDAP URL: ``ldap:///<dn-or-pattern>?<ignored>?<scope>?<filter>``, where
  scope is one of ``base``, ``one`` or ``sub`` and empty segments mean "unset".

DNs are handled as strings at the API boundary, but every comparison and
composition goes through python-ldap's parsed form.
"""

from dataclasses import dataclass

from ldap_filter import Filter

from ldapmapper import ldap

from .exceptions import ConfigurationError

#: Maps LDAP URL scope names to python-ldap scope constants.
SCOPES: dict[str, int] = {
    "base": ldap.SCOPE_BASE,  # type: ignore[attr-defined]
    "one": ldap.SCOPE_ONELEVEL,  # type: ignore[attr-defined]
    "sub": ldap.SCOPE_SUBTREE,  # type: ignore[attr-defined]
}

URL_PREFIX = "ldap:///"


@dataclass(frozen=True)
class LocationInfo:
    """
    Where the entries of a model live in the directory tree.

    If ``parent_field`` is set, an entry's DN is not fixed: it is
    ``parentDn + suffix + rdn`` and follows the parent reference.  ``dn`` is
    then only the fallback parent used when the reference is empty.
    """

    #: The fixed container DN (flat mapping), the entry DN itself (``base``
    #: scope), or the fallback parent DN (hierarchical mapping).
    dn: str | None = None
    #: The name of the field holding the parent object.
    parent_field: str | None = None
    #: RDNs inserted between the parent DN and the entry RDN.
    suffix: str | None = None
    #: An extra filter fragment ANDed into every search.
    filter: str | None = None
    #: A ``ldap.SCOPE_*`` value overriding the default search scope.
    scope: int | None = None

    @property
    def is_hierarchical(self) -> bool:
        return self.parent_field is not None


def _check_dn(dn: str, raw: str) -> str:
    if not ldap.dn.is_dn(dn):
        msg = f"Invalid LDAP DN: {raw}"
        raise ConfigurationError(msg)
    return dn


def parse_location(raw: str | None) -> LocationInfo:  # noqa: PLR0912
    """
    Parse a location string into a :py:class:`LocationInfo`.

    Args:
        raw: the location string, usually ``Meta.basedn``

    Raises:
        ConfigurationError: the string contains an invalid DN, scope or filter

    Returns:
        The parsed location.

    """
    if not raw:
        return LocationInfo()
    scope: int | None = None
    url_filter: str | None = None
    dn_or_pattern: str = raw
    if raw.startswith(URL_PREFIX):
        # ldap:///dn?attributes?scope?filter?extensions
        parts = raw[len(URL_PREFIX) :].split("?", 4)
        dn_or_pattern = parts[0]
        if len(parts) > 2 and parts[2]:  # noqa: PLR2004
            try:
                scope = SCOPES[parts[2]]
            except KeyError as e:
                msg = f"Invalid scope in LDAP URL: {parts[2]}"
                raise ConfigurationError(msg) from e
        if len(parts) > 3 and parts[3]:  # noqa: PLR2004
            url_filter = parts[3]
            try:
                Filter.parse(url_filter)
            except Exception as e:
                msg = f"Invalid filter in LDAP URL: {url_filter}"
                raise ConfigurationError(msg) from e

    left = dn_or_pattern.find("{")
    right = dn_or_pattern.find("}")
    if left > -1 and right > left:
        parent_field = dn_or_pattern[left + 1 : right]
        suffix = dn_or_pattern[:left].strip().rstrip(",").strip() or None
        if suffix:
            _check_dn(suffix, raw)
        fixed_dn = None
        rest = dn_or_pattern[right + 1 :]
        if len(rest) > 1 and rest[0] == "|":
            fixed_dn = _check_dn(rest[1:], raw)
        return LocationInfo(
            dn=fixed_dn,
            parent_field=parent_field,
            suffix=suffix,
            filter=url_filter,
            scope=scope,
        )
    return LocationInfo(
        dn=_check_dn(dn_or_pattern, raw) if dn_or_pattern else None,
        filter=url_filter,
        scope=scope,
    )


# -----------------------
# DN helpers
# -----------------------


def _normalize_rdn(rdn: list[tuple[str, str, int]]) -> tuple[tuple[str, str], ...]:
    return tuple(sorted((attr.lower(), value.strip().lower()) for attr, value, _ in rdn))


def split_dn(dn: str | None) -> list[list[tuple[str, str, int]]]:
    """
    Parse ``dn`` into python-ldap's list of RDNs, leftmost (most specific)
    first.  ``None`` and the empty string parse to an empty list.
    """
    if not dn:
        return []
    return ldap.dn.str2dn(dn)


def compose_dn(parent: str | None, *children: str | None) -> str:
    """
    Compose a DN from a parent DN and the names below it, outermost first::

        compose_dn("dc=example,dc=com", "ou=people", "uid=fred")
        # "uid=fred,ou=people,dc=example,dc=com"

    Composition is associative; ``None`` and empty parts are skipped.

    Args:
        parent: the parent DN
        *children: suffixes and RDNs, each one nested under the previous one

    Returns:
        The composed DN.

    """
    rdns = split_dn(parent)
    for child in children:
        rdns = split_dn(child) + rdns
    return ldap.dn.dn2str(rdns)


def make_rdn(attribute: str, value: str) -> str:
    """
    Build a single-valued RDN, escaping ``value`` as needed.
    """
    return ldap.dn.dn2str([[(attribute, value, 1)]])


def rdn_pair(dn: str) -> tuple[str, str]:
    """
    Return the attribute and (unescaped) value of the leftmost RDN of ``dn``.
    """
    attr, value, _ = split_dn(dn)[0][0]
    return attr, value


def parent_dn(dn: str, levels: int = 1) -> str:
    """
    Strip ``levels`` RDNs from the left of ``dn``.
    """
    return ldap.dn.dn2str(split_dn(dn)[levels:])


def dn_size(dn: str | None) -> int:
    return len(split_dn(dn))


def normalize_dn(dn: str) -> str:
    """
    Return a canonical, lower cased form of ``dn`` suitable for comparisons
    and dictionary keys.
    """
    return ",".join(
        "+".join(f"{a}={v}" for a, v in _normalize_rdn(rdn)) for rdn in split_dn(dn)
    )


def dn_equal(first: str | None, second: str | None) -> bool:
    if first is None or second is None:
        return first is second
    return [_normalize_rdn(r) for r in split_dn(first)] == [
        _normalize_rdn(r) for r in split_dn(second)
    ]


def dn_startswith(dn: str, ancestor: str) -> bool:
    """
    Return ``True`` if ``dn`` equals ``ancestor`` or lives below it.
    """
    rdns = [_normalize_rdn(r) for r in split_dn(dn)]
    prefix = [_normalize_rdn(r) for r in split_dn(ancestor)]
    if len(prefix) > len(rdns):
        return False
    return rdns[len(rdns) - len(prefix) :] == prefix
