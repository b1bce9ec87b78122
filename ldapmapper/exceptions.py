"""
Exceptions raised by ldapmapper.

The taxonomy separates configuration problems (always fatal), missing entries,
conflicts, and generic directory failures, so callers can tell "not found"
apart from an I/O error.
"""

from collections.abc import Iterator
from contextlib import contextmanager

from django.core.exceptions import ImproperlyConfigured

from ldapmapper import ldap


class ConfigurationError(ImproperlyConfigured):
    """
    Raised for mapping metadata that can never work: a malformed location
    string, a field type with no codec, a missing parent reference and the
    like.  These are never retried.
    """


class RecursiveDNComposition(ConfigurationError):
    """Raised when computing a DN visits the same object twice."""


class UnsupportedFieldType(ConfigurationError):
    """Raised when no mapping strategy or codec exists for a field."""


class AmbiguousMatch(ConfigurationError):
    """
    Raised when a lookup, or a single-valued relation, that must match one
    entry matches several.
    """


class ObjectNotFound(Exception):
    """Raised when a directory entry we need does not exist."""


class DatastoreError(Exception):
    """Wraps any directory failure that has no more specific class."""


class AlreadyExists(DatastoreError):
    """Raised when adding an entry whose DN is already taken."""


class NonEmptyContainer(DatastoreError):
    """Raised when deleting an entry that still has children."""


class DecodeError(ValueError):
    """Raised when a stored attribute value cannot be decoded."""


class GeneralizedTimeError(DecodeError):
    """Raised for a malformed generalized time string."""


class OrderingIndexError(DecodeError):
    """Base class for errors in ``{index}`` prefixed values."""


class DuplicateOrderingIndex(OrderingIndexError):
    """Two stored values share the same ordering index."""


class MissingOrderingIndex(OrderingIndexError):
    """A stored value has no ordering index prefix."""


class QueryError(ValueError):
    """Raised for a malformed query expression tree."""


@contextmanager
def translate_ldap_errors(dn: str | None = None) -> Iterator[None]:
    """
    Re-raise python-ldap exceptions as members of our taxonomy.

    Keyword Args:
        dn: the DN we were working on, used in the error messages

    Raises:
        ObjectNotFound: for ``ldap.NO_SUCH_OBJECT``
        AlreadyExists: for ``ldap.ALREADY_EXISTS``
        NonEmptyContainer: for ``ldap.NOT_ALLOWED_ON_NONLEAF``
        DatastoreError: for any other ``ldap.LDAPError``

    """
    try:
        yield
    except ldap.NO_SUCH_OBJECT as e:  # type: ignore[attr-defined]
        msg = f"No such object: {dn}"
        raise ObjectNotFound(msg) from e
    except ldap.ALREADY_EXISTS as e:  # type: ignore[attr-defined]
        msg = f"An entry with dn {dn} already exists"
        raise AlreadyExists(msg) from e
    except ldap.NOT_ALLOWED_ON_NONLEAF as e:  # type: ignore[attr-defined]
        msg = f"Entry {dn} still has children"
        raise NonEmptyContainer(msg) from e
    except ldap.LDAPError as e:  # type: ignore[attr-defined]
        raise DatastoreError(str(e)) from e
