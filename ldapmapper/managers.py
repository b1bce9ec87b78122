# mypy: disable-error-code="attr-defined"
"""
The persistence orchestrator.

Each model gets an :py:class:`LdapManager` as ``Model.objects``.  The manager
owns the connections to the model's LDAP server and runs every read and
write: it asks each field's mapping strategy to fill in an attribute buffer,
turns the buffer into an ``add_s`` or ``modify_s`` call, renames entries whose
DN has moved, cleans up references before deleting, and builds
:py:class:`~ldapmapper.query.Query` objects for searching.

Every write runs inside a :py:class:`~ldapmapper.transaction.Transaction`.  If
you don't pass one, the manager makes one and commits it before returning.
"""

import logging
import threading
from collections.abc import Callable
from functools import wraps
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional, cast

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

from ldapmapper import ldap

from .exceptions import (
    AmbiguousMatch,
    ConfigurationError,
    NonEmptyContainer,
    ObjectNotFound,
    translate_ldap_errors,
)
from .location import dn_equal, normalize_dn, parent_dn, split_dn
from .query import Expression, Query
from .relations import delete_attribute_references, delete_dn_references
from .resolver import (
    and_filters,
    parent_link,
    resolve_dn,
    search_base,
    search_filter,
    search_scope,
)
from .transaction import Transaction
from .typing import AddModlist, AttributeBuffer, LDAPData, ModifyModList

if TYPE_CHECKING:
    from .models import Model
    from .strategies import RelationByHierarchyStrategy

logger = logging.getLogger("django-ldapmapper")


def atomic(key: str = "read") -> Callable:
    """
    Decorator to wrap methods that need to talk to an LDAP server.

    Args:
        key: Either "read" or "write". Determines which LDAP server to use.

    Returns:
        A decorator that manages LDAP connection context for the wrapped method.

    """

    def real_decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(self, *args, **kwargs) -> Callable:
            if self.has_connection():
                # Ensure we're not currently in a wrapped function
                return func(self, *args, **kwargs)
            self.connect(key)
            try:
                retval = func(self, *args, **kwargs)
            finally:
                # We do this in a finally: branch so that the ldap
                # connection gets cleaned up no matter what happens in
                # `func()`.
                self.disconnect()
            return retval

        return wrapper

    return real_decorator


class Modlist:
    """
    Helper for turning attribute buffers into python-ldap modlists.

    Args:
        manager: The LdapManager instance this modlist is associated with.

    """

    def __init__(self, manager: "LdapManager") -> None:
        self.manager = manager

    def _get_modlist(
        self,
        data: dict[str, Any],
        modtype: int = ldap.MOD_REPLACE,  # type: ignore[attr-defined]
    ) -> ModifyModList:
        _modlist: ModifyModList = []
        for key, value in data.items():
            if modtype == ldap.MOD_DELETE:  # type: ignore[attr-defined]
                _modlist.append((ldap.MOD_DELETE, key, None))  # type: ignore[attr-defined]
            else:
                _modlist.append((modtype, key, value))
        return _modlist

    def add(self, buffer: AttributeBuffer) -> AddModlist:
        """
        Convert an attribute buffer to a modlist suitable for passing to
        ``add_s``.  Attributes with no values are left out.

        Raises:
            ImproperlyConfigured: the buffer has no object classes

        """
        if not buffer.get("objectClass"):
            msg = "Tried to add an object with no objectclasses defined."
            raise ImproperlyConfigured(msg)
        return ldap.modlist.addModlist({k: v for k, v in buffer.items() if v})

    def update(self, buffer: AttributeBuffer, old: AttributeBuffer) -> ModifyModList:
        """
        Build a modlist that changes the stored attributes ``old`` (keys lower
        cased) to match ``buffer``, using MOD_DELETE for attributes that
        should no longer exist and MOD_REPLACE for the rest.  Unchanged
        attributes are left out.
        """
        deletes: dict[str, Any] = {}
        replacements: dict[str, Any] = {}
        for key, value in buffer.items():
            current = old.get(key.lower(), [])
            if sorted(current) == sorted(value):
                continue
            if value == []:
                deletes[key] = None
            else:
                replacements[key] = value
        d_modlist = self._get_modlist(deletes, ldap.MOD_DELETE)  # type: ignore[attr-defined]
        r_modlist = self._get_modlist(replacements, ldap.MOD_REPLACE)  # type: ignore[attr-defined]
        return r_modlist + d_modlist


class LdapManager:
    """
    Manager class for direct interactions with LDAP servers.

    This class is thread-safe -- it will use a different LDAP connection for
    each thread.  This is important because LDAP connections are not
    thread-safe.

    """

    def __init__(self) -> None:
        self.logger = logger
        # These get set during contribute_to_class()
        # self.config is the part of settings.LDAP_SERVERS that we need for our Model
        self.config: dict[str, Any] | None = None
        self.model: type[Model] | None = None
        # keys in this dictionary get manipulated by .connect() and .disconnect()
        self._ldap_objects: dict[threading.Thread, ldap.ldapobject.LDAPObject] = {}  # type: ignore[name-defined]

    def contribute_to_class(self, cls, accessor_name) -> None:
        """
        Set up the manager for a model class.

        Args:
            cls: The model class.
            accessor_name: The attribute name to assign the manager to.

        Raises:
            ImproperlyConfigured: ``settings.LDAP_SERVERS`` is missing or has
                no entry for ``Meta.ldap_server``, or a concrete model has no
                ``Meta.basedn`` and the server has no ``basedn`` either

        """
        meta = cls._meta
        try:
            self.config = settings.LDAP_SERVERS[meta.ldap_server]
        except AttributeError as e:
            msg = "settings.LDAP_SERVERS does not exist!"
            raise ImproperlyConfigured(msg) from e
        except KeyError as e:
            msg = (
                f"{cls.__name__}: settings.LDAP_SERVERS has no key "
                f"'{meta.ldap_server}'"
            )
            raise ImproperlyConfigured(msg) from e

        if not meta.basedn and not (meta.abstract or meta.embedded):
            try:
                meta.basedn = self.config["basedn"]  # type: ignore[index]
            except KeyError as e:
                msg = (
                    f"{cls.__name__}: no Meta.basedn and settings.LDAP_SERVERS"
                    f"['{meta.ldap_server}'] has no 'basedn' key"
                )
                raise ImproperlyConfigured(msg) from e
        self.model = cls
        meta.base_manager = self
        setattr(cls, accessor_name, self)

    @property
    def basedn(self) -> str | None:
        """
        Where searches for our model start.
        """
        return search_base(cast("type[Model]", self.model))

    def dn(self, obj: "Model") -> str:
        """
        Compute the DN ``obj`` would be stored at now.
        """
        return resolve_dn(obj)

    def get_dn(self, pk: Any) -> str:
        """
        Given a value for an object primary key, return what the dn for that
        object would look like.
        """
        model = cast("type[Model]", self.model)
        obj = model()
        obj.pk = pk
        return resolve_dn(obj)

    # -----------------------
    # Connections
    # -----------------------

    def disconnect(self) -> None:
        """
        Disconnect the current thread's LDAP connection.
        """
        self.connection.unbind_s()
        self.remove_connection()

    def has_connection(self) -> bool:
        return threading.current_thread() in self._ldap_objects

    def set_connection(self, obj: ldap.ldapobject.LDAPObject) -> None:  # type: ignore[name-defined]
        """
        Set the LDAP connection object for the current thread.

        Args:
            obj: The LDAPObject to set.

        """
        self._ldap_objects[threading.current_thread()] = obj

    def remove_connection(self) -> None:
        del self._ldap_objects[threading.current_thread()]

    def _connect(  # noqa: PLR0912, PLR0915
        self, key: str, dn: str | None = None, password: str | None = None
    ) -> ldap.ldapobject.LDAPObject:  # type: ignore[name-defined]
        """
        Create and return a new LDAP connection object.

        Args:
            key: Configuration key for the LDAP server.
            dn: Optional bind DN.
            password: Optional password.

        Raises:
            ValueError: If the ``tls_verify`` value in the configuration is invalid.
            OSError: If one of the TLS files is configured but does not exist
                or is not a file.

        Returns:
            A connected LDAPObject.

        """
        config = cast("dict[str, Any]", self.config)[key]
        if not dn:
            dn = config["user"]
            password = config["password"]
        ldap_object: ldap.ldapobject.LDAPObject = ldap.initialize(config["url"])  # type: ignore[name-defined]
        if config.get("follow_referrals", False):
            ldap_object.set_option(ldap.OPT_REFERRALS, 1)  # type: ignore[attr-defined]
        else:
            ldap_object.set_option(ldap.OPT_REFERRALS, 0)  # type: ignore[attr-defined]
        timeout = config.get("timeout", 15.0)
        ldap_object.set_option(ldap.OPT_NETWORK_TIMEOUT, float(timeout))  # type: ignore[attr-defined]
        sizelimit = config.get("sizelimit", None)
        if sizelimit:
            ldap_object.set_option(ldap.OPT_SIZELIMIT, int(sizelimit))  # type: ignore[attr-defined]
        tls_verify = config.get("tls_verify", "never")
        if tls_verify == "never":
            ldap_object.set_option(ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_NEVER)  # type: ignore[attr-defined]
        elif tls_verify == "always":
            ldap_object.set_option(ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_DEMAND)  # type: ignore[attr-defined]
        else:
            msg = f"Invalid tls_verify value: {tls_verify}"
            raise ValueError(msg)
        for setting, option, label in (
            ("tls_ca_certfile", ldap.OPT_X_TLS_CACERTFILE, "CA Certificate file"),  # type: ignore[attr-defined]
            ("tls_certfile", ldap.OPT_X_TLS_CERTFILE, "TLS Certificate file"),  # type: ignore[attr-defined]
            ("tls_keyfile", ldap.OPT_X_TLS_KEYFILE, "TLS Key file"),  # type: ignore[attr-defined]
        ):
            if filename := config.get(setting, None):
                path = Path(filename)
                if not path.exists():
                    msg = f"{label} does not exist: {filename}"
                    raise OSError(msg)
                if not path.is_file():
                    msg = f"{label} is not a file: {filename}"
                    raise OSError(msg)
                ldap_object.set_option(option, filename)
        ldap_object.set_option(ldap.OPT_X_TLS_NEWCTX, 0)  # type: ignore[attr-defined]
        if config.get("use_starttls", True):
            ldap_object.start_tls_s()
        ldap_object.simple_bind_s(dn, password)
        return ldap_object

    def connect(
        self, key: str, dn: str | None = None, password: str | None = None
    ) -> None:
        """
        Set the per-thread LDAP connection object. Used by the @atomic decorator.
        """
        self._ldap_objects[threading.current_thread()] = self._connect(
            key, dn=dn, password=password
        )

    def new_connection(
        self, key: str = "read", dn: str | None = None, password: str | None = None
    ) -> ldap.ldapobject.LDAPObject:  # type: ignore[name-defined]
        """
        Create and return a new LDAP connection object without making it the
        current thread's connection.
        """
        return self._connect(key, dn=dn, password=password)

    @property
    def connection(self) -> ldap.ldapobject.LDAPObject:  # type: ignore[name-defined]
        return self._ldap_objects[threading.current_thread()]

    # -----------------------
    # Reading
    # -----------------------

    @atomic(key="read")
    def search(
        self,
        searchfilter: str | None,
        attributes: list[str],
        sizelimit: int = 0,
        basedn: str | None = None,
        scope: int = ldap.SCOPE_SUBTREE,  # type: ignore[attr-defined]
    ) -> list[LDAPData]:
        """
        Search the LDAP server for objects matching the given filter.

        Args:
            searchfilter: The LDAP search filter string; ``None`` matches
                every entry
            attributes: List of attributes to retrieve.
            sizelimit: Maximum number of results to return; 0 means no limit
            basedn: The base DN to search from; defaults to our model's
                search base
            scope: LDAP search scope.

        Raises:
            ValueError: If no basedn is provided or configured.
            ObjectNotFound: the base DN does not exist
            DatastoreError: the search failed

        Returns:
            List of LDAPData tuples (dn, attrs).

        """
        if basedn is None:
            basedn = self.basedn
        if not basedn:
            msg = (
                "basedn is required either as a parameter or in the model's Meta class"
            )
            raise ValueError(msg)
        searchfilter = searchfilter or "(objectClass=*)"
        self.logger.debug(
            "ldapmapper.manager.search basedn=%s scope=%s filter=%s",
            basedn,
            scope,
            searchfilter,
        )
        with translate_ldap_errors(basedn):
            data = self.connection.search_s(
                basedn, scope, filterstr=searchfilter, attrlist=attributes
            )
        # We have to filter out and references that AD puts in
        results = [obj for obj in data if isinstance(obj[1], dict)]
        if sizelimit:
            results = results[:sizelimit]
        return results

    @atomic(key="read")
    def read_entry(self, dn: str, attributes: list[str]) -> AttributeBuffer:
        """
        Read ``attributes`` of the entry at ``dn``.

        Raises:
            ObjectNotFound: there is no entry at ``dn``

        Returns:
            The attributes, with lower cased names.

        """
        with translate_ldap_errors(dn):
            data = self.connection.search_s(
                dn,
                ldap.SCOPE_BASE,  # type: ignore[attr-defined]
                filterstr="(objectClass=*)",
                attrlist=attributes,
            )
        for _, attrs in data:
            if isinstance(attrs, dict):
                return {k.lower(): v for k, v in attrs.items()}
        msg = f"No such object: {dn}"
        raise ObjectNotFound(msg)

    def read_attribute(self, dn: str, attribute: str) -> list[str]:
        """
        Return the values of one attribute of the entry at ``dn``, decoded.
        """
        values = self.read_entry(dn, [attribute]).get(attribute.lower(), [])
        return [v.decode("utf-8") for v in values]

    def get_entries(
        self,
        base: str | None = None,
        extra_filter: str | None = None,
        subclasses: bool = True,
        scope: int | None = None,
    ) -> list["Model"]:
        """
        Load every entry of our model, and optionally of its subclasses.

        Each class is searched with its own object class filter ANDed with
        ``extra_filter``.  When a subclass matches an entry its parent class
        also matched, the subclass wins.

        Keyword Args:
            base: search here instead of each class's search base
            extra_filter: an additional filter the entries must match
            subclasses: also search for the subclasses of our model
            scope: an ``ldap.SCOPE_*`` value overriding each class's scope

        Returns:
            The loaded instances.  Abstract classes yield nothing, and a
            missing base DN means no results.

        """
        model = cast("type[Model]", self.model)
        if model._meta.abstract:
            return []
        models = [model, *(model._meta.subclasses if subclasses else [])]
        found: dict[str, tuple[type[Model], LDAPData]] = {}
        for cls in models:
            meta = cls._meta
            if meta.abstract:
                continue
            cls_base = base or search_base(cls)
            if not cls_base:
                continue
            cls_scope = search_scope(cls) if scope is None else scope
            manager = cast("LdapManager", meta.base_manager)
            try:
                data = manager.search(
                    and_filters(search_filter(cls), extra_filter),
                    meta.attributes,
                    basedn=cls_base,
                    scope=cls_scope,
                )
            except ObjectNotFound:
                data = []
            for dn, attrs in data:
                if cls_scope == ldap.SCOPE_SUBTREE and dn_equal(dn, cls_base):  # type: ignore[attr-defined]
                    continue
                found[normalize_dn(dn)] = (cls, (dn, attrs))
        return [cls.from_db(data) for cls, data in found.values()]

    def _single(self, objects: list["Model"], searchfilter: str) -> "Model":
        model = cast("type[Model]", self.model)
        if len(objects) == 0:
            msg = f"A {model.__name__} object matching {searchfilter} does not exist."
            raise model.DoesNotExist(msg)
        if len(objects) > 1:
            msg = f"Ambiguous match: {len(objects)} {model.__name__} objects match {searchfilter}"
            raise AmbiguousMatch(msg)
        return objects[0]

    def get_by_dn(self, dn: str, transaction: Optional["Transaction"] = None) -> "Model":
        """
        Get an object by its DN.

        We search our model's search base, including subclasses, for entries
        with the leftmost RDN of ``dn``.  If that finds more than one entry,
        the one at exactly ``dn`` wins.

        Args:
            dn: The distinguished name to look for.

        Keyword Args:
            transaction: if given, an instance this transaction already holds
                for ``dn`` is returned instead of a fresh one

        Raises:
            DoesNotExist: no object has this RDN
            AmbiguousMatch: more than one object matches

        Returns:
            The model instance corresponding to the DN.

        """
        if transaction is not None:
            held = transaction.lookup(dn)
            if held is not None and isinstance(held, cast("type[Model]", self.model)):
                return held
        attr, value, _ = split_dn(dn)[0][0]
        term = f"({attr}={ldap.filter.escape_filter_chars(value)})"
        objects = self.get_entries(extra_filter=term)
        if len(objects) > 1:
            exact = [obj for obj in objects if dn_equal(obj._dn, dn)]
            if len(exact) == 1:
                objects = exact
        obj = self._single(objects, term)
        if transaction is not None:
            transaction.register(obj)
        return obj

    def get_by_attribute(self, attribute: str, value: str) -> "Model":
        """
        Get the single object whose ``attribute`` equals ``value``.

        Raises:
            DoesNotExist: no object matches
            AmbiguousMatch: more than one object matches

        """
        term = f"({attribute}={ldap.filter.escape_filter_chars(value)})"
        return self._single(self.get_entries(extra_filter=term), term)

    def fetch(self, obj: "Model") -> None:
        """
        Reload the fields of ``obj`` from its entry.  Relation and child-entry
        fields are dropped so they load again on next access.

        Raises:
            ObjectNotFound: the entry no longer exists

        """
        meta = obj._meta
        attrs = self.read_entry(obj.dn, meta.attributes)
        for name, strategy in meta.strategies.items():
            if strategy.lazy:
                obj.__dict__.pop(name, None)
            else:
                setattr(obj, name, strategy.fetch(obj, attrs))

    def locate(self, obj: "Model") -> None:
        """
        Raises:
            ObjectNotFound: ``obj`` has no entry in the directory

        """
        self.read_entry(obj.dn, ["objectClass"])

    # -----------------------
    # Writing
    # -----------------------

    def _run(self, method: Callable, obj: "Model", transaction: Transaction | None) -> None:
        if transaction is None:
            with Transaction() as txn:
                method(obj, txn)
        else:
            method(obj, transaction)

    def _check_parent(self, obj: "Model") -> None:
        location = obj._meta.location
        if not location.is_hierarchical or obj._state.owner is not None:
            return
        _, parent = parent_link(obj)
        if parent is None and not location.dn:
            msg = (
                f"{obj!r} has no value for '{location.parent_field}', and "
                f"{obj._meta.object_name} has no fallback DN to be stored under"
            )
            raise ConfigurationError(msg)

    @atomic(key="write")
    def insert(self, obj: "Model", transaction: Transaction | None = None) -> None:
        """
        Add ``obj`` to the directory.

        Args:
            obj: a new model instance

        Keyword Args:
            transaction: the transaction to work in; if ``None`` the work is
                committed before returning

        Raises:
            ConfigurationError: a hierarchical object has no parent and its
                model has no fallback DN
            AlreadyExists: there is already an entry at the object's DN

        """
        self._run(self._insert, obj, transaction)

    def _insert(self, obj: "Model", transaction: Transaction) -> None:
        meta = obj._meta
        self._check_parent(obj)
        values: dict[str, Any] = {}
        with transaction.inserting(obj):
            buffer: AttributeBuffer = {}
            for name, strategy in meta.strategies.items():
                if name == "objectclass" or not strategy.field.editable:
                    continue
                values[name] = getattr(obj, name)
                strategy.insert(obj, values[name], buffer, transaction)
            objectclasses = list(meta.objectclasses)
            for objectclass in meta.extra_objectclasses:
                if objectclass not in objectclasses:
                    objectclasses.append(objectclass)
            buffer["objectClass"] = [oc.encode("utf-8") for oc in objectclasses]
            dn = resolve_dn(obj, transaction=transaction)
            self.logger.debug("ldapmapper.manager.insert dn=%s", dn)
            with translate_ldap_errors(dn):
                self.connection.add_s(dn, Modlist(self).add(buffer))
            obj._dn = dn
            obj._state.adding = False
            obj.objectclass = objectclasses  # type: ignore[attr-defined]
            transaction.persisted(obj)
            for name, strategy in meta.strategies.items():
                if name in values:
                    strategy.post_insert(obj, values[name], transaction)

    @atomic(key="write")
    def update(self, obj: "Model", transaction: Transaction | None = None) -> None:
        """
        Write the changes to ``obj`` back to its entry.

        If the DN of ``obj`` has moved, because its primary key or its parent
        changed, the entry is renamed first.  Only the attributes whose
        values differ from what is stored are modified; an unchanged object
        issues no modify at all.  Relation and embedded fields are only
        written if they have been read or assigned.

        Keyword Args:
            transaction: the transaction to work in; if ``None`` the work is
                committed before returning

        """
        if obj._state.adding:
            self.insert(obj, transaction=transaction)
            return
        self._run(self._update, obj, transaction)

    def _stays_put(self, obj: "Model") -> bool:
        # Child entries loaded without their owner can't compute a new DN
        location = obj._meta.location
        return (
            obj._state.owner is None
            and not location.dn
            and not location.is_hierarchical
        )

    def _rename_if_moved(self, obj: "Model", transaction: Transaction) -> None:
        meta = obj._meta
        if meta.location.is_hierarchical:
            loaded, parent = parent_link(obj)
            if loaded:
                strategy = cast(
                    "RelationByHierarchyStrategy",
                    meta.get_strategy(cast("str", meta.location.parent_field)),
                )
                strategy.ensure_parent(parent, transaction)
        old_dn = obj._dn or resolve_dn(obj, force=True, transaction=transaction)
        if self._stays_put(obj):
            obj._dn = old_dn
            return
        new_dn = resolve_dn(obj, transaction=transaction)
        if not dn_equal(old_dn, new_dn):
            transaction.forget(obj)
            self.rename(old_dn, new_dn)
        obj._dn = new_dn

    def _update(self, obj: "Model", transaction: Transaction) -> None:
        meta = obj._meta
        self._rename_if_moved(obj, transaction)
        dn = cast("str", obj._dn)
        buffer: AttributeBuffer = {}
        for name, strategy in meta.strategies.items():
            field = strategy.field
            if name == "objectclass" or not field.editable:
                continue
            if strategy.lazy and name not in obj.__dict__:
                continue
            strategy.update(obj, getattr(obj, name), buffer, transaction)
        _modlist: ModifyModList = []
        if buffer:
            _modlist = Modlist(self).update(buffer, self.read_entry(dn, list(buffer)))
        if _modlist:
            # Only issue the modify_s if we actually have changes
            self.logger.debug("ldapmapper.manager.update dn=%s", dn)
            with translate_ldap_errors(dn):
                self.connection.modify_s(dn, _modlist)
        else:
            self.logger.debug("ldapmapper.manager.update.no-changes dn=%s", dn)
        transaction.persisted(obj)

    def save(self, obj: "Model", transaction: Transaction | None = None) -> None:
        """
        Insert ``obj`` if it is new, update it otherwise.
        """
        if obj._state.adding:
            self.insert(obj, transaction=transaction)
        else:
            self.update(obj, transaction=transaction)

    @atomic(key="write")
    def delete(self, obj: "Model", transaction: Transaction | None = None) -> None:
        """
        Delete the entry of ``obj``.

        Dependent relations are queued for deletion, and every reference to
        ``obj`` held by other entries is removed before the entry itself is
        deleted.  Entries that still have children are deleted recursively.

        Keyword Args:
            transaction: the transaction to work in; if ``None`` the work is
                committed before returning

        """
        self._run(self._delete, obj, transaction)

    def _delete(self, obj: "Model", transaction: Transaction) -> None:
        if obj._state.deleted:
            return
        meta = obj._meta
        dn = obj.dn
        for strategy in meta.strategies.values():
            strategy.delete(obj, transaction)
        delete_dn_references(obj)
        delete_attribute_references(obj)
        self.logger.debug("ldapmapper.manager.delete dn=%s", dn)
        self._unbind_entry(dn)
        transaction.forget(obj)
        obj._state.deleted = True

    @atomic(key="write")
    def _unbind_entry(self, dn: str) -> None:
        try:
            with translate_ldap_errors(dn):
                self.connection.delete_s(dn)
        except NonEmptyContainer:
            self.logger.debug("ldapmapper.manager.delete.non-leaf dn=%s", dn)
            self.delete_recursive(dn)

    @atomic(key="write")
    def delete_recursive(self, dn: str) -> None:
        """
        Delete the entry at ``dn`` and everything below it.
        """
        with translate_ldap_errors(dn):
            children = self.connection.search_s(
                dn,
                ldap.SCOPE_ONELEVEL,  # type: ignore[attr-defined]
                filterstr="(objectClass=*)",
                attrlist=["objectClass"],
            )
        for child_dn, attrs in children:
            if isinstance(attrs, dict):
                self._unbind_entry(child_dn)
        self.logger.debug("ldapmapper.manager.delete-recursive dn=%s", dn)
        with translate_ldap_errors(dn):
            self.connection.delete_s(dn)

    @atomic(key="write")
    def rename(self, old_dn: str, new_dn: str) -> None:
        """
        Move the entry at ``old_dn`` to ``new_dn``, changing its parent if
        needed.
        """
        newrdn = ldap.dn.dn2str(split_dn(new_dn)[:1])
        newsuperior = parent_dn(new_dn)
        if dn_equal(parent_dn(old_dn), newsuperior):
            newsuperior = None
        self.logger.debug(
            "ldapmapper.manager.rename old_dn=%s new_dn=%s", old_dn, new_dn
        )
        with translate_ldap_errors(old_dn):
            self.connection.rename_s(old_dn, newrdn, newsuperior)

    @atomic(key="write")
    def replace_attribute(self, dn: str, attribute: str, values: list[str]) -> None:
        """
        Replace the values of one attribute of the entry at ``dn``.  An empty
        ``values`` deletes the attribute.
        """
        if values:
            _modlist = [(ldap.MOD_REPLACE, attribute, [v.encode("utf-8") for v in values])]  # type: ignore[attr-defined]
        else:
            _modlist = [(ldap.MOD_DELETE, attribute, None)]  # type: ignore[attr-defined]
        with translate_ldap_errors(dn):
            self.connection.modify_s(dn, _modlist)

    def create(self, **kwargs) -> "Model":
        """
        Create a new object and add it to the directory.
        """
        obj = cast("type[Model]", self.model)(**kwargs)
        self.insert(obj)
        return obj

    # -----------------------
    # Queries
    # -----------------------

    def all(self) -> Query:
        return Query(self)

    def filter(self, *args: Expression, **kwargs) -> Query:
        return Query(self).filter(*args, **kwargs)

    def exclude(self, *args: Expression, **kwargs) -> Query:
        return Query(self).exclude(*args, **kwargs)

    def query(self, expression: Expression, **parameters) -> Query:
        """
        Query with an expression tree; ``parameters`` supply the values of
        its :py:class:`~ldapmapper.query.Parameter` nodes.
        """
        return Query(self, expression=expression, parameters=parameters)

    def order_by(self, *args: str) -> Query:
        return Query(self).order_by(*args)

    def get(self, *args: Expression, **kwargs) -> "Model":
        return Query(self).get(*args, **kwargs)

    def first(self) -> Optional["Model"]:
        return Query(self).first()

    def count(self) -> int:
        return Query(self).count()
