"""
Transactions and the pending-work ledger.

Directory servers have no multi-entry transactions, so a
:py:class:`Transaction` here is a unit of work: every manager operation runs
inside one, changes to *other* entries made while keeping references
consistent are applied immediately, and whole objects that must be persisted
or deleted as a consequence are recorded in the transaction's
:py:class:`PendingWork` ledger and flushed once, at commit.

Example:

.. code-block:: python

    with Transaction() as txn:
        Person.objects.insert(alice, transaction=txn)
        Person.objects.update(bob, transaction=txn)

Passing ``transaction=None`` (the default) to a manager operation runs it in
a transaction of its own that is committed before the call returns.
"""

import logging
from collections.abc import Hashable, Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, cast

from .location import normalize_dn

if TYPE_CHECKING:
    from .managers import LdapManager
    from .models import Model

logger = logging.getLogger("django-ldapmapper")


def ledger_key(obj: "Model") -> Hashable:
    """
    The identity of ``obj`` in the ledger.

    Objects that exist in the directory are identified by their stored DN, so
    that two instances loaded from the same entry are the same ledger item;
    new objects are identified by the instance itself.
    """
    if obj._dn:
        return ("dn", normalize_dn(obj._dn))
    return ("id", id(obj))


class PendingWork:
    """
    The objects a transaction must persist or delete before it commits.

    Exemption from deletion always wins: once an object has been exempted, a
    later request to delete it is ignored.
    """

    def __init__(self) -> None:
        self.persist: dict[Hashable, Model] = {}
        self.delete: dict[Hashable, Model] = {}
        self.exempt: dict[Hashable, Model] = {}

    def __bool__(self) -> bool:
        return bool(self.persist or self.delete)

    def mark_for_persist(self, obj: "Model") -> None:
        self.persist[ledger_key(obj)] = obj

    def mark_for_deletion(self, obj: "Model") -> None:
        key = ledger_key(obj)
        if key in self.exempt:
            return
        self.delete[key] = obj

    def unmark_for_deletion(self, obj: "Model") -> None:
        key = ledger_key(obj)
        self.exempt[key] = obj
        self.delete.pop(key, None)

    def is_exempt(self, obj: "Model") -> bool:
        return ledger_key(obj) in self.exempt

    def take_persist(self) -> list["Model"]:
        objs = list(self.persist.values())
        self.persist.clear()
        return objs

    def take_deletions(self) -> list["Model"]:
        objs = [obj for key, obj in self.delete.items() if key not in self.exempt]
        self.delete.clear()
        return objs

    def clear(self) -> None:
        self.persist.clear()
        self.delete.clear()
        self.exempt.clear()


class Transaction:
    """
    A unit of work over the directory.

    Attributes:
        identity_map: the instances loaded or stored in this transaction,
            keyed by normalized DN

    """

    def __init__(self) -> None:
        self._pending: PendingWork | None = None
        self.identity_map: dict[str, Model] = {}
        self._inserting: set[int] = set()
        self._persisted: set[int] = set()
        self.committed: bool = False

    def __enter__(self) -> "Transaction":
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        if exc_type is None:
            self.commit()
        else:
            self.discard()

    @property
    def pending(self) -> PendingWork:
        """
        Our ledger, created on first use.
        """
        if self._pending is None:
            self._pending = PendingWork()
        return self._pending

    @property
    def has_pending_work(self) -> bool:
        return self._pending is not None and bool(self._pending)

    # -----------------------
    # Ledger
    # -----------------------

    def mark_for_persist(self, obj: "Model") -> None:
        """
        Arrange for ``obj`` to be inserted or updated at commit.  Objects
        already stored by this transaction, or being inserted right now, are
        left alone.
        """
        if id(obj) in self._persisted or self.is_inserting(obj):
            return
        logger.debug("ldapmapper.transaction.mark-for-persist obj=%r", obj)
        self.pending.mark_for_persist(obj)

    def mark_for_deletion(self, obj: "Model") -> None:
        logger.debug("ldapmapper.transaction.mark-for-deletion obj=%r", obj)
        self.pending.mark_for_deletion(obj)

    def unmark_for_deletion(self, obj: "Model") -> None:
        self.pending.unmark_for_deletion(obj)

    # -----------------------
    # Bookkeeping used by the managers
    # -----------------------

    @contextmanager
    def inserting(self, obj: "Model") -> Iterator[None]:
        """
        Flag ``obj`` as being inserted for the duration of the block.
        """
        self._inserting.add(id(obj))
        obj._state.inserting = True
        try:
            yield
        finally:
            obj._state.inserting = False
            self._inserting.discard(id(obj))

    def is_inserting(self, obj: "Model") -> bool:
        return id(obj) in self._inserting

    def persisted(self, obj: "Model") -> None:
        """
        Record that ``obj`` has been stored, and remember it by DN.
        """
        self._persisted.add(id(obj))
        self.register(obj)

    def register(self, obj: "Model") -> None:
        if obj._dn:
            self.identity_map[normalize_dn(obj._dn)] = obj

    def lookup(self, dn: str) -> "Model | None":
        return self.identity_map.get(normalize_dn(dn))

    def forget(self, obj: "Model") -> None:
        if obj._dn:
            self.identity_map.pop(normalize_dn(obj._dn), None)

    # -----------------------
    # Commit
    # -----------------------

    def flush(self) -> None:
        """
        Persist, then delete, everything in the ledger.

        Persisting an object can enqueue more objects, so we loop until the
        ledger is empty.
        """
        if self._pending is None:
            return
        while self._pending:
            for obj in self._pending.take_persist():
                manager = cast("LdapManager", obj._meta.base_manager)
                if obj._state.deleted:
                    continue
                if obj._state.adding:
                    manager.insert(obj, transaction=self)
                else:
                    manager.update(obj, transaction=self)
            if self._pending.persist:
                continue
            for obj in self._pending.take_deletions():
                if obj._state.deleted:
                    continue
                manager = cast("LdapManager", obj._meta.base_manager)
                manager.delete(obj, transaction=self)

    def commit(self) -> None:
        """
        Flush the ledger.  A transaction can only be committed once.

        Raises:
            RuntimeError: the transaction was already committed

        """
        if self.committed:
            msg = "This transaction has already been committed"
            raise RuntimeError(msg)
        self.flush()
        self.committed = True
        self._pending = None

    def discard(self) -> None:
        """
        Drop the ledger without flushing it.  Changes already made in the
        directory are not undone.
        """
        if self.has_pending_work:
            logger.warning(
                "ldapmapper.transaction.discard pending=%d",
                len(cast("PendingWork", self._pending).persist)
                + len(cast("PendingWork", self._pending).delete),
            )
        self._pending = None

    def __repr__(self) -> str:
        state = "committed" if self.committed else "open"
        return f"<Transaction {state}>"
