# type: ignore
import unittest
from unittest.mock import call, patch

from .base import LDAP_SERVERS  # noqa: F401
from ldapmapper.fields import CharField
from ldapmapper.models import Model
from ldapmapper.transaction import PendingWork, Transaction, ledger_key


class TxPerson(Model):
    uid = CharField(primary_key=True)

    class Meta:
        basedn = "ou=people,dc=example,dc=com"
        objectclass = "inetOrgPerson"
        ldap_server = "default"


def stored(uid, dn=None):
    """A TxPerson that looks as if it had been loaded from the directory."""
    obj = TxPerson(uid=uid, _dn=dn or f"uid={uid},ou=people,dc=example,dc=com")
    obj._state.adding = False
    return obj


class TestLedgerKey(unittest.TestCase):
    def test_stored_objects_are_keyed_by_dn(self):
        first = stored("fred", "uid=fred,ou=people,dc=example,dc=com")
        second = stored("fred", "UID=Fred,OU=People,dc=example,dc=com")
        self.assertEqual(ledger_key(first), ledger_key(second))

    def test_new_objects_are_keyed_by_identity(self):
        self.assertNotEqual(ledger_key(TxPerson(uid="a")), ledger_key(TxPerson(uid="a")))


class TestPendingWork(unittest.TestCase):
    def test_exemption_wins(self):
        work = PendingWork()
        obj = stored("fred")
        work.mark_for_deletion(obj)
        work.unmark_for_deletion(obj)
        work.mark_for_deletion(obj)
        self.assertTrue(work.is_exempt(obj))
        self.assertEqual(work.take_deletions(), [])

    def test_exemption_applies_to_other_instances_of_the_entry(self):
        work = PendingWork()
        work.unmark_for_deletion(stored("fred"))
        work.mark_for_deletion(stored("fred"))
        self.assertEqual(work.take_deletions(), [])

    def test_persist_is_deduplicated(self):
        work = PendingWork()
        obj = stored("fred")
        work.mark_for_persist(obj)
        work.mark_for_persist(obj)
        self.assertEqual(work.take_persist(), [obj])
        self.assertFalse(work)


class TestTransaction(unittest.TestCase):
    def setUp(self):
        manager = TxPerson.objects
        patchers = [
            patch.object(manager, "insert"),
            patch.object(manager, "update"),
            patch.object(manager, "delete"),
        ]
        self.insert, self.update, self.delete = (p.start() for p in patchers)
        for p in patchers:
            self.addCleanup(p.stop)

    def test_nothing_pending(self):
        txn = Transaction()
        self.assertFalse(txn.has_pending_work)
        txn.commit()
        self.assertTrue(txn.committed)

    def test_commit_twice(self):
        txn = Transaction()
        txn.commit()
        with self.assertRaises(RuntimeError):
            txn.commit()

    def test_not_marked_while_inserting(self):
        txn = Transaction()
        obj = TxPerson(uid="fred")
        with txn.inserting(obj):
            self.assertTrue(obj._state.inserting)
            self.assertTrue(txn.is_inserting(obj))
            txn.mark_for_persist(obj)
        self.assertFalse(obj._state.inserting)
        self.assertFalse(txn.has_pending_work)

    def test_not_marked_once_persisted(self):
        txn = Transaction()
        obj = stored("fred")
        txn.persisted(obj)
        txn.mark_for_persist(obj)
        self.assertFalse(txn.has_pending_work)

    def test_flush_inserts_updates_then_deletes(self):
        txn = Transaction()
        new, existing, doomed = TxPerson(uid="new"), stored("old"), stored("doomed")
        txn.mark_for_deletion(doomed)
        txn.mark_for_persist(existing)
        txn.mark_for_persist(new)
        order = []
        self.insert.side_effect = lambda obj, transaction: order.append(("insert", obj))
        self.update.side_effect = lambda obj, transaction: order.append(("update", obj))
        self.delete.side_effect = lambda obj, transaction: order.append(("delete", obj))
        txn.commit()
        self.assertEqual(order, [("update", existing), ("insert", new), ("delete", doomed)])
        self.insert.assert_called_once_with(new, transaction=txn)

    def test_flush_runs_to_a_fix_point(self):
        txn = Transaction()
        first, second = stored("first"), stored("second")

        def update(obj, transaction):
            if obj is first:
                transaction.mark_for_persist(second)

        self.update.side_effect = update
        txn.mark_for_persist(first)
        txn.commit()
        self.assertEqual(
            self.update.call_args_list,
            [call(first, transaction=txn), call(second, transaction=txn)],
        )

    def test_deleted_objects_are_skipped(self):
        txn = Transaction()
        obj = stored("gone")
        obj._state.deleted = True
        txn.mark_for_persist(obj)
        txn.commit()
        self.update.assert_not_called()

    def test_context_manager_commits(self):
        obj = stored("fred")
        with Transaction() as txn:
            txn.mark_for_persist(obj)
        self.assertTrue(txn.committed)
        self.update.assert_called_once_with(obj, transaction=txn)

    def test_context_manager_discards_on_error(self):
        with self.assertRaises(ValueError), self.assertLogs("django-ldapmapper", level="WARNING"):
            with Transaction() as txn:
                txn.mark_for_persist(stored("fred"))
                raise ValueError("boom")
        self.assertFalse(txn.committed)
        self.update.assert_not_called()

    def test_identity_map(self):
        txn = Transaction()
        obj = stored("fred")
        txn.register(obj)
        self.assertIs(txn.lookup("UID=Fred,ou=people,dc=example,dc=com"), obj)
        txn.forget(obj)
        self.assertIsNone(txn.lookup(obj._dn))
