# type: ignore
import unittest
from unittest.mock import MagicMock, patch

import ldap
from django.core.exceptions import ImproperlyConfigured

from .base import SERVER, DirectoryTestCase
from ldapmapper.exceptions import (
    AlreadyExists,
    AmbiguousMatch,
    ConfigurationError,
    ObjectNotFound,
)
from ldapmapper.fields import CharField, CharListField, IntegerField
from ldapmapper.managers import Modlist
from ldapmapper.models import Model


class MgrPerson(Model):
    uid = CharField(primary_key=True)
    cn = CharField()
    sn = CharField()
    mail = CharListField()
    uid_number = IntegerField(db_column="uidNumber", null=True)

    class Meta:
        basedn = "ou=people,dc=example,dc=com"
        objectclass = "inetOrgPerson"
        extra_objectclasses = ["extensibleObject"]
        ldap_server = "default"
        ordering = ["uid"]


class MgrEmployee(MgrPerson):
    employee_number = CharField(db_column="employeeNumber", null=True)

    class Meta(MgrPerson.Meta):
        objectclass = ["inetOrgPerson", "employee"]


FRED_DN = "uid=fred,ou=people,dc=example,dc=com"
BARNEY_DN = "uid=barney,ou=people,dc=example,dc=com"


class TestLdapManager(DirectoryTestCase):
    @classmethod
    def setUpClass(cls):
        super().setUpClass()
        cls.entries = [
            (
                FRED_DN,
                {
                    "uid": [b"fred"],
                    "cn": [b"Fred Flintstone"],
                    "sn": [b"Flintstone"],
                    "mail": [b"fred@example.com", b"ff@example.com"],
                    "uidNumber": [b"1000"],
                    "objectclass": [b"inetOrgPerson", b"extensibleObject"],
                },
            ),
            (
                BARNEY_DN,
                {
                    "uid": [b"barney"],
                    "cn": [b"Barney Rubble"],
                    "sn": [b"Rubble"],
                    "uidNumber": [b"1001"],
                    "employeeNumber": [b"42"],
                    "objectclass": [b"inetOrgPerson", b"employee"],
                },
            ),
            (
                "ou=temp,dc=example,dc=com",
                {"ou": [b"temp"], "objectclass": [b"organizationalUnit"]},
            ),
            (
                "cn=a,ou=temp,dc=example,dc=com",
                {"cn": [b"a"], "objectclass": [b"device"]},
            ),
            (
                "cn=b,cn=a,ou=temp,dc=example,dc=com",
                {"cn": [b"b"], "objectclass": [b"device"]},
            ),
        ]

    # ========================================
    # Configuration
    # ========================================

    def test_missing_server_config(self):
        with self.assertRaises(ImproperlyConfigured):

            class MgrNowhere(Model):
                uid = CharField(primary_key=True)

                class Meta:
                    basedn = "ou=people,dc=example,dc=com"
                    objectclass = "inetOrgPerson"
                    ldap_server = "nowhere"

    def test_invalid_tls_verify(self):
        manager = MgrPerson.objects
        original = manager.config
        manager.config = {"read": {**SERVER, "tls_verify": "sometimes"}}
        try:
            with self.assertRaises(ValueError):
                manager.new_connection()
        finally:
            manager.config = original

    def test_missing_tls_file(self):
        manager = MgrPerson.objects
        original = manager.config
        manager.config = {"read": {**SERVER, "tls_ca_certfile": "/nonexistent/ca.pem"}}
        try:
            with self.assertRaises(OSError):
                manager.new_connection()
        finally:
            manager.config = original

    def test_get_dn(self):
        self.assertEqual(MgrPerson.objects.get_dn("dino"), "uid=dino,ou=people,dc=example,dc=com")

    def test_basedn(self):
        self.assertEqual(MgrPerson.objects.basedn, "ou=people,dc=example,dc=com")

    # ========================================
    # Reading
    # ========================================

    def test_get_by_dn(self):
        fred = MgrPerson.objects.get_by_dn(FRED_DN)
        self.assertIs(type(fred), MgrPerson)
        self.assertEqual(fred.uid, "fred")
        self.assertEqual(fred.cn, "Fred Flintstone")
        self.assertEqual(fred.uid_number, 1000)
        self.assertEqual(sorted(fred.mail), ["ff@example.com", "fred@example.com"])
        self.assertEqual(fred.dn, FRED_DN)
        self.assertFalse(fred._state.adding)

    def test_get_by_dn_returns_the_most_specific_class(self):
        barney = MgrPerson.objects.get_by_dn(BARNEY_DN)
        self.assertIsInstance(barney, MgrEmployee)
        self.assertEqual(barney.employee_number, "42")

    def test_get_by_dn_missing(self):
        with self.assertRaises(MgrPerson.DoesNotExist):
            MgrPerson.objects.get_by_dn("uid=dino,ou=people,dc=example,dc=com")
        with self.assertRaises(ObjectNotFound):
            MgrPerson.objects.get_by_dn("uid=dino,ou=people,dc=example,dc=com")

    def test_get_by_attribute(self):
        self.assertEqual(MgrPerson.objects.get_by_attribute("sn", "Rubble").uid, "barney")

    def test_get_by_attribute_matching_several(self):
        with self.assertRaises(AmbiguousMatch) as cm:
            MgrPerson.objects.get_by_attribute("objectClass", "inetOrgPerson")
        self.assertIsInstance(cm.exception, ConfigurationError)

    def test_get_entries(self):
        found = {obj.uid: type(obj) for obj in MgrPerson.objects.get_entries()}
        self.assertEqual(found, {"fred": MgrPerson, "barney": MgrEmployee})

    def test_get_entries_without_subclasses(self):
        found = {obj.uid: type(obj) for obj in MgrPerson.objects.get_entries(subclasses=False)}
        self.assertEqual(found, {"fred": MgrPerson, "barney": MgrPerson})

    def test_get_entries_of_a_subclass(self):
        self.assertEqual([obj.uid for obj in MgrEmployee.objects.get_entries()], ["barney"])

    def test_get_entries_missing_base(self):
        self.assertEqual(
            MgrPerson.objects.get_entries(base="ou=nowhere,dc=example,dc=com"), []
        )

    def test_read_attribute(self):
        self.assertEqual(MgrPerson.objects.read_attribute(FRED_DN, "sn"), ["Flintstone"])
        self.assertEqual(MgrPerson.objects.read_attribute(FRED_DN, "title"), [])

    def test_refresh_from_db(self):
        fred = MgrPerson.objects.get_by_dn(FRED_DN)
        MgrPerson.objects.replace_attribute(FRED_DN, "cn", ["Fred"])
        fred.refresh_from_db()
        self.assertEqual(fred.cn, "Fred")

    # ========================================
    # Queries
    # ========================================

    def test_filter(self):
        results = MgrPerson.objects.filter(cn="Fred Flintstone").as_list()
        self.assertEqual([p.uid for p in results], ["fred"])

    def test_filter_returns_subclasses(self):
        barney = MgrPerson.objects.get(uid__startswith="barn")
        self.assertIsInstance(barney, MgrEmployee)

    def test_ordering(self):
        self.assertEqual([p.uid for p in MgrPerson.objects.all()], ["barney", "fred"])
        self.assertEqual(
            [p.uid for p in MgrPerson.objects.order_by("-uid")], ["fred", "barney"]
        )

    def test_count_and_get(self):
        self.assertEqual(MgrPerson.objects.count(), 2)
        self.assertEqual(MgrPerson.objects.get(pk="fred").sn, "Flintstone")
        with self.assertRaises(MgrPerson.DoesNotExist):
            MgrPerson.objects.get(uid="dino")

    def test_in_memory_only_filter(self):
        with self.assertLogs("django-ldapmapper", level="WARNING"):
            results = MgrPerson.objects.filter(mail__contains="ff@example.com").as_list()
        self.assertEqual([p.uid for p in results], ["fred"])

    # ========================================
    # Writing
    # ========================================

    def test_insert(self):
        wilma = MgrPerson(uid="wilma", cn="Wilma Flintstone", sn="Flintstone", mail=["w@example.com"])
        wilma.save()
        dn = "uid=wilma,ou=people,dc=example,dc=com"
        self.assertEqual(wilma.dn, dn)
        self.assertFalse(wilma._state.adding)
        self.assertEqual(wilma.objectclass, ["inetOrgPerson", "extensibleObject"])
        stored = MgrPerson.objects.read_entry(dn, ["cn", "mail", "uidNumber", "objectClass"])
        self.assertEqual(stored["cn"], [b"Wilma Flintstone"])
        self.assertEqual(stored["mail"], [b"w@example.com"])
        self.assertNotIn("uidnumber", stored)
        self.assertIn(b"extensibleObject", stored["objectclass"])

    def test_insert_duplicate(self):
        with self.assertRaises(AlreadyExists):
            MgrPerson(uid="fred", cn="Fred", sn="F").save()

    def test_create(self):
        pebbles = MgrPerson.objects.create(uid="pebbles", cn="Pebbles", sn="Flintstone")
        self.assertEqual(MgrPerson.objects.get_by_dn(pebbles.dn).cn, "Pebbles")

    def test_update(self):
        fred = MgrPerson.objects.get_by_dn(FRED_DN)
        fred.cn = "Fred F."
        fred.mail = []
        fred.uid_number = None
        fred.save()
        stored = MgrPerson.objects.read_entry(FRED_DN, ["cn", "mail", "uidNumber"])
        self.assertEqual(stored["cn"], [b"Fred F."])
        self.assertNotIn("mail", stored)
        self.assertNotIn("uidnumber", stored)

    def test_update_without_changes_issues_no_modify(self):
        fred = MgrPerson.objects.get_by_dn(FRED_DN)
        with self.assertLogs("django-ldapmapper", level="DEBUG") as logs:
            fred.save()
        self.assertTrue(any("update.no-changes" in line for line in logs.output))

    def test_changing_the_primary_key_renames(self):
        fred = MgrPerson.objects.get_by_dn(FRED_DN)
        fred.uid = "frederick"
        with patch.object(MgrPerson.objects, "rename", wraps=MgrPerson.objects.rename) as rename:
            fred.save()
        new_dn = "uid=frederick,ou=people,dc=example,dc=com"
        rename.assert_called_once_with(FRED_DN, new_dn)
        self.assertEqual(fred.dn, new_dn)
        self.assertEntryExists(MgrPerson.objects, new_dn)
        self.assertEntryMissing(MgrPerson.objects, FRED_DN)

    def test_delete(self):
        fred = MgrPerson.objects.get_by_dn(FRED_DN)
        fred.delete()
        self.assertTrue(fred._state.deleted)
        self.assertEntryMissing(MgrPerson.objects, FRED_DN)
        # deleting twice is a no-op
        fred.delete()

    def test_delete_recursive(self):
        MgrPerson.objects.delete_recursive("ou=temp,dc=example,dc=com")
        for dn in (
            "ou=temp,dc=example,dc=com",
            "cn=a,ou=temp,dc=example,dc=com",
            "cn=b,cn=a,ou=temp,dc=example,dc=com",
        ):
            self.assertEntryMissing(MgrPerson.objects, dn)

    def test_non_leaf_entries_are_deleted_recursively(self):
        manager = MgrPerson.objects
        conn = MagicMock()
        conn.delete_s.side_effect = ldap.NOT_ALLOWED_ON_NONLEAF(
            {"desc": "Operation not allowed on non-leaf"}
        )
        manager.set_connection(conn)
        try:
            with patch.object(manager, "delete_recursive") as delete_recursive:
                manager._unbind_entry(FRED_DN)
        finally:
            manager.remove_connection()
        conn.delete_s.assert_called_once_with(FRED_DN)
        delete_recursive.assert_called_once_with(FRED_DN)


class TestModlist(unittest.TestCase):
    def setUp(self):
        self.modlist = Modlist(MgrPerson.objects)

    def test_add_requires_objectclasses(self):
        with self.assertRaises(ImproperlyConfigured):
            self.modlist.add({"cn": [b"x"]})

    def test_add_drops_empty_attributes(self):
        result = dict(self.modlist.add({"cn": [b"x"], "mail": [], "objectClass": [b"top"]}))
        self.assertEqual(result, {"cn": [b"x"], "objectClass": [b"top"]})

    def test_update(self):
        result = self.modlist.update(
            {"cn": [b"new"], "mail": [], "sn": [b"same"], "title": []},
            {"cn": [b"old"], "mail": [b"m@example.com"], "sn": [b"same"]},
        )
        self.assertEqual(
            result,
            [(ldap.MOD_REPLACE, "cn", [b"new"]), (ldap.MOD_DELETE, "mail", None)],
        )

    def test_update_ignores_value_order(self):
        self.assertEqual(
            self.modlist.update({"mail": [b"a", b"b"]}, {"mail": [b"b", b"a"]}), []
        )
