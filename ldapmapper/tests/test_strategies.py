# type: ignore
import unittest

from .base import LDAP_SERVERS  # noqa: F401
from ldapmapper.exceptions import UnsupportedFieldType
from ldapmapper.fields import CharField, CharListField
from ldapmapper.models import Model
from ldapmapper.related import (
    MAPPING_STRATEGIES,
    EmbeddedField,
    EmbeddedListField,
    ReferenceField,
    ReferenceListField,
)
from ldapmapper.strategies import MappingKind, select_strategy


class StratAddress(Model):
    street = CharField()
    city = CharField(db_column="l")

    class Meta:
        embedded = True


class StratPhone(Model):
    label = CharField(primary_key=True, db_column="cn")
    number = CharField(db_column="telephoneNumber")

    class Meta:
        embedded = True
        objectclass = "device"


class StratGroup(Model):
    cn = CharField(primary_key=True)
    member_uids = ReferenceListField(
        "StratPerson", db_column="memberUid", mapping_strategy="attribute"
    )

    class Meta:
        basedn = "ou=groups,dc=example,dc=com"
        objectclass = "posixGroup"
        ldap_server = "default"


class StratPerson(Model):
    uid = CharField(primary_key=True)
    mail = CharListField()
    address = EmbeddedField(StratAddress)
    phones = EmbeddedListField(StratPhone)
    manager = ReferenceField("self")
    reports = ReferenceListField("self", mapped_by="manager")
    posix_groups = ReferenceListField(StratGroup, mapped_by="member_uids")
    team = ReferenceField("StratGroup", db_column="team", join_attribute="cn")
    mentor = ReferenceField("self", db_column="mentor", mapping_strategy="dn", join_attribute="uid")

    class Meta:
        basedn = "ou=people,dc=example,dc=com"
        objectclass = "inetOrgPerson"
        ldap_server = "default"


class StratOrg(Model):
    o = CharField(primary_key=True)
    units = ReferenceListField("StratUnit", mapped_by="org")

    class Meta:
        basedn = "ou=orgs,dc=example,dc=com"
        objectclass = "organization"
        ldap_server = "default"


class StratUnit(Model):
    ou = CharField(primary_key=True)
    org = ReferenceField(StratOrg)
    sponsor = ReferenceField(StratOrg, db_column="seeAlso")

    class Meta:
        basedn = "{org}"
        objectclass = "organizationalUnit"
        ldap_server = "default"


class StratBroken(Model):
    cn = CharField(primary_key=True)
    partner = ReferenceField("StratBroken", mapping_strategy="magic")
    addresses = EmbeddedListField(StratAddress)

    class Meta:
        basedn = "ou=broken,dc=example,dc=com"
        objectclass = "device"
        ldap_server = "default"


def kind(model, name):
    return select_strategy(model._meta.get_field(name)).kind


class TestSelectStrategy(unittest.TestCase):
    def test_simple(self):
        self.assertIs(kind(StratPerson, "uid"), MappingKind.SIMPLE)
        self.assertIs(kind(StratPerson, "mail"), MappingKind.SIMPLE_CONTAINER)
        self.assertIs(kind(StratPerson, "objectclass"), MappingKind.SIMPLE_CONTAINER)

    def test_embedded(self):
        inline = select_strategy(StratPerson._meta.get_field("address"))
        self.assertIs(inline.kind, MappingKind.EMBEDDED)
        self.assertTrue(inline.inline)
        self.assertEqual(inline.attribute_names(), ["street", "l"])
        children = select_strategy(StratPerson._meta.get_field("phones"))
        self.assertIs(children.kind, MappingKind.EMBEDDED)
        self.assertFalse(children.inline)
        self.assertEqual(children.attribute_names(), [])

    def test_default_reference_is_by_dn(self):
        self.assertIs(kind(StratPerson, "manager"), MappingKind.RELATION_BY_DN)
        self.assertIs(kind(StratPerson, "reports"), MappingKind.RELATION_BY_DN)

    def test_explicit_hint(self):
        self.assertIs(kind(StratGroup, "member_uids"), MappingKind.RELATION_BY_ATTRIBUTE)

    def test_non_owner_follows_the_owner_hint(self):
        self.assertIs(kind(StratPerson, "posix_groups"), MappingKind.RELATION_BY_ATTRIBUTE)

    def test_hint_beats_join_attribute(self):
        self.assertIs(kind(StratPerson, "mentor"), MappingKind.RELATION_BY_DN)

    def test_join_attribute(self):
        self.assertIs(kind(StratPerson, "team"), MappingKind.RELATION_BY_ATTRIBUTE)

    def test_hierarchy(self):
        self.assertIs(kind(StratUnit, "org"), MappingKind.RELATION_BY_HIERARCHY)
        self.assertIs(kind(StratOrg, "units"), MappingKind.RELATION_BY_HIERARCHY)

    def test_other_references_on_a_hierarchical_model(self):
        self.assertIs(kind(StratUnit, "sponsor"), MappingKind.RELATION_BY_DN)

    def test_every_accepted_hint_selects_a_strategy(self):
        hinted = {
            "dn": StratPerson._meta.get_field("mentor"),
            "attribute": StratGroup._meta.get_field("member_uids"),
        }
        self.assertEqual(set(hinted), set(MAPPING_STRATEGIES))
        for hint, field in hinted.items():
            self.assertEqual(field.mapping_strategy, hint)
            self.assertIsNotNone(select_strategy(field))

    def test_unknown_hint(self):
        self.assertIsNone(select_strategy(StratBroken._meta.get_field("partner")))

    def test_inline_collections_are_unsupported(self):
        self.assertIsNone(select_strategy(StratBroken._meta.get_field("addresses")))

    def test_unsupported_field_fails_the_model(self):
        with self.assertRaises(UnsupportedFieldType):
            StratBroken._meta.strategies  # noqa: B018


class TestLaziness(unittest.TestCase):
    def test_lazy_flags(self):
        strategies = StratPerson._meta.strategies
        self.assertFalse(strategies["uid"].lazy)
        self.assertFalse(strategies["mail"].lazy)
        self.assertFalse(strategies["address"].lazy)
        self.assertTrue(strategies["phones"].lazy)
        self.assertTrue(strategies["manager"].lazy)
        self.assertTrue(strategies["reports"].lazy)

    def test_search_attributes(self):
        attributes = StratPerson._meta.attributes
        for name in ("uid", "mail", "street", "l", "manager", "team", "objectclass"):
            self.assertIn(name, attributes)
        self.assertNotIn("reports", attributes)
        self.assertNotIn("phones", attributes)


class TestLoading(unittest.TestCase):
    def test_inline_embedded_values_are_decoded_with_the_entry(self):
        person = StratPerson.from_db(
            (
                "uid=fred,ou=people,dc=example,dc=com",
                {
                    "uid": [b"fred"],
                    "street": [b"1 Main St"],
                    "l": [b"Bedrock"],
                    "objectClass": [b"inetOrgPerson"],
                },
            )
        )
        self.assertEqual(person.address.street, "1 Main St")
        self.assertEqual(person.address.city, "Bedrock")
        self.assertEqual(person.objectclass, ["inetOrgPerson"])

    def test_absent_inline_value_is_none(self):
        person = StratPerson.from_db(
            ("uid=fred,ou=people,dc=example,dc=com", {"uid": [b"fred"]})
        )
        self.assertIsNone(person.address)

    def test_new_objects_get_defaults_without_loading(self):
        person = StratPerson(uid="fred")
        self.assertEqual(person.reports, [])
        self.assertIsNone(person.manager)
        self.assertEqual(person.phones, [])
