# type: ignore
import datetime
import unittest
import uuid

import pytz
from django.core.exceptions import ValidationError

from . import base  # noqa: F401
from ldapmapper.exceptions import (
    ConfigurationError,
    DecodeError,
    DuplicateOrderingIndex,
    MissingOrderingIndex,
    UnsupportedFieldType,
)
from ldapmapper.fields import (
    AllCapsBooleanField,
    BinaryField,
    BooleanField,
    CharField,
    CharListField,
    ConvertedField,
    DateTimeField,
    IntegerField,
    IntegerListField,
    decode_ordered,
    encode_ordered,
    make_container,
)
from ldapmapper.generalized_time import FORMAT_YMDHM


class TestCharField(unittest.TestCase):
    def test_round_trip(self):
        field = CharField(name="cn")
        self.assertEqual(field.to_db_value("Fred"), {"cn": [b"Fred"]})
        self.assertEqual(field.from_db_value([b"Fred"]), "Fred")

    def test_db_column(self):
        field = CharField(name="common_name", db_column="cn")
        self.assertEqual(field.ldap_attribute, "cn")
        self.assertEqual(list(field.to_db_value("Fred")), ["cn"])

    def test_empty_values_are_absent(self):
        field = CharField(name="cn")
        self.assertEqual(field.to_db_value(None), {"cn": []})
        self.assertEqual(field.to_db_value(""), {"cn": []})
        self.assertIsNone(field.from_db_value([]))

    def test_empty_value_sentinel(self):
        field = CharField(name="member", empty_value="cn=nobody")
        self.assertEqual(field.to_db_value(None), {"member": [b"cn=nobody"]})
        self.assertIsNone(field.from_db_value([b"cn=nobody"]))

    def test_max_length(self):
        field = CharField(name="cn", max_length=3)
        with self.assertRaises(ValidationError):
            field.clean("toolong", None)

    def test_blank(self):
        field = CharField(name="cn")
        with self.assertRaises(ValidationError):
            field.clean("", None)
        CharField(name="cn", blank=True, null=True).clean("", None)


class TestIntegerField(unittest.TestCase):
    def test_round_trip(self):
        field = IntegerField(name="uidNumber")
        self.assertEqual(field.to_db_value(42), {"uidNumber": [b"42"]})
        self.assertEqual(field.from_db_value([b"42"]), 42)

    def test_zero_is_stored(self):
        field = IntegerField(name="uidNumber")
        self.assertEqual(field.to_db_value(0), {"uidNumber": [b"0"]})

    def test_garbage(self):
        field = IntegerField(name="uidNumber")
        with self.assertRaises(DecodeError):
            field.from_db_value([b"forty-two"])


class TestBooleanFields(unittest.TestCase):
    def test_upper_case(self):
        field = BooleanField(name="active")
        self.assertEqual(field.to_db_value(True), {"active": [b"TRUE"]})
        self.assertEqual(field.to_db_value(False), {"active": [b"FALSE"]})

    def test_all_caps_alias(self):
        field = AllCapsBooleanField(name="active")
        self.assertEqual(field.to_db_value(True), {"active": [b"TRUE"]})
        self.assertEqual(field.to_db_value(False), {"active": [b"FALSE"]})

    def test_decoding_ignores_case(self):
        for field in (BooleanField(name="a"), AllCapsBooleanField(name="a")):
            self.assertTrue(field.from_db_value([b"TRUE"]))
            self.assertTrue(field.from_db_value([b"true"]))
            self.assertFalse(field.from_db_value([b"False"]))

    def test_unexpected_value(self):
        with self.assertRaises(DecodeError):
            BooleanField(name="a").from_db_value([b"yes"])


class TestDateTimeField(unittest.TestCase):
    def test_truncated_to_seconds(self):
        field = DateTimeField(name="modifyTimestamp")
        value = pytz.utc.localize(datetime.datetime(2024, 1, 15, 10, 30, 5, 999999))
        self.assertEqual(field.to_db_value(value), {"modifyTimestamp": [b"20240115103005Z"]})

    def test_fractional(self):
        field = DateTimeField(name="ts", fractional=True)
        value = pytz.utc.localize(datetime.datetime(2024, 1, 15, 10, 30, 5, 250000))
        self.assertEqual(field.to_db_value(value), {"ts": [b"20240115103005.250Z"]})

    def test_custom_format(self):
        field = DateTimeField(name="ts", time_format=FORMAT_YMDHM)
        value = pytz.utc.localize(datetime.datetime(2024, 1, 15, 10, 30, 5))
        self.assertEqual(field.to_db_value(value), {"ts": [b"202401151030Z"]})

    def test_decode(self):
        field = DateTimeField(name="ts")
        self.assertEqual(
            field.from_db_value([b"202401151030+0100"]),
            pytz.utc.localize(datetime.datetime(2024, 1, 15, 9, 30)),
        )

    def test_to_python_accepts_strings(self):
        field = DateTimeField(name="ts")
        self.assertEqual(
            field.to_python("2024-01-15 10:30"),
            pytz.utc.localize(datetime.datetime(2024, 1, 15, 10, 30)),
        )
        with self.assertRaises(ValidationError):
            field.to_python("next tuesday")


class TestOrderedValues(unittest.TestCase):
    def test_encode(self):
        self.assertEqual(encode_ordered([b"b", b"a"]), [b"{0}b", b"{1}a"])

    def test_decode_sorts_by_index(self):
        self.assertEqual(decode_ordered([b"{1}a", b"{0}b", b"{10}c"]), [b"b", b"a", b"c"])

    def test_duplicate_index(self):
        with self.assertRaises(DuplicateOrderingIndex):
            decode_ordered([b"{0}a", b"{0}b"])

    def test_missing_index(self):
        with self.assertRaises(MissingOrderingIndex):
            decode_ordered([b"{0}a", b"b"])
        with self.assertRaises(MissingOrderingIndex):
            decode_ordered([b"{x}a"])

    def test_ordered_list_field(self):
        field = CharListField(name="steps", ordered=True)
        stored = field.to_db_value(["wake", "eat", "sleep"])
        self.assertEqual(stored, {"steps": [b"{0}wake", b"{1}eat", b"{2}sleep"]})
        self.assertEqual(
            field.from_db_value(list(reversed(stored["steps"]))), ["wake", "eat", "sleep"]
        )


class TestListFields(unittest.TestCase):
    def test_default_is_empty_container(self):
        self.assertEqual(CharListField(name="mail").get_default(), [])
        self.assertEqual(CharListField(name="mail", container="set").get_default(), set())

    def test_set_container(self):
        field = IntegerListField(name="n", container="set")
        self.assertEqual(field.from_db_value([b"1", b"2", b"1"]), {1, 2})

    def test_unknown_container(self):
        with self.assertRaises(ConfigurationError):
            CharListField(name="mail", container="tuple")

    def test_empty_list_uses_sentinel(self):
        field = CharListField(name="member", empty_value="cn=nobody")
        self.assertEqual(field.to_db_value([]), {"member": [b"cn=nobody"]})
        self.assertEqual(field.from_db_value([b"cn=nobody"]), [])

    def test_make_container(self):
        self.assertEqual(make_container("list", iter("ab")), ["a", "b"])
        with self.assertRaises(ConfigurationError):
            make_container("deque", [])


class TestBinaryField(unittest.TestCase):
    def test_raw(self):
        field = BinaryField(name="jpegPhoto")
        self.assertEqual(field.to_db_value(b"\x00\xff"), {"jpegPhoto": [b"\x00\xff"]})
        self.assertEqual(field.from_db_value([b"\x00\xff"]), b"\x00\xff")

    def test_as_string_list(self):
        field = BinaryField(name="blob", as_string_list=True)
        self.assertEqual(field.to_db_value(b"\x01\x02"), {"blob": [b"1", b"2"]})
        self.assertEqual(field.from_db_value([b"1", b"2"]), b"\x01\x02")

    def test_as_ordered_string_list(self):
        field = BinaryField(name="blob", as_string_list=True, ordered=True)
        self.assertEqual(field.to_db_value(b"\x07\x03"), {"blob": [b"{0}7", b"{1}3"]})
        self.assertEqual(field.from_db_value([b"{1}3", b"{0}7"]), b"\x07\x03")


class TestConvertedField(unittest.TestCase):
    def test_uuid(self):
        value = uuid.UUID("12345678-1234-5678-1234-567812345678")
        field = ConvertedField(uuid.UUID, name="entryUUID")
        self.assertEqual(
            field.to_db_value(value),
            {"entryUUID": [b"12345678-1234-5678-1234-567812345678"]},
        )
        self.assertEqual(field.from_db_value([str(value).encode()]), value)

    def test_bad_stored_value(self):
        field = ConvertedField(uuid.UUID, name="entryUUID")
        with self.assertRaises(DecodeError):
            field.from_db_value([b"not-a-uuid"])

    def test_unsupported_type(self):
        with self.assertRaises(UnsupportedFieldType):
            ConvertedField(complex, name="z")
