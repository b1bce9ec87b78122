# type: ignore
import datetime
import unittest

import pytz

from ldapmapper.exceptions import GeneralizedTimeError
from ldapmapper.generalized_time import (
    FORMAT_YMDH,
    FORMAT_YMDHM,
    format_generalized_time,
    parse_generalized_time,
)


def utc(*args):
    return pytz.utc.localize(datetime.datetime(*args))


class TestParseGeneralizedTime(unittest.TestCase):
    def test_full_precision_utc(self):
        self.assertEqual(parse_generalized_time("20240115103000Z"), utc(2024, 1, 15, 10, 30))

    def test_result_is_aware_utc(self):
        value = parse_generalized_time("20240115103000Z")
        self.assertEqual(value.utcoffset(), datetime.timedelta(0))

    def test_hour_only(self):
        self.assertEqual(parse_generalized_time("2024011510Z"), utc(2024, 1, 15, 10))

    def test_fraction_without_an_hour(self):
        self.assertEqual(parse_generalized_time("20240115.5Z"), utc(2024, 1, 15, 0, 30))
        self.assertEqual(parse_generalized_time("20240115,25Z"), utc(2024, 1, 15, 0, 15))

    def test_fraction_of_hour(self):
        self.assertEqual(parse_generalized_time("2024011510,5Z"), utc(2024, 1, 15, 10, 30))

    def test_fraction_of_second(self):
        self.assertEqual(
            parse_generalized_time("20240115103000.250Z"),
            utc(2024, 1, 15, 10, 30, 0, 250000),
        )

    def test_positive_offset_converted_to_utc(self):
        self.assertEqual(parse_generalized_time("202401151030+0100"), utc(2024, 1, 15, 9, 30))

    def test_negative_offset_hours_only(self):
        self.assertEqual(parse_generalized_time("2024011510-05"), utc(2024, 1, 15, 15))

    def test_missing_time_zone(self):
        with self.assertRaises(GeneralizedTimeError) as ctx:
            parse_generalized_time("2024011510")
        self.assertIn("time zone is required", str(ctx.exception))

    def test_bad_time_zone(self):
        with self.assertRaises(GeneralizedTimeError) as ctx:
            parse_generalized_time("20240115103000X")
        self.assertIn("malformed time zone", str(ctx.exception))

    def test_hour_required(self):
        with self.assertRaises(GeneralizedTimeError):
            parse_generalized_time("20240115Z")

    def test_short_date(self):
        with self.assertRaises(GeneralizedTimeError):
            parse_generalized_time("202401")

    def test_empty_fraction(self):
        with self.assertRaises(GeneralizedTimeError):
            parse_generalized_time("2024011510.Z")

    def test_out_of_range_minute(self):
        with self.assertRaises(GeneralizedTimeError):
            parse_generalized_time("202401151075Z")

    def test_invalid_day(self):
        with self.assertRaises(GeneralizedTimeError):
            parse_generalized_time("20240231100000Z")

    def test_is_a_value_error(self):
        with self.assertRaises(ValueError):
            parse_generalized_time("garbage")


class TestFormatGeneralizedTime(unittest.TestCase):
    def test_default_format(self):
        self.assertEqual(
            format_generalized_time(utc(2024, 1, 15, 10, 30, 5)), "20240115103005Z"
        )

    def test_naive_is_taken_as_utc(self):
        self.assertEqual(
            format_generalized_time(datetime.datetime(2024, 1, 15, 10, 30, 5)),
            "20240115103005Z",
        )

    def test_other_zones_are_converted(self):
        eastern = pytz.timezone("US/Eastern")
        value = eastern.localize(datetime.datetime(2024, 1, 15, 5, 0))
        self.assertEqual(format_generalized_time(value), "20240115100000Z")

    def test_truncation(self):
        value = utc(2024, 1, 15, 10, 30, 5)
        self.assertEqual(format_generalized_time(value, FORMAT_YMDHM), "202401151030Z")
        self.assertEqual(format_generalized_time(value, FORMAT_YMDH), "2024011510Z")

    def test_fractional(self):
        value = utc(2024, 1, 15, 10, 30, 5, 123456)
        self.assertEqual(
            format_generalized_time(value, fractional=True), "20240115103005.123Z"
        )

    def test_formatted_value_parses_back(self):
        value = utc(2024, 1, 15, 10, 30, 5)
        self.assertEqual(parse_generalized_time(format_generalized_time(value)), value)
