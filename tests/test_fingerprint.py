import hashlib
import unittest
from datetime import datetime, timedelta, timezone

from ridebase.ingest.fingerprint import (
    activity_fingerprint,
    iso_utc_millis,
    round_half_up,
    sha256_hex,
)

START = datetime(2026, 2, 6, 8, 0, tzinfo=timezone.utc)


class TestIsoUtcMillis(unittest.TestCase):
    def test_utc(self):
        self.assertEqual(iso_utc_millis(START), "2026-02-06T08:00:00.000Z")

    def test_naive_is_utc(self):
        self.assertEqual(iso_utc_millis(datetime(2026, 2, 6, 8, 0, 0, 123456)),
                         "2026-02-06T08:00:00.123Z")

    def test_offset_converted(self):
        cet = timezone(timedelta(hours=1))
        self.assertEqual(iso_utc_millis(datetime(2026, 2, 6, 9, 0, tzinfo=cet)),
                         "2026-02-06T08:00:00.000Z")


class TestActivityFingerprint(unittest.TestCase):
    def test_known_value(self):
        expected = hashlib.sha1(b"2026-02-06T08:00:00.000Z|3600|25000|ride").hexdigest()
        self.assertEqual(activity_fingerprint(START, 3600, 25000, "Ride"), expected)

    def test_rounding_collapses_small_differences(self):
        a = activity_fingerprint(START, 3600.4, 10004, "Ride")
        b = activity_fingerprint(START, 3599.6, 9996, " ride ")
        self.assertEqual(a, b)

    def test_distinct_activities(self):
        base = activity_fingerprint(START, 3600, 25000, "Ride")
        self.assertNotEqual(base, activity_fingerprint(START + timedelta(seconds=1), 3600, 25000, "Ride"))
        self.assertNotEqual(base, activity_fingerprint(START, 3600, 25020, "Ride"))
        self.assertNotEqual(base, activity_fingerprint(START, 3600, 25000, "Run"))

    def test_missing_values(self):
        expected = hashlib.sha1(b"2026-02-06T08:00:00.000Z|0|0|").hexdigest()
        self.assertEqual(activity_fingerprint(START, None, None, None), expected)


class TestHelpers(unittest.TestCase):
    def test_round_half_up(self):
        self.assertEqual(round_half_up(2.5), 3)
        self.assertEqual(round_half_up(2.4999), 2)
        self.assertEqual(round_half_up(-0.5), 0)

    def test_sha256(self):
        self.assertEqual(sha256_hex(b"abc"), hashlib.sha256(b"abc").hexdigest())


if __name__ == "__main__":
    unittest.main()
