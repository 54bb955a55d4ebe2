import unittest
from datetime import datetime, timedelta, timezone

from marquee.utils.timezone import ensure_utc, expires_within, format_iso_utc, from_epoch, utc_now


class TestTimezoneHelpers(unittest.TestCase):
    def test_utc_now_is_aware(self):
        self.assertEqual(utc_now().tzinfo, timezone.utc)

    def test_naive_values_are_treated_as_utc(self):
        naive = datetime(2023, 10, 14, 15, 30)
        self.assertEqual(ensure_utc(naive), datetime(2023, 10, 14, 15, 30, tzinfo=timezone.utc))

    def test_aware_values_are_converted(self):
        pacific = datetime(2023, 10, 14, 15, 30, tzinfo=timezone(timedelta(hours=-8)))
        self.assertEqual(ensure_utc(pacific).hour, 23)
        self.assertIsNone(ensure_utc(None))

    def test_format_iso_utc(self):
        self.assertEqual(format_iso_utc(datetime(2024, 1, 1, 12, 0)), "2024-01-01T12:00:00Z")
        self.assertIsNone(format_iso_utc(None))

    def test_from_epoch(self):
        self.assertEqual(from_epoch(0), datetime(1970, 1, 1, tzinfo=timezone.utc))
        self.assertIsNone(from_epoch(None))

    def test_expires_within(self):
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        self.assertTrue(expires_within(None, 300, now))
        self.assertTrue(expires_within(now + timedelta(seconds=299), 300, now))
        self.assertFalse(expires_within(now + timedelta(seconds=301), 300, now))
        # Naive DB values compare as UTC
        self.assertFalse(expires_within(datetime(2024, 1, 2), 300, now))


if __name__ == "__main__":
    unittest.main()
