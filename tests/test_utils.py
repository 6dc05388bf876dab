"""Tests for utility functions."""

import unittest
from unittest.mock import MagicMock, patch

from ocigrab._utils import mask_secret, sleep_with_jitter, unescape_newlines


class TestSleepWithJitter(unittest.TestCase):
    """Tests for sleep_with_jitter()."""

    def test_sleep_stays_within_jitter_bounds(self):
        """Should sleep between 90% and 110% of the requested time."""
        sleep = MagicMock()
        for _ in range(50):
            slept = sleep_with_jitter(10.0, sleep=sleep)
            self.assertGreaterEqual(slept, 9.0)
            self.assertLessEqual(slept, 11.0)
        self.assertEqual(sleep.call_count, 50)

    def test_zero_jitter_is_exact(self):
        """Should sleep the exact time when jitter_factor is zero."""
        sleep = MagicMock()
        self.assertEqual(sleep_with_jitter(4.0, jitter_factor=0.0, sleep=sleep), 4.0)
        sleep.assert_called_once_with(4.0)

    def test_never_negative(self):
        """Should never ask for a negative sleep."""
        sleep = MagicMock()
        self.assertEqual(sleep_with_jitter(0.0, sleep=sleep), 0.0)

    @patch("ocigrab._utils.time.sleep")
    def test_defaults_to_time_sleep(self, mock_sleep):
        """Should use time.sleep when no sleep function is given."""
        sleep_with_jitter(1.0, jitter_factor=0.0)
        mock_sleep.assert_called_once_with(1.0)


class TestUnescapeNewlines(unittest.TestCase):
    """Tests for unescape_newlines()."""

    def test_replaces_literal_backslash_n(self):
        """Should replace every literal backslash-n with a newline."""
        self.assertEqual(unescape_newlines("a\\nb\\nc"), "a\nb\nc")

    def test_keeps_real_newlines(self):
        """Should leave real newlines alone."""
        self.assertEqual(unescape_newlines("a\nb"), "a\nb")


class TestMaskSecret(unittest.TestCase):
    """Tests for mask_secret()."""

    def test_long_secret_shows_edges(self):
        self.assertEqual(mask_secret("aa:bb:cc:dd:ee:ff"), "aa:b********e:ff")

    def test_short_secret_shows_tail(self):
        self.assertEqual(mask_secret("short"), "********t")

    def test_tiny_secret_is_fully_masked(self):
        self.assertEqual(mask_secret("ab"), "********")

    def test_empty_and_none(self):
        self.assertEqual(mask_secret(""), "")
        self.assertEqual(mask_secret(None), "None")

    def test_newlines_are_hidden(self):
        """Should never output a newline, even for multi-line keys."""
        self.assertNotIn("\n", mask_secret("-----BEGIN-----\nabc\n-----END-----"))


if __name__ == "__main__":
    unittest.main()
