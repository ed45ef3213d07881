from __future__ import annotations

import unittest

from orderflow.utils.phone import normalize_msisdn


class NormalizeMsisdnTestCase(unittest.TestCase):
    def test_accepted_formats(self):
        for raw in ("0722000111", "+254722000111", "254 722 000 111", "722000111", "0722-000-111"):
            self.assertEqual(normalize_msisdn(raw), "254722000111", raw)

    def test_rejected_formats(self):
        for raw in (None, "", "12345", "+1 415 555 0100", "25472200011199"):
            self.assertIsNone(normalize_msisdn(raw), raw)


if __name__ == "__main__":
    unittest.main()
