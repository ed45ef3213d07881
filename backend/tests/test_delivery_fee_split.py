from __future__ import annotations

import unittest
from decimal import Decimal

from orderflow.utils.delivery_fee import split_delivery_fee


class DeliveryFeeSplitTestCase(unittest.TestCase):
    def test_flat_driver_pay_below_fee(self):
        split = split_delivery_fee(200, driver_pay_enabled=True, driver_pay_amount=150, driver_assigned=True)
        self.assertEqual(split.driver_share, Decimal("150.00"))
        self.assertEqual(split.merchant_share, Decimal("50.00"))

    def test_driver_pay_is_capped_at_fee(self):
        split = split_delivery_fee(120, driver_pay_enabled=True, driver_pay_amount=150, driver_assigned=True)
        self.assertEqual(split.driver_share, Decimal("120.00"))
        self.assertEqual(split.merchant_share, Decimal("0.00"))

    def test_disabled_driver_pay_gives_merchant_everything(self):
        split = split_delivery_fee(200, driver_pay_enabled=False, driver_pay_amount=150, driver_assigned=True)
        self.assertEqual(split.driver_share, Decimal("0.00"))
        self.assertEqual(split.merchant_share, Decimal("200.00"))

    def test_no_driver_assigned_gives_merchant_everything(self):
        split = split_delivery_fee(200, driver_pay_enabled=True, driver_pay_amount=150, driver_assigned=False)
        self.assertEqual(split.driver_share, Decimal("0.00"))
        self.assertEqual(split.merchant_share, Decimal("200.00"))

    def test_negative_inputs_are_clamped(self):
        split = split_delivery_fee(-40, driver_pay_enabled=True, driver_pay_amount=-10, driver_assigned=True)
        self.assertEqual(split.delivery_fee, Decimal("0.00"))
        self.assertEqual(split.driver_share, Decimal("0.00"))
        self.assertEqual(split.merchant_share, Decimal("0.00"))

    def test_shares_always_sum_to_fee(self):
        for fee in ("0", "0.01", "99.99", "150", "150.01", "1000.50"):
            for amount in ("0", "0.5", "150", "2000"):
                for enabled in (True, False):
                    for assigned in (True, False):
                        split = split_delivery_fee(
                            fee, driver_pay_enabled=enabled, driver_pay_amount=amount, driver_assigned=assigned
                        )
                        self.assertEqual(split.merchant_share + split.driver_share, split.delivery_fee)
                        self.assertGreaterEqual(split.merchant_share, Decimal("0"))
                        self.assertGreaterEqual(split.driver_share, Decimal("0"))
                        self.assertLessEqual(split.driver_share, split.delivery_fee)


if __name__ == "__main__":
    unittest.main()
