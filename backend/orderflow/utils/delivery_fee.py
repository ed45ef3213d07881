from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from orderflow.utils.money import ZERO, non_negative

SPLIT_RULE_FLAT_DRIVER_PAY_V1 = "FLAT_DRIVER_PAY_CAPPED_AT_FEE_V1"


@dataclass(frozen=True)
class DeliveryFeeSplit:
    delivery_fee: Decimal
    merchant_share: Decimal
    driver_share: Decimal
    rule: str = SPLIT_RULE_FLAT_DRIVER_PAY_V1

    def to_dict(self) -> dict:
        return {
            "delivery_fee": float(self.delivery_fee),
            "merchant_share": float(self.merchant_share),
            "driver_share": float(self.driver_share),
            "rule": self.rule,
        }


def split_delivery_fee(
    delivery_fee,
    *,
    driver_pay_enabled: bool,
    driver_pay_amount,
    driver_assigned: bool,
) -> DeliveryFeeSplit:
    """Divide a delivery fee between the merchant and the fulfilling driver.

    The driver gets the configured flat amount, capped at the fee, only when
    per-delivery pay is enabled and a driver is assigned. The merchant keeps
    the remainder, so ``merchant_share + driver_share == delivery_fee``.
    """
    fee = non_negative(delivery_fee)
    configured = non_negative(driver_pay_amount)
    driver_share = ZERO
    if driver_pay_enabled and driver_assigned and configured > ZERO:
        driver_share = min(fee, configured)
    merchant_share = non_negative(fee - driver_share)
    return DeliveryFeeSplit(delivery_fee=fee, merchant_share=merchant_share, driver_share=driver_share)
