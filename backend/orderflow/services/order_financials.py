from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from orderflow.extensions import db
from orderflow.models import Order
from orderflow.utils.delivery_fee import DeliveryFeeSplit, split_delivery_fee
from orderflow.utils.money import ZERO, non_negative, to_money
from orderflow.utils.settings_store import get_driver_pay_settings

SNAPSHOT_VERSION = 1


@dataclass(frozen=True)
class FinancialBreakdown:
    items_total: Decimal
    delivery_fee: Decimal
    tip_amount: Decimal

    def to_dict(self) -> dict:
        return {
            "items_total": float(self.items_total),
            "delivery_fee": float(self.delivery_fee),
            "tip_amount": float(self.tip_amount),
        }


def compute_items_total(order: Order) -> Decimal:
    total = ZERO
    for item in order.items or []:
        total += to_money(item.price) * int(item.quantity or 0)
    return to_money(total)


def compute_breakdown(order: Order) -> FinancialBreakdown:
    items_total = compute_items_total(order)
    tip = non_negative(order.tip_amount)
    if order.is_pos:
        fee = ZERO
    else:
        fee = non_negative(to_money(order.total_amount) - tip - items_total)
    return FinancialBreakdown(items_total=items_total, delivery_fee=fee, tip_amount=tip)


def _write_snapshot(order: Order, snapshot: dict) -> None:
    order.financial_snapshot_json = json.dumps(snapshot, separators=(",", ":"))
    db.session.add(order)


def get_or_create_breakdown(order: Order) -> FinancialBreakdown:
    """Frozen breakdown for the order; computed and stored on first use."""
    snapshot = order.financial_snapshot()
    if int(snapshot.get("version") or 0) == SNAPSHOT_VERSION and "items_total" in snapshot:
        return FinancialBreakdown(
            items_total=to_money(snapshot.get("items_total")),
            delivery_fee=to_money(snapshot.get("delivery_fee")),
            tip_amount=to_money(snapshot.get("tip_amount")),
        )
    breakdown = compute_breakdown(order)
    snapshot = {
        "version": SNAPSHOT_VERSION,
        "computed_at": datetime.utcnow().isoformat(),
        **breakdown.to_dict(),
    }
    _write_snapshot(order, snapshot)
    return breakdown


def get_or_create_split(order: Order, breakdown: FinancialBreakdown | None = None) -> DeliveryFeeSplit:
    """Delivery-fee split for the order, frozen alongside the breakdown.

    Only frozen once a driver is assigned. Freezing keeps manual confirmation, gateway callbacks and the final
    settlement on identical shares even if driver-pay settings change between
    them.
    """
    breakdown = breakdown or get_or_create_breakdown(order)
    snapshot = order.financial_snapshot()
    frozen = snapshot.get("split")
    if isinstance(frozen, dict) and "driver_share" in frozen:
        return DeliveryFeeSplit(
            delivery_fee=to_money(frozen.get("delivery_fee")),
            merchant_share=to_money(frozen.get("merchant_share")),
            driver_share=to_money(frozen.get("driver_share")),
            rule=str(frozen.get("rule") or ""),
        )
    settings = get_driver_pay_settings()
    split = split_delivery_fee(
        breakdown.delivery_fee,
        driver_pay_enabled=settings.enabled,
        driver_pay_amount=settings.amount,
        driver_assigned=order.driver_id is not None,
    )
    if order.driver_id is not None:
        snapshot["split"] = split.to_dict()
        _write_snapshot(order, snapshot)
    return split


def clear_frozen_split(order: Order) -> None:
    """Forget the split after a driver change on an order that has not settled."""
    if order.driver_pay_credited:
        return
    snapshot = order.financial_snapshot()
    if snapshot.pop("split", None) is not None:
        _write_snapshot(order, snapshot)
