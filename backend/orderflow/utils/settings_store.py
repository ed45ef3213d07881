from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from orderflow.extensions import db
from orderflow.models import Setting
from orderflow.utils.money import ZERO, non_negative

DRIVER_PAY_ENABLED_KEY = "driverPayPerDeliveryEnabled"
DRIVER_PAY_AMOUNT_KEY = "driverPayPerDeliveryAmount"


@dataclass(frozen=True)
class DriverPaySettings:
    enabled: bool = False
    amount: Decimal = ZERO

    def to_dict(self) -> dict:
        return {"enabled": bool(self.enabled), "amount": float(self.amount)}


def get_setting(key: str, default: str | None = None) -> str | None:
    row = Setting.query.filter_by(key=key).first()
    if row is None or row.value is None:
        return default
    return row.value


def set_setting(key: str, value) -> Setting:
    row = Setting.query.filter_by(key=key).first()
    if row is None:
        row = Setting(key=key)
    row.value = None if value is None else str(value)
    db.session.add(row)
    return row


def _as_bool(raw: str | None) -> bool:
    return (raw or "").strip().lower() in ("1", "true", "yes", "on")


def get_driver_pay_settings() -> DriverPaySettings:
    enabled = _as_bool(get_setting(DRIVER_PAY_ENABLED_KEY))
    amount = non_negative(get_setting(DRIVER_PAY_AMOUNT_KEY, "0"))
    return DriverPaySettings(enabled=enabled, amount=amount)


def save_driver_pay_settings(*, enabled: bool, amount) -> DriverPaySettings:
    set_setting(DRIVER_PAY_ENABLED_KEY, "true" if enabled else "false")
    set_setting(DRIVER_PAY_AMOUNT_KEY, str(non_negative(amount)))
    db.session.commit()
    return get_driver_pay_settings()
