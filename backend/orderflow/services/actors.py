from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Actor:
    """Already-authenticated identity acting on an order."""

    type: str = "system"
    id: int | None = None

    @property
    def is_driver(self) -> bool:
        return self.type == "driver"

    @property
    def is_admin(self) -> bool:
        return self.type == "admin"

    @property
    def is_pos(self) -> bool:
        return self.type == "pos"

    @property
    def label(self) -> str:
        if self.id is None:
            return self.type
        return f"{self.type} #{int(self.id)}"

    def to_dict(self) -> dict:
        return {"type": self.type, "id": int(self.id) if self.id is not None else None}


SYSTEM = Actor("system")
CUSTOMER = Actor("customer")
