from __future__ import annotations

import re

_NON_DIGITS = re.compile(r"\D+")


def normalize_msisdn(raw: str | None) -> str | None:
    """Normalise a Kenyan mobile number to 2547XXXXXXXX; None when it cannot be."""
    digits = _NON_DIGITS.sub("", str(raw or ""))
    if digits.startswith("0"):
        digits = "254" + digits[1:]
    elif len(digits) == 9 and digits.startswith("7"):
        digits = "254" + digits
    if len(digits) != 12 or not digits.startswith("254"):
        return None
    return digits
