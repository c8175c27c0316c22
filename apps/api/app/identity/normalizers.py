from __future__ import annotations

import re


_NON_DIGITS = re.compile(r"\D+")
_BRAZIL_DDI = "55"


def normalize_email(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = value.strip().lower()
    return cleaned or None


def normalize_phone(value: str) -> str:
    """Digits only, with the Brazilian country code prepended to bare local numbers."""
    digits = _NON_DIGITS.sub("", value)
    if len(digits) in (10, 11) and not digits.startswith(_BRAZIL_DDI):
        return f"{_BRAZIL_DDI}{digits}"
    return digits
