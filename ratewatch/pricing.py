"""Price normalisation helpers for portal rates."""

from __future__ import annotations

import math
import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

# Markup the portal adds on top of the hotel's base rate.
DISCOUNT_RATE = Decimal("0.04998")
_MARKUP_DIVISOR = Decimal(1) + DISCOUNT_RATE

_NUMBER_PATTERN = re.compile(
    r"((?:\d{1,3}(?:,\d{3})+|\d+)(?:\.\d+)?)",
    re.UNICODE,
)


def base_price(display_price: float | int | None) -> int | None:
    """Strip the portal markup from *display_price*.

    Returns the base rate rounded half-up to a whole currency unit, or ``None``
    when there is no usable display price (missing, zero, negative or not a
    finite number).
    """

    if display_price is None or isinstance(display_price, bool):
        return None
    try:
        if not math.isfinite(display_price) or display_price <= 0:
            return None
        value = Decimal(str(display_price))
    except (TypeError, ValueError, InvalidOperation):
        return None

    return int((value / _MARKUP_DIVISOR).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def parse_price_token(text: str | None) -> float | None:
    """Return the first numeric price token found in *text*."""

    if not text:
        return None

    match = _NUMBER_PATTERN.search(text)
    if not match:
        return None

    try:
        value = float(match.group(1).replace(",", ""))
    except ValueError:
        return None
    return value if value > 0 else None


__all__ = ["DISCOUNT_RATE", "base_price", "parse_price_token"]
