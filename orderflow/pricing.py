"""
Orderflow — totals and order numbers

Tax is a flat rate in basis points, rounded half up to the minor unit.
Shipping is a flat fee, waived once the subtotal reaches the threshold.
"""

import secrets
import time

from pydantic import BaseModel, ConfigDict

from .config import Settings

_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


class PricedLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: str
    quantity: int
    unit_price: int

    @property
    def line_total(self) -> int:
        return self.unit_price * self.quantity


class Totals(BaseModel):
    model_config = ConfigDict(frozen=True)

    subtotal: int
    tax: int
    shipping: int

    @property
    def total(self) -> int:
        return self.subtotal + self.tax + self.shipping


def calculate_totals(lines: list[PricedLine], settings: Settings) -> Totals:
    subtotal = sum(line.line_total for line in lines)
    tax = (subtotal * settings.tax_rate_bps + 5000) // 10000
    shipping = 0 if subtotal >= settings.free_shipping_threshold else settings.flat_shipping
    return Totals(subtotal=subtotal, tax=tax, shipping=shipping)


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_order_number() -> str:
    """ORD-<base36 epoch millis>-<6 random chars>, e.g. ORD-MGX3K2A1-7QF0ZD."""
    stamp = _to_base36(int(time.time() * 1000))
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"ORD-{stamp}-{suffix}"
