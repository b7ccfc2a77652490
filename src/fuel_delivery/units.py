"""Unit formatting for the configured volume system.

Volumes are stored in canonical gallons everywhere in the toolkit. This
module only converts and labels them for display; it never participates in
wizard validation.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Union

from .constants import UnitSystem

LITRES_PER_GALLON = Decimal("3.78541")

Number = Union[Decimal, int, float, str]

_LABELS = {
    # system: (plural, singular, abbreviation)
    UnitSystem.IMPERIAL: ("gallons", "Gallons", "gal"),
    UnitSystem.METRIC: ("litres", "Litres", "L"),
}


def _as_decimal(value: Number) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


@dataclass(frozen=True)
class UnitFormatter:
    """Label and convert volumes for one :class:`UnitSystem`."""

    unit_system: UnitSystem = UnitSystem.IMPERIAL

    def unit_label(self, short: bool = True) -> str:
        """Return ``gal``/``L`` when ``short`` else the capitalised plural name."""
        plural, title, abbreviation = _LABELS[self.unit_system]
        return abbreviation if short else title

    def volume_name(self) -> str:
        return _LABELS[self.unit_system][0]

    def price_label(self) -> str:
        return f"/{self.unit_label()}"

    def from_gallons(self, gallons: Number) -> Decimal:
        value = _as_decimal(gallons)
        if self.unit_system is UnitSystem.METRIC:
            return value * LITRES_PER_GALLON
        return value

    def to_gallons(self, amount: Number) -> Decimal:
        value = _as_decimal(amount)
        if self.unit_system is UnitSystem.METRIC:
            return value / LITRES_PER_GALLON
        return value

    def format_volume(self, gallons: Number, decimals: int = 1) -> str:
        """Render a canonical gallon amount in the display unit, e.g. ``1,250.5 gal``."""
        quantum = Decimal(1).scaleb(-decimals) if decimals > 0 else Decimal(1)
        converted = self.from_gallons(gallons).quantize(quantum, rounding=ROUND_HALF_UP)
        return f"{converted:,.{max(decimals, 0)}f} {self.unit_label()}"

    def format_price(self, price: Number | None) -> str:
        if price is None:
            return "n/a"
        amount = _as_decimal(price).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        return f"${amount}{self.price_label()}"
