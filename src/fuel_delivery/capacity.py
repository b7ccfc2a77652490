"""Compartment selection and capacity projections.

Everything here is a read-only view over :class:`CompartmentRow` snapshots;
the only write against a compartment happens in the completion committer.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional

from .data_manager import CompartmentRow

ZERO = Decimal("0")


def eligible_compartments(
    compartments: Iterable[CompartmentRow],
    product_filter: Optional[str],
) -> List[CompartmentRow]:
    """Return the compartments that may dispense ``product_filter``.

    The result keeps the input order. A ``None`` filter returns every
    compartment.
    """
    if product_filter is None:
        return list(compartments)
    return [compartment for compartment in compartments if compartment.product_id == product_filter]


def preview_remaining(compartment: CompartmentRow, quantity: Optional[Decimal]) -> Decimal:
    """Project the compartment level after dispensing ``quantity``, floored at zero."""
    delivered = quantity if quantity is not None else ZERO
    return max(ZERO, compartment.current_level - delivered)


def fill_percentage(compartment: CompartmentRow) -> int:
    """Return the whole-number fill percentage, or 0 for a compartment without capacity."""
    if compartment.capacity <= ZERO:
        return 0
    ratio = compartment.current_level / compartment.capacity * 100
    return int(ratio.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def headroom(compartment: CompartmentRow) -> Decimal:
    """Return how much more the compartment can take before it is full."""
    return compartment.capacity - compartment.current_level
