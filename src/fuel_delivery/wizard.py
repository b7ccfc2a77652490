"""Session state and step rules for the delivery completion wizard.

The wizard walks a driver through five steps (product, compartment,
quantity, customer tank levels, signature). This module owns the pieces that
do not talk to the outside world:

* :class:`WizardSession`, the single mutable record of what has been entered,
  changed only through the named setters below.
* The step graph. Forward and backward moves are edges with a guard
  predicate; the first edge whose guard holds wins. Choosing a custom product
  routes around the compartment step in both directions.
* One validator per step, used to gate forward navigation. A failed
  validator is not an error, it simply means "not yet".
* The meter calculator, which derives the delivered quantity whenever a
  meter write leaves both readings valid with ``end > start``.

The controller that loads catalog data, runs the clock, and commits the
delivery lives in :mod:`fuel_delivery.completion`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Callable, Dict, List, Optional, Tuple, Union

from . import log
from .constants import STEP_ORDER, WizardStep
from .data_manager import CompartmentRow

Reading = Union[Decimal, int, float, str, None]

QUANTITY_QUANTUM = Decimal("0.1")
TANK_LEVEL_MIN = Decimal("0")
TANK_LEVEL_MAX = Decimal("100")


@dataclass
class WizardSession:
    """Everything the driver has entered for one stop.

    ``arrival_timestamp`` is fixed when the session is created; assigning it
    again raises :class:`AttributeError`.
    """

    arrival_timestamp: datetime
    current_step: WizardStep = WizardStep.PRODUCT
    use_custom_product: bool = False
    selected_product_id: Optional[str] = None
    custom_product_name: str = ""
    selected_compartment: Optional[CompartmentRow] = None
    meter_start: Optional[Decimal] = None
    meter_end: Optional[Decimal] = None
    quantity_delivered: Optional[Decimal] = None
    tank_level_before: Optional[Decimal] = None
    tank_level_after: Optional[Decimal] = None
    notes: str = ""
    signature_image: Optional[str] = None
    customer_present: bool = True

    def __setattr__(self, name: str, value: object) -> None:
        if name == "arrival_timestamp" and "arrival_timestamp" in self.__dict__:
            raise AttributeError("arrival_timestamp is fixed when the session is created")
        super().__setattr__(name, value)

    @property
    def selected_compartment_id(self) -> Optional[str]:
        if self.selected_compartment is None:
            return None
        return self.selected_compartment.compartment_id


def new_session(arrival_timestamp: datetime) -> WizardSession:
    """Create a session positioned on the first step with every field at its default."""
    return WizardSession(arrival_timestamp=arrival_timestamp)


# ---------------------------------------------------------------------------
# Input parsing and the meter calculator
# ---------------------------------------------------------------------------


def parse_reading(raw: Reading) -> Optional[Decimal]:
    """Turn a form value into a finite :class:`Decimal`, or ``None`` if it is not a number.

    Blank strings and ``None`` mean "not entered".
    """
    if raw is None:
        return None
    if isinstance(raw, Decimal):
        value = raw
    else:
        text = str(raw).strip()
        if not text:
            return None
        try:
            value = Decimal(text)
        except InvalidOperation:
            return None
    if not value.is_finite():
        return None
    return value


def derive_quantity(meter_start: Optional[Decimal], meter_end: Optional[Decimal]) -> Optional[Decimal]:
    """Return ``meter_end - meter_start`` rounded to one decimal place.

    Returns ``None`` when either reading is missing or ``meter_end`` does not
    exceed ``meter_start``, or when the difference is too large to round.
    """
    if meter_start is None or meter_end is None:
        return None
    if meter_end <= meter_start:
        return None
    try:
        return (meter_end - meter_start).quantize(QUANTITY_QUANTUM, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        log.warning("Meter difference %s -> %s is out of range", meter_start, meter_end)
        return None


def recompute_quantity(session: WizardSession) -> Optional[Decimal]:
    """Apply the meter calculator to ``session``.

    Leaves ``quantity_delivered`` untouched when the readings do not form a
    valid pair. Returns the derived value, if any.
    """
    derived = derive_quantity(session.meter_start, session.meter_end)
    if derived is None:
        return None
    if derived != session.quantity_delivered:
        log.debug("Derived quantity %s from meters %s -> %s", derived, session.meter_start, session.meter_end)
    session.quantity_delivered = derived
    return derived


# ---------------------------------------------------------------------------
# Named setters
# ---------------------------------------------------------------------------


def set_use_custom_product(session: WizardSession, enabled: bool) -> None:
    session.use_custom_product = bool(enabled)


def select_product(session: WizardSession, product_id: Optional[str]) -> None:
    session.selected_product_id = product_id


def set_custom_product_name(session: WizardSession, name: str) -> None:
    session.custom_product_name = name or ""


def select_compartment(session: WizardSession, compartment: Optional[CompartmentRow]) -> None:
    session.selected_compartment = compartment


def set_meter_start(session: WizardSession, raw: Reading) -> None:
    session.meter_start = parse_reading(raw)
    recompute_quantity(session)


def set_meter_end(session: WizardSession, raw: Reading) -> None:
    session.meter_end = parse_reading(raw)
    recompute_quantity(session)


def set_quantity_delivered(session: WizardSession, raw: Reading) -> None:
    """Record a directly typed quantity; it stands until the next valid meter write."""
    session.quantity_delivered = parse_reading(raw)


def set_tank_level_before(session: WizardSession, raw: Reading) -> None:
    session.tank_level_before = parse_reading(raw)


def set_tank_level_after(session: WizardSession, raw: Reading) -> None:
    session.tank_level_after = parse_reading(raw)


def set_notes(session: WizardSession, notes: str) -> None:
    session.notes = notes or ""


def set_signature(session: WizardSession, image: Optional[str]) -> None:
    """Store an encoded signature image, or clear it with ``None``."""
    session.signature_image = image or None


def set_customer_present(session: WizardSession, present: bool) -> None:
    # A captured signature survives the toggle.
    session.customer_present = bool(present)


def clamp_tank_level(value: Optional[Decimal]) -> Decimal:
    """Clamp an optional tank percentage into ``[0, 100]``; a blank level reads as 0."""
    if value is None:
        return TANK_LEVEL_MIN
    return min(TANK_LEVEL_MAX, max(TANK_LEVEL_MIN, value))


# ---------------------------------------------------------------------------
# Step validators
# ---------------------------------------------------------------------------


def _product_complete(session: WizardSession) -> bool:
    if session.use_custom_product:
        return session.custom_product_name.strip() != ""
    return session.selected_product_id is not None


def _compartment_complete(session: WizardSession) -> bool:
    return session.use_custom_product or session.selected_compartment is not None


def _quantity_complete(session: WizardSession) -> bool:
    return session.quantity_delivered is not None and session.quantity_delivered > 0


def _tank_levels_complete(session: WizardSession) -> bool:
    return True


def _signature_complete(session: WizardSession) -> bool:
    return not session.customer_present or session.signature_image is not None


STEP_VALIDATORS: Dict[WizardStep, Callable[[WizardSession], bool]] = {
    WizardStep.PRODUCT: _product_complete,
    WizardStep.COMPARTMENT: _compartment_complete,
    WizardStep.QUANTITY: _quantity_complete,
    WizardStep.TANK_LEVELS: _tank_levels_complete,
    WizardStep.SIGNATURE: _signature_complete,
}


def is_step_complete(session: WizardSession, step: WizardStep) -> bool:
    return STEP_VALIDATORS[step](session)


def can_advance(session: WizardSession) -> bool:
    """Return whether the current step's inputs allow moving forward (or completing)."""
    return is_step_complete(session, session.current_step)


def visible_steps(session: WizardSession) -> List[WizardStep]:
    """List the steps on the driver's path, in order."""
    return [
        step
        for step in STEP_ORDER
        if not (step is WizardStep.COMPARTMENT and session.use_custom_product)
    ]


def incomplete_steps(session: WizardSession) -> List[WizardStep]:
    """List the visible steps whose validators currently fail."""
    return [step for step in visible_steps(session) if not is_step_complete(session, step)]


# ---------------------------------------------------------------------------
# Step graph
# ---------------------------------------------------------------------------


def _always(session: WizardSession) -> bool:
    return True


def _custom_product(session: WizardSession) -> bool:
    return session.use_custom_product


@dataclass(frozen=True)
class StepEdge:
    """A possible move from ``source`` to ``target`` when ``guard`` holds."""

    source: WizardStep
    target: WizardStep
    guard: Callable[[WizardSession], bool] = field(default=_always, compare=False)


FORWARD_EDGES: Tuple[StepEdge, ...] = (
    StepEdge(WizardStep.PRODUCT, WizardStep.QUANTITY, _custom_product),
    StepEdge(WizardStep.PRODUCT, WizardStep.COMPARTMENT),
    StepEdge(WizardStep.COMPARTMENT, WizardStep.QUANTITY),
    StepEdge(WizardStep.QUANTITY, WizardStep.TANK_LEVELS),
    StepEdge(WizardStep.TANK_LEVELS, WizardStep.SIGNATURE),
)

BACKWARD_EDGES: Tuple[StepEdge, ...] = (
    StepEdge(WizardStep.COMPARTMENT, WizardStep.PRODUCT),
    StepEdge(WizardStep.QUANTITY, WizardStep.PRODUCT, _custom_product),
    StepEdge(WizardStep.QUANTITY, WizardStep.COMPARTMENT),
    StepEdge(WizardStep.TANK_LEVELS, WizardStep.QUANTITY),
    StepEdge(WizardStep.SIGNATURE, WizardStep.TANK_LEVELS),
)


def _follow(edges: Tuple[StepEdge, ...], session: WizardSession) -> Optional[WizardStep]:
    for edge in edges:
        if edge.source is session.current_step and edge.guard(session):
            return edge.target
    return None


def next_step(session: WizardSession) -> Optional[WizardStep]:
    """Return the step ``advance`` would move to, or ``None`` at the signature step."""
    return _follow(FORWARD_EDGES, session)


def previous_step(session: WizardSession) -> Optional[WizardStep]:
    """Return the step ``retreat`` would move to, or ``None`` at the product step."""
    return _follow(BACKWARD_EDGES, session)


def advance(session: WizardSession) -> WizardStep:
    """Move to the next step on the driver's path.

    Does not validate; callers check :func:`can_advance` first. A no-op on the
    signature step, which is left only by committing the delivery.
    """
    target = next_step(session)
    if target is not None:
        log.debug("Wizard step %s -> %s", session.current_step.value, target.value)
        session.current_step = target
    return session.current_step


def retreat(session: WizardSession) -> WizardStep:
    """Move to the previous step on the driver's path; a no-op on the first step."""
    target = previous_step(session)
    if target is not None:
        log.debug("Wizard step %s <- %s", target.value, session.current_step.value)
        session.current_step = target
    return session.current_step


# ---------------------------------------------------------------------------
# Progress indicator
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StepProgress:
    step: WizardStep
    ordinal: int
    status: str


def step_progress(session: WizardSession) -> List[StepProgress]:
    """Describe each visible step as ``active``, ``complete`` (behind the cursor), or ``pending``.

    Ordinals are positions in the full step list, so a hidden compartment
    step leaves a gap in the numbering.
    """
    current_index = STEP_ORDER.index(session.current_step)
    progress: List[StepProgress] = []
    for step in visible_steps(session):
        index = STEP_ORDER.index(step)
        if index == current_index:
            status = "active"
        elif index < current_index:
            status = "complete"
        else:
            status = "pending"
        progress.append(StepProgress(step=step, ordinal=index + 1, status=status))
    return progress
