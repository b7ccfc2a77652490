"""Delivery completion controller.

:class:`DeliveryCompletionWizard` drives one :class:`~fuel_delivery.wizard.WizardSession`
from the moment the driver opens the completion screen for a stop until the
delivery is committed or the screen is closed. It is the only piece that
talks to the outside world, always through :class:`DeliveryCollaborators`:

* two reads, the product catalog and the truck's compartments. A failing
  read degrades to an empty list so the rest of the wizard keeps working.
* two writes, performed by :meth:`DeliveryCompletionWizard.commit`: one
  compartment level update (catalog deliveries only) followed by the
  completion handoff.

If the handoff fails after the level update went through, the committer
puts the compartment back to the level it had before (one compensating
update). Either way the session is left untouched and the error is kept
in :attr:`DeliveryCompletionWizard.last_error` so the driver can retry.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Sequence

from . import capacity, log, wizard
from .constants import WizardStep
from .data_manager import CompartmentRow, FuelProductRow, RouteRow, StopRow
from .elapsed import ElapsedSnapshot, ElapsedTimeReporter, elapsed_snapshot
from .errors import BusinessRuleViolation, CompletionFailed, MissingReferenceError
from .units import UnitFormatter


@dataclass(frozen=True)
class CompletionRecord:
    """Immutable summary of a finished delivery handed to persistence."""

    quantity_delivered: Decimal
    product_id: Optional[str]
    custom_product_name: Optional[str]
    compartment_id: Optional[str]
    meter_start: Optional[Decimal]
    meter_end: Optional[Decimal]
    tank_level_before: Decimal
    tank_level_after: Decimal
    signature_image: Optional[str]
    customer_present: bool
    notes: str
    arrival_timestamp: datetime
    departure_timestamp: datetime


@dataclass(frozen=True)
class DeliveryCollaborators:
    """External operations the wizard depends on.

    Failures are signalled by raising; a normal return means success.
    """

    list_products: Callable[[], Sequence[FuelProductRow]]
    list_compartments: Callable[[Optional[str]], Sequence[CompartmentRow]]
    update_compartment_level: Callable[[str, Decimal, str], None]
    on_complete: Callable[[CompletionRecord], None]


@dataclass(frozen=True)
class DeliverySummary:
    product_name: str
    quantity_label: str
    duration_minutes: int
    compartment_name: Optional[str]


def _now() -> datetime:
    return datetime.now(UTC)


def resolve_arrival(stop: Optional[StopRow], fallback: datetime) -> datetime:
    """Use the stop's recorded arrival when it parses, otherwise ``fallback``.

    Naive timestamps are taken to be UTC.
    """
    if stop is None or not stop.actual_arrival:
        return fallback
    try:
        arrival = datetime.fromisoformat(stop.actual_arrival)
    except ValueError:
        log.warning("Ignoring unparseable arrival '%s' on stop '%s'", stop.actual_arrival, stop.stop_id)
        return fallback
    if arrival.tzinfo is None:
        arrival = arrival.replace(tzinfo=UTC)
    return arrival


def build_completion_record(session: wizard.WizardSession, *, departure: datetime) -> CompletionRecord:
    """Assemble the record for ``session``.

    The custom-product path never carries a product or compartment reference.
    """
    custom = session.use_custom_product
    quantity = session.quantity_delivered if session.quantity_delivered is not None else Decimal("0")
    return CompletionRecord(
        quantity_delivered=quantity,
        product_id=None if custom else session.selected_product_id,
        custom_product_name=session.custom_product_name.strip() if custom else None,
        compartment_id=None if custom else session.selected_compartment_id,
        meter_start=session.meter_start,
        meter_end=session.meter_end,
        tank_level_before=wizard.clamp_tank_level(session.tank_level_before),
        tank_level_after=wizard.clamp_tank_level(session.tank_level_after),
        signature_image=session.signature_image,
        customer_present=session.customer_present,
        notes=session.notes,
        arrival_timestamp=session.arrival_timestamp,
        departure_timestamp=departure,
    )


class DeliveryCompletionWizard:
    """Controller for the guided delivery completion flow."""

    def __init__(
        self,
        collaborators: DeliveryCollaborators,
        *,
        formatter: Optional[UnitFormatter] = None,
        tick_seconds: float = 1.0,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.collaborators = collaborators
        self.formatter = formatter or UnitFormatter()
        self.tick_seconds = tick_seconds
        self._clock = clock or _now
        self.session: Optional[wizard.WizardSession] = None
        self.stop: Optional[StopRow] = None
        self.route: Optional[RouteRow] = None
        self.products: List[FuelProductRow] = []
        self.compartments: List[CompartmentRow] = []
        self.load_errors: Dict[str, str] = {}
        self.reporter: Optional[ElapsedTimeReporter] = None
        self.is_submitting = False
        self.last_error: Optional[str] = None

    # -- lifecycle ---------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self.session is not None

    def open(self, stop: Optional[StopRow], route: Optional[RouteRow]) -> wizard.WizardSession:
        """Start a fresh session for ``stop``; any previous session is discarded."""
        if self.is_open:
            self.close()
        now = self._clock()
        self.stop = stop
        self.route = route
        self.session = wizard.new_session(resolve_arrival(stop, now))
        self.last_error = None
        self.load_errors = {}
        self.products = self._load("products", self.collaborators.list_products)
        truck_id = route.truck_id if route is not None else None
        self.compartments = self._load("compartments", lambda: self.collaborators.list_compartments(truck_id))
        self.reporter = ElapsedTimeReporter(
            self.session.arrival_timestamp,
            interval=self.tick_seconds,
            clock=self._clock,
        )
        self.reporter.start()
        log.info(
            "Opened completion wizard for stop '%s' (%d products, %d compartments)",
            stop.stop_id if stop is not None else "-",
            len(self.products),
            len(self.compartments),
        )
        return self.session

    def close(self) -> None:
        if self.reporter is not None:
            self.reporter.stop()
            self.reporter = None
        if self.session is not None:
            log.info("Closed completion wizard for stop '%s'", self.stop.stop_id if self.stop is not None else "-")
        self.session = None

    def _load(self, name: str, loader: Callable[[], Sequence]) -> list:
        try:
            return list(loader())
        except Exception as exc:
            log.error("Failed to load %s for completion wizard: %s", name, exc)
            self.load_errors[name] = str(exc)
            return []

    def _require_session(self) -> wizard.WizardSession:
        if self.session is None:
            raise BusinessRuleViolation("Completion wizard is not open")
        return self.session

    # -- navigation --------------------------------------------------------

    @property
    def current_step(self) -> WizardStep:
        return self._require_session().current_step

    def can_advance(self) -> bool:
        return wizard.can_advance(self._require_session())

    def go_next(self) -> WizardStep:
        """Advance when the current step is complete; otherwise stay put."""
        session = self._require_session()
        if not wizard.can_advance(session):
            return session.current_step
        return wizard.advance(session)

    def go_back(self) -> WizardStep:
        return wizard.retreat(self._require_session())

    # -- selections --------------------------------------------------------

    def select_product(self, product_id: str) -> FuelProductRow:
        session = self._require_session()
        for product in self.products:
            if product.product_id == product_id:
                wizard.select_product(session, product_id)
                return product
        log.warning("Product selection failed for id '%s'", product_id)
        raise MissingReferenceError(f"Unknown product id: {product_id}")

    def eligible_compartments(self) -> List[CompartmentRow]:
        session = self._require_session()
        product_filter = None if session.use_custom_product else session.selected_product_id
        return capacity.eligible_compartments(self.compartments, product_filter)

    def select_compartment(self, compartment_id: str) -> CompartmentRow:
        session = self._require_session()
        for compartment in self.eligible_compartments():
            if compartment.compartment_id == compartment_id:
                wizard.select_compartment(session, compartment)
                return compartment
        log.warning("Compartment selection failed for id '%s'", compartment_id)
        raise MissingReferenceError(f"Unknown or ineligible compartment id: {compartment_id}")

    def selected_product(self) -> Optional[FuelProductRow]:
        session = self._require_session()
        return next((p for p in self.products if p.product_id == session.selected_product_id), None)

    # -- derived views -----------------------------------------------------

    def remaining_preview(self) -> Optional[Decimal]:
        """Compartment level after this delivery, shown once a positive quantity exists."""
        session = self._require_session()
        compartment = session.selected_compartment
        quantity = session.quantity_delivered
        if compartment is None or quantity is None or quantity <= 0:
            return None
        return capacity.preview_remaining(compartment, quantity)

    def elapsed(self) -> ElapsedSnapshot:
        session = self._require_session()
        if self.reporter is not None:
            return self.reporter.snapshot()
        return elapsed_snapshot(session.arrival_timestamp, self._clock())

    def summary(self) -> DeliverySummary:
        session = self._require_session()
        if session.use_custom_product:
            product_name = session.custom_product_name.strip()
        else:
            product = self.selected_product()
            product_name = product.product_name if product is not None else ""
        quantity = session.quantity_delivered
        quantity_text = self.formatter.format_volume(quantity) if quantity is not None else "-"
        compartment = None if session.use_custom_product else session.selected_compartment
        return DeliverySummary(
            product_name=product_name,
            quantity_label=quantity_text,
            duration_minutes=self.elapsed().elapsed_minutes,
            compartment_name=compartment.compartment_name if compartment is not None else None,
        )

    # -- commit ------------------------------------------------------------

    def commit(self) -> Optional[CompletionRecord]:
        """Record the delivery and close the wizard.

        Returns ``None`` without side effects while a previous commit is still
        in flight.

        Raises:
            BusinessRuleViolation: If the wizard is closed, not on the
                signature step, has no stop, or any visible step is incomplete.
            CompletionFailed: If the level update or the handoff raised. The
                session is preserved for a retry.
        """
        if self.is_submitting:
            log.warning("Ignoring completion request while a previous commit is in flight")
            return None

        session = self._require_session()
        if self.stop is None:
            raise BusinessRuleViolation("Cannot complete a delivery without a stop")
        if session.current_step is not WizardStep.SIGNATURE:
            raise BusinessRuleViolation(
                f"Delivery can only be completed from the signature step (current: {session.current_step.value})"
            )
        missing = wizard.incomplete_steps(session)
        if missing:
            names = ", ".join(step.value for step in missing)
            log.warning("Completion rejected for stop '%s': incomplete steps %s", self.stop.stop_id, names)
            raise BusinessRuleViolation(f"Incomplete steps: {names}")

        self.is_submitting = True
        self.last_error = None
        adjusted: Optional[CompartmentRow] = None
        truck_id = self.route.truck_id if self.route is not None else None
        try:
            record = build_completion_record(session, departure=self._clock())
            compartment = None if session.use_custom_product else session.selected_compartment
            if compartment is not None and truck_id:
                new_level = capacity.preview_remaining(compartment, record.quantity_delivered)
                self.collaborators.update_compartment_level(compartment.compartment_id, new_level, truck_id)
                adjusted = compartment
                log.info(
                    "Compartment '%s' level %s -> %s",
                    compartment.compartment_id,
                    compartment.current_level,
                    new_level,
                )
            self.collaborators.on_complete(record)
        except Exception as exc:
            message = f"Failed to complete delivery: {exc}"
            if adjusted is not None and truck_id:
                message = self._restore_level(adjusted, truck_id, message)
            self.last_error = message
            log.error("%s (stop '%s')", message, self.stop.stop_id)
            raise CompletionFailed(message) from exc
        finally:
            self.is_submitting = False

        log.info(
            "Completed delivery at stop '%s': %s gallons",
            self.stop.stop_id,
            record.quantity_delivered,
        )
        self.close()
        return record

    def _restore_level(self, compartment: CompartmentRow, truck_id: str, message: str) -> str:
        try:
            self.collaborators.update_compartment_level(
                compartment.compartment_id,
                compartment.current_level,
                truck_id,
            )
        except Exception as restore_exc:
            log.error(
                "Could not restore compartment '%s' to %s: %s",
                compartment.compartment_id,
                compartment.current_level,
                restore_exc,
            )
            return f"{message}; compartment {compartment.compartment_id} level was not restored: {restore_exc}"
        log.info("Restored compartment '%s' to %s", compartment.compartment_id, compartment.current_level)
        return message
