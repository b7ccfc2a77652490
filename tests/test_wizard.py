"""Unit tests for wizard session state, step validators, and step navigation."""

from __future__ import annotations

from decimal import Decimal

import pytest

from fuel_delivery import wizard
from fuel_delivery.constants import STEP_ORDER, WizardStep

from conftest import ARRIVAL, SAMPLE_COMPARTMENTS


@pytest.fixture
def session() -> wizard.WizardSession:
    return wizard.new_session(ARRIVAL)


def _ready_catalog_session() -> wizard.WizardSession:
    session = wizard.new_session(ARRIVAL)
    wizard.select_product(session, "P-DSL")
    wizard.select_compartment(session, SAMPLE_COMPARTMENTS[0])
    wizard.set_quantity_delivered(session, "100")
    return session


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


def test_new_session_starts_on_product_with_defaults(session):
    """A fresh session sits on the first step with nothing entered."""

    assert session.current_step is WizardStep.PRODUCT
    assert session.use_custom_product is False
    assert session.selected_product_id is None
    assert session.selected_compartment is None
    assert session.quantity_delivered is None
    assert session.customer_present is True
    assert session.signature_image is None
    assert session.notes == ""


def test_arrival_timestamp_cannot_be_reassigned(session):
    """The arrival time is fixed for the life of the session."""

    with pytest.raises(AttributeError):
        session.arrival_timestamp = ARRIVAL.replace(hour=9)
    assert session.arrival_timestamp == ARRIVAL


def test_selected_compartment_id_follows_selection(session):
    assert session.selected_compartment_id is None
    wizard.select_compartment(session, SAMPLE_COMPARTMENTS[1])
    assert session.selected_compartment_id == "C2"


# ---------------------------------------------------------------------------
# Readings and the meter calculator
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("raw", [None, "", "   ", "abc", "NaN", "Infinity"])
def test_parse_reading_rejects_blank_and_non_numeric(raw):
    """Anything that is not a finite number reads as not entered."""

    assert wizard.parse_reading(raw) is None


def test_parse_reading_accepts_numbers_and_text():
    assert wizard.parse_reading(" 12.5 ") == Decimal("12.5")
    assert wizard.parse_reading(7) == Decimal("7")
    assert wizard.parse_reading(Decimal("3")) == Decimal("3")


def test_derive_quantity_rounds_to_one_decimal():
    assert wizard.derive_quantity(Decimal("1000"), Decimal("1120.46")) == Decimal("120.5")
    assert wizard.derive_quantity(Decimal("0"), Decimal("0.05")) == Decimal("0.1")


@pytest.mark.parametrize(
    ("start", "end"),
    [(None, Decimal("5")), (Decimal("5"), None), (Decimal("5"), Decimal("5")), (Decimal("9"), Decimal("5"))],
)
def test_derive_quantity_requires_end_above_start(start, end):
    assert wizard.derive_quantity(start, end) is None


def test_meter_writes_derive_quantity(session):
    """Entering both meters fills in the delivered quantity."""

    wizard.set_meter_start(session, "1000")
    assert session.quantity_delivered is None
    wizard.set_meter_end(session, "1120")
    assert session.quantity_delivered == Decimal("120.0")


def test_out_of_range_meter_difference_derives_nothing(session):
    """A meter pair too far apart to round leaves the quantity alone instead of raising."""

    assert wizard.derive_quantity(Decimal("0"), Decimal("1e30")) is None

    wizard.set_quantity_delivered(session, "75")
    wizard.set_meter_start(session, "0")
    wizard.set_meter_end(session, "1e30")
    assert session.meter_end == Decimal("1e30")
    assert session.quantity_delivered == Decimal("75")


def test_invalid_meter_pair_keeps_manual_quantity(session):
    """A manual entry survives meter writes that do not form a valid pair."""

    wizard.set_quantity_delivered(session, "75")
    wizard.set_meter_start(session, "500")
    wizard.set_meter_end(session, "400")
    assert session.quantity_delivered == Decimal("75")


def test_valid_meter_write_overrides_manual_quantity(session):
    """The next valid meter write replaces a typed quantity."""

    wizard.set_meter_start(session, "500")
    wizard.set_meter_end(session, "600")
    wizard.set_quantity_delivered(session, "80")
    assert session.quantity_delivered == Decimal("80")

    wizard.set_meter_end(session, "650")
    assert session.quantity_delivered == Decimal("150.0")


def test_clamp_tank_level_bounds_and_blank():
    assert wizard.clamp_tank_level(None) == Decimal("0")
    assert wizard.clamp_tank_level(Decimal("-5")) == Decimal("0")
    assert wizard.clamp_tank_level(Decimal("140")) == Decimal("100")
    assert wizard.clamp_tank_level(Decimal("42.5")) == Decimal("42.5")


def test_set_signature_treats_empty_as_cleared(session):
    wizard.set_signature(session, "data:image/png;base64,AAAA")
    wizard.set_signature(session, "")
    assert session.signature_image is None


def test_customer_absent_keeps_captured_signature(session):
    """Toggling customer presence does not throw away a signature."""

    wizard.set_signature(session, "data:image/png;base64,AAAA")
    wizard.set_customer_present(session, False)
    wizard.set_customer_present(session, True)
    assert session.signature_image == "data:image/png;base64,AAAA"


# ---------------------------------------------------------------------------
# Validators
# ---------------------------------------------------------------------------


def test_product_step_needs_a_catalog_selection(session):
    assert wizard.can_advance(session) is False
    wizard.select_product(session, "P-GAS")
    assert wizard.can_advance(session) is True


def test_product_step_with_custom_name_ignores_whitespace(session):
    """A custom product name must contain something besides whitespace."""

    wizard.set_use_custom_product(session, True)
    wizard.set_custom_product_name(session, "   ")
    assert wizard.is_step_complete(session, WizardStep.PRODUCT) is False
    wizard.set_custom_product_name(session, "Farm diesel")
    assert wizard.is_step_complete(session, WizardStep.PRODUCT) is True


def test_compartment_step_is_satisfied_by_custom_product(session):
    assert wizard.is_step_complete(session, WizardStep.COMPARTMENT) is False
    wizard.set_use_custom_product(session, True)
    assert wizard.is_step_complete(session, WizardStep.COMPARTMENT) is True


@pytest.mark.parametrize(("raw", "expected"), [(None, False), ("0", False), ("-3", False), ("0.1", True)])
def test_quantity_step_requires_positive_amount(session, raw, expected):
    wizard.set_quantity_delivered(session, raw)
    assert wizard.is_step_complete(session, WizardStep.QUANTITY) is expected


def test_tank_step_is_always_complete(session):
    assert wizard.is_step_complete(session, WizardStep.TANK_LEVELS) is True


def test_signature_step_requires_signature_only_when_customer_present(session):
    """No signature is needed when the customer is not there."""

    assert wizard.is_step_complete(session, WizardStep.SIGNATURE) is False
    wizard.set_customer_present(session, False)
    assert wizard.is_step_complete(session, WizardStep.SIGNATURE) is True
    wizard.set_customer_present(session, True)
    wizard.set_signature(session, "data:image/png;base64,AAAA")
    assert wizard.is_step_complete(session, WizardStep.SIGNATURE) is True


def test_incomplete_steps_lists_visible_failures(session):
    assert wizard.incomplete_steps(session) == [
        WizardStep.PRODUCT,
        WizardStep.COMPARTMENT,
        WizardStep.QUANTITY,
        WizardStep.SIGNATURE,
    ]
    wizard.set_use_custom_product(session, True)
    assert WizardStep.COMPARTMENT not in wizard.incomplete_steps(session)


# ---------------------------------------------------------------------------
# Step graph
# ---------------------------------------------------------------------------


def test_catalog_path_visits_every_step():
    """Forward navigation walks the full step order for catalog products."""

    session = _ready_catalog_session()
    visited = [session.current_step]
    while wizard.next_step(session) is not None:
        visited.append(wizard.advance(session))
    assert visited == list(STEP_ORDER)


def test_custom_path_skips_compartment_both_ways(session):
    """A custom product routes around the compartment step forward and back."""

    wizard.set_use_custom_product(session, True)
    wizard.set_custom_product_name(session, "Farm diesel")

    assert wizard.advance(session) is WizardStep.QUANTITY
    assert wizard.retreat(session) is WizardStep.PRODUCT


def test_catalog_back_from_quantity_returns_to_compartment():
    session = _ready_catalog_session()
    session.current_step = WizardStep.QUANTITY
    assert wizard.retreat(session) is WizardStep.COMPARTMENT


def test_boundaries_are_no_ops(session):
    """Back on the first step and forward on the last step do nothing."""

    assert wizard.previous_step(session) is None
    assert wizard.retreat(session) is WizardStep.PRODUCT

    session.current_step = WizardStep.SIGNATURE
    assert wizard.next_step(session) is None
    assert wizard.advance(session) is WizardStep.SIGNATURE


def test_navigation_preserves_entered_values():
    """Moving back and forth never clears what was entered."""

    session = _ready_catalog_session()
    wizard.advance(session)
    wizard.advance(session)
    wizard.retreat(session)
    wizard.retreat(session)
    assert session.selected_product_id == "P-DSL"
    assert session.selected_compartment_id == "C1"
    assert session.quantity_delivered == Decimal("100")


# ---------------------------------------------------------------------------
# Progress indicator
# ---------------------------------------------------------------------------


def test_step_progress_marks_active_complete_and_pending():
    session = _ready_catalog_session()
    session.current_step = WizardStep.QUANTITY

    progress = wizard.step_progress(session)

    assert [(p.step, p.ordinal, p.status) for p in progress] == [
        (WizardStep.PRODUCT, 1, "complete"),
        (WizardStep.COMPARTMENT, 2, "complete"),
        (WizardStep.QUANTITY, 3, "active"),
        (WizardStep.TANK_LEVELS, 4, "pending"),
        (WizardStep.SIGNATURE, 5, "pending"),
    ]


def test_step_progress_hides_compartment_for_custom_product(session):
    """The hidden compartment step leaves a gap in the numbering."""

    wizard.set_use_custom_product(session, True)
    ordinals = [(p.step, p.ordinal) for p in wizard.step_progress(session)]
    assert ordinals == [
        (WizardStep.PRODUCT, 1),
        (WizardStep.QUANTITY, 3),
        (WizardStep.TANK_LEVELS, 4),
        (WizardStep.SIGNATURE, 5),
    ]
