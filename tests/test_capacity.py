"""Unit tests for compartment filtering and level projections."""

from __future__ import annotations

from decimal import Decimal

import pytest

from fuel_delivery import capacity, data_manager

from conftest import SAMPLE_COMPARTMENTS


def _compartment(level: str, cap: str = "1000") -> data_manager.CompartmentRow:
    return data_manager.CompartmentRow("CX", "T1", "Test", "P-DSL", Decimal(cap), Decimal(level))


def test_eligible_compartments_filters_by_product_and_keeps_order():
    """Only compartments carrying the chosen product are eligible, in input order."""

    result = capacity.eligible_compartments(SAMPLE_COMPARTMENTS, "P-DSL")
    assert [row.compartment_id for row in result] == ["C1", "C3", "C9"]


def test_eligible_compartments_without_filter_returns_everything():
    result = capacity.eligible_compartments(SAMPLE_COMPARTMENTS, None)
    assert result == SAMPLE_COMPARTMENTS
    assert result is not SAMPLE_COMPARTMENTS


def test_eligible_compartments_unknown_product_is_empty():
    assert capacity.eligible_compartments(SAMPLE_COMPARTMENTS, "P-NONE") == []


@pytest.mark.parametrize(
    ("level", "quantity", "expected"),
    [
        ("500", "120", "380"),
        ("40", "100", "0"),
        ("100", "100", "0"),
    ],
)
def test_preview_remaining_floors_at_zero(level, quantity, expected):
    """The projected level never drops below zero."""

    assert capacity.preview_remaining(_compartment(level), Decimal(quantity)) == Decimal(expected)


def test_preview_remaining_treats_missing_quantity_as_zero():
    assert capacity.preview_remaining(_compartment("250"), None) == Decimal("250")


def test_fill_percentage_rounds_half_up():
    """Fill percentage is a whole number rounded half up."""

    assert capacity.fill_percentage(_compartment("1500", "2000")) == 75
    assert capacity.fill_percentage(_compartment("5", "1000")) == 1
    assert capacity.fill_percentage(_compartment("4", "1000")) == 0


def test_fill_percentage_without_capacity_is_zero():
    assert capacity.fill_percentage(_compartment("10", "0")) == 0


def test_headroom_is_capacity_minus_level():
    assert capacity.headroom(_compartment("600", "1500")) == Decimal("900")
