"""Enumerations shared across the fuel delivery modules.

Centralises domain constants so that the data access layer (DAL), business
logic layer (BLL), the completion wizard, and the CLI rely on a single source
of truth for step identifiers, statuses, and sheet names.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"


class WizardStep(str, Enum):
    """Enumerate the steps of the delivery completion wizard in display order."""

    PRODUCT = "product"
    COMPARTMENT = "compartment"
    QUANTITY = "quantity"
    TANK_LEVELS = "tank"
    SIGNATURE = "signature"


STEP_ORDER: tuple[WizardStep, ...] = tuple(WizardStep)


class StopStatus(str, Enum):
    """Enumerate the lifecycle states of a route stop."""

    PENDING = "pending"
    ARRIVED = "arrived"
    COMPLETED = "completed"
    SKIPPED = "skipped"


class UnitSystem(str, Enum):
    """Enumerate the supported volume unit systems."""

    IMPERIAL = "imperial"
    METRIC = "metric"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    FUEL_PRODUCTS = "FuelProducts"
    COMPARTMENTS = "Compartments"
    ROUTES = "Routes"
    ROUTE_STOPS = "RouteStops"
    COMPLETIONS = "Completions"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "STEP_ORDER",
    "WizardStep",
    "StopStatus",
    "UnitSystem",
    "SheetName",
]
