"""Shared pytest fixtures and utilities for fuel delivery tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator
from unittest.mock import Mock

import openpyxl
import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from fuel_delivery import cli, constants, core_logic, data_manager  # noqa: E402
from fuel_delivery.completion import DeliveryCollaborators  # noqa: E402
from fuel_delivery.setup_workbook import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_FLEET_NAME = "Test Fleet"
ARRIVAL = datetime(2026, 10, 19, 8, 30, tzinfo=UTC)
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "FleetName = {fleet_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Units]\n"
    "UnitSystem = {unit_system}\n\n"
    "[Wizard]\n"
    "TickSeconds = {tick_seconds}\n"
)

SAMPLE_PRODUCTS = [
    data_manager.FuelProductRow("P-DSL", "Diesel", "DSL", Decimal("3.50"), True),
    data_manager.FuelProductRow("P-GAS", "Gasoline", "GAS", Decimal("3.20"), True),
    data_manager.FuelProductRow("P-KER", "Kerosene", "KER", None, False),
]

SAMPLE_COMPARTMENTS = [
    data_manager.CompartmentRow("C1", "T1", "Front", "P-DSL", Decimal("2000"), Decimal("1500")),
    data_manager.CompartmentRow("C2", "T1", "Middle", "P-GAS", Decimal("1500"), Decimal("600")),
    data_manager.CompartmentRow("C3", "T1", "Rear", "P-DSL", Decimal("1000"), Decimal("40")),
    data_manager.CompartmentRow("C9", "T2", "Solo", "P-DSL", Decimal("3000"), Decimal("3000")),
]

SAMPLE_ROUTES = [
    data_manager.RouteRow("R1", "T1", "2026-10-19"),
    data_manager.RouteRow("R2", None, "2026-10-19"),
]

SAMPLE_STOPS = [
    data_manager.StopRow("S1", "R1", "CU1", "Acme Farms", "arrived", ARRIVAL.isoformat(), None),
    data_manager.StopRow("S2", "R1", "CU2", "Baker Lodge", "pending", None, None),
    data_manager.StopRow("S3", "R2", "CU3", "Cedar Mill", "pending", None, None),
    data_manager.StopRow("S4", "R1", "CU4", "Dune Motel", "completed", ARRIVAL.isoformat(), ARRIVAL.isoformat()),
]


def seed_fleet(workbook) -> None:
    """Append the sample catalog, compartments, routes, and stops to ``workbook``."""

    for product in SAMPLE_PRODUCTS:
        data_manager.append_fuel_product(workbook, product)
    for compartment in SAMPLE_COMPARTMENTS:
        data_manager.append_compartment(workbook, compartment)
    for route in SAMPLE_ROUTES:
        data_manager.append_route(workbook, route)
    for stop in SAMPLE_STOPS:
        data_manager.append_stop(workbook, stop)


class FakeClock:
    """Deterministic replacement for the wall clock."""

    def __init__(self, start: datetime = ARRIVAL) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    fleet_name: str
    unit_system: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized fleet workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "fleet_workbook.xlsx",
        seed: bool = False,
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        if seed:
            workbook = openpyxl.load_workbook(workbook_path)
            seed_fleet(workbook)
            workbook.save(workbook_path)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh, empty fleet workbook."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        fleet_name: str = DEFAULT_FLEET_NAME,
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        unit_system: str = "imperial",
        tick_seconds: str = "1",
        seed: bool = True,
    ) -> ConfigBundle:
        subdir = f"bundle_{uuid.uuid4().hex}"
        workbook_path = workbook_factory(subdir=subdir, seed=seed)
        bundle_dir = workbook_path.parent
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                fleet_name=fleet_name,
                schema_version=schema_version,
                unit_system=unit_system,
                tick_seconds=tick_seconds,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            fleet_name=fleet_name,
            unit_system=unit_system,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path of a seeded bundle."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="fuel-cli", description="Fuel CLI")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "fleet_workbook.xlsx",
        fleet_name=DEFAULT_FLEET_NAME,
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )


@pytest.fixture
def workbook() -> Mock:
    """Return a mock workbook object for business logic tests."""

    return Mock(name="workbook")


@pytest.fixture
def context(settings: data_manager.ConfigSettings, workbook: Mock) -> core_logic.RuntimeContext:
    """Assemble a runtime context from injected settings and workbook mocks."""

    return core_logic.RuntimeContext(settings=settings, workbook=workbook)


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply


# ---------------------------------------------------------------------------
# Wizard fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    """Return a controllable clock starting at the sample arrival time."""

    return FakeClock()


@pytest.fixture
def collaborators() -> DeliveryCollaborators:
    """Return collaborators backed by mocks and the sample truck T1 data."""

    truck_one = [row for row in SAMPLE_COMPARTMENTS if row.truck_id == "T1"]
    return DeliveryCollaborators(
        list_products=Mock(name="list_products", return_value=[p for p in SAMPLE_PRODUCTS if p.is_active]),
        list_compartments=Mock(name="list_compartments", return_value=truck_one),
        update_compartment_level=Mock(name="update_compartment_level", return_value=None),
        on_complete=Mock(name="on_complete", return_value=None),
    )


@pytest.fixture
def sample_stop() -> data_manager.StopRow:
    return SAMPLE_STOPS[0]


@pytest.fixture
def sample_route() -> data_manager.RouteRow:
    return SAMPLE_ROUTES[0]
