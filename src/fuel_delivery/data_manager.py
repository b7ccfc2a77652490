"""Data access layer for the fuel delivery toolkit.

This module provides low-level helpers that read from and write to the fleet
workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening and persisting the Excel file.
3. Sheet operations: loading structured records and appending or updating
   individual rows.

All volumes stored in the workbook are canonical gallons.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import SheetName, UnitSystem


CONFIG_FILE_NAME = "config.ini"
FUEL_PRODUCTS_SHEET = SheetName.FUEL_PRODUCTS.value
COMPARTMENTS_SHEET = SheetName.COMPARTMENTS.value
ROUTES_SHEET = SheetName.ROUTES.value
ROUTE_STOPS_SHEET = SheetName.ROUTE_STOPS.value
COMPLETIONS_SHEET = SheetName.COMPLETIONS.value

DEFAULT_TICK_SECONDS = 1.0
# Excel keeps at most this many characters in one cell.
MAX_CELL_TEXT = 32_767


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    fleet_name: str
    schema_version: str
    unit_system: UnitSystem = UnitSystem.IMPERIAL
    tick_seconds: float = DEFAULT_TICK_SECONDS


@dataclass(frozen=True)
class FuelProductRow:
    """In-memory view of a row from the ``FuelProducts`` sheet."""

    product_id: str
    product_name: str
    product_code: str
    base_price_per_unit: Optional[Decimal]
    is_active: bool


@dataclass(frozen=True)
class CompartmentRow:
    """In-memory view of a row from the ``Compartments`` sheet."""

    compartment_id: str
    truck_id: str
    compartment_name: str
    product_id: Optional[str]
    capacity: Decimal
    current_level: Decimal


@dataclass(frozen=True)
class RouteRow:
    """In-memory view of a row from the ``Routes`` sheet."""

    route_id: str
    truck_id: Optional[str]
    route_date: Optional[str]


@dataclass(frozen=True)
class StopRow:
    """In-memory view of a row from the ``RouteStops`` sheet."""

    stop_id: str
    route_id: str
    customer_id: Optional[str]
    customer_name: Optional[str]
    status: str
    actual_arrival: Optional[str]
    actual_departure: Optional[str]


@dataclass(frozen=True)
class CompletionRow:
    """In-memory view of a row from the ``Completions`` sheet."""

    completion_id: str
    stop_id: str
    truck_id: Optional[str]
    product_id: Optional[str]
    custom_product_name: Optional[str]
    compartment_id: Optional[str]
    gallons_delivered: Decimal
    meter_start: Optional[Decimal]
    meter_end: Optional[Decimal]
    tank_level_before: Decimal
    tank_level_after: Decimal
    unit_price: Optional[Decimal]
    subtotal: Optional[Decimal]
    signature: Optional[str]
    customer_present: bool
    notes: str
    arrival_iso: str
    departure_iso: str


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match wins.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Validation of required entries happens in :func:`parse_settings`.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` entries are mandatory. ``[Units] UnitSystem`` and
    ``[Wizard] TickSeconds`` are optional and fall back to imperial units and
    a one-second tick. Relative ``DataFile`` entries are anchored to
    ``base_path`` (or the current working directory).

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing, or
            if ``UnitSystem`` names an unsupported system.
        ValueError: If ``TickSeconds`` is not a positive number.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        fleet_name = parser.get("System", "FleetName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    unit_raw = parser.get("Units", "UnitSystem", fallback=UnitSystem.IMPERIAL.value)
    try:
        unit_system = UnitSystem(unit_raw.strip().lower())
    except ValueError as exc:
        raise KeyError(f"Unsupported unit system: {unit_raw}") from exc

    tick_seconds = parser.getfloat("Wizard", "TickSeconds", fallback=DEFAULT_TICK_SECONDS)
    if tick_seconds <= 0:
        raise ValueError(f"TickSeconds must be positive, got {tick_seconds}")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        fleet_name=fleet_name,
        schema_version=schema_version,
        unit_system=unit_system,
        tick_seconds=tick_seconds,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the fleet workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the workbook file.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_sheet(workbook: Workbook, sheet_name: str) -> Iterable[Sequence[object]]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_fuel_products(workbook: Workbook) -> Iterable[FuelProductRow]:
    """Iterate over catalog products stored on the ``FuelProducts`` worksheet.

    Args:
        workbook (Workbook): Workbook containing the ``FuelProducts`` sheet.

    Yields:
        FuelProductRow: One structured row for each populated record.
    """

    for raw in _iter_sheet(workbook, FUEL_PRODUCTS_SHEET):
        yield deserialize_fuel_product(raw)


def iter_compartments(workbook: Workbook) -> Iterable[CompartmentRow]:
    """Iterate over truck compartments stored on the ``Compartments`` sheet."""

    for raw in _iter_sheet(workbook, COMPARTMENTS_SHEET):
        yield deserialize_compartment(raw)


def iter_routes(workbook: Workbook) -> Iterable[RouteRow]:
    """Iterate over delivery routes stored on the ``Routes`` sheet."""

    for raw in _iter_sheet(workbook, ROUTES_SHEET):
        yield deserialize_route(raw)


def iter_stops(workbook: Workbook) -> Iterable[StopRow]:
    """Iterate over route stops stored on the ``RouteStops`` sheet."""

    for raw in _iter_sheet(workbook, ROUTE_STOPS_SHEET):
        yield deserialize_stop(raw)


def iter_completions(workbook: Workbook) -> Iterable[CompletionRow]:
    """Stream completion records from the ``Completions`` worksheet.

    Numeric columns become :class:`~decimal.Decimal` instances and optional
    text columns remain ``None`` when the sheet leaves them blank.

    Args:
        workbook (Workbook): Workbook containing the completions sheet.

    Yields:
        CompletionRow: Normalized completion record for each populated row.
    """

    for raw in _iter_sheet(workbook, COMPLETIONS_SHEET):
        yield deserialize_completion(raw)


def append_fuel_product(workbook: Workbook, record: FuelProductRow) -> None:
    """Append a catalog product to the ``FuelProducts`` worksheet."""

    workbook[FUEL_PRODUCTS_SHEET].append(serialize_fuel_product(record))


def append_compartment(workbook: Workbook, record: CompartmentRow) -> None:
    """Append a truck compartment to the ``Compartments`` worksheet."""

    workbook[COMPARTMENTS_SHEET].append(serialize_compartment(record))


def append_route(workbook: Workbook, record: RouteRow) -> None:
    """Append a route to the ``Routes`` worksheet."""

    workbook[ROUTES_SHEET].append(serialize_route(record))


def append_stop(workbook: Workbook, record: StopRow) -> None:
    """Append a route stop to the ``RouteStops`` worksheet."""

    workbook[ROUTE_STOPS_SHEET].append(serialize_stop(record))


def append_completion(workbook: Workbook, record: CompletionRow) -> None:
    """Append a completion record to the ``Completions`` worksheet.

    Numerical fields remain :class:`~decimal.Decimal` instances after
    serialization, allowing Excel to preserve precision when the workbook is
    saved.

    Args:
        workbook (Workbook): Workbook containing the completions sheet.
        record (CompletionRow): Completion to persist.
    """

    workbook[COMPLETIONS_SHEET].append(serialize_completion(record))


def update_compartment(workbook: Workbook, compartment_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing compartment.

    Args:
        workbook (Workbook): Workbook containing the compartments sheet.
        compartment_id (str): Identifier used to locate the target row.
        field_values (dict[str, Any]): Mapping of column names to replacement
            values.

    Raises:
        KeyError: If the compartment or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, COMPARTMENTS_SHEET, "CompartmentID", compartment_id)
    if row_index is None:
        raise KeyError(f"Compartment not found: {compartment_id}")
    _write_fields(workbook, COMPARTMENTS_SHEET, row_index, field_values, label="compartment")


def update_stop(workbook: Workbook, stop_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing route stop.

    Raises:
        KeyError: If the stop or any referenced column is missing.
    """

    row_index = locate_row(workbook, ROUTE_STOPS_SHEET, "StopID", stop_id)
    if row_index is None:
        raise KeyError(f"Stop not found: {stop_id}")
    _write_fields(workbook, ROUTE_STOPS_SHEET, row_index, field_values, label="stop")


def require_columns(workbook: Workbook, sheet_name: str, columns: Iterable[str], *, label: str) -> dict[str, int]:
    """Return the 1-based header index map of ``sheet_name`` after checking ``columns`` exist.

    Raises:
        KeyError: If any of ``columns`` is missing from the header row.
    """

    header_map = {cell.value: idx + 1 for idx, cell in enumerate(workbook[sheet_name][1])}
    for column in columns:
        if column not in header_map:
            raise KeyError(f"Unknown {label} field: {column}")
    return header_map


def _write_fields(workbook: Workbook, sheet_name: str, row_index: int, field_values: dict[str, Any], *, label: str) -> None:
    sheet = workbook[sheet_name]
    # Every column is checked before a cell is touched, so a bad request leaves the row intact.
    header_map = require_columns(workbook, sheet_name, field_values, label=label)
    for field, value in field_values.items():
        sheet.cell(row=row_index, column=header_map[field], value=value)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the lookup column.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        # Excel may hand back numeric-looking ids as numbers.
        if cell_value is not None and str(cell_value) == key_value:
            return row_idx

    return None


def serialize_fuel_product(record: FuelProductRow) -> list[object]:
    """Arrange a product as ``[ProductID, ProductName, ProductCode, BasePricePerUnit, IsActive]``."""

    return [
        record.product_id,
        record.product_name,
        record.product_code,
        record.base_price_per_unit,
        record.is_active,
    ]


def serialize_compartment(record: CompartmentRow) -> list[object]:
    """Arrange a compartment in the ``Compartments`` column order."""

    return [
        record.compartment_id,
        record.truck_id,
        record.compartment_name,
        record.product_id,
        record.capacity,
        record.current_level,
    ]


def serialize_route(record: RouteRow) -> list[object]:
    return [record.route_id, record.truck_id, record.route_date]


def serialize_stop(record: StopRow) -> list[object]:
    return [
        record.stop_id,
        record.route_id,
        record.customer_id,
        record.customer_name,
        record.status,
        record.actual_arrival,
        record.actual_departure,
    ]


def serialize_completion(record: CompletionRow) -> list[object]:
    """Convert a completion dataclass into the completions column order.

    Args:
        record (CompletionRow): Structured completion data to transform.

    Returns:
        list[object]: Values ordered to match the spreadsheet columns,
            preserving :class:`~decimal.Decimal` instances for numeric fields.
    """

    return [
        record.completion_id,
        record.stop_id,
        record.truck_id,
        record.product_id,
        record.custom_product_name,
        record.compartment_id,
        record.gallons_delivered,
        record.meter_start,
        record.meter_end,
        record.tank_level_before,
        record.tank_level_after,
        record.unit_price,
        record.subtotal,
        record.signature,
        record.customer_present,
        record.notes,
        record.arrival_iso,
        record.departure_iso,
    ]


def _optional_str(raw: object) -> Optional[str]:
    return str(raw) if raw is not None and raw != "" else None


def _optional_decimal(raw: object) -> Optional[Decimal]:
    if raw is None or raw == "":
        return None
    try:
        return Decimal(str(raw))
    except InvalidOperation:
        log.warning("Ignoring non-numeric workbook value '%s'", raw)
        return None


def _decimal_or_zero(raw: object) -> Decimal:
    value = _optional_decimal(raw)
    return value if value is not None else Decimal("0")


def deserialize_fuel_product(raw_row: Sequence[object]) -> FuelProductRow:
    """Convert a raw worksheet row into a strongly typed product record.

    Identifier and name fields are coerced to ``str`` to avoid surprises caused
    by Excel automatically interpreting numbers. A blank price stays ``None``.

    Args:
        raw_row (Sequence[object]): Raw cell values from the worksheet row.

    Returns:
        FuelProductRow: Dataclass containing consistent Python representations
            of the row contents.
    """

    product_id, product_name, product_code, price_raw, is_active = raw_row[:5]
    return FuelProductRow(
        product_id=str(product_id),
        product_name=str(product_name) if product_name is not None else "",
        product_code=str(product_code) if product_code is not None else "",
        base_price_per_unit=_optional_decimal(price_raw),
        is_active=bool(is_active),
    )


def deserialize_compartment(raw_row: Sequence[object]) -> CompartmentRow:
    """Convert a raw worksheet row into a strongly typed compartment record.

    Missing capacity or level values are treated as zero gallons.
    """

    compartment_id, truck_id, name, product_id, capacity_raw, level_raw = raw_row[:6]
    return CompartmentRow(
        compartment_id=str(compartment_id),
        truck_id=str(truck_id) if truck_id is not None else "",
        compartment_name=str(name) if name is not None else "",
        product_id=_optional_str(product_id),
        capacity=_decimal_or_zero(capacity_raw),
        current_level=_decimal_or_zero(level_raw),
    )


def deserialize_route(raw_row: Sequence[object]) -> RouteRow:
    route_id, truck_id, route_date = raw_row[:3]
    return RouteRow(
        route_id=str(route_id),
        truck_id=_optional_str(truck_id),
        route_date=_optional_str(route_date),
    )


def deserialize_stop(raw_row: Sequence[object]) -> StopRow:
    stop_id, route_id, customer_id, customer_name, status, arrival, departure = raw_row[:7]
    return StopRow(
        stop_id=str(stop_id),
        route_id=str(route_id) if route_id is not None else "",
        customer_id=_optional_str(customer_id),
        customer_name=_optional_str(customer_name),
        status=str(status) if status is not None else "",
        actual_arrival=_optional_str(arrival),
        actual_departure=_optional_str(departure),
    )


def deserialize_completion(raw_row: Sequence[object]) -> CompletionRow:
    """Convert a raw worksheet row into a strongly typed completion record.

    Decimal-compatible columns are normalized into :class:`~decimal.Decimal`
    instances, optional columns remain ``None`` when blank, and the notes
    column defaults to an empty string.

    Args:
        raw_row (Sequence[object]): Raw cell values in worksheet order.

    Returns:
        CompletionRow: Dataclass reflecting the row contents.
    """

    (
        completion_id,
        stop_id,
        truck_id,
        product_id,
        custom_product_name,
        compartment_id,
        gallons_raw,
        meter_start_raw,
        meter_end_raw,
        tank_before_raw,
        tank_after_raw,
        unit_price_raw,
        subtotal_raw,
        signature,
        customer_present,
        notes,
        arrival_iso,
        departure_iso,
    ) = raw_row[:18]

    return CompletionRow(
        completion_id=str(completion_id),
        stop_id=str(stop_id) if stop_id is not None else "",
        truck_id=_optional_str(truck_id),
        product_id=_optional_str(product_id),
        custom_product_name=_optional_str(custom_product_name),
        compartment_id=_optional_str(compartment_id),
        gallons_delivered=_decimal_or_zero(gallons_raw),
        meter_start=_optional_decimal(meter_start_raw),
        meter_end=_optional_decimal(meter_end_raw),
        tank_level_before=_decimal_or_zero(tank_before_raw),
        tank_level_after=_decimal_or_zero(tank_after_raw),
        unit_price=_optional_decimal(unit_price_raw),
        subtotal=_optional_decimal(subtotal_raw),
        signature=_optional_str(signature),
        customer_present=bool(customer_present),
        notes=str(notes) if notes is not None else "",
        arrival_iso=str(arrival_iso) if arrival_iso is not None else "",
        departure_iso=str(departure_iso) if departure_iso is not None else "",
    )
