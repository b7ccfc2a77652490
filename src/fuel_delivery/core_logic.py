"""Business logic layer for the fuel delivery toolkit.

This module answers the lookups the completion wizard needs and performs the
two writes it commits (compartment level, completion record) against the
fleet workbook. All I/O goes through the Data Access Layer (DAL).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

from openpyxl.workbook import Workbook

from . import data_manager, log
from .completion import CompletionRecord, DeliveryCollaborators
from .constants import EXPECTED_SCHEMA_VERSION, StopStatus
from .errors import BusinessRuleViolation, MissingReferenceError
from .units import UnitFormatter

CENT = Decimal("0.01")


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class CompletionSummary:
    """Aggregate figures over a set of completions."""

    count: int
    total_gallons: Decimal
    total_subtotal: Decimal


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    Buckets hold precomputed query results per sheet so repeated lookups do
    not rescan the workbook.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state.

    Missing buckets are ignored.
    """

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_products_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the product cache bucket on demand.

    Returns:
        dict[str, Any]: Bucket containing ``all`` products, ``active``
            products, and a ``by_id`` lookup dictionary.
    """

    bucket = _get_cache_bucket(context, "products")
    if "all" not in bucket:
        all_products = list(data_manager.iter_fuel_products(context.workbook))
        bucket["all"] = all_products
        bucket["active"] = [product for product in all_products if product.is_active]
        bucket["by_id"] = {product.product_id: product for product in all_products}
        log.debug(
            "Populated products cache with %d entries (%d active)",
            len(all_products),
            len(bucket["active"]),
        )
    return bucket


def _ensure_compartments_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the compartment cache bucket on demand.

    Returns:
        dict[str, Any]: Bucket containing ``all`` compartments, a
            ``by_truck`` mapping preserving sheet order, and ``by_id``.
    """

    bucket = _get_cache_bucket(context, "compartments")
    if "all" not in bucket:
        all_compartments = list(data_manager.iter_compartments(context.workbook))
        by_truck: Dict[str, List[data_manager.CompartmentRow]] = {}
        for compartment in all_compartments:
            by_truck.setdefault(compartment.truck_id, []).append(compartment)
        bucket["all"] = all_compartments
        bucket["by_truck"] = by_truck
        bucket["by_id"] = {compartment.compartment_id: compartment for compartment in all_compartments}
        log.debug(
            "Populated compartments cache with %d entries across %d trucks",
            len(all_compartments),
            len(by_truck),
        )
    return bucket


def _ensure_routes_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "routes")
    if "by_id" not in bucket:
        bucket["by_id"] = {route.route_id: route for route in data_manager.iter_routes(context.workbook)}
        log.debug("Populated routes cache with %d entries", len(bucket["by_id"]))
    return bucket


def _ensure_stops_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "stops")
    if "all" not in bucket:
        all_stops = list(data_manager.iter_stops(context.workbook))
        bucket["all"] = all_stops
        bucket["by_id"] = {stop.stop_id: stop for stop in all_stops}
        log.debug("Populated stops cache with %d entries", len(all_stops))
    return bucket


def _ensure_completions_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the completions cache bucket on demand.

    Completions are append-only, so caching the full list is safe until the
    next :func:`record_completion` invalidates it.
    """

    bucket = _get_cache_bucket(context, "completions")
    if "all" not in bucket:
        bucket["all"] = list(data_manager.iter_completions(context.workbook))
        log.debug("Populated completions cache with %d entries", len(bucket["all"]))
    return bucket


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def unit_formatter(context: RuntimeContext) -> UnitFormatter:
    return UnitFormatter(context.settings.unit_system)


def list_products(context: RuntimeContext, *, include_inactive: bool = False) -> List[data_manager.FuelProductRow]:
    """Return catalog products in sheet order, active ones only by default."""
    cache = _ensure_products_cache(context)
    source = cache["all"] if include_inactive else cache["active"]
    return list(source)


def get_product(context: RuntimeContext, product_id: str) -> data_manager.FuelProductRow:
    """Resolve a catalog product by its identifier.

    Raises:
        MissingReferenceError: If ``product_id`` is absent from the workbook.
    """
    cache = _ensure_products_cache(context)
    try:
        return cache["by_id"][product_id]
    except KeyError as exc:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise MissingReferenceError(f"Unknown product id: {product_id}") from exc


def list_compartments(context: RuntimeContext, truck_id: Optional[str]) -> List[data_manager.CompartmentRow]:
    """Return the compartments mounted on ``truck_id`` in sheet order.

    A route without a truck has no compartments, so ``None`` yields an empty
    list rather than an error.
    """
    if not truck_id:
        return []
    cache = _ensure_compartments_cache(context)
    return list(cache["by_truck"].get(truck_id, []))


def get_compartment(context: RuntimeContext, compartment_id: str) -> data_manager.CompartmentRow:
    cache = _ensure_compartments_cache(context)
    try:
        return cache["by_id"][compartment_id]
    except KeyError as exc:
        log.warning("Compartment lookup failed for id '%s'", compartment_id)
        raise MissingReferenceError(f"Unknown compartment id: {compartment_id}") from exc


def get_route(context: RuntimeContext, route_id: str) -> data_manager.RouteRow:
    cache = _ensure_routes_cache(context)
    try:
        return cache["by_id"][route_id]
    except KeyError as exc:
        log.warning("Route lookup failed for id '%s'", route_id)
        raise MissingReferenceError(f"Unknown route id: {route_id}") from exc


def get_stop(context: RuntimeContext, stop_id: str) -> data_manager.StopRow:
    cache = _ensure_stops_cache(context)
    try:
        return cache["by_id"][stop_id]
    except KeyError as exc:
        log.warning("Stop lookup failed for id '%s'", stop_id)
        raise MissingReferenceError(f"Unknown stop id: {stop_id}") from exc


def list_stops(context: RuntimeContext, *, route_id: Optional[str] = None) -> List[data_manager.StopRow]:
    stops = _ensure_stops_cache(context)["all"]
    if route_id is None:
        return list(stops)
    return [stop for stop in stops if stop.route_id == route_id]


def update_compartment_level(
    context: RuntimeContext,
    compartment_id: str,
    new_level: Decimal,
    truck_id: str,
) -> data_manager.CompartmentRow:
    """Write a new current level for one compartment.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        compartment_id (str): Compartment to update.
        new_level (Decimal): Level in gallons after the delivery.
        truck_id (str): Truck the compartment must belong to.

    Returns:
        data_manager.CompartmentRow: The compartment as it reads after the
            update.

    Raises:
        MissingReferenceError: If the compartment is unknown or mounted on a
            different truck.
        ValueError: If ``new_level`` is negative.
    """
    compartment = get_compartment(context, compartment_id)
    if compartment.truck_id != truck_id:
        log.warning(
            "Compartment '%s' belongs to truck '%s', not '%s'",
            compartment_id,
            compartment.truck_id,
            truck_id,
        )
        raise MissingReferenceError(f"Compartment {compartment_id} is not on truck {truck_id}")
    require_nonnegative_level(new_level)

    data_manager.update_compartment(
        context.workbook,
        compartment_id,
        field_values={"CurrentLevelGallons": new_level},
    )
    _invalidate_cache(context, "compartments")
    log.info(
        "Updated compartment '%s' on truck '%s' from %s to %s gallons",
        compartment_id,
        truck_id,
        compartment.current_level,
        new_level,
    )
    return get_compartment(context, compartment_id)


def record_completion(
    context: RuntimeContext,
    stop_id: str,
    record: CompletionRecord,
) -> data_manager.CompletionRow:
    """Append a completion row and close out the stop.

    Catalog deliveries are priced from the product's base price; custom
    products carry no price. The stop is marked ``completed`` with the
    record's departure time, and its arrival is filled in if it was blank.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        stop_id (str): Stop the delivery belongs to.
        record (CompletionRecord): Record produced by the completion wizard.

    Returns:
        data_manager.CompletionRow: The appended row.

    Raises:
        MissingReferenceError: If the stop, its route, or the product is
            unknown.
        BusinessRuleViolation: If the stop was already completed, or a text
            field (signature, notes, custom product name) is too long for one
            workbook cell.
        ValueError: If the delivered quantity is not positive.
        KeyError: If the stop sheet lacks a close-out column.
    """
    stop = get_stop(context, stop_id)
    if stop.status == StopStatus.COMPLETED.value:
        log.warning("Stop '%s' is already completed", stop_id)
        raise BusinessRuleViolation(f"Stop '{stop_id}' is already completed")
    route = get_route(context, stop.route_id)
    require_positive_quantity(record.quantity_delivered)
    require_storable_text("signature", record.signature_image)
    require_storable_text("notes", record.notes)
    require_storable_text("custom product name", record.custom_product_name)

    unit_price: Optional[Decimal] = None
    subtotal: Optional[Decimal] = None
    if record.product_id is not None:
        product = get_product(context, record.product_id)
        unit_price = product.base_price_per_unit
        if unit_price is not None:
            subtotal = (record.quantity_delivered * unit_price).quantize(CENT, rounding=ROUND_HALF_UP)

    row = build_completion_row(
        record,
        completion_id=generate_completion_id(when=record.departure_timestamp),
        stop_id=stop_id,
        truck_id=route.truck_id,
        unit_price=unit_price,
        subtotal=subtotal,
    )
    stop_fields: Dict[str, Any] = {
        "Status": StopStatus.COMPLETED.value,
        "ActualDeparture": row.departure_iso,
    }
    if not stop.actual_arrival:
        stop_fields["ActualArrival"] = row.arrival_iso
    # A stop sheet that cannot take the close-out must fail before the completion row exists.
    data_manager.require_columns(context.workbook, data_manager.ROUTE_STOPS_SHEET, stop_fields, label="stop")

    data_manager.append_completion(context.workbook, row)
    data_manager.update_stop(context.workbook, stop_id, field_values=stop_fields)
    _invalidate_cache(context, "completions", "stops")
    log.info(
        "Recorded completion '%s' for stop '%s' (gallons=%s, subtotal=%s)",
        row.completion_id,
        stop_id,
        row.gallons_delivered,
        row.subtotal,
    )
    return row


def build_completion_row(
    record: CompletionRecord,
    *,
    completion_id: str,
    stop_id: str,
    truck_id: Optional[str],
    unit_price: Optional[Decimal],
    subtotal: Optional[Decimal],
) -> data_manager.CompletionRow:
    """Materialize a :class:`CompletionRecord` into a DAL completion row."""
    return data_manager.CompletionRow(
        completion_id=completion_id,
        stop_id=stop_id,
        truck_id=truck_id,
        product_id=record.product_id,
        custom_product_name=record.custom_product_name,
        compartment_id=record.compartment_id,
        gallons_delivered=record.quantity_delivered,
        meter_start=record.meter_start,
        meter_end=record.meter_end,
        tank_level_before=record.tank_level_before,
        tank_level_after=record.tank_level_after,
        unit_price=unit_price,
        subtotal=subtotal,
        signature=record.signature_image,
        customer_present=record.customer_present,
        notes=record.notes,
        arrival_iso=record.arrival_timestamp.isoformat(),
        departure_iso=record.departure_timestamp.isoformat(),
    )


def build_collaborators(context: RuntimeContext, stop_id: str) -> DeliveryCollaborators:
    """Bind the wizard's external operations to this workbook and stop."""

    def _on_complete(record: CompletionRecord) -> None:
        record_completion(context, stop_id, record)

    def _update_level(compartment_id: str, new_level: Decimal, truck_id: str) -> None:
        update_compartment_level(context, compartment_id, new_level, truck_id)

    return DeliveryCollaborators(
        list_products=lambda: list_products(context),
        list_compartments=lambda truck_id: list_compartments(context, truck_id),
        update_compartment_level=_update_level,
        on_complete=_on_complete,
    )


def list_completions(context: RuntimeContext, *, on_date: Optional[date] = None) -> List[data_manager.CompletionRow]:
    """Return recorded completions in workbook order, optionally for one departure date."""
    rows = _ensure_completions_cache(context)["all"]
    if on_date is None:
        return list(rows)
    return [row for row in rows if _departure_date(row) == on_date]


def _departure_date(row: data_manager.CompletionRow) -> Optional[date]:
    try:
        return datetime.fromisoformat(row.departure_iso).date()
    except ValueError:
        log.warning("Completion '%s' has an unreadable departure time '%s'", row.completion_id, row.departure_iso)
        return None


def summarize_completions(context: RuntimeContext, *, on_date: Optional[date] = None) -> CompletionSummary:
    """Count completions and total their gallons and subtotals."""
    rows = list_completions(context, on_date=on_date)
    total_gallons = sum((row.gallons_delivered for row in rows), Decimal("0"))
    total_subtotal = sum((row.subtotal for row in rows if row.subtotal is not None), Decimal("0"))
    log.debug(
        "Summarized %d completions: gallons=%s subtotal=%s",
        len(rows),
        total_gallons,
        total_subtotal,
    )
    return CompletionSummary(count=len(rows), total_gallons=total_gallons, total_subtotal=total_subtotal)


def generate_completion_id(*, prefix: str = "C", when: Optional[datetime] = None) -> str:
    """Generate a sortable identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}``."""
    when = when or _resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}"


def require_positive_quantity(quantity: Decimal) -> None:
    """Validate that a delivered quantity is strictly positive.

    Raises:
        ValueError: If ``quantity`` is zero or negative.
    """
    if quantity <= Decimal("0"):
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be greater than zero")


def require_storable_text(field_name: str, value: Optional[str]) -> None:
    """Validate that ``value`` fits in one workbook cell.

    Excel cuts longer text short on save, so an oversized value is refused
    instead of being stored corrupt.

    Raises:
        BusinessRuleViolation: If ``value`` exceeds ``data_manager.MAX_CELL_TEXT`` characters.
    """
    if value is not None and len(value) > data_manager.MAX_CELL_TEXT:
        log.error("Completion %s is %d characters long (limit %d)", field_name, len(value), data_manager.MAX_CELL_TEXT)
        raise BusinessRuleViolation(
            f"Completion {field_name} is too large to store "
            f"({len(value)} characters, limit {data_manager.MAX_CELL_TEXT})"
        )


def require_nonnegative_level(level: Decimal) -> None:
    """Validate that a compartment level is not negative.

    Raises:
        ValueError: If ``level`` is less than zero.
    """
    if level < Decimal("0"):
        log.error("Compartment level validation failed: %s", level)
        raise ValueError("Compartment level must be zero or positive")


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to the configured data file."""
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context containing a newly opened workbook and
            an empty cache.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)
