"""Command-line entry points for the fuel delivery toolkit.

All orchestration in this module is limited to argparse wiring and feeding
command-line arguments through the same wizard and business layer an
interactive front-end would use. Keeping the CLI thin ensures the parser
configuration can be reused by tests or scripts.
"""

from __future__ import annotations

import argparse
import base64
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import capacity, core_logic, log, wizard
from .completion import DeliveryCompletionWizard
from .constants import WizardStep
from .errors import BusinessRuleViolation, CompletionFailed


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    writes: bool = False


@dataclass(frozen=True)
class CompletionRequest:
    """Everything the ``complete`` command feeds into the wizard."""

    stop_id: str
    product_id: Optional[str]
    compartment_id: Optional[str]
    custom_product: Optional[str]
    quantity: Optional[str]
    meter_start: Optional[str]
    meter_end: Optional[str]
    tank_before: Optional[str]
    tank_after: Optional[str]
    notes: str
    customer_present: bool
    signature: Optional[str]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="fuel-cli",
        description="Command-line tools for the fuel delivery fleet workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    specs = [
        register_products_command(),
        register_compartments_command(),
        register_stops_command(),
        register_complete_command(),
        register_completions_command(),
    ]
    for spec in specs:
        spec.register(subparsers)
    return build_command_table(specs)


def register_products_command() -> CommandSpec:
    """Register the parser and executor for ``products``."""
    name = "products"
    help_text = "List active catalog fuel products."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--include-inactive", action="store_true")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_products)


def register_compartments_command() -> CommandSpec:
    """Register the parser and executor for ``compartments``."""
    name = "compartments"
    help_text = "List the compartments of a truck."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--truck-id", required=True)
        parser.add_argument("--product-id", default=None, help="Only show compartments holding this product.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_compartments)


def register_stops_command() -> CommandSpec:
    """Register the parser and executor for ``stops``."""
    name = "stops"
    help_text = "List route stops and their status."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--route-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stops)


def register_complete_command() -> CommandSpec:
    """Register the parser and executor for ``complete``."""
    name = "complete"
    help_text = "Complete a delivery at a route stop."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--stop-id", required=True)
        product = parser.add_mutually_exclusive_group(required=True)
        product.add_argument("--product-id")
        product.add_argument("--custom-product", help="Free-text product name; skips the compartment step.")
        parser.add_argument("--compartment-id", default=None)
        parser.add_argument("--quantity", default=None, help="Gallons delivered, if not derived from meters.")
        parser.add_argument("--meter-start", default=None)
        parser.add_argument("--meter-end", default=None)
        parser.add_argument("--tank-before", default=None, help="Customer tank level before, in percent.")
        parser.add_argument("--tank-after", default=None, help="Customer tank level after, in percent.")
        parser.add_argument("--notes", default="")
        signature = parser.add_mutually_exclusive_group()
        signature.add_argument("--no-customer", action="store_true", help="Customer was not present to sign.")
        signature.add_argument("--signature-file", type=Path, default=None, help="PNG image of the signature.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_complete, writes=True)


def register_completions_command() -> CommandSpec:
    """Register the parser and executor for ``completions``."""
    name = "completions"
    help_text = "Display recorded completions and totals."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--date", type=date.fromisoformat, default=None, help="YYYY-MM-DD")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_completions)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    context = core_logic.load_runtime_context(target)
    core_logic.ensure_schema_version(context)
    return context


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def encode_signature(path: Path) -> str:
    """Read a PNG signature into the data-URL form the wizard stores."""
    payload = base64.b64encode(path.expanduser().read_bytes()).decode("ascii")
    return f"data:image/png;base64,{payload}"


def translate_complete(args: argparse.Namespace) -> CompletionRequest:
    """Translate CLI args into a completion request."""
    signature = encode_signature(args.signature_file) if args.signature_file is not None else None
    return CompletionRequest(
        stop_id=args.stop_id,
        product_id=args.product_id,
        compartment_id=args.compartment_id,
        custom_product=args.custom_product,
        quantity=args.quantity,
        meter_start=args.meter_start,
        meter_end=args.meter_end,
        tank_before=args.tank_before,
        tank_after=args.tank_after,
        notes=args.notes or "",
        customer_present=not args.no_customer,
        signature=signature,
    )


def _advance_or_fail(controller: DeliveryCompletionWizard) -> None:
    step = controller.current_step
    if not controller.can_advance():
        raise BusinessRuleViolation(f"Step '{step.value}' is incomplete")
    controller.go_next()


def fill_wizard(controller: DeliveryCompletionWizard, request: CompletionRequest) -> None:
    """Walk an open wizard through every step with the values in ``request``, stopping at the signature."""
    session = controller.session
    if session is None:
        raise BusinessRuleViolation("Completion wizard is not open")

    if request.custom_product is not None:
        wizard.set_use_custom_product(session, True)
        wizard.set_custom_product_name(session, request.custom_product)
    elif request.product_id is not None:
        controller.select_product(request.product_id)
    _advance_or_fail(controller)

    if controller.current_step is WizardStep.COMPARTMENT:
        if request.compartment_id is not None:
            controller.select_compartment(request.compartment_id)
        _advance_or_fail(controller)

    # Meters are written last so a valid pair wins over --quantity.
    wizard.set_quantity_delivered(session, request.quantity)
    wizard.set_meter_start(session, request.meter_start)
    wizard.set_meter_end(session, request.meter_end)
    _advance_or_fail(controller)

    wizard.set_tank_level_before(session, request.tank_before)
    wizard.set_tank_level_after(session, request.tank_after)
    wizard.set_notes(session, request.notes)
    _advance_or_fail(controller)

    wizard.set_customer_present(session, request.customer_present)
    wizard.set_signature(session, request.signature)
    if not controller.can_advance():
        raise BusinessRuleViolation(f"Step '{WizardStep.SIGNATURE.value}' is incomplete")


def describe_review(controller: DeliveryCompletionWizard) -> list[str]:
    """Render the step progress and delivery summary shown before committing."""
    formatter = controller.formatter
    steps = " | ".join(
        f"{item.ordinal} {item.step.value} ({item.status})" for item in wizard.step_progress(controller.session)
    )
    summary = controller.summary()
    lines = [
        f"Steps: {steps}",
        f"Product: {summary.product_name}",
        f"Quantity: {summary.quantity_label}",
    ]
    if summary.compartment_name is not None:
        remaining = controller.remaining_preview()
        after = f" ({formatter.format_volume(remaining, 0)} after delivery)" if remaining is not None else ""
        lines.append(f"Compartment: {summary.compartment_name}{after}")
    lines.append(f"On site: {summary.duration_minutes} min")
    return lines


def run_products(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the fuel catalog."""
    formatter = core_logic.unit_formatter(context)
    for product in core_logic.list_products(context, include_inactive=args.include_inactive):
        print(
            f"{product.product_id}\t{product.product_name}\t{product.product_code}\t"
            f"{formatter.format_price(product.base_price_per_unit)}"
        )
    return 0


def run_compartments(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print a truck's compartments with levels and fill percentage."""
    formatter = core_logic.unit_formatter(context)
    compartments = capacity.eligible_compartments(
        core_logic.list_compartments(context, args.truck_id),
        args.product_id,
    )
    for compartment in compartments:
        print(
            f"{compartment.compartment_id}\t{compartment.compartment_name}\t"
            f"{compartment.product_id or '-'}\t"
            f"{formatter.format_volume(compartment.current_level, 0)} / "
            f"{formatter.format_volume(compartment.capacity, 0)}\t"
            f"{capacity.fill_percentage(compartment)}%\t"
            f"{formatter.format_volume(capacity.headroom(compartment), 0)} free"
        )
    return 0


def run_stops(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print route stops with status and arrival."""
    for stop in core_logic.list_stops(context, route_id=args.route_id):
        print(
            f"{stop.stop_id}\t{stop.route_id}\t{stop.customer_name or '-'}\t"
            f"{stop.status}\t{stop.actual_arrival or '-'}"
        )
    return 0


def run_complete(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the completion wizard for one stop."""
    request = translate_complete(args)
    stop = core_logic.get_stop(context, request.stop_id)
    route = core_logic.get_route(context, stop.route_id)
    controller = DeliveryCompletionWizard(
        core_logic.build_collaborators(context, stop.stop_id),
        formatter=core_logic.unit_formatter(context),
        tick_seconds=context.settings.tick_seconds,
    )
    controller.open(stop, route)
    try:
        fill_wizard(controller, request)
        for line in describe_review(controller):
            print(line)
        record = controller.commit()
    finally:
        controller.close()
    if record is None:
        return 1
    formatter = controller.formatter
    print(
        f"Completed stop {stop.stop_id}: {formatter.format_volume(record.quantity_delivered)} "
        f"of {record.custom_product_name or record.product_id}"
    )
    return 0


def run_completions(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print recorded completions followed by the totals."""
    formatter = core_logic.unit_formatter(context)
    for row in core_logic.list_completions(context, on_date=args.date):
        product = row.custom_product_name or row.product_id or "-"
        subtotal = f"${row.subtotal}" if row.subtotal is not None else "-"
        print(
            f"{row.completion_id}\t{row.stop_id}\t{product}\t"
            f"{formatter.format_volume(row.gallons_delivered)}\t{subtotal}\t{row.departure_iso}"
        )
    summary = core_logic.summarize_completions(context, on_date=args.date)
    print(
        f"Total: {summary.count} deliveries, {formatter.format_volume(summary.total_gallons)}, "
        f"${summary.total_subtotal.quantize(core_logic.CENT)}"
    )
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    log.error("%s", error)
    if isinstance(error, BusinessRuleViolation):
        return 2
    if isinstance(error, FileNotFoundError):
        return 3
    if isinstance(error, CompletionFailed):
        return 4
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].writes:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
