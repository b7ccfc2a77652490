"""Bootstrap an empty fleet workbook.

Run as ``fuel-setup-workbook`` (or ``python -m fuel_delivery.setup_workbook``)
to create the workbook named by ``config.ini``; tests and tooling call
:func:`create_master_workbook` directly.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Mapping, Sequence

import openpyxl
from openpyxl.styles import Font
from openpyxl.worksheet.worksheet import Worksheet

from . import data_manager, log
from .constants import SheetName

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.FUEL_PRODUCTS.value: (
        "ProductID",
        "ProductName",
        "ProductCode",
        "BasePricePerUnit",
        "IsActive",
    ),
    SheetName.COMPARTMENTS.value: (
        "CompartmentID",
        "TruckID",
        "CompartmentName",
        "ProductID",
        "CapacityGallons",
        "CurrentLevelGallons",
    ),
    SheetName.ROUTES.value: ("RouteID", "TruckID", "RouteDate"),
    SheetName.ROUTE_STOPS.value: (
        "StopID",
        "RouteID",
        "CustomerID",
        "CustomerName",
        "Status",
        "ActualArrival",
        "ActualDeparture",
    ),
    SheetName.COMPLETIONS.value: (
        "CompletionID",
        "StopID",
        "TruckID",
        "ProductID",
        "CustomProductName",
        "CompartmentID",
        "GallonsDelivered",
        "MeterStart",
        "MeterEnd",
        "TankLevelBefore",
        "TankLevelAfter",
        "UnitPrice",
        "Subtotal",
        "Signature",
        "CustomerPresent",
        "Notes",
        "ArrivalTime",
        "DepartureTime",
    ),
}

HEADER_FONT = Font(bold=True)


def _write_header(sheet: Worksheet, columns: Sequence[str]) -> None:
    sheet.append(list(columns))
    for cell in sheet[1]:
        cell.font = HEADER_FONT
    sheet.freeze_panes = "A2"


def create_master_workbook(
    destination: Path,
    *,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Write a workbook holding one sheet per entry of ``sheet_columns``.

    Each sheet gets a bold, frozen header row and no data.

    Raises:
        FileExistsError: If ``destination`` exists and ``overwrite`` is false.
    """

    target = Path(destination).expanduser().resolve()
    if target.exists() and not overwrite:
        raise FileExistsError(f"Fleet workbook already exists: {target}")

    workbook = openpyxl.Workbook()
    placeholder = workbook.active
    for sheet_name, columns in sheet_columns.items():
        _write_header(workbook.create_sheet(title=sheet_name), columns)
    # openpyxl always starts with one blank sheet.
    workbook.remove(placeholder)

    data_manager.save_workbook(workbook, target)
    log.info("Created fleet workbook '%s' with sheets %s", target, ", ".join(sheet_columns))
    return target


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook at the ``DataFile`` location declared in ``config_path``."""

    resolved = Path(config_path).expanduser().resolve()
    settings = data_manager.parse_settings(data_manager.read_config(resolved), base_path=resolved.parent)
    return create_master_workbook(settings.data_file, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="fuel-setup-workbook",
        description="Create an empty fleet workbook for the fuel delivery toolkit.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(data_manager.CONFIG_FILE_NAME),
        help="config.ini naming the workbook to create (default: ./config.ini)",
    )
    parser.add_argument("--force", action="store_true", help="Replace an existing workbook.")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Script entry point; returns 0 on success and 1 on any setup failure."""

    args = parse_args(argv)
    try:
        output_path = run_from_config(args.config, overwrite=args.force)
    except FileExistsError as exc:
        print(f"[ERROR] {exc} (pass --force to replace it)")
        return 1
    except (KeyError, ValueError, OSError) as exc:
        print(f"[ERROR] Could not create fleet workbook from '{args.config}': {exc}")
        return 1

    print(f"[SUCCESS] Fleet workbook ready at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
