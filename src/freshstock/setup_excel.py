"""Utility for initializing the FreshStock master workbook.

The module doubles as a script (``freshstock-setup``) and as a library used by
tests or other tooling. Shared helpers keep the workbook bootstrap logic
consistent regardless of the execution path.
"""

from __future__ import annotations

import argparse
import configparser
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Mapping, Sequence

import openpyxl
from openpyxl.styles import Font

from . import data_manager, log
from .constants import SheetName
from .models import Branch, Item

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.BRANCHES.value: [
        "BranchID",
        "BranchName",
    ],
    SheetName.ITEMS.value: [
        "ItemID",
        "ItemName",
        "Category",
        "Unit",
        "MinStock",
        "PreferredOrder",
        "LeadTimeDays",
        "UnitCost",
        "StorageLocation",
    ],
    SheetName.TRANSACTION_LOG.value: [
        "TransactionID",
        "Timestamp",
        "TransactionType",
        "ItemID",
        "BranchID",
        "BranchFrom",
        "BranchTo",
        "Quantity",
        "Notes",
    ],
}

DEFAULT_BRANCHES: Sequence[Branch] = (
    Branch("b_hq", "Head Office"),
    Branch("b_1", "Branch 1"),
    Branch("b_2", "Branch 2"),
)

SAMPLE_ITEMS: Sequence[Item] = (
    Item("i_veg_tom", "Tomato", "Vegetable", "kg", Decimal("10"), Decimal("20"), Decimal("2"), Decimal("30"), "Cold Room"),
    Item("i_meat_pork", "Pork (raw)", "Raw Meat", "kg", Decimal("15"), Decimal("30"), Decimal("3"), Decimal("150"), "Fridge"),
    Item("i_sea_shrimp", "Shrimp", "Seafood", "kg", Decimal("8"), Decimal("16"), Decimal("2"), Decimal("200"), "Freezer"),
)

CONFIG_FILE = "config.ini"


@dataclass(frozen=True)
class SetupSettings:
    """Type-safe representation of configuration values used during setup."""

    data_file: Path
    default_branch_id: str


def load_settings(config_path: Path) -> SetupSettings:
    """Read ``config.ini`` and produce :class:`SetupSettings`.

    Relative paths inside the config file are resolved against the config
    file's directory.
    """

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)

    try:
        data_file_raw = parser.get("System", "DataFile")
        default_branch_id = parser.get("Defaults", "DefaultBranch")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        data_file_path = (config_path.parent / data_file_path).resolve()

    return SetupSettings(
        data_file=data_file_path,
        default_branch_id=default_branch_id,
    )


def create_master_workbook(
    destination: Path,
    *,
    branches: Sequence[Branch] = DEFAULT_BRANCHES,
    items: Sequence[Item] = (),
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Create the FreshStock master workbook at ``destination``.

    The workbook receives one bold header row per sheet, the supplied branches
    and, optionally, seed items. When ``overwrite`` is ``False`` (the default)
    this function raises ``FileExistsError`` if the target already exists.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing master workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()

    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    for branch in branches:
        data_manager.append_branch(workbook, branch)
    for item in items:
        data_manager.append_item(workbook, item)

    workbook.save(destination)
    log.info(
        "Created master workbook '%s' with %d branches and %d items",
        destination,
        len(branches),
        len(items),
    )
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False, with_samples: bool = False) -> Path:
    """Create the workbook named in ``config.ini``.

    The configured default branch is added to the seeded branches when it is
    not one of them already.
    """

    settings = load_settings(config_path)
    branches = list(DEFAULT_BRANCHES)
    if settings.default_branch_id not in {branch.branch_id for branch in branches}:
        branches.append(Branch(settings.default_branch_id, settings.default_branch_id))
    return create_master_workbook(
        settings.data_file,
        branches=branches,
        items=SAMPLE_ITEMS if with_samples else (),
        overwrite=overwrite,
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the FreshStock data file")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    parser.add_argument(
        "--with-samples",
        action="store_true",
        help="Seed the Items sheet with sample perishables.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- FreshStock Setup Script ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force, with_samples=args.with_samples)
    except FileNotFoundError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except KeyError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\nSuccessfully created '{output_path}'.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
