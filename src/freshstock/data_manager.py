"""Data access layer for FreshStock.

This module provides low-level helpers that read from and write to the master
workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records and appending, updating, or
   deleting individual rows.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import SheetName, TransactionType
from .models import (
    TRANSACTION_CLASSES,
    Branch,
    Item,
    Transaction,
    TransferTransaction,
    as_utc,
)


CONFIG_FILE_NAME = "config.ini"
BRANCHES_SHEET = SheetName.BRANCHES.value
ITEMS_SHEET = SheetName.ITEMS.value
TRANSACTION_LOG_SHEET = SheetName.TRANSACTION_LOG.value

# Item attribute name -> ``Items`` sheet column header.
ITEM_FIELD_COLUMNS: Dict[str, str] = {
    "name": "ItemName",
    "category": "Category",
    "unit": "Unit",
    "min_stock": "MinStock",
    "preferred_order": "PreferredOrder",
    "lead_time_days": "LeadTimeDays",
    "unit_cost": "UnitCost",
    "storage_location": "StorageLocation",
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    chain_name: str
    schema_version: str
    default_branch_id: str


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no ``CONFIG_FILE_NAME`` exists in the working
            directory or any of its parents.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for directory in (current, *current.parents):
        candidate = directory / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration
            data. Required entries are validated by :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Relative ``DataFile`` entries are anchored to ``base_path`` (or the current
    working directory when omitted) and resolved to an absolute path.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        chain_name = parser.get("System", "ChainName")
        schema_version = parser.get("System", "SchemaVersion")
        default_branch = parser.get("Defaults", "DefaultBranch")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        chain_name=chain_name,
        schema_version=schema_version,
        default_branch_id=default_branch,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the master workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    log.debug("Opened workbook '%s'", data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_rows(workbook: Workbook, sheet_name: str) -> Iterable[Sequence[object]]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_branches(workbook: Workbook) -> Iterable[Branch]:
    """Iterate over the ``Branches`` worksheet and yield typed records."""

    for raw in _iter_rows(workbook, BRANCHES_SHEET):
        yield deserialize_branch(raw)


def iter_items(workbook: Workbook) -> Iterable[Item]:
    """Iterate over the ``Items`` worksheet and yield typed records.

    Header and completely empty rows are skipped. Numeric columns come back as
    :class:`~decimal.Decimal` regardless of how Excel stored them.
    """

    for raw in _iter_rows(workbook, ITEMS_SHEET):
        yield deserialize_item(raw)


def iter_transactions(workbook: Workbook) -> Iterable[Transaction]:
    """Stream transactions from the ``TransactionLog`` worksheet in sheet order.

    Each populated row is converted into the transaction variant matching its
    ``TransactionType`` column via :func:`deserialize_transaction`.

    Args:
        workbook (Workbook): Workbook containing the transaction log sheet.

    Yields:
        Transaction: Typed transaction for each populated row.
    """

    for raw in _iter_rows(workbook, TRANSACTION_LOG_SHEET):
        yield deserialize_transaction(raw)


def append_branch(workbook: Workbook, record: Branch) -> None:
    """Append a branch record to the ``Branches`` worksheet."""

    workbook[BRANCHES_SHEET].append(serialize_branch(record))


def append_item(workbook: Workbook, record: Item) -> None:
    """Append an item record to the ``Items`` worksheet."""

    workbook[ITEMS_SHEET].append(serialize_item(record))


def append_transaction(workbook: Workbook, record: Transaction) -> None:
    """Append a transaction record to the ``TransactionLog`` worksheet.

    Quantities remain :class:`~decimal.Decimal` instances after serialization
    so Excel preserves precision when the workbook is saved.
    """

    workbook[TRANSACTION_LOG_SHEET].append(serialize_transaction(record))


def update_item(workbook: Workbook, item_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing item.

    The row whose ``ItemID`` matches ``item_id`` is located and only the
    requested columns are rewritten; other cells are left untouched.

    Args:
        workbook (Workbook): Workbook containing the items sheet.
        item_id (str): Identifier used to locate the target row.
        field_values (dict[str, Any]): Mapping of column names to replacement
            values.

    Raises:
        KeyError: If the item or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, ITEMS_SHEET, "ItemID", item_id)
    if row_index is None:
        raise KeyError(f"Item not found: {item_id}")

    sheet = workbook[ITEMS_SHEET]
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}

    for column, value in field_values.items():
        if column not in header_map:
            raise KeyError(f"Unknown item field: {column}")
        sheet.cell(row=row_index, column=header_map[column], value=value)


def delete_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> None:
    """Remove the first row of ``sheet_name`` whose ``key_column`` equals ``key_value``.

    Raises:
        KeyError: If no row matches or the key column does not exist.
    """

    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"{sheet_name} row not found: {key_value}")
    workbook[sheet_name].delete_rows(row_index)


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
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


def serialize_branch(record: Branch) -> list[object]:
    """Convert a branch into ``[BranchID, BranchName]``."""

    return [record.branch_id, record.name]


def serialize_item(record: Item) -> list[object]:
    """Convert an item into the ``Items`` sheet column ordering."""

    return [
        record.item_id,
        record.name,
        record.category,
        record.unit,
        record.min_stock,
        record.preferred_order,
        record.lead_time_days,
        record.unit_cost,
        record.storage_location,
    ]


def serialize_transaction(record: Transaction) -> list[object]:
    """Convert a transaction into the transaction log column order.

    Receipts, usage, and wastage fill ``BranchID``; transfers fill
    ``BranchFrom`` and ``BranchTo`` instead. Timestamps are written as ISO
    8601 strings in UTC.
    """

    if isinstance(record, TransferTransaction):
        branch_id, branch_from, branch_to = None, record.branch_from, record.branch_to
    else:
        branch_id, branch_from, branch_to = record.branch_id, None, None

    return [
        record.transaction_id,
        as_utc(record.timestamp).isoformat(),
        record.transaction_type.value,
        record.item_id,
        branch_id,
        branch_from,
        branch_to,
        record.quantity,
        record.notes,
    ]


def _to_decimal(raw: object, default: Optional[Decimal] = Decimal("0")) -> Optional[Decimal]:
    if raw is None or raw == "":
        return default
    return Decimal(str(raw))


def _to_text(raw: object) -> str:
    return str(raw) if raw is not None else ""


def _to_timestamp(raw: object) -> datetime:
    if isinstance(raw, datetime):
        return as_utc(raw)
    return as_utc(datetime.fromisoformat(str(raw)))


def deserialize_branch(raw_row: Sequence[object]) -> Branch:
    """Convert a raw worksheet row into a :class:`Branch`."""

    return Branch(branch_id=str(raw_row[0]), name=_to_text(raw_row[1]))


def deserialize_item(raw_row: Sequence[object]) -> Item:
    """Convert a raw worksheet row into an :class:`Item`.

    Numeric columns become :class:`~decimal.Decimal`; a blank lead time stays
    ``None`` so the reorder logic can apply its default.
    """

    (
        item_id,
        name,
        category,
        unit,
        min_stock,
        preferred_order,
        lead_time_days,
        unit_cost,
        storage_location,
    ) = raw_row

    return Item(
        item_id=str(item_id),
        name=_to_text(name),
        category=_to_text(category) or "Other",
        unit=_to_text(unit),
        min_stock=_to_decimal(min_stock),
        preferred_order=_to_decimal(preferred_order),
        lead_time_days=_to_decimal(lead_time_days, default=None),
        unit_cost=_to_decimal(unit_cost),
        storage_location=_to_text(storage_location),
    )


def deserialize_transaction(raw_row: Sequence[object]) -> Transaction:
    """Convert a raw worksheet row into the matching transaction variant.

    Args:
        raw_row (Sequence[object]): Raw cell values from the transaction log
            row in their worksheet order.

    Returns:
        Transaction: ``ReceiveTransaction``, ``UseTransaction``,
            ``WastageTransaction`` or ``TransferTransaction``.

    Raises:
        ValueError: If the ``TransactionType`` column holds an unknown value
            or the timestamp cannot be parsed.
    """

    (
        transaction_id,
        timestamp_raw,
        transaction_type,
        item_id,
        branch_id,
        branch_from,
        branch_to,
        quantity_raw,
        notes,
    ) = raw_row

    kind = TransactionType(str(transaction_type))
    common = dict(
        transaction_id=str(transaction_id) if transaction_id is not None else None,
        item_id=str(item_id),
        quantity=_to_decimal(quantity_raw),
        timestamp=_to_timestamp(timestamp_raw),
        notes=_to_text(notes),
    )
    if kind is TransactionType.TRANSFER:
        return TransferTransaction(branch_from=_to_text(branch_from), branch_to=_to_text(branch_to), **common)
    return TRANSACTION_CLASSES[kind](branch_id=_to_text(branch_id), **common)
