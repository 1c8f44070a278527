"""Business logic layer for FreshStock.

This module validates user intent, records transactions through the injected
ledger store, manages branch and item master data, and exposes report
functions that hand a single ledger snapshot to the projection engine. It
consumes the Data Access Layer (DAL) for master data I/O; transactions only
ever flow through :mod:`freshstock.ledger`.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from openpyxl.workbook import Workbook

from . import data_manager, log, projections
from .constants import EXPECTED_SCHEMA_VERSION, SheetName
from .exceptions import BusinessRuleViolation, InvalidTransactionError, MissingReferenceError
from .ledger import LedgerFilter, LedgerStore, WorkbookLedgerStore, validate_transaction
from .models import (
    Branch,
    DailyRecord,
    Item,
    PeriodReport,
    ReceiveTransaction,
    StockStatus,
    Transaction,
    TransferTransaction,
    UsagePoint,
    UseTransaction,
    WastageTransaction,
    referenced_branches,
)


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, workbook, and ledger used by the BLL."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    ledger: LedgerStore
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class ReceiveCommand:
    """User intent for recording a delivery to a branch."""

    item_id: str
    branch_id: str
    quantity: Decimal
    timestamp: Optional[datetime] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class UseCommand:
    """User intent for recording consumption at a branch."""

    item_id: str
    branch_id: str
    quantity: Decimal
    timestamp: Optional[datetime] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class WastageCommand:
    """User intent for recording discarded stock at a branch."""

    item_id: str
    branch_id: str
    quantity: Decimal
    timestamp: Optional[datetime] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class TransferCommand:
    """User intent for moving stock between two branches."""

    item_id: str
    branch_from: str
    branch_to: str
    quantity: Decimal
    timestamp: Optional[datetime] = None
    notes: Optional[str] = None


TransactionCommand = Union[
    ReceiveCommand,
    UseCommand,
    WastageCommand,
    TransferCommand,
]


@dataclass(frozen=True)
class DailyEntry:
    """One row of the daily intake sheet: what a branch received, used, and wasted."""

    item_id: str
    received: Decimal = Decimal("0")
    used: Decimal = Decimal("0")
    wastage: Decimal = Decimal("0")


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name."""

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


def _ensure_branches_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the branch cache bucket on demand.

    Returns:
        dict[str, Any]: Bucket containing ``all`` branches in sheet order and
            a ``by_id`` lookup dictionary.
    """

    bucket = _get_cache_bucket(context, "branches")
    if "all" not in bucket:
        all_branches = list(data_manager.iter_branches(context.workbook))
        bucket["all"] = all_branches
        bucket["by_id"] = {branch.branch_id: branch for branch in all_branches}
        log.debug("Populated branches cache with %d entries", len(all_branches))
    return bucket


def _ensure_items_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the item cache bucket on demand.

    Only master data is cached. The transaction log is always read fresh
    from the ledger so that reports reflect every append.

    Returns:
        dict[str, Any]: Bucket containing ``all`` items in sheet order and a
            ``by_id`` lookup dictionary.
    """

    bucket = _get_cache_bucket(context, "items")
    if "all" not in bucket:
        all_items = list(data_manager.iter_items(context.workbook))
        bucket["all"] = all_items
        bucket["by_id"] = {item.item_id: item for item in all_items}
        log.debug("Populated items cache with %d entries", len(all_items))
    return bucket


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings, the workbook, and its ledger.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.

    Returns:
        RuntimeContext: Context whose ledger is a :class:`WorkbookLedgerStore`
            over the opened workbook.

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
    return RuntimeContext(settings=settings, workbook=workbook, ledger=WorkbookLedgerStore(workbook))


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


def list_branches(context: RuntimeContext) -> List[Branch]:
    """Return a copy of the cached branch list in sheet order."""
    return list(_ensure_branches_cache(context)["all"])


def list_items(context: RuntimeContext, *, category: Optional[str] = None) -> List[Item]:
    """Return cached items, optionally restricted to one category.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        category (str | None): When given, only items of that category are
            returned.

    Returns:
        list[Item]: Copy of the cached item dataset in sheet order.
    """
    items = _ensure_items_cache(context)["all"]
    if category is None:
        return list(items)
    return [item for item in items if item.category == category]


def get_branch(context: RuntimeContext, branch_id: str) -> Branch:
    """Resolve a branch by identifier.

    Raises:
        MissingReferenceError: If ``branch_id`` is absent from the workbook.
    """
    cache = _ensure_branches_cache(context)
    try:
        return cache["by_id"][branch_id]
    except KeyError as exc:
        log.warning("Branch lookup failed for id '%s'", branch_id)
        raise MissingReferenceError(f"Unknown branch id: {branch_id}") from exc


def get_item(context: RuntimeContext, item_id: str) -> Item:
    """Resolve an item by identifier.

    Raises:
        MissingReferenceError: If ``item_id`` is absent from the workbook.
    """
    cache = _ensure_items_cache(context)
    try:
        return cache["by_id"][item_id]
    except KeyError as exc:
        log.warning("Item lookup failed for id '%s'", item_id)
        raise MissingReferenceError(f"Unknown item id: {item_id}") from exc


def find_item(context: RuntimeContext, item_id: str) -> Optional[Item]:
    """Resolve an item by identifier, returning ``None`` when it is unknown."""
    return _ensure_items_cache(context)["by_id"].get(item_id)


def generate_reference_id(prefix: str) -> str:
    """Generate a short master-data identifier such as ``i_3f9a2c1``."""
    return f"{prefix}_{uuid.uuid4().hex[:7]}"


def require_nonnegative(value: Optional[Decimal], label: str) -> None:
    """Validate that an item threshold or cost is not negative.

    Raises:
        ValueError: If ``value`` is below zero. ``None`` is accepted.
    """
    if value is not None and value < Decimal("0"):
        log.error("%s validation failed: %s", label, value)
        raise ValueError(f"{label} must be zero or positive")


def add_branch(context: RuntimeContext, *, name: str, branch_id: Optional[str] = None) -> Branch:
    """Register a new branch.

    Raises:
        BusinessRuleViolation: If the name is blank or the id already exists.
    """
    if not name or not name.strip():
        raise BusinessRuleViolation("Branch name must not be empty")
    branch_id = branch_id or generate_reference_id("b")
    if branch_id in _ensure_branches_cache(context)["by_id"]:
        raise BusinessRuleViolation(f"Branch '{branch_id}' already exists")

    branch = Branch(branch_id=branch_id, name=name.strip())
    data_manager.append_branch(context.workbook, branch)
    _invalidate_cache(context, "branches")
    log.info("Added branch '%s' (%s)", branch.branch_id, branch.name)
    return branch


def add_item(
    context: RuntimeContext,
    *,
    name: str,
    category: str = "Other",
    unit: str = "",
    min_stock: Decimal = Decimal("0"),
    preferred_order: Decimal = Decimal("0"),
    lead_time_days: Optional[Decimal] = None,
    unit_cost: Decimal = Decimal("0"),
    storage_location: str = "",
    item_id: Optional[str] = None,
) -> Item:
    """Register a new item in the ``Items`` sheet.

    Thresholds, lead time, and cost must not be negative. When ``item_id`` is
    omitted an ``i_``-prefixed identifier is generated.

    Returns:
        Item: The stored item.

    Raises:
        BusinessRuleViolation: If the name is blank or the id already exists.
        ValueError: If a numeric attribute is negative.
    """
    if not name or not name.strip():
        raise BusinessRuleViolation("Item name must not be empty")
    item = Item(
        item_id=item_id or generate_reference_id("i"),
        name=name.strip(),
        category=category,
        unit=unit,
        min_stock=min_stock,
        preferred_order=preferred_order,
        lead_time_days=lead_time_days,
        unit_cost=unit_cost,
        storage_location=storage_location,
    )
    _validate_item_numbers(item)
    if item.item_id in _ensure_items_cache(context)["by_id"]:
        raise BusinessRuleViolation(f"Item '{item.item_id}' already exists")

    data_manager.append_item(context.workbook, item)
    _invalidate_cache(context, "items")
    log.info("Added item '%s' (%s, %s)", item.item_id, item.name, item.category)
    return item


def _validate_item_numbers(item: Item) -> None:
    require_nonnegative(item.min_stock, "Minimum stock")
    require_nonnegative(item.preferred_order, "Preferred order")
    require_nonnegative(item.lead_time_days, "Lead time")
    require_nonnegative(item.unit_cost, "Unit cost")


def update_item(context: RuntimeContext, item_id: str, **changes: Any) -> Item:
    """Patch attributes of an existing item.

    Historical transactions reference items by id only, so renaming an item
    or changing its thresholds never rewrites the ledger.

    Args:
        context (RuntimeContext): Runtime context.
        item_id (str): Item to modify.
        **changes: Attribute names from :class:`Item` (except ``item_id``)
            mapped to their new values.

    Returns:
        Item: The item with the changes applied.

    Raises:
        MissingReferenceError: If the item is unknown.
        BusinessRuleViolation: If an unknown attribute is supplied.
        ValueError: If a numeric attribute becomes negative.
    """
    current = get_item(context, item_id)
    unknown = sorted(set(changes) - set(data_manager.ITEM_FIELD_COLUMNS))
    if unknown:
        raise BusinessRuleViolation(f"Unknown item fields: {', '.join(unknown)}")
    if not changes:
        return current

    updated = replace(current, **changes)
    _validate_item_numbers(updated)
    data_manager.update_item(
        context.workbook,
        item_id,
        field_values={data_manager.ITEM_FIELD_COLUMNS[name]: value for name, value in changes.items()},
    )
    _invalidate_cache(context, "items")
    log.info("Updated item '%s': %s", item_id, ", ".join(sorted(changes)))
    return updated


def _is_referenced(context: RuntimeContext, *, branch_id: Optional[str] = None, item_id: Optional[str] = None) -> bool:
    for transaction in context.ledger.read_all(LedgerFilter(branch_id=branch_id, item_id=item_id)):
        if item_id is not None and transaction.item_id == item_id:
            return True
        if branch_id is not None and branch_id in referenced_branches(transaction):
            return True
    return False


def remove_item(context: RuntimeContext, item_id: str) -> None:
    """Delete an item that no transaction references.

    Raises:
        MissingReferenceError: If the item is unknown.
        BusinessRuleViolation: If the ledger references the item.
    """
    get_item(context, item_id)
    if _is_referenced(context, item_id=item_id):
        log.warning("Refusing to remove item '%s' referenced by transactions", item_id)
        raise BusinessRuleViolation(f"Item '{item_id}' is referenced by transactions")
    data_manager.delete_row(context.workbook, SheetName.ITEMS.value, "ItemID", item_id)
    _invalidate_cache(context, "items")
    log.info("Removed item '%s'", item_id)


def remove_branch(context: RuntimeContext, branch_id: str) -> None:
    """Delete a branch that no transaction references.

    Raises:
        MissingReferenceError: If the branch is unknown.
        BusinessRuleViolation: If the ledger references the branch.
    """
    get_branch(context, branch_id)
    if _is_referenced(context, branch_id=branch_id):
        log.warning("Refusing to remove branch '%s' referenced by transactions", branch_id)
        raise BusinessRuleViolation(f"Branch '{branch_id}' is referenced by transactions")
    data_manager.delete_row(context.workbook, SheetName.BRANCHES.value, "BranchID", branch_id)
    _invalidate_cache(context, "branches")
    log.info("Removed branch '%s'", branch_id)


def build_transaction(command: TransactionCommand, *, timestamp: datetime) -> Transaction:
    """Materialize a command into the matching unsaved transaction variant.

    Raises:
        BusinessRuleViolation: If the command type is unsupported.
    """
    notes = command.notes or ""
    if isinstance(command, ReceiveCommand):
        return ReceiveTransaction(command.item_id, command.branch_id, command.quantity, timestamp, notes)
    if isinstance(command, UseCommand):
        return UseTransaction(command.item_id, command.branch_id, command.quantity, timestamp, notes)
    if isinstance(command, WastageCommand):
        return WastageTransaction(command.item_id, command.branch_id, command.quantity, timestamp, notes)
    if isinstance(command, TransferCommand):
        return TransferTransaction(
            command.item_id,
            command.branch_from,
            command.branch_to,
            command.quantity,
            timestamp,
            notes,
        )
    raise BusinessRuleViolation(f"Unsupported command type: {type(command).__name__}")


def _checked_transaction(context: RuntimeContext, command: TransactionCommand) -> Transaction:
    """Build the transaction for ``command`` and run every check that precedes an append.

    Raises:
        MissingReferenceError: When the item or a branch is unknown.
        InvalidTransactionError: When the transaction breaks a ledger rule.
    """
    get_item(context, command.item_id)
    transaction = build_transaction(command, timestamp=_resolve_timestamp(command.timestamp))
    for branch_id in referenced_branches(transaction):
        get_branch(context, branch_id)

    try:
        validate_transaction(transaction)
    except InvalidTransactionError as exc:
        log.warning("Rejected %s transaction for item '%s': %s", transaction.transaction_type.value, command.item_id, exc)
        raise
    return transaction


def _append_checked(context: RuntimeContext, transaction: Transaction) -> Transaction:
    stored = context.ledger.append(transaction)
    log.info(
        "Recorded %s transaction '%s' for item '%s' (quantity=%s, branches=%s)",
        stored.transaction_type.value.upper(),
        stored.transaction_id,
        stored.item_id,
        stored.quantity,
        "->".join(referenced_branches(stored)),
    )
    return stored


def record_transaction(context: RuntimeContext, command: TransactionCommand) -> Transaction:
    """Validate references and append the transaction described by ``command``.

    The item and every branch the command touches must exist, and the
    transaction must satisfy the ledger's quantity and transfer-direction
    rules before anything is appended.

    Returns:
        Transaction: The stored transaction, including its assigned id.

    Raises:
        MissingReferenceError: When the item or a branch is unknown.
        InvalidTransactionError: When the ledger rejects the transaction.
    """
    return _append_checked(context, _checked_transaction(context, command))


def record_receive(context: RuntimeContext, command: ReceiveCommand) -> Transaction:
    """Record goods received at a branch."""
    return record_transaction(context, command)


def record_use(context: RuntimeContext, command: UseCommand) -> Transaction:
    """Record goods consumed at a branch."""
    return record_transaction(context, command)


def record_wastage(context: RuntimeContext, command: WastageCommand) -> Transaction:
    """Record goods discarded at a branch."""
    return record_transaction(context, command)


def record_transfer(context: RuntimeContext, command: TransferCommand) -> Transaction:
    """Record goods moved from one branch to another."""
    return record_transaction(context, command)


def record_daily_entries(
    context: RuntimeContext,
    branch_id: str,
    entries: Iterable[DailyEntry],
    *,
    timestamp: Optional[datetime] = None,
    notes: Optional[str] = None,
) -> List[Transaction]:
    """Record a day's intake sheet for a branch.

    Each entry produces up to three transactions (receive, use, wastage).
    Zero quantities are skipped rather than recorded. Every transaction of the
    sheet is checked before the first one is appended, so a single bad entry
    leaves the ledger unchanged.

    Returns:
        list[Transaction]: Stored transactions in entry order.

    Raises:
        MissingReferenceError: When the branch or an entry's item is unknown.
        InvalidTransactionError: When an entry holds a negative quantity.
    """
    get_branch(context, branch_id)
    moment = _resolve_timestamp(timestamp)
    pending: List[Transaction] = []
    for entry in entries:
        commands: List[TransactionCommand] = []
        if entry.received:
            commands.append(ReceiveCommand(entry.item_id, branch_id, entry.received, moment, notes or "Daily receive"))
        if entry.used:
            commands.append(UseCommand(entry.item_id, branch_id, entry.used, moment, notes or "Daily use"))
        if entry.wastage:
            commands.append(WastageCommand(entry.item_id, branch_id, entry.wastage, moment, notes or "Wastage"))
        pending.extend(_checked_transaction(context, command) for command in commands)

    recorded = [_append_checked(context, transaction) for transaction in pending]
    log.info("Recorded %d daily entry transactions for branch '%s'", len(recorded), branch_id)
    return recorded


def list_transactions(context: RuntimeContext, ledger_filter: Optional[LedgerFilter] = None) -> List[Transaction]:
    """Return ledger transactions ordered by timestamp.

    The store's own ordering is not trusted to be chronological; the result
    is sorted by timestamp with ties kept in store order.
    """
    return sorted(context.ledger.read_all(ledger_filter), key=lambda transaction: transaction.timestamp)


def transfer_history(context: RuntimeContext, branch_id: Optional[str] = None) -> List[TransferTransaction]:
    """Return transfers, newest first, optionally limited to those touching a branch."""
    transfers = [
        transaction
        for transaction in context.ledger.read_all(LedgerFilter(branch_id=branch_id))
        if isinstance(transaction, TransferTransaction)
        and (branch_id is None or branch_id in referenced_branches(transaction))
    ]
    return sorted(transfers, key=lambda transaction: transaction.timestamp, reverse=True)


def current_stock(context: RuntimeContext, branch_id: str, item_id: str) -> Decimal:
    """Return the stock of ``item_id`` at ``branch_id``; unknown ids yield zero."""
    transactions = context.ledger.read_all(LedgerFilter(item_id=item_id))
    return projections.current_stock(branch_id, item_id, transactions)


def stock_overview(context: RuntimeContext, branch_id: str, *, now: Optional[datetime] = None) -> List[StockStatus]:
    """Return the low-stock dashboard for a branch across every item."""
    transactions = context.ledger.read_all(LedgerFilter(branch_id=branch_id))
    rows = projections.stock_overview(branch_id, list_items(context), transactions, _resolve_timestamp(now))
    low = [row.item.item_id for row in rows if row.is_low]
    if low:
        log.info("Branch '%s' has %d low-stock items: %s", branch_id, len(low), ", ".join(low))
    return rows


def low_stock_alerts(context: RuntimeContext, branch_id: str, *, now: Optional[datetime] = None) -> List[StockStatus]:
    """Return only the dashboard rows whose stock is below the item minimum."""
    return [row for row in stock_overview(context, branch_id, now=now) if row.is_low]


def daily_record(
    context: RuntimeContext,
    branch_id: str,
    item_id: str,
    day: date,
    *,
    opening_balance_lookup: Optional[projections.OpeningBalanceLookup] = None,
) -> DailyRecord:
    """Return the daily movement record for an item at a branch."""
    transactions = context.ledger.read_all(LedgerFilter(item_id=item_id))
    lookup = opening_balance_lookup or projections.no_opening_balance
    return projections.daily_record(branch_id, item_id, day, transactions, lookup)


def usage_history(
    context: RuntimeContext,
    *,
    branch_id: Optional[str] = None,
    item_id: Optional[str] = None,
) -> Dict[str, Dict[str, List[UsagePoint]]]:
    """Return daily use and wastage totals grouped by branch and item."""
    transactions = context.ledger.read_all(LedgerFilter(branch_id=branch_id, item_id=item_id))
    return projections.usage_history(transactions, branch_id=branch_id, item_id=item_id)


def suggest_order(context: RuntimeContext, branch_id: str, item_id: str, *, now: Optional[datetime] = None) -> int:
    """Return the suggested reorder quantity; unknown items yield zero."""
    item = find_item(context, item_id)
    if item is None:
        log.warning("Suggested order requested for unknown item '%s'", item_id)
        return 0
    transactions = context.ledger.read_all(LedgerFilter(item_id=item_id))
    return projections.suggested_order(branch_id, item, transactions, _resolve_timestamp(now))


def period_report(context: RuntimeContext, branch_id: str, year: int, month: Optional[int] = None) -> PeriodReport:
    """Return the monthly (``month`` given) or yearly usage report for a branch."""
    transactions = context.ledger.read_all(LedgerFilter(branch_id=branch_id))
    report = projections.period_usage_report(branch_id, transactions, list_items(context), year, month)
    log.info(
        "Built %s report for branch '%s' (%s): total cost %s",
        "monthly" if report.is_monthly else "yearly",
        branch_id,
        f"{year}-{month:02d}" if month is not None else year,
        report.total_cost,
    )
    return report


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
        RuntimeContext: Fresh context with a newly opened workbook, a ledger
            over it, and empty caches.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook, ledger=WorkbookLedgerStore(workbook))
