"""Projection engine deriving stock metrics from the transaction ledger.

Every function in this module is a pure fold over a fully materialised
sequence of transactions: nothing is cached, nothing is read from storage, and
calling a projection twice with the same input yields the same result. The
business logic layer is responsible for fetching one ledger snapshot per
report and passing it in.

Interpretation of a transaction always goes through :func:`movement_for` or
:func:`_usage_quantity`, both of which dispatch exhaustively over the
transaction variants and raise ``TypeError`` for anything else.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from . import log
from .constants import DEFAULT_LEAD_TIME_DAYS, SAFETY_FACTOR, USAGE_WINDOW_DAYS
from .models import (
    DailyRecord,
    Item,
    PeriodReport,
    ReceiveTransaction,
    ReportLine,
    StockSnapshot,
    StockStatus,
    Transaction,
    TransferTransaction,
    UsagePoint,
    UseTransaction,
    WastageTransaction,
    as_utc,
    referenced_branches,
    transaction_day,
)


ZERO = Decimal("0")
QUANTITY_PRECISION = Decimal("0.01")
# Reorder need is rounded to this precision before the ceiling is taken.
REORDER_PRECISION = Decimal("1E-9")

OpeningBalanceLookup = Callable[[str, str, date], Optional[Decimal]]


@dataclass(frozen=True)
class Movement:
    """Contribution of one or more transactions to a single branch."""

    received: Decimal = ZERO
    transfer_in: Decimal = ZERO
    transfer_out: Decimal = ZERO
    used: Decimal = ZERO
    wastage: Decimal = ZERO

    @property
    def net(self) -> Decimal:
        return self.received + self.transfer_in - self.used - self.transfer_out - self.wastage

    def __add__(self, other: "Movement") -> "Movement":
        return Movement(
            received=self.received + other.received,
            transfer_in=self.transfer_in + other.transfer_in,
            transfer_out=self.transfer_out + other.transfer_out,
            used=self.used + other.used,
            wastage=self.wastage + other.wastage,
        )


NO_MOVEMENT = Movement()


def movement_for(transaction: Transaction, branch_id: str) -> Movement:
    """Return how ``transaction`` changes the stock held at ``branch_id``.

    Receipts, usage, and wastage only count at the branch they were recorded
    for. Transfers count as an inflow at ``branch_to`` and an outflow at
    ``branch_from``; a branch that is neither sees no movement.

    Raises:
        TypeError: If ``transaction`` is not one of the known variants.
    """

    quantity = transaction.quantity
    if isinstance(transaction, ReceiveTransaction):
        return Movement(received=quantity) if transaction.branch_id == branch_id else NO_MOVEMENT
    if isinstance(transaction, UseTransaction):
        return Movement(used=quantity) if transaction.branch_id == branch_id else NO_MOVEMENT
    if isinstance(transaction, WastageTransaction):
        return Movement(wastage=quantity) if transaction.branch_id == branch_id else NO_MOVEMENT
    if isinstance(transaction, TransferTransaction):
        return Movement(
            transfer_in=quantity if transaction.branch_to == branch_id else ZERO,
            transfer_out=quantity if transaction.branch_from == branch_id else ZERO,
        )
    raise TypeError(f"Unsupported transaction type: {type(transaction).__name__}")


def _usage_quantity(transaction: Transaction, *, include_wastage: bool) -> Optional[Decimal]:
    """Return the consumed quantity of ``transaction`` or ``None`` if it is not consumption."""

    if isinstance(transaction, UseTransaction):
        return transaction.quantity
    if isinstance(transaction, WastageTransaction):
        return transaction.quantity if include_wastage else None
    if isinstance(transaction, (ReceiveTransaction, TransferTransaction)):
        return None
    raise TypeError(f"Unsupported transaction type: {type(transaction).__name__}")


def _sum_movements(transactions: Iterable[Transaction], branch_id: str, item_id: str) -> Movement:
    total = NO_MOVEMENT
    for transaction in transactions:
        if transaction.item_id != item_id:
            continue
        total = total + movement_for(transaction, branch_id)
    return total


def _clamp_quantity(quantity: Decimal) -> Decimal:
    """Clamp a balance at zero and round it to two decimal places."""

    return max(ZERO, quantity).quantize(QUANTITY_PRECISION, rounding=ROUND_HALF_UP)


def current_stock(branch_id: str, item_id: str, transactions: Iterable[Transaction]) -> Decimal:
    """Compute the stock of ``item_id`` currently held at ``branch_id``.

    The fold is a plain sum over every transaction for the item, so the
    ordering of ``transactions`` is irrelevant. There are no opening-balance
    snapshots: the result is only as accurate as the full ledger history.
    Negative balances caused by inconsistent data are reported as zero.

    Args:
        branch_id (str): Branch whose stock should be computed.
        item_id (str): Item to compute stock for.
        transactions (Iterable[Transaction]): Ledger contents, possibly a
            superset of what concerns the branch and item.

    Returns:
        Decimal: Non-negative quantity rounded to two decimal places. Unknown
            branch or item identifiers yield ``0.00``.
    """

    movement = _sum_movements(transactions, branch_id, item_id)
    return _clamp_quantity(movement.net)


def stock_snapshot(
    branch_id: str,
    item_id: str,
    transactions: Iterable[Transaction],
    as_of: datetime,
) -> StockSnapshot:
    """Return the stock of an item at a branch counting transactions up to ``as_of``."""

    cutoff = as_utc(as_of)
    relevant = [transaction for transaction in transactions if as_utc(transaction.timestamp) <= cutoff]
    return StockSnapshot(
        branch_id=branch_id,
        item_id=item_id,
        as_of=cutoff,
        quantity=current_stock(branch_id, item_id, relevant),
    )


def no_opening_balance(branch_id: str, item_id: str, day: date) -> Optional[Decimal]:
    """Default opening-balance lookup: no end-of-day snapshots are recorded."""

    return None


def history_opening_balance(transactions: Iterable[Transaction]) -> OpeningBalanceLookup:
    """Build a lookup that derives opening balances from the full ledger history.

    The returned callable sums every movement dated strictly before the
    requested day. Balances are left unclamped so that data problems remain
    visible in daily records.
    """

    history: Tuple[Transaction, ...] = tuple(transactions)

    def lookup(branch_id: str, item_id: str, day: date) -> Optional[Decimal]:
        earlier = [transaction for transaction in history if transaction_day(transaction) < day]
        return _sum_movements(earlier, branch_id, item_id).net

    return lookup


def _as_day(day: date) -> date:
    if isinstance(day, datetime):
        return as_utc(day).date()
    return day


def daily_record(
    branch_id: str,
    item_id: str,
    day: date,
    transactions: Iterable[Transaction],
    opening_balance_lookup: OpeningBalanceLookup = no_opening_balance,
) -> DailyRecord:
    """Summarise the movements of an item at a branch for one calendar day.

    Transactions are bucketed by the date portion of their timestamp; the time
    of day is ignored. The opening balance comes from
    ``opening_balance_lookup`` and defaults to zero when the lookup has no
    answer, which is always the case for :func:`no_opening_balance`. The
    closing balance is not clamped and may be negative.

    Args:
        branch_id (str): Branch to report on.
        item_id (str): Item to report on.
        day (date): Calendar day; a ``datetime`` is reduced to its UTC date.
        transactions (Iterable[Transaction]): Ledger contents.
        opening_balance_lookup (OpeningBalanceLookup): Callable returning the
            last known end-of-day balance before ``day`` or ``None``.

    Returns:
        DailyRecord: Start, per-category movements, and end balance.
    """

    target_day = _as_day(day)
    same_day = [transaction for transaction in transactions if transaction_day(transaction) == target_day]
    movement = _sum_movements(same_day, branch_id, item_id)

    opening = opening_balance_lookup(branch_id, item_id, target_day)
    start = opening if opening is not None else ZERO
    return DailyRecord(
        start=start,
        received=movement.received,
        transfer_in=movement.transfer_in,
        transfer_out=movement.transfer_out,
        used=movement.used,
        wastage=movement.wastage,
        end=start + movement.net,
    )


def usage_history(
    transactions: Iterable[Transaction],
    branch_id: Optional[str] = None,
    item_id: Optional[str] = None,
) -> Dict[str, Dict[str, List[UsagePoint]]]:
    """Group usage and wastage into daily totals per branch and item.

    Only ``use`` and ``wastage`` transactions are considered. Filters are
    applied before grouping. Branches, items, and days are emitted in
    ascending order so the output is stable for a given input.

    Returns:
        dict[str, dict[str, list[UsagePoint]]]: ``{branch: {item: [points]}}``.
            Empty when nothing qualifies.
    """

    totals: Dict[Tuple[str, str, date], Decimal] = {}
    for transaction in transactions:
        quantity = _usage_quantity(transaction, include_wastage=True)
        if quantity is None:
            continue
        if branch_id is not None and transaction.branch_id != branch_id:
            continue
        if item_id is not None and transaction.item_id != item_id:
            continue
        key = (transaction.branch_id, transaction.item_id, transaction_day(transaction))
        totals[key] = totals.get(key, ZERO) + quantity

    history: Dict[str, Dict[str, List[UsagePoint]]] = {}
    for branch, item, day in sorted(totals):
        points = history.setdefault(branch, {}).setdefault(item, [])
        points.append(UsagePoint(day=day, quantity=totals[(branch, item, day)]))
    return history


def average_daily_usage(
    branch_id: str,
    item_id: str,
    transactions: Iterable[Transaction],
    window_days: int,
    now: datetime,
) -> Decimal:
    """Average ``use`` quantity per active day over a trailing window.

    The total used since ``now - window_days`` is divided by the number of
    distinct calendar days on which the item was used, not by the window
    length. Wastage is excluded.

    Raises:
        ValueError: If ``window_days`` is not positive.
    """

    if window_days <= 0:
        raise ValueError("window_days must be positive")

    cutoff = as_utc(now) - timedelta(days=window_days)
    total = ZERO
    active_days = set()
    for transaction in transactions:
        if transaction.item_id != item_id:
            continue
        quantity = _usage_quantity(transaction, include_wastage=False)
        if quantity is None or transaction.branch_id != branch_id:
            continue
        if as_utc(transaction.timestamp) < cutoff:
            continue
        total += quantity
        active_days.add(transaction_day(transaction))

    divisor = len(active_days) or window_days
    return total / Decimal(divisor)


def reorder_quantity(average_daily: Decimal, lead_time_days: Decimal, on_hand: Decimal) -> int:
    """Apply the reorder formula ``ceil(avg * lead * safety - on_hand)`` floored at zero."""

    raw_need = average_daily * lead_time_days * SAFETY_FACTOR - on_hand
    needed = math.ceil(raw_need.quantize(REORDER_PRECISION, rounding=ROUND_HALF_UP))
    return max(0, needed)


def suggested_order(
    branch_id: str,
    item: Optional[Item],
    transactions: Iterable[Transaction],
    now: datetime,
) -> int:
    """Suggest how many units of ``item`` the branch should order.

    Uses the trailing 30-day average daily usage, the item's lead time
    (2 days when unset or zero) and the fixed safety factor. An unknown item
    yields 0.
    """

    if item is None:
        return 0

    snapshot = tuple(transactions)
    average = average_daily_usage(branch_id, item.item_id, snapshot, USAGE_WINDOW_DAYS, now)
    lead_time = item.lead_time_days or DEFAULT_LEAD_TIME_DAYS
    on_hand = current_stock(branch_id, item.item_id, snapshot)
    suggestion = reorder_quantity(average, lead_time, on_hand)
    log.debug(
        "Suggested order for item '%s' at branch '%s': avg=%s lead=%s stock=%s -> %s",
        item.item_id,
        branch_id,
        average,
        lead_time,
        on_hand,
        suggestion,
    )
    return suggestion


def is_low_stock(item: Item, quantity: Decimal) -> bool:
    """Return ``True`` when ``quantity`` is below the item's minimum stock."""

    return quantity < item.min_stock


def stock_overview(
    branch_id: str,
    items: Sequence[Item],
    transactions: Iterable[Transaction],
    now: datetime,
) -> List[StockStatus]:
    """Build the low-stock dashboard for a branch, one row per item."""

    snapshot = tuple(transactions)
    rows: List[StockStatus] = []
    for item in items:
        quantity = current_stock(branch_id, item.item_id, snapshot)
        rows.append(
            StockStatus(
                item=item,
                quantity=quantity,
                is_low=is_low_stock(item, quantity),
                suggested_order=suggested_order(branch_id, item, snapshot, now),
            )
        )
    return rows


def period_usage_report(
    branch_id: str,
    transactions: Iterable[Transaction],
    items: Sequence[Item],
    year: int,
    month: Optional[int] = None,
) -> PeriodReport:
    """Aggregate ``use`` quantities and cost per item for a month or a year.

    A transaction is attributed to the branch when any of its branch fields
    matches, but only ``use`` quantities are summed. Lines are ordered by
    descending usage; items with equal usage keep their input order.

    Raises:
        ValueError: If ``month`` is outside ``1..12``.
    """

    if month is not None and not 1 <= month <= 12:
        raise ValueError(f"Invalid month: {month}")

    snapshot = tuple(transactions)
    lines: List[ReportLine] = []
    for item in items:
        used = ZERO
        for transaction in snapshot:
            if transaction.item_id != item.item_id:
                continue
            moment = as_utc(transaction.timestamp)
            if moment.year != year:
                continue
            if month is not None and moment.month != month:
                continue
            if branch_id not in referenced_branches(transaction):
                continue
            quantity = _usage_quantity(transaction, include_wastage=False)
            if quantity is not None:
                used += quantity
        lines.append(ReportLine(item=item, used_quantity=used))

    lines.sort(key=lambda line: line.used_quantity, reverse=True)

    category_costs: Dict[str, Decimal] = {}
    for line in lines:
        category_costs[line.item.category] = category_costs.get(line.item.category, ZERO) + line.cost
    total_cost = sum((line.cost for line in lines), ZERO)

    return PeriodReport(
        branch_id=branch_id,
        year=year,
        month=month,
        lines=tuple(lines),
        total_cost=total_cost,
        category_costs=category_costs,
    )


__all__ = [
    "Movement",
    "OpeningBalanceLookup",
    "movement_for",
    "current_stock",
    "stock_snapshot",
    "no_opening_balance",
    "history_opening_balance",
    "daily_record",
    "usage_history",
    "average_daily_usage",
    "reorder_quantity",
    "suggested_order",
    "is_low_stock",
    "stock_overview",
    "period_usage_report",
]
