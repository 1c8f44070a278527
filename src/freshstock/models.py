"""Domain records for branches, items, ledger transactions, and projections.

Transactions are modelled as one frozen dataclass per transaction type and
joined into the :data:`Transaction` union. Code that needs to react to the
type of a transaction dispatches on the concrete class rather than comparing
string tags, so a new variant has to be handled explicitly wherever
transactions are interpreted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import ClassVar, Dict, List, Optional, Tuple, Union

from .constants import TransactionType


@dataclass(frozen=True)
class Branch:
    """A physical location holding its own stock."""

    branch_id: str
    name: str


@dataclass(frozen=True)
class Item:
    """A trackable inventory good with reorder thresholds and cost."""

    item_id: str
    name: str
    category: str = "Other"
    unit: str = ""
    min_stock: Decimal = Decimal("0")
    preferred_order: Decimal = Decimal("0")
    lead_time_days: Optional[Decimal] = None
    unit_cost: Decimal = Decimal("0")
    storage_location: str = ""


@dataclass(frozen=True)
class ReceiveTransaction:
    """Goods delivered to ``branch_id``."""

    item_id: str
    branch_id: str
    quantity: Decimal
    timestamp: datetime
    notes: str = ""
    transaction_id: Optional[str] = None

    transaction_type: ClassVar[TransactionType] = TransactionType.RECEIVE


@dataclass(frozen=True)
class UseTransaction:
    """Goods consumed at ``branch_id``."""

    item_id: str
    branch_id: str
    quantity: Decimal
    timestamp: datetime
    notes: str = ""
    transaction_id: Optional[str] = None

    transaction_type: ClassVar[TransactionType] = TransactionType.USE


@dataclass(frozen=True)
class WastageTransaction:
    """Goods discarded at ``branch_id``."""

    item_id: str
    branch_id: str
    quantity: Decimal
    timestamp: datetime
    notes: str = ""
    transaction_id: Optional[str] = None

    transaction_type: ClassVar[TransactionType] = TransactionType.WASTAGE


@dataclass(frozen=True)
class TransferTransaction:
    """Goods moved from ``branch_from`` to ``branch_to``."""

    item_id: str
    branch_from: str
    branch_to: str
    quantity: Decimal
    timestamp: datetime
    notes: str = ""
    transaction_id: Optional[str] = None

    transaction_type: ClassVar[TransactionType] = TransactionType.TRANSFER


Transaction = Union[
    ReceiveTransaction,
    UseTransaction,
    WastageTransaction,
    TransferTransaction,
]

TRANSACTION_CLASSES: Dict[TransactionType, type] = {
    TransactionType.RECEIVE: ReceiveTransaction,
    TransactionType.USE: UseTransaction,
    TransactionType.WASTAGE: WastageTransaction,
    TransactionType.TRANSFER: TransferTransaction,
}


@dataclass(frozen=True)
class StockSnapshot:
    """Stock level of one item at one branch as of a given moment."""

    branch_id: str
    item_id: str
    as_of: datetime
    quantity: Decimal


@dataclass(frozen=True)
class DailyRecord:
    """Movements of one item at one branch over a single calendar day."""

    start: Decimal
    received: Decimal
    transfer_in: Decimal
    transfer_out: Decimal
    used: Decimal
    wastage: Decimal
    end: Decimal


@dataclass(frozen=True)
class UsagePoint:
    """Quantity used or wasted on a single calendar day."""

    day: date
    quantity: Decimal


@dataclass(frozen=True)
class ReportLine:
    """Usage of one item over a reporting period."""

    item: Item
    used_quantity: Decimal

    @property
    def cost(self) -> Decimal:
        return self.used_quantity * self.item.unit_cost


@dataclass(frozen=True)
class PeriodReport:
    """Monthly or yearly usage report for a branch."""

    branch_id: str
    year: int
    month: Optional[int]
    lines: Tuple[ReportLine, ...]
    total_cost: Decimal
    category_costs: Dict[str, Decimal] = field(default_factory=dict)

    @property
    def is_monthly(self) -> bool:
        return self.month is not None


@dataclass(frozen=True)
class StockStatus:
    """Dashboard row combining stock level, low-stock flag, and suggestion."""

    item: Item
    quantity: Decimal
    is_low: bool
    suggested_order: int


def as_utc(moment: datetime) -> datetime:
    """Return ``moment`` as an aware UTC datetime, treating naive values as UTC."""

    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


def transaction_day(transaction: Transaction) -> date:
    """Calendar day a transaction is bucketed under (UTC date portion)."""

    return as_utc(transaction.timestamp).date()


def referenced_branches(transaction: Transaction) -> List[str]:
    """Return every branch id a transaction touches."""

    if isinstance(transaction, TransferTransaction):
        return [transaction.branch_from, transaction.branch_to]
    return [transaction.branch_id]


__all__ = [
    "Branch",
    "Item",
    "ReceiveTransaction",
    "UseTransaction",
    "WastageTransaction",
    "TransferTransaction",
    "Transaction",
    "TRANSACTION_CLASSES",
    "StockSnapshot",
    "DailyRecord",
    "UsagePoint",
    "ReportLine",
    "PeriodReport",
    "StockStatus",
    "as_utc",
    "transaction_day",
    "referenced_branches",
]
