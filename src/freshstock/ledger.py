"""Append-only transaction ledger.

The ledger is the only place transactions are written. Every store validates
transactions at the append boundary, assigns the identifier, and never
mutates or deletes what it already holds; corrections are recorded as
compensating transactions.

Stores are free to ignore the optional :class:`LedgerFilter` passed to
``read_all``. The projection engine re-applies every branch, item, and date
condition itself, so a store may hand back any superset of the requested
records.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Protocol, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, log
from .exceptions import InvalidTransactionError
from .models import (
    ReceiveTransaction,
    Transaction,
    TransferTransaction,
    UseTransaction,
    WastageTransaction,
    as_utc,
    referenced_branches,
)


@dataclass(frozen=True)
class LedgerFilter:
    """Optional narrowing hints for :meth:`LedgerStore.read_all`."""

    branch_id: Optional[str] = None
    item_id: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None


class LedgerStore(Protocol):
    """Contract every ledger backend satisfies."""

    def append(self, transaction: Transaction) -> Transaction:
        ...

    def read_all(self, ledger_filter: Optional[LedgerFilter] = None) -> Tuple[Transaction, ...]:
        ...


def generate_transaction_id(*, prefix: str = "T", when: Optional[datetime] = None) -> str:
    """Generate a sortable, collision-resistant transaction identifier.

    Args:
        prefix (str): Designator prepended to the identifier.
        when (datetime | None): Timestamp embedded in the identifier. Defaults
            to the current UTC time.

    Returns:
        str: Identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}-{hex}``.
            The random suffix keeps identifiers unique when several
            transactions share a timestamp, such as a batch of daily entries.
    """

    when = as_utc(when) if when is not None else datetime.now(UTC)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}-{uuid.uuid4().hex[:6]}"


def _require_reference(value: Optional[str], constraint: str) -> None:
    if not value:
        log.error("Transaction validation failed: missing %s", constraint)
        raise InvalidTransactionError(constraint, f"Transaction requires a {constraint}")


def validate_transaction(transaction: Transaction) -> None:
    """Check the invariants a transaction must satisfy before it is appended.

    Raises:
        InvalidTransactionError: With ``constraint`` set to the failed rule:
            ``transaction_type`` for unknown variants, ``item_id``,
            ``branch_id``, ``branch_from`` or ``branch_to`` for missing
            references, ``distinct_branches`` for a transfer onto itself,
            ``quantity`` for non-positive quantities, and ``timestamp`` when
            the timestamp is not a datetime.
    """

    if not isinstance(
        transaction,
        (ReceiveTransaction, UseTransaction, WastageTransaction, TransferTransaction),
    ):
        raise InvalidTransactionError(
            "transaction_type",
            f"Unsupported transaction type: {type(transaction).__name__}",
        )

    _require_reference(transaction.item_id, "item_id")
    if isinstance(transaction, TransferTransaction):
        _require_reference(transaction.branch_from, "branch_from")
        _require_reference(transaction.branch_to, "branch_to")
        if transaction.branch_from == transaction.branch_to:
            log.error("Transfer validation failed: source and destination are '%s'", transaction.branch_from)
            raise InvalidTransactionError(
                "distinct_branches",
                "Transfer source and destination branches must differ",
            )
    else:
        _require_reference(transaction.branch_id, "branch_id")

    quantity = transaction.quantity
    if isinstance(quantity, bool) or not isinstance(quantity, (int, Decimal)):
        log.error("Quantity validation failed: %r is not a number", quantity)
        raise InvalidTransactionError("quantity", "Quantity must be an integer or Decimal")
    if not Decimal(quantity).is_finite() or quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise InvalidTransactionError("quantity", "Quantity must be greater than zero")

    if not isinstance(transaction.timestamp, datetime):
        raise InvalidTransactionError("timestamp", "Transaction timestamp must be a datetime")


def matches_filter(transaction: Transaction, ledger_filter: Optional[LedgerFilter]) -> bool:
    """Return ``True`` when ``transaction`` satisfies ``ledger_filter``.

    A branch matches any branch field of the transaction, so transfers are
    returned for both their source and destination.
    """

    if ledger_filter is None:
        return True
    if ledger_filter.item_id is not None and transaction.item_id != ledger_filter.item_id:
        return False
    if ledger_filter.branch_id is not None and ledger_filter.branch_id not in referenced_branches(transaction):
        return False
    moment = as_utc(transaction.timestamp)
    if ledger_filter.date_from is not None and moment < as_utc(ledger_filter.date_from):
        return False
    if ledger_filter.date_to is not None and moment > as_utc(ledger_filter.date_to):
        return False
    return True


def _prepare(transaction: Transaction) -> Transaction:
    validate_transaction(transaction)
    timestamp = as_utc(transaction.timestamp)
    return replace(
        transaction,
        quantity=Decimal(transaction.quantity),
        timestamp=timestamp,
        transaction_id=generate_transaction_id(when=timestamp),
    )


class InMemoryLedgerStore:
    """Thread-safe ledger held in process memory.

    Reads return an immutable tuple so callers always work on a consistent
    snapshot even while other threads append.
    """

    def __init__(self, transactions: Iterable[Transaction] = ()) -> None:
        self._lock = threading.Lock()
        self._transactions: List[Transaction] = []
        for transaction in transactions:
            self.append(transaction)

    def append(self, transaction: Transaction) -> Transaction:
        stored = _prepare(transaction)
        with self._lock:
            self._transactions.append(stored)
        log.debug("Appended %s transaction '%s' in memory", stored.transaction_type.value, stored.transaction_id)
        return stored

    def read_all(self, ledger_filter: Optional[LedgerFilter] = None) -> Tuple[Transaction, ...]:
        with self._lock:
            snapshot = tuple(self._transactions)
        return tuple(transaction for transaction in snapshot if matches_filter(transaction, ledger_filter))

    def __len__(self) -> int:
        with self._lock:
            return len(self._transactions)


class WorkbookLedgerStore:
    """Ledger backed by the ``TransactionLog`` sheet of the master workbook.

    Appends modify the in-memory workbook only; persisting the workbook is the
    caller's responsibility (see :func:`freshstock.core_logic.persist_context`).
    """

    def __init__(self, workbook: Workbook) -> None:
        self.workbook = workbook

    def append(self, transaction: Transaction) -> Transaction:
        stored = _prepare(transaction)
        data_manager.append_transaction(self.workbook, stored)
        log.debug("Appended %s transaction '%s' to workbook", stored.transaction_type.value, stored.transaction_id)
        return stored

    def read_all(self, ledger_filter: Optional[LedgerFilter] = None) -> Tuple[Transaction, ...]:
        return tuple(
            transaction
            for transaction in data_manager.iter_transactions(self.workbook)
            if matches_filter(transaction, ledger_filter)
        )


__all__ = [
    "LedgerFilter",
    "LedgerStore",
    "InMemoryLedgerStore",
    "WorkbookLedgerStore",
    "generate_transaction_id",
    "validate_transaction",
    "matches_filter",
]
