"""Enumerations and fixed parameters shared across FreshStock modules.

Centralises domain constants so that the data access layer (DAL), the ledger,
the projection engine, and the presentation layers rely on a single source of
truth for critical identifiers.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Reorder parameters. The safety factor is fixed chain-wide, not per item.
DEFAULT_LEAD_TIME_DAYS = Decimal("2")
SAFETY_FACTOR = Decimal("1.2")
USAGE_WINDOW_DAYS = 30


class TransactionType(str, Enum):
    """Enumerate the canonical transaction types recorded in the ledger."""

    RECEIVE = "receive"
    USE = "use"
    WASTAGE = "wastage"
    TRANSFER = "transfer"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    BRANCHES = "Branches"
    ITEMS = "Items"
    TRANSACTION_LOG = "TransactionLog"


ITEM_CATEGORIES: tuple[str, ...] = (
    "Vegetable",
    "Raw Meat",
    "Seafood",
    "Frozen",
    "Ingredient",
    "Sauce",
    "Packaging",
    "Other",
)


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_LEAD_TIME_DAYS",
    "SAFETY_FACTOR",
    "USAGE_WINDOW_DAYS",
    "TransactionType",
    "SheetName",
    "ITEM_CATEGORIES",
]
