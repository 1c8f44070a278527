"""Domain exceptions raised by the ledger and the business logic layer."""

from __future__ import annotations


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced branch or item is unknown."""


class InvalidTransactionError(BusinessRuleViolation):
    """Raised when a transaction is rejected at the ledger append boundary.

    ``constraint`` names the rule that failed (for example ``"quantity"`` or
    ``"distinct_branches"``) so callers can point users at the offending field.
    """

    def __init__(self, constraint: str, message: str) -> None:
        super().__init__(message)
        self.constraint = constraint


__all__ = [
    "BusinessRuleViolation",
    "MissingReferenceError",
    "InvalidTransactionError",
]
