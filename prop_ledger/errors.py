"""
Exception hierarchy for the reconciliation and rule evaluation engine.

    LedgerError (base)
    ├── ValidationError          — malformed descriptor, skip record, continue batch
    ├── ConflictAmbiguousError   — resolver cannot pick a candidate, park record
    ├── StorageError             — repository unavailable, abort pass, safe to retry
    │   └── ImmutableRecordError — write would break ticket uniqueness or closed-record immutability
    ├── AccountNotFoundError     — pass cannot start, nothing written
    ├── RuleTemplateMissingError — no rules for the phase, phase state left unchanged
    └── TemplateConflictError    — published template id+version re-registered with new content

Rules:
    - ValidationError / ConflictAmbiguousError: caught per record, reported in the pass result.
    - StorageError / AccountNotFoundError: propagate to the caller with account and asOf.
    - RuleTemplateMissingError: caught by the evaluator, surfaced as a diagnostic.
"""

from datetime import datetime
from typing import Any


class LedgerError(Exception):
    """Base exception for all ledger engine errors."""


class ValidationError(LedgerError):
    """Raised when a position descriptor cannot be normalized."""

    def __init__(self, reason: str, record: dict[str, Any] | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.record = record or {}


class ConflictAmbiguousError(LedgerError):
    """Raised when more than one ledger record could be the incoming record's counterpart."""

    def __init__(self, ticket_id: str, candidates: list[Any], reason: str = "") -> None:
        message = reason or (
            f"Ticket {ticket_id}: {len(candidates)} ledger records match within tolerance"
        )
        super().__init__(message)
        self.ticket_id = ticket_id
        self.candidates = candidates
        self.reason = message


class StorageError(LedgerError):
    """Raised when the ledger repository cannot complete an operation."""

    def __init__(
        self,
        message: str,
        account_id: str | None = None,
        as_of: datetime | None = None,
    ) -> None:
        super().__init__(message)
        self.account_id = account_id
        self.as_of = as_of

    def with_context(self, account_id: str, as_of: datetime | None) -> "StorageError":
        """Attach pass context so the caller can retry the same snapshot."""
        self.account_id = account_id
        self.as_of = as_of
        return self

    def __str__(self) -> str:
        base = super().__str__()
        if self.account_id is None:
            return base
        as_of = self.as_of.isoformat() if self.as_of else "-"
        return f"{base} (account={self.account_id}, as_of={as_of})"


class ImmutableRecordError(StorageError):
    """Raised when a write would break ticket uniqueness or closed-record immutability."""


class AccountNotFoundError(LedgerError):
    """Raised when a pass targets an account that is not registered."""

    def __init__(self, account_id: str, as_of: datetime | None = None) -> None:
        super().__init__(f"Account {account_id} is not registered")
        self.account_id = account_id
        self.as_of = as_of


class RuleTemplateMissingError(LedgerError):
    """Raised when no rule template (or no section for a phase) is bound to an account."""


class TemplateConflictError(LedgerError):
    """Raised when a published template version is re-registered with different content."""
