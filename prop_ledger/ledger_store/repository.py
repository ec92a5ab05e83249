"""
Abstract ledger repository — the only way the engine touches storage.

The reconciliation pipeline needs four record operations (find_by_ticket,
upsert, rename, list_open) plus account/phase persistence, all inside one
transaction per pass. Administrative operations live in the second half of
the interface and are never called from the pipeline.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Any

from prop_ledger.ledger.schemas import Account, PhaseTransition, PositionRecord


class LedgerRepository(ABC):
    """Persistence boundary for position records and account phase state.

    Implementations must enforce both ledger invariants on write:
    at most one open record per (account, ticket), and no change to the
    settlement fields of a closed record.
    """

    # ── Transactions ────────────────────────────────────────────────────

    @abstractmethod
    def transaction(self) -> AbstractContextManager[None]:
        """Scope in which all writes commit together or not at all."""

    # ── Position Records ────────────────────────────────────────────────

    @abstractmethod
    def find_by_ticket(self, account_id: str, ticket_id: str) -> list[PositionRecord]:
        """All records (open and closed) carrying exactly this ticket id."""

    @abstractmethod
    def upsert(self, record: PositionRecord) -> PositionRecord:
        """Insert a new record (id None) or update an open one. Returns the stored record."""

    @abstractmethod
    def rename(self, account_id: str, record_id: int, new_ticket_id: str) -> bool:
        """Move a record to a new ticket id. False (no-op) if the target already exists."""

    @abstractmethod
    def list_open(self, account_id: str) -> list[PositionRecord]:
        """All open records for an account."""

    @abstractmethod
    def list_records(self, account_id: str) -> list[PositionRecord]:
        """Every record for an account, ordered by open time."""

    @abstractmethod
    def ticket_exists(self, account_id: str, ticket_id: str) -> bool:
        """True if any record carries this ticket id."""

    # ── Accounts & Phase State ──────────────────────────────────────────

    @abstractmethod
    def get_account(self, account_id: str) -> Account | None:
        """Load an account, or None if unknown."""

    @abstractmethod
    def save_account(self, account: Account) -> None:
        """Create or replace an account row."""

    @abstractmethod
    def record_transition(self, transition: PhaseTransition) -> None:
        """Append a phase transition to the account history."""

    @abstractmethod
    def add_pending_conflict(self, record: PositionRecord, reason: str) -> bool:
        """Park a record the resolver could not place. False if already queued."""

    # ── Administrative Operations ───────────────────────────────────────

    @abstractmethod
    def delete_ticket(self, account_id: str, ticket_id: str) -> int:
        """Remove a ticket and its renamed legs. Returns rows deleted."""

    @abstractmethod
    def list_transitions(self, account_id: str) -> list[PhaseTransition]:
        """Phase history, oldest first."""

    @abstractmethod
    def list_pending(self, account_id: str | None = None) -> list[dict[str, Any]]:
        """Queued conflicts awaiting manual review."""

    @abstractmethod
    def discard_pending(self, pending_id: int) -> bool:
        """Drop one queued conflict."""

    @abstractmethod
    def purge_pending(self, older_than: datetime) -> int:
        """Drop queued conflicts created before a cutoff."""
