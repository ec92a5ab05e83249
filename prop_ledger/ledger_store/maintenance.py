"""
Ledger maintenance — administrative operations outside the reconciliation pipeline.

Deleting stray tickets, binding templates, resetting a phase and clearing
the pending-conflict queue are operator actions. None of them run during a
pass; each takes the account lock so it never interleaves with one.

Usage:
    maintenance = LedgerMaintenance(store, templates, locks)
    maintenance.delete_ticket("2958", "162527")
    maintenance.purge_pending()
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from loguru import logger

from prop_ledger.compliance.template_store import TemplateStore
from prop_ledger.config import AccountSeedConfig
from prop_ledger.errors import AccountNotFoundError
from prop_ledger.ledger.schemas import Account, Phase, PhaseTransition
from prop_ledger.ledger_store.repository import LedgerRepository
from prop_ledger.sync.account_lock import AccountLockRegistry


class LedgerMaintenance:
    """Operator actions on accounts, tickets and the pending-conflict queue."""

    def __init__(
        self,
        store: LedgerRepository,
        templates: TemplateStore | None = None,
        locks: AccountLockRegistry | None = None,
        pending_retention_days: int = 30,
    ) -> None:
        self._store = store
        self._templates = templates
        self._locks = locks or AccountLockRegistry()
        self._retention_days = pending_retention_days

    # ── Accounts ────────────────────────────────────────────────────────

    def register_account(self, seed: AccountSeedConfig, at: datetime | None = None) -> Account:
        """Create an account if it does not exist yet. Existing accounts are returned untouched."""
        with self._locks.hold(seed.account_id):
            existing = self._store.get_account(seed.account_id)
            if existing is not None:
                logger.debug("Maintenance: account {} already registered", seed.account_id)
                return existing
            if seed.template_id and self._templates is not None:
                self._templates.get(seed.template_id, seed.template_version)
            account = Account(
                account_id=seed.account_id,
                initial_balance=seed.initial_balance,
                start_balance=seed.start_balance if seed.start_balance is not None else seed.initial_balance,
                current_phase=seed.phase,
                phase_started_at=at,
                template_id=seed.template_id,
                template_version=seed.template_version,
                timezone=seed.timezone,
            )
            self._store.save_account(account)
            logger.info(
                "Maintenance: registered account {} ({} {}, template {})",
                account.account_id,
                account.current_phase.value,
                account.initial_balance,
                account.template_id,
            )
            return account

    def assign_template(
        self, account_id: str, template_id: str, version: int | None = None
    ) -> Account:
        """Bind an account to a template; version None pins the latest at next evaluation.

        Raises:
            AccountNotFoundError: Unknown account.
            RuleTemplateMissingError: Unknown template id or version.
        """
        with self._locks.hold(account_id):
            account = self._require(account_id)
            if self._templates is not None:
                self._templates.get(template_id, version)
            updated = account.model_copy(
                update={"template_id": template_id, "template_version": version}
            )
            self._store.save_account(updated)
            logger.info(
                "Maintenance: account {} template {} v{} → {} v{}",
                account_id,
                account.template_id,
                account.template_version,
                template_id,
                version if version is not None else "latest",
            )
            return updated

    def reset_phase(
        self,
        account_id: str,
        phase: Phase,
        start_balance: Decimal | None = None,
        at: datetime | None = None,
        reason: str = "manual reset",
    ) -> Account:
        """Force an account into a phase, clearing any failure. Recorded in the phase history."""
        at = at or datetime.now(timezone.utc)
        with self._locks.hold(account_id):
            account = self._require(account_id)
            updated = account.model_copy(
                update={
                    "current_phase": phase,
                    "start_balance": start_balance if start_balance is not None else account.start_balance,
                    "phase_start_equity": None,
                    "phase_started_at": at,
                    "failed_at": None,
                    "failure_reason": "",
                }
            )
            with self._store.transaction():
                self._store.save_account(updated)
                self._store.record_transition(
                    PhaseTransition(
                        account_id=account_id,
                        from_phase=account.current_phase,
                        to_phase=phase,
                        at=at,
                        reason=reason,
                    )
                )
            logger.warning(
                "Maintenance: account {} phase reset {} → {} ({})",
                account_id,
                account.current_phase.value,
                phase.value,
                reason,
            )
            return updated

    # ── Tickets ─────────────────────────────────────────────────────────

    def delete_ticket(self, account_id: str, ticket_id: str) -> int:
        """Delete a ticket and every renamed leg derived from it."""
        with self._locks.hold(account_id):
            deleted = self._store.delete_ticket(account_id, ticket_id)
        if deleted > 0:
            logger.info("Maintenance: deleted {} records for ticket {} ({})", deleted, ticket_id, account_id)
        else:
            logger.info("Maintenance: no records for ticket {} ({})", ticket_id, account_id)
        return deleted

    # ── Pending Conflicts ───────────────────────────────────────────────

    def list_pending(self, account_id: str | None = None) -> list[dict[str, Any]]:
        return self._store.list_pending(account_id)

    def discard_pending(self, pending_id: int) -> bool:
        discarded = self._store.discard_pending(pending_id)
        if discarded:
            logger.info("Maintenance: discarded pending conflict #{}", pending_id)
        return discarded

    def purge_pending(self, now: datetime | None = None) -> int:
        """Drop queued conflicts older than the retention period."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=self._retention_days)
        purged = self._store.purge_pending(cutoff)
        if purged > 0:
            logger.info(
                "Maintenance: purged {} pending conflicts (retention={}d)", purged, self._retention_days
            )
        return purged

    # ── Private ─────────────────────────────────────────────────────────

    def _require(self, account_id: str) -> Account:
        account = self._store.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account
