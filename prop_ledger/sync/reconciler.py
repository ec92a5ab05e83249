"""
Ledger reconciler — one reconciliation pass per report, per account.

Pipeline (all inside the account lock and one store transaction):

    Snapshot ─▶ SnapshotNormalizer ─▶ LedgerMergeEngine (ConflictResolver)
             ─▶ Aggregator ─▶ RuleEvaluator ─▶ phase state + history ─▶ commit

A pass either commits as a whole (per-record rejections and parked conflicts
reported in the result) or raises before anything is committed. Retrying a
failed pass with the same snapshot is safe: the merge is idempotent.

All methods are synchronous (SQLite). reconcile_async() runs a pass in a
worker thread for async callers.

Usage:
    reconciler = LedgerReconciler(store, TemplateStore("config/templates"))
    result = reconciler.reconcile(snapshot)
    print(result.created, result.phase_state.current_phase)
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable

from loguru import logger
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from prop_ledger.compliance.aggregator import AccountFigures, Aggregator
from prop_ledger.compliance.rule_evaluator import (
    PhaseProgress,
    RuleEvaluator,
    Violation,
)
from prop_ledger.compliance.template_store import TemplateStore
from prop_ledger.config import ReconciliationConfig
from prop_ledger.errors import AccountNotFoundError, StorageError, ValidationError
from prop_ledger.ledger.conflict_resolver import ConflictResolver
from prop_ledger.ledger.merge_engine import LedgerMergeEngine, MergeReport
from prop_ledger.ledger.normalizer import NormalizedBatch, SkippedRecord, SnapshotNormalizer
from prop_ledger.ledger.schemas import Account, PhaseState, PhaseTransition, Snapshot, SourceKind
from prop_ledger.ledger_store.repository import LedgerRepository
from prop_ledger.monitor.trade_journal import LedgerJournal
from prop_ledger.sync.account_lock import AccountLockRegistry

# ── Data Models ─────────────────────────────────────────────────────────────


class PassResult(BaseModel):
    """Outcome of one pass: merge counters, phase state and violations."""

    account_id: str
    as_of: datetime
    created: int = 0
    updated: int = 0
    closed: int = 0
    renamed: int = 0
    stale: int = 0
    skipped: list[SkippedRecord] = []
    pending: list[SkippedRecord] = []
    phase_state: PhaseState | None = None
    violations: list[Violation] = []
    figures: AccountFigures | None = None
    progress: PhaseProgress | None = None
    transition: PhaseTransition | None = None
    diagnostics: list[str] = []

    def counts(self) -> dict[str, int]:
        return {
            "created": self.created,
            "updated": self.updated,
            "closed": self.closed,
            "renamed": self.renamed,
            "stale": self.stale,
            "skipped": len(self.skipped),
            "pending": len(self.pending),
        }


# ── LedgerReconciler ────────────────────────────────────────────────────────


class LedgerReconciler:
    """Runs reconciliation passes against an injected repository.

    The repository is constructed once per process by the caller and passed
    in; the reconciler owns no connection of its own.
    """

    def __init__(
        self,
        store: LedgerRepository,
        templates: TemplateStore,
        config: ReconciliationConfig | None = None,
        locks: AccountLockRegistry | None = None,
        journal: LedgerJournal | None = None,
    ) -> None:
        config = config or ReconciliationConfig()
        self._store = store
        self._locks = locks or AccountLockRegistry()
        self._journal = journal
        self._normalizer = SnapshotNormalizer(naive_timestamp_tz=config.naive_timestamp_tz)
        self._engine = LedgerMergeEngine(
            store,
            ConflictResolver(open_time_tolerance_seconds=config.open_time_tolerance_seconds),
            stale_after_missed_snapshots=config.stale_after_missed_snapshots,
        )
        self._aggregator = Aggregator()
        self._evaluator = RuleEvaluator(templates)

    # ── Public API ──────────────────────────────────────────────────────

    def reconcile(self, snapshot: Snapshot | dict[str, Any]) -> PassResult:
        """Merge a live snapshot and re-evaluate the account.

        Raises:
            ValidationError: The snapshot envelope itself is malformed.
            AccountNotFoundError: The account is not registered.
            StorageError: The store failed; nothing from this pass is committed.
        """
        if not isinstance(snapshot, Snapshot):
            try:
                snapshot = Snapshot.model_validate(snapshot)
            except PydanticValidationError as e:
                raise ValidationError(f"malformed snapshot: {e.errors()[0]['msg']}", snapshot) from e

        def build(account: Account) -> NormalizedBatch:
            return self._normalizer.normalize_snapshot(snapshot, default_phase=account.current_phase)

        return self._run(snapshot.account_id, snapshot.as_of, build, closed_only=False)

    async def reconcile_async(self, snapshot: Snapshot | dict[str, Any]) -> PassResult:
        """reconcile() in a worker thread."""
        return await asyncio.to_thread(self.reconcile, snapshot)

    def import_closed(
        self,
        account_id: str,
        descriptors: list[dict[str, Any]],
        as_of: datetime | None = None,
    ) -> PassResult:
        """Merge a batch of closed trades (broker export) without touching open records."""
        as_of = as_of or datetime.now(timezone.utc)

        def build(account: Account) -> NormalizedBatch:
            return self._normalizer.normalize_many(
                account_id,
                descriptors,
                SourceKind.IMPORTED_CLOSED,
                default_phase=account.current_phase,
            )

        return self._run(account_id, as_of, build, closed_only=True)

    def evaluate(self, account_id: str, as_of: datetime | None = None) -> PassResult:
        """Re-run aggregation and rule evaluation without merging anything."""
        return self._run(account_id, as_of or datetime.now(timezone.utc), None, closed_only=True)

    # ── Pass ────────────────────────────────────────────────────────────

    def _run(
        self,
        account_id: str,
        as_of: datetime,
        build: Callable[[Account], NormalizedBatch] | None,
        closed_only: bool,
    ) -> PassResult:
        if as_of.tzinfo is None:
            as_of = as_of.replace(tzinfo=timezone.utc)

        with self._locks.hold(account_id):
            try:
                with self._store.transaction():
                    result = self._pass(account_id, as_of, build, closed_only)
            except StorageError as e:
                logger.error("Reconcile {} @ {}: pass aborted — {}", account_id, as_of.isoformat(), e)
                raise e.with_context(account_id, as_of)

        self._journal_pass(result)
        return result

    def _pass(
        self,
        account_id: str,
        as_of: datetime,
        build: Callable[[Account], NormalizedBatch] | None,
        closed_only: bool,
    ) -> PassResult:
        account = self._store.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(account_id, as_of)

        result = PassResult(account_id=account_id, as_of=as_of)
        if build is not None:
            report = self._engine.merge(account_id, build(account), as_of, closed_only=closed_only)
            _copy_counts(report, result)

        # Out-of-order snapshots merge, but never evaluate the account in the past
        eval_at = as_of
        if account.last_snapshot_at is not None and account.last_snapshot_at > eval_at:
            eval_at = account.last_snapshot_at

        records = self._store.list_records(account_id)
        figures = self._aggregator.compute(account, records, eval_at)
        evaluation = self._evaluator.evaluate(account, figures, eval_at)

        updated = account.with_phase_state(evaluation.phase_state)
        if updated.template_version is None and evaluation.template_version is not None:
            updated = updated.model_copy(update={"template_version": evaluation.template_version})
        if build is not None and not closed_only:
            updated = updated.model_copy(update={"last_snapshot_at": eval_at})
        if updated != account:
            self._store.save_account(updated)
        if evaluation.transition is not None:
            self._store.record_transition(evaluation.transition)

        result.phase_state = evaluation.phase_state
        result.violations = evaluation.violations
        result.progress = evaluation.progress
        result.transition = evaluation.transition
        result.diagnostics = evaluation.diagnostics
        result.figures = figures

        logger.info(
            "Reconcile {} @ {}: {} | phase={} violations={}",
            account_id,
            as_of.isoformat(),
            result.counts(),
            evaluation.phase_state.current_phase.value,
            len(evaluation.violations),
        )
        return result

    def _journal_pass(self, result: PassResult) -> None:
        if self._journal is None:
            return
        as_of = result.as_of.isoformat()
        self._journal.log_pass(result.account_id, as_of, result.counts())
        for violation in result.violations:
            self._journal.log_violation(result.account_id, as_of, violation.model_dump(mode="json"))
        for parked in result.pending:
            self._journal.log_event(
                "PENDING_CONFLICT",
                {"account_id": result.account_id, "as_of": as_of, **parked.model_dump(mode="json")},
            )
        if result.transition is not None:
            self._journal.log_transition(result.transition.model_dump(mode="json"))


def _copy_counts(report: MergeReport, result: PassResult) -> None:
    result.created = report.created
    result.updated = report.updated
    result.closed = report.closed
    result.renamed = report.renamed
    result.stale = report.stale
    result.skipped = report.skipped
    result.pending = report.pending
