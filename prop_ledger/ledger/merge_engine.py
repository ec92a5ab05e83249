"""
Ledger merge engine — applies one normalized snapshot to an account's ledger.

Order within a pass:
    1. LIVE_OPEN records       (create / refresh / rename-and-create / coexist)
    2. IMPORTED_CLOSED records (close / insert renamed leg / create / duplicate)
    3. close-by-absence        (count misses, flag stale, never delete)

The engine performs no locking and opens no transaction of its own; the
reconciler wraps a whole pass in both. Replaying the same snapshot creates
nothing and changes no value.
"""

from datetime import datetime
from typing import Callable

from loguru import logger
from pydantic import BaseModel

from prop_ledger.errors import ConflictAmbiguousError
from prop_ledger.ledger.conflict_resolver import ConflictResolver, Resolution, ResolutionAction
from prop_ledger.ledger.normalizer import NormalizedBatch, SkippedRecord
from prop_ledger.ledger.schemas import PositionRecord, renamed_ticket
from prop_ledger.ledger_store.repository import LedgerRepository


class MergeReport(BaseModel):
    """Counters for one merge."""

    created: int = 0
    updated: int = 0
    closed: int = 0
    renamed: int = 0
    stale: int = 0
    skipped: list[SkippedRecord] = []
    pending: list[SkippedRecord] = []


class LedgerMergeEngine:
    """Idempotent upsert of normalized records into the ledger.

    Usage:
        engine = LedgerMergeEngine(store, ConflictResolver(), stale_after_missed_snapshots=2)
        report = engine.merge("2958", batch, as_of)
        print(report.created, report.renamed)
    """

    def __init__(
        self,
        repository: LedgerRepository,
        resolver: ConflictResolver,
        stale_after_missed_snapshots: int = 2,
    ) -> None:
        if stale_after_missed_snapshots < 1:
            raise ValueError("stale_after_missed_snapshots must be >= 1")
        self._repo = repository
        self._resolver = resolver
        self._stale_after = stale_after_missed_snapshots

    def merge(
        self,
        account_id: str,
        batch: NormalizedBatch,
        as_of: datetime,
        closed_only: bool = False,
    ) -> MergeReport:
        """Apply a normalized batch.

        Args:
            account_id: Owning account.
            batch: Output of the normalizer; its rejects are carried into the report.
            as_of: Snapshot (or import) timestamp.
            closed_only: Standalone closed-trade import. Live records and
                close-by-absence are skipped because the batch says nothing
                about what is still open.
        """
        report = MergeReport(skipped=list(batch.rejected))
        live_tickets: set[str] | None = None

        if not closed_only:
            live_tickets = set()
            for record in batch.live:
                if record.ticket_id in live_tickets:
                    self._skip(report, record, "ticket reported twice in one snapshot")
                    continue
                live_tickets.add(record.ticket_id)
                self._guarded(report, record, lambda r=record: self._apply_live(r, as_of, report))

        for record in batch.closed:
            self._guarded(
                report, record, lambda r=record: self._apply_closed(r, live_tickets, report)
            )

        if not closed_only:
            self._close_by_absence(account_id, live_tickets or set(), as_of, report)

        logger.info(
            "Merge {}: created={} updated={} closed={} renamed={} stale={} skipped={} pending={}",
            account_id,
            report.created,
            report.updated,
            report.closed,
            report.renamed,
            report.stale,
            len(report.skipped),
            len(report.pending),
        )
        return report

    # ── Live Records ────────────────────────────────────────────────────

    def _apply_live(self, record: PositionRecord, as_of: datetime, report: MergeReport) -> None:
        existing = self._repo.find_by_ticket(record.account_id, record.ticket_id)
        decision = self._resolver.resolve_live(record, existing, as_of)
        action = decision.action

        if action in (ResolutionAction.CREATE, ResolutionAction.COEXIST):
            self._repo.upsert(decision.record)
            report.created += 1
            logger.info(
                "Merge: {} open {} {} {} ({})",
                "created" if action == ResolutionAction.CREATE else "created alongside closed",
                record.ticket_id,
                record.symbol,
                record.volume,
                record.account_id,
            )
        elif action == ResolutionAction.REFRESH:
            self._apply_refresh(decision, report)
        elif action == ResolutionAction.RENAME_AND_CREATE:
            self._apply_rename(decision, report)
            self._repo.upsert(decision.record)
            report.created += 1
        elif action == ResolutionAction.STALE_REPORT:
            logger.debug("Merge: ignoring {} — {}", record.ticket_id, decision.reason)

    def _apply_refresh(self, decision: Resolution, report: MergeReport) -> None:
        target = decision.target
        refreshed = decision.record
        if target is None or refreshed.model_dump() == target.model_dump():
            return
        self._repo.upsert(refreshed)
        if (
            refreshed.floating_fields() != target.floating_fields()
            or refreshed.is_stale != target.is_stale
        ):
            report.updated += 1
            logger.debug(
                "Merge: refreshed {} pnl {} → {}",
                refreshed.ticket_id,
                target.pnl_gross,
                refreshed.pnl_gross,
            )

    def _apply_rename(self, decision: Resolution, report: MergeReport) -> None:
        target = decision.target
        if target is None or target.id is None or decision.rename_to is None:
            return
        if self._repo.rename(target.account_id, target.id, decision.rename_to):
            report.renamed += 1
            logger.info(
                "Merge: renamed closed {} → {} ({})",
                target.ticket_id,
                decision.rename_to,
                decision.reason,
            )

    # ── Closed Records ──────────────────────────────────────────────────

    def _apply_closed(
        self,
        record: PositionRecord,
        live_tickets: set[str] | None,
        report: MergeReport,
    ) -> None:
        existing = self._repo.find_by_ticket(record.account_id, record.ticket_id)
        renamed = self._repo.find_by_ticket(
            record.account_id,
            renamed_ticket(record.ticket_id, record.close_time),  # type: ignore[arg-type]
        )
        decision = self._resolver.resolve_closed(record, existing, renamed, live_tickets)
        action = decision.action

        if action == ResolutionAction.DUPLICATE:
            logger.debug("Merge: closed {} already recorded", record.ticket_id)
        elif action == ResolutionAction.CREATE:
            self._repo.upsert(decision.record)
            report.created += 1
            logger.info(
                "Merge: recorded closed {} {} net {} ({})",
                record.ticket_id,
                record.symbol,
                record.net_pnl,
                record.account_id,
            )
        elif action == ResolutionAction.INSERT_RENAMED:
            self._repo.upsert(decision.record)
            report.created += 1
            logger.info(
                "Merge: recorded settled leg {} ({})", decision.record.ticket_id, decision.reason
            )
        elif action == ResolutionAction.RENAME_AND_CREATE:
            self._apply_rename(decision, report)
            self._repo.upsert(decision.record)
            report.created += 1
        elif action == ResolutionAction.CLOSE_OPEN:
            self._repo.upsert(decision.record)
            report.closed += 1
            logger.info(
                "Merge: closed {} at {} net {} ({})",
                record.ticket_id,
                decision.record.close_price,
                decision.record.net_pnl,
                record.account_id,
            )

    # ── Close-by-Absence ────────────────────────────────────────────────

    def _close_by_absence(
        self,
        account_id: str,
        live_tickets: set[str],
        as_of: datetime,
        report: MergeReport,
    ) -> None:
        """Count one miss per newer snapshot for open records the EA no longer reports."""
        for record in self._repo.list_open(account_id):
            if record.ticket_id in live_tickets:
                continue
            if record.last_seen_at is not None and as_of <= record.last_seen_at:
                continue
            if record.last_missed_at is not None and as_of <= record.last_missed_at:
                continue

            missed = record.missed_snapshots + 1
            stale = missed >= self._stale_after
            self._repo.upsert(
                record.model_copy(
                    update={"missed_snapshots": missed, "last_missed_at": as_of, "is_stale": stale}
                )
            )
            if stale and not record.is_stale:
                report.stale += 1
                logger.warning(
                    "Merge: open {} {} missing from {} snapshots — flagged stale ({})",
                    record.ticket_id,
                    record.symbol,
                    missed,
                    account_id,
                )
            else:
                logger.debug("Merge: open {} missing ({} in a row)", record.ticket_id, missed)

    # ── Per-record Failure Isolation ────────────────────────────────────

    def _guarded(self, report: MergeReport, record: PositionRecord, apply: Callable[[], None]) -> None:
        """Run one record's merge; an ambiguous conflict parks the record instead."""
        try:
            apply()
        except ConflictAmbiguousError as e:
            queued = self._repo.add_pending_conflict(record, e.reason)
            report.pending.append(
                SkippedRecord(record=record.model_dump(mode="json"), reason=e.reason)
            )
            logger.warning(
                "Merge: {} held for review{} — {}",
                record.ticket_id,
                "" if queued else " (already queued)",
                e.reason,
            )

    def _skip(self, report: MergeReport, record: PositionRecord, reason: str) -> None:
        report.skipped.append(SkippedRecord(record=record.model_dump(mode="json"), reason=reason))
        logger.warning("Merge: skipped {} — {}", record.ticket_id, reason)
