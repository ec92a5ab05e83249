"""
Conflict resolver — decides how an incoming record relates to the ledger.

A broker may partially close a position: part of the volume settles as a
closed trade carrying the same ticket while the remainder keeps trading
under that ticket. The resolver tells these legs apart from unrelated
ticket reuse by comparing open times, and keeps every leg by moving the
settled one to a derived key "<ticket>_<close epoch seconds>".

The resolver only decides. It returns a Resolution value and never touches
storage; the merge engine applies the decision.

Usage:
    resolver = ConflictResolver(open_time_tolerance_seconds=0)
    decision = resolver.resolve_live(record, repo.find_by_ticket(acc, record.ticket_id), as_of)
    if decision.action == ResolutionAction.RENAME_AND_CREATE:
        repo.rename(acc, decision.target.id, decision.rename_to)
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel

from prop_ledger.errors import ConflictAmbiguousError
from prop_ledger.ledger.schemas import PositionRecord, renamed_ticket


class ResolutionAction(str, Enum):
    CREATE = "CREATE"  # nothing under this ticket yet
    REFRESH = "REFRESH"  # same open position, newer snapshot
    RENAME_AND_CREATE = "RENAME_AND_CREATE"  # move target to rename_to, insert record
    COEXIST = "COEXIST"  # ticket reused by an unrelated position
    CLOSE_OPEN = "CLOSE_OPEN"  # terminal close of the open record
    INSERT_RENAMED = "INSERT_RENAMED"  # settled partial leg stored under its derived key
    DUPLICATE = "DUPLICATE"  # already in the ledger
    STALE_REPORT = "STALE_REPORT"  # snapshot older than what the ledger has seen


class Resolution(BaseModel):
    """One resolver decision.

    record is what the merge engine writes (already carrying the target's id
    for REFRESH/CLOSE_OPEN and the derived ticket for INSERT_RENAMED).
    target is the existing ledger record the decision refers to, if any.
    """

    action: ResolutionAction
    record: PositionRecord
    target: PositionRecord | None = None
    rename_to: str | None = None
    reason: str = ""


class ConflictResolver:
    """Ticket collision rules for live and imported records."""

    def __init__(self, open_time_tolerance_seconds: int = 0) -> None:
        if open_time_tolerance_seconds < 0:
            raise ValueError("open_time_tolerance_seconds must be >= 0")
        self._tolerance = open_time_tolerance_seconds

    @property
    def tolerance_seconds(self) -> int:
        return self._tolerance

    def open_times_match(self, a: datetime, b: datetime) -> bool:
        """Whole-second comparison within the configured tolerance."""
        return abs(_whole_seconds(a) - _whole_seconds(b)) <= self._tolerance

    # ── Live Open Records ───────────────────────────────────────────────

    def resolve_live(
        self,
        incoming: PositionRecord,
        existing: list[PositionRecord],
        as_of: datetime,
    ) -> Resolution:
        """Decide what a LIVE_OPEN record means for the ledger.

        Args:
            incoming: Normalized live record.
            existing: Every ledger record carrying exactly incoming.ticket_id.
            as_of: Snapshot timestamp.

        Raises:
            ConflictAmbiguousError: Two or more closed records match the
                incoming open time.
        """
        ticket = incoming.ticket_id
        seen = incoming.model_copy(
            update={"last_seen_at": as_of, "missed_snapshots": 0, "is_stale": False}
        )

        open_records = [r for r in existing if r.is_open]
        if open_records:
            target = open_records[0]
            if target.last_seen_at is not None and as_of < target.last_seen_at:
                return Resolution(
                    action=ResolutionAction.STALE_REPORT,
                    record=target,
                    target=target,
                    reason=(
                        f"snapshot {as_of.isoformat()} older than last seen "
                        f"{target.last_seen_at.isoformat()}"
                    ),
                )
            return Resolution(
                action=ResolutionAction.REFRESH,
                record=_refreshed(target, incoming, as_of),
                target=target,
            )

        closed = [r for r in existing if not r.is_open]
        if not closed:
            return Resolution(action=ResolutionAction.CREATE, record=seen)

        matches = [r for r in closed if self.open_times_match(r.open_time, incoming.open_time)]
        if len(matches) > 1:
            raise ConflictAmbiguousError(ticket, matches)
        if matches:
            target = matches[0]
            return Resolution(
                action=ResolutionAction.RENAME_AND_CREATE,
                record=seen,
                target=target,
                rename_to=renamed_ticket(ticket, target.close_time),  # type: ignore[arg-type]
                reason="partial closure: settled leg shares the live open time",
            )

        return Resolution(
            action=ResolutionAction.COEXIST,
            record=seen,
            target=closed[-1],
            reason="ticket reused after an unrelated full close",
        )

    # ── Imported Closed Records ─────────────────────────────────────────

    def resolve_closed(
        self,
        incoming: PositionRecord,
        existing: list[PositionRecord],
        renamed: list[PositionRecord] | None = None,
        live_tickets: set[str] | None = None,
    ) -> Resolution:
        """Decide what an IMPORTED_CLOSED record means for the ledger.

        Args:
            incoming: Normalized closed record.
            existing: Ledger records carrying exactly incoming.ticket_id.
            renamed: Ledger records already under the incoming leg's derived key.
            live_tickets: Tickets present in the current live snapshot, or None
                for a standalone import (then a closed volume smaller than the
                open volume marks a partial closure).

        Raises:
            ConflictAmbiguousError: Two or more closed records match the
                incoming open time and none is an exact duplicate.
        """
        ticket = incoming.ticket_id
        close_time: datetime = incoming.close_time  # type: ignore[assignment]
        derived = renamed_ticket(ticket, close_time)

        for record in list(existing) + list(renamed or []):
            if record.is_open:
                continue
            if _whole_seconds(record.close_time) == _whole_seconds(close_time) and (  # type: ignore[arg-type]
                record.ticket_id == derived
                or self.open_times_match(record.open_time, incoming.open_time)
            ):
                return Resolution(
                    action=ResolutionAction.DUPLICATE,
                    record=record,
                    target=record,
                    reason="closed leg already in the ledger",
                )

        open_records = [r for r in existing if r.is_open]
        if open_records and self.open_times_match(open_records[0].open_time, incoming.open_time):
            target = open_records[0]
            if live_tickets is not None:
                partial = ticket in live_tickets
            else:
                partial = incoming.volume < target.volume
            if partial:
                return Resolution(
                    action=ResolutionAction.INSERT_RENAMED,
                    record=incoming.model_copy(update={"ticket_id": derived}),
                    target=target,
                    rename_to=derived,
                    reason="partial closure of a position that is still open",
                )
            return Resolution(
                action=ResolutionAction.CLOSE_OPEN,
                record=_closed(target, incoming),
                target=target,
                reason="terminal close event",
            )

        closed = [r for r in existing if not r.is_open]
        matches = [r for r in closed if self.open_times_match(r.open_time, incoming.open_time)]
        if len(matches) > 1:
            raise ConflictAmbiguousError(ticket, matches)
        if matches:
            target = matches[0]
            if target.close_time < close_time:  # type: ignore[operator]
                return Resolution(
                    action=ResolutionAction.RENAME_AND_CREATE,
                    record=incoming,
                    target=target,
                    rename_to=renamed_ticket(ticket, target.close_time),  # type: ignore[arg-type]
                    reason="later leg of a partially closed position",
                )
            return Resolution(
                action=ResolutionAction.INSERT_RENAMED,
                record=incoming.model_copy(update={"ticket_id": derived}),
                target=target,
                rename_to=derived,
                reason="earlier leg of a partially closed position",
            )

        return Resolution(action=ResolutionAction.CREATE, record=incoming)


# ── Helper Functions ────────────────────────────────────────────────────────


def _whole_seconds(value: datetime) -> int:
    return int(value.timestamp() // 1)


def _refreshed(target: PositionRecord, incoming: PositionRecord, as_of: datetime) -> PositionRecord:
    """Open record with floating fields taken from the newer snapshot."""
    return target.model_copy(
        update={
            "volume": incoming.volume,
            "open_price": incoming.open_price,
            "pnl_gross": incoming.pnl_gross,
            "swap": incoming.swap,
            "commission": incoming.commission,
            "comment": incoming.comment or target.comment,
            "magic": incoming.magic if incoming.magic is not None else target.magic,
            "last_seen_at": as_of,
            "missed_snapshots": 0,
            "last_missed_at": None,
            "is_stale": False,
        }
    )


def _closed(target: PositionRecord, incoming: PositionRecord) -> PositionRecord:
    """Open record settled with the close event's figures."""
    return target.model_copy(
        update={
            "volume": incoming.volume,
            "open_price": incoming.open_price or target.open_price,
            "close_time": incoming.close_time,
            "close_price": incoming.close_price,
            "pnl_gross": incoming.pnl_gross,
            "swap": incoming.swap,
            "commission": incoming.commission,
            "comment": incoming.comment or target.comment,
            "deal_reason": incoming.deal_reason or target.deal_reason,
            "is_stale": False,
        }
    )
