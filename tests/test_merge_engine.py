"""
Tests for prop_ledger/ledger/merge_engine.py — idempotent snapshot merge.

Runs the normalizer, resolver and merge engine against a real SQLite store
so that invariant enforcement in the store is exercised too.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from prop_ledger.ledger.conflict_resolver import ConflictResolver
from prop_ledger.ledger.merge_engine import LedgerMergeEngine, MergeReport
from prop_ledger.ledger.normalizer import SnapshotNormalizer
from prop_ledger.ledger.schemas import PositionRecord, Side, Snapshot, SourceKind, renamed_ticket
from prop_ledger.ledger_store.sqlite_store import SqliteLedgerStore

ACCOUNT = "2958"
T0 = datetime(2025, 8, 1, 8, 35, tzinfo=timezone.utc)
T1 = datetime(2025, 8, 14, 18, 6, 4, tzinfo=timezone.utc)
S0 = datetime(2025, 8, 15, 9, 0, tzinfo=timezone.utc)

# ── Fixtures ────────────────────────────────────────────────────────────────


@pytest.fixture
def store(tmp_path: object) -> SqliteLedgerStore:
    s = SqliteLedgerStore(db_path=f"{tmp_path}/ledger.db")
    yield s  # type: ignore[misc]
    s.close()


@pytest.fixture
def engine(store: SqliteLedgerStore) -> LedgerMergeEngine:
    return LedgerMergeEngine(store, ConflictResolver(), stale_after_missed_snapshots=2)


@pytest.fixture
def normalizer() -> SnapshotNormalizer:
    return SnapshotNormalizer()


def _live(ticket: str = "162527", open_time: datetime = T0, **kwargs: object) -> dict:
    descriptor = {
        "ticketId": ticket,
        "symbol": "XAGUSD",
        "side": "buy",
        "volume": "0.50",
        "openPrice": "37.50",
        "openTime": open_time.isoformat(),
        "pnl": "120.40",
        "swap": "-3.10",
        "commission": "-2.50",
    }
    descriptor.update(kwargs)
    return descriptor


def _closed_leg(ticket: str = "162527", close_time: datetime = T1, **kwargs: object) -> dict:
    descriptor = _live(
        ticket,
        volume="0.10",
        closeTime=close_time.isoformat(),
        closePrice="38.10",
        pnl="833.50",
        swap="0",
        commission="-0.70",
    )
    descriptor.update(kwargs)
    return descriptor


def _apply(
    engine: LedgerMergeEngine,
    normalizer: SnapshotNormalizer,
    as_of: datetime,
    open_positions: list[dict],
    closed_positions: list[dict] | None = None,
) -> MergeReport:
    snapshot = Snapshot(
        account_id=ACCOUNT,
        as_of=as_of,
        open_positions=open_positions,
        closed_positions=closed_positions,
    )
    return engine.merge(ACCOUNT, normalizer.normalize_snapshot(snapshot), as_of)


def _import(
    engine: LedgerMergeEngine, normalizer: SnapshotNormalizer, descriptors: list[dict]
) -> MergeReport:
    batch = normalizer.normalize_many(ACCOUNT, descriptors, SourceKind.IMPORTED_CLOSED)
    return engine.merge(ACCOUNT, batch, S0, closed_only=True)


def _ledger(store: SqliteLedgerStore) -> list[dict]:
    return [r.model_dump() for r in store.list_records(ACCOUNT)]


def _assert_one_open_per_ticket(store: SqliteLedgerStore) -> None:
    tickets = [r.ticket_id for r in store.list_open(ACCOUNT)]
    assert len(tickets) == len(set(tickets))


# ── Idempotence ─────────────────────────────────────────────────────────────


class TestIdempotence:
    def test_same_snapshot_twice(
        self, engine: LedgerMergeEngine, normalizer: SnapshotNormalizer, store: SqliteLedgerStore
    ) -> None:
        positions = [_live(), _live("200001", symbol="EURUSD")]
        first = _apply(engine, normalizer, S0, positions, [_closed_leg("300001")])
        state = _ledger(store)

        second = _apply(engine, normalizer, S0, positions, [_closed_leg("300001")])
        assert first.created == 3
        assert (second.created, second.renamed, second.updated, second.closed) == (0, 0, 0, 0)
        assert _ledger(store) == state

    def test_partial_closure_replay_is_stable(
        self, engine: LedgerMergeEngine, normalizer: SnapshotNormalizer, store: SqliteLedgerStore
    ) -> None:
        _import(engine, normalizer, [_closed_leg()])
        _apply(engine, normalizer, S0, [_live()])
        state = _ledger(store)

        replay = _apply(engine, normalizer, S0, [_live()])
        reimport = _import(engine, normalizer, [_closed_leg()])
        assert (replay.created, replay.renamed) == (0, 0)
        assert (reimport.created, reimport.renamed) == (0, 0)
        assert _ledger(store) == state

    def test_newer_identical_snapshot_counts_no_update(
        self, engine: LedgerMergeEngine, normalizer: SnapshotNormalizer
    ) -> None:
        _apply(engine, normalizer, S0, [_live()])
        report = _apply(engine, normalizer, S0 + timedelta(minutes=1), [_live()])
        assert report.updated == 0

    def test_changed_floating_pnl_counts_update(
        self, engine: LedgerMergeEngine, normalizer: SnapshotNormalizer, store: SqliteLedgerStore
    ) -> None:
        _apply(engine, normalizer, S0, [_live()])
        report = _apply(engine, normalizer, S0 + timedelta(minutes=1), [_live(pnl="99.99")])
        assert report.updated == 1
        [record] = store.list_open(ACCOUNT)
        assert record.pnl_gross == Decimal("99.99")


# ── Partial Closure & Ticket Reuse ──────────────────────────────────────────


class TestPartialClosure:
    def test_closed_leg_renamed_when_live_leg_appears(
        self, engine: LedgerMergeEngine, normalizer: SnapshotNormalizer, store: SqliteLedgerStore
    ) -> None:
        _import(engine, normalizer, [_closed_leg()])
        report = _apply(engine, normalizer, S0, [_live()])

        assert (report.created, report.renamed) == (1, 1)
        [settled] = store.find_by_ticket(ACCOUNT, "162527_1755194764")
        assert settled.close_time == T1
        assert settled.close_price == Decimal("38.10")
        assert settled.pnl_gross == Decimal("833.50")
        assert settled.volume == Decimal("0.10")
        [live] = store.find_by_ticket(ACCOUNT, "162527")
        assert live.is_open
        assert live.volume == Decimal("0.50")
        assert live.pnl_gross == Decimal("120.40")
        _assert_one_open_per_ticket(store)

    def test_closed_leg_reported_while_live_leg_open(
        self, engine: LedgerMergeEngine, normalizer: SnapshotNormalizer, store: SqliteLedgerStore
    ) -> None:
        _apply(engine, normalizer, S0, [_live()])
        report = _apply(engine, normalizer, S0 + timedelta(minutes=1), [_live()], [_closed_leg()])

        assert report.created == 1
        assert report.closed == 0
        assert store.find_by_ticket(ACCOUNT, renamed_ticket("162527", T1))[0].pnl_gross == Decimal("833.50")
        assert store.find_by_ticket(ACCOUNT, "162527")[0].is_open

    def test_terminal_close_event_closes_open_record(
        self, engine: LedgerMergeEngine, normalizer: SnapshotNormalizer, store: SqliteLedgerStore
    ) -> None:
        _apply(engine, normalizer, S0, [_live()])
        close_at = S0 + timedelta(hours=2)
        final = _closed_leg(close_time=close_at, volume="0.50", pnl="140.00", commission="-2.50")
        report = _apply(engine, normalizer, close_at + timedelta(minutes=1), [], [final])

        assert report.closed == 1
        assert store.list_open(ACCOUNT) == []
        [record] = store.find_by_ticket(ACCOUNT, "162527")
        assert record.close_time == close_at
        assert record.pnl_gross == Decimal("140.00")

    def test_unrelated_ticket_reuse_coexists(
        self, engine: LedgerMergeEngine, normalizer: SnapshotNormalizer, store: SqliteLedgerStore
    ) -> None:
        _import(engine, normalizer, [_closed_leg()])
        reopened = T1 + timedelta(days=3)
        report = _apply(engine, normalizer, reopened + timedelta(hours=1), [_live(open_time=reopened)])

        assert report.renamed == 0
        records = store.find_by_ticket(ACCOUNT, "162527")
        assert len(records) == 2
        assert sorted(r.is_open for r in records) == [False, True]

    def test_ambiguous_match_is_parked(
        self, engine: LedgerMergeEngine, normalizer: SnapshotNormalizer, store: SqliteLedgerStore
    ) -> None:
        base = dict(
            account_id=ACCOUNT,
            ticket_id="162527",
            symbol="XAGUSD",
            side=Side.BUY,
            volume=Decimal("0.10"),
            open_time=T0,
            close_price=Decimal("38.10"),
            source_kind=SourceKind.IMPORTED_CLOSED,
        )
        store.upsert(PositionRecord(close_time=T1, **base))
        store.upsert(PositionRecord(close_time=T1 + timedelta(hours=1), **base))

        report = _apply(engine, normalizer, S0, [_live()])
        again = _apply(engine, normalizer, S0 + timedelta(minutes=1), [_live()])

        assert report.created == 0
        assert len(report.pending) == 1
        assert len(again.pending) == 1
        assert store.list_open(ACCOUNT) == []
        assert len(store.list_pending(ACCOUNT)) == 1


# ── Close-by-Absence ────────────────────────────────────────────────────────


class TestCloseByAbsence:
    def test_stale_after_two_missed_snapshots(
        self, engine: LedgerMergeEngine, normalizer: SnapshotNormalizer, store: SqliteLedgerStore
    ) -> None:
        _apply(engine, normalizer, S0, [_live()])

        first_miss = _apply(engine, normalizer, S0 + timedelta(minutes=1), [])
        [record] = store.list_open(ACCOUNT)
        assert first_miss.stale == 0
        assert record.missed_snapshots == 1
        assert not record.is_stale

        second_miss = _apply(engine, normalizer, S0 + timedelta(minutes=2), [])
        [record] = store.list_open(ACCOUNT)
        assert second_miss.stale == 1
        assert record.is_stale
        assert record.close_time is None

    def test_replayed_empty_snapshot_counts_once(
        self, engine: LedgerMergeEngine, normalizer: SnapshotNormalizer, store: SqliteLedgerStore
    ) -> None:
        _apply(engine, normalizer, S0, [_live()])
        _apply(engine, normalizer, S0 + timedelta(minutes=1), [])
        _apply(engine, normalizer, S0 + timedelta(minutes=1), [])
        [record] = store.list_open(ACCOUNT)
        assert record.missed_snapshots == 1
        assert not record.is_stale

    def test_reappearing_record_clears_stale(
        self, engine: LedgerMergeEngine, normalizer: SnapshotNormalizer, store: SqliteLedgerStore
    ) -> None:
        _apply(engine, normalizer, S0, [_live()])
        _apply(engine, normalizer, S0 + timedelta(minutes=1), [])
        _apply(engine, normalizer, S0 + timedelta(minutes=2), [])
        report = _apply(engine, normalizer, S0 + timedelta(minutes=3), [_live()])

        [record] = store.list_open(ACCOUNT)
        assert report.updated == 1
        assert not record.is_stale
        assert record.missed_snapshots == 0

    def test_older_snapshot_changes_nothing(
        self, engine: LedgerMergeEngine, normalizer: SnapshotNormalizer, store: SqliteLedgerStore
    ) -> None:
        _apply(engine, normalizer, S0, [_live()])
        state = _ledger(store)
        report = _apply(engine, normalizer, S0 - timedelta(hours=1), [_live(pnl="1.00")])
        empty = _apply(engine, normalizer, S0 - timedelta(minutes=30), [])
        assert report.updated == 0
        assert empty.stale == 0
        assert _ledger(store) == state

    def test_records_are_never_deleted(
        self, engine: LedgerMergeEngine, normalizer: SnapshotNormalizer, store: SqliteLedgerStore
    ) -> None:
        _apply(engine, normalizer, S0, [_live(), _live("200001")])
        for minute in range(1, 6):
            _apply(engine, normalizer, S0 + timedelta(minutes=minute), [])
        assert len(store.list_records(ACCOUNT)) == 2


# ── Partial Failure ─────────────────────────────────────────────────────────


class TestPartialFailure:
    def test_malformed_record_skipped_rest_merged(
        self, engine: LedgerMergeEngine, normalizer: SnapshotNormalizer, store: SqliteLedgerStore
    ) -> None:
        report = _apply(engine, normalizer, S0, [_live("1", volume="0"), _live("2"), {"symbol": "X"}])
        assert report.created == 1
        assert len(report.skipped) == 2
        assert [r.ticket_id for r in store.list_open(ACCOUNT)] == ["2"]

    def test_duplicate_ticket_in_snapshot_skipped(
        self, engine: LedgerMergeEngine, normalizer: SnapshotNormalizer, store: SqliteLedgerStore
    ) -> None:
        report = _apply(engine, normalizer, S0, [_live(), _live(pnl="5")])
        assert report.created == 1
        assert [s.reason for s in report.skipped] == ["ticket reported twice in one snapshot"]
        _assert_one_open_per_ticket(store)

    def test_many_passes_keep_one_open_record_per_ticket(
        self, engine: LedgerMergeEngine, normalizer: SnapshotNormalizer, store: SqliteLedgerStore
    ) -> None:
        _import(engine, normalizer, [_closed_leg(), _closed_leg("200001")])
        for minute in range(4):
            as_of = S0 + timedelta(minutes=minute)
            _apply(engine, normalizer, as_of, [_live(), _live("200001")], [_closed_leg()])
            _assert_one_open_per_ticket(store)
        assert len(store.list_open(ACCOUNT)) == 2
