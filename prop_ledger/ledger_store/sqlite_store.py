"""
SQLite-backed ledger store for position records and account phase state.

Implements LedgerRepository. Uses WAL journal mode for concurrent read
access during writes. Both ledger invariants are enforced here as well as
in the engine: a partial unique index allows one open record per
(account, ticket), and closed records refuse settlement changes.

Monetary values are stored as TEXT so Decimal values round-trip exactly.
All methods are synchronous — async callers use asyncio.to_thread().

Usage:
    store = SqliteLedgerStore("data/ledger.db")
    with store.transaction():
        store.upsert(record)
"""

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterator

from loguru import logger

from prop_ledger.errors import ImmutableRecordError, StorageError
from prop_ledger.ledger.schemas import Account, Phase, PhaseTransition, PositionRecord
from prop_ledger.ledger_store.repository import LedgerRepository

# ── SQL Statements ──────────────────────────────────────────────────────────

CREATE_POSITIONS_TABLE = """
CREATE TABLE IF NOT EXISTS positions (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id          TEXT NOT NULL,
    ticket_id           TEXT NOT NULL,
    symbol              TEXT NOT NULL,
    side                TEXT NOT NULL,
    volume              TEXT NOT NULL,
    open_time           TEXT NOT NULL,
    close_time          TEXT,
    open_price          TEXT NOT NULL DEFAULT '0',
    close_price         TEXT,

    -- P&L components (Decimal as TEXT)
    pnl_gross           TEXT NOT NULL DEFAULT '0',
    swap                TEXT NOT NULL DEFAULT '0',
    commission          TEXT NOT NULL DEFAULT '0',

    -- Provenance
    comment             TEXT DEFAULT '',
    magic               INTEGER,
    deal_reason         TEXT,
    trade_phase         TEXT,
    source_kind         TEXT NOT NULL,

    -- Reconciliation bookkeeping
    is_stale            INTEGER NOT NULL DEFAULT 0,
    missed_snapshots    INTEGER NOT NULL DEFAULT 0,
    last_seen_at        TEXT,
    last_missed_at      TEXT,

    created_at          TEXT NOT NULL,
    updated_at          TEXT NOT NULL
)
"""

CREATE_ACCOUNTS_TABLE = """
CREATE TABLE IF NOT EXISTS accounts (
    account_id          TEXT PRIMARY KEY,
    initial_balance     TEXT NOT NULL,
    start_balance       TEXT NOT NULL,
    phase_start_equity  TEXT,
    current_phase       TEXT NOT NULL,
    phase_started_at    TEXT,
    template_id         TEXT,
    template_version    INTEGER,
    timezone            TEXT NOT NULL DEFAULT 'UTC',
    failed_at           TEXT,
    failure_reason      TEXT DEFAULT '',
    last_snapshot_at    TEXT,
    updated_at          TEXT NOT NULL
)
"""

CREATE_TRANSITIONS_TABLE = """
CREATE TABLE IF NOT EXISTS phase_transitions (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id          TEXT NOT NULL REFERENCES accounts(account_id),
    from_phase          TEXT NOT NULL,
    to_phase            TEXT NOT NULL,
    at                  TEXT NOT NULL,
    reason              TEXT DEFAULT ''
)
"""

CREATE_PENDING_TABLE = """
CREATE TABLE IF NOT EXISTS pending_conflicts (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id          TEXT NOT NULL,
    ticket_id           TEXT NOT NULL,
    source_kind         TEXT NOT NULL,
    open_time           TEXT NOT NULL,
    payload             TEXT NOT NULL,
    reason              TEXT DEFAULT '',
    created_at          TEXT NOT NULL,
    UNIQUE (account_id, ticket_id, source_kind, open_time)
)
"""

CREATE_INDEXES = """
CREATE UNIQUE INDEX IF NOT EXISTS ux_positions_open_ticket
    ON positions(account_id, ticket_id) WHERE close_time IS NULL;
CREATE INDEX IF NOT EXISTS idx_positions_account_ticket ON positions(account_id, ticket_id);
CREATE INDEX IF NOT EXISTS idx_positions_account_open ON positions(account_id, close_time);
CREATE INDEX IF NOT EXISTS idx_transitions_account ON phase_transitions(account_id);
"""

_POSITION_COLUMNS = (
    "account_id",
    "ticket_id",
    "symbol",
    "side",
    "volume",
    "open_time",
    "close_time",
    "open_price",
    "close_price",
    "pnl_gross",
    "swap",
    "commission",
    "comment",
    "magic",
    "deal_reason",
    "trade_phase",
    "source_kind",
    "is_stale",
    "missed_snapshots",
    "last_seen_at",
    "last_missed_at",
)

INSERT_POSITION_SQL = f"""
INSERT INTO positions ({", ".join(_POSITION_COLUMNS)}, created_at, updated_at)
VALUES ({", ".join(":" + c for c in _POSITION_COLUMNS)}, :now, :now)
"""

UPDATE_OPEN_POSITION_SQL = f"""
UPDATE positions
   SET {", ".join(f"{c} = :{c}" for c in _POSITION_COLUMNS)}, updated_at = :now
 WHERE id = :id AND close_time IS NULL
"""

UPSERT_ACCOUNT_SQL = """
INSERT INTO accounts (
    account_id, initial_balance, start_balance, phase_start_equity, current_phase, phase_started_at,
    template_id, template_version, timezone, failed_at, failure_reason,
    last_snapshot_at, updated_at
) VALUES (
    :account_id, :initial_balance, :start_balance, :phase_start_equity, :current_phase, :phase_started_at,
    :template_id, :template_version, :timezone, :failed_at, :failure_reason,
    :last_snapshot_at, :now
)
ON CONFLICT(account_id) DO UPDATE SET
    initial_balance = excluded.initial_balance,
    start_balance = excluded.start_balance,
    phase_start_equity = excluded.phase_start_equity,
    current_phase = excluded.current_phase,
    phase_started_at = excluded.phase_started_at,
    template_id = excluded.template_id,
    template_version = excluded.template_version,
    timezone = excluded.timezone,
    failed_at = excluded.failed_at,
    failure_reason = excluded.failure_reason,
    last_snapshot_at = excluded.last_snapshot_at,
    updated_at = excluded.updated_at
"""


# ── Helper Functions ────────────────────────────────────────────────────────


def _dt_to_str(dt: datetime | None) -> str | None:
    """Convert datetime to ISO 8601 string, or None."""
    if dt is None:
        return None
    return dt.isoformat()


def _str_to_dt(s: str | None) -> datetime | None:
    """Parse ISO 8601 string to datetime, or None."""
    if not s:
        return None
    return datetime.fromisoformat(s)


def _dec_to_str(value: Decimal | None) -> str | None:
    return None if value is None else str(value)


def _now_str() -> str:
    return datetime.now(timezone.utc).isoformat()


def _record_params(record: PositionRecord) -> dict[str, Any]:
    """Flatten a PositionRecord into SQL parameters."""
    return {
        "account_id": record.account_id,
        "ticket_id": record.ticket_id,
        "symbol": record.symbol,
        "side": record.side.value,
        "volume": str(record.volume),
        "open_time": _dt_to_str(record.open_time),
        "close_time": _dt_to_str(record.close_time),
        "open_price": str(record.open_price),
        "close_price": _dec_to_str(record.close_price),
        "pnl_gross": str(record.pnl_gross),
        "swap": str(record.swap),
        "commission": str(record.commission),
        "comment": record.comment,
        "magic": record.magic,
        "deal_reason": record.deal_reason,
        "trade_phase": record.trade_phase.value if record.trade_phase else None,
        "source_kind": record.source_kind.value,
        "is_stale": int(record.is_stale),
        "missed_snapshots": record.missed_snapshots,
        "last_seen_at": _dt_to_str(record.last_seen_at),
        "last_missed_at": _dt_to_str(record.last_missed_at),
    }


def _row_to_record(row: sqlite3.Row) -> PositionRecord:
    """Convert a database row to a PositionRecord model."""
    data = dict(row)
    data.pop("created_at", None)
    data.pop("updated_at", None)
    for dt_field in ("open_time", "close_time", "last_seen_at", "last_missed_at"):
        data[dt_field] = _str_to_dt(data.get(dt_field))
    for dec_field in ("volume", "open_price", "pnl_gross", "swap", "commission"):
        data[dec_field] = Decimal(data[dec_field])
    data["close_price"] = Decimal(data["close_price"]) if data.get("close_price") else None
    data["is_stale"] = bool(data["is_stale"])
    return PositionRecord(**data)


def _row_to_account(row: sqlite3.Row) -> Account:
    """Convert a database row to an Account model."""
    data = dict(row)
    data.pop("updated_at", None)
    for dt_field in ("phase_started_at", "failed_at", "last_snapshot_at"):
        data[dt_field] = _str_to_dt(data.get(dt_field))
    data["initial_balance"] = Decimal(data["initial_balance"])
    data["start_balance"] = Decimal(data["start_balance"])
    equity = data.get("phase_start_equity")
    data["phase_start_equity"] = Decimal(equity) if equity else None
    data["failure_reason"] = data.get("failure_reason") or ""
    return Account(**data)


# ── SqliteLedgerStore ───────────────────────────────────────────────────────


class SqliteLedgerStore(LedgerRepository):
    """SQLite implementation of the ledger repository.

    One connection per process, shared across threads. Every statement and
    every transaction runs under a re-entrant lock, so a pass on one thread
    never interleaves its writes with another thread's transaction.

    Usage:
        store = SqliteLedgerStore("data/ledger.db")
        with store.transaction():
            store.upsert(record)
        store.close()
    """

    def __init__(self, db_path: str = "data/ledger.db") -> None:
        self._db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._tx_depth = 0
        try:
            self._conn = self._create_connection()
            self._ensure_tables()
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open ledger at {db_path}: {e}") from e

    def _create_connection(self) -> sqlite3.Connection:
        """Create an autocommit SQLite connection; transactions are explicit."""
        conn = sqlite3.connect(self._db_path, check_same_thread=False, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA busy_timeout = 5000")
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _ensure_tables(self) -> None:
        """Create tables and indexes if they don't exist."""
        self._conn.executescript(CREATE_POSITIONS_TABLE)
        self._conn.executescript(CREATE_ACCOUNTS_TABLE)
        self._conn.executescript(CREATE_TRANSITIONS_TABLE)
        self._conn.executescript(CREATE_PENDING_TABLE)
        self._conn.executescript(CREATE_INDEXES)
        logger.debug("Ledger store tables ensured at {}", self._db_path)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()
        logger.debug("Ledger store connection closed")

    # ── Transactions ────────────────────────────────────────────────

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Commit on clean exit, roll back on any exception. Nested scopes join the outer one."""
        with self._lock:
            outermost = self._tx_depth == 0
            if outermost:
                self._execute("BEGIN IMMEDIATE")
            self._tx_depth += 1
            try:
                yield
            except BaseException:
                self._tx_depth -= 1
                if outermost:
                    self._rollback()
                raise
            else:
                self._tx_depth -= 1
                if outermost:
                    self._execute("COMMIT")

    def _rollback(self) -> None:
        try:
            self._conn.execute("ROLLBACK")
            logger.warning("Ledger store: transaction rolled back")
        except sqlite3.Error as e:
            logger.error("Ledger store: rollback failed: {}", e)

    def _execute(self, sql: str, params: dict[str, Any] | tuple[Any, ...] = ()) -> sqlite3.Cursor:
        """Run one statement, translating driver errors into StorageError."""
        with self._lock:
            try:
                return self._conn.execute(sql, params)
            except sqlite3.IntegrityError as e:
                raise ImmutableRecordError(f"Ledger invariant rejected write: {e}") from e
            except sqlite3.Error as e:
                raise StorageError(f"Ledger store error: {e}") from e

    # ── Position Records ────────────────────────────────────────────

    def find_by_ticket(self, account_id: str, ticket_id: str) -> list[PositionRecord]:
        rows = self._execute(
            """SELECT * FROM positions
               WHERE account_id = :account_id AND ticket_id = :ticket_id
               ORDER BY open_time ASC, id ASC""",
            {"account_id": account_id, "ticket_id": ticket_id},
        ).fetchall()
        return [_row_to_record(r) for r in rows]

    def get_record(self, record_id: int) -> PositionRecord | None:
        row = self._execute("SELECT * FROM positions WHERE id = :id", {"id": record_id}).fetchone()
        return _row_to_record(row) if row else None

    def upsert(self, record: PositionRecord) -> PositionRecord:
        """Insert a new record or update an open one.

        Raises:
            ImmutableRecordError: The ticket is already open for this account,
                or the target record is closed and the write differs from it.
            StorageError: The record id does not exist.
        """
        params = _record_params(record)
        params["now"] = _now_str()

        with self.transaction():
            if record.id is None:
                cursor = self._execute(INSERT_POSITION_SQL, params)
                stored = record.model_copy(update={"id": cursor.lastrowid})
                logger.debug(
                    "Ledger store: inserted {} {} ({})",
                    stored.ticket_id,
                    "open" if stored.is_open else "closed",
                    stored.account_id,
                )
                return stored

            existing = self.get_record(record.id)
            if existing is None:
                raise StorageError(f"Position row {record.id} does not exist")
            if not existing.is_open:
                if existing.model_dump() == record.model_dump():
                    return existing
                raise ImmutableRecordError(
                    f"Position {existing.ticket_id} (row {existing.id}) is closed and immutable"
                )

            params["id"] = record.id
            self._execute(UPDATE_OPEN_POSITION_SQL, params)
            return record

    def rename(self, account_id: str, record_id: int, new_ticket_id: str) -> bool:
        """Rename a record's ticket. No-op (False) if the target ticket already exists."""
        with self.transaction():
            if self.ticket_exists(account_id, new_ticket_id):
                logger.info(
                    "Ledger store: rename target {} already exists — skipping", new_ticket_id
                )
                return False
            updated = self._execute(
                """UPDATE positions
                   SET ticket_id = :ticket_id, updated_at = :now
                   WHERE id = :id AND account_id = :account_id""",
                {
                    "ticket_id": new_ticket_id,
                    "now": _now_str(),
                    "id": record_id,
                    "account_id": account_id,
                },
            ).rowcount
            if not updated:
                raise StorageError(f"Position row {record_id} not found for account {account_id}")
            return True

    def list_open(self, account_id: str) -> list[PositionRecord]:
        rows = self._execute(
            """SELECT * FROM positions
               WHERE account_id = :account_id AND close_time IS NULL
               ORDER BY open_time ASC, id ASC""",
            {"account_id": account_id},
        ).fetchall()
        return [_row_to_record(r) for r in rows]

    def list_records(self, account_id: str) -> list[PositionRecord]:
        rows = self._execute(
            """SELECT * FROM positions
               WHERE account_id = :account_id
               ORDER BY open_time ASC, id ASC""",
            {"account_id": account_id},
        ).fetchall()
        return [_row_to_record(r) for r in rows]

    def ticket_exists(self, account_id: str, ticket_id: str) -> bool:
        row = self._execute(
            """SELECT 1 FROM positions
               WHERE account_id = :account_id AND ticket_id = :ticket_id
               LIMIT 1""",
            {"account_id": account_id, "ticket_id": ticket_id},
        ).fetchone()
        return row is not None

    # ── Accounts & Phase State ──────────────────────────────────────

    def get_account(self, account_id: str) -> Account | None:
        row = self._execute(
            "SELECT * FROM accounts WHERE account_id = :id", {"id": account_id}
        ).fetchone()
        return _row_to_account(row) if row else None

    def save_account(self, account: Account) -> None:
        self._execute(
            UPSERT_ACCOUNT_SQL,
            {
                "account_id": account.account_id,
                "initial_balance": str(account.initial_balance),
                "start_balance": str(account.start_balance),
                "phase_start_equity": (
                    str(account.phase_start_equity) if account.phase_start_equity is not None else None
                ),
                "current_phase": account.current_phase.value,
                "phase_started_at": _dt_to_str(account.phase_started_at),
                "template_id": account.template_id,
                "template_version": account.template_version,
                "timezone": account.timezone,
                "failed_at": _dt_to_str(account.failed_at),
                "failure_reason": account.failure_reason,
                "last_snapshot_at": _dt_to_str(account.last_snapshot_at),
                "now": _now_str(),
            },
        )

    def record_transition(self, transition: PhaseTransition) -> None:
        self._execute(
            """INSERT INTO phase_transitions (account_id, from_phase, to_phase, at, reason)
               VALUES (:account_id, :from_phase, :to_phase, :at, :reason)""",
            {
                "account_id": transition.account_id,
                "from_phase": transition.from_phase.value,
                "to_phase": transition.to_phase.value,
                "at": _dt_to_str(transition.at),
                "reason": transition.reason,
            },
        )
        logger.info(
            "Ledger store: account {} phase {} → {}",
            transition.account_id,
            transition.from_phase.value,
            transition.to_phase.value,
        )

    def add_pending_conflict(self, record: PositionRecord, reason: str) -> bool:
        cursor = self._execute(
            """INSERT OR IGNORE INTO pending_conflicts (
                   account_id, ticket_id, source_kind, open_time, payload, reason, created_at
               ) VALUES (
                   :account_id, :ticket_id, :source_kind, :open_time, :payload, :reason, :now
               )""",
            {
                "account_id": record.account_id,
                "ticket_id": record.ticket_id,
                "source_kind": record.source_kind.value,
                "open_time": _dt_to_str(record.open_time),
                "payload": json.dumps(record.model_dump(mode="json")),
                "reason": reason,
                "now": _now_str(),
            },
        )
        return cursor.rowcount > 0

    # ── Administrative Operations ───────────────────────────────────

    def delete_ticket(self, account_id: str, ticket_id: str) -> int:
        escaped = ticket_id.replace("\\", "\\\\").replace("_", "\\_").replace("%", "\\%")
        with self.transaction():
            cursor = self._execute(
                """DELETE FROM positions
                   WHERE account_id = :account_id
                     AND (ticket_id = :ticket_id OR ticket_id LIKE :prefix ESCAPE '\\')""",
                {"account_id": account_id, "ticket_id": ticket_id, "prefix": f"{escaped}\\_%"},
            )
        return cursor.rowcount

    def list_transitions(self, account_id: str) -> list[PhaseTransition]:
        rows = self._execute(
            """SELECT * FROM phase_transitions
               WHERE account_id = :account_id ORDER BY id ASC""",
            {"account_id": account_id},
        ).fetchall()
        return [
            PhaseTransition(
                account_id=row["account_id"],
                from_phase=Phase(row["from_phase"]),
                to_phase=Phase(row["to_phase"]),
                at=datetime.fromisoformat(row["at"]),
                reason=row["reason"] or "",
            )
            for row in rows
        ]

    def list_pending(self, account_id: str | None = None) -> list[dict[str, Any]]:
        if account_id is None:
            rows = self._execute("SELECT * FROM pending_conflicts ORDER BY id ASC").fetchall()
        else:
            rows = self._execute(
                "SELECT * FROM pending_conflicts WHERE account_id = :id ORDER BY id ASC",
                {"id": account_id},
            ).fetchall()
        result = []
        for row in rows:
            item = dict(row)
            item["payload"] = json.loads(item["payload"])
            result.append(item)
        return result

    def discard_pending(self, pending_id: int) -> bool:
        cursor = self._execute(
            "DELETE FROM pending_conflicts WHERE id = :id", {"id": pending_id}
        )
        return cursor.rowcount > 0

    def purge_pending(self, older_than: datetime) -> int:
        cursor = self._execute(
            "DELETE FROM pending_conflicts WHERE created_at < :cutoff",
            {"cutoff": _dt_to_str(older_than)},
        )
        return cursor.rowcount
