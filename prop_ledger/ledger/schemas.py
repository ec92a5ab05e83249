"""
Ledger schemas — position records, accounts and the snapshots that feed them.

PositionRecord is one row per distinct executed position leg. A record is
created when first observed (live snapshot or imported closed batch),
refreshed only while open, and frozen once closed:

    open (LIVE_OPEN) ──refresh──▶ open ──close event──▶ closed (immutable)
                          └─absent N snapshots─▶ open + stale

Usage:
    record = PositionRecord(account_id="2958", ticket_id="162527", symbol="XAGUSD",
                            side=Side.BUY, volume=Decimal("0.50"), open_time=t0,
                            source_kind=SourceKind.LIVE_OPEN)
    record.net_pnl  # pnl_gross + swap + commission
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator

# ── Enums ───────────────────────────────────────────────────────────────────


class Phase(str, Enum):
    """Challenge lifecycle stage."""

    PHASE_1 = "PHASE_1"
    PHASE_2 = "PHASE_2"
    FUNDED = "FUNDED"
    FAILED = "FAILED"
    DEMO = "DEMO"


# Phases the rule evaluator drives; FAILED is terminal, DEMO is never evaluated
NEXT_PHASE: dict[Phase, Phase | None] = {
    Phase.PHASE_1: Phase.PHASE_2,
    Phase.PHASE_2: Phase.FUNDED,
    Phase.FUNDED: None,
}


class Side(str, Enum):
    BUY = "buy"
    SELL = "sell"


class SourceKind(str, Enum):
    """Where a record was first observed."""

    LIVE_OPEN = "LIVE_OPEN"
    IMPORTED_CLOSED = "IMPORTED_CLOSED"


# ── Field Types ─────────────────────────────────────────────────────────────


def _to_decimal(value: Any) -> Any:
    """Route floats through str() so 0.1 stays Decimal('0.1')."""
    if isinstance(value, float):
        return Decimal(str(value))
    return value


Money = Annotated[Decimal, BeforeValidator(_to_decimal)]


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def renamed_ticket(ticket_id: str, close_time: datetime) -> str:
    """Derived identity for a settled leg: '<ticket>_<close epoch seconds>'."""
    return f"{ticket_id}_{int(close_time.timestamp())}"


# ── PositionRecord ──────────────────────────────────────────────────────────


class PositionRecord(BaseModel):
    """Canonical representation of a single position leg in the ledger."""

    id: int | None = Field(default=None, description="Storage row id (None until persisted)")
    account_id: str
    ticket_id: str
    symbol: str
    side: Side
    volume: Money = Field(gt=0)
    open_time: datetime
    close_time: datetime | None = None
    open_price: Money = Decimal("0")
    close_price: Money | None = None

    # Independent P&L components; net = sum of all three
    pnl_gross: Money = Decimal("0")
    swap: Money = Decimal("0")
    commission: Money = Decimal("0")

    # Provenance, not used in calculations
    comment: str = ""
    magic: int | None = None
    deal_reason: str | None = None

    trade_phase: Phase | None = None
    source_kind: SourceKind = SourceKind.LIVE_OPEN

    # Reconciliation bookkeeping
    is_stale: bool = False
    missed_snapshots: int = 0
    last_seen_at: datetime | None = None
    last_missed_at: datetime | None = None

    @field_validator("open_time", "close_time", "last_seen_at", "last_missed_at")
    @classmethod
    def _normalize_tz(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    @property
    def is_open(self) -> bool:
        return self.close_time is None

    @property
    def net_pnl(self) -> Decimal:
        return self.pnl_gross + self.swap + self.commission

    def floating_fields(self) -> tuple[Any, ...]:
        """Fields a live snapshot may refresh while the record is open."""
        return (
            self.volume,
            self.open_price,
            self.pnl_gross,
            self.swap,
            self.commission,
            self.comment,
        )

    def settlement_fields(self) -> tuple[Any, ...]:
        """Fields frozen once the record is closed."""
        return (
            self.pnl_gross,
            self.swap,
            self.commission,
            self.close_price,
            self.close_time,
        )


# ── Snapshot Input ──────────────────────────────────────────────────────────


class PositionDescriptor(BaseModel):
    """Externally supplied position description, loosely typed.

    Accepts the EA's snake_case keys and the camelCase keys of the snapshot
    contract. Required-field checks happen in the normalizer so that a bad
    descriptor is reported with a precise reason instead of a pydantic dump.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    ticket_id: str | int | None = Field(default=None, alias="ticketId")
    symbol: str | None = None
    side: str | int | None = None
    volume: str | int | float | Decimal | None = None
    open_price: str | int | float | Decimal | None = Field(default=None, alias="openPrice")
    close_price: str | int | float | Decimal | None = Field(default=None, alias="closePrice")
    open_time: str | int | float | datetime | None = Field(default=None, alias="openTime")
    close_time: str | int | float | datetime | None = Field(default=None, alias="closeTime")
    pnl: str | int | float | Decimal | None = None
    swap: str | int | float | Decimal | None = None
    commission: str | int | float | Decimal | None = None
    comment: str | None = None
    magic: int | str | None = None
    deal_reason: str | None = Field(default=None, alias="dealReason")
    phase: str | None = None


class Snapshot(BaseModel):
    """One full-state report from the EA for a single account."""

    model_config = ConfigDict(populate_by_name=True)

    account_id: str = Field(alias="accountId")
    as_of: datetime = Field(alias="asOf")
    open_positions: list[dict[str, Any]] = Field(default_factory=list, alias="openPositions")
    closed_positions: list[dict[str, Any]] | None = Field(default=None, alias="closedPositions")

    @field_validator("account_id", mode="before")
    @classmethod
    def _account_to_str(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value

    @field_validator("as_of")
    @classmethod
    def _as_of_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)  # type: ignore[return-value]


# ── Account & Phase State ───────────────────────────────────────────────────


class Account(BaseModel):
    """Challenge account owning a set of position records and one phase state."""

    account_id: str
    initial_balance: Money
    start_balance: Money
    # Equity when the phase began; None means no floating P&L was carried in
    phase_start_equity: Money | None = None
    current_phase: Phase = Phase.PHASE_1
    phase_started_at: datetime | None = None
    template_id: str | None = None
    template_version: int | None = None
    timezone: str = "UTC"
    failed_at: datetime | None = None
    failure_reason: str = ""
    last_snapshot_at: datetime | None = None

    @field_validator("phase_started_at", "failed_at", "last_snapshot_at")
    @classmethod
    def _normalize_tz(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    @property
    def phase_baseline(self) -> Decimal:
        """Reference the current phase profit is measured from."""
        return self.phase_start_equity if self.phase_start_equity is not None else self.start_balance

    def phase_state(self, current_balance: Decimal | None = None) -> "PhaseState":
        """Current phase state view; current_balance is derived by the aggregator."""
        return PhaseState(
            account_id=self.account_id,
            current_phase=self.current_phase,
            initial_balance=self.initial_balance,
            start_balance=self.start_balance,
            phase_start_equity=self.phase_start_equity,
            current_balance=current_balance,
            phase_started_at=self.phase_started_at,
            failed_at=self.failed_at,
            failure_reason=self.failure_reason,
        )

    def with_phase_state(self, state: "PhaseState") -> "Account":
        return self.model_copy(
            update={
                "current_phase": state.current_phase,
                "start_balance": state.start_balance,
                "phase_start_equity": state.phase_start_equity,
                "phase_started_at": state.phase_started_at,
                "failed_at": state.failed_at,
                "failure_reason": state.failure_reason,
            }
        )


class PhaseState(BaseModel):
    """Active challenge phase for an account, as produced by the rule evaluator."""

    account_id: str
    current_phase: Phase
    initial_balance: Money
    start_balance: Money
    phase_start_equity: Money | None = None
    current_balance: Money | None = None
    phase_started_at: datetime | None = None
    failed_at: datetime | None = None
    failure_reason: str = ""


class PhaseTransition(BaseModel):
    """Audit row for every phase change."""

    account_id: str
    from_phase: Phase
    to_phase: Phase
    at: datetime
    reason: str = ""
