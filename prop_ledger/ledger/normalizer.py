"""
Snapshot normalizer — turns EA position descriptors into PositionRecords.

Pure transformation: no merging, no persistence. Each descriptor is
normalized independently; a malformed one raises ValidationError for the
caller to skip and report without touching the rest of the batch.

Usage:
    normalizer = SnapshotNormalizer(naive_timestamp_tz="UTC")
    batch = normalizer.normalize_snapshot(snapshot, default_phase=Phase.PHASE_1)
    batch.records   # LIVE_OPEN first, then IMPORTED_CLOSED
    batch.rejected  # [SkippedRecord(record=..., reason=...)]
"""

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable
from zoneinfo import ZoneInfo

from loguru import logger
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from prop_ledger.errors import ValidationError
from prop_ledger.ledger.schemas import (
    Phase,
    PositionDescriptor,
    PositionRecord,
    Side,
    Snapshot,
    SourceKind,
)

# EA payloads use several spellings for the same field
_KEY_ALIASES: dict[str, tuple[str, ...]] = {
    "ticket_id": ("ticket_id", "ticketId", "ticket", "position_id", "positionId"),
    "side": ("side", "type"),
    "open_time": ("open_time", "openTime", "time"),
    "open_price": ("open_price", "openPrice", "price"),
    "pnl": ("pnl", "pnl_gross", "pnlGross", "profit"),
    "deal_reason": ("deal_reason", "dealReason"),
}

_SIDE_VALUES = {
    "buy": Side.BUY,
    "long": Side.BUY,
    "0": Side.BUY,
    "sell": Side.SELL,
    "short": Side.SELL,
    "1": Side.SELL,
}


class SkippedRecord(BaseModel):
    """A descriptor that was not merged, with the reason."""

    record: dict[str, Any]
    reason: str


class NormalizedBatch(BaseModel):
    """Output of a normalization run."""

    records: list[PositionRecord] = []
    rejected: list[SkippedRecord] = []

    @property
    def live(self) -> list[PositionRecord]:
        return [r for r in self.records if r.source_kind == SourceKind.LIVE_OPEN]

    @property
    def closed(self) -> list[PositionRecord]:
        return [r for r in self.records if r.source_kind == SourceKind.IMPORTED_CLOSED]


class SnapshotNormalizer:
    """Converts raw position descriptors into comparable ledger records."""

    def __init__(self, naive_timestamp_tz: str = "UTC") -> None:
        self._naive_tz = ZoneInfo(naive_timestamp_tz)

    # ── Public API ──────────────────────────────────────────────────────

    def normalize_snapshot(
        self, snapshot: Snapshot, default_phase: Phase | None = None
    ) -> NormalizedBatch:
        """Normalize both halves of a snapshot."""
        batch = self.normalize_many(
            snapshot.account_id,
            snapshot.open_positions,
            SourceKind.LIVE_OPEN,
            default_phase=default_phase,
        )
        if snapshot.closed_positions:
            closed = self.normalize_many(
                snapshot.account_id,
                snapshot.closed_positions,
                SourceKind.IMPORTED_CLOSED,
                default_phase=default_phase,
            )
            batch.records.extend(closed.records)
            batch.rejected.extend(closed.rejected)
        return batch

    def normalize_many(
        self,
        account_id: str,
        descriptors: Iterable[dict[str, Any]],
        source_kind: SourceKind,
        default_phase: Phase | None = None,
    ) -> NormalizedBatch:
        """Normalize a batch, collecting rejections instead of raising."""
        batch = NormalizedBatch()
        for raw in descriptors:
            try:
                batch.records.append(self.normalize(account_id, raw, source_kind, default_phase))
            except ValidationError as e:
                logger.warning("Normalizer: rejected descriptor {} — {}", _ticket_hint(raw), e.reason)
                batch.rejected.append(SkippedRecord(record=_jsonable(raw), reason=e.reason))
        return batch

    def normalize(
        self,
        account_id: str,
        raw: dict[str, Any],
        source_kind: SourceKind,
        default_phase: Phase | None = None,
    ) -> PositionRecord:
        """Normalize a single descriptor.

        Raises:
            ValidationError: Missing ticket/symbol/volume, non-positive volume,
                unparseable numbers or timestamps, or close fields that do not
                fit the source kind.
        """
        if not isinstance(raw, dict):
            raise ValidationError("descriptor is not an object", {"value": repr(raw)})

        try:
            desc = PositionDescriptor.model_validate(_canonical_keys(raw))
        except PydanticValidationError as e:
            raise ValidationError(f"malformed descriptor: {e.errors()[0]['msg']}", raw) from e

        ticket_id = _clean_str(desc.ticket_id)
        if not ticket_id:
            raise ValidationError("missing ticketId", raw)
        symbol = _clean_str(desc.symbol)
        if not symbol:
            raise ValidationError("missing symbol", raw)
        if desc.volume is None or _clean_str(desc.volume) == "":
            raise ValidationError("missing volume", raw)
        volume = _decimal(desc.volume, "volume", raw)
        if volume <= 0:
            raise ValidationError(f"non-positive volume {volume}", raw)

        side = _SIDE_VALUES.get(_clean_str(desc.side).lower() or "buy")
        if side is None:
            raise ValidationError(f"unknown side {desc.side!r}", raw)

        open_time = self._parse_time(desc.open_time, "openTime", raw)
        close_time = self._parse_time(desc.close_time, "closeTime", raw)
        # EA exports send closePrice=0 for positions that never closed
        close_price: Decimal | None = _decimal(desc.close_price, "closePrice", raw)
        if close_price == 0:
            close_price = None

        if source_kind == SourceKind.LIVE_OPEN:
            if open_time is None:
                raise ValidationError("missing openTime", raw)
            if close_time is not None:
                raise ValidationError("open position carries a closeTime", raw)
            close_price = None
        else:
            if close_time is None:
                raise ValidationError("closed trade missing closeTime", raw)
            if close_price is None:
                raise ValidationError("closed trade missing closePrice", raw)
            if open_time is None:
                open_time = close_time
            if close_time < open_time:
                raise ValidationError("closeTime precedes openTime", raw)

        return PositionRecord(
            account_id=account_id,
            ticket_id=ticket_id,
            symbol=symbol,
            side=side,
            volume=volume,
            open_time=open_time,
            close_time=close_time,
            open_price=_decimal(desc.open_price, "openPrice", raw),
            close_price=close_price,
            pnl_gross=_decimal(desc.pnl, "pnl", raw),
            swap=_decimal(desc.swap, "swap", raw),
            commission=_decimal(desc.commission, "commission", raw),
            comment=_clean_str(desc.comment),
            magic=_magic(desc.magic),
            deal_reason=_clean_str(desc.deal_reason) or None,
            trade_phase=_map_phase(desc.phase) or default_phase,
            source_kind=source_kind,
        )

    # ── Private ─────────────────────────────────────────────────────────

    def _parse_time(self, value: Any, name: str, raw: dict[str, Any]) -> datetime | None:
        """Parse ISO-8601, MT5 'YYYY.MM.DD HH:MM:SS' or epoch seconds into UTC."""
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        if isinstance(value, datetime):
            parsed = value
        elif isinstance(value, (int, float)):
            try:
                parsed = datetime.fromtimestamp(value, tz=timezone.utc)
            except (OverflowError, OSError, ValueError) as e:
                raise ValidationError(f"unparseable {name} {value!r}", raw) from e
        else:
            text = value.strip()
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            if len(text) >= 10 and text[4] == "." and text[7] == ".":
                text = text[:10].replace(".", "-") + text[10:]
            try:
                parsed = datetime.fromisoformat(text)
            except ValueError as e:
                raise ValidationError(f"unparseable {name} {value!r}", raw) from e
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=self._naive_tz)
        try:
            return parsed.astimezone(timezone.utc)
        except OverflowError as e:
            raise ValidationError(f"unparseable {name} {value!r}", raw) from e


# ── Helper Functions ────────────────────────────────────────────────────────


def _canonical_keys(raw: dict[str, Any]) -> dict[str, Any]:
    """Fold EA key spellings onto the descriptor's field names."""
    data = dict(raw)
    for canonical, aliases in _KEY_ALIASES.items():
        if data.get(canonical) not in (None, ""):
            continue
        for alias in aliases:
            if data.get(alias) not in (None, ""):
                data[canonical] = data[alias]
                break
    return data


def _clean_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _decimal(value: Any, name: str, raw: dict[str, Any]) -> Decimal:
    if value is None or _clean_str(value) == "":
        return Decimal("0")
    try:
        result = Decimal(str(value).replace(" ", ""))
    except InvalidOperation as e:
        raise ValidationError(f"non-numeric {name} {value!r}", raw) from e
    if not result.is_finite():
        raise ValidationError(f"non-finite {name} {value!r}", raw)
    return result


def _magic(value: Any) -> int | None:
    text = _clean_str(value)
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        return None


def _map_phase(value: Any) -> Phase | None:
    """Map an EA phase label to a Phase, None for unknown labels."""
    text = _clean_str(value).upper()
    if text == "VERIFICATION":
        return Phase.PHASE_2
    try:
        return Phase(text)
    except ValueError:
        return None


def _ticket_hint(raw: Any) -> str:
    if isinstance(raw, dict):
        for key in _KEY_ALIASES["ticket_id"]:
            if raw.get(key) not in (None, ""):
                return str(raw[key])
    return "?"


def _jsonable(raw: Any) -> dict[str, Any]:
    if not isinstance(raw, dict):
        return {"value": repr(raw)}
    return {str(k): (v if isinstance(v, (str, int, float, bool, type(None))) else str(v))
            for k, v in raw.items()}
