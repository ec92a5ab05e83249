"""
Aggregator — realized, floating, daily and drawdown figures from ledger state.

Pure calculation over a list of PositionRecords: no I/O, no side effects.
Every sum is Decimal; nothing is rounded here. Rounding belongs to
presentation (summary()).

Trading day = calendar date of asOf in the account's timezone. A closed
record belongs to the day of its close time; an open record's floating P&L
belongs to the day it was last seen.
"""

from collections import defaultdict
from datetime import date, datetime
from decimal import Decimal
from zoneinfo import ZoneInfo

from pydantic import BaseModel

from prop_ledger.ledger.schemas import Account, Money, PositionRecord

_ZERO = Decimal("0")


class AccountFigures(BaseModel):
    """Aggregated account figures at one point in time."""

    account_id: str
    as_of: datetime
    trading_day: date

    initial_balance: Money
    start_balance: Money

    realized_pnl: Money = _ZERO
    floating_pnl: Money = _ZERO
    total_pnl: Money = _ZERO
    current_balance: Money = _ZERO
    equity: Money = _ZERO

    today_realized: Money = _ZERO
    today_floating: Money = _ZERO
    daily_pnl: Money = _ZERO
    day_start_balance: Money = _ZERO

    high_water_mark: Money = _ZERO
    drawdown: Money = _ZERO
    max_drawdown: Money = _ZERO

    # Current-phase figures (records closed since phase_started_at)
    phase_profit: Money = _ZERO
    phase_realized: Money = _ZERO
    trading_days: int = 0
    best_day_profit: Money = _ZERO
    best_trade_profit: Money = _ZERO
    ea_trade_count: int = 0

    open_count: int = 0
    closed_count: int = 0
    stale_count: int = 0

    def summary(self) -> str:
        """Human-readable figures summary."""
        return (
            f"Account {self.account_id} @ {self.trading_day}: "
            f"balance={self.current_balance:.2f} equity={self.equity:.2f} "
            f"daily={self.daily_pnl:+.2f} phase={self.phase_profit:+.2f} "
            f"dd={self.drawdown:.2f} (hwm {self.high_water_mark:.2f}) "
            f"open={self.open_count} closed={self.closed_count}"
        )


class Aggregator:
    """Computes AccountFigures for one account.

    Usage:
        figures = Aggregator().compute(account, store.list_records(account.account_id), as_of)
        print(figures.realized_pnl, figures.daily_pnl)
    """

    def compute(
        self,
        account: Account,
        records: list[PositionRecord],
        as_of: datetime,
    ) -> AccountFigures:
        zone = ZoneInfo(account.timezone)
        today = as_of.astimezone(zone).date()
        phase_start = account.phase_started_at

        closed = sorted(
            (r for r in records if not r.is_open),
            key=lambda r: (r.close_time, r.id or 0),
        )
        open_records = [r for r in records if r.is_open]

        realized = sum((r.net_pnl for r in closed), _ZERO)
        floating = sum((r.net_pnl for r in open_records), _ZERO)
        current_balance = account.initial_balance + realized
        equity = current_balance + floating

        today_realized = _ZERO
        before_today = _ZERO
        for r in closed:
            close_day = r.close_time.astimezone(zone).date()  # type: ignore[union-attr]
            if close_day == today:
                today_realized += r.net_pnl
            elif close_day < today:
                before_today += r.net_pnl
        today_floating = sum(
            (r.net_pnl for r in open_records if (r.last_seen_at or as_of).astimezone(zone).date() == today),
            _ZERO,
        )

        phase_closed = [
            r for r in closed if phase_start is None or r.close_time >= phase_start  # type: ignore[operator]
        ]
        phase_open = [r for r in open_records if phase_start is None or r.open_time >= phase_start]
        phase_realized = sum((r.net_pnl for r in phase_closed), _ZERO)

        hwm, max_dd = _high_water_mark(
            account.start_balance, current_balance - phase_realized, phase_closed
        )

        by_day: dict[date, Decimal] = defaultdict(lambda: _ZERO)
        for r in phase_closed:
            by_day[r.close_time.astimezone(zone).date()] += r.net_pnl  # type: ignore[union-attr]
        trading_days = {r.open_time.astimezone(zone).date() for r in phase_closed + phase_open}

        return AccountFigures(
            account_id=account.account_id,
            as_of=as_of,
            trading_day=today,
            initial_balance=account.initial_balance,
            start_balance=account.start_balance,
            realized_pnl=realized,
            floating_pnl=floating,
            total_pnl=realized + floating,
            current_balance=current_balance,
            equity=equity,
            today_realized=today_realized,
            today_floating=today_floating,
            daily_pnl=today_realized + today_floating,
            day_start_balance=account.initial_balance + before_today,
            high_water_mark=hwm,
            drawdown=max(_ZERO, hwm - current_balance),
            max_drawdown=max_dd,
            phase_profit=equity - account.phase_baseline,
            phase_realized=phase_realized,
            trading_days=len(trading_days),
            best_day_profit=max([_ZERO, *by_day.values()]),
            best_trade_profit=max([_ZERO, *(r.net_pnl for r in phase_closed)]),
            ea_trade_count=sum(1 for r in phase_closed + phase_open if r.magic),
            open_count=len(open_records),
            closed_count=len(closed),
            stale_count=sum(1 for r in open_records if r.is_stale),
        )


def _high_water_mark(
    start_balance: Decimal,
    opening_balance: Decimal,
    phase_closed: list[PositionRecord],
) -> tuple[Decimal, Decimal]:
    """Peak of the realized balance curve since the phase began, and the deepest fall from it."""
    hwm = max(start_balance, opening_balance)
    balance = opening_balance
    max_dd = max(_ZERO, hwm - balance)
    for r in phase_closed:
        balance += r.net_pnl
        hwm = max(hwm, balance)
        max_dd = max(max_dd, hwm - balance)
    return hwm, max_dd
