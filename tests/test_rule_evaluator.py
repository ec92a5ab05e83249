"""
Tests for prop_ledger/compliance/rule_evaluator.py — phase state machine.

Figures are built directly so every boundary can be pinned to the cent.
"""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from prop_ledger.compliance.aggregator import AccountFigures
from prop_ledger.compliance.rule_evaluator import RuleEvaluator, Severity, ViolationKind
from prop_ledger.compliance.rule_template import RuleTemplate
from prop_ledger.compliance.template_store import TemplateStore
from prop_ledger.ledger.schemas import Account, Phase

AS_OF = datetime(2025, 8, 15, 12, 0, tzinfo=timezone.utc)


def _template(version: int = 1, phase_1_target: str = "2500", **phase_1: object) -> RuleTemplate:
    rules_1 = {
        "profit_target": {"amount": phase_1_target},
        "max_daily_loss": {"amount": "2500"},
        "max_overall_loss": {"amount": "5000"},
        "min_trading_days": 4,
    }
    rules_1.update(phase_1)
    return RuleTemplate.model_validate(
        {
            "template_id": "challenge-50k",
            "version": version,
            "phases": {
                "PHASE_1": rules_1,
                "PHASE_2": {
                    "profit_target": {"percentage": 5},
                    "max_daily_loss": {"percentage": 5, "method": "previous_day_balance"},
                    "max_overall_loss": {"amount": "5000"},
                },
                "FUNDED": {
                    "profit_target": None,
                    "max_daily_loss": {"amount": "2500"},
                    "max_overall_loss": {"percentage": 10, "method": "trailing_high_water_mark"},
                },
            },
        }
    )


def _account(phase: Phase = Phase.PHASE_1, **kwargs: object) -> Account:
    data = {
        "account_id": "2958",
        "initial_balance": Decimal("50000"),
        "start_balance": Decimal("50000"),
        "current_phase": phase,
        "template_id": "challenge-50k",
    }
    data.update(kwargs)
    return Account(**data)


def _figures(profit: str = "0", **kwargs: object) -> AccountFigures:
    """Figures for a flat account with `profit` realized in the current phase."""
    balance = Decimal("50000") + Decimal(profit)
    data = {
        "account_id": "2958",
        "as_of": AS_OF,
        "trading_day": date(2025, 8, 15),
        "initial_balance": Decimal("50000"),
        "start_balance": Decimal("50000"),
        "realized_pnl": Decimal(profit),
        "current_balance": balance,
        "equity": balance,
        "phase_profit": Decimal(profit),
        "phase_realized": Decimal(profit),
        "day_start_balance": Decimal("50000"),
        "high_water_mark": max(balance, Decimal("50000")),
        "trading_days": 5,
    }
    data.update(kwargs)
    return AccountFigures(**data)


# ── Fixtures ────────────────────────────────────────────────────────────────


@pytest.fixture
def templates() -> TemplateStore:
    store = TemplateStore()
    store.register(_template())
    return store


@pytest.fixture
def evaluator(templates: TemplateStore) -> RuleEvaluator:
    return RuleEvaluator(templates)


# ── Phase Advancement ───────────────────────────────────────────────────────


class TestAdvancement:
    def test_target_reached_exactly_advances(self, evaluator: RuleEvaluator) -> None:
        result = evaluator.evaluate(_account(), _figures("2500.00"), AS_OF)
        assert result.violations == []
        assert result.phase_state.current_phase == Phase.PHASE_2
        assert result.phase_state.start_balance == Decimal("52500.00")
        assert result.phase_state.phase_started_at == AS_OF
        assert result.transition.from_phase == Phase.PHASE_1
        assert result.transition.to_phase == Phase.PHASE_2
        assert result.changed

    def test_advance_on_floating_profit_sets_equity_baseline(self, evaluator: RuleEvaluator) -> None:
        figures = _figures(
            "0",
            floating_pnl=Decimal("2500.00"),
            equity=Decimal("52500.00"),
            phase_profit=Decimal("2500.00"),
        )
        result = evaluator.evaluate(_account(), figures, AS_OF)
        assert result.phase_state.current_phase == Phase.PHASE_2
        assert result.phase_state.start_balance == Decimal("50000")
        assert result.phase_state.phase_start_equity == Decimal("52500.00")

    def test_one_cent_short_does_not_advance(self, evaluator: RuleEvaluator) -> None:
        result = evaluator.evaluate(_account(), _figures("2499.99"), AS_OF)
        assert result.phase_state.current_phase == Phase.PHASE_1
        assert result.transition is None
        assert result.progress.target == Decimal("2500")
        assert result.progress.target_met is False
        assert result.progress.progress_pct == Decimal("2499.99") / Decimal("2500") * 100

    def test_single_transition_per_call(self, evaluator: RuleEvaluator) -> None:
        """PHASE_2's 5 % target is also met, but only one step is taken."""
        result = evaluator.evaluate(_account(), _figures("6000"), AS_OF)
        assert result.phase_state.current_phase == Phase.PHASE_2

    def test_funded_has_no_next_phase(self, evaluator: RuleEvaluator) -> None:
        result = evaluator.evaluate(_account(Phase.FUNDED), _figures("20000"), AS_OF)
        assert result.phase_state.current_phase == Phase.FUNDED
        assert result.progress.target is None
        assert result.transition is None

    def test_min_trading_days_blocks_advancement(self, evaluator: RuleEvaluator) -> None:
        result = evaluator.evaluate(_account(), _figures("3000", trading_days=3), AS_OF)
        assert result.phase_state.current_phase == Phase.PHASE_1
        [violation] = result.violations
        assert violation.kind == ViolationKind.MIN_TRADING_DAYS
        assert violation.severity == Severity.BLOCKING

    def test_trading_days_not_reported_before_target(self, evaluator: RuleEvaluator) -> None:
        result = evaluator.evaluate(_account(), _figures("100", trading_days=1), AS_OF)
        assert result.violations == []


# ── Loss Limits ─────────────────────────────────────────────────────────────


class TestLossLimits:
    def test_daily_loss_at_limit_is_allowed(self, evaluator: RuleEvaluator) -> None:
        result = evaluator.evaluate(_account(), _figures("-2500", daily_pnl=Decimal("-2500")), AS_OF)
        assert result.phase_state.current_phase == Phase.PHASE_1

    def test_daily_loss_beyond_limit_fails(self, evaluator: RuleEvaluator) -> None:
        result = evaluator.evaluate(
            _account(), _figures("-2500.01", daily_pnl=Decimal("-2500.01")), AS_OF
        )
        assert result.phase_state.current_phase == Phase.FAILED
        assert result.phase_state.failed_at == AS_OF
        assert "daily loss" in result.phase_state.failure_reason
        assert result.transition.to_phase == Phase.FAILED
        assert result.violations[0].kind == ViolationKind.DAILY_LOSS
        assert result.violations[0].observed == Decimal("2500.01")

    def test_overall_loss_counts_floating(self, evaluator: RuleEvaluator) -> None:
        figures = _figures("-1000", equity=Decimal("44999.99"))
        result = evaluator.evaluate(_account(), figures, AS_OF)
        assert result.phase_state.current_phase == Phase.FAILED
        [violation] = result.violations
        assert violation.kind == ViolationKind.OVERALL_LOSS
        assert violation.observed == Decimal("5000.01")

    def test_previous_day_balance_scales_daily_limit(self, evaluator: RuleEvaluator) -> None:
        """5 % of a 52000 day-start balance is 2600, not 2500."""
        account = _account(Phase.PHASE_2, start_balance=Decimal("52500"))
        figures = _figures(
            "0",
            current_balance=Decimal("49450"),
            equity=Decimal("49450"),
            start_balance=Decimal("52500"),
            phase_profit=Decimal("-3050"),
            day_start_balance=Decimal("52000"),
            daily_pnl=Decimal("-2550"),
        )
        result = evaluator.evaluate(account, figures, AS_OF)
        assert result.phase_state.current_phase == Phase.PHASE_2
        assert result.violations == []

    def test_trailing_overall_loss_follows_peak(self, evaluator: RuleEvaluator) -> None:
        """10 % of a 55000 peak is 5500; equity 49400 is 5600 below it."""
        figures = _figures("-600", equity=Decimal("49400"), high_water_mark=Decimal("55000"))
        result = evaluator.evaluate(_account(Phase.FUNDED), figures, AS_OF)
        assert result.phase_state.current_phase == Phase.FAILED
        assert result.violations[0].threshold == Decimal("5500")

    def test_loss_takes_precedence_over_target(self, evaluator: RuleEvaluator) -> None:
        figures = _figures("3000", daily_pnl=Decimal("-2600"))
        result = evaluator.evaluate(_account(), figures, AS_OF)
        assert result.phase_state.current_phase == Phase.FAILED


# ── Blocking Rules ──────────────────────────────────────────────────────────


class TestBlockingRules:
    def test_ea_trades_block_when_not_allowed(self) -> None:
        templates = TemplateStore()
        templates.register(_template(permissions={"expert_advisors": False}))
        result = RuleEvaluator(templates).evaluate(
            _account(), _figures("3000", ea_trade_count=2), AS_OF
        )
        assert result.phase_state.current_phase == Phase.PHASE_1
        [violation] = result.violations
        assert violation.kind == ViolationKind.EA_NOT_ALLOWED
        assert violation.severity == Severity.BLOCKING

    def test_best_day_consistency(self) -> None:
        templates = TemplateStore()
        templates.register(_template(consistency={"best_day_share": "0.5"}))
        evaluator = RuleEvaluator(templates)

        lumpy = evaluator.evaluate(_account(), _figures("4000", best_day_profit=Decimal("2500")), AS_OF)
        assert [v.kind for v in lumpy.violations] == [ViolationKind.DAILY_CONSISTENCY]
        assert lumpy.phase_state.current_phase == Phase.PHASE_1

        even = evaluator.evaluate(_account(), _figures("4000", best_day_profit=Decimal("2000")), AS_OF)
        assert even.violations == []
        assert even.phase_state.current_phase == Phase.PHASE_2

    def test_best_trade_consistency(self) -> None:
        templates = TemplateStore()
        templates.register(
            _template(consistency={"best_day_share": None, "best_trade_share": "0.4"})
        )
        result = RuleEvaluator(templates).evaluate(
            _account(), _figures("4000", best_trade_profit=Decimal("1600.01")), AS_OF
        )
        [violation] = result.violations
        assert violation.kind == ViolationKind.TRADE_CONSISTENCY
        assert violation.threshold == Decimal("1600.0")


# ── Terminal & Unevaluated States ───────────────────────────────────────────


class TestUnevaluated:
    def test_failed_account_stays_failed(self, evaluator: RuleEvaluator) -> None:
        failed_at = datetime(2025, 8, 10, tzinfo=timezone.utc)
        account = _account(Phase.FAILED, failed_at=failed_at, failure_reason="daily loss")
        result = evaluator.evaluate(account, _figures("9000"), AS_OF)
        assert result.phase_state.current_phase == Phase.FAILED
        assert result.phase_state.failed_at == failed_at
        assert result.transition is None
        assert result.diagnostics

    def test_demo_is_not_evaluated(self, evaluator: RuleEvaluator) -> None:
        result = evaluator.evaluate(_account(Phase.DEMO), _figures("-9000"), AS_OF)
        assert result.phase_state.current_phase == Phase.DEMO
        assert result.violations == []

    def test_missing_template_leaves_phase_unchanged(self, evaluator: RuleEvaluator) -> None:
        account = _account(template_id="unknown-firm")
        result = evaluator.evaluate(account, _figures("-9000", daily_pnl=Decimal("-9000")), AS_OF)
        assert result.phase_state.current_phase == Phase.PHASE_1
        assert result.transition is None
        assert "unknown-firm" in result.diagnostics[0]

    def test_unbound_template(self, evaluator: RuleEvaluator) -> None:
        result = evaluator.evaluate(_account(template_id=None), _figures("3000"), AS_OF)
        assert result.phase_state.current_phase == Phase.PHASE_1
        assert "No rule template" in result.diagnostics[0]

    def test_phase_without_rules(self) -> None:
        templates = TemplateStore()
        templates.register(
            RuleTemplate.model_validate(
                {"template_id": "challenge-50k", "version": 1, "phases": {"PHASE_1": {}}}
            )
        )
        result = RuleEvaluator(templates).evaluate(_account(Phase.PHASE_2), _figures("3000"), AS_OF)
        assert result.phase_state.current_phase == Phase.PHASE_2
        assert "PHASE_2" in result.diagnostics[0]


# ── Template Versions ───────────────────────────────────────────────────────


class TestTemplateVersions:
    def test_pinned_version_is_used(self, templates: TemplateStore) -> None:
        templates.register(_template(version=2, phase_1_target="4000"))
        evaluator = RuleEvaluator(templates)

        pinned = evaluator.evaluate(_account(template_version=1), _figures("3000"), AS_OF)
        assert pinned.phase_state.current_phase == Phase.PHASE_2
        assert pinned.template_version == 1

        latest = evaluator.evaluate(_account(), _figures("3000"), AS_OF)
        assert latest.phase_state.current_phase == Phase.PHASE_1
        assert latest.template_version == 2
