"""
Rule evaluator — phase state machine driven by a versioned rule template.

    PHASE_1 ──target met, no violation──▶ PHASE_2 ──target met, no violation──▶ FUNDED
       │                                     │                                    │
       └──────── daily / overall loss exceeded (terminal) ──▶ FAILED ◀────────────┘

Checks, in order:
1. Daily loss      (terminal)  loss of the trading day vs max_daily_loss
2. Overall loss    (terminal)  fall from the phase start balance (or trailing peak)
3. EA permission   (blocking)  EA trades while expert_advisors is false
4. Consistency     (blocking)  best day / best trade share of the phase profit
5. Trading days    (blocking)  min_trading_days before the phase can pass

Violations are reported, never corrected; trade history is not touched.
FAILED and DEMO are never evaluated. At most one transition per call.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from loguru import logger
from pydantic import BaseModel

from prop_ledger.compliance.aggregator import AccountFigures
from prop_ledger.compliance.rule_template import LossMethod, PhaseRules
from prop_ledger.compliance.template_store import TemplateStore
from prop_ledger.errors import RuleTemplateMissingError
from prop_ledger.ledger.schemas import (
    NEXT_PHASE,
    Account,
    Money,
    Phase,
    PhaseState,
    PhaseTransition,
)

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")

# ── Data Models ─────────────────────────────────────────────────────────────


class ViolationKind(str, Enum):
    DAILY_LOSS = "DAILY_LOSS"
    OVERALL_LOSS = "OVERALL_LOSS"
    DAILY_CONSISTENCY = "DAILY_CONSISTENCY"
    TRADE_CONSISTENCY = "TRADE_CONSISTENCY"
    MIN_TRADING_DAYS = "MIN_TRADING_DAYS"
    EA_NOT_ALLOWED = "EA_NOT_ALLOWED"


class Severity(str, Enum):
    TERMINAL = "TERMINAL"  # account fails
    BLOCKING = "BLOCKING"  # phase cannot advance while present


class Violation(BaseModel):
    """One rule breach: what, the limit, and what was observed."""

    kind: ViolationKind
    severity: Severity
    threshold: Money
    observed: Money
    message: str = ""


class PhaseProgress(BaseModel):
    """Progress toward the current phase target."""

    phase: Phase
    target: Money | None = None
    phase_profit: Money = _ZERO
    progress_pct: Money | None = None
    trading_days: int = 0
    min_trading_days: int = 0
    target_met: bool = False
    can_advance: bool = False
    next_phase: Phase | None = None


class EvaluationResult(BaseModel):
    """Evaluator output for the caller to persist and display."""

    phase_state: PhaseState
    previous_phase: Phase
    violations: list[Violation] = []
    progress: PhaseProgress | None = None
    transition: PhaseTransition | None = None
    diagnostics: list[str] = []
    template_id: str | None = None
    template_version: int | None = None

    @property
    def changed(self) -> bool:
        return self.transition is not None


# ── RuleEvaluator ───────────────────────────────────────────────────────────


class RuleEvaluator:
    """Applies the account's rule template to aggregated figures.

    Usage:
        evaluator = RuleEvaluator(TemplateStore("config/templates"))
        result = evaluator.evaluate(account, figures, as_of)
        if result.transition:
            store.record_transition(result.transition)
    """

    def __init__(self, templates: TemplateStore) -> None:
        self._templates = templates

    def evaluate(self, account: Account, figures: AccountFigures, as_of: datetime) -> EvaluationResult:
        state = account.phase_state(current_balance=figures.current_balance)
        result = EvaluationResult(
            phase_state=state,
            previous_phase=account.current_phase,
            template_id=account.template_id,
            template_version=account.template_version,
        )

        if account.current_phase == Phase.FAILED:
            result.diagnostics.append(
                f"Account failed at {account.failed_at} ({account.failure_reason}); not evaluated"
            )
            return result
        if account.current_phase == Phase.DEMO:
            result.diagnostics.append("DEMO account; rules not evaluated")
            return result

        try:
            template = self._templates.get(account.template_id, account.template_version)
            rules = template.rules_for(account.current_phase)
        except RuleTemplateMissingError as e:
            logger.warning("Evaluator {}: {} — phase state unchanged", account.account_id, e)
            result.diagnostics.append(str(e))
            return result

        result.template_id = template.template_id
        result.template_version = template.version
        result.violations = self.check_rules(rules, figures)
        result.progress = self._progress(account.current_phase, rules, figures, result.violations)

        terminal = [v for v in result.violations if v.severity == Severity.TERMINAL]
        if terminal:
            reason = "; ".join(v.message for v in terminal)
            result.phase_state = state.model_copy(
                update={"current_phase": Phase.FAILED, "failed_at": as_of, "failure_reason": reason}
            )
            result.transition = PhaseTransition(
                account_id=account.account_id,
                from_phase=account.current_phase,
                to_phase=Phase.FAILED,
                at=as_of,
                reason=reason,
            )
            logger.error("Evaluator {}: FAILED — {}", account.account_id, reason)
            return result

        if result.progress.can_advance and result.progress.next_phase is not None:
            next_phase = result.progress.next_phase
            reason = (
                f"target {result.progress.target} reached with profit "
                f"{result.progress.phase_profit} in {figures.trading_days} trading days"
            )
            result.phase_state = state.model_copy(
                update={
                    "current_phase": next_phase,
                    "start_balance": figures.current_balance,
                    "phase_start_equity": figures.equity,
                    "phase_started_at": as_of,
                }
            )
            result.transition = PhaseTransition(
                account_id=account.account_id,
                from_phase=account.current_phase,
                to_phase=next_phase,
                at=as_of,
                reason=reason,
            )
            logger.info(
                "Evaluator {}: {} → {} ({})",
                account.account_id,
                account.current_phase.value,
                next_phase.value,
                reason,
            )
        elif result.violations:
            for v in result.violations:
                logger.warning("Evaluator {}: {} — {}", account.account_id, v.kind.value, v.message)

        return result

    # ── Individual Checks ───────────────────────────────────────────────

    def check_rules(self, rules: PhaseRules, figures: AccountFigures) -> list[Violation]:
        """All violations for the figures, terminal first."""
        violations: list[Violation] = []
        for check in (self.check_daily_loss, self.check_overall_loss, self.check_ea_permission):
            violation = check(rules, figures)
            if violation is not None:
                violations.append(violation)

        target_met = _target_met(rules, figures)
        if target_met:
            violations.extend(self.check_consistency(rules, figures))
            days = self.check_trading_days(rules, figures)
            if days is not None:
                violations.append(days)
        return violations

    def check_daily_loss(self, rules: PhaseRules, figures: AccountFigures) -> Violation | None:
        """Loss of the trading day (realized today + floating) vs the daily limit."""
        limit_rule = rules.max_daily_loss
        if limit_rule is None:
            return None
        limit = limit_rule.limit_for(figures.initial_balance, figures.day_start_balance)
        loss = max(_ZERO, -figures.daily_pnl)
        if loss > limit:
            return Violation(
                kind=ViolationKind.DAILY_LOSS,
                severity=Severity.TERMINAL,
                threshold=limit,
                observed=loss,
                message=f"daily loss {loss} exceeds limit {limit} on {figures.trading_day}",
            )
        return None

    def check_overall_loss(self, rules: PhaseRules, figures: AccountFigures) -> Violation | None:
        """Equity fall from the phase start balance, or from the peak for trailing limits."""
        limit_rule = rules.max_overall_loss
        if limit_rule is None:
            return None
        if limit_rule.method == LossMethod.TRAILING_HIGH_WATER_MARK:
            reference = figures.high_water_mark
        else:
            reference = figures.start_balance
        limit = limit_rule.limit_for(figures.initial_balance, reference)
        loss = max(_ZERO, reference - figures.equity)
        if loss > limit:
            return Violation(
                kind=ViolationKind.OVERALL_LOSS,
                severity=Severity.TERMINAL,
                threshold=limit,
                observed=loss,
                message=f"overall loss {loss} exceeds limit {limit}",
            )
        return None

    def check_ea_permission(self, rules: PhaseRules, figures: AccountFigures) -> Violation | None:
        if rules.permissions.expert_advisors or figures.ea_trade_count == 0:
            return None
        return Violation(
            kind=ViolationKind.EA_NOT_ALLOWED,
            severity=Severity.BLOCKING,
            threshold=_ZERO,
            observed=Decimal(figures.ea_trade_count),
            message=f"{figures.ea_trade_count} EA trades while expert advisors are not allowed",
        )

    def check_consistency(self, rules: PhaseRules, figures: AccountFigures) -> list[Violation]:
        """Best day / best trade must stay within their share of the phase profit."""
        rule = rules.consistency
        if rule is None or not rule.enabled or figures.phase_realized <= 0:
            return []
        violations = []
        if rule.best_day_share is not None:
            limit = figures.phase_realized * rule.best_day_share
            if figures.best_day_profit > limit:
                violations.append(
                    Violation(
                        kind=ViolationKind.DAILY_CONSISTENCY,
                        severity=Severity.BLOCKING,
                        threshold=limit,
                        observed=figures.best_day_profit,
                        message=(
                            f"best day {figures.best_day_profit} above "
                            f"{rule.best_day_share * _HUNDRED:g}% of phase profit"
                        ),
                    )
                )
        if rule.best_trade_share is not None:
            limit = figures.phase_realized * rule.best_trade_share
            if figures.best_trade_profit > limit:
                violations.append(
                    Violation(
                        kind=ViolationKind.TRADE_CONSISTENCY,
                        severity=Severity.BLOCKING,
                        threshold=limit,
                        observed=figures.best_trade_profit,
                        message=(
                            f"best trade {figures.best_trade_profit} above "
                            f"{rule.best_trade_share * _HUNDRED:g}% of phase profit"
                        ),
                    )
                )
        return violations

    def check_trading_days(self, rules: PhaseRules, figures: AccountFigures) -> Violation | None:
        if figures.trading_days >= rules.min_trading_days:
            return None
        return Violation(
            kind=ViolationKind.MIN_TRADING_DAYS,
            severity=Severity.BLOCKING,
            threshold=Decimal(rules.min_trading_days),
            observed=Decimal(figures.trading_days),
            message=f"{figures.trading_days} of {rules.min_trading_days} required trading days",
        )

    # ── Progress ────────────────────────────────────────────────────────

    def _progress(
        self,
        phase: Phase,
        rules: PhaseRules,
        figures: AccountFigures,
        violations: list[Violation],
    ) -> PhaseProgress:
        target = rules.profit_target.resolve(figures.initial_balance) if rules.profit_target else None
        progress_pct = None
        if target is not None and target > 0:
            progress_pct = figures.phase_profit / target * _HUNDRED
        target_met = _target_met(rules, figures)
        next_phase = NEXT_PHASE.get(phase)
        return PhaseProgress(
            phase=phase,
            target=target,
            phase_profit=figures.phase_profit,
            progress_pct=progress_pct,
            trading_days=figures.trading_days,
            min_trading_days=rules.min_trading_days,
            target_met=target_met,
            can_advance=target_met and not violations and next_phase is not None,
            next_phase=next_phase,
        )


def _target_met(rules: PhaseRules, figures: AccountFigures) -> bool:
    """FUNDED (no target) never meets a target."""
    if rules.profit_target is None:
        return False
    return figures.phase_profit >= rules.profit_target.resolve(figures.initial_balance)

