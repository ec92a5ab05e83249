"""
Rule template — versioned, immutable challenge rules keyed by phase.

A template is a YAML document supplied by the firm configuration; the engine
only reads it. Percentages are whole numbers (8 = 8 %). An explicit amount
wins over a percentage, except for limits whose reference moves
(previous_day_balance, trailing_high_water_mark): those always scale the
percentage by the moving reference.

    template_id: ftmo-50k
    version: 1
    phases:
      PHASE_1:
        profit_target: {percentage: 10, amount: 5000}
        max_daily_loss: {percentage: 5, amount: 2500}
        max_overall_loss: {percentage: 10, amount: 5000}
        min_trading_days: 4
      FUNDED:
        profit_target: null
        ...
"""

from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from prop_ledger.errors import RuleTemplateMissingError
from prop_ledger.ledger.schemas import Money, Phase

_HUNDRED = Decimal("100")


class Threshold(BaseModel):
    """Percentage and/or absolute amount."""

    model_config = ConfigDict(frozen=True)

    percentage: Money | None = Field(default=None, ge=0)
    amount: Money | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _one_of(self) -> "Threshold":
        if self.percentage is None and self.amount is None:
            raise ValueError("threshold needs a percentage or an amount")
        return self

    def resolve(self, reference: Decimal) -> Decimal:
        """Absolute figure for a reference balance."""
        if self.amount is not None:
            return self.amount
        return reference * self.percentage / _HUNDRED  # type: ignore[operator]


class LossMethod(str, Enum):
    """What a loss limit is measured against."""

    INITIAL_BALANCE = "initial_balance"  # fixed floor from the account size
    PREVIOUS_DAY_BALANCE = "previous_day_balance"  # daily: balance at the start of the day
    TRAILING_HIGH_WATER_MARK = "trailing_high_water_mark"  # overall: floor trails the peak


class LossLimit(Threshold):
    method: LossMethod = LossMethod.INITIAL_BALANCE

    def limit_for(self, initial_balance: Decimal, reference: Decimal) -> Decimal:
        """Maximum allowed loss.

        Args:
            initial_balance: Account size.
            reference: Day-start balance or high-water mark, used by the
                moving-reference methods.
        """
        if self.method != LossMethod.INITIAL_BALANCE and self.percentage is not None:
            return reference * self.percentage / _HUNDRED
        return self.resolve(initial_balance)


class ConsistencyRule(BaseModel):
    """No single day (or trade) may carry more than a share of the phase profit."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    best_day_share: Money | None = Field(default=Decimal("0.5"), gt=0, le=1)
    best_trade_share: Money | None = Field(default=None, gt=0, le=1)


class Permissions(BaseModel):
    model_config = ConfigDict(frozen=True)

    expert_advisors: bool = True
    news_trading: bool = True


class PhaseRules(BaseModel):
    """Rules for one phase. FUNDED carries no profit target."""

    model_config = ConfigDict(frozen=True)

    profit_target: Threshold | None = None
    max_daily_loss: LossLimit | None = None
    max_overall_loss: LossLimit | None = None
    min_trading_days: int = Field(default=0, ge=0)
    consistency: ConsistencyRule | None = None
    permissions: Permissions = Permissions()


class RuleTemplate(BaseModel):
    """One immutable template version."""

    model_config = ConfigDict(frozen=True)

    template_id: str
    version: int = Field(ge=1)
    name: str = ""
    firm: str = ""
    account_size: Money | None = None
    currency: str = "USD"
    phases: dict[Phase, PhaseRules]

    @property
    def key(self) -> tuple[str, int]:
        return (self.template_id, self.version)

    def rules_for(self, phase: Phase) -> PhaseRules:
        """Rules for a phase.

        Raises:
            RuleTemplateMissingError: The template has no section for this phase.
        """
        rules = self.phases.get(phase)
        if rules is None:
            raise RuleTemplateMissingError(
                f"Template {self.template_id} v{self.version} has no rules for {phase.value}"
            )
        return rules
