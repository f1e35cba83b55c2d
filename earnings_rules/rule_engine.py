from decimal import Decimal, ROUND_HALF_EVEN
from pathlib import Path
from typing import Optional, Union

from pydantic import BaseModel, Field, ValidationError

from wallet_ledger.config import get_settings
from wallet_ledger.errors import ConfigurationError, InvalidAmountError, InvalidStateTransitionError
from wallet_ledger.log import get_logger
from wallet_ledger.models import MONEY_PLACES, to_money

logger = get_logger(__name__)

HUNDRED = Decimal("100")


class LevelPlan(BaseModel):
    level: int
    name: str = ""
    upgrade_fee: Decimal = Decimal("0")
    max_balance_cap: Optional[Decimal] = Field(default=None, description="None means unbounded")
    revenue_share_percent: Decimal


class ReferralTier(BaseModel):
    required_referrals: int = Field(gt=0)
    bonus: Decimal = Field(gt=0)


class SpinPrize(BaseModel):
    amount: Decimal
    weight: int = Field(default=1, gt=0)


class SpinSettings(BaseModel):
    min_prize: Decimal = Decimal("0.05")
    max_prize: Decimal = Decimal("0.30")
    daily_cap: Decimal = Decimal("0.30")
    prizes: list[SpinPrize] = Field(default_factory=lambda: [
        SpinPrize(amount=Decimal("0.05"), weight=35),
        SpinPrize(amount=Decimal("0.10"), weight=25),
        SpinPrize(amount=Decimal("0.15"), weight=18),
        SpinPrize(amount=Decimal("0.20"), weight=12),
        SpinPrize(amount=Decimal("0.25"), weight=7),
        SpinPrize(amount=Decimal("0.30"), weight=3),
    ])


class RewardsConfig(BaseModel):
    level_plans: list[LevelPlan] = Field(default_factory=lambda: [
        LevelPlan(level=0, name="Free", upgrade_fee=Decimal("0"), max_balance_cap=Decimal("9.90"), revenue_share_percent=Decimal("10")),
        LevelPlan(level=1, name="Level 1", upgrade_fee=Decimal("50"), max_balance_cap=Decimal("100"), revenue_share_percent=Decimal("35")),
        LevelPlan(level=2, name="Level 2", upgrade_fee=Decimal("100"), max_balance_cap=Decimal("500"), revenue_share_percent=Decimal("55")),
        LevelPlan(level=3, name="Level 3", upgrade_fee=Decimal("150"), max_balance_cap=None, revenue_share_percent=Decimal("78")),
    ])
    referral_tiers: list[ReferralTier] = Field(default_factory=lambda: [
        ReferralTier(required_referrals=5, bonus=Decimal("10")),
        ReferralTier(required_referrals=15, bonus=Decimal("25")),
        ReferralTier(required_referrals=30, bonus=Decimal("50")),
        ReferralTier(required_referrals=50, bonus=Decimal("100")),
        ReferralTier(required_referrals=100, bonus=Decimal("250")),
    ])
    spin: SpinSettings = Field(default_factory=SpinSettings)


def validate_rewards_config(config: RewardsConfig) -> None:
    """Reject tables that would make the engine guess or overpay."""
    levels = [plan.level for plan in config.level_plans]
    if 0 not in levels:
        raise ConfigurationError("Level plan table has no level 0")
    if len(set(levels)) != len(levels):
        raise ConfigurationError("Level plan table has duplicate levels")

    previous = None
    for plan in sorted(config.level_plans, key=lambda p: p.level):
        share = plan.revenue_share_percent
        if share < 0 or share > HUNDRED:
            raise ConfigurationError(f"Revenue share for level {plan.level} outside 0-100: {share}")
        if previous is not None and share < previous:
            raise ConfigurationError(f"Revenue share drops at level {plan.level}")
        previous = share

    thresholds = [tier.required_referrals for tier in config.referral_tiers]
    if len(set(thresholds)) != len(thresholds):
        raise ConfigurationError("Referral tier table has duplicate thresholds")

    spin = config.spin
    if not spin.prizes:
        raise ConfigurationError("Spin prize table is empty")
    for prize in spin.prizes:
        if not spin.min_prize <= prize.amount <= spin.max_prize:
            raise ConfigurationError(f"Spin prize {prize.amount} outside [{spin.min_prize}, {spin.max_prize}]")
        if prize.amount > spin.daily_cap:
            raise ConfigurationError(f"Spin prize {prize.amount} exceeds daily cap {spin.daily_cap}")


def load_rewards_config(path: Union[str, Path, None] = None) -> RewardsConfig:
    """Read a RewardsConfig JSON file, or the built-in tables when no path is set."""
    path = path or get_settings().REWARDS_CONFIG_PATH
    if not path:
        return RewardsConfig()
    try:
        return RewardsConfig.model_validate_json(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValidationError) as e:
        logger.error("Cannot load rewards config from %s: %s", path, e)
        raise ConfigurationError(f"Cannot load rewards config from {path}") from e


class EarningsRuleEngine:
    """Pure entitlement computations over the current rate tables."""

    def __init__(self, config: Optional[RewardsConfig] = None):
        self.update_config(config or RewardsConfig())

    @property
    def config(self) -> RewardsConfig:
        return self._config

    def update_config(self, config: RewardsConfig) -> None:
        try:
            validate_rewards_config(config)
        except ConfigurationError as e:
            logger.error("Rejected rewards config: %s", e)
            raise
        self._config = config

    def _plans(self) -> dict[int, LevelPlan]:
        return {plan.level: plan for plan in self._config.level_plans}

    def _plan(self, level: int) -> LevelPlan:
        plan = self._plans().get(level)
        if plan is None:
            logger.error("No level plan configured for level %s", level)
            raise ConfigurationError(f"No level plan configured for level {level}")
        return plan

    def revenue_share_for(self, level: int) -> Decimal:
        """Percentage of base revenue passed on at ``level``.

        Unknown and negative levels earn the level 0 rate, never a richer one.
        """
        plans = self._plans()
        plan = plans.get(level) if level is not None and level >= 0 else None
        return (plan or plans[0]).revenue_share_percent

    def entitlement_for_ad_event(self, base_revenue, level: int) -> Decimal:
        if isinstance(base_revenue, bool):
            raise InvalidAmountError(f"Base revenue is not numeric: {base_revenue!r}")
        try:
            base = base_revenue if isinstance(base_revenue, Decimal) else Decimal(str(base_revenue))
        except ArithmeticError:
            raise InvalidAmountError(f"Base revenue is not numeric: {base_revenue!r}")
        if not base.is_finite():
            raise InvalidAmountError(f"Base revenue is not numeric: {base_revenue!r}")
        if base < 0:
            raise InvalidAmountError(f"Base revenue must not be negative, got {base}")
        earnings = base * self.revenue_share_for(level) / HUNDRED
        return earnings.quantize(MONEY_PLACES, rounding=ROUND_HALF_EVEN)

    def level_upgrade_cost(self, from_level: int, to_level: int) -> Decimal:
        """Sum of the fees of every level stepped into."""
        if to_level <= from_level:
            raise InvalidStateTransitionError(f"Cannot upgrade from level {from_level} to {to_level}")
        return sum(
            (to_money(self._plan(level).upgrade_fee) for level in range(from_level + 1, to_level + 1)),
            Decimal("0"),
        )

    def balance_cap_for(self, level: int) -> Optional[Decimal]:
        cap = self._plan(level).max_balance_cap
        return None if cap is None else to_money(cap)

    def withdrawable_balance(self, available: Decimal, level: int, override: bool = False) -> Decimal:
        """Earnings above the level cap stay in the wallet but cannot be withdrawn."""
        cap = self.balance_cap_for(level)
        if override or cap is None:
            return available
        return min(available, cap)

    def check_deposit(self, level: int, current_balance: Decimal, amount) -> Decimal:
        amount = to_money(amount)
        if amount <= 0:
            raise InvalidAmountError(f"Deposit must be positive, got {amount}")
        cap = self.balance_cap_for(level)
        if cap is not None and current_balance + amount > cap:
            raise InvalidAmountError(f"Deposit of {amount} would exceed the level {level} cap of {cap}")
        return amount

    def referral_tiers(self) -> list[ReferralTier]:
        return sorted(self._config.referral_tiers, key=lambda t: t.required_referrals)

    def spin_settings(self) -> SpinSettings:
        return self._config.spin
