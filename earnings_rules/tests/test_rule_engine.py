"""
Unit Tests for the Earnings Rule Engine

Tests cover:
1. Revenue share table
2. Ad entitlement rounding and input validation
3. Level upgrade fees and balance caps
4. Config validation and loading
5. Ad event parsing
"""

import pytest
from decimal import Decimal
from pydantic import ValidationError

from earnings_rules.events import AdViewEvent, ClickEvent, OfferCompletionEvent, parse_ad_event
from earnings_rules.rule_engine import (
    EarningsRuleEngine,
    LevelPlan,
    RewardsConfig,
    SpinPrize,
    SpinSettings,
    load_rewards_config,
)
from wallet_ledger.errors import ConfigurationError, InvalidAmountError, InvalidStateTransitionError


@pytest.fixture
def engine():
    return EarningsRuleEngine()


class TestRevenueShare:
    """Tests for the revenue share table."""

    def test_default_table(self, engine):
        """10/35/55/78 percent for levels 0-3."""
        shares = {level: engine.revenue_share_for(level) for level in range(4)}

        assert shares == {0: Decimal("10"), 1: Decimal("35"), 2: Decimal("55"), 3: Decimal("78")}

    def test_share_never_decreases_with_level(self, engine):
        """Higher levels never earn a smaller share."""
        shares = [engine.revenue_share_for(level) for level in range(4)]

        assert shares == sorted(shares)

    @pytest.mark.parametrize("level", [-1, 4, 99, None])
    def test_unknown_levels_earn_base_rate(self, engine, level):
        """Unknown levels fall back to the level 0 rate."""
        assert engine.revenue_share_for(level) == Decimal("10")


class TestAdEntitlement:
    """Tests for ad event entitlements."""

    def test_level_one_view(self, engine):
        """$0.0400 at level 1 is $0.0140."""
        assert engine.entitlement_for_ad_event(Decimal("0.0400"), 1) == Decimal("0.0140")

    def test_zero_revenue(self, engine):
        """Zero revenue earns zero."""
        assert engine.entitlement_for_ad_event(Decimal("0"), 3) == Decimal("0")

    def test_rounds_half_to_even(self, engine):
        """Exact halves at the fifth place go to the even digit."""
        assert engine.entitlement_for_ad_event(Decimal("0.0015"), 0) == Decimal("0.0002")
        assert engine.entitlement_for_ad_event(Decimal("0.0025"), 0) == Decimal("0.0002")

    def test_never_exceeds_base(self, engine):
        """The user share never exceeds the base revenue."""
        for level in range(4):
            assert engine.entitlement_for_ad_event(Decimal("1.2345"), level) <= Decimal("1.2345")

    @pytest.mark.parametrize("base", [Decimal("-0.01"), "abc", float("nan"), True, None])
    def test_invalid_base_revenue(self, engine, base):
        """Negative or non-numeric revenue is rejected."""
        with pytest.raises(InvalidAmountError):
            engine.entitlement_for_ad_event(base, 1)


class TestLevelsAndCaps:
    """Tests for upgrade fees and balance caps."""

    def test_single_step_fees(self, engine):
        """Each level has its own fee."""
        assert engine.level_upgrade_cost(0, 1) == Decimal("50")
        assert engine.level_upgrade_cost(1, 2) == Decimal("100")
        assert engine.level_upgrade_cost(2, 3) == Decimal("150")

    def test_multi_step_fee_is_sum(self, engine):
        """Multi-level jumps cost the sum of the steps."""
        assert engine.level_upgrade_cost(0, 3) == Decimal("300")

    def test_downgrade_rejected(self, engine):
        """Same or lower target levels are rejected."""
        with pytest.raises(InvalidStateTransitionError):
            engine.level_upgrade_cost(2, 1)
        with pytest.raises(InvalidStateTransitionError):
            engine.level_upgrade_cost(1, 1)

    def test_upgrade_past_table_is_config_error(self, engine):
        """Levels missing from the table are a config error."""
        with pytest.raises(ConfigurationError):
            engine.level_upgrade_cost(3, 4)

    def test_balance_caps(self, engine):
        """Level 3 has no cap."""
        assert engine.balance_cap_for(0) == Decimal("9.90")
        assert engine.balance_cap_for(2) == Decimal("500")
        assert engine.balance_cap_for(3) is None

    def test_withdrawable_balance(self, engine):
        """The cap limits what can be withdrawn unless overridden."""
        assert engine.withdrawable_balance(Decimal("20"), 0) == Decimal("9.90")
        assert engine.withdrawable_balance(Decimal("5"), 0) == Decimal("5")
        assert engine.withdrawable_balance(Decimal("20"), 0, override=True) == Decimal("20")
        assert engine.withdrawable_balance(Decimal("10000"), 3) == Decimal("10000")

    def test_check_deposit(self, engine):
        """Deposits may fill the wallet up to the cap."""
        assert engine.check_deposit(0, Decimal("5.00"), "4.90") == Decimal("4.90")
        with pytest.raises(InvalidAmountError):
            engine.check_deposit(0, Decimal("5.00"), "4.91")
        with pytest.raises(InvalidAmountError):
            engine.check_deposit(3, Decimal("0"), "0")

    def test_referral_tiers_sorted(self):
        """Tiers come back ordered by threshold."""
        config = RewardsConfig()
        config.referral_tiers.reverse()

        engine = EarningsRuleEngine(config)

        assert [t.required_referrals for t in engine.referral_tiers()] == [5, 15, 30, 50, 100]


class TestConfigValidation:
    """Tests for rate table validation."""

    def test_missing_level_zero(self):
        """Level 0 must be present."""
        config = RewardsConfig(level_plans=[
            LevelPlan(level=1, revenue_share_percent=Decimal("35")),
        ])

        with pytest.raises(ConfigurationError):
            EarningsRuleEngine(config)

    def test_decreasing_share(self):
        """Shares must not drop as level rises."""
        config = RewardsConfig(level_plans=[
            LevelPlan(level=0, revenue_share_percent=Decimal("40")),
            LevelPlan(level=1, revenue_share_percent=Decimal("35")),
        ])

        with pytest.raises(ConfigurationError):
            EarningsRuleEngine(config)

    def test_share_above_hundred(self):
        """Shares are percentages."""
        config = RewardsConfig(level_plans=[
            LevelPlan(level=0, revenue_share_percent=Decimal("101")),
        ])

        with pytest.raises(ConfigurationError):
            EarningsRuleEngine(config)

    def test_spin_prize_above_cap(self):
        """No single prize may exceed the daily cap."""
        config = RewardsConfig(spin=SpinSettings(
            max_prize=Decimal("1.00"),
            prizes=[SpinPrize(amount=Decimal("0.50"))],
        ))

        with pytest.raises(ConfigurationError):
            EarningsRuleEngine(config)

    def test_rejected_update_keeps_previous_config(self, engine):
        """A rejected update leaves the old tables in place."""
        with pytest.raises(ConfigurationError):
            engine.update_config(RewardsConfig(level_plans=[]))

        assert engine.revenue_share_for(1) == Decimal("35")

    def test_load_from_file(self, tmp_path):
        """Config loads from a JSON file."""
        path = tmp_path / "rewards.json"
        path.write_text(RewardsConfig().model_dump_json())

        config = load_rewards_config(path)

        assert len(config.level_plans) == 4

    def test_load_malformed_file(self, tmp_path):
        """Malformed files are a config error."""
        path = tmp_path / "rewards.json"
        path.write_text("{not json")

        with pytest.raises(ConfigurationError):
            load_rewards_config(path)


class TestAdEventParsing:
    """Tests for ad callback validation."""

    def test_dispatches_on_event_type(self):
        """The event_type tag picks the model."""
        base = {"user_id": "u", "platform": "adgem", "event_id": "1"}

        assert isinstance(parse_ad_event({**base, "event_type": "view", "base_revenue": "0.04"}), AdViewEvent)
        assert isinstance(
            parse_ad_event({**base, "event_type": "completion", "offer_id": "o", "base_revenue": "1"}),
            OfferCompletionEvent,
        )
        assert isinstance(parse_ad_event({**base, "event_type": "click"}), ClickEvent)

    def test_idempotency_key(self):
        """Ad keys live in their own namespace."""
        event = parse_ad_event({
            "user_id": "u", "platform": "adsterra", "event_id": "abc",
            "event_type": "view", "base_revenue": "0.01",
        })

        assert event.idempotency_key == "ad:adsterra:abc"

    def test_negative_revenue_rejected(self):
        """Negative revenue fails validation."""
        with pytest.raises(ValidationError):
            parse_ad_event({
                "user_id": "u", "platform": "adsterra", "event_id": "abc",
                "event_type": "view", "base_revenue": "-0.01",
            })

    def test_unknown_type_rejected(self):
        """Unknown event types fail validation."""
        with pytest.raises(ValidationError):
            parse_ad_event({"user_id": "u", "platform": "adsterra", "event_id": "abc", "event_type": "install"})
