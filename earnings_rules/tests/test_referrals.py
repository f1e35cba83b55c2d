"""
Tests for referral tier bonuses.

Tests cover:
1. Tier thresholds paid once
2. Qualification by level and status
3. No clawback when referrals drop
4. Concurrent checks
5. Progress reporting
"""

import threading

import pytest
from decimal import Decimal

from earnings_rules.referrals import ReferralBonusCalculator, tier_key
from wallet_ledger.accounts import Account, AccountStatus, InMemoryAccountDirectory
from wallet_ledger.errors import AccountInactiveError
from wallet_ledger.models import TransactionType
from wallet_ledger.service import WalletLedger


REFERRER_ID = "referrer"


@pytest.fixture
def accounts():
    return InMemoryAccountDirectory([Account(user_id=REFERRER_ID, level=1)])


@pytest.fixture
def ledger():
    return WalletLedger()


@pytest.fixture
def calculator(ledger, accounts):
    return ReferralBonusCalculator(ledger, accounts)


def add_referrals(accounts, count, level=1, status=AccountStatus.ACTIVE, start=0):
    for i in range(start, start + count):
        accounts.save(Account(user_id=f"referred-{i}", level=level, status=status, referred_by=REFERRER_ID))


class TestTierAwards:
    """Tests for tier bonus awards."""

    def test_below_first_tier(self, calculator, accounts, ledger):
        """Four qualifying referrals pay nothing."""
        add_referrals(accounts, 4)

        result = calculator.check_and_award(REFERRER_ID)

        assert result.active_referrals_at_level == 4
        assert result.awarded_tiers == []
        assert ledger.get_wallet(REFERRER_ID).available_balance == Decimal("0")

    def test_fifth_referral_pays_ten(self, calculator, accounts, ledger):
        """Going from 4 to 5 qualifying referrals pays $10 once."""
        add_referrals(accounts, 4)
        calculator.check_and_award(REFERRER_ID)
        add_referrals(accounts, 1, start=4)

        result = calculator.check_and_award(REFERRER_ID)

        assert result.awarded_tiers == [5]
        assert result.results[0].transaction.amount == Decimal("10")
        assert result.results[0].transaction.idempotency_key == tier_key(1, 5)
        assert ledger.get_wallet(REFERRER_ID).earnings_from_referrals == Decimal("10")

    def test_repeat_check_pays_nothing(self, calculator, accounts, ledger):
        """An unchanged count awards nothing more."""
        add_referrals(accounts, 5)
        calculator.check_and_award(REFERRER_ID)

        result = calculator.check_and_award(REFERRER_ID)

        assert result.awarded_tiers == []
        assert ledger.get_ledger_history(REFERRER_ID, TransactionType.REFERRAL_BONUS).total_count == 1

    def test_fifteenth_referral_pays_next_tier_only(self, calculator, accounts, ledger):
        """Moving from 14 to 15 pays one $25 bonus."""
        add_referrals(accounts, 14)
        calculator.check_and_award(REFERRER_ID)
        add_referrals(accounts, 1, start=14)

        result = calculator.check_and_award(REFERRER_ID)

        assert result.awarded_tiers == [15]
        assert [r.transaction.amount for r in result.results] == [Decimal("25")]
        assert ledger.get_wallet(REFERRER_ID).available_balance == Decimal("35")

    def test_skipped_tiers_paid_together(self, calculator, accounts, ledger):
        """Crossing several thresholds at once pays each tier."""
        add_referrals(accounts, 30)

        result = calculator.check_and_award(REFERRER_ID)

        assert result.awarded_tiers == [5, 15, 30]
        assert ledger.get_wallet(REFERRER_ID).available_balance == Decimal("85")

    def test_no_clawback_when_referrals_drop(self, calculator, accounts, ledger):
        """Bonuses stay paid after referrals are suspended."""
        add_referrals(accounts, 5)
        calculator.check_and_award(REFERRER_ID)
        accounts.update("referred-0", status=AccountStatus.SUSPENDED)

        result = calculator.check_and_award(REFERRER_ID)

        assert result.active_referrals_at_level == 4
        assert ledger.get_wallet(REFERRER_ID).available_balance == Decimal("10")

        # Recovering to 5 does not pay the tier again
        accounts.update("referred-0", status=AccountStatus.ACTIVE)
        assert calculator.check_and_award(REFERRER_ID).awarded_tiers == []

    def test_tiers_restart_at_new_level(self, calculator, accounts, ledger):
        """A referrer who levels up can earn the tiers again at the new level."""
        add_referrals(accounts, 5, level=2)
        calculator.check_and_award(REFERRER_ID)
        accounts.update(REFERRER_ID, level=2)

        result = calculator.check_and_award(REFERRER_ID)

        assert result.awarded_tiers == [5]
        assert ledger.get_wallet(REFERRER_ID).available_balance == Decimal("20")

    def test_suspended_referrer_rejected(self, calculator, accounts):
        """Suspended referrers cannot collect bonuses."""
        add_referrals(accounts, 5)
        accounts.update(REFERRER_ID, status=AccountStatus.SUSPENDED)

        with pytest.raises(AccountInactiveError):
            calculator.check_and_award(REFERRER_ID)

    def test_concurrent_checks_pay_once(self, calculator, accounts, ledger):
        """Racing checks pay the tier once."""
        add_referrals(accounts, 5)

        threads = [threading.Thread(target=calculator.check_and_award, args=(REFERRER_ID,)) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert ledger.get_wallet(REFERRER_ID).available_balance == Decimal("10")
        assert ledger.reconcile(REFERRER_ID).transaction_count == 1


class TestQualification:
    """Tests for which referrals count."""

    def test_lower_level_referrals_do_not_count(self, calculator, accounts):
        """Referrals below the referrer's level do not count."""
        add_referrals(accounts, 3, level=1)
        add_referrals(accounts, 3, level=0, start=3)

        assert calculator.qualifying_count(accounts.get_account(REFERRER_ID)) == 3

    def test_higher_level_referrals_count(self, calculator, accounts):
        """Referrals above the referrer's level count."""
        add_referrals(accounts, 2, level=3)

        assert calculator.qualifying_count(accounts.get_account(REFERRER_ID)) == 2

    def test_inactive_referrals_do_not_count(self, calculator, accounts):
        """Suspended referrals do not count."""
        add_referrals(accounts, 2, status=AccountStatus.SUSPENDED)

        assert calculator.qualifying_count(accounts.get_account(REFERRER_ID)) == 0


class TestProgress:
    """Tests for referral progress."""

    def test_progress_toward_next_tier(self, calculator, accounts):
        """Progress reports the next unpaid tier."""
        add_referrals(accounts, 7)
        add_referrals(accounts, 2, level=0, start=7)
        calculator.check_and_award(REFERRER_ID)

        progress = calculator.progress(REFERRER_ID)

        assert progress.total_referrals == 9
        assert progress.active_referrals_at_level == 7
        assert progress.paid_tiers == [5]
        assert progress.next_bonus_milestone == 15
        assert progress.next_bonus_amount == Decimal("25")
        assert progress.referrals_needed == 8

    def test_progress_after_all_tiers(self, calculator, accounts):
        """No next tier once every tier is paid."""
        add_referrals(accounts, 100)
        calculator.check_and_award(REFERRER_ID)

        progress = calculator.progress(REFERRER_ID)

        assert progress.paid_tiers == [5, 15, 30, 50, 100]
        assert progress.next_bonus_milestone is None
        assert progress.referrals_needed == 0
