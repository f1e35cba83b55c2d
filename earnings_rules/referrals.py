from typing import Optional

from wallet_ledger.accounts import Account, AccountDirectory, AccountStatus, Referral
from wallet_ledger.errors import AccountInactiveError
from wallet_ledger.log import get_logger
from wallet_ledger.models import ReferralCheckResult, ReferralProgress, TransactionType
from wallet_ledger.service import WalletLedger

from .rule_engine import EarningsRuleEngine

logger = get_logger(__name__)


def tier_prefix(level: int) -> str:
    return f"referral-tier:{level}:"


def tier_key(level: int, threshold: int) -> str:
    return f"{tier_prefix(level)}{threshold}"


class ReferralBonusCalculator:
    """Awards each referral tier once per referrer level.

    A tier is paid through the ledger under a deterministic idempotency key,
    so concurrent or repeated checks cannot pay it twice and a later drop in
    qualifying referrals never claws it back.
    """

    def __init__(
        self,
        ledger: WalletLedger,
        accounts: AccountDirectory,
        engine: Optional[EarningsRuleEngine] = None,
    ):
        self.ledger = ledger
        self.accounts = accounts
        self.engine = engine or EarningsRuleEngine()

    @staticmethod
    def qualifies(referral: Referral, referrer: Account) -> bool:
        return (
            referral.referred_status == AccountStatus.ACTIVE
            and referral.referred_level >= referrer.level
        )

    def qualifying_count(self, referrer: Account) -> int:
        referrals = self.accounts.list_referrals(referrer.user_id)
        return sum(1 for r in referrals if self.qualifies(r, referrer))

    def check_and_award(self, user_id: str) -> ReferralCheckResult:
        referrer = self.accounts.get_account(user_id)
        if not referrer.is_active:
            raise AccountInactiveError(f"Account {user_id} is {referrer.status.value}")

        count = self.qualifying_count(referrer)
        awarded, results = [], []
        with self.ledger.locked(user_id) as unit:
            for tier in self.engine.referral_tiers():
                if tier.required_referrals > count:
                    break
                result = self.ledger.apply_locked(
                    unit,
                    tier.bonus,
                    TransactionType.REFERRAL_BONUS,
                    idempotency_key=tier_key(referrer.level, tier.required_referrals),
                    description=f"Referral bonus for {tier.required_referrals} active referrals",
                    metadata={
                        "level": referrer.level,
                        "required_referrals": tier.required_referrals,
                        "qualifying_referrals": count,
                    },
                )
                if not result.duplicate:
                    awarded.append(tier.required_referrals)
                    results.append(result)

        if awarded:
            logger.info("Referral tiers %s awarded to %s (%d qualifying)", awarded, user_id, count)
        return ReferralCheckResult(
            user_id=user_id,
            active_referrals_at_level=count,
            awarded_tiers=awarded,
            results=results,
        )

    def progress(self, user_id: str) -> ReferralProgress:
        referrer = self.accounts.get_account(user_id)
        referrals = self.accounts.list_referrals(user_id)
        count = sum(1 for r in referrals if self.qualifies(r, referrer))

        prefix = tier_prefix(referrer.level)
        with self.ledger.locked(user_id) as unit:
            paid = sorted(
                int(t.idempotency_key[len(prefix):])
                for t in unit.list_transactions()
                if t.type == TransactionType.REFERRAL_BONUS
                and t.idempotency_key
                and t.idempotency_key.startswith(prefix)
            )

        next_tier = next(
            (t for t in self.engine.referral_tiers()
             if t.required_referrals > count and t.required_referrals not in paid),
            None,
        )
        return ReferralProgress(
            user_id=user_id,
            current_level=referrer.level,
            total_referrals=len(referrals),
            active_referrals_at_level=count,
            paid_tiers=paid,
            next_bonus_milestone=next_tier.required_referrals if next_tier else None,
            next_bonus_amount=next_tier.bonus if next_tier else None,
            referrals_needed=next_tier.required_referrals - count if next_tier else 0,
        )
