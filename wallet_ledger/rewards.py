"""Entry points used by request handlers and event callbacks."""

from datetime import datetime
from decimal import Decimal
from typing import Optional, Union
import random

from earnings_rules.events import AdViewEvent, ClickEvent, OfferCompletionEvent
from earnings_rules.referrals import ReferralBonusCalculator
from earnings_rules.rule_engine import EarningsRuleEngine, load_rewards_config
from earnings_rules.spin import SpinWheelController

from .accounts import AccountDirectory, InMemoryAccountDirectory
from .admin import AdminAuditLog, AdminOverride
from .config import Settings, get_settings
from .errors import InvalidAmountError, InvalidStateTransitionError, WithdrawalNotAllowedError
from .log import get_logger
from .models import (
    AdminCommand,
    AdminCommandResult,
    LedgerHistoryResponse,
    LedgerResult,
    ReconciliationReport,
    ReferralCheckResult,
    ReferralProgress,
    SpinRecord,
    SpinResult,
    SpinStats,
    TransactionType,
    Wallet,
    to_money,
)
from .service import WalletLedger
from .sql_store import SqlLedgerStore
from .store import InMemoryStorage

logger = get_logger(__name__)

AdEvent = Union[AdViewEvent, OfferCompletionEvent, ClickEvent]


class RewardsService:
    def __init__(
        self,
        ledger: Optional[WalletLedger] = None,
        accounts: Optional[AccountDirectory] = None,
        engine: Optional[EarningsRuleEngine] = None,
        audit_log: Optional[AdminAuditLog] = None,
        rng: Optional[random.Random] = None,
        default_timezone: str = "UTC",
    ):
        self.ledger = ledger or WalletLedger()
        self.accounts = accounts or InMemoryAccountDirectory()
        self.engine = engine or EarningsRuleEngine()
        self.spin_wheel = SpinWheelController(self.ledger, self.accounts, self.engine, rng, default_timezone)
        self.referrals = ReferralBonusCalculator(self.ledger, self.accounts, self.engine)
        self.admin = AdminOverride(self.ledger, audit_log)

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        accounts: Optional[AccountDirectory] = None,
    ) -> "RewardsService":
        settings = settings or get_settings()
        if settings.DATABASE_URL:
            store = SqlLedgerStore.from_url(settings.DATABASE_URL, echo=settings.DB_ECHO)
            store.create_all()
        else:
            store = InMemoryStorage()
        return cls(
            ledger=WalletLedger(store),
            accounts=accounts,
            engine=EarningsRuleEngine(load_rewards_config(settings.REWARDS_CONFIG_PATH)),
            default_timezone=settings.DEFAULT_TIMEZONE,
        )

    # earning events

    def apply_ad_event(self, event: AdEvent) -> LedgerResult:
        account = self.accounts.get_account(event.user_id)
        if isinstance(event, ClickEvent):
            return LedgerResult(
                wallet=self.ledger.get_wallet(event.user_id),
                message="Click recorded; clicks do not earn",
            )

        earnings = self.engine.entitlement_for_ad_event(event.base_revenue, account.level)
        if earnings == 0:
            return LedgerResult(wallet=self.ledger.get_wallet(event.user_id), message="Nothing to credit")

        share = self.engine.revenue_share_for(account.level)
        metadata = {
            "platform": event.platform,
            "event_type": event.event_type,
            "base_revenue": str(event.base_revenue),
            "user_share_percent": str(share),
            "user_level": account.level,
        }
        if isinstance(event, OfferCompletionEvent):
            metadata["offer_id"] = event.offer_id
            description = f"{event.platform} offer completion: {event.offer_name or event.offer_id}"
        else:
            description = f"{event.platform} ad view"
        if event.placement:
            metadata["placement"] = event.placement

        return self.ledger.apply(
            event.user_id,
            earnings,
            TransactionType.AD_REVENUE,
            idempotency_key=event.idempotency_key,
            description=description,
            metadata=metadata,
        )

    def credit_task_reward(self, user_id: str, task_id: str, amount) -> LedgerResult:
        self.accounts.get_account(user_id)
        return self.ledger.apply(
            user_id,
            amount,
            TransactionType.TASK_REWARD,
            idempotency_key=f"task:{task_id}",
            description=f"Reward for task {task_id}",
            metadata={"task_id": task_id},
        )

    def draw_daily_spin(self, user_id: str, now: Optional[datetime] = None) -> SpinResult:
        return self.spin_wheel.draw(user_id, now)

    def can_spin(self, user_id: str, now: Optional[datetime] = None) -> bool:
        return self.spin_wheel.can_spin(user_id, now)

    def spin_history(self, user_id: str, limit: int = 30) -> list[SpinRecord]:
        return self.spin_wheel.history(user_id, limit)

    def spin_stats(self, user_id: str) -> SpinStats:
        return self.spin_wheel.stats(user_id)

    def check_referral_bonuses(self, user_id: str) -> ReferralCheckResult:
        return self.referrals.check_and_award(user_id)

    def referral_progress(self, user_id: str) -> ReferralProgress:
        return self.referrals.progress(user_id)

    # debits

    def purchase_level_upgrade(
        self, user_id: str, target_level: int, purchase_id: Optional[str] = None,
    ) -> LedgerResult:
        """Charge the fee for moving up exactly one level.

        Retries are safe when the caller passes the same ``purchase_id``.
        Without one, each purchase of a level the account does not hold is
        charged, so buying a level back after a downgrade costs the fee again.
        Recording the new level is left to the identity collaborator.
        """
        account = self.accounts.get_account(user_id)
        if target_level != account.level + 1:
            raise InvalidStateTransitionError(
                f"Upgrades go one level at a time: {account.level} -> {account.level + 1}, not {target_level}"
            )
        fee = self.engine.level_upgrade_cost(account.level, target_level)
        if fee == 0:
            return LedgerResult(wallet=self.ledger.get_wallet(user_id), message="No fee for this level")

        with self.ledger.locked(user_id) as unit:
            if purchase_id:
                key = f"level-upgrade:purchase:{purchase_id}"
            else:
                previous = sum(
                    1 for t in unit.list_transactions()
                    if t.type == TransactionType.LEVEL_UPGRADE and t.metadata.get("to_level") == target_level
                )
                key = f"level-upgrade:{target_level}:{previous + 1}"
            metadata = {"from_level": account.level, "to_level": target_level}
            if purchase_id:
                metadata["purchase_id"] = purchase_id
            return self.ledger.apply_locked(
                unit,
                -fee,
                TransactionType.LEVEL_UPGRADE,
                idempotency_key=key,
                description=f"Level upgrade from {account.level} to {target_level}",
                metadata=metadata,
            )

    def withdrawable_balance(self, user_id: str) -> Decimal:
        account = self.accounts.get_account(user_id)
        with self.ledger.locked(user_id) as unit:
            wallet = self.ledger.current_wallet(unit)
            override = unit.get_withdrawal_override()
        return self.engine.withdrawable_balance(wallet.available_balance, account.level, override)

    def record_withdrawal(self, user_id: str, amount, reference: Optional[str] = None) -> LedgerResult:
        """Debit an approved payout. Settlement happens elsewhere."""
        amount = to_money(amount)
        if amount <= 0:
            raise InvalidAmountError(f"Withdrawal must be positive, got {amount}")
        account = self.accounts.get_account(user_id)
        key = f"withdrawal:{reference}" if reference else None

        with self.ledger.locked(user_id) as unit:
            if not (key and unit.find_transaction(key)):
                wallet = self.ledger.current_wallet(unit)
                override = unit.get_withdrawal_override()
                allowed = self.engine.withdrawable_balance(wallet.available_balance, account.level, override)
                if wallet.available_balance >= amount > allowed:
                    logger.warning("Withdrawal of %s for %s above level %s cap", amount, user_id, account.level)
                    raise WithdrawalNotAllowedError(
                        f"Only {allowed} is withdrawable at level {account.level}"
                    )
            return self.ledger.apply_locked(
                unit,
                -amount,
                TransactionType.WITHDRAWAL,
                idempotency_key=key,
                description=f"Withdrawal of {amount}",
                metadata={"reference": reference} if reference else None,
            )

    # admin

    def admin_adjust_balance(self, actor_id: str, user_id: str, amount, note: str = "",
                             idempotency_key: Optional[str] = None) -> LedgerResult:
        return self.admin.adjust_balance(actor_id, user_id, amount, note, idempotency_key)

    def admin_set_exact_balance(self, actor_id: str, user_id: str, target_balance, note: str = "",
                                idempotency_key: Optional[str] = None) -> LedgerResult:
        return self.admin.set_exact_balance(actor_id, user_id, target_balance, note, idempotency_key)

    def admin_set_withdrawal_override(self, actor_id: str, user_id: str, enabled: bool) -> bool:
        return self.admin.set_withdrawal_override(actor_id, user_id, enabled)

    def admin_execute(self, command: AdminCommand) -> AdminCommandResult:
        return self.admin.execute(command)

    # reads

    def get_wallet(self, user_id: str) -> Wallet:
        return self.ledger.get_wallet(user_id)

    def get_ledger_history(self, user_id: str, transaction_type: Optional[TransactionType] = None,
                           limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        return self.ledger.get_ledger_history(user_id, transaction_type, limit, offset)

    def reconcile(self, user_id: str) -> ReconciliationReport:
        return self.ledger.reconcile(user_id)
