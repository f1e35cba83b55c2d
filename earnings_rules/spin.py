from datetime import date, datetime
from decimal import Decimal
from typing import Optional
import random

from wallet_ledger.accounts import Account, AccountDirectory
from wallet_ledger.datetime_utils import local_date
from wallet_ledger.errors import AccountInactiveError, AlreadySpunTodayError, DailyLimitReachedError
from wallet_ledger.log import get_logger
from wallet_ledger.models import ZERO, SpinRecord, SpinResult, SpinStats, TransactionType, to_money
from wallet_ledger.service import WalletLedger

from .rule_engine import EarningsRuleEngine, SpinSettings

logger = get_logger(__name__)


class SpinWheelController:
    """Daily prize wheel: one draw per user per local calendar day.

    The spin record, the prize transaction and the wallet update are staged
    in one ledger unit, so either all three commit or none does.
    """

    def __init__(
        self,
        ledger: WalletLedger,
        accounts: AccountDirectory,
        engine: Optional[EarningsRuleEngine] = None,
        rng: Optional[random.Random] = None,
        default_timezone: str = "UTC",
    ):
        self.ledger = ledger
        self.accounts = accounts
        self.engine = engine or EarningsRuleEngine()
        self.rng = rng or random.SystemRandom()
        self.default_timezone = default_timezone

    def spin_date_for(self, account: Account, now: datetime) -> date:
        return local_date(now, account.timezone or self.default_timezone)

    def can_spin(self, user_id: str, now: Optional[datetime] = None) -> bool:
        account = self.accounts.get_account(user_id)
        if not account.is_active:
            return False
        spin_date = self.spin_date_for(account, now or self.ledger.clock())
        with self.ledger.locked(user_id) as unit:
            return unit.get_spin_record(spin_date) is None

    def draw(self, user_id: str, now: Optional[datetime] = None) -> SpinResult:
        now = now or self.ledger.clock()
        account = self.accounts.get_account(user_id)
        if not account.is_active:
            logger.warning("Spin refused for inactive account %s", user_id)
            raise AccountInactiveError(f"Account {user_id} is {account.status.value}")

        settings = self.engine.spin_settings()
        spin_date = self.spin_date_for(account, now)
        day = spin_date.isoformat()

        with self.ledger.locked(user_id) as unit:
            if unit.get_spin_record(spin_date) is not None:
                logger.warning("Second spin attempt for %s on %s", user_id, day)
                raise AlreadySpunTodayError(f"Already spun on {day}")

            prize = self._draw_prize(settings)
            won_today = sum(
                (t.amount for t in unit.list_transactions()
                 if t.type == TransactionType.SPIN_PRIZE and t.metadata.get("spin_date") == day),
                ZERO,
            )
            if won_today + prize > settings.daily_cap:
                logger.warning("Spin payout cap reached for %s on %s (won %s)", user_id, day, won_today)
                raise DailyLimitReachedError(f"Daily spin payout of {settings.daily_cap} reached")

            unit.add_spin_record(SpinRecord(
                user_id=user_id, spin_date=spin_date, prize_amount=prize, created_at=now,
            ))
            result = self.ledger.apply_locked(
                unit,
                prize,
                TransactionType.SPIN_PRIZE,
                idempotency_key=f"spin:{day}",
                description=f"Daily spin prize for {day}",
                metadata={"spin_date": day},
            )
            if result.duplicate:
                # a prize already keyed for this day means the record must not commit uncredited
                logger.warning("Spin prize for %s on %s already credited without a spin record", user_id, day)
                raise AlreadySpunTodayError(f"Already spun on {day}")

        return SpinResult(prize_amount=prize, spin_date=spin_date, result=result)

    def history(self, user_id: str, limit: int = 30) -> list[SpinRecord]:
        records = self.ledger.spin_records(user_id)
        records.reverse()
        return records[:limit]

    def stats(self, user_id: str) -> SpinStats:
        records = self.ledger.spin_records(user_id)
        total_won = sum((r.prize_amount for r in records), ZERO)
        return SpinStats(
            total_spins=len(records),
            total_won=total_won,
            average_win=to_money(total_won / len(records)) if records else ZERO,
            last_spin=records[-1].spin_date if records else None,
        )

    def _draw_prize(self, settings: SpinSettings) -> Decimal:
        amounts = [p.amount for p in settings.prizes]
        weights = [p.weight for p in settings.prizes]
        return to_money(self.rng.choices(amounts, weights=weights, k=1)[0])
