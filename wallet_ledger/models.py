from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_EVEN
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict, computed_field

from .errors import InvalidAmountError


MONEY_PLACES = Decimal("0.0001")
ZERO = Decimal("0.0000")


def to_money(value) -> Decimal:
    """Coerce to a Decimal with 4 fractional digits (round half to even)."""
    if isinstance(value, bool):
        raise InvalidAmountError(f"Not a monetary amount: {value!r}")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmountError(f"Not a monetary amount: {value!r}")
    if not amount.is_finite():
        raise InvalidAmountError(f"Not a monetary amount: {value!r}")
    return amount.quantize(MONEY_PLACES, rounding=ROUND_HALF_EVEN)


class TransactionType(str, Enum):
    TASK_REWARD = "task_reward"
    AD_REVENUE = "ad_revenue"
    REFERRAL_BONUS = "referral_bonus"
    SPIN_PRIZE = "spin_prize"
    LEVEL_UPGRADE = "level_upgrade"
    ADMIN_ADJUSTMENT = "admin_adjustment"
    ADMIN_SET_BALANCE = "admin_set_balance"
    WITHDRAWAL = "withdrawal"


# Wallet category field credited by a positive amount of each type.
CATEGORY_FIELDS = {
    TransactionType.TASK_REWARD: "earnings_from_tasks",
    TransactionType.AD_REVENUE: "earnings_from_tasks",
    TransactionType.REFERRAL_BONUS: "earnings_from_referrals",
    TransactionType.SPIN_PRIZE: "earnings_from_bonuses",
    TransactionType.ADMIN_ADJUSTMENT: "earnings_from_bonuses",
    TransactionType.ADMIN_SET_BALANCE: "earnings_from_bonuses",
}


class Wallet(BaseModel):
    user_id: str
    available_balance: Decimal = ZERO
    pending_balance: Decimal = ZERO
    total_earned: Decimal = ZERO
    total_withdrawn: Decimal = ZERO
    earnings_from_tasks: Decimal = ZERO
    earnings_from_referrals: Decimal = ZERO
    earnings_from_bonuses: Decimal = ZERO
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class Transaction(BaseModel):
    id: UUID
    user_id: str
    type: TransactionType
    amount: Decimal
    balance_after: Decimal
    description: str
    created_at: datetime
    idempotency_key: Optional[str] = None
    metadata: dict = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True, frozen=True)


class SpinRecord(BaseModel):
    user_id: str
    spin_date: date
    prize_amount: Decimal
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, frozen=True)


class LedgerResult(BaseModel):
    wallet: Wallet
    transaction: Optional[Transaction] = None
    duplicate: bool = False
    message: str


class LedgerHistoryResponse(BaseModel):
    user_id: str
    entries: list[Transaction]
    total_count: int
    current_balance: Decimal


class ReconciliationReport(BaseModel):
    user_id: str
    wallet_balance: Decimal
    ledger_balance: Decimal
    transaction_count: int

    @computed_field
    @property
    def is_consistent(self) -> bool:
        return self.wallet_balance == self.ledger_balance


class SpinResult(BaseModel):
    prize_amount: Decimal
    spin_date: date
    result: LedgerResult


class SpinStats(BaseModel):
    total_spins: int
    total_won: Decimal
    average_win: Decimal
    last_spin: Optional[date] = None


class ReferralProgress(BaseModel):
    user_id: str
    current_level: int
    total_referrals: int
    active_referrals_at_level: int
    paid_tiers: list[int]
    next_bonus_milestone: Optional[int] = None
    next_bonus_amount: Optional[Decimal] = None
    referrals_needed: int = 0


class ReferralCheckResult(BaseModel):
    user_id: str
    active_referrals_at_level: int
    awarded_tiers: list[int]
    results: list[LedgerResult] = Field(default_factory=list)


class AdminCommandKind(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"
    SET_BALANCE = "set_balance"
    WITHDRAWAL_OVERRIDE = "withdrawal_override"


class AdminCommand(BaseModel):
    actor_id: str
    target_user_id: str
    kind: AdminCommandKind
    amount: Optional[Decimal] = None
    enabled: Optional[bool] = None
    note: str = ""
    command_id: Optional[str] = Field(default=None, description="Reused as the idempotency key")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "actor_id": "admin-1",
            "target_user_id": "user-42",
            "kind": "credit",
            "amount": "5.00",
            "note": "Compensation for missed task payout",
        }
    })


class AdminCommandResult(BaseModel):
    command: AdminCommand
    result: Optional[LedgerResult] = None
    withdrawal_override: Optional[bool] = None
    message: str


class TaskRewardRequest(BaseModel):
    amount: Decimal


class LevelUpgradeRequest(BaseModel):
    target_level: int
    purchase_id: Optional[str] = Field(default=None, description="Client purchase id, used as idempotency key")


class WithdrawalRequest(BaseModel):
    amount: Decimal
    reference: Optional[str] = Field(default=None, description="External payout reference, used as idempotency key")
