from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Callable, Iterator, Optional, Union
from uuid import uuid4

from .datetime_utils import utc_now
from .errors import IdempotencyConflictError, InsufficientBalanceError, InvalidAmountError
from .log import get_logger
from .models import (
    CATEGORY_FIELDS,
    ZERO,
    LedgerHistoryResponse,
    LedgerResult,
    ReconciliationReport,
    SpinRecord,
    Transaction,
    TransactionType,
    Wallet,
    to_money,
)
from .store import InMemoryStorage, LedgerStore, LedgerUnit

logger = get_logger(__name__)

# Types that only ever add to a balance, and types that only ever take from it.
CREDIT_ONLY = {
    TransactionType.TASK_REWARD,
    TransactionType.AD_REVENUE,
    TransactionType.REFERRAL_BONUS,
    TransactionType.SPIN_PRIZE,
}
DEBIT_ONLY = {
    TransactionType.LEVEL_UPGRADE,
    TransactionType.WITHDRAWAL,
}


class WalletLedger:
    """The only mutation surface for wallet balances.

    Every change is a (wallet update, transaction append) pair committed in
    one unit of work while the user's lock is held, so a wallet's
    ``available_balance`` always equals the sum of its transaction amounts.
    """

    def __init__(self, storage: Optional[LedgerStore] = None, clock: Callable[[], datetime] = utc_now):
        self.storage = storage or InMemoryStorage()
        self.clock = clock

    @contextmanager
    def locked(self, user_id: str) -> Iterator[LedgerUnit]:
        """Hold ``user_id``'s lock; everything staged in the block commits together."""
        with self.storage.unit_of_work(user_id) as unit:
            yield unit

    def apply(
        self,
        user_id: str,
        amount: Union[Decimal, int, str],
        category: Union[TransactionType, str],
        idempotency_key: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> LedgerResult:
        with self.locked(user_id) as unit:
            return self.apply_locked(unit, amount, category, idempotency_key, description, metadata)

    def apply_locked(
        self,
        unit: LedgerUnit,
        amount: Union[Decimal, int, str],
        category: Union[TransactionType, str],
        idempotency_key: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> LedgerResult:
        """Apply within a unit the caller already holds via :meth:`locked`."""
        category = TransactionType(category)
        amount = to_money(amount)
        self._check_sign(category, amount)

        if idempotency_key:
            existing = unit.find_transaction(idempotency_key)
            if existing:
                if existing.amount != amount or existing.type != category:
                    logger.warning(
                        "Idempotency key %s for %s replayed with different payload (%s %s, stored %s %s)",
                        idempotency_key, unit.user_id, category.value, amount,
                        existing.type.value, existing.amount,
                    )
                    raise IdempotencyConflictError(
                        f"Idempotency key {idempotency_key} already used for "
                        f"{existing.type.value} {existing.amount}"
                    )
                logger.info("Idempotent replay for %s key=%s -> txn=%s", unit.user_id, idempotency_key, existing.id)
                return self._replay(unit, existing)

        now = self.clock()
        wallet = unit.get_wallet() or Wallet(user_id=unit.user_id, created_at=now)
        new_balance = wallet.available_balance + amount
        if new_balance < 0:
            logger.warning("Rejected %s debit of %s for %s: balance %s", category.value, amount, unit.user_id, wallet.available_balance)
            raise InsufficientBalanceError(unit.user_id, wallet.available_balance, -amount)

        updates = {"available_balance": new_balance, "updated_at": now}
        if amount > 0:
            updates["total_earned"] = wallet.total_earned + amount
            field = CATEGORY_FIELDS.get(category)
            if field:
                updates[field] = getattr(wallet, field) + amount
        elif category == TransactionType.WITHDRAWAL:
            updates["total_withdrawn"] = wallet.total_withdrawn - amount
        wallet = wallet.model_copy(update=updates)

        transaction = Transaction(
            id=uuid4(),
            user_id=unit.user_id,
            type=category,
            amount=amount,
            balance_after=new_balance,
            description=description or f"{category.value.replace('_', ' ').capitalize()} of {amount}",
            created_at=now,
            idempotency_key=idempotency_key,
            metadata=metadata or {},
        )
        unit.put_wallet(wallet)
        unit.append_transaction(transaction)

        logger.info(
            "Applied %s %s to %s (balance=%s, txn=%s)",
            category.value, amount, unit.user_id, new_balance, transaction.id,
        )
        return LedgerResult(wallet=wallet, transaction=transaction, message="Transaction applied")

    def set_exact_balance(
        self,
        user_id: str,
        target_balance: Union[Decimal, int, str],
        admin_id: str,
        note: str = "",
        idempotency_key: Optional[str] = None,
    ) -> LedgerResult:
        target = to_money(target_balance)
        if target < 0:
            raise InvalidAmountError(f"Target balance must not be negative, got {target}")

        with self.locked(user_id) as unit:
            # A replayed command must not be re-diffed against the moved balance
            existing = unit.find_transaction(idempotency_key) if idempotency_key else None
            if existing:
                if existing.type != TransactionType.ADMIN_SET_BALANCE:
                    raise IdempotencyConflictError(
                        f"Idempotency key {idempotency_key} already used for {existing.type.value}"
                    )
                return self._replay(unit, existing)
            current = self.current_wallet(unit)
            diff = target - current.available_balance
            if diff == 0:
                return LedgerResult(wallet=current, message="Balance already at target")
            return self.apply_locked(
                unit,
                diff,
                TransactionType.ADMIN_SET_BALANCE,
                idempotency_key=idempotency_key,
                description=note or f"Balance set to {target} by admin",
                metadata={
                    "admin_id": admin_id,
                    "previous_balance": str(current.available_balance),
                    "target_balance": str(target),
                },
            )

    def get_wallet(self, user_id: str) -> Wallet:
        with self.locked(user_id) as unit:
            return self.current_wallet(unit)

    def get_ledger_history(
        self,
        user_id: str,
        transaction_type: Optional[TransactionType] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> LedgerHistoryResponse:
        with self.locked(user_id) as unit:
            entries = unit.list_transactions()
            wallet = self.current_wallet(unit)

        if transaction_type:
            entries = [e for e in entries if e.type == transaction_type]
        entries.reverse()
        return LedgerHistoryResponse(
            user_id=user_id,
            entries=entries[offset:offset + limit],
            total_count=len(entries),
            current_balance=wallet.available_balance,
        )

    def reconcile(self, user_id: str) -> ReconciliationReport:
        """Rebuild the balance from the transaction log and compare."""
        with self.locked(user_id) as unit:
            entries = unit.list_transactions()
            wallet = self.current_wallet(unit)

        report = ReconciliationReport(
            user_id=user_id,
            wallet_balance=wallet.available_balance,
            ledger_balance=sum((e.amount for e in entries), ZERO),
            transaction_count=len(entries),
        )
        if not report.is_consistent:
            logger.error(
                "Wallet %s out of balance: wallet=%s ledger=%s",
                user_id, report.wallet_balance, report.ledger_balance,
            )
        return report

    def spin_records(self, user_id: str) -> list[SpinRecord]:
        with self.locked(user_id) as unit:
            return unit.list_spin_records()

    def get_withdrawal_override(self, user_id: str) -> bool:
        with self.locked(user_id) as unit:
            return unit.get_withdrawal_override()

    def set_withdrawal_override(self, user_id: str, enabled: bool) -> None:
        with self.locked(user_id) as unit:
            unit.set_withdrawal_override(enabled)

    def current_wallet(self, unit: LedgerUnit) -> Wallet:
        return unit.get_wallet() or Wallet(user_id=unit.user_id)

    def _replay(self, unit: LedgerUnit, existing: Transaction) -> LedgerResult:
        return LedgerResult(
            wallet=self.current_wallet(unit),
            transaction=existing,
            duplicate=True,
            message="Event already applied (idempotent return)",
        )

    @staticmethod
    def _check_sign(category: TransactionType, amount: Decimal) -> None:
        if amount == 0:
            raise InvalidAmountError("Amount must be non-zero")
        if category in CREDIT_ONLY and amount < 0:
            raise InvalidAmountError(f"{category.value} must be a credit, got {amount}")
        if category in DEBIT_ONLY and amount > 0:
            raise InvalidAmountError(f"{category.value} must be a debit, got {amount}")
