from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional, Union
import threading

from pydantic import BaseModel, Field

from .datetime_utils import utc_now
from .errors import InvalidAmountError
from .log import get_logger
from .models import (
    AdminCommand,
    AdminCommandKind,
    AdminCommandResult,
    LedgerResult,
    TransactionType,
    to_money,
)
from .service import WalletLedger

logger = get_logger(__name__)


def admin_key(command_id: Optional[str]) -> Optional[str]:
    return f"admin:{command_id}" if command_id else None


class AdminAuditEntry(BaseModel):
    actor_id: str
    action: str
    target_user_id: str
    details: dict = Field(default_factory=dict)
    created_at: datetime


class AdminAuditLog(ABC):
    @abstractmethod
    def record(self, entry: AdminAuditEntry) -> None: ...


class InMemoryAuditLog(AdminAuditLog):
    def __init__(self):
        self.entries: list[AdminAuditEntry] = []
        self._lock = threading.Lock()

    def record(self, entry: AdminAuditEntry) -> None:
        with self._lock:
            self.entries.append(entry)

    def for_user(self, user_id: str) -> list[AdminAuditEntry]:
        return [e for e in self.entries if e.target_user_id == user_id]


class AdminOverride:
    """Privileged balance changes. Every change still goes through WalletLedger."""

    def __init__(
        self,
        ledger: WalletLedger,
        audit_log: Optional[AdminAuditLog] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.ledger = ledger
        self.audit_log = audit_log or InMemoryAuditLog()
        self.clock = clock

    def adjust_balance(
        self,
        actor_id: str,
        user_id: str,
        amount: Union[Decimal, int, str],
        note: str = "",
        idempotency_key: Optional[str] = None,
    ) -> LedgerResult:
        """Manual credit (positive) or debit (negative)."""
        amount = to_money(amount)
        sign = "+" if amount > 0 else "-"
        result = self.ledger.apply(
            user_id,
            amount,
            TransactionType.ADMIN_ADJUSTMENT,
            idempotency_key=admin_key(idempotency_key),
            description=note or f"Admin balance adjustment ({sign})",
            metadata={"admin_id": actor_id},
        )
        self._audit(actor_id, "balance_adjustment", user_id, {"amount": str(amount), "note": note})
        return result

    def set_exact_balance(
        self,
        actor_id: str,
        user_id: str,
        target_balance: Union[Decimal, int, str],
        note: str = "",
        idempotency_key: Optional[str] = None,
    ) -> LedgerResult:
        result = self.ledger.set_exact_balance(user_id, target_balance, actor_id, note, admin_key(idempotency_key))
        self._audit(actor_id, "set_balance", user_id, {
            "target_balance": str(result.wallet.available_balance),
            "amount": str(result.transaction.amount) if result.transaction else "0",
            "note": note,
        })
        return result

    def set_withdrawal_override(self, actor_id: str, user_id: str, enabled: bool) -> bool:
        self.ledger.set_withdrawal_override(user_id, enabled)
        self._audit(actor_id, "set_withdrawal_override", user_id, {"enabled": enabled})
        return enabled

    def execute(self, command: AdminCommand) -> AdminCommandResult:
        kind = command.kind
        if kind == AdminCommandKind.WITHDRAWAL_OVERRIDE:
            if command.enabled is None:
                raise InvalidAmountError("Withdrawal override command needs 'enabled'")
            enabled = self.set_withdrawal_override(command.actor_id, command.target_user_id, command.enabled)
            return AdminCommandResult(
                command=command,
                withdrawal_override=enabled,
                message=f"Withdrawal override {'enabled' if enabled else 'disabled'}",
            )

        if command.amount is None:
            raise InvalidAmountError(f"{kind.value} command needs an amount")
        amount = to_money(command.amount)

        if kind == AdminCommandKind.SET_BALANCE:
            result = self.set_exact_balance(
                command.actor_id, command.target_user_id, amount, command.note, command.command_id,
            )
        else:
            if amount <= 0:
                raise InvalidAmountError(f"{kind.value} amount must be positive, got {amount}")
            signed = amount if kind == AdminCommandKind.CREDIT else -amount
            result = self.adjust_balance(
                command.actor_id, command.target_user_id, signed, command.note, command.command_id,
            )
        return AdminCommandResult(command=command, result=result, message=result.message)

    def _audit(self, actor_id: str, action: str, user_id: str, details: dict) -> None:
        self.audit_log.record(AdminAuditEntry(
            actor_id=actor_id,
            action=action,
            target_user_id=user_id,
            details=details,
            created_at=self.clock(),
        ))
        logger.info("Admin %s: %s on %s %s", actor_id, action, user_id, details)
