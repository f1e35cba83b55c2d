"""Identity collaborator interface: account status, level, timezone, referrals."""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional
import threading

from pydantic import BaseModel

from .errors import AccountNotFoundError


class AccountStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


class Account(BaseModel):
    user_id: str
    level: int = 0
    status: AccountStatus = AccountStatus.ACTIVE
    timezone: Optional[str] = None
    referred_by: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE


class Referral(BaseModel):
    referrer_id: str
    referred_id: str
    referred_level: int
    referred_status: AccountStatus


class AccountDirectory(ABC):
    @abstractmethod
    def get_account(self, user_id: str) -> Account:
        """Raises AccountNotFoundError for unknown users."""

    @abstractmethod
    def list_referrals(self, referrer_id: str) -> list[Referral]: ...


class InMemoryAccountDirectory(AccountDirectory):
    def __init__(self, accounts: Optional[list[Account]] = None):
        self.accounts: dict[str, Account] = {}
        self._lock = threading.Lock()
        for account in accounts or []:
            self.save(account)

    @classmethod
    def with_demo_accounts(cls) -> "InMemoryAccountDirectory":
        return cls([
            Account(user_id="demo-referrer", level=1, timezone="Africa/Cairo"),
            Account(user_id="demo-referred", level=1, referred_by="demo-referrer"),
        ])

    def save(self, account: Account) -> Account:
        with self._lock:
            self.accounts[account.user_id] = account
        return account

    def update(self, user_id: str, **changes) -> Account:
        account = self.get_account(user_id).model_copy(update=changes)
        return self.save(account)

    def get_account(self, user_id: str) -> Account:
        account = self.accounts.get(user_id)
        if account is None:
            raise AccountNotFoundError(f"Account {user_id} not found")
        return account

    def list_referrals(self, referrer_id: str) -> list[Referral]:
        return [
            Referral(
                referrer_id=referrer_id,
                referred_id=account.user_id,
                referred_level=account.level,
                referred_status=account.status,
            )
            for account in list(self.accounts.values())
            if account.referred_by == referrer_id
        ]
