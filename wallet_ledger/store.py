from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import date
from typing import ContextManager, Iterator, Optional
import threading
import weakref

from .errors import AlreadySpunTodayError, LedgerServiceError
from .models import SpinRecord, Transaction, Wallet


class LedgerUnit(ABC):
    """One atomic unit of work against a single user's ledger rows.

    Writes are staged and become visible to other units only when the
    owning ``unit_of_work`` block exits without an exception.
    """

    user_id: str

    @abstractmethod
    def get_wallet(self) -> Optional[Wallet]: ...

    @abstractmethod
    def put_wallet(self, wallet: Wallet) -> None: ...

    @abstractmethod
    def find_transaction(self, idempotency_key: str) -> Optional[Transaction]: ...

    @abstractmethod
    def append_transaction(self, transaction: Transaction) -> None: ...

    @abstractmethod
    def list_transactions(self) -> list[Transaction]:
        """All transactions for the user, oldest first."""

    @abstractmethod
    def get_spin_record(self, spin_date: date) -> Optional[SpinRecord]: ...

    @abstractmethod
    def add_spin_record(self, record: SpinRecord) -> None: ...

    @abstractmethod
    def list_spin_records(self) -> list[SpinRecord]: ...

    @abstractmethod
    def get_withdrawal_override(self) -> bool: ...

    @abstractmethod
    def set_withdrawal_override(self, enabled: bool) -> None: ...


class LedgerStore(ABC):
    @abstractmethod
    def unit_of_work(self, user_id: str) -> ContextManager[LedgerUnit]:
        """Hold the user's lock and yield a unit; commit on clean exit."""


class _InMemoryUnit(LedgerUnit):
    def __init__(self, storage: "InMemoryStorage", user_id: str):
        self.storage = storage
        self.user_id = user_id
        self._wallet: Optional[Wallet] = None
        self._transactions: list[Transaction] = []
        self._spin_records: dict[date, SpinRecord] = {}
        self._withdrawal_override: Optional[bool] = None

    def get_wallet(self) -> Optional[Wallet]:
        if self._wallet is not None:
            return self._wallet
        return self.storage.wallets.get(self.user_id)

    def put_wallet(self, wallet: Wallet) -> None:
        if wallet.user_id != self.user_id:
            raise LedgerServiceError(f"Wallet for {wallet.user_id} written in unit for {self.user_id}")
        self._wallet = wallet

    def find_transaction(self, idempotency_key: str) -> Optional[Transaction]:
        for txn in self._transactions:
            if txn.idempotency_key == idempotency_key:
                return txn
        return self.storage.idempotency_index.get((self.user_id, idempotency_key))

    def append_transaction(self, transaction: Transaction) -> None:
        self._transactions.append(transaction)

    def list_transactions(self) -> list[Transaction]:
        return list(self.storage.transactions.get(self.user_id, [])) + self._transactions

    def get_spin_record(self, spin_date: date) -> Optional[SpinRecord]:
        if spin_date in self._spin_records:
            return self._spin_records[spin_date]
        return self.storage.spin_records.get(self.user_id, {}).get(spin_date)

    def add_spin_record(self, record: SpinRecord) -> None:
        if self.get_spin_record(record.spin_date) is not None:
            raise AlreadySpunTodayError(f"Spin already recorded for {self.user_id} on {record.spin_date}")
        self._spin_records[record.spin_date] = record

    def list_spin_records(self) -> list[SpinRecord]:
        committed = self.storage.spin_records.get(self.user_id, {})
        records = {**committed, **self._spin_records}
        return [records[day] for day in sorted(records)]

    def get_withdrawal_override(self) -> bool:
        if self._withdrawal_override is not None:
            return self._withdrawal_override
        return self.storage.withdrawal_overrides.get(self.user_id, False)

    def set_withdrawal_override(self, enabled: bool) -> None:
        self._withdrawal_override = enabled

    def _commit(self) -> None:
        storage = self.storage
        if self._wallet is not None:
            storage.wallets[self.user_id] = self._wallet
        if self._transactions:
            storage.transactions.setdefault(self.user_id, []).extend(self._transactions)
            for txn in self._transactions:
                if txn.idempotency_key:
                    storage.idempotency_index[(self.user_id, txn.idempotency_key)] = txn
        if self._spin_records:
            storage.spin_records.setdefault(self.user_id, {}).update(self._spin_records)
        if self._withdrawal_override is not None:
            storage.withdrawal_overrides[self.user_id] = self._withdrawal_override


class InMemoryStorage(LedgerStore):
    """Process-local store with one lock per user.

    Suitable for tests and single-instance deployments only; several
    service instances must share ``SqlLedgerStore`` instead.
    """

    def __init__(self):
        self.wallets: dict[str, Wallet] = {}
        self.transactions: dict[str, list[Transaction]] = {}
        self.idempotency_index: dict[tuple[str, str], Transaction] = {}
        self.spin_records: dict[str, dict[date, SpinRecord]] = {}
        self.withdrawal_overrides: dict[str, bool] = {}
        # entries vanish once no unit holds or waits on the lock
        self._locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _lock_for(self, user_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(user_id, threading.Lock())

    @contextmanager
    def unit_of_work(self, user_id: str) -> Iterator[LedgerUnit]:
        with self._lock_for(user_id):
            unit = _InMemoryUnit(self, user_id)
            yield unit
            unit._commit()
