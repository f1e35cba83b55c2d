"""SQLAlchemy-backed ledger store.

Each unit of work is one database transaction that starts by locking the
user's wallet row (``SELECT ... FOR UPDATE``). Writers for the same user
queue on that row lock across every service instance; writers for other
users touch other rows and proceed in parallel.
"""

from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Iterator, Optional
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from .datetime_utils import utc_now
from .errors import AlreadySpunTodayError, IdempotencyConflictError, StoreUnavailableError
from .log import get_logger
from .models import SpinRecord, Transaction, TransactionType, Wallet
from .store import LedgerStore, LedgerUnit

logger = get_logger(__name__)

MONEY = Numeric(18, 4)
ZERO = Decimal("0")


class Base(DeclarativeBase):
    pass


class WalletRow(Base):
    __tablename__ = "wallets"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    available_balance: Mapped[Decimal] = mapped_column(MONEY, default=ZERO)
    pending_balance: Mapped[Decimal] = mapped_column(MONEY, default=ZERO)
    total_earned: Mapped[Decimal] = mapped_column(MONEY, default=ZERO)
    total_withdrawn: Mapped[Decimal] = mapped_column(MONEY, default=ZERO)
    earnings_from_tasks: Mapped[Decimal] = mapped_column(MONEY, default=ZERO)
    earnings_from_referrals: Mapped[Decimal] = mapped_column(MONEY, default=ZERO)
    earnings_from_bonuses: Mapped[Decimal] = mapped_column(MONEY, default=ZERO)
    withdrawal_override: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class TransactionRow(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        UniqueConstraint("user_id", "idempotency_key", name="uq_transactions_user_idempotency"),
    )

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(36), unique=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    type: Mapped[str] = mapped_column(String(32), index=True)
    amount: Mapped[Decimal] = mapped_column(MONEY)
    balance_after: Mapped[Decimal] = mapped_column(MONEY)
    description: Mapped[str] = mapped_column(Text)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    txn_metadata: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class SpinRecordRow(Base):
    __tablename__ = "spin_records"
    __table_args__ = (
        UniqueConstraint("user_id", "spin_date", name="uq_spin_records_user_day"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    spin_date: Mapped[date] = mapped_column(Date)
    prize_amount: Mapped[Decimal] = mapped_column(MONEY)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


def _to_transaction(row: TransactionRow) -> Transaction:
    return Transaction(
        id=UUID(row.id),
        user_id=row.user_id,
        type=TransactionType(row.type),
        amount=row.amount,
        balance_after=row.balance_after,
        description=row.description,
        created_at=row.created_at,
        idempotency_key=row.idempotency_key,
        metadata=row.txn_metadata or {},
    )


_WALLET_FIELDS = (
    "available_balance",
    "pending_balance",
    "total_earned",
    "total_withdrawn",
    "earnings_from_tasks",
    "earnings_from_referrals",
    "earnings_from_bonuses",
    "updated_at",
)


class _SqlUnit(LedgerUnit):
    def __init__(self, session: Session, wallet_row: WalletRow):
        self.session = session
        self.wallet_row = wallet_row
        self.user_id = wallet_row.user_id

    def get_wallet(self) -> Optional[Wallet]:
        return Wallet.model_validate(self.wallet_row)

    def put_wallet(self, wallet: Wallet) -> None:
        for name in _WALLET_FIELDS:
            setattr(self.wallet_row, name, getattr(wallet, name))

    def find_transaction(self, idempotency_key: str) -> Optional[Transaction]:
        row = self.session.execute(
            select(TransactionRow).where(
                TransactionRow.user_id == self.user_id,
                TransactionRow.idempotency_key == idempotency_key,
            )
        ).scalar_one_or_none()
        return _to_transaction(row) if row else None

    def append_transaction(self, transaction: Transaction) -> None:
        self.session.add(TransactionRow(
            id=str(transaction.id),
            user_id=transaction.user_id,
            type=transaction.type.value,
            amount=transaction.amount,
            balance_after=transaction.balance_after,
            description=transaction.description,
            idempotency_key=transaction.idempotency_key,
            txn_metadata=dict(transaction.metadata),
            created_at=transaction.created_at,
        ))

    def list_transactions(self) -> list[Transaction]:
        rows = self.session.execute(
            select(TransactionRow)
            .where(TransactionRow.user_id == self.user_id)
            .order_by(TransactionRow.seq)
        ).scalars()
        return [_to_transaction(row) for row in rows]

    def get_spin_record(self, spin_date: date) -> Optional[SpinRecord]:
        row = self.session.execute(
            select(SpinRecordRow).where(
                SpinRecordRow.user_id == self.user_id,
                SpinRecordRow.spin_date == spin_date,
            )
        ).scalar_one_or_none()
        return SpinRecord.model_validate(row) if row else None

    def add_spin_record(self, record: SpinRecord) -> None:
        if self.get_spin_record(record.spin_date) is not None:
            raise AlreadySpunTodayError(f"Spin already recorded for {self.user_id} on {record.spin_date}")
        self.session.add(SpinRecordRow(
            user_id=record.user_id,
            spin_date=record.spin_date,
            prize_amount=record.prize_amount,
            created_at=record.created_at,
        ))

    def list_spin_records(self) -> list[SpinRecord]:
        rows = self.session.execute(
            select(SpinRecordRow)
            .where(SpinRecordRow.user_id == self.user_id)
            .order_by(SpinRecordRow.spin_date)
        ).scalars()
        return [SpinRecord.model_validate(row) for row in rows]

    def get_withdrawal_override(self) -> bool:
        return bool(self.wallet_row.withdrawal_override)

    def set_withdrawal_override(self, enabled: bool) -> None:
        self.wallet_row.withdrawal_override = enabled


class SqlLedgerStore(LedgerStore):
    def __init__(self, engine: Engine):
        self.engine = engine
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, url: str, echo: bool = False) -> "SqlLedgerStore":
        return cls(create_engine(url, echo=echo, pool_pre_ping=True))

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    def _ensure_wallet_row(self, user_id: str) -> None:
        with self._session_factory() as session:
            if session.get(WalletRow, user_id) is not None:
                return
            session.add(WalletRow(user_id=user_id))
            try:
                session.commit()
            except IntegrityError:
                # provisioned by a concurrent request
                session.rollback()

    @contextmanager
    def unit_of_work(self, user_id: str) -> Iterator[LedgerUnit]:
        try:
            self._ensure_wallet_row(user_id)
            with self._session_factory() as session:
                with session.begin():
                    wallet_row = session.execute(
                        select(WalletRow).where(WalletRow.user_id == user_id).with_for_update()
                    ).scalar_one()
                    yield _SqlUnit(session, wallet_row)
        except IntegrityError as exc:
            # unique (user_id, spin_date) or (user_id, idempotency_key) hit by a concurrent writer
            logger.warning("Ledger write for user %s violated a unique constraint: %s", user_id, exc.orig)
            if SpinRecordRow.__tablename__ in str(exc.orig):
                raise AlreadySpunTodayError(f"Spin already recorded for {user_id}") from exc
            raise IdempotencyConflictError(f"Idempotency key already used for {user_id}") from exc
        except DBAPIError as exc:
            logger.error("Ledger store failed for user %s: %s", user_id, exc)
            raise StoreUnavailableError(f"Ledger store unavailable: {exc.__class__.__name__}") from exc
