"""SQLAlchemy storage backend.

Balance rows double as the per-account lock: every append selects the row
``FOR UPDATE`` before reading the prior balance, so concurrent appends on one
account queue behind each other while other accounts proceed.
"""

import logging
from contextlib import contextmanager
from decimal import Decimal
from typing import Iterator, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Index,
    Integer,
    Numeric,
    String,
    create_engine,
    select,
    text,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import DuplicateReferenceError, StorageFailureError
from .models import (
    Account,
    AccountBalance,
    LedgerEntry,
    LedgerStream,
    Order,
    StoreLedgerEntry,
)
from .storage import Storage, UnitOfWork
from .utils import now_epoch_ms

logger = logging.getLogger(__name__)

MONEY = Numeric(18, 4)


class Base(DeclarativeBase):
    pass


class OrderRecord(Base):
    __tablename__ = "store_orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    store_id: Mapped[str] = mapped_column(String(64), index=True)
    customer_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    order_total: Mapped[Decimal] = mapped_column(MONEY)
    currency: Mapped[str] = mapped_column(String(8))
    payment_method_id: Mapped[str] = mapped_column(String(64))
    shipping_method_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    is_paid: Mapped[bool] = mapped_column(Boolean, default=False)
    paid_date: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    order_status: Mapped[int] = mapped_column(Integer)
    payment_status: Mapped[int] = mapped_column(Integer)
    payment_cost: Mapped[Decimal] = mapped_column(MONEY)
    refund_amount: Mapped[Decimal] = mapped_column(MONEY)
    items: Mapped[list] = mapped_column(JSON)
    checkout_attributes: Mapped[dict] = mapped_column(JSON)
    note: Mapped[str] = mapped_column(String(1024), default="")
    created_at: Mapped[int] = mapped_column(BigInteger)
    updated_at: Mapped[int] = mapped_column(BigInteger)


class LedgerColumns:
    # insertion order within an account
    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(36), unique=True)
    store_id: Mapped[str] = mapped_column(String(64))
    account_key: Mapped[str] = mapped_column(String(64))
    entry_type: Mapped[str] = mapped_column(String(32))
    amount: Mapped[Decimal] = mapped_column(MONEY)
    balance_after: Mapped[Decimal] = mapped_column(MONEY)
    reference_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    currency: Mapped[str] = mapped_column(String(8))
    note: Mapped[str] = mapped_column(String(1024), default="")
    created_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[int] = mapped_column(BigInteger)


class StoreLedgerRecord(LedgerColumns, Base):
    __tablename__ = "store_ledger"
    # one settlement and at most one reversal per order
    __table_args__ = (
        Index("ix_store_ledger_account", "store_id", "account_key", "seq"),
        Index(
            "uq_store_ledger_order",
            "order_id",
            unique=True,
            sqlite_where=text("entry_type <> 'REFUND'"),
            postgresql_where=text("entry_type <> 'REFUND'"),
        ),
        Index(
            "uq_store_ledger_refund_order",
            "order_id",
            unique=True,
            sqlite_where=text("entry_type = 'REFUND'"),
            postgresql_where=text("entry_type = 'REFUND'"),
        ),
    )

    order_id: Mapped[str] = mapped_column(String(36))
    fee: Mapped[Decimal] = mapped_column(MONEY)
    fee_tax: Mapped[Decimal] = mapped_column(MONEY)
    platform_fee: Mapped[Decimal] = mapped_column(MONEY)
    availability: Mapped[int] = mapped_column(BigInteger)


def _customer_ledger_indexes(table: str) -> tuple:
    refund_only = text("entry_type = 'REFUND'")
    return (
        Index(f"ix_{table}_account", "store_id", "account_key", "seq"),
        Index(f"ix_{table}_reference", "reference_id"),
        Index(
            f"uq_{table}_refund_reference",
            "reference_id",
            unique=True,
            sqlite_where=refund_only,
            postgresql_where=refund_only,
        ),
    )


class CreditLedgerRecord(LedgerColumns, Base):
    __tablename__ = "customer_credit_ledger"
    __table_args__ = _customer_ledger_indexes("customer_credit_ledger")


class FiatLedgerRecord(LedgerColumns, Base):
    __tablename__ = "customer_fiat_ledger"
    __table_args__ = _customer_ledger_indexes("customer_fiat_ledger")


class BalanceColumns:
    store_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    account_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    balance: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"))
    updated_at: Mapped[int] = mapped_column(BigInteger)


class StoreBalanceRecord(BalanceColumns, Base):
    __tablename__ = "store_balances"


class CreditBalanceRecord(BalanceColumns, Base):
    __tablename__ = "customer_credit_balances"


class FiatBalanceRecord(BalanceColumns, Base):
    __tablename__ = "customer_fiat_balances"


LEDGER_RECORDS = {
    LedgerStream.STORE: StoreLedgerRecord,
    LedgerStream.CREDIT: CreditLedgerRecord,
    LedgerStream.FIAT: FiatLedgerRecord,
}

BALANCE_RECORDS = {
    LedgerStream.STORE: StoreBalanceRecord,
    LedgerStream.CREDIT: CreditBalanceRecord,
    LedgerStream.FIAT: FiatBalanceRecord,
}


def _order_values(order: Order) -> dict:
    values = order.model_dump(exclude={"items", "checkout_attributes"})
    values["order_status"] = int(order.order_status)
    values["payment_status"] = int(order.payment_status)
    values.update(order.model_dump(mode="json", include={"items", "checkout_attributes"}))
    return values


def _entry_from_record(stream: LedgerStream, record) -> LedgerEntry:
    data = {c.key: getattr(record, c.key) for c in record.__table__.columns if c.key != "seq"}
    data["stream"] = stream
    if stream == LedgerStream.STORE:
        return StoreLedgerEntry.model_validate(data)
    return LedgerEntry.model_validate(data)


class SqlUnitOfWork(UnitOfWork):
    def __init__(self, session: Session):
        self.session = session

    def get_order(self, order_id: str, for_update: bool = False) -> Optional[Order]:
        stmt = select(OrderRecord).where(OrderRecord.id == order_id)
        if for_update:
            stmt = stmt.with_for_update()
        record = self.session.execute(stmt).scalar_one_or_none()
        return Order.model_validate(record) if record else None

    def add_order(self, order: Order) -> Order:
        self.session.add(OrderRecord(**_order_values(order)))
        self._flush(f"Order {order.id} already exists")
        return order

    def save_order(self, order: Order) -> None:
        record = self.session.get(OrderRecord, order.id)
        if record is None:
            self.add_order(order)
            return
        for key, value in _order_values(order).items():
            setattr(record, key, value)
        self.session.flush()

    def lock_account(self, account: Account) -> None:
        model = BALANCE_RECORDS[account.stream]
        self._ensure_balance_row(model, account)
        stmt = (
            select(model)
            .where(model.store_id == account.store_id, model.account_key == account.account_key)
            .with_for_update()
        )
        self.session.execute(stmt).scalar_one()

    def _ensure_balance_row(self, model, account: Account) -> None:
        values = {
            "store_id": account.store_id,
            "account_key": account.account_key,
            "balance": Decimal("0"),
            "updated_at": now_epoch_ms(),
        }
        dialect = self.session.get_bind().dialect.name
        if dialect == "postgresql":
            stmt = postgresql.insert(model).values(**values)
        elif dialect == "sqlite":
            stmt = sqlite.insert(model).values(**values)
        else:
            if self.session.get(model, (account.store_id, account.account_key)) is None:
                self.session.add(model(**values))
                self.session.flush()
            return
        self.session.execute(stmt.on_conflict_do_nothing(index_elements=["store_id", "account_key"]))

    def last_entry(self, account: Account) -> Optional[LedgerEntry]:
        model = LEDGER_RECORDS[account.stream]
        stmt = (
            select(model)
            .where(model.store_id == account.store_id, model.account_key == account.account_key)
            .order_by(model.seq.desc())
            .limit(1)
        )
        record = self.session.execute(stmt).scalar_one_or_none()
        return _entry_from_record(account.stream, record) if record else None

    def list_entries(self, account: Account) -> list[LedgerEntry]:
        model = LEDGER_RECORDS[account.stream]
        stmt = (
            select(model)
            .where(model.store_id == account.store_id, model.account_key == account.account_key)
            .order_by(model.seq)
        )
        return [_entry_from_record(account.stream, r) for r in self.session.execute(stmt).scalars()]

    def find_entries(self, stream, reference_id, entry_types=None, store_id=None):
        model = LEDGER_RECORDS[stream]
        stmt = select(model).where(model.reference_id == reference_id)
        if entry_types:
            stmt = stmt.where(model.entry_type.in_([getattr(t, "value", t) for t in entry_types]))
        if store_id is not None:
            stmt = stmt.where(model.store_id == store_id)
        stmt = stmt.order_by(model.seq)
        return [_entry_from_record(stream, r) for r in self.session.execute(stmt).scalars()]

    def add_entry(self, entry: LedgerEntry) -> None:
        model = LEDGER_RECORDS[entry.stream]
        self.session.add(model(**entry.model_dump(exclude={"stream"})))
        self._flush(f"{entry.stream.value} entry for reference {entry.reference_id} already exists")

    def get_balance(self, account: Account) -> Optional[AccountBalance]:
        record = self.session.get(BALANCE_RECORDS[account.stream], (account.store_id, account.account_key))
        if record is None:
            return None
        return AccountBalance(
            stream=account.stream,
            store_id=record.store_id,
            account_key=record.account_key,
            balance=record.balance,
            updated_at=record.updated_at,
        )

    def set_balance(self, account: Account, balance: Decimal, updated_at: int) -> None:
        model = BALANCE_RECORDS[account.stream]
        record = self.session.get(model, (account.store_id, account.account_key))
        if record is None:
            record = model(store_id=account.store_id, account_key=account.account_key)
            self.session.add(record)
        record.balance = balance
        record.updated_at = updated_at
        self.session.flush()

    def _flush(self, duplicate_message: str) -> None:
        try:
            self.session.flush()
        except IntegrityError as e:
            raise DuplicateReferenceError(duplicate_message) from e


def _engine_options(database_url: str) -> dict:
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        return {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
    if database_url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}


class SqlStorage(Storage):
    def __init__(self, database_url: str = "sqlite://", echo: bool = False, engine=None):
        self.engine = engine or create_engine(database_url, echo=echo, **_engine_options(database_url))
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False, autoflush=False)

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    def drop_all(self) -> None:
        Base.metadata.drop_all(self.engine)

    @contextmanager
    def transaction(self) -> Iterator[SqlUnitOfWork]:
        session = self.session_factory()
        try:
            yield SqlUnitOfWork(session)
            session.commit()
        except IntegrityError as e:
            session.rollback()
            raise DuplicateReferenceError(str(e.orig)) from e
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("ledger transaction failed", extra={"error": str(e)})
            raise StorageFailureError(str(e)) from e
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()
