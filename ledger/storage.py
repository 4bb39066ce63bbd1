import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from decimal import Decimal
from typing import Iterable, Iterator, Optional

from .errors import DuplicateReferenceError
from .models import (
    Account,
    AccountBalance,
    CreditLedgerType,
    LedgerEntry,
    LedgerStream,
    Order,
    StoreLedgerEntry,
)


class UnitOfWork(ABC):
    """Reads and writes that commit or roll back together.

    ``lock_account`` and ``get_order(for_update=True)`` hold their lock until
    the unit of work ends, so checks made after taking the lock stay valid
    for the writes that follow.
    """

    @abstractmethod
    def get_order(self, order_id: str, for_update: bool = False) -> Optional[Order]: ...

    @abstractmethod
    def add_order(self, order: Order) -> Order: ...

    @abstractmethod
    def save_order(self, order: Order) -> None: ...

    @abstractmethod
    def lock_account(self, account: Account) -> None: ...

    @abstractmethod
    def last_entry(self, account: Account) -> Optional[LedgerEntry]: ...

    @abstractmethod
    def list_entries(self, account: Account) -> list[LedgerEntry]: ...

    @abstractmethod
    def find_entries(
        self,
        stream: LedgerStream,
        reference_id: str,
        entry_types: Optional[Iterable[str]] = None,
        store_id: Optional[str] = None,
    ) -> list[LedgerEntry]: ...

    @abstractmethod
    def add_entry(self, entry: LedgerEntry) -> None: ...

    @abstractmethod
    def get_balance(self, account: Account) -> Optional[AccountBalance]: ...

    @abstractmethod
    def set_balance(self, account: Account, balance: Decimal, updated_at: int) -> None: ...


class Storage(ABC):
    @abstractmethod
    def transaction(self) -> Iterator[UnitOfWork]: ...


REFUND = CreditLedgerType.REFUND.value


def violates_uniqueness(entry: LedgerEntry, existing: Iterable[LedgerEntry]) -> bool:
    for other in existing:
        if other.id == entry.id:
            return True
        if isinstance(entry, StoreLedgerEntry):
            # one settlement and at most one reversal per order
            if (
                isinstance(other, StoreLedgerEntry)
                and other.order_id == entry.order_id
                and (other.entry_type == REFUND) == (entry.entry_type == REFUND)
            ):
                return True
        elif (
            entry.entry_type == REFUND
            and entry.reference_id is not None
            and other.entry_type == REFUND
            and other.reference_id == entry.reference_id
        ):
            return True
    return False


class InMemoryStorage(Storage):
    def __init__(self):
        self.orders: dict[str, Order] = {}
        self.ledger_entries: dict[LedgerStream, list[LedgerEntry]] = {s: [] for s in LedgerStream}
        self.balances: dict[Account, AccountBalance] = {}
        self._commit_lock = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(key, threading.Lock())

    @contextmanager
    def transaction(self) -> Iterator["InMemoryUnitOfWork"]:
        uow = InMemoryUnitOfWork(self)
        try:
            yield uow
            uow.commit()
        finally:
            uow.release()


class InMemoryUnitOfWork(UnitOfWork):
    def __init__(self, storage: InMemoryStorage):
        self.storage = storage
        self._held: list[threading.Lock] = []
        self._held_keys: set[str] = set()
        self._orders: dict[str, Order] = {}
        self._new_order_ids: set[str] = set()
        self._entries: list[LedgerEntry] = []
        self._balances: dict[Account, AccountBalance] = {}

    def _acquire(self, key: str) -> None:
        if key in self._held_keys:
            return
        lock = self.storage.lock_for(key)
        lock.acquire()
        self._held.append(lock)
        self._held_keys.add(key)

    def release(self) -> None:
        while self._held:
            self._held.pop().release()
        self._held_keys.clear()

    def get_order(self, order_id: str, for_update: bool = False) -> Optional[Order]:
        if for_update:
            self._acquire(f"order:{order_id}")
        order = self._orders.get(order_id) or self.storage.orders.get(order_id)
        return order.model_copy(deep=True) if order else None

    def add_order(self, order: Order) -> Order:
        if order.id in self._orders or order.id in self.storage.orders:
            raise DuplicateReferenceError(f"Order {order.id} already exists")
        self._orders[order.id] = order.model_copy(deep=True)
        self._new_order_ids.add(order.id)
        return order

    def save_order(self, order: Order) -> None:
        self._orders[order.id] = order.model_copy(deep=True)

    def lock_account(self, account: Account) -> None:
        self._acquire(f"account:{account.stream.value}:{account.store_id}:{account.account_key}")

    def _stream_entries(self, stream: LedgerStream) -> list[LedgerEntry]:
        return self.storage.ledger_entries[stream] + [e for e in self._entries if e.stream == stream]

    def last_entry(self, account: Account) -> Optional[LedgerEntry]:
        for entry in reversed(self._stream_entries(account.stream)):
            if entry.account == account:
                return entry
        return None

    def list_entries(self, account: Account) -> list[LedgerEntry]:
        return [e for e in self._stream_entries(account.stream) if e.account == account]

    def find_entries(self, stream, reference_id, entry_types=None, store_id=None):
        types = {str(t.value if hasattr(t, "value") else t) for t in entry_types} if entry_types else None
        return [
            e for e in self._stream_entries(stream)
            if e.reference_id == reference_id
            and (types is None or e.entry_type in types)
            and (store_id is None or e.store_id == store_id)
        ]

    def add_entry(self, entry: LedgerEntry) -> None:
        if violates_uniqueness(entry, self._stream_entries(entry.stream)):
            raise DuplicateReferenceError(
                f"{entry.stream.value} entry for reference {entry.reference_id} already exists"
            )
        self._entries.append(entry)

    def get_balance(self, account: Account) -> Optional[AccountBalance]:
        return self._balances.get(account) or self.storage.balances.get(account)

    def set_balance(self, account: Account, balance: Decimal, updated_at: int) -> None:
        self._balances[account] = AccountBalance(
            stream=account.stream,
            store_id=account.store_id,
            account_key=account.account_key,
            balance=balance,
            updated_at=updated_at,
        )

    def commit(self) -> None:
        with self.storage._commit_lock:
            for order_id in self._new_order_ids:
                if order_id in self.storage.orders:
                    raise DuplicateReferenceError(f"Order {order_id} already exists")
            for entry in self._entries:
                if violates_uniqueness(entry, self.storage.ledger_entries[entry.stream]):
                    raise DuplicateReferenceError(
                        f"{entry.stream.value} entry for reference {entry.reference_id} already exists"
                    )
            self.storage.orders.update(self._orders)
            for entry in self._entries:
                self.storage.ledger_entries[entry.stream].append(entry)
            self.storage.balances.update(self._balances)
        self._orders, self._entries, self._balances = {}, [], {}
        self._new_order_ids = set()
