import logging
from decimal import Decimal
from enum import Enum
from typing import Optional, Union
from uuid import uuid4

from .errors import (
    InsufficientFundsError,
    InvalidAmountError,
    ValidationFailedError,
)
from .models import (
    CUSTOMER_STREAMS,
    ENTRY_TYPES,
    Account,
    AccountBalance,
    AppendEntryRequest,
    CreditLedgerType,
    LedgerEntry,
    LedgerHistoryResponse,
    LedgerStream,
    ReconcileReport,
    StoreLedgerDetails,
    StoreLedgerEntry,
    StoreLedgerType,
)
from .storage import InMemoryStorage, Storage, UnitOfWork
from .utils import now_epoch_ms, to_amount

logger = logging.getLogger(__name__)

DEBIT_TYPES = {CreditLedgerType.HOLD.value, CreditLedgerType.SPEND.value}


def _type_value(entry_type: Union[str, Enum]) -> str:
    return entry_type.value if isinstance(entry_type, Enum) else str(entry_type)


class LedgerService:
    """Append-only ledger streams and their materialized balances."""

    def __init__(self, storage: Optional[Storage] = None, default_currency: str = "twd"):
        self.storage = storage or InMemoryStorage()
        self.default_currency = default_currency

    def append(
        self,
        uow: UnitOfWork,
        account: Account,
        entry_type: Union[str, Enum],
        amount,
        *,
        reference_id: Optional[str] = None,
        note: str = "",
        actor_id: Optional[str] = None,
        currency: Optional[str] = None,
        details: Optional[StoreLedgerDetails] = None,
    ) -> LedgerEntry:
        """Append one entry inside the caller's unit of work.

        The account lock is taken before the prior balance is read and is
        held until the unit of work ends.
        """
        entry_type = _type_value(entry_type)
        if entry_type not in ENTRY_TYPES[account.stream]:
            raise ValidationFailedError(f"{entry_type} is not a {account.stream.value} ledger type")

        amount = to_amount(amount)
        # promotional top-ups anchor a zero Store Ledger entry to their order
        zero_allowed = account.stream == LedgerStream.STORE and entry_type == StoreLedgerType.RECHARGE.value
        if amount == 0 and not zero_allowed:
            raise InvalidAmountError("Ledger entry amount must not be zero")
        if account.stream == LedgerStream.STORE:
            if not reference_id:
                raise ValidationFailedError("Store ledger entries must reference an order")
            if details is None:
                raise ValidationFailedError("Store ledger entries require fee details")

        uow.lock_account(account)
        last = uow.last_entry(account)
        prior_balance = last.balance_after if last else Decimal("0")
        balance_after = to_amount(prior_balance + amount)

        if account.stream in CUSTOMER_STREAMS and entry_type in DEBIT_TYPES and balance_after < 0:
            raise InsufficientFundsError(
                f"{account.stream.value} balance {prior_balance} cannot cover {-amount}"
            )

        now = now_epoch_ms()
        fields = dict(
            id=str(uuid4()),
            stream=account.stream,
            store_id=account.store_id,
            account_key=account.account_key,
            entry_type=entry_type,
            amount=amount,
            balance_after=balance_after,
            reference_id=reference_id,
            currency=currency or self.default_currency,
            note=note,
            created_by=actor_id,
            created_at=now,
        )
        if account.stream == LedgerStream.STORE:
            entry = StoreLedgerEntry(order_id=reference_id, **fields, **details.model_dump())
        else:
            entry = LedgerEntry(**fields)

        uow.add_entry(entry)
        uow.set_balance(account, balance_after, now)

        logger.debug(
            "ledger entry appended",
            extra={
                "stream": account.stream.value,
                "store_id": account.store_id,
                "account_key": account.account_key,
                "entry_type": entry_type,
                "amount": str(amount),
                "balance_after": str(balance_after),
                "reference_id": reference_id,
            },
        )
        return entry

    def append_entry(self, request: AppendEntryRequest, details: Optional[StoreLedgerDetails] = None) -> LedgerEntry:
        account = Account(request.stream, request.store_id, request.account_key or request.store_id)
        with self.storage.transaction() as uow:
            return self.append(
                uow,
                account,
                request.entry_type,
                request.amount,
                reference_id=request.reference_id,
                note=request.note,
                actor_id=request.actor_id,
                details=details,
            )

    def current_balance(self, uow: UnitOfWork, account: Account) -> Decimal:
        balance = uow.get_balance(account)
        return balance.balance if balance else Decimal("0")

    def get_balance(self, stream: LedgerStream, store_id: str, account_key: Optional[str] = None) -> AccountBalance:
        account = Account(stream, store_id, account_key or store_id)
        with self.storage.transaction() as uow:
            balance = uow.get_balance(account)
        if balance is None:
            return AccountBalance(stream=stream, store_id=store_id, account_key=account.account_key, balance=Decimal("0"))
        return balance

    def get_history(
        self,
        stream: LedgerStream,
        store_id: str,
        account_key: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> LedgerHistoryResponse:
        account = Account(stream, store_id, account_key or store_id)
        with self.storage.transaction() as uow:
            entries = uow.list_entries(account)
            balance = self.current_balance(uow, account)
        entries.reverse()
        return LedgerHistoryResponse(
            stream=stream,
            store_id=store_id,
            account_key=account.account_key,
            entries=entries[offset:offset + limit],
            total_count=len(entries),
            current_balance=balance,
        )

    def reconcile(self, stream: LedgerStream, store_id: str, account_key: Optional[str] = None) -> ReconcileReport:
        """Replay an account and compare every snapshot with the running sum."""
        account = Account(stream, store_id, account_key or store_id)
        with self.storage.transaction() as uow:
            entries = uow.list_entries(account)
            materialized = self.current_balance(uow, account)

        running = Decimal("0")
        broken = []
        for entry in entries:
            running += entry.amount
            if entry.balance_after != running:
                broken.append(entry.id)

        report = ReconcileReport(
            stream=stream,
            store_id=store_id,
            account_key=account.account_key,
            consistent=not broken and running == materialized,
            entry_count=len(entries),
            ledger_balance=running,
            materialized_balance=materialized,
            broken_entry_ids=broken,
        )
        if not report.consistent:
            logger.warning("ledger account out of balance", extra=report.model_dump(mode="json"))
        return report
