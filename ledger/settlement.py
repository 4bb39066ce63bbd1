"""Mark-order-paid settlement.

Every path is idempotent: the "already paid" and "already on the store
ledger" checks run under the order row lock in the same unit of work as the
writes, so a retried or concurrent call finds the first call's result instead
of settling twice.
"""

import logging
from decimal import Decimal
from typing import NamedTuple, Optional

from .catalog import Catalog
from .errors import (
    DuplicateReferenceError,
    NotFoundError,
    ValidationFailedError,
    WrongWorkflowError,
)
from .models import (
    Account,
    CreditLedgerType,
    LedgerStream,
    MarkOrderPaidRequest,
    Order,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    PayWithBalanceRequest,
    SettlementResponse,
    StoreLedgerDetails,
    StoreLedgerEntry,
    StoreLedgerType,
    StoreSettings,
    StoreTier,
)
from .service import LedgerService
from .storage import UnitOfWork
from .utils import DAY_MS, cash_to_points, now_epoch_ms, to_amount

logger = logging.getLogger(__name__)

BALANCE_PAYMENT_METHODS = {
    LedgerStream.CREDIT: "credit",
    LedgerStream.FIAT: "balance",
}


class Fees(NamedTuple):
    use_platform: bool
    fee: Decimal
    fee_tax: Decimal
    platform_fee: Decimal

    @property
    def payment_cost(self) -> Decimal:
        return self.fee + self.fee_tax + self.platform_fee

    @property
    def ledger_type(self) -> StoreLedgerType:
        if self.use_platform:
            return StoreLedgerType.HOLD_BY_PLATFORM
        return StoreLedgerType.STORE_PAYMENT_PROVIDER


class SettlementService:
    def __init__(
        self,
        ledger: LedgerService,
        catalog: Catalog,
        platform_fee_rate: Decimal = Decimal("0.01"),
        fee_tax_rate: Decimal = Decimal("0.05"),
    ):
        self.ledger = ledger
        self.storage = ledger.storage
        self.catalog = catalog
        self.platform_fee_rate = Decimal(platform_fee_rate)
        self.fee_tax_rate = Decimal(fee_tax_rate)

    def compute_fees(self, order_total: Decimal, store: StoreSettings, method: PaymentMethod) -> Fees:
        # platform collects the payment unless a paid store brings its own processor
        use_platform = store.tier == StoreTier.FREE or not store.has_processor_credentials
        fee = Decimal("0")
        if use_platform:
            fee = -to_amount(order_total * method.fee_rate + method.fee_additional)
        fee_tax = to_amount(abs(fee) * self.fee_tax_rate)
        platform_fee = Decimal("0")
        if store.tier == StoreTier.FREE:
            platform_fee = -to_amount(order_total * self.platform_fee_rate)
        return Fees(use_platform, fee, fee_tax, platform_fee)

    def load_order(self, order_id: str) -> Order:
        with self.storage.transaction() as uow:
            order = uow.get_order(order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        return order

    def apply_payment(
        self,
        uow: UnitOfWork,
        order: Order,
        store: StoreSettings,
        method: PaymentMethod,
        *,
        checkout_attributes: Optional[dict] = None,
        actor_id: Optional[str] = None,
        ledger_type: Optional[StoreLedgerType] = None,
        order_status: OrderStatus = OrderStatus.PROCESSING,
    ) -> tuple[Order, StoreLedgerEntry]:
        """Mark ``order`` paid and append its Store Ledger entry.

        The caller must hold the order lock in ``uow``.
        """
        fees = self.compute_fees(order.order_total, store, method)
        availability = order.updated_at + method.clear_days * DAY_MS
        now = now_epoch_ms()

        order.is_paid = True
        order.paid_date = now
        order.order_status = order_status
        order.payment_status = PaymentStatus.PAID
        order.payment_method_id = method.id
        order.payment_cost = fees.payment_cost
        if checkout_attributes:
            order.checkout_attributes = {**order.checkout_attributes, **checkout_attributes}
        order.updated_at = now
        uow.save_order(order)

        entry = self.ledger.append(
            uow,
            Account.store(order.store_id),
            ledger_type or fees.ledger_type,
            order.order_total + fees.fee + fees.platform_fee,
            reference_id=order.id,
            note=(
                f"{method.name}, order:{order.id}, fee {fees.fee}, "
                f"fee tax {fees.fee_tax}, platform fee {fees.platform_fee}"
            ),
            actor_id=actor_id,
            currency=order.currency,
            details=StoreLedgerDetails(
                fee=fees.fee,
                fee_tax=fees.fee_tax,
                platform_fee=fees.platform_fee,
                availability=availability,
            ),
        )
        logger.info(
            "order settled",
            extra={
                "order_id": order.id,
                "store_id": order.store_id,
                "order_total": str(order.order_total),
                "fee": str(fees.fee),
                "fee_tax": str(fees.fee_tax),
                "platform_fee": str(fees.platform_fee),
                "use_platform": fees.use_platform,
                "ledger_entry_id": entry.id,
            },
        )
        return order, entry

    def mark_order_paid(self, order_id: str, request: Optional[MarkOrderPaidRequest] = None) -> SettlementResponse:
        request = request or MarkOrderPaidRequest()
        order = self.load_order(order_id)
        if order.recharge_stream() is not None:
            raise WrongWorkflowError(f"Order {order_id} is a recharge order; settle it as a top-up")

        store = self.catalog.get_store(order.store_id)
        method = self.catalog.get_payment_method(request.payment_method_id or order.payment_method_id)

        try:
            with self.storage.transaction() as uow:
                order = uow.get_order(order_id, for_update=True)
                if order.is_paid:
                    return SettlementResponse(order=order, already_processed=True, message="Order already paid")
                if uow.find_entries(LedgerStream.STORE, order_id):
                    logger.warning("duplicate payment attempt, ledger entry exists", extra={"order_id": order_id})
                    return SettlementResponse(
                        order=order, already_processed=True, message="Store ledger entry already exists"
                    )
                order, entry = self.apply_payment(
                    uow, order, store, method,
                    checkout_attributes=request.checkout_attributes,
                    actor_id=request.actor_id,
                )
        except DuplicateReferenceError:
            logger.warning("concurrent settlement lost the race", extra={"order_id": order_id})
            return SettlementResponse(
                order=self.load_order(order_id), already_processed=True, message="Order already settled"
            )

        return SettlementResponse(order=order, ledger_entry=entry, message="Order marked as paid")

    def pay_with_balance(self, order_id: str, request: Optional[PayWithBalanceRequest] = None) -> SettlementResponse:
        """Pay an unpaid order from the customer's credit points or account balance."""
        request = request or PayWithBalanceRequest()
        if request.stream not in BALANCE_PAYMENT_METHODS:
            raise ValidationFailedError(f"Cannot pay from the {request.stream.value} ledger")

        order = self.load_order(order_id)
        if order.recharge_stream() is not None:
            raise WrongWorkflowError(f"Order {order_id} is a recharge order; settle it as a top-up")
        if not order.customer_id:
            raise ValidationFailedError("Anonymous orders cannot be paid from a customer balance")

        store = self.catalog.get_store(order.store_id)
        if request.stream == LedgerStream.CREDIT and not store.use_customer_credit:
            raise ValidationFailedError(f"Store {store.id} does not use customer credit")
        method = self.catalog.find_payment_method(BALANCE_PAYMENT_METHODS[request.stream])

        try:
            with self.storage.transaction() as uow:
                order = uow.get_order(order_id, for_update=True)
                if order.is_paid or uow.find_entries(LedgerStream.STORE, order_id):
                    return SettlementResponse(order=order, already_processed=True, message="Order already paid")

                if request.stream == LedgerStream.CREDIT:
                    debit = cash_to_points(order.order_total, store.credit_exchange_rate)
                    unit = "point"
                else:
                    debit = to_amount(order.order_total)
                    unit = order.currency
                # store account before customer account
                uow.lock_account(Account.store(order.store_id))
                customer_entry = self.ledger.append(
                    uow,
                    Account.customer(request.stream, order.store_id, order.customer_id),
                    CreditLedgerType.SPEND,
                    -debit,
                    reference_id=order.id,
                    note=f"{method.name}, order:{order.id}",
                    actor_id=request.actor_id or order.customer_id,
                    currency=unit,
                )
                order, entry = self.apply_payment(uow, order, store, method, actor_id=request.actor_id)
        except DuplicateReferenceError:
            return SettlementResponse(
                order=self.load_order(order_id), already_processed=True, message="Order already settled"
            )

        return SettlementResponse(
            order=order, ledger_entry=entry, customer_entry=customer_entry, message="Order paid from balance"
        )
