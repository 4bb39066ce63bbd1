import logging
from decimal import Decimal
from typing import Optional
from uuid import NAMESPACE_URL, uuid4, uuid5

from .catalog import Catalog
from .errors import DuplicateReferenceError, NotFoundError, ValidationFailedError, WrongWorkflowError
from .models import (
    CUSTOMER_STREAMS,
    Account,
    CreditLedgerType,
    LedgerEntry,
    LedgerStream,
    MarkOrderPaidRequest,
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    ProductMarker,
    RechargeOrderRequest,
    SettlementResponse,
    StoreLedgerDetails,
    StoreLedgerType,
    StoreSettings,
    TopUpRequest,
    TopUpResponse,
)
from .service import LedgerService
from .settlement import SettlementService
from .storage import UnitOfWork
from .utils import cash_to_points, now_epoch_ms, to_amount

logger = logging.getLogger(__name__)

STREAM_MARKERS = {
    LedgerStream.CREDIT: ProductMarker.CREDIT_RECHARGE,
    LedgerStream.FIAT: ProductMarker.FIAT_REFILL,
}


def bonus_for(store: StoreSettings, points: Decimal) -> Decimal:
    """Bonus points from the active rule with the largest threshold the recharge reaches."""
    best = None
    for rule in store.credit_bonus_rules:
        if not rule.is_active or rule.threshold > points:
            continue
        if best is None or rule.threshold > best.threshold:
            best = rule
    return to_amount(best.bonus) if best else Decimal("0")


def stream_unit(stream: LedgerStream, currency: str) -> str:
    return "point" if stream == LedgerStream.CREDIT else currency


class TopUpService:
    """Customer credit and fiat refills, each anchored to an order on the Store Ledger."""

    def __init__(self, ledger: LedgerService, catalog: Catalog, settlement: SettlementService):
        self.ledger = ledger
        self.storage = ledger.storage
        self.catalog = catalog
        self.settlement = settlement

    def _credited_amount(self, store: StoreSettings, request: TopUpRequest) -> Decimal:
        explicit = request.credit_amount if request.stream == LedgerStream.CREDIT else request.fiat_amount
        if request.is_paid:
            if request.cash_amount is None or request.cash_amount <= 0:
                raise ValidationFailedError("A paid top-up requires a positive cash amount")
            if explicit is not None:
                return to_amount(explicit)
            if request.stream == LedgerStream.CREDIT:
                return cash_to_points(request.cash_amount, store.credit_exchange_rate)
            return to_amount(request.cash_amount)
        if explicit is None:
            raise ValidationFailedError(f"A promotional top-up requires the {request.stream.value.lower()} amount")
        return to_amount(explicit)

    def _anchor_order_id(self, store_id: str, request: TopUpRequest) -> str:
        if request.idempotency_key:
            return str(uuid5(NAMESPACE_URL, f"topup:{store_id}:{request.customer_id}:{request.idempotency_key}"))
        return str(uuid4())

    def _replay(self, order: Order, stream: LedgerStream) -> TopUpResponse:
        with self.storage.transaction() as uow:
            store_entries = uow.find_entries(LedgerStream.STORE, order.id)
            account_entries = uow.find_entries(stream, order.id, [CreditLedgerType.RECHARGE])
        account_entry = account_entries[0] if account_entries else None
        total = account_entry.amount if account_entry else Decimal("0")
        return TopUpResponse(
            order=order,
            store_entry=store_entries[0] if store_entries else None,
            account_entry=account_entry,
            amount=total,
            total_credit=total,
            already_processed=True,
            message="Top-up already processed",
        )

    def top_up(self, store_id: str, request: TopUpRequest) -> TopUpResponse:
        if request.stream not in CUSTOMER_STREAMS:
            raise ValidationFailedError(f"Cannot top up the {request.stream.value} ledger")

        store = self.catalog.get_store(store_id)
        customer = self.catalog.get_customer(request.customer_id)
        amount = self._credited_amount(store, request)
        if amount <= 0:
            raise ValidationFailedError("Top-up amount must be positive")

        bonus = bonus_for(store, amount) if request.stream == LedgerStream.CREDIT else Decimal("0")
        total_credit = amount + bonus
        cash = to_amount(request.cash_amount) if request.is_paid else Decimal("0")

        method = self.catalog.find_payment_method("cash" if request.is_paid else "promo")
        shipping = self.catalog.find_shipping_method("digital")
        product = self.catalog.ensure_product(store_id, STREAM_MARKERS[request.stream])
        unit = stream_unit(request.stream, store.default_currency)

        order_id = self._anchor_order_id(store_id, request)
        now = now_epoch_ms()
        order = Order(
            id=order_id,
            store_id=store_id,
            customer_id=customer.id,
            order_total=cash,
            currency=store.default_currency,
            payment_method_id=method.id,
            shipping_method_id=shipping.id,
            is_paid=True,
            paid_date=now,
            order_status=OrderStatus.CONFIRMED,
            payment_status=PaymentStatus.PAID,
            items=[OrderItem(
                product_id=product.id,
                name=product.name,
                unit_price=cash,
                marker=product.marker,
            )],
            note=request.note or "",
            created_at=now,
            updated_at=now,
        )
        note = request.note or f"{method.name} top-up, order:{order_id}"

        try:
            with self.storage.transaction() as uow:
                existing = uow.get_order(order_id, for_update=True)
                if existing is not None:
                    replay_order = existing
                else:
                    replay_order = None
                    uow.add_order(order)
                    store_entry = self.ledger.append(
                        uow,
                        Account.store(store_id),
                        StoreLedgerType.RECHARGE,
                        cash,
                        reference_id=order_id,
                        note=note,
                        actor_id=request.actor_id,
                        currency=store.default_currency,
                        details=StoreLedgerDetails(availability=now),
                    )
                    account_entry = self.ledger.append(
                        uow,
                        Account.customer(request.stream, store_id, customer.id),
                        CreditLedgerType.RECHARGE,
                        total_credit,
                        reference_id=order_id,
                        note=note,
                        actor_id=request.actor_id,
                        currency=unit,
                    )
        except DuplicateReferenceError:
            logger.warning("concurrent top-up with the same idempotency key", extra={"order_id": order_id})
            return self._replay(self.settlement.load_order(order_id), request.stream)

        if replay_order is not None:
            return self._replay(replay_order, request.stream)

        logger.info(
            "customer topped up",
            extra={
                "order_id": order_id,
                "store_id": store_id,
                "customer_id": customer.id,
                "stream": request.stream.value,
                "is_paid": request.is_paid,
                "cash": str(cash),
                "amount": str(amount),
                "bonus": str(bonus),
            },
        )
        return TopUpResponse(
            order=order,
            store_entry=store_entry,
            account_entry=account_entry,
            amount=amount,
            bonus=bonus,
            total_credit=total_credit,
            message=f"Added {total_credit} {unit} to {request.stream.value.lower()} balance",
        )

    def create_recharge_order(self, store_id: str, request: RechargeOrderRequest) -> Order:
        """Open an unpaid recharge order for a customer to pay through a gateway."""
        if request.stream not in CUSTOMER_STREAMS:
            raise ValidationFailedError(f"Cannot recharge the {request.stream.value} ledger")
        if request.cash_amount <= 0:
            raise ValidationFailedError("Recharge amount must be positive")

        store = self.catalog.get_store(store_id)
        customer = self.catalog.get_customer(request.customer_id)
        method = self.catalog.get_payment_method(request.payment_method_id)
        shipping = self.catalog.find_shipping_method("digital")
        product = self.catalog.ensure_product(store_id, STREAM_MARKERS[request.stream])
        cash = to_amount(request.cash_amount)

        now = now_epoch_ms()
        order = Order(
            id=str(uuid4()),
            store_id=store_id,
            customer_id=customer.id,
            order_total=cash,
            currency=store.default_currency,
            payment_method_id=method.id,
            shipping_method_id=shipping.id,
            items=[OrderItem(product_id=product.id, name=product.name, unit_price=cash, marker=product.marker)],
            created_at=now,
            updated_at=now,
        )
        with self.storage.transaction() as uow:
            uow.add_order(order)
        return order

    def _recharge_credit(self, store: StoreSettings, stream: LedgerStream, order: Order) -> tuple[Decimal, Decimal]:
        if stream == LedgerStream.CREDIT:
            points = cash_to_points(order.order_total, store.credit_exchange_rate)
            return points, bonus_for(store, points)
        return to_amount(order.order_total), Decimal("0")

    def _settled_recharge(self, uow: UnitOfWork, order: Order, stream: LedgerStream) -> Optional[LedgerEntry]:
        entries = uow.find_entries(stream, order.id, [CreditLedgerType.RECHARGE])
        return entries[0] if entries else None

    def settle_recharge_order(
        self, order_id: str, request: Optional[MarkOrderPaidRequest] = None
    ) -> SettlementResponse:
        """Settle a gateway-paid recharge order onto the Store Ledger and the customer's balance."""
        request = request or MarkOrderPaidRequest()
        order = self.settlement.load_order(order_id)
        stream = order.recharge_stream()
        if stream is None:
            raise WrongWorkflowError(f"Order {order_id} is not a recharge order")
        if not order.customer_id:
            raise ValidationFailedError("Recharge orders require a customer")

        store = self.catalog.get_store(order.store_id)
        method = self.catalog.get_payment_method(request.payment_method_id or order.payment_method_id)

        try:
            with self.storage.transaction() as uow:
                order = uow.get_order(order_id, for_update=True)
                if order is None:
                    raise NotFoundError(f"Order {order_id} not found")
                settled = self._settled_recharge(uow, order, stream)
                if settled is not None:
                    if not order.is_paid:
                        order.is_paid = True
                        order.payment_status = PaymentStatus.PAID
                        order.updated_at = now_epoch_ms()
                        uow.save_order(order)
                    return SettlementResponse(
                        order=order,
                        customer_entry=settled,
                        already_processed=True,
                        message="Recharge already settled",
                    )

                order, store_entry = self.settlement.apply_payment(
                    uow, order, store, method,
                    checkout_attributes=request.checkout_attributes,
                    actor_id=request.actor_id,
                    ledger_type=StoreLedgerType.RECHARGE,
                    order_status=OrderStatus.COMPLETED,
                )
                credited, bonus = self._recharge_credit(store, stream, order)
                customer_entry = self.ledger.append(
                    uow,
                    Account.customer(stream, order.store_id, order.customer_id),
                    CreditLedgerType.RECHARGE,
                    credited + bonus,
                    reference_id=order.id,
                    note=f"{method.name} recharge, order:{order.id}",
                    actor_id=request.actor_id or order.customer_id,
                    currency=stream_unit(stream, order.currency),
                )
        except DuplicateReferenceError:
            logger.warning("concurrent recharge settlement lost the race", extra={"order_id": order_id})
            return SettlementResponse(
                order=self.settlement.load_order(order_id), already_processed=True, message="Recharge already settled"
            )

        logger.info(
            "recharge order settled",
            extra={
                "order_id": order.id,
                "store_id": order.store_id,
                "customer_id": order.customer_id,
                "stream": stream.value,
                "credited": str(credited),
                "bonus": str(bonus),
            },
        )
        return SettlementResponse(
            order=order,
            ledger_entry=store_entry,
            customer_entry=customer_entry,
            message="Recharge order settled",
        )
