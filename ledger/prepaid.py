import logging
from decimal import Decimal
from uuid import NAMESPACE_URL, uuid5

from .catalog import Catalog
from .errors import DuplicateReferenceError, InsufficientFundsError
from .models import (
    Account,
    CreditLedgerType,
    LedgerStream,
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    PrepaidHoldRequest,
    PrepaidHoldResponse,
    ProductMarker,
    ReservationStatus,
)
from .service import LedgerService
from .storage import UnitOfWork
from .utils import cash_to_points, ceil_whole, now_epoch_ms, points_to_cash

logger = logging.getLogger(__name__)


class PrepaidHoldService:
    """Hold a reservation's prepayment out of the customer's credit points.

    Nothing reaches the Store Ledger here; the hold is settled or refunded
    later by the reservation lifecycle.
    """

    def __init__(self, ledger: LedgerService, catalog: Catalog):
        self.ledger = ledger
        self.storage = ledger.storage
        self.catalog = catalog

    def _anchor_order_id(self, store_id: str, reservation_id: str) -> str:
        return str(uuid5(NAMESPACE_URL, f"prepaid:{store_id}:{reservation_id}"))

    def _replay(self, uow: UnitOfWork, order_id: str, pending: PrepaidHoldResponse) -> PrepaidHoldResponse:
        holds = uow.find_entries(LedgerStream.CREDIT, order_id, [CreditLedgerType.HOLD])
        return pending.model_copy(update={
            "status": ReservationStatus.READY,
            "already_paid": True,
            "already_processed": True,
            "order_id": order_id,
            "ledger_entry": holds[0] if holds else None,
        })

    def hold(self, store_id: str, request: PrepaidHoldRequest) -> PrepaidHoldResponse:
        total_cost = request.total_cost or Decimal("0")
        if request.prepaid_percentage <= 0 or total_cost <= 0:
            return PrepaidHoldResponse(status=ReservationStatus.READY_TO_CONFIRM)

        required_prepaid = ceil_whole(total_cost * request.prepaid_percentage / 100)
        store = self.catalog.get_store(store_id)
        if not store.use_customer_credit or not request.customer_id:
            return PrepaidHoldResponse(status=ReservationStatus.PENDING, required_prepaid=required_prepaid)

        required_credit = cash_to_points(required_prepaid, store.credit_exchange_rate)
        account = Account.customer(LedgerStream.CREDIT, store_id, request.customer_id)
        pending = PrepaidHoldResponse(
            status=ReservationStatus.PENDING,
            required_prepaid=required_prepaid,
            required_credit=required_credit,
        )
        method = self.catalog.find_payment_method("credit")
        shipping = self.catalog.find_shipping_method("reserve")
        product = self.catalog.ensure_product(store_id, ProductMarker.RESERVATION_PREPAID)
        order_total = points_to_cash(required_credit, store.credit_exchange_rate)
        item_name = f"{product.name} - {request.facility_name}" if request.facility_name else product.name

        now = now_epoch_ms()
        order = Order(
            id=self._anchor_order_id(store_id, request.reservation_id),
            store_id=store_id,
            customer_id=request.customer_id,
            order_total=order_total,
            currency=store.default_currency,
            payment_method_id=method.id,
            shipping_method_id=shipping.id,
            is_paid=True,
            paid_date=now,
            order_status=OrderStatus.CONFIRMED,
            payment_status=PaymentStatus.PAID,
            items=[OrderItem(product_id=product.id, name=item_name, unit_price=order_total, marker=product.marker)],
            checkout_attributes={
                "reservation_id": request.reservation_id,
                "reservation_time": request.reservation_time,
            },
            created_at=now,
            updated_at=now,
        )

        try:
            with self.storage.transaction() as uow:
                # one hold per reservation
                if uow.get_order(order.id, for_update=True) is not None:
                    return self._replay(uow, order.id, pending)
                if self.ledger.current_balance(uow, account) < required_credit:
                    return pending
                uow.add_order(order)
                entry = self.ledger.append(
                    uow,
                    account,
                    CreditLedgerType.HOLD,
                    -required_credit,
                    reference_id=order.id,
                    note=f"Prepaid hold, reservation:{request.reservation_id}",
                    actor_id=request.customer_id,
                    currency="point",
                )
        except InsufficientFundsError:
            # another debit drained the balance after the first check
            logger.info(
                "prepaid hold lost a race, leaving reservation pending",
                extra={"reservation_id": request.reservation_id, "customer_id": request.customer_id},
            )
            return pending
        except DuplicateReferenceError:
            with self.storage.transaction() as uow:
                return self._replay(uow, order.id, pending)

        logger.info(
            "prepaid credit held",
            extra={
                "order_id": order.id,
                "store_id": store_id,
                "reservation_id": request.reservation_id,
                "customer_id": request.customer_id,
                "required_credit": str(required_credit),
            },
        )
        return PrepaidHoldResponse(
            status=ReservationStatus.READY,
            already_paid=True,
            order_id=order.id,
            required_prepaid=required_prepaid,
            required_credit=required_credit,
            ledger_entry=entry,
        )
