"""Refunds back onto the ledger stream that funded an order.

A refund is the mirror of the customer-side debit that paid the order: a
credit ``HOLD`` (prepaid reservation) or ``SPEND``, otherwise a fiat
``SPEND``. At most one ``REFUND`` exists per order on each stream. Refunding a
spend also takes the order's settled revenue back off the Store Ledger.
"""

import logging
from typing import Optional

from .catalog import Catalog
from .errors import DuplicateReferenceError
from .models import (
    Account,
    CancelReservationRequest,
    CancelReservationResponse,
    CreditLedgerType,
    FiatLedgerType,
    LedgerEntry,
    LedgerStream,
    OrderStatus,
    PaymentStatus,
    RefundRequest,
    RefundResponse,
    StoreLedgerDetails,
    StoreLedgerEntry,
    StoreLedgerType,
)
from .policy import CancelHoursPolicy
from .service import LedgerService
from .storage import UnitOfWork
from .utils import now_epoch_ms, points_to_cash, to_amount

logger = logging.getLogger(__name__)

# checked in order; the first stream with a matching debit funded the order
FUNDING_SOURCES = (
    (LedgerStream.CREDIT, (CreditLedgerType.HOLD, CreditLedgerType.SPEND)),
    (LedgerStream.FIAT, (FiatLedgerType.SPEND,)),
)

SETTLEMENT_TYPES = (StoreLedgerType.HOLD_BY_PLATFORM, StoreLedgerType.STORE_PAYMENT_PROVIDER)


class RefundService:
    def __init__(self, ledger: LedgerService, catalog: Catalog, policy: Optional[CancelHoursPolicy] = None):
        self.ledger = ledger
        self.storage = ledger.storage
        self.catalog = catalog
        self.policy = policy or CancelHoursPolicy()

    def _funding_entry(self, uow: UnitOfWork, order_id: str, store_id: str) -> Optional[LedgerEntry]:
        for stream, entry_types in FUNDING_SOURCES:
            for entry_type in entry_types:
                entries = uow.find_entries(stream, order_id, [entry_type], store_id=store_id)
                if entries:
                    return entries[-1]
        return None

    def _reverse_revenue(
        self, uow: UnitOfWork, order_id: str, store_id: str, request: RefundRequest
    ) -> Optional[StoreLedgerEntry]:
        """Take a spent order's settled revenue back off the Store Ledger.

        Holds never reached the Store Ledger, so only spends are reversed.
        """
        settled = uow.find_entries(LedgerStream.STORE, order_id, SETTLEMENT_TYPES, store_id=store_id)
        if not settled or settled[0].amount == 0:
            return None
        revenue = settled[0]
        return self.ledger.append(
            uow,
            Account.store(store_id),
            StoreLedgerType.REFUND,
            -revenue.amount,
            reference_id=order_id,
            note=request.reason or f"Refund, order:{order_id}",
            actor_id=request.actor_id,
            currency=revenue.currency,
            details=StoreLedgerDetails(
                fee=-revenue.fee,
                fee_tax=-revenue.fee_tax,
                platform_fee=-revenue.platform_fee,
                availability=now_epoch_ms(),
            ),
        )

    def refund_order(self, order_id: str, request: Optional[RefundRequest] = None) -> RefundResponse:
        request = request or RefundRequest()
        try:
            with self.storage.transaction() as uow:
                order = uow.get_order(order_id, for_update=True)
                if order is None:
                    return RefundResponse(refunded=False, reason=f"Order {order_id} not found")
                if not order.is_paid:
                    return RefundResponse(refunded=False, reason="Order is not paid")

                funding = self._funding_entry(uow, order.id, order.store_id)
                if funding is None:
                    return RefundResponse(
                        refunded=False,
                        reason="Order was not paid from credit points or account balance",
                    )
                if uow.find_entries(funding.stream, order.id, [CreditLedgerType.REFUND]):
                    return RefundResponse(refunded=False, stream=funding.stream, reason="Order already refunded")

                refund_amount = abs(funding.amount)
                store_entry = None
                if funding.entry_type != CreditLedgerType.HOLD.value:
                    store_entry = self._reverse_revenue(uow, order.id, order.store_id, request)
                entry = self.ledger.append(
                    uow,
                    funding.account,
                    CreditLedgerType.REFUND,
                    refund_amount,
                    reference_id=order.id,
                    note=request.reason or f"Refund of {funding.entry_type.lower()}, order:{order.id}",
                    actor_id=request.actor_id,
                    currency=funding.currency,
                )

                if funding.stream == LedgerStream.CREDIT:
                    store = self.catalog.get_store(order.store_id)
                    cash_value = points_to_cash(refund_amount, store.credit_exchange_rate)
                else:
                    cash_value = to_amount(refund_amount)
                order.order_status = OrderStatus.REFUNDED
                order.payment_status = PaymentStatus.REFUNDED
                order.refund_amount = cash_value
                order.updated_at = now_epoch_ms()
                uow.save_order(order)
        except DuplicateReferenceError:
            logger.warning("concurrent refund lost the race", extra={"order_id": order_id})
            return RefundResponse(refunded=False, reason="Order already refunded")

        logger.info(
            "order refunded",
            extra={
                "order_id": order_id,
                "store_id": order.store_id,
                "stream": funding.stream.value,
                "refund_amount": str(refund_amount),
                "cash_value": str(cash_value),
                "store_reversal": str(store_entry.amount) if store_entry else None,
            },
        )
        return RefundResponse(
            refunded=True,
            refund_amount=refund_amount,
            stream=funding.stream,
            ledger_entry=entry,
            store_entry=store_entry,
            reason=request.reason,
        )

    def cancel_reservation(self, store_id: str, request: CancelReservationRequest) -> CancelReservationResponse:
        """Cancel a reservation, refunding its prepayment when cancelled early enough.

        The cancellation always stands; a refund that does not go through is
        reported back and logged.
        """
        store = self.catalog.get_store(store_id)
        now = request.cancelled_at if request.cancelled_at is not None else now_epoch_ms()
        refund_needed = bool(request.order_id) and not self.policy.is_within_no_refund_window(
            request.reservation_time, store, now
        )
        if not refund_needed:
            return CancelReservationResponse(refund_needed=False, reason=request.reason)

        result = self.refund_order(request.order_id, RefundRequest(reason=request.reason, actor_id=request.actor_id))
        if not result.refunded:
            logger.warning(
                "reservation cancelled without refund",
                extra={"store_id": store_id, "order_id": request.order_id, "refund_reason": result.reason},
            )
        return CancelReservationResponse(
            refund_needed=True,
            refunded=result.refunded,
            refund_amount=result.refund_amount,
            reason=result.reason if not result.refunded else request.reason,
        )
