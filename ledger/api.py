from typing import Optional

from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware

from .catalog import Catalog, InMemoryCatalog
from .config import Settings, configure_logging, get_settings
from .errors import (
    AlreadyProcessedError,
    InsufficientFundsError,
    LedgerServiceError,
    NotFoundError,
    StorageFailureError,
    ValidationFailedError,
    WrongWorkflowError,
)
from .models import (
    AccountBalance,
    CancelReservationRequest,
    CancelReservationResponse,
    LedgerHistoryResponse,
    LedgerStream,
    MarkOrderPaidRequest,
    Order,
    PayWithBalanceRequest,
    PrepaidHoldRequest,
    PrepaidHoldResponse,
    RechargeOrderRequest,
    ReconcileReport,
    RefundRequest,
    RefundResponse,
    SettlementResponse,
    TopUpRequest,
    TopUpResponse,
)
from .policy import CancelHoursPolicy
from .prepaid import PrepaidHoldService
from .refund import RefundService
from .service import LedgerService
from .settlement import SettlementService
from .sql import SqlStorage
from .storage import InMemoryStorage, Storage
from .topup import TopUpService

ERROR_STATUS = (
    (ValidationFailedError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (WrongWorkflowError, status.HTTP_409_CONFLICT),
    (InsufficientFundsError, status.HTTP_409_CONFLICT),
    (AlreadyProcessedError, status.HTTP_409_CONFLICT),
    (StorageFailureError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def http_error(error: LedgerServiceError) -> HTTPException:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=str(error))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))


class Services:
    """The workflow services sharing one storage and catalog."""

    def __init__(self, storage: Storage, catalog: Catalog, settings: Settings):
        self.ledger = LedgerService(storage, default_currency=settings.default_currency)
        self.settlement = SettlementService(
            self.ledger,
            catalog,
            platform_fee_rate=settings.platform_fee_rate,
            fee_tax_rate=settings.fee_tax_rate,
        )
        self.topup = TopUpService(self.ledger, catalog, self.settlement)
        self.prepaid = PrepaidHoldService(self.ledger, catalog)
        self.refund = RefundService(self.ledger, catalog, CancelHoursPolicy(settings.default_cancel_hours))


def build_storage(settings: Settings) -> Storage:
    if settings.backend == "sql":
        storage = SqlStorage(settings.database_url, echo=settings.sql_echo)
        storage.create_all()
        return storage
    return InMemoryStorage()


def create_app(
    settings: Optional[Settings] = None,
    storage: Optional[Storage] = None,
    catalog: Optional[Catalog] = None,
    root_path: str = "",
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    services = Services(storage or build_storage(settings), catalog or InMemoryCatalog(), settings)

    app = FastAPI(
        title=settings.PROJECT_NAME,
        description="Ledger and payment settlement for storefront and reservation orders",
        version="1.0.0",
        root_path=root_path,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "store-ledger", "backend": settings.backend}

    @app.post("/orders/{order_id}/mark-paid", response_model=SettlementResponse, tags=["Settlement"])
    def mark_order_paid(order_id: str, request: Optional[MarkOrderPaidRequest] = None) -> SettlementResponse:
        try:
            return services.settlement.mark_order_paid(order_id, request)
        except LedgerServiceError as e:
            raise http_error(e)

    @app.post("/orders/{order_id}/pay-with-balance", response_model=SettlementResponse, tags=["Settlement"])
    def pay_with_balance(order_id: str, request: Optional[PayWithBalanceRequest] = None) -> SettlementResponse:
        try:
            return services.settlement.pay_with_balance(order_id, request)
        except LedgerServiceError as e:
            raise http_error(e)

    @app.post(
        "/stores/{store_id}/top-ups",
        response_model=TopUpResponse,
        status_code=status.HTTP_201_CREATED,
        tags=["Top-up"],
    )
    def top_up(store_id: str, request: TopUpRequest) -> TopUpResponse:
        try:
            return services.topup.top_up(store_id, request)
        except LedgerServiceError as e:
            raise http_error(e)

    @app.post(
        "/stores/{store_id}/recharge-orders",
        response_model=Order,
        status_code=status.HTTP_201_CREATED,
        tags=["Top-up"],
    )
    def create_recharge_order(store_id: str, request: RechargeOrderRequest) -> Order:
        try:
            return services.topup.create_recharge_order(store_id, request)
        except LedgerServiceError as e:
            raise http_error(e)

    @app.post("/orders/{order_id}/settle-recharge", response_model=SettlementResponse, tags=["Top-up"])
    def settle_recharge_order(order_id: str, request: Optional[MarkOrderPaidRequest] = None) -> SettlementResponse:
        try:
            return services.topup.settle_recharge_order(order_id, request)
        except LedgerServiceError as e:
            raise http_error(e)

    @app.post(
        "/stores/{store_id}/reservations/prepaid-hold",
        response_model=PrepaidHoldResponse,
        tags=["Reservations"],
    )
    def prepaid_hold(store_id: str, request: PrepaidHoldRequest) -> PrepaidHoldResponse:
        try:
            return services.prepaid.hold(store_id, request)
        except LedgerServiceError as e:
            raise http_error(e)

    @app.post(
        "/stores/{store_id}/reservations/cancel",
        response_model=CancelReservationResponse,
        tags=["Reservations"],
    )
    def cancel_reservation(store_id: str, request: CancelReservationRequest) -> CancelReservationResponse:
        try:
            return services.refund.cancel_reservation(store_id, request)
        except LedgerServiceError as e:
            raise http_error(e)

    @app.post("/orders/{order_id}/refund", response_model=RefundResponse, tags=["Refunds"])
    def refund_order(order_id: str, request: Optional[RefundRequest] = None) -> RefundResponse:
        try:
            return services.refund.refund_order(order_id, request)
        except LedgerServiceError as e:
            raise http_error(e)

    @app.get("/stores/{store_id}/ledgers/{stream}/balance", response_model=AccountBalance, tags=["Ledger"])
    def get_balance(store_id: str, stream: LedgerStream, account_key: Optional[str] = None) -> AccountBalance:
        try:
            return services.ledger.get_balance(stream, store_id, account_key)
        except LedgerServiceError as e:
            raise http_error(e)

    @app.get("/stores/{store_id}/ledgers/{stream}/history", response_model=LedgerHistoryResponse, tags=["Ledger"])
    def get_history(
        store_id: str,
        stream: LedgerStream,
        account_key: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> LedgerHistoryResponse:
        try:
            return services.ledger.get_history(stream, store_id, account_key, limit, offset)
        except LedgerServiceError as e:
            raise http_error(e)

    @app.get("/stores/{store_id}/ledgers/{stream}/reconcile", response_model=ReconcileReport, tags=["Ledger"])
    def reconcile(store_id: str, stream: LedgerStream, account_key: Optional[str] = None) -> ReconcileReport:
        try:
            return services.ledger.reconcile(stream, store_id, account_key)
        except LedgerServiceError as e:
            raise http_error(e)

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
