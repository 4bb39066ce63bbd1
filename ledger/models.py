from decimal import Decimal
from enum import Enum, IntEnum
from typing import NamedTuple, Optional
from pydantic import BaseModel, Field, ConfigDict, SerializeAsAny


class LedgerStream(str, Enum):
    STORE = "STORE"
    CREDIT = "CREDIT"
    FIAT = "FIAT"


class StoreLedgerType(str, Enum):
    HOLD_BY_PLATFORM = "HOLD_BY_PLATFORM"
    STORE_PAYMENT_PROVIDER = "STORE_PAYMENT_PROVIDER"
    RECHARGE = "RECHARGE"
    REFUND = "REFUND"


class CreditLedgerType(str, Enum):
    RECHARGE = "RECHARGE"
    SPEND = "SPEND"
    HOLD = "HOLD"
    REFUND = "REFUND"


class FiatLedgerType(str, Enum):
    RECHARGE = "RECHARGE"
    SPEND = "SPEND"
    REFUND = "REFUND"


ENTRY_TYPES = {
    LedgerStream.STORE: {t.value for t in StoreLedgerType},
    LedgerStream.CREDIT: {t.value for t in CreditLedgerType},
    LedgerStream.FIAT: {t.value for t in FiatLedgerType},
}

CUSTOMER_STREAMS = (LedgerStream.CREDIT, LedgerStream.FIAT)


class OrderStatus(IntEnum):
    PENDING = 10
    PROCESSING = 20
    IN_SHIPPING = 30
    COMPLETED = 40
    CONFIRMED = 50
    REFUNDED = 60
    VOIDED = 90


class PaymentStatus(IntEnum):
    PENDING = 10
    AUTHORIZED = 20
    PAID = 30
    PARTIALLY_REFUNDED = 40
    REFUNDED = 50
    VOIDED = 60


class ReservationStatus(IntEnum):
    PENDING = 0
    READY_TO_CONFIRM = 10
    READY = 40
    COMPLETED = 50
    CANCELLED = 60
    NO_SHOW = 70


class StoreTier(str, Enum):
    FREE = "FREE"
    PRO = "PRO"


class ProductMarker(str, Enum):
    CREDIT_RECHARGE = "CREDIT_RECHARGE"
    FIAT_REFILL = "FIAT_REFILL"
    RESERVATION_PREPAID = "RESERVATION_PREPAID"


RECHARGE_MARKERS = {
    ProductMarker.CREDIT_RECHARGE: LedgerStream.CREDIT,
    ProductMarker.FIAT_REFILL: LedgerStream.FIAT,
}


class Account(NamedTuple):
    """One balance-carrying ledger account; store-wide accounts use the store id as key."""
    stream: LedgerStream
    store_id: str
    account_key: str

    @classmethod
    def store(cls, store_id: str) -> "Account":
        return cls(LedgerStream.STORE, store_id, store_id)

    @classmethod
    def customer(cls, stream: LedgerStream, store_id: str, customer_id: str) -> "Account":
        return cls(stream, store_id, customer_id)


# --- Catalog and store configuration -------------------------------------


class PaymentMethod(BaseModel):
    id: str
    identifier: str
    name: str
    fee_rate: Decimal = Decimal("0")
    fee_additional: Decimal = Decimal("0")
    clear_days: int = 0


class ShippingMethod(BaseModel):
    id: str
    identifier: str
    name: str
    is_default: bool = False


class Product(BaseModel):
    id: str
    store_id: str
    name: str
    marker: Optional[ProductMarker] = None


class Customer(BaseModel):
    id: str
    name: str
    email: Optional[str] = None


class CreditBonusRule(BaseModel):
    threshold: Decimal
    bonus: Decimal
    is_active: bool = True


class StoreSettings(BaseModel):
    id: str
    name: str = ""
    tier: StoreTier = StoreTier.FREE
    has_processor_credentials: bool = False
    credit_exchange_rate: Decimal = Decimal("1")
    use_customer_credit: bool = False
    default_currency: str = "twd"
    default_timezone: str = "Asia/Taipei"
    cancel_hours: Optional[int] = None
    credit_bonus_rules: list[CreditBonusRule] = Field(default_factory=list)


# --- Orders ----------------------------------------------------------------


class OrderItem(BaseModel):
    product_id: str
    name: str
    quantity: int = 1
    unit_price: Decimal = Decimal("0")
    marker: Optional[ProductMarker] = None


class Order(BaseModel):
    id: str
    store_id: str
    customer_id: Optional[str] = None
    order_total: Decimal
    currency: str = "twd"
    payment_method_id: str
    shipping_method_id: Optional[str] = None
    is_paid: bool = False
    paid_date: Optional[int] = None
    order_status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_cost: Decimal = Decimal("0")
    refund_amount: Decimal = Decimal("0")
    items: list[OrderItem] = Field(default_factory=list)
    checkout_attributes: dict = Field(default_factory=dict)
    note: str = ""
    created_at: int
    updated_at: int

    model_config = ConfigDict(from_attributes=True)

    def recharge_stream(self) -> Optional[LedgerStream]:
        for item in self.items:
            if item.marker in RECHARGE_MARKERS:
                return RECHARGE_MARKERS[item.marker]
        return None


# --- Ledger ----------------------------------------------------------------


class StoreLedgerDetails(BaseModel):
    fee: Decimal = Decimal("0")
    fee_tax: Decimal = Decimal("0")
    platform_fee: Decimal = Decimal("0")
    availability: int


class LedgerEntry(BaseModel):
    id: str
    stream: LedgerStream
    store_id: str
    account_key: str
    entry_type: str
    amount: Decimal
    balance_after: Decimal
    reference_id: Optional[str] = None
    currency: str
    note: str = ""
    created_by: Optional[str] = None
    created_at: int

    model_config = ConfigDict(from_attributes=True)

    @property
    def account(self) -> Account:
        return Account(self.stream, self.store_id, self.account_key)


class StoreLedgerEntry(LedgerEntry):
    stream: LedgerStream = LedgerStream.STORE
    order_id: str
    fee: Decimal = Decimal("0")
    fee_tax: Decimal = Decimal("0")
    platform_fee: Decimal = Decimal("0")
    availability: int


class AccountBalance(BaseModel):
    stream: LedgerStream
    store_id: str
    account_key: str
    balance: Decimal
    updated_at: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


class LedgerHistoryResponse(BaseModel):
    stream: LedgerStream
    store_id: str
    account_key: str
    entries: list[SerializeAsAny[LedgerEntry]]
    total_count: int
    current_balance: Decimal


class ReconcileReport(BaseModel):
    stream: LedgerStream
    store_id: str
    account_key: str
    consistent: bool
    entry_count: int
    ledger_balance: Decimal
    materialized_balance: Decimal
    broken_entry_ids: list[str] = Field(default_factory=list)


class AppendEntryRequest(BaseModel):
    stream: LedgerStream
    store_id: str
    account_key: Optional[str] = None
    entry_type: str
    amount: Decimal
    reference_id: Optional[str] = None
    note: str = ""
    actor_id: Optional[str] = None


# --- Workflow requests and responses ------------------------------------------


class MarkOrderPaidRequest(BaseModel):
    payment_method_id: Optional[str] = None
    checkout_attributes: Optional[dict] = None
    actor_id: Optional[str] = None


class PayWithBalanceRequest(BaseModel):
    stream: LedgerStream = LedgerStream.CREDIT
    actor_id: Optional[str] = None


class SettlementResponse(BaseModel):
    order: Order
    ledger_entry: Optional[StoreLedgerEntry] = None
    customer_entry: Optional[LedgerEntry] = None
    already_processed: bool = False
    message: str


class TopUpRequest(BaseModel):
    customer_id: str
    stream: LedgerStream = LedgerStream.CREDIT
    is_paid: bool = False
    cash_amount: Optional[Decimal] = None
    credit_amount: Optional[Decimal] = None
    fiat_amount: Optional[Decimal] = None
    note: Optional[str] = None
    actor_id: Optional[str] = None
    idempotency_key: Optional[str] = Field(default=None, description="Repeated submissions with the same key refill once")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "customer_id": "customer-001",
            "stream": "CREDIT",
            "is_paid": True,
            "cash_amount": 1000,
            "note": "counter refill",
        }
    })


class TopUpResponse(BaseModel):
    order: Order
    store_entry: Optional[StoreLedgerEntry] = None
    account_entry: Optional[LedgerEntry] = None
    amount: Decimal
    bonus: Decimal = Decimal("0")
    total_credit: Decimal
    already_processed: bool = False
    message: str


class RechargeOrderRequest(BaseModel):
    customer_id: str
    stream: LedgerStream = LedgerStream.CREDIT
    cash_amount: Decimal
    payment_method_id: str


class PrepaidHoldRequest(BaseModel):
    customer_id: Optional[str] = None
    reservation_id: str
    total_cost: Optional[Decimal] = None
    prepaid_percentage: Decimal = Decimal("0")
    reservation_time: Optional[int] = None
    facility_name: Optional[str] = None


class PrepaidHoldResponse(BaseModel):
    status: ReservationStatus
    already_paid: bool = False
    already_processed: bool = False
    order_id: Optional[str] = None
    required_prepaid: Optional[Decimal] = None
    required_credit: Optional[Decimal] = None
    ledger_entry: Optional[LedgerEntry] = None


class RefundRequest(BaseModel):
    reason: Optional[str] = None
    actor_id: Optional[str] = None


class RefundResponse(BaseModel):
    refunded: bool
    refund_amount: Optional[Decimal] = None
    stream: Optional[LedgerStream] = None
    ledger_entry: Optional[LedgerEntry] = None
    store_entry: Optional[StoreLedgerEntry] = None
    reason: Optional[str] = None


class CancelReservationRequest(BaseModel):
    order_id: Optional[str] = None
    reservation_time: int
    cancelled_at: Optional[int] = None
    reason: Optional[str] = None
    actor_id: Optional[str] = None


class CancelReservationResponse(BaseModel):
    cancelled: bool = True
    refund_needed: bool
    refunded: bool = False
    refund_amount: Optional[Decimal] = None
    reason: Optional[str] = None
