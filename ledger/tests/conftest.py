from decimal import Decimal
from uuid import uuid4

import pytest

from ledger.catalog import InMemoryCatalog
from ledger.models import Customer, Order, OrderItem, PaymentMethod, StoreSettings, StoreTier
from ledger.policy import CancelHoursPolicy
from ledger.prepaid import PrepaidHoldService
from ledger.refund import RefundService
from ledger.service import LedgerService
from ledger.settlement import SettlementService
from ledger.sql import SqlStorage
from ledger.storage import InMemoryStorage
from ledger.topup import TopUpService
from ledger.utils import now_epoch_ms

STORE_ID = "store-demo"
CUSTOMER_ID = "customer-demo"


class Workflows:
    def __init__(self, storage):
        self.storage = storage
        self.catalog = InMemoryCatalog()
        self.catalog.add_payment_method(PaymentMethod(
            id="pm-card", identifier="card", name="Card",
            fee_rate=Decimal("0.03"), fee_additional=Decimal("5"), clear_days=7,
        ))
        self.catalog.add_store(StoreSettings(
            id="store-pro", name="Pro Store", tier=StoreTier.PRO,
            has_processor_credentials=True, credit_exchange_rate=Decimal("1"),
        ))
        self.catalog.add_customer(Customer(id="customer-other", name="Other Customer"))
        self.ledger = LedgerService(storage)
        self.settlement = SettlementService(self.ledger, self.catalog)
        self.topup = TopUpService(self.ledger, self.catalog, self.settlement)
        self.prepaid = PrepaidHoldService(self.ledger, self.catalog)
        self.refund = RefundService(self.ledger, self.catalog, CancelHoursPolicy())

    def create_order(self, total="1000", store_id=STORE_ID, customer_id=CUSTOMER_ID,
                     payment_method_id="pm-card", items=None) -> Order:
        now = now_epoch_ms()
        order = Order(
            id=str(uuid4()),
            store_id=store_id,
            customer_id=customer_id,
            order_total=Decimal(total),
            payment_method_id=payment_method_id,
            items=items or [OrderItem(product_id="product-1", name="Coffee", unit_price=Decimal(total))],
            created_at=now,
            updated_at=now,
        )
        with self.storage.transaction() as uow:
            uow.add_order(order)
        return order


@pytest.fixture
def workflows():
    return Workflows(InMemoryStorage())


@pytest.fixture
def sql_storage():
    storage = SqlStorage("sqlite://")
    storage.create_all()
    yield storage
    storage.drop_all()


@pytest.fixture
def sql_workflows(sql_storage):
    return Workflows(sql_storage)
