from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from .errors import NotFoundError
from .models import (
    Customer,
    PaymentMethod,
    Product,
    ProductMarker,
    ShippingMethod,
    StoreSettings,
    StoreTier,
)

PRODUCT_NAMES = {
    ProductMarker.CREDIT_RECHARGE: "Store Credit",
    ProductMarker.FIAT_REFILL: "Account Balance",
    ProductMarker.RESERVATION_PREPAID: "Reservation Prepaid",
}


class Catalog(ABC):
    """Store, customer and catalog lookups owned by the surrounding platform."""

    @abstractmethod
    def get_store(self, store_id: str) -> StoreSettings: ...

    @abstractmethod
    def get_customer(self, customer_id: str) -> Customer: ...

    @abstractmethod
    def get_payment_method(self, payment_method_id: str) -> PaymentMethod: ...

    @abstractmethod
    def find_payment_method(self, identifier: str) -> PaymentMethod: ...

    @abstractmethod
    def find_shipping_method(self, identifier: str) -> ShippingMethod: ...

    @abstractmethod
    def ensure_product(self, store_id: str, marker: ProductMarker) -> Product: ...


class InMemoryCatalog(Catalog):
    def __init__(self):
        self.stores: dict[str, StoreSettings] = {}
        self.customers: dict[str, Customer] = {}
        self.payment_methods: dict[str, PaymentMethod] = {}
        self.shipping_methods: dict[str, ShippingMethod] = {}
        self.products: dict[str, Product] = {}
        self._seed_data()

    def _seed_data(self):
        for method in (
            PaymentMethod(id="pm-cash", identifier="cash", name="Cash"),
            PaymentMethod(id="pm-promo", identifier="promo", name="Promotion"),
            PaymentMethod(id="pm-credit", identifier="credit", name="Credit Points"),
            PaymentMethod(id="pm-balance", identifier="balance", name="Account Balance"),
            PaymentMethod(
                id="pm-stripe", identifier="stripe", name="Stripe",
                fee_rate=Decimal("0.029"), fee_additional=Decimal("0"), clear_days=7,
            ),
            PaymentMethod(
                id="pm-linepay", identifier="linepay", name="LINE Pay",
                fee_rate=Decimal("0.03"), fee_additional=Decimal("0"), clear_days=7,
            ),
        ):
            self.payment_methods[method.id] = method

        for method in (
            ShippingMethod(id="sm-digital", identifier="digital", name="Digital"),
            ShippingMethod(id="sm-reserve", identifier="reserve", name="Reservation"),
            ShippingMethod(id="sm-takeout", identifier="takeout", name="Takeout", is_default=True),
        ):
            self.shipping_methods[method.id] = method

        self.add_store(StoreSettings(
            id="store-demo", name="Demo Store", tier=StoreTier.FREE,
            credit_exchange_rate=Decimal("10"), use_customer_credit=True,
        ))
        self.add_customer(Customer(id="customer-demo", name="Demo Customer", email="customer@example.com"))

    def add_store(self, store: StoreSettings) -> StoreSettings:
        self.stores[store.id] = store
        return store

    def add_customer(self, customer: Customer) -> Customer:
        self.customers[customer.id] = customer
        return customer

    def add_payment_method(self, method: PaymentMethod) -> PaymentMethod:
        self.payment_methods[method.id] = method
        return method

    def get_store(self, store_id: str) -> StoreSettings:
        store = self.stores.get(store_id)
        if not store:
            raise NotFoundError(f"Store {store_id} not found")
        return store

    def get_customer(self, customer_id: str) -> Customer:
        customer = self.customers.get(customer_id)
        if not customer:
            raise NotFoundError(f"Customer {customer_id} not found")
        return customer

    def get_payment_method(self, payment_method_id: str) -> PaymentMethod:
        method = self.payment_methods.get(payment_method_id)
        if not method:
            raise NotFoundError(f"Payment method {payment_method_id} not found")
        return method

    def find_payment_method(self, identifier: str) -> PaymentMethod:
        for method in self.payment_methods.values():
            if method.identifier == identifier:
                return method
        raise NotFoundError(f"Payment method '{identifier}' not found")

    def find_shipping_method(self, identifier: str) -> ShippingMethod:
        fallback: Optional[ShippingMethod] = None
        for method in self.shipping_methods.values():
            if method.identifier == identifier:
                return method
            if method.is_default and fallback is None:
                fallback = method
        if fallback is None:
            raise NotFoundError("No shipping method available")
        return fallback

    def ensure_product(self, store_id: str, marker: ProductMarker) -> Product:
        for product in self.products.values():
            if product.store_id == store_id and product.marker == marker:
                return product
        product = Product(id=str(uuid4()), store_id=store_id, name=PRODUCT_NAMES[marker], marker=marker)
        self.products[product.id] = product
        return product
