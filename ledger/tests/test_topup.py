"""
Unit Tests for Credit and Fiat Top-ups

Tests cover:
1. Cash-paid and promotional refills
2. Bonus rules
3. Validation
4. Idempotency keys
5. Gateway-paid recharge orders
"""

import pytest
from decimal import Decimal

from ledger.errors import NotFoundError, ValidationFailedError, WrongWorkflowError
from ledger.models import (
    CreditBonusRule,
    CreditLedgerType,
    LedgerStream,
    OrderStatus,
    PaymentStatus,
    ProductMarker,
    RechargeOrderRequest,
    StoreLedgerType,
    TopUpRequest,
)

STORE_ID = "store-demo"
CUSTOMER_ID = "customer-demo"


def credit_balance(workflows, customer_id=CUSTOMER_ID):
    return workflows.ledger.get_balance(LedgerStream.CREDIT, STORE_ID, customer_id).balance


class TestCashTopUp:
    """Tests for refills paid in cash at the counter."""

    def test_cash_converted_at_exchange_rate(self, workflows):
        """Test 1000 cash at rate 10 buys 100 points."""
        response = workflows.topup.top_up(
            STORE_ID, TopUpRequest(customer_id=CUSTOMER_ID, is_paid=True, cash_amount=Decimal("1000"))
        )

        assert response.amount == Decimal("100")
        assert response.bonus == Decimal("0")
        assert response.total_credit == Decimal("100")
        assert response.account_entry.entry_type == CreditLedgerType.RECHARGE.value
        assert response.account_entry.reference_id == response.order.id
        assert response.store_entry.entry_type == StoreLedgerType.RECHARGE.value
        assert response.store_entry.amount == Decimal("1000")
        assert response.store_entry.fee == Decimal("0")
        assert response.store_entry.platform_fee == Decimal("0")
        assert credit_balance(workflows) == Decimal("100")

    def test_anchor_order(self, workflows):
        """Test the anchor order is paid, confirmed and marked as a recharge."""
        order = workflows.topup.top_up(
            STORE_ID, TopUpRequest(customer_id=CUSTOMER_ID, is_paid=True, cash_amount=Decimal("500"))
        ).order

        assert order.is_paid
        assert order.order_status == OrderStatus.CONFIRMED
        assert order.payment_status == PaymentStatus.PAID
        assert order.payment_method_id == "pm-cash"
        assert order.shipping_method_id == "sm-digital"
        assert order.order_total == Decimal("500")
        assert order.items[0].marker == ProductMarker.CREDIT_RECHARGE
        assert workflows.settlement.load_order(order.id).is_paid

    def test_explicit_credit_amount_wins(self, workflows):
        response = workflows.topup.top_up(
            STORE_ID,
            TopUpRequest(
                customer_id=CUSTOMER_ID, is_paid=True,
                cash_amount=Decimal("1000"), credit_amount=Decimal("120"),
            ),
        )

        assert response.total_credit == Decimal("120")
        assert response.store_entry.amount == Decimal("1000")

    def test_fiat_refill_is_one_to_one(self, workflows):
        """Test fiat refills credit the cash amount."""
        response = workflows.topup.top_up(
            STORE_ID,
            TopUpRequest(
                customer_id=CUSTOMER_ID, stream=LedgerStream.FIAT,
                is_paid=True, cash_amount=Decimal("300"),
            ),
        )

        assert response.account_entry.stream == LedgerStream.FIAT
        assert response.order.items[0].marker == ProductMarker.FIAT_REFILL
        assert workflows.ledger.get_balance(LedgerStream.FIAT, STORE_ID, CUSTOMER_ID).balance == Decimal("300")


class TestPromotionalTopUp:
    """Tests for refills granted without payment."""

    def test_promotional_credit(self, workflows):
        """Test a promotional 50 points leaves a zero Store Ledger anchor."""
        response = workflows.topup.top_up(
            STORE_ID, TopUpRequest(customer_id=CUSTOMER_ID, credit_amount=Decimal("50"), note="welcome gift")
        )

        assert credit_balance(workflows) == Decimal("50")
        assert response.order.order_total == Decimal("0")
        assert response.order.payment_method_id == "pm-promo"
        assert response.store_entry.amount == Decimal("0")
        assert response.account_entry.note == "welcome gift"
        assert workflows.ledger.get_balance(LedgerStream.STORE, STORE_ID).balance == Decimal("0")


class TestBonusRules:
    """Tests for store credit bonus rules."""

    def set_rules(self, workflows):
        store = workflows.catalog.get_store(STORE_ID)
        store.credit_bonus_rules = [
            CreditBonusRule(threshold=Decimal("100"), bonus=Decimal("10")),
            CreditBonusRule(threshold=Decimal("500"), bonus=Decimal("80")),
            CreditBonusRule(threshold=Decimal("300"), bonus=Decimal("999"), is_active=False),
        ]

    def test_largest_reached_threshold_applies(self, workflows):
        self.set_rules(workflows)

        response = workflows.topup.top_up(
            STORE_ID, TopUpRequest(customer_id=CUSTOMER_ID, is_paid=True, cash_amount=Decimal("4000"))
        )

        assert response.amount == Decimal("400")
        assert response.bonus == Decimal("10")
        assert response.total_credit == Decimal("410")
        assert credit_balance(workflows) == Decimal("410")

    def test_below_every_threshold(self, workflows):
        self.set_rules(workflows)

        response = workflows.topup.top_up(
            STORE_ID, TopUpRequest(customer_id=CUSTOMER_ID, credit_amount=Decimal("99"))
        )

        assert response.bonus == Decimal("0")

    def test_no_bonus_on_fiat(self, workflows):
        self.set_rules(workflows)

        response = workflows.topup.top_up(
            STORE_ID,
            TopUpRequest(customer_id=CUSTOMER_ID, stream=LedgerStream.FIAT, fiat_amount=Decimal("1000")),
        )

        assert response.bonus == Decimal("0")


class TestValidation:
    """Tests for top-up validation."""

    def test_paid_requires_cash(self, workflows):
        with pytest.raises(ValidationFailedError):
            workflows.topup.top_up(STORE_ID, TopUpRequest(customer_id=CUSTOMER_ID, is_paid=True))

    def test_promotional_requires_amount(self, workflows):
        with pytest.raises(ValidationFailedError):
            workflows.topup.top_up(STORE_ID, TopUpRequest(customer_id=CUSTOMER_ID, cash_amount=Decimal("10")))

    def test_negative_amount(self, workflows):
        with pytest.raises(ValidationFailedError):
            workflows.topup.top_up(STORE_ID, TopUpRequest(customer_id=CUSTOMER_ID, credit_amount=Decimal("-5")))

    def test_store_stream_rejected(self, workflows):
        with pytest.raises(ValidationFailedError):
            workflows.topup.top_up(
                STORE_ID,
                TopUpRequest(customer_id=CUSTOMER_ID, stream=LedgerStream.STORE, credit_amount=Decimal("5")),
            )

    def test_unknown_customer(self, workflows):
        with pytest.raises(NotFoundError):
            workflows.topup.top_up(STORE_ID, TopUpRequest(customer_id="ghost", credit_amount=Decimal("5")))

    def test_unknown_store(self, workflows):
        with pytest.raises(NotFoundError):
            workflows.topup.top_up("ghost-store", TopUpRequest(customer_id=CUSTOMER_ID, credit_amount=Decimal("5")))


class TestIdempotencyKey:
    """Tests for repeated submissions of the same top-up."""

    def test_same_key_refills_once(self, workflows):
        """Test a resubmitted top-up returns the first result."""
        request = TopUpRequest(
            customer_id=CUSTOMER_ID, is_paid=True, cash_amount=Decimal("1000"), idempotency_key="counter-42"
        )

        first = workflows.topup.top_up(STORE_ID, request)
        second = workflows.topup.top_up(STORE_ID, request)

        assert not first.already_processed
        assert second.already_processed
        assert second.order.id == first.order.id
        assert second.account_entry.id == first.account_entry.id
        assert credit_balance(workflows) == Decimal("100")

    def test_different_keys_refill_twice(self, workflows):
        for key in ("a", "b"):
            workflows.topup.top_up(
                STORE_ID, TopUpRequest(customer_id=CUSTOMER_ID, credit_amount=Decimal("5"), idempotency_key=key)
            )

        assert credit_balance(workflows) == Decimal("10")

    def test_same_key_for_two_customers(self, workflows):
        """Test customers sharing a key each get their own refill."""
        for customer_id in (CUSTOMER_ID, "customer-other"):
            response = workflows.topup.top_up(
                STORE_ID, TopUpRequest(customer_id=customer_id, credit_amount=Decimal("5"), idempotency_key="promo-day")
            )
            assert not response.already_processed
            assert response.account_entry.account_key == customer_id

        assert credit_balance(workflows) == Decimal("5")
        assert credit_balance(workflows, "customer-other") == Decimal("5")


class TestRechargeOrders:
    """Tests for customer recharge orders settled by a payment gateway."""

    def create(self, workflows, stream=LedgerStream.CREDIT, amount="1000"):
        return workflows.topup.create_recharge_order(
            STORE_ID,
            RechargeOrderRequest(
                customer_id=CUSTOMER_ID, stream=stream, cash_amount=Decimal(amount), payment_method_id="pm-card"
            ),
        )

    def test_created_unpaid(self, workflows):
        order = self.create(workflows)

        assert not order.is_paid
        assert order.recharge_stream() == LedgerStream.CREDIT
        assert credit_balance(workflows) == Decimal("0")

    def test_mark_paid_is_wrong_workflow(self, workflows):
        order = self.create(workflows)

        with pytest.raises(WrongWorkflowError):
            workflows.settlement.mark_order_paid(order.id)

    def test_settle_credit_recharge(self, workflows):
        """Test settlement applies fees on the Store Ledger and credits points."""
        order = self.create(workflows)

        response = workflows.topup.settle_recharge_order(order.id)

        assert response.ledger_entry.entry_type == StoreLedgerType.RECHARGE.value
        assert response.ledger_entry.amount == Decimal("955")
        assert response.customer_entry.amount == Decimal("100")
        assert response.order.order_status == OrderStatus.COMPLETED
        assert response.order.payment_status == PaymentStatus.PAID
        assert credit_balance(workflows) == Decimal("100")

    def test_settle_fiat_recharge(self, workflows):
        order = self.create(workflows, stream=LedgerStream.FIAT, amount="300")

        response = workflows.topup.settle_recharge_order(order.id)

        assert response.customer_entry.amount == Decimal("300")
        assert workflows.ledger.get_balance(LedgerStream.FIAT, STORE_ID, CUSTOMER_ID).balance == Decimal("300")

    def test_settle_twice(self, workflows):
        """Test the second settlement credits nothing."""
        order = self.create(workflows)

        workflows.topup.settle_recharge_order(order.id)
        again = workflows.topup.settle_recharge_order(order.id)

        assert again.already_processed
        assert credit_balance(workflows) == Decimal("100")

    def test_settle_ordinary_order(self, workflows):
        order = workflows.create_order("100")

        with pytest.raises(WrongWorkflowError):
            workflows.topup.settle_recharge_order(order.id)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
