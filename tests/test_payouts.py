from dataclasses import replace
from decimal import Decimal

import pytest
from hypothesis import given, strategies as st

from marketplace.errors import NotFound, StateConflict, ValidationError
from marketplace.models import Order, OrderStatus, PaymentRecipient, Payout, PayoutStatus
from marketplace.payouts import PayoutCalculator, aggregate, split_order


@pytest.fixture
def calculator(db, settings, gateway):
    return PayoutCalculator(db, settings, gateway)


def _delivered(make_order, count, **kw):
    return [make_order(status=OrderStatus.DELIVERED, **kw) for _ in range(count)]


def test_three_delivered_orders(calculator, make_seller, make_order):
    make_seller("seller-1")
    _delivered(make_order, 3, book_price=200, delivery_fee=25)

    breakdown = calculator.compute_seller_payout("seller-1")

    assert breakdown.total_book_sales == 600
    assert breakdown.total_delivery_fees == 75
    assert breakdown.platform_commission == 60
    assert breakdown.seller_amount == 540
    assert breakdown.platform_earnings == 135
    assert len(breakdown.order_ids) == 3


def test_only_delivered_unpaid_orders_count(calculator, make_seller, make_order):
    make_seller("seller-1")
    counted = make_order(status=OrderStatus.DELIVERED)
    make_order(status=OrderStatus.SHIPPED)
    make_order(status=OrderStatus.DELIVERED, payout_status=PayoutStatus.INCLUDED)
    make_order(status=OrderStatus.DELIVERED, seller_id="seller-2")

    breakdown = calculator.compute_seller_payout("seller-1")

    assert breakdown.order_ids == [counted.id]


def test_partial_delivery_fee_retention(db, gateway, make_seller, make_order, settings):
    make_seller("seller-1")
    make_order(status=OrderStatus.DELIVERED, book_price=10000, delivery_fee=3000)
    calculator = PayoutCalculator(db, replace(settings, delivery_fee_retention_rate=Decimal("0.5")),
                                  gateway)

    breakdown = calculator.compute_seller_payout("seller-1")

    assert breakdown.platform_earnings == 1000 + 1500
    assert breakdown.seller_amount == 9000 + 1500


def test_seller_without_banking_details(calculator, make_seller, make_order):
    make_seller("seller-1", banking=False)
    make_order(status=OrderStatus.DELIVERED)

    with pytest.raises(NotFound):
        calculator.compute_seller_payout("seller-1")


def test_recipient_is_created_once(db, calculator, gateway, make_seller, make_order):
    make_seller("seller-1")
    make_order(status=OrderStatus.DELIVERED)

    first = calculator.compute_seller_payout("seller-1")
    second = calculator.compute_seller_payout("seller-1")

    assert first.recipient_code == second.recipient_code == "acct_seller-1"
    assert gateway.recipients == ["seller-1"]
    assert gateway.bank_accounts == [("051", "62000000001")]
    assert db.get(PaymentRecipient, "seller-1").recipient_code == "acct_seller-1"


def test_below_minimum_is_flagged(db, gateway, make_seller, make_order, settings):
    make_seller("seller-1")
    make_order(status=OrderStatus.DELIVERED, book_price=1000, delivery_fee=0)
    calculator = PayoutCalculator(db, replace(settings, minimum_payout=5000), gateway)

    breakdown = calculator.compute_seller_payout("seller-1")
    assert breakdown.below_minimum is True

    with pytest.raises(ValidationError):
        calculator.request_payout("seller-1")


def test_request_payout_claims_orders(db, calculator, make_seller, make_order):
    make_seller("seller-1")
    orders = _delivered(make_order, 2)

    payout = calculator.request_payout("seller-1")

    assert payout.amount == 2 * 18000
    assert sorted(payout.order_ids) == sorted(o.id for o in orders)
    db.expire_all()
    assert {db.get(Order, o.id).payout_status for o in orders} == {PayoutStatus.INCLUDED}
    assert calculator.compute_seller_payout("seller-1").order_ids == []

    with pytest.raises(StateConflict):
        calculator.request_payout("seller-1")
    assert db.query(Payout).count() == 1


def test_request_payout_without_orders(calculator, make_seller):
    make_seller("seller-1")

    with pytest.raises(ValidationError):
        calculator.request_payout("seller-1")


amounts = st.tuples(st.integers(min_value=0, max_value=10_000_000),
                    st.integers(min_value=0, max_value=500_000))
rates = st.decimals(min_value=0, max_value=1, places=4)


@given(st.lists(amounts, max_size=20), rates, rates)
def test_payout_conserves_money(orders, commission_rate, retention_rate):
    splits = [split_order(str(i), price, fee, commission_rate, retention_rate)
              for i, (price, fee) in enumerate(orders)]

    breakdown = aggregate("seller", splits)

    assert breakdown.seller_amount + breakdown.platform_earnings == \
        breakdown.total_book_sales + breakdown.total_delivery_fees
    assert all(s.seller_amount >= 0 for s in splits)
