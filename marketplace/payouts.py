"""Seller payout breakdowns.

A breakdown covers every delivered order of a seller that has not yet been
claimed by a payout. Commission is taken from the book price only; the
delivery fee is split separately by ``delivery_fee_retention_rate``. All
amounts are integer minor units and each order is rounded on its own, so
``seller_amount + platform_earnings`` always equals the gross total.
"""

from dataclasses import asdict, dataclass, field

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from marketplace.errors import NotFound, StateConflict, ValidationError
from marketplace.models import (
    BankingDetails, Order, OrderStatus, PaymentRecipient, Payout, PayoutStatus, Profile,
    TransactionStatus,
)
from marketplace.money import apply_rate

logger = structlog.get_logger(__name__)


@dataclass
class OrderSplit:
    order_id: str
    book_price: int
    delivery_fee: int
    platform_commission: int
    retained_delivery_fee: int
    seller_amount: int


@dataclass
class PayoutBreakdown:
    seller_id: str
    order_ids: list = field(default_factory=list)
    orders: list = field(default_factory=list)
    total_book_sales: int = 0
    total_delivery_fees: int = 0
    platform_commission: int = 0
    platform_earnings: int = 0
    seller_amount: int = 0
    recipient_code: str | None = None
    minimum_payout: int = 0
    below_minimum: bool = True

    def to_dict(self):
        return asdict(self)


def split_order(order_id, book_price, delivery_fee, commission_rate, retention_rate) -> OrderSplit:
    commission = apply_rate(book_price, commission_rate)
    retained = apply_rate(delivery_fee, retention_rate)
    return OrderSplit(
        order_id=order_id,
        book_price=book_price,
        delivery_fee=delivery_fee,
        platform_commission=commission,
        retained_delivery_fee=retained,
        seller_amount=book_price - commission + delivery_fee - retained,
    )


def aggregate(seller_id, splits, minimum_payout=0) -> PayoutBreakdown:
    breakdown = PayoutBreakdown(seller_id=seller_id, minimum_payout=minimum_payout)
    for split in splits:
        breakdown.order_ids.append(split.order_id)
        breakdown.orders.append(split)
        breakdown.total_book_sales += split.book_price
        breakdown.total_delivery_fees += split.delivery_fee
        breakdown.platform_commission += split.platform_commission
        breakdown.platform_earnings += split.platform_commission + split.retained_delivery_fee
        breakdown.seller_amount += split.seller_amount
    breakdown.below_minimum = not splits or breakdown.seller_amount < minimum_payout
    return breakdown


class PayoutCalculator:
    def __init__(self, db, settings, gateway):
        self.db = db
        self.settings = settings
        self.gateway = gateway

    def _banking(self, seller_id) -> BankingDetails:
        banking = self.db.execute(
            select(BankingDetails).where(
                BankingDetails.seller_id == seller_id,
                BankingDetails.active.is_(True),
            )
        ).scalar_one_or_none()
        if banking is None:
            raise NotFound(f"Seller {seller_id} has no active banking details")
        return banking

    def eligible_orders(self, seller_id):
        return self.db.execute(
            select(Order)
            .where(
                Order.seller_id == seller_id,
                Order.status == OrderStatus.DELIVERED,
                Order.payout_status == PayoutStatus.PENDING,
            )
            .order_by(Order.created_at)
        ).scalars().all()

    def resolve_recipient(self, seller_id, banking: BankingDetails) -> str:
        existing = self.db.get(PaymentRecipient, seller_id)
        if existing is not None:
            return existing.recipient_code

        profile = self.db.get(Profile, seller_id)
        name = banking.business_name or (profile.name if profile else seller_id)
        email = banking.email or (profile.email if profile else None)
        code = self.gateway.create_recipient(seller_id, name, email,
                                             bank_code=banking.bank_code,
                                             account_number=banking.account_number)

        try:
            self.db.add(PaymentRecipient(seller_id=seller_id, recipient_code=code))
            self.db.commit()
        except IntegrityError:
            # a concurrent request stored one first
            self.db.rollback()
            return self.db.get(PaymentRecipient, seller_id).recipient_code
        logger.info("payment_recipient_created", seller_id=seller_id, recipient_code=code)
        return code

    def compute_seller_payout(self, seller_id: str) -> PayoutBreakdown:
        banking = self._banking(seller_id)
        splits = [
            split_order(o.id, o.book_price, o.delivery_fee,
                        self.settings.book_commission_rate,
                        self.settings.delivery_fee_retention_rate)
            for o in self.eligible_orders(seller_id)
        ]
        breakdown = aggregate(seller_id, splits, self.settings.minimum_payout)
        breakdown.recipient_code = self.resolve_recipient(seller_id, banking)

        if breakdown.below_minimum:
            logger.info("payout_below_minimum", seller_id=seller_id,
                        seller_amount=breakdown.seller_amount,
                        minimum_payout=breakdown.minimum_payout)
        return breakdown

    def request_payout(self, seller_id: str) -> Payout:
        """Freeze the current breakdown into a pending Payout for approval."""
        pending = self.db.execute(
            select(Payout).where(
                Payout.seller_id == seller_id,
                Payout.status == TransactionStatus.PENDING,
            )
        ).scalars().first()
        if pending is not None:
            raise StateConflict(f"Seller already has a pending payout ({pending.id})")

        breakdown = self.compute_seller_payout(seller_id)
        if not breakdown.order_ids:
            raise ValidationError("Seller has no delivered orders awaiting payout")
        if breakdown.below_minimum:
            raise ValidationError(
                f"Payout of {breakdown.seller_amount} is below the minimum of "
                f"{breakdown.minimum_payout}"
            )

        result = self.db.execute(
            update(Order)
            .where(
                Order.id.in_(breakdown.order_ids),
                Order.payout_status == PayoutStatus.PENDING,
            )
            .values(payout_status=PayoutStatus.INCLUDED)
        )
        if result.rowcount != len(breakdown.order_ids):
            self.db.rollback()
            raise StateConflict("Orders changed while the payout was being requested")

        payout = Payout(
            seller_id=seller_id,
            amount=breakdown.seller_amount,
            order_ids=breakdown.order_ids,
            breakdown=breakdown.to_dict(),
            recipient_code=breakdown.recipient_code,
            status=TransactionStatus.PENDING,
        )
        self.db.add(payout)
        self.db.commit()
        logger.info("payout_requested", seller_id=seller_id, payout_id=payout.id,
                    amount=payout.amount, order_count=len(breakdown.order_ids))
        return payout
