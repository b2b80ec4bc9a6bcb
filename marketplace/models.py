import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, Column, DateTime, Enum, Float, ForeignKey, Index, Integer, JSON,
    String, Text, UniqueConstraint, text,
)
from sqlalchemy.orm import relationship

from marketplace.database import Base


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def new_id():
    return str(uuid.uuid4())


class OrderStatus(str, enum.Enum):
    PENDING_COMMIT = "pending_commit"
    COMMITTED = "committed"
    COURIER_SCHEDULED = "courier_scheduled"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"
    FAILED = "failed"


class DeliveryStatus(str, enum.Enum):
    NONE = "none"
    PICKUP_SCHEDULED = "pickup_scheduled"
    PICKUP_ATTEMPTED = "pickup_attempted"
    DELIVERED = "delivered"


class PayoutStatus(str, enum.Enum):
    PENDING = "pending"
    INCLUDED = "included"
    PAID = "paid"


class TransactionStatus(str, enum.Enum):
    """Shared by payments, refunds and transfers."""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


def _enum(cls):
    # store the value ("pending_commit"), not the member name
    return Enum(cls, values_callable=lambda members: [m.value for m in members],
                native_enum=False, length=32)


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String)
    email = Column(String)
    phone = Column(String)
    pickup_address = Column(JSON)                 # street, suburb, city, province, postal_code


class Book(Base):
    __tablename__ = "books"

    id = Column(String, primary_key=True, default=new_id)
    seller_id = Column(String, ForeignKey("profiles.id"), index=True)
    title = Column(String)
    price = Column(Integer, nullable=False)       # minor units
    weight_kg = Column(Float)
    sold = Column(Boolean, default=False, nullable=False)
    sold_at = Column(DateTime(timezone=True))
    buyer_id = Column(String)
    reserved_by = Column(String)
    reserved_until = Column(DateTime(timezone=True))


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("payment_reference", "book_id", name="uq_orders_payment_book"),
    )

    id = Column(String, primary_key=True, default=new_id)
    buyer_id = Column(String, ForeignKey("profiles.id"), nullable=False, index=True)
    seller_id = Column(String, ForeignKey("profiles.id"), nullable=False, index=True)
    book_id = Column(String, ForeignKey("books.id"), nullable=False)

    # minor units; amount == book_price + delivery_fee, never mutated
    book_price = Column(Integer, nullable=False)
    delivery_fee = Column(Integer, nullable=False, default=0)
    amount = Column(Integer, nullable=False)

    status = Column(_enum(OrderStatus), nullable=False, default=OrderStatus.PENDING_COMMIT)
    delivery_status = Column(_enum(DeliveryStatus), nullable=False, default=DeliveryStatus.NONE)
    payout_status = Column(_enum(PayoutStatus), nullable=False, default=PayoutStatus.PENDING)

    payment_reference = Column(String, ForeignKey("payment_transactions.reference"),
                               nullable=False, index=True)
    shipping_address = Column(JSON)

    courier_provider = Column(String)
    tracking_number = Column(String)
    pickup_date = Column(String)
    pickup_time_window = Column(String)
    shipping_label_url = Column(String)

    refund_reference = Column(String)

    reminder_sent_at = Column(DateTime(timezone=True))
    committed_at = Column(DateTime(timezone=True))
    delivered_at = Column(DateTime(timezone=True))
    cancelled_at = Column(DateTime(timezone=True))
    refunded_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    buyer = relationship("Profile", foreign_keys=[buyer_id])
    seller = relationship("Profile", foreign_keys=[seller_id])
    book = relationship("Book")


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"

    reference = Column(String, primary_key=True)
    status = Column(_enum(TransactionStatus), nullable=False, default=TransactionStatus.PENDING)
    amount = Column(Integer)
    raw_payload = Column(JSON)
    verified_at = Column(DateTime(timezone=True))
    orders_linked_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class RefundTransaction(Base):
    __tablename__ = "refund_transactions"
    __table_args__ = (
        # at most one successful refund per order
        Index(
            "uq_refund_success_per_order", "order_id", unique=True,
            sqlite_where=text("status = 'success'"),
            postgresql_where=text("status = 'success'"),
        ),
    )

    id = Column(String, primary_key=True, default=lambda: f"refund_{uuid.uuid4().hex}")
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    refund_reference = Column(String)
    amount = Column(Integer, nullable=False)
    reason = Column(Text)
    admin_action = Column(Boolean, default=False, nullable=False)
    status = Column(_enum(TransactionStatus), nullable=False)
    gateway_response = Column(JSON)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class BankingDetails(Base):
    __tablename__ = "banking_details"

    seller_id = Column(String, ForeignKey("profiles.id"), primary_key=True)
    business_name = Column(String)
    email = Column(String)
    bank_code = Column(String)
    account_number = Column(String)
    active = Column(Boolean, default=True, nullable=False)


class PaymentRecipient(Base):
    __tablename__ = "payment_recipients"

    seller_id = Column(String, ForeignKey("profiles.id"), primary_key=True)
    recipient_code = Column(String, unique=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class Payout(Base):
    __tablename__ = "payouts"

    id = Column(String, primary_key=True, default=new_id)
    seller_id = Column(String, ForeignKey("profiles.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    order_ids = Column(JSON, nullable=False)
    breakdown = Column(JSON)
    recipient_code = Column(String)
    status = Column(_enum(TransactionStatus), nullable=False, default=TransactionStatus.PENDING)
    transfer_reference = Column(String, unique=True)
    transfer_response = Column(JSON)
    completed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class ReconciliationIssue(Base):
    """Side-effect failures an operator has to look at by hand."""
    __tablename__ = "reconciliation_issues"

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(String, nullable=False)         # order_creation_failed | booking_not_persisted | ...
    reference = Column(String, index=True)
    order_id = Column(String)
    detail = Column(Text)
    payload = Column(JSON)
    resolved = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
