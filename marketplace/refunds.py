"""Refund eligibility and execution."""

from dataclasses import dataclass
from datetime import date, timedelta

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from marketplace.errors import NotFound, RefundNotAllowed, StateConflict, ValidationError
from marketplace.models import (
    Book, DeliveryStatus, Order, OrderStatus, RefundTransaction, TransactionStatus, utcnow,
)
from marketplace.notifications import notify_quietly
from marketplace.reconciliation import record_issue
from marketplace.state_machine import OrderStateMachine

logger = structlog.get_logger(__name__)

REFUNDABLE_STATUSES = {
    OrderStatus.PENDING_COMMIT,
    OrderStatus.COMMITTED,
    OrderStatus.COURIER_SCHEDULED,
    OrderStatus.SHIPPED,
    OrderStatus.FAILED,
    OrderStatus.CANCELLED,
}


@dataclass
class RefundSummary:
    id: str
    reference: str
    amount: int
    status: str
    expected_date: str
    already_processed: bool = False


def expected_refund_date(start: date, days: int = 5) -> str:
    # calendar days, not business days
    return (start + timedelta(days=days)).isoformat()


def check_eligibility(order: Order) -> None:
    if order.delivery_status == DeliveryStatus.DELIVERED:
        raise RefundNotAllowed("Cannot refund delivered orders")
    if order.status not in REFUNDABLE_STATUSES:
        raise RefundNotAllowed(
            f"Refund not allowed for orders in status '{order.status.value}'"
        )


class RefundProcessor:
    def __init__(self, db, settings, gateway, notifier):
        self.db = db
        self.settings = settings
        self.gateway = gateway
        self.notifier = notifier
        self.machine = OrderStateMachine(db)

    def _summary(self, refund: RefundTransaction, already_processed=False) -> RefundSummary:
        created = refund.created_at.date() if refund.created_at else date.today()
        return RefundSummary(
            id=refund.id,
            reference=refund.refund_reference,
            amount=refund.amount,
            status=refund.status.value,
            expected_date=expected_refund_date(created, self.settings.refund_expected_days),
            already_processed=already_processed,
        )

    def refund(self, order_id: str, reason: str, admin_action: bool = False) -> RefundSummary:
        if not reason or not reason.strip():
            raise ValidationError("A refund reason is required")

        order = self.db.execute(
            select(Order).where(Order.id == order_id).with_for_update()
        ).scalar_one_or_none()
        if order is None:
            raise NotFound(f"Order {order_id} not found")

        existing = self.db.execute(
            select(RefundTransaction)
            .where(
                RefundTransaction.order_id == order_id,
                RefundTransaction.status.in_([TransactionStatus.SUCCESS, TransactionStatus.PENDING]),
            )
            .order_by(RefundTransaction.created_at.desc())
        ).scalars().first()
        if existing is not None:
            logger.info("refund_already_processed", order_id=order_id, refund_id=existing.id)
            return self._summary(existing, already_processed=True)

        check_eligibility(order)
        from_status = order.status

        logger.info("refund_started", order_id=order_id, amount=order.amount, reason=reason,
                    admin_action=admin_action)
        gateway_refund = self.gateway.refund(
            order.payment_reference, order.amount, reason,
            idempotency_key=f"refund-{order_id}",
        )

        refund = RefundTransaction(
            order_id=order_id,
            refund_reference=gateway_refund.reference,
            amount=order.amount,
            reason=reason,
            admin_action=admin_action,
            status=gateway_refund.status,
            gateway_response=gateway_refund.raw,
        )
        try:
            self.db.add(refund)
            self.machine.advance(
                order_id, from_status, OrderStatus.REFUNDED,
                refund_reference=gateway_refund.reference,
                refunded_at=utcnow(),
            )
            self._release_book(order.book_id)
            self.db.commit()
        except (SQLAlchemyError, StateConflict) as exc:
            # money already left through the gateway
            self.db.rollback()
            logger.error("refund_not_persisted", order_id=order_id,
                         refund_reference=gateway_refund.reference, error=str(exc))
            record_issue(self.db, "refund_not_persisted", reference=gateway_refund.reference,
                         order_id=order_id, detail=str(exc), payload=gateway_refund.raw)
            raise

        logger.info("refund_processed", order_id=order_id, refund_id=refund.id,
                    refund_reference=refund.refund_reference, status=refund.status.value)
        summary = self._summary(refund)

        buyer = order.buyer
        notify_quietly(
            self.notifier, buyer.email if buyer else None, "refund-processed",
            {
                "buyer_name": buyer.name if buyer else None,
                "order_id": order_id,
                "amount": order.amount,
                "refund_reference": refund.refund_reference,
                "expected_date": summary.expected_date,
                "reason": reason,
            },
            order_id=order_id,
        )
        return summary

    def _release_book(self, book_id):
        self.db.execute(
            update(Book)
            .where(Book.id == book_id)
            .values(sold=False, sold_at=None, buyer_id=None, reserved_by=None, reserved_until=None)
        )
