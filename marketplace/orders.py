"""Order intake from confirmed payments and the sweeps over pending commits."""

from datetime import timedelta

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from marketplace.errors import MarketplaceError, NotFound, StateConflict, ValidationError
from marketplace.models import Book, Order, OrderStatus, as_utc, utcnow
from marketplace.money import to_minor_units
from marketplace.notifications import notify_quietly
from marketplace.state_machine import OrderStateMachine

logger = structlog.get_logger(__name__)


def _find_order(db, reference, book_id):
    return db.execute(
        select(Order).where(Order.payment_reference == reference, Order.book_id == book_id)
    ).scalar_one_or_none()


def create_orders_for_payment(db, reference: str, metadata: dict):
    """Create one order per purchased book, unless it already exists.

    Returns ``(orders, created_count)``. Safe to call any number of times for
    the same payment reference. Nothing is committed here.
    """
    buyer_id = metadata.get("buyer_id")
    items = metadata.get("items")
    if not buyer_id or not isinstance(items, list) or not items:
        raise ValidationError("Payment metadata must carry buyer_id and items")

    orders, created = [], 0
    for item in items:
        book_id = item.get("book_id") if isinstance(item, dict) else None
        if not book_id:
            raise ValidationError("Every item needs a book_id")

        existing = _find_order(db, reference, book_id)
        if existing is not None:
            orders.append(existing)
            continue

        book = db.get(Book, book_id)
        if book is None:
            raise NotFound(f"Book {book_id} not found")

        book_price = book.price
        try:
            delivery_fee = to_minor_units(item.get("delivery_fee") or 0)
        except (ArithmeticError, ValueError) as exc:
            raise ValidationError(f"Invalid delivery fee for book {book_id}") from exc
        order = Order(
            buyer_id=buyer_id,
            seller_id=book.seller_id,
            book_id=book_id,
            book_price=book_price,
            delivery_fee=delivery_fee,
            amount=book_price + delivery_fee,
            status=OrderStatus.PENDING_COMMIT,
            payment_reference=reference,
            shipping_address=metadata.get("shipping_address"),
        )
        savepoint = db.begin_nested()
        try:
            db.add(order)
            db.flush()
        except IntegrityError:
            # lost the race to a concurrent delivery of the same event
            savepoint.rollback()
            orders.append(_find_order(db, reference, book_id))
            continue
        savepoint.commit()

        book.sold = True
        book.sold_at = utcnow()
        book.buyer_id = buyer_id
        book.reserved_by = None
        book.reserved_until = None
        orders.append(order)
        created += 1
        logger.info("order_created", order_id=order.id, reference=reference,
                    book_id=book_id, amount=order.amount)

    return orders, created


def decline_order(db, refunds, order_id: str, seller_id: str, reason: str | None = None):
    """Seller refuses the sale: cancel, then refund the buyer in full."""
    machine = OrderStateMachine(db)
    machine.decline(order_id, seller_id)
    db.commit()
    logger.info("order_declined", order_id=order_id, seller_id=seller_id)
    return refunds.refund(order_id, reason or "Seller declined the order")


def expire_stale_commits(db, refunds, settings, now=None):
    """Cancel and refund orders the seller did not commit to in time.

    One bad order does not stop the sweep; its failure is logged and reported.
    """
    cutoff = (now or utcnow()) - timedelta(hours=settings.commit_window_hours)
    stale_ids = db.execute(
        select(Order.id).where(
            Order.status == OrderStatus.PENDING_COMMIT,
            Order.created_at < cutoff,
        )
    ).scalars().all()

    machine = OrderStateMachine(db)
    expired, failed = [], []
    for order_id in stale_ids:
        try:
            machine.advance(order_id, OrderStatus.PENDING_COMMIT, OrderStatus.CANCELLED,
                            cancelled_at=utcnow())
            db.commit()
        except StateConflict:
            # committed or cancelled since the query ran
            db.rollback()
            continue

        try:
            refunds.refund(
                order_id,
                f"Order expired - seller did not commit within {settings.commit_window_hours} hours",
            )
        except MarketplaceError as exc:
            db.rollback()
            logger.warning("commit_expiry_refund_failed", order_id=order_id, error=exc.message)
            failed.append({"order_id": order_id, "error": exc.message})
            continue
        expired.append(order_id)

    logger.info("commit_expiry_complete", expired=len(expired), failed=len(failed))
    return {"expired": expired, "failed": failed}


def send_commit_reminders(db, notifier, settings, now=None):
    """Remind sellers once about orders still waiting for their commit.

    Orders become due ``commit_reminder_hours`` after creation and stay due
    until the commit window closes. Fewer than 12 hours left marks the
    reminder urgent.
    """
    now = now or utcnow()
    window = timedelta(hours=settings.commit_window_hours)
    due = db.execute(
        select(Order)
        .where(
            Order.status == OrderStatus.PENDING_COMMIT,
            Order.reminder_sent_at.is_(None),
            Order.created_at < now - timedelta(hours=settings.commit_reminder_hours),
            Order.created_at > now - window,
        )
        .order_by(Order.created_at)
    ).scalars().all()

    sent, failed = [], []
    for order in due:
        order_id = order.id
        hours_left = max(0, int((as_utc(order.created_at) + window - now).total_seconds() // 3600))
        urgent = hours_left <= 12
        seller, book = order.seller, order.book
        delivered = notify_quietly(
            notifier, seller.email if seller else None, "seller-commit-reminder",
            {
                "seller_name": seller.name if seller else None,
                "order_id": order_id,
                "book_title": book.title if book else None,
                "amount": order.amount,
                "hours_left": hours_left,
                "urgent": urgent,
            },
            order_id=order_id,
        )
        if not delivered:
            failed.append(order_id)
            continue

        db.execute(
            update(Order)
            .where(Order.id == order_id, Order.reminder_sent_at.is_(None))
            .values(reminder_sent_at=now)
        )
        db.commit()
        sent.append({"order_id": order_id, "hours_left": hours_left, "urgent": urgent})

    logger.info("commit_reminders_complete", sent=len(sent), failed=len(failed),
                urgent=sum(1 for r in sent if r["urgent"]))
    return {"sent": sent, "failed": failed}
