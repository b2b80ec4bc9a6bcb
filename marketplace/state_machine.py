"""Order status graph and status-guarded transitions."""

from dataclasses import dataclass

import structlog
from sqlalchemy import update

from marketplace.errors import AuthorizationError, NotFound, StateConflict
from marketplace.models import Order, OrderStatus, utcnow

logger = structlog.get_logger(__name__)

S = OrderStatus

_EXITS = {S.REFUNDED, S.CANCELLED, S.FAILED}

TRANSITIONS = {
    S.PENDING_COMMIT: {S.COMMITTED} | _EXITS,
    S.COMMITTED: {S.COURIER_SCHEDULED} | _EXITS,
    S.COURIER_SCHEDULED: {S.SHIPPED} | _EXITS,
    S.SHIPPED: {S.DELIVERED} | _EXITS,
    S.FAILED: {S.REFUNDED, S.CANCELLED},
    S.CANCELLED: {S.REFUNDED},
    S.DELIVERED: set(),
    S.REFUNDED: set(),
}

# commit() is idempotent for orders already at or past this point
COMMITTED_OR_LATER = {S.COMMITTED, S.COURIER_SCHEDULED, S.SHIPPED, S.DELIVERED}


def can_transition(from_status: OrderStatus, to_status: OrderStatus) -> bool:
    return to_status in TRANSITIONS[from_status]


@dataclass
class CommitResult:
    order: Order
    already_committed: bool


class OrderStateMachine:
    """Every write is a conditional UPDATE on the current status.

    ``commit`` is a complete operation and commits its own transaction.
    ``advance`` and ``decline`` only stage the update; the caller commits.
    """

    def __init__(self, db):
        self.db = db

    def _load(self, order_id) -> Order:
        order = self.db.get(Order, order_id, populate_existing=True)
        if order is None:
            raise NotFound(f"Order {order_id} not found")
        return order

    def commit(self, order_id: str, seller_id: str) -> CommitResult:
        now = utcnow()
        result = self.db.execute(
            update(Order)
            .where(
                Order.id == order_id,
                Order.seller_id == seller_id,
                Order.status == S.PENDING_COMMIT,
            )
            .values(status=S.COMMITTED, committed_at=now, updated_at=now)
        )
        if result.rowcount == 1:
            self.db.commit()
            logger.info("order_committed", order_id=order_id, seller_id=seller_id)
            return CommitResult(order=self._load(order_id), already_committed=False)

        order = self._load(order_id)
        if order.seller_id != seller_id:
            raise AuthorizationError("Order does not belong to this seller")
        if order.status in COMMITTED_OR_LATER:
            logger.info("order_commit_repeated", order_id=order_id, status=order.status.value)
            return CommitResult(order=order, already_committed=True)
        raise StateConflict(f"Order cannot be committed from status '{order.status.value}'")

    def advance(self, order_id: str, from_status: OrderStatus, to_status: OrderStatus,
                **changes) -> Order:
        if not can_transition(from_status, to_status):
            raise StateConflict(
                f"Illegal transition {from_status.value} -> {to_status.value}"
            )

        values = dict(changes, status=to_status, updated_at=utcnow())
        result = self.db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == from_status)
            .values(**values)
        )
        if result.rowcount != 1:
            order = self._load(order_id)
            raise StateConflict(
                f"Order is '{order.status.value}', expected '{from_status.value}'"
            )

        logger.info("order_advanced", order_id=order_id,
                    from_status=from_status.value, to_status=to_status.value)
        return self._load(order_id)

    def decline(self, order_id: str, seller_id: str) -> Order:
        order = self._load(order_id)
        if order.seller_id != seller_id:
            raise AuthorizationError("Order does not belong to this seller")
        if order.status != S.PENDING_COMMIT:
            raise StateConflict(
                f"Order cannot be declined in status '{order.status.value}'"
            )
        return self.advance(order_id, S.PENDING_COMMIT, S.CANCELLED, cancelled_at=utcnow())
