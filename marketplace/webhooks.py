"""Inbound payment-gateway webhooks.

Events arrive at least once and possibly concurrently, so every handler is a
conditional upsert keyed on the gateway reference. Only failures to record
the payment itself propagate (and make the gateway retry); failures of the
side effects are acknowledged and left for reconciliation.
"""

import hashlib
import hmac
import json

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from marketplace.errors import InvalidSignature, MarketplaceError, ValidationError
from marketplace.models import (
    Order, PaymentTransaction, Payout, PayoutStatus, TransactionStatus, utcnow,
)
from marketplace.orders import create_orders_for_payment
from marketplace.reconciliation import record_issue

logger = structlog.get_logger(__name__)


def sign(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha512).hexdigest()


def verify_signature(raw_body: bytes, signature: str | None, secret: str) -> None:
    if not signature:
        raise ValidationError("Missing signature")
    if not secret:
        raise InvalidSignature("Webhook secret is not configured")
    # headers arrive latin-1 decoded; compare as bytes so any character is a mismatch
    provided = signature.strip().lower().encode("utf-8", "surrogateescape")
    if not hmac.compare_digest(sign(raw_body, secret).encode(), provided):
        raise InvalidSignature("Invalid signature")


class WebhookGateway:
    def __init__(self, db, settings):
        self.db = db
        self.settings = settings
        self.handlers = {
            "charge.success": self.on_charge_success,
            "charge.failed": self.on_charge_failed,
            "transfer.success": self.on_transfer_success,
            "transfer.failed": self.on_transfer_failed,
        }

    def handle(self, raw_body: bytes, signature: str | None) -> dict:
        verify_signature(raw_body, signature, self.settings.webhook_secret)

        try:
            event = json.loads(raw_body)
        except ValueError as exc:
            raise ValidationError("Malformed webhook body") from exc
        if not isinstance(event, dict) or not isinstance(event.get("event"), str) \
                or not isinstance(event.get("data"), dict):
            raise ValidationError("Webhook body must be {event, data}")

        event_type, data = event["event"], event["data"]
        handler = self.handlers.get(event_type)
        if handler is None:
            logger.info("webhook_event_ignored", event=event_type)
            return {"processed": False}

        if not data.get("reference"):
            raise ValidationError(f"{event_type} event has no reference")

        logger.info("webhook_received", event=event_type, reference=data["reference"])
        handler(data)
        return {"processed": True}

    # charges

    def _upsert_payment(self, reference, status, data) -> PaymentTransaction:
        payment = self.db.get(PaymentTransaction, reference)
        if payment is None:
            try:
                self.db.add(PaymentTransaction(reference=reference, status=TransactionStatus.PENDING))
                self.db.commit()
            except IntegrityError:
                self.db.rollback()

        values = {"raw_payload": data, "amount": data.get("amount")}
        if status == TransactionStatus.SUCCESS:
            values["verified_at"] = utcnow()
        # never overwrite a success
        self.db.execute(
            update(PaymentTransaction)
            .where(
                PaymentTransaction.reference == reference,
                PaymentTransaction.status != TransactionStatus.SUCCESS,
            )
            .values(status=status, **values)
        )
        self.db.commit()
        return self.db.get(PaymentTransaction, reference, populate_existing=True)

    def on_charge_success(self, data):
        reference = data["reference"]
        payment = self._upsert_payment(reference, TransactionStatus.SUCCESS, data)

        metadata = data.get("metadata") or {}
        if not (metadata.get("buyer_id") and metadata.get("items")):
            logger.info("charge_success_processed", reference=reference, orders=0)
            return
        if payment.orders_linked_at is not None:
            logger.info("charge_success_repeated", reference=reference)
            return

        try:
            orders, created = create_orders_for_payment(self.db, reference, metadata)
            payment.orders_linked_at = utcnow()
            self.db.commit()
        except (MarketplaceError, SQLAlchemyError) as exc:
            self.db.rollback()
            logger.error("webhook_order_creation_failed", reference=reference, error=str(exc))
            record_issue(self.db, "order_creation_failed", reference=reference,
                         detail=str(exc), payload=data)
            return

        logger.info("charge_success_processed", reference=reference,
                    orders=len(orders), created=created)

    def on_charge_failed(self, data):
        self._upsert_payment(data["reference"], TransactionStatus.FAILED, data)
        logger.info("charge_failed_processed", reference=data["reference"])

    # transfers

    def _finish_transfer(self, data, status, order_payout_status):
        reference = data["reference"]
        payout = self.db.execute(
            select(Payout).where(Payout.transfer_reference == reference)
        ).scalar_one_or_none()
        if payout is None:
            logger.warning("transfer_reference_unknown", reference=reference)
            record_issue(self.db, "unknown_transfer", reference=reference,
                         detail="No payout carries this transfer reference", payload=data)
            return

        result = self.db.execute(
            update(Payout)
            .where(Payout.id == payout.id, Payout.status == TransactionStatus.PENDING)
            .values(
                status=status,
                transfer_response=data,
                completed_at=utcnow() if status == TransactionStatus.SUCCESS else None,
                updated_at=utcnow(),
            )
        )
        if result.rowcount == 1:
            self.db.execute(
                update(Order)
                .where(Order.id.in_(payout.order_ids),
                       Order.payout_status == PayoutStatus.INCLUDED)
                .values(payout_status=order_payout_status)
            )
        self.db.commit()
        logger.info("transfer_processed", reference=reference, payout_id=payout.id,
                    status=status.value, changed=result.rowcount == 1)

    def on_transfer_success(self, data):
        self._finish_transfer(data, TransactionStatus.SUCCESS, PayoutStatus.PAID)

    def on_transfer_failed(self, data):
        # orders become eligible for the next payout again
        self._finish_transfer(data, TransactionStatus.FAILED, PayoutStatus.PENDING)
