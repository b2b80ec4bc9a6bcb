"""Courier pickup booking and the delivery half of the order lifecycle."""

from dataclasses import dataclass
from pathlib import Path

import httpx
import structlog
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from marketplace.couriers import AttemptsExhausted, Parcel, Tracking, first_success
from marketplace.errors import CourierBookingFailed, NotFound, StateConflict, ValidationError
from marketplace.models import DeliveryStatus, Order, OrderStatus, utcnow
from marketplace.notifications import notify_quietly
from marketplace.reconciliation import record_issue
from marketplace.state_machine import OrderStateMachine

logger = structlog.get_logger(__name__)


class LabelStore:
    """Shipping labels on local disk, served under a public base URL."""

    def __init__(self, root, public_base_url: str):
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")

    @staticmethod
    def key_for(order_id: str) -> str:
        return f"shipping-labels/{order_id}.pdf"

    def save(self, order_id: str, content: bytes) -> str:
        key = self.key_for(order_id)
        path = self.root / key
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        return f"{self.public_base_url}/{key}"


@dataclass
class PickupResult:
    provider: str
    tracking_number: str
    pickup_date: str
    pickup_time_window: str
    label_url: str | None
    persisted: bool = True


class DeliveryOrchestrator:
    def __init__(self, db, settings, providers, label_store, notifier, http=None):
        self.db = db
        self.settings = settings
        self.providers = providers
        self.label_store = label_store
        self.notifier = notifier
        self.http = http
        self.machine = OrderStateMachine(db)

    def _get_order(self, order_id) -> Order:
        order = self.db.get(Order, order_id)
        if order is None:
            raise NotFound(f"Order {order_id} not found")
        return order

    def build_parcel(self, order: Order) -> Parcel:
        seller = order.seller
        pickup = dict(seller.pickup_address or {}) if seller else {}
        pickup.setdefault("name", seller.name if seller else "Seller")
        pickup.setdefault("phone", seller.phone if seller else "")
        pickup.setdefault("email", seller.email if seller else "")
        pickup.setdefault("postal_code", "0000")

        delivery = dict(order.shipping_address or {})
        if order.buyer:
            delivery.setdefault("name", order.buyer.name)
            delivery.setdefault("phone", order.buyer.phone or "")
            delivery.setdefault("email", order.buyer.email or "")

        book = order.book
        length, width, height = self.settings.parcel_dimensions
        return Parcel(
            reference=order.id,
            pickup_address=pickup,
            delivery_address=delivery,
            weight_kg=(book.weight_kg if book and book.weight_kg else
                       self.settings.default_parcel_weight),
            length_cm=length,
            width_cm=width,
            height_cm=height,
            description=f"Book: {book.title if book and book.title else 'Textbook'}",
            declared_value=order.amount,
        )

    def _download(self, url: str) -> httpx.Response:
        if self.http is not None:
            return self.http.get(url)
        with httpx.Client(timeout=self.settings.label_download_timeout) as client:
            return client.get(url)

    def _store_label(self, order_id: str, remote_url: str | None) -> str | None:
        if not remote_url:
            return None
        try:
            response = self._download(remote_url)
            response.raise_for_status()
            stored = self.label_store.save(order_id, response.content)
        except (httpx.HTTPError, OSError) as exc:
            logger.warning("label_storage_failed", order_id=order_id, error=str(exc))
            return remote_url
        logger.info("label_stored", order_id=order_id, label_url=stored)
        return stored

    def schedule_pickup(self, order_id: str) -> PickupResult:
        order = self._get_order(order_id)
        if order.status != OrderStatus.COMMITTED:
            raise StateConflict(
                f"Pickup can only be scheduled for committed orders (status '{order.status.value}')"
            )

        parcel = self.build_parcel(order)
        logger.info("courier_booking_started", order_id=order_id,
                    providers=[p.name for p in self.providers])
        try:
            provider, booking = first_success(
                (p.name, lambda p=p: p.book(parcel)) for p in self.providers
            )
        except AttemptsExhausted as exc:
            attempts = [(name, str(error)) for name, error in exc.failures]
            logger.error("courier_booking_failed", order_id=order_id, attempts=attempts)
            raise CourierBookingFailed(f"Failed to book courier pickup: {exc}",
                                       attempts=attempts) from exc

        seller_email = order.seller.email if order.seller else None
        logger.info("courier_booked", order_id=order_id, provider=provider,
                    tracking_number=booking.tracking_number)

        # The pickup is reserved from here on; nothing below may fail the call.
        label_url = self._store_label(order_id, booking.label_url)
        result = PickupResult(
            provider=provider,
            tracking_number=booking.tracking_number,
            pickup_date=booking.pickup_date,
            pickup_time_window=booking.pickup_time_window,
            label_url=label_url,
        )

        try:
            self.machine.advance(
                order_id, OrderStatus.COMMITTED, OrderStatus.COURIER_SCHEDULED,
                courier_provider=provider,
                tracking_number=booking.tracking_number,
                pickup_date=booking.pickup_date,
                pickup_time_window=booking.pickup_time_window,
                shipping_label_url=label_url,
                delivery_status=DeliveryStatus.PICKUP_SCHEDULED,
            )
            self.db.commit()
        except (SQLAlchemyError, StateConflict) as exc:
            self.db.rollback()
            result.persisted = False
            logger.error("booking_not_persisted", order_id=order_id, provider=provider,
                         tracking_number=booking.tracking_number, error=str(exc))
            record_issue(
                self.db, "booking_not_persisted", reference=booking.tracking_number,
                order_id=order_id, detail=str(exc),
                payload={"provider": provider, "tracking_number": booking.tracking_number,
                         "pickup_date": booking.pickup_date, "label_url": label_url},
            )

        notify_quietly(
            self.notifier, seller_email, "seller-pickup-notification",
            {
                "order_id": order_id,
                "courier_provider": provider,
                "tracking_number": booking.tracking_number,
                "pickup_date": booking.pickup_date,
                "pickup_time_window": booking.pickup_time_window,
                "shipping_label_url": label_url,
            },
            order_id=order_id,
        )
        return result

    def record_pickup_attempt(self, order_id: str) -> Order:
        result = self.db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == OrderStatus.COURIER_SCHEDULED)
            .values(delivery_status=DeliveryStatus.PICKUP_ATTEMPTED, updated_at=utcnow())
        )
        order = self._get_order(order_id)
        if result.rowcount != 1:
            raise StateConflict(
                f"Pickup attempts apply to courier_scheduled orders (status '{order.status.value}')"
            )
        self.db.commit()
        logger.info("pickup_attempt_recorded", order_id=order_id)
        return order

    def mark_collected(self, order_id: str) -> Order:
        order = self.machine.advance(order_id, OrderStatus.COURIER_SCHEDULED, OrderStatus.SHIPPED)
        self.db.commit()
        return order

    def mark_delivered(self, order_id: str) -> Order:
        order = self.machine.advance(
            order_id, OrderStatus.SHIPPED, OrderStatus.DELIVERED,
            delivery_status=DeliveryStatus.DELIVERED,
            delivered_at=utcnow(),
        )
        self.db.commit()
        buyer = order.buyer
        notify_quietly(self.notifier, buyer.email if buyer else None, "buyer-order-delivered",
                       {"order_id": order_id}, order_id=order_id)
        return order

    def track(self, order_id: str) -> Tracking:
        """Latest courier status for a booked order, normalised across providers."""
        order = self._get_order(order_id)
        if not order.tracking_number or not order.courier_provider:
            raise StateConflict("Order has no courier booking to track")

        provider = next((p for p in self.providers if p.name == order.courier_provider), None)
        if provider is None:
            raise ValidationError(f"Courier provider '{order.courier_provider}' is not configured")

        tracking = provider.track(order.tracking_number)
        logger.info("tracking_fetched", order_id=order_id, provider=provider.name,
                    status=tracking.status, events=len(tracking.events))
        return tracking
