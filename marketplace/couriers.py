"""Courier provider adapters and the ordered-fallback combinator."""

from dataclasses import dataclass, field
from datetime import date, timedelta

import httpx
import structlog

from marketplace.errors import ExternalServiceError, NotFound, RateLimited, ValidationError

logger = structlog.get_logger(__name__)


@dataclass
class Parcel:
    reference: str
    pickup_address: dict
    delivery_address: dict
    weight_kg: float
    length_cm: int
    width_cm: int
    height_cm: int
    description: str
    declared_value: int          # minor units


@dataclass
class Booking:
    provider: str
    tracking_number: str
    pickup_date: str
    pickup_time_window: str
    label_url: str | None = None
    raw: dict = field(default_factory=dict)


TRACKING_STATUSES = {
    "created": "Shipment created and ready for collection",
    "ready_for_collection": "Package ready for courier collection",
    "collected": "Package collected by courier",
    "in_transit": "Package in transit to destination",
    "out_for_delivery": "Package out for delivery",
    "delivered": "Package delivered successfully",
    "unknown": "Status unknown",
}


@dataclass
class TrackingEvent:
    timestamp: str | None
    status: str
    location: str | None = None
    description: str | None = None


@dataclass
class Tracking:
    provider: str
    tracking_number: str
    status: str
    events: list = field(default_factory=list)
    estimated_delivery: str | None = None
    current_location: str | None = None

    @property
    def status_description(self) -> str:
        return TRACKING_STATUSES[self.status]


def normalise_tracking_status(events) -> str:
    """Map the latest courier event onto one of TRACKING_STATUSES."""
    if not events:
        return "unknown"
    latest = (events[-1].status or "").lower()
    if "delivered" in latest:
        return "delivered"
    if "delivery" in latest:
        return "out_for_delivery"
    if "transit" in latest:
        return "in_transit"
    if "collected" in latest or "pickup" in latest:
        return "collected"
    if "ready" in latest or "depot" in latest:
        return "ready_for_collection"
    if "created" in latest or "booked" in latest:
        return "created"
    return "in_transit"


class AttemptsExhausted(Exception):
    def __init__(self, failures):
        self.failures = failures
        summary = "; ".join(f"{name}: {exc}" for name, exc in failures)
        super().__init__(summary or "no strategies to try")


def first_success(strategies):
    """Run ``(name, callable)`` pairs in order and return ``(name, result)``
    for the first that does not raise.

    Strategies run one at a time. When all of them fail, AttemptsExhausted
    carries every ``(name, exception)`` pair in the order tried.
    """
    failures = []
    for name, attempt in strategies:
        try:
            return name, attempt()
        except Exception as exc:
            logger.warning("strategy_failed", strategy=name, error=str(exc))
            failures.append((name, exc))
    raise AttemptsExhausted(failures)


def next_business_day(today=None) -> date:
    day = (today or date.today()) + timedelta(days=1)
    while day.weekday() >= 5:
        day += timedelta(days=1)
    return day


def parcel_size(parcel: Parcel) -> int:
    volume = parcel.length_cm * parcel.width_cm * parcel.height_cm
    if parcel.weight_kg <= 1 and volume <= 10_000:
        return 1
    if parcel.weight_kg <= 5 and volume <= 50_000:
        return 2
    if parcel.weight_kg <= 10 and volume <= 100_000:
        return 3
    return 4


class HttpCourierProvider:
    name = "courier"
    pickup_time_window = "09:00 - 17:00"

    def __init__(self, base_url: str, api_key: str, timeout: float = 10.0, transport=None):
        self.api_key = api_key
        self.client = httpx.Client(
            base_url=base_url,
            timeout=timeout,
            headers={"Authorization": f"Bearer {api_key}"},
            transport=transport,
        )

    def close(self):
        self.client.close()

    def shipment_request(self, parcel: Parcel) -> dict:
        raise NotImplementedError

    def _request(self, method: str, path: str, **kwargs) -> dict:
        if not self.api_key:
            raise ExternalServiceError(f"{self.name} API key not configured", service=self.name)

        try:
            response = self.client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise ExternalServiceError(f"{self.name} timed out", service=self.name) from exc
        except httpx.HTTPError as exc:
            raise ExternalServiceError(f"{self.name} transport error: {exc}", service=self.name) from exc

        if response.status_code == 429:
            raise RateLimited(f"{self.name} rate limit exceeded")
        try:
            body = response.json()
        except ValueError as exc:
            raise ExternalServiceError(f"{self.name} returned a non-JSON response",
                                       service=self.name) from exc
        if response.status_code == 404:
            raise NotFound(f"{self.name} has no record for {path}")
        if response.is_error:
            message = body.get("message") if isinstance(body, dict) else None
            raise ExternalServiceError(
                f"{self.name} returned {response.status_code}: {message or 'API error'}",
                service=self.name,
            )
        if not isinstance(body, dict):
            raise ExternalServiceError(f"{self.name} returned an unexpected body",
                                       service=self.name)
        return body.get("data") or body

    def book(self, parcel: Parcel) -> Booking:
        shipment = self._request("POST", "/shipments", json=self.shipment_request(parcel))
        tracking_number = shipment.get("waybill_number") or shipment.get("tracking_number")
        if not tracking_number:
            raise ExternalServiceError(f"{self.name} response had no tracking number",
                                       service=self.name)

        return Booking(
            provider=self.name,
            tracking_number=tracking_number,
            pickup_date=shipment.get("collection_date") or next_business_day().isoformat(),
            pickup_time_window=self.pickup_time_window,
            label_url=shipment.get("label_url") or shipment.get("waybill_url"),
            raw=shipment,
        )

    def tracking_event(self, event: dict) -> TrackingEvent:
        return TrackingEvent(
            timestamp=event.get("timestamp") or event.get("date"),
            status=event.get("status") or event.get("description") or "",
            location=event.get("location") or event.get("facility"),
            description=event.get("description") or event.get("status"),
        )

    def track(self, tracking_number: str) -> Tracking:
        tracking = self._request("GET", f"/track/{tracking_number}")
        raw_events = (tracking.get("events") or tracking.get("tracking_events")
                      or tracking.get("scans") or [])
        events = [self.tracking_event(e) for e in raw_events if isinstance(e, dict)]
        return Tracking(
            provider=self.name,
            tracking_number=tracking_number,
            status=normalise_tracking_status(events),
            events=events,
            estimated_delivery=(tracking.get("estimated_delivery_date")
                                or tracking.get("estimated_delivery")),
            current_location=tracking.get("current_location") or tracking.get("last_location"),
        )


def _courier_guy_address(address: dict) -> dict:
    return {
        "type": "residential",
        "company": address.get("name", ""),
        "street_address": address.get("street", ""),
        "local_area": address.get("suburb", ""),
        "city": address.get("city", ""),
        "zone": address.get("province", ""),
        "country": "ZA",
        "code": address.get("postal_code", ""),
        "contact": address.get("name", ""),
        "phone": address.get("phone", ""),
        "email": address.get("email", ""),
    }


class CourierGuyProvider(HttpCourierProvider):
    name = "courier-guy"
    pickup_time_window = "09:00 - 17:00"

    def shipment_request(self, parcel):
        return {
            "collection_address": _courier_guy_address(parcel.pickup_address),
            "delivery_address": _courier_guy_address(parcel.delivery_address),
            "parcels": [{
                "parcel_size": parcel_size(parcel),
                "submitted_length_cm": parcel.length_cm,
                "submitted_width_cm": parcel.width_cm,
                "submitted_height_cm": parcel.height_cm,
                "submitted_weight_kg": parcel.weight_kg,
                "parcel_description": parcel.description,
            }],
            "declared_value": parcel.declared_value / 100,
            "special_instructions_collection": "Handle with care - contains books",
            "custom_tracking_reference": parcel.reference,
            "service_level": "standard",
            "collection_date": next_business_day().isoformat(),
        }


class FastwayProvider(HttpCourierProvider):
    name = "fastway"
    pickup_time_window = "08:00 - 17:00"

    def shipment_request(self, parcel):
        def address(a):
            return {
                "company_name": a.get("name", ""),
                "contact_name": a.get("name", ""),
                "phone": a.get("phone", ""),
                "email": a.get("email", ""),
                "address_line_1": a.get("street", ""),
                "suburb": a.get("suburb", ""),
                "city": a.get("city", ""),
                "province": a.get("province", ""),
                "postal_code": a.get("postal_code", ""),
            }

        return {
            "pickup_address": address(parcel.pickup_address),
            "delivery_address": address(parcel.delivery_address),
            "items": [{
                "weight": parcel.weight_kg,
                "length": parcel.length_cm,
                "width": parcel.width_cm,
                "height": parcel.height_cm,
                "description": parcel.description,
                "value": parcel.declared_value / 100,
            }],
            "reference": parcel.reference,
            "pickup_date": next_business_day().isoformat(),
        }

    def tracking_event(self, event):
        # Fastway scans carry scan_type / scan_description
        return TrackingEvent(
            timestamp=event.get("timestamp") or event.get("scan_time") or event.get("date"),
            status=event.get("status") or event.get("description") or event.get("scan_type") or "",
            location=event.get("location") or event.get("facility") or event.get("depot"),
            description=(event.get("description") or event.get("status")
                         or event.get("scan_description")),
        )


PROVIDERS = {
    CourierGuyProvider.name: lambda s: CourierGuyProvider(
        s.courier_guy_base_url, s.courier_guy_api_key, s.courier_timeout),
    FastwayProvider.name: lambda s: FastwayProvider(
        s.fastway_base_url, s.fastway_api_key, s.courier_timeout),
}


def build_courier_providers(settings):
    """Providers in the configured priority order."""
    providers = []
    for name in settings.courier_priority:
        if name not in PROVIDERS:
            raise ValidationError(f"Unknown courier provider '{name}'")
        providers.append(PROVIDERS[name](settings))
    return providers
