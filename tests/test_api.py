from dataclasses import replace

from jose import jwt

import marketplace.routes
from conftest import TestingSessionLocal
from marketplace.auth import verify_token
from marketplace.couriers import TrackingEvent
from marketplace.errors import ExternalServiceError
from marketplace.main import app as fastapi_app
from marketplace.models import Order, OrderStatus, RefundTransaction


def test_commit_endpoint(client, make_order, notifier):
    order = make_order()

    response = client.post(f"/orders/{order.id}/commit", json={"seller_id": "seller-1"})

    assert response.status_code == 200
    assert response.json() == {"success": True, "message": "Order committed"}
    assert notifier.sent[0][1] == "buyer-order-confirmed"

    again = client.post(f"/orders/{order.id}/commit", json={"seller_id": "seller-1"})
    assert again.status_code == 200
    assert again.json()["message"] == "Order already committed"
    assert len(notifier.sent) == 1


def test_commit_endpoint_errors(client, make_order):
    order = make_order(status=OrderStatus.CANCELLED)

    wrong_seller = client.post(f"/orders/{order.id}/commit", json={"seller_id": "intruder"})
    assert wrong_seller.status_code == 403

    conflict = client.post(f"/orders/{order.id}/commit", json={"seller_id": "seller-1"})
    assert conflict.status_code == 409
    assert conflict.json()["success"] is False

    missing = client.post("/orders/nope/commit", json={"seller_id": "seller-1"})
    assert missing.status_code == 404

    invalid = client.post(f"/orders/{order.id}/commit", json={})
    assert invalid.status_code == 400


def test_schedule_pickup_endpoint_falls_back(client, make_order):
    order = make_order(status=OrderStatus.COMMITTED)
    client.providers[0].error = ExternalServiceError("courier down")

    response = client.post(f"/orders/{order.id}/schedule-pickup")

    assert response.status_code == 200
    body = response.json()
    assert body["provider"] == "fastway"
    assert body["tracking_number"] == "FASTWAY-001"


def test_schedule_pickup_endpoint_all_fail(client, make_order):
    order = make_order(status=OrderStatus.COMMITTED)
    for provider in client.providers:
        provider.error = ExternalServiceError("down")

    response = client.post(f"/orders/{order.id}/schedule-pickup")

    assert response.status_code == 502
    db = TestingSessionLocal()
    assert db.get(Order, order.id).status == OrderStatus.COMMITTED
    db.close()


def test_refund_endpoint(client, make_order, gateway):
    order = make_order(status=OrderStatus.COMMITTED)

    response = client.post(f"/orders/{order.id}/refund", json={"reason": "Buyer request"})

    assert response.status_code == 200
    refund = response.json()["refund"]
    assert refund["amount"] == 22500
    assert refund["reference"] == "re_1"
    assert refund["status"] == "success"

    again = client.post(f"/orders/{order.id}/refund", json={"reason": "Buyer request"})
    assert again.json()["message"] == "Refund already processed"
    assert len(gateway.refunds) == 1


def test_refund_endpoint_rejects_delivered(client, make_order):
    order = make_order(status=OrderStatus.DELIVERED)

    response = client.post(f"/orders/{order.id}/refund", json={"reason": "Late"})

    assert response.status_code == 400
    assert "status 'delivered'" in response.json()["error"]


def test_decline_endpoint(client, make_order):
    order = make_order()

    response = client.post(f"/orders/{order.id}/decline", json={"seller_id": "seller-1"})

    assert response.status_code == 200
    assert response.json()["refund"]["status"] == "success"


def test_payout_endpoints(client, make_seller, make_order):
    make_seller("seller-1")
    make_order(status=OrderStatus.DELIVERED)

    breakdown = client.get("/sellers/seller-1/payout-breakdown")
    assert breakdown.status_code == 200
    assert breakdown.json()["seller_amount"] == 18000
    assert breakdown.json()["recipient_code"] == "acct_seller-1"

    requested = client.post("/sellers/seller-1/payout-requests")
    assert requested.status_code == 200
    assert requested.json()["amount"] == 18000

    no_banking = client.get("/sellers/seller-9/payout-breakdown")
    assert no_banking.status_code == 404


def test_routes_require_token(client, settings, make_order):
    order = make_order()
    del fastapi_app.dependency_overrides[verify_token]

    rejected = client.post(f"/orders/{order.id}/commit", json={"seller_id": "seller-1"},
                           headers={"Authorization": "Bearer not-a-jwt"})
    assert rejected.status_code == 401

    token = jwt.encode({"sub": "seller-1"}, settings.jwt_secret, algorithm="HS256")
    accepted = client.post(f"/orders/{order.id}/commit", json={"seller_id": "seller-1"},
                           headers={"Authorization": f"Bearer {token}"})
    assert accepted.status_code == 200


def test_admin_refund_endpoint_records_admin_action(client, make_order):
    order = make_order(status=OrderStatus.COMMITTED)

    response = client.post(f"/orders/{order.id}/refund",
                           json={"reason": "Fraud review", "admin_action": True})

    assert response.status_code == 200
    with TestingSessionLocal() as db:
        assert db.query(RefundTransaction).one().admin_action is True


def test_tracking_endpoint(client, make_order):
    order = make_order(status=OrderStatus.SHIPPED, courier_provider="courier-guy",
                       tracking_number="COURIER-GUY-001")
    client.providers[0].events = [
        TrackingEvent(timestamp="2026-10-19T09:00", status="Collected", location="Cape Town"),
        TrackingEvent(timestamp="2026-10-20T07:30", status="In transit"),
    ]

    response = client.get(f"/orders/{order.id}/tracking")

    assert response.status_code == 200
    body = response.json()
    assert body["provider"] == "courier-guy"
    assert body["status"] == "in_transit"
    assert body["status_description"] == "Package in transit to destination"
    assert body["events"][0]["location"] == "Cape Town"

    unbooked = make_order(status=OrderStatus.COMMITTED)
    assert client.get(f"/orders/{unbooked.id}/tracking").status_code == 409


def test_request_scoped_clients_are_closed(settings):
    providers_dependency = marketplace.routes.get_courier_providers(settings)
    providers = next(providers_dependency)
    providers_dependency.close()
    assert providers and all(p.client.is_closed for p in providers)

    notifier_dependency = marketplace.routes.get_notifier(
        replace(settings, notification_url="https://mail.test/send"))
    notifier = next(notifier_dependency)
    notifier_dependency.close()
    assert notifier.client.is_closed

    gateway_dependency = marketplace.routes.get_gateway(settings)
    gateway = next(gateway_dependency)
    gateway_dependency.close()
    assert gateway.client.is_closed
