from dataclasses import asdict

from fastapi import APIRouter, Depends

from marketplace.auth import verify_token
from marketplace.config import get_settings
from marketplace.couriers import build_courier_providers
from marketplace.database import SessionLocal
from marketplace.delivery import DeliveryOrchestrator, LabelStore
from marketplace.gateway import build_payment_gateway
from marketplace.notifications import build_notification_sender, notify_quietly
from marketplace.orders import decline_order, expire_stale_commits, send_commit_reminders
from marketplace.payouts import PayoutCalculator
from marketplace.refunds import RefundProcessor
from marketplace.schemas import (
    CommitRequest, CommitResponse, DeclineRequest, ExpiryResponse, OrderStatusResponse,
    PayoutBreakdownResponse, PayoutRequestResponse, PickupResponse, RefundOut,
    RefundRequest, RefundResponse, ReminderResponse, TrackingResponse,
)
from marketplace.state_machine import OrderStateMachine

router = APIRouter(dependencies=[Depends(verify_token)])


# Collaborators holding HTTP clients are closed when the request finishes.

def get_gateway(settings=Depends(get_settings)):
    gateway = build_payment_gateway(settings)
    try:
        yield gateway
    finally:
        gateway.close()


def get_courier_providers(settings=Depends(get_settings)):
    providers = build_courier_providers(settings)
    try:
        yield providers
    finally:
        for provider in providers:
            provider.close()


def get_notifier(settings=Depends(get_settings)):
    notifier = build_notification_sender(settings)
    try:
        yield notifier
    finally:
        notifier.close()


def get_label_store(settings=Depends(get_settings)):
    return LabelStore(settings.label_storage_dir, settings.label_public_base_url)


def _status(order):
    return OrderStatusResponse(order_id=order.id, status=order.status.value,
                               delivery_status=order.delivery_status.value)


def _refund_response(summary):
    return RefundResponse(
        message="Refund already processed" if summary.already_processed
        else "Refund processed successfully",
        refund=RefundOut(
            id=summary.id,
            reference=summary.reference,
            amount=summary.amount,
            status=summary.status,
            expected_date=summary.expected_date,
        ),
    )


@router.post("/orders/{order_id}/commit", response_model=CommitResponse)
def commit_order(order_id: str, request: CommitRequest, notifier=Depends(get_notifier)):
    with SessionLocal() as db:
        result = OrderStateMachine(db).commit(order_id, request.seller_id)
        if result.already_committed:
            return CommitResponse(message="Order already committed")

        buyer = result.order.buyer
        notify_quietly(notifier, buyer.email if buyer else None, "buyer-order-confirmed",
                       {"order_id": order_id, "expected_delivery": "3-5 business days"},
                       order_id=order_id)
        return CommitResponse(message="Order committed")


@router.post("/orders/{order_id}/decline", response_model=RefundResponse)
def decline(order_id: str, request: DeclineRequest, settings=Depends(get_settings),
            gateway=Depends(get_gateway), notifier=Depends(get_notifier)):
    with SessionLocal() as db:
        refunds = RefundProcessor(db, settings, gateway, notifier)
        summary = decline_order(db, refunds, order_id, request.seller_id, request.reason)
        return _refund_response(summary)


@router.post("/orders/{order_id}/schedule-pickup", response_model=PickupResponse)
def schedule_pickup(order_id: str, settings=Depends(get_settings),
                    providers=Depends(get_courier_providers),
                    label_store=Depends(get_label_store), notifier=Depends(get_notifier)):
    with SessionLocal() as db:
        orchestrator = DeliveryOrchestrator(db, settings, providers, label_store, notifier)
        result = orchestrator.schedule_pickup(order_id)
        return PickupResponse(
            provider=result.provider,
            tracking_number=result.tracking_number,
            pickup_date=result.pickup_date,
            pickup_time_window=result.pickup_time_window,
            label_url=result.label_url,
        )


def _delivery(db, settings, notifier):
    return DeliveryOrchestrator(db, settings, [], None, notifier)


@router.post("/orders/{order_id}/pickup-attempted", response_model=OrderStatusResponse)
def pickup_attempted(order_id: str, settings=Depends(get_settings), notifier=Depends(get_notifier)):
    with SessionLocal() as db:
        return _status(_delivery(db, settings, notifier).record_pickup_attempt(order_id))


@router.post("/orders/{order_id}/mark-collected", response_model=OrderStatusResponse)
def mark_collected(order_id: str, settings=Depends(get_settings), notifier=Depends(get_notifier)):
    with SessionLocal() as db:
        return _status(_delivery(db, settings, notifier).mark_collected(order_id))


@router.post("/orders/{order_id}/mark-delivered", response_model=OrderStatusResponse)
def mark_delivered(order_id: str, settings=Depends(get_settings), notifier=Depends(get_notifier)):
    with SessionLocal() as db:
        return _status(_delivery(db, settings, notifier).mark_delivered(order_id))


@router.get("/orders/{order_id}/tracking", response_model=TrackingResponse)
def tracking(order_id: str, settings=Depends(get_settings),
             providers=Depends(get_courier_providers), notifier=Depends(get_notifier)):
    with SessionLocal() as db:
        result = DeliveryOrchestrator(db, settings, providers, None, notifier).track(order_id)
        return TrackingResponse(
            order_id=order_id,
            provider=result.provider,
            tracking_number=result.tracking_number,
            status=result.status,
            status_description=result.status_description,
            estimated_delivery=result.estimated_delivery,
            current_location=result.current_location,
            events=[asdict(event) for event in result.events],
        )


@router.post("/orders/{order_id}/refund", response_model=RefundResponse)
def refund(order_id: str, request: RefundRequest, settings=Depends(get_settings),
           gateway=Depends(get_gateway), notifier=Depends(get_notifier)):
    with SessionLocal() as db:
        summary = RefundProcessor(db, settings, gateway, notifier).refund(
            order_id, request.reason, admin_action=request.admin_action)
        return _refund_response(summary)


@router.post("/orders/expire-stale-commits", response_model=ExpiryResponse)
def expire_commits(settings=Depends(get_settings), gateway=Depends(get_gateway),
                   notifier=Depends(get_notifier)):
    with SessionLocal() as db:
        refunds = RefundProcessor(db, settings, gateway, notifier)
        return ExpiryResponse(**expire_stale_commits(db, refunds, settings))


@router.post("/orders/send-commit-reminders", response_model=ReminderResponse)
def commit_reminders(settings=Depends(get_settings), notifier=Depends(get_notifier)):
    with SessionLocal() as db:
        return ReminderResponse(**send_commit_reminders(db, notifier, settings))


@router.get("/sellers/{seller_id}/payout-breakdown", response_model=PayoutBreakdownResponse)
def payout_breakdown(seller_id: str, settings=Depends(get_settings), gateway=Depends(get_gateway)):
    with SessionLocal() as db:
        breakdown = PayoutCalculator(db, settings, gateway).compute_seller_payout(seller_id)
        return PayoutBreakdownResponse(**breakdown.to_dict())


@router.post("/sellers/{seller_id}/payout-requests", response_model=PayoutRequestResponse)
def request_payout(seller_id: str, settings=Depends(get_settings), gateway=Depends(get_gateway)):
    with SessionLocal() as db:
        payout = PayoutCalculator(db, settings, gateway).request_payout(seller_id)
        return PayoutRequestResponse(payout_id=payout.id, amount=payout.amount,
                                     order_ids=payout.order_ids, status=payout.status.value)
