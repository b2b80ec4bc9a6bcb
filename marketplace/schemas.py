"""Request/response models for the HTTP API."""

from pydantic import BaseModel, Field


class CommitRequest(BaseModel):
    seller_id: str


class CommitResponse(BaseModel):
    success: bool = True
    message: str


class DeclineRequest(BaseModel):
    seller_id: str
    reason: str | None = None


class PickupResponse(BaseModel):
    success: bool = True
    provider: str
    tracking_number: str
    pickup_date: str
    pickup_time_window: str
    label_url: str | None = None


class OrderStatusResponse(BaseModel):
    success: bool = True
    order_id: str
    status: str
    delivery_status: str


class RefundRequest(BaseModel):
    reason: str = Field(min_length=1)
    admin_action: bool = False


class RefundOut(BaseModel):
    id: str
    reference: str | None
    amount: int
    status: str
    expected_date: str


class RefundResponse(BaseModel):
    success: bool = True
    message: str
    refund: RefundOut


class OrderSplitOut(BaseModel):
    order_id: str
    book_price: int
    delivery_fee: int
    platform_commission: int
    retained_delivery_fee: int
    seller_amount: int


class PayoutBreakdownResponse(BaseModel):
    seller_id: str
    order_ids: list[str]
    orders: list[OrderSplitOut]
    total_book_sales: int
    total_delivery_fees: int
    platform_commission: int
    platform_earnings: int
    seller_amount: int
    recipient_code: str | None
    minimum_payout: int
    below_minimum: bool


class PayoutRequestResponse(BaseModel):
    success: bool = True
    payout_id: str
    amount: int
    order_ids: list[str]
    status: str


class ExpiryResponse(BaseModel):
    success: bool = True
    expired: list[str]
    failed: list[dict]


class ReminderOut(BaseModel):
    order_id: str
    hours_left: int
    urgent: bool


class ReminderResponse(BaseModel):
    success: bool = True
    sent: list[ReminderOut]
    failed: list[str]


class TrackingEventOut(BaseModel):
    timestamp: str | None = None
    status: str
    location: str | None = None
    description: str | None = None


class TrackingResponse(BaseModel):
    success: bool = True
    order_id: str
    provider: str
    tracking_number: str
    status: str
    status_description: str
    estimated_delivery: str | None = None
    current_location: str | None = None
    events: list[TrackingEventOut]
