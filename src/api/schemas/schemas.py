from typing import Literal
from pydantic import BaseModel, Field


class CheckoutItemRequest(BaseModel):
    performance_id: str
    quantity: int = Field(gt=0)
    wheelchair_access: bool = False


class CheckoutRequestBody(BaseModel):
    customer_name: str = Field(min_length=1, max_length=100)
    customer_email: str = Field(min_length=3, max_length=255)
    items: list[CheckoutItemRequest]
    coupon_code: str | None = None


class CheckoutResponse(BaseModel):
    order_id: str
    status: Literal["redirect", "queued", "confirmed"]
    total_amount_cents: int
    discount_amount_cents: int
    payment_url: str | None = None
    job_id: str | None = None


class CouponValidateRequest(BaseModel):
    code: str = Field(min_length=1)
    items: list[CheckoutItemRequest]


class CouponValidateResponse(BaseModel):
    code: str
    subtotal_cents: int
    discount_amount_cents: int
    total_amount_cents: int


class PerformanceResponse(BaseModel):
    id: str
    show_id: str
    show_title: str
    starts_at: str
    status: str
    price_cents: int
    rows: int
    seats_per_row: int
    total_seats: int
    available_seats: int
    booked_seats: int


class SeatResponse(BaseModel):
    row_index: int
    row: str
    seat_number: int
    label: str
    wheelchair_access: bool


class SeatMapResponse(BaseModel):
    performance_id: str
    rows: int
    seats_per_row: int
    seats: list[SeatResponse]


class LineItemResponse(BaseModel):
    id: str
    performance_id: str
    quantity: int
    price_per_ticket_cents: int
    wheelchair_access: bool


class TicketResponse(BaseModel):
    id: str
    performance_id: str
    ticket_number: str
    row: str
    seat_number: int
    wheelchair_access: bool
    qr_token: str


class PaymentResponse(BaseModel):
    id: str
    status: str
    provider: str
    provider_transaction_id: str
    amount_cents: int
    currency: str
    payment_url: str | None = None
    created_at: str


class OrderResponse(BaseModel):
    id: str
    status: str
    customer_name: str
    customer_email: str
    total_amount_cents: int
    discount_amount_cents: int
    currency: str
    created_at: str
    line_items: list[LineItemResponse]
    tickets: list[TicketResponse]
    payments: list[PaymentResponse]


class RetryPaymentResponse(BaseModel):
    order_id: str
    payment_url: str


class MockWebhookRequest(BaseModel):
    provider_transaction_id: str
    status: str


class WebhookResponse(BaseModel):
    status: str = "ok"
    result: str


class JobResponse(BaseModel):
    id: str
    type: str
    status: str
    data: dict
    result: dict | None = None
    error_message: str | None = None
    execution_count: int
    priority: int
    next_retry_at: str | None = None
    created_at: str
    completed_at: str | None = None


class SyncPaymentsResponse(BaseModel):
    checked: int
    updated: int
    errors: int


class TicketVerifyRequest(BaseModel):
    qr_token: str = Field(min_length=1)


class TicketVerifyResponse(BaseModel):
    valid: bool
    message: str
    ticket_number: str
    row: str
    seat_number: int
    wheelchair_access: bool
    customer_name: str
    show_title: str
    performance_starts_at: str
    scanned_at: str | None = None
