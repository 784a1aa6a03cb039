import logging
import secrets

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import HTMLResponse
from fastapi.templating import Jinja2Templates
from sqlalchemy.orm import Session

from src.infrastructure import config
from src.infrastructure.db.session import SessionLocal
from src.application.checkout_service import CheckoutItem, CheckoutRequest, CheckoutService
from src.application.payment_service import PaymentLifecycle
from src.application.ticket_service import TicketService
from src.api.schemas.schemas import (
    CheckoutRequestBody,
    CheckoutResponse,
    CouponValidateRequest,
    CouponValidateResponse,
    JobResponse,
    LineItemResponse,
    MockWebhookRequest,
    OrderResponse,
    PaymentResponse,
    PerformanceResponse,
    RetryPaymentResponse,
    SeatMapResponse,
    SeatResponse,
    SyncPaymentsResponse,
    TicketResponse,
    TicketVerifyRequest,
    TicketVerifyResponse,
    WebhookResponse,
)
from src.domain.exceptions import (
    BookingEngineError,
    CheckoutValidationError,
    InsufficientCapacityError,
    InvalidStateTransitionError,
    OrderNotFoundError,
    PaymentNotFoundError,
    PerformanceNotFoundError,
    TicketAlreadyScannedError,
    TicketNotFoundError,
    WebhookSignatureError,
)
from src.domain.seat_allocator import row_letter, seat_label
from src.domain.state_machine import JobStatus, JobType, OrderStatus
from src.infrastructure.db.models import Job, Order, Payment, Performance, Show, Ticket
from src.infrastructure.notifications.mailer import Mailer, get_mailer
from src.infrastructure.payments.gateway import PaymentGateway, RazorpayGateway, get_payment_gateway
from src.infrastructure.payments.mock_gateway import MockPaymentGateway
from src.infrastructure.repositories.job_repository import JobRepository
from src.infrastructure.repositories.order_repository import OrderRepository
from src.infrastructure.repositories.payment_repository import PaymentRepository
from src.infrastructure.repositories.performance_repository import PerformanceRepository
from src.infrastructure.repositories.ticket_repository import TicketRepository


router = APIRouter()
templates = Jinja2Templates(directory="src/templates")
logger = logging.getLogger(__name__)


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


async def _raw_body(request: Request) -> bytes:
    return await request.body()


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def _http_error(exc: BookingEngineError) -> HTTPException:
    if isinstance(exc, InsufficientCapacityError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "message": str(exc),
                "performance_id": exc.performance_id,
                "requested": exc.requested,
                "available": exc.available,
            },
        )
    if isinstance(exc, (InvalidStateTransitionError, TicketAlreadyScannedError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(
        exc,
        (PerformanceNotFoundError, OrderNotFoundError, PaymentNotFoundError, TicketNotFoundError),
    ):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, (CheckoutValidationError, WebhookSignatureError)):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def _checkout_items(items) -> list[CheckoutItem]:
    return [
        CheckoutItem(
            performance_id=item.performance_id,
            quantity=item.quantity,
            wheelchair_access=item.wheelchair_access,
        )
        for item in items
    ]


def _performance_stats(performance: Performance, show: Show) -> PerformanceResponse:
    return PerformanceResponse(
        id=performance.id,
        show_id=performance.show_id,
        show_title=show.title,
        starts_at=performance.starts_at.isoformat(),
        status=performance.status.value,
        price_cents=performance.price_cents,
        rows=performance.rows,
        seats_per_row=performance.seats_per_row,
        total_seats=performance.total_seats,
        available_seats=performance.available_seats,
        booked_seats=performance.total_seats - performance.available_seats,
    )


def _ticket_response(ticket: Ticket) -> TicketResponse:
    return TicketResponse(
        id=ticket.id,
        performance_id=ticket.performance_id,
        ticket_number=ticket.ticket_number,
        row=row_letter(ticket.row_index),
        seat_number=ticket.seat_number,
        wheelchair_access=ticket.wheelchair_access,
        qr_token=ticket.qr_token,
    )


def _payment_response(payment: Payment) -> PaymentResponse:
    return PaymentResponse(
        id=payment.id,
        status=payment.status.value,
        provider=payment.provider,
        provider_transaction_id=payment.provider_transaction_id,
        amount_cents=payment.amount_cents,
        currency=payment.currency,
        payment_url=payment.provider_payment_url,
        created_at=payment.created_at.isoformat(),
    )


def _job_response(job: Job) -> JobResponse:
    return JobResponse(
        id=job.id,
        type=job.type.value,
        status=job.status.value,
        data=job.data or {},
        result=job.result,
        error_message=job.error_message,
        execution_count=job.execution_count,
        priority=job.priority,
        next_retry_at=_iso(job.next_retry_at),
        created_at=job.created_at.isoformat(),
        completed_at=_iso(job.completed_at),
    )


@router.get("/health")
def health():
    return {"message": "Venue ticketing engine is running"}


@router.get("/performances/{performance_id}", response_model=PerformanceResponse)
def get_performance(performance_id: str, db: Session = Depends(get_db)):
    performance = PerformanceRepository(db).get_by_id(performance_id)
    if not performance:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Performance not found",
        )
    show = db.get(Show, performance.show_id)
    return _performance_stats(performance, show)


@router.get("/performances/{performance_id}/seats", response_model=SeatMapResponse)
def get_performance_seats(performance_id: str, db: Session = Depends(get_db)):
    performance = PerformanceRepository(db).get_by_id(performance_id)
    if not performance:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Performance not found",
        )
    tickets = TicketRepository(db).list_for_performance(performance_id)
    return SeatMapResponse(
        performance_id=performance.id,
        rows=performance.rows,
        seats_per_row=performance.seats_per_row,
        seats=[
            SeatResponse(
                row_index=ticket.row_index,
                row=row_letter(ticket.row_index),
                seat_number=ticket.seat_number,
                label=seat_label(ticket.row_index, ticket.seat_number),
                wheelchair_access=ticket.wheelchair_access,
            )
            for ticket in tickets
        ],
    )


@router.post("/coupons/validate", response_model=CouponValidateResponse)
def validate_coupon(
    request: CouponValidateRequest,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    mailer: Mailer = Depends(get_mailer),
):
    service = CheckoutService(db, PaymentLifecycle(db, gateway=gateway, mailer=mailer))
    try:
        preview = service.preview_coupon(request.code, _checkout_items(request.items))
    except BookingEngineError as exc:
        raise _http_error(exc) from exc

    return CouponValidateResponse(
        code=preview.code,
        subtotal_cents=preview.subtotal_cents,
        discount_amount_cents=preview.discount_amount_cents,
        total_amount_cents=preview.total_amount_cents,
    )


@router.post("/checkout", response_model=CheckoutResponse)
def checkout(
    request: CheckoutRequestBody,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    mailer: Mailer = Depends(get_mailer),
):
    service = CheckoutService(db, PaymentLifecycle(db, gateway=gateway, mailer=mailer))
    try:
        result = service.checkout(
            CheckoutRequest(
                customer_name=request.customer_name,
                customer_email=request.customer_email,
                items=_checkout_items(request.items),
                coupon_code=request.coupon_code,
            )
        )
    except BookingEngineError as exc:
        raise _http_error(exc) from exc

    return CheckoutResponse(
        order_id=result.order_id,
        status=result.status,
        total_amount_cents=result.total_amount_cents,
        discount_amount_cents=result.discount_amount_cents,
        payment_url=result.payment_url,
        job_id=result.job_id,
    )


@router.get("/orders/{order_id}", response_model=OrderResponse)
def get_order(order_id: str, db: Session = Depends(get_db)):
    order = OrderRepository(db).get_by_id(order_id)
    if not order:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Order not found",
        )

    tickets = TicketRepository(db).list_for_order(order_id)
    return OrderResponse(
        id=order.id,
        status=order.status.value,
        customer_name=order.customer_name,
        customer_email=order.customer_email,
        total_amount_cents=order.total_amount_cents,
        discount_amount_cents=order.discount_amount_cents,
        currency=order.currency,
        created_at=order.created_at.isoformat(),
        line_items=[
            LineItemResponse(
                id=item.id,
                performance_id=item.performance_id,
                quantity=item.quantity,
                price_per_ticket_cents=item.price_per_ticket_cents,
                wheelchair_access=item.wheelchair_access,
            )
            for item in order.line_items
        ],
        tickets=[_ticket_response(ticket) for ticket in tickets],
        payments=[_payment_response(payment) for payment in order.payments],
    )


@router.get("/orders/{order_id}/retry-payment", response_model=RetryPaymentResponse)
def retry_payment(order_id: str, db: Session = Depends(get_db)):
    order = db.get(Order, order_id)
    if not order:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Order not found",
        )
    if order.status != OrderStatus.PENDING:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Order is {order.status.value} and cannot be paid again",
        )

    payment = PaymentRepository(db).open_payment_for_order(order_id)
    if not payment or not payment.provider_payment_url:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No active payment found for this order",
        )
    return RetryPaymentResponse(order_id=order.id, payment_url=payment.provider_payment_url)


@router.post("/webhooks/razorpay", response_model=WebhookResponse)
def razorpay_webhook(
    body: bytes = Depends(_raw_body),
    x_razorpay_signature: str | None = Header(default=None),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    mailer: Mailer = Depends(get_mailer),
):
    if not isinstance(gateway, RazorpayGateway):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Razorpay is not configured",
        )

    try:
        notification = gateway.parse_webhook(body, x_razorpay_signature)
    except WebhookSignatureError as exc:
        logger.warning("Rejected Razorpay webhook: %s", exc)
        raise _http_error(exc) from exc

    lifecycle = PaymentLifecycle(db, gateway=gateway, mailer=mailer)
    try:
        result = lifecycle.handle_webhook_or_enqueue(
            notification.provider_transaction_id,
            notification.status,
        )
    except PaymentNotFoundError as exc:
        raise _http_error(exc) from exc
    return WebhookResponse(result=result.value)


@router.post("/webhooks/mock-payments", response_model=WebhookResponse)
def mock_payment_webhook(
    request: MockWebhookRequest,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    mailer: Mailer = Depends(get_mailer),
):
    if not isinstance(gateway, MockPaymentGateway):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Mock payments are disabled",
        )

    gateway.set_status(request.provider_transaction_id, request.status)
    lifecycle = PaymentLifecycle(db, gateway=gateway, mailer=mailer)
    try:
        result = lifecycle.handle_webhook_or_enqueue(request.provider_transaction_id, request.status)
    except PaymentNotFoundError as exc:
        raise _http_error(exc) from exc
    return WebhookResponse(result=result.value)


@router.get("/checkout/mock-payment", response_class=HTMLResponse)
def mock_payment_page(
    request: Request,
    id: str,
    order_id: str,
    db: Session = Depends(get_db),
):
    payment = PaymentRepository(db).get_by_provider_transaction_id(id)
    if not payment or payment.order_id != order_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Payment not found",
        )
    order = db.get(Order, order_id)
    return templates.TemplateResponse(
        request,
        "mock_payment.html",
        {
            "payment": payment,
            "order": order,
            "amount": f"{payment.amount_cents / 100:.2f}",
        },
    )


@router.get("/jobs", response_model=list[JobResponse])
def list_jobs(
    status_filter: JobStatus | None = Query(default=None, alias="status"),
    type_filter: JobType | None = Query(default=None, alias="type"),
    limit: int = 50,
    db: Session = Depends(get_db),
):
    safe_limit = max(1, min(limit, 200))
    jobs = JobRepository(db).list_jobs(
        status=status_filter,
        job_type=type_filter,
        limit=safe_limit,
    )
    return [_job_response(job) for job in jobs]


@router.get("/jobs/{job_id}", response_model=JobResponse)
def get_job(job_id: str, db: Session = Depends(get_db)):
    job = JobRepository(db).get_by_id(job_id)
    if not job:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found",
        )
    return _job_response(job)


@router.post("/admin/sync-payments", response_model=SyncPaymentsResponse)
def sync_payments(
    secret: str | None = None,
    authorization: str | None = Header(default=None),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    mailer: Mailer = Depends(get_mailer),
):
    expected = config.PAYMENT_SYNC_SECRET
    provided = secret
    if authorization and authorization.startswith("Bearer "):
        provided = authorization[len("Bearer "):]
    if not expected or not provided or not secrets.compare_digest(provided, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )

    summary = PaymentLifecycle(db, gateway=gateway, mailer=mailer).sync_pending_payments()
    return SyncPaymentsResponse(**summary)


def _ticket_verify_response(details, valid: bool, message: str) -> TicketVerifyResponse:
    ticket = details.ticket
    return TicketVerifyResponse(
        valid=valid,
        message=message,
        ticket_number=ticket.ticket_number,
        row=row_letter(ticket.row_index),
        seat_number=ticket.seat_number,
        wheelchair_access=ticket.wheelchair_access,
        customer_name=details.order.customer_name,
        show_title=details.show.title,
        performance_starts_at=details.performance.starts_at.isoformat(),
        scanned_at=_iso(ticket.scanned_at),
    )


@router.get("/tickets/verify", response_model=TicketVerifyResponse)
def lookup_ticket(qr_token: str, db: Session = Depends(get_db)):
    try:
        details = TicketService(db).lookup(qr_token)
    except TicketNotFoundError as exc:
        raise _http_error(exc) from exc

    valid = details.ticket.scanned_at is None and details.order.status == OrderStatus.PAID
    return _ticket_verify_response(
        details,
        valid=valid,
        message="Ticket valid" if valid else "Ticket not valid for entry",
    )


@router.post("/tickets/verify", response_model=TicketVerifyResponse)
def scan_ticket(request: TicketVerifyRequest, db: Session = Depends(get_db)):
    try:
        details = TicketService(db).scan(request.qr_token)
    except (TicketNotFoundError, TicketAlreadyScannedError) as exc:
        raise _http_error(exc) from exc

    return _ticket_verify_response(details, valid=True, message="Ticket valid - entry granted")
