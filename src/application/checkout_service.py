# src/application/checkout_service.py

from collections import defaultdict
from dataclasses import dataclass, field
import logging
import re

from sqlalchemy.orm import Session

from src.infrastructure import config
from src.domain.coupons import CartLine, cart_total_cents, validate_coupon
from src.domain.exceptions import (
    CheckoutValidationError,
    InvalidCouponError,
    PerformanceNotFoundError,
)
from src.domain.state_machine import PerformanceStatus
from src.application.payment_service import PaymentLifecycle
from src.infrastructure.db.models import Order, Performance
from src.infrastructure.repositories.coupon_repository import CouponRepository
from src.infrastructure.repositories.order_repository import OrderRepository
from src.infrastructure.repositories.performance_repository import PerformanceRepository

logger = logging.getLogger(__name__)

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass(frozen=True)
class CheckoutItem:
    performance_id: str
    quantity: int
    wheelchair_access: bool = False


@dataclass(frozen=True)
class CheckoutRequest:
    customer_name: str
    customer_email: str
    items: list[CheckoutItem] = field(default_factory=list)
    coupon_code: str | None = None


@dataclass(frozen=True)
class CheckoutResult:
    order_id: str
    status: str
    total_amount_cents: int
    discount_amount_cents: int
    payment_url: str | None = None
    job_id: str | None = None


@dataclass(frozen=True)
class CouponPreview:
    code: str
    subtotal_cents: int
    discount_amount_cents: int
    total_amount_cents: int


class CheckoutService:
    """Application service coordinating checkout: reserve capacity, then create the payment."""

    def __init__(self, db: Session, payment_lifecycle: PaymentLifecycle | None = None):
        self.db = db
        self.performance_repository = PerformanceRepository(db)
        self.order_repository = OrderRepository(db)
        self.coupon_repository = CouponRepository(db)
        self.payment_lifecycle = payment_lifecycle or PaymentLifecycle(db)

    def checkout(self, request: CheckoutRequest) -> CheckoutResult:
        self._validate(request)

        order = self.reserve(request)

        if order.total_amount_cents == 0:
            payment = self.payment_lifecycle.confirm_free_order(order)
        else:
            payment = self.payment_lifecycle.create_payment(order)

        return CheckoutResult(
            order_id=order.id,
            status=payment.status,
            total_amount_cents=order.total_amount_cents,
            discount_amount_cents=order.discount_amount_cents,
            payment_url=payment.payment_url,
            job_id=payment.job_id,
        )

    def reserve(self, request: CheckoutRequest) -> Order:
        """
        Reserves seat capacity and creates the pending order in one
        transaction. Either every line item is reserved or nothing is.
        """
        requested: dict[str, int] = defaultdict(int)
        for item in request.items:
            requested[item.performance_id] += item.quantity

        try:
            performances = self.performance_repository.lock_many(requested)

            for performance_id, performance in performances.items():
                self._ensure_on_sale(performance)
                self.performance_repository.decrement_available(
                    performance, requested[performance_id]
                )

            lines = self._cart_lines(request, performances)
            subtotal = cart_total_cents(lines)

            coupon = None
            discount = 0
            if request.coupon_code:
                coupon = self.coupon_repository.lock_by_code(request.coupon_code)
                restricted = (
                    self.coupon_repository.restricted_performance_ids(coupon.id)
                    if coupon
                    else []
                )
                discount = validate_coupon(coupon, lines, restricted)

            order = self.order_repository.create_order(
                customer_name=request.customer_name.strip(),
                customer_email=request.customer_email.strip(),
                total_amount_cents=subtotal - discount,
                discount_amount_cents=discount,
                currency=config.PAYMENT_CURRENCY,
            )
            for position, item in enumerate(request.items):
                self.order_repository.add_line_item(
                    order,
                    performance_id=item.performance_id,
                    position=position,
                    quantity=item.quantity,
                    price_per_ticket_cents=performances[item.performance_id].price_cents,
                    wheelchair_access=item.wheelchair_access,
                )
            if coupon:
                self.coupon_repository.record_usage(coupon, order.id, discount)

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "Reserved %s seats across %s performances for order %s",
            sum(requested.values()),
            len(requested),
            order.id,
        )
        return order

    def preview_coupon(self, code: str, items: list[CheckoutItem]) -> CouponPreview:
        """Validates a coupon against a cart without reserving anything."""
        if not items:
            raise CheckoutValidationError("Cart is empty")

        performances = {}
        for item in items:
            performance = self.performance_repository.get_by_id(item.performance_id)
            if not performance:
                raise PerformanceNotFoundError(f"Performance {item.performance_id} not found")
            performances[item.performance_id] = performance

        lines = [
            CartLine(
                performance_id=item.performance_id,
                quantity=item.quantity,
                price_per_ticket_cents=performances[item.performance_id].price_cents,
            )
            for item in items
        ]
        coupon = self.coupon_repository.get_by_code(code)
        restricted = self.coupon_repository.restricted_performance_ids(coupon.id) if coupon else []
        discount = validate_coupon(coupon, lines, restricted)
        subtotal = cart_total_cents(lines)

        return CouponPreview(
            code=coupon.code,
            subtotal_cents=subtotal,
            discount_amount_cents=discount,
            total_amount_cents=subtotal - discount,
        )

    def _validate(self, request: CheckoutRequest) -> None:
        if not request.items:
            raise CheckoutValidationError("Cart is empty")

        for item in request.items:
            if item.quantity < 1:
                raise CheckoutValidationError("Quantity must be at least 1")
            if item.quantity > config.MAX_TICKETS_PER_LINE_ITEM:
                raise CheckoutValidationError(
                    f"At most {config.MAX_TICKETS_PER_LINE_ITEM} tickets per performance"
                )

        if not request.customer_name or not request.customer_name.strip():
            raise CheckoutValidationError("Customer name is required")
        if not request.customer_email or not _EMAIL_PATTERN.match(request.customer_email.strip()):
            raise CheckoutValidationError("A valid e-mail address is required")
        if request.coupon_code is not None and not request.coupon_code.strip():
            raise InvalidCouponError("Invalid coupon code")

        # Unlocked read; reserve re-checks under the row lock.
        for performance_id in sorted({item.performance_id for item in request.items}):
            performance = self.performance_repository.get_by_id(performance_id)
            if not performance:
                raise PerformanceNotFoundError(f"Performance {performance_id} not found")
            self._ensure_on_sale(performance)

    def _ensure_on_sale(self, performance: Performance) -> None:
        if performance.status != PerformanceStatus.PUBLISHED:
            raise CheckoutValidationError(
                f"Performance {performance.id} is not on sale ({performance.status.value})"
            )

    def _cart_lines(
        self,
        request: CheckoutRequest,
        performances: dict[str, Performance],
    ) -> list[CartLine]:
        return [
            CartLine(
                performance_id=item.performance_id,
                quantity=item.quantity,
                price_per_ticket_cents=performances[item.performance_id].price_cents,
            )
            for item in request.items
        ]
