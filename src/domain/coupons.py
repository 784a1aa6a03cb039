# src/domain/coupons.py

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Collection, Optional, Sequence

from src.domain.exceptions import InvalidCouponError


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"
    FREE_TICKETS = "free_tickets"


@dataclass(frozen=True)
class CartLine:
    performance_id: str
    quantity: int
    price_per_ticket_cents: int

    @property
    def subtotal_cents(self) -> int:
        return self.quantity * self.price_per_ticket_cents


def cart_total_cents(lines: Sequence[CartLine]) -> int:
    return sum(line.subtotal_cents for line in lines)


def calculate_discount(
    discount_type: DiscountType,
    discount_value: int,
    lines: Sequence[CartLine],
) -> int:
    """
    percentage: discount_value is a whole percent of the cart total.
    fixed: discount_value is in cents, capped at the cart total.
    free_tickets: the cheapest discount_value tickets are free.
    """
    total = cart_total_cents(lines)

    if discount_type == DiscountType.PERCENTAGE:
        return min(total, (total * discount_value + 50) // 100)

    if discount_type == DiscountType.FIXED:
        return min(discount_value, total)

    if discount_type == DiscountType.FREE_TICKETS:
        free_left = discount_value
        discount = 0
        for line in sorted(lines, key=lambda item: item.price_per_ticket_cents):
            if free_left <= 0:
                break
            free_here = min(line.quantity, free_left)
            discount += free_here * line.price_per_ticket_cents
            free_left -= free_here
        return discount

    return 0


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def validate_coupon(
    coupon,
    lines: Sequence[CartLine],
    restricted_performance_ids: Collection[str] = (),
    now: Optional[datetime] = None,
) -> int:
    """
    Checks a coupon against the cart and returns the discount in cents.

    Raises InvalidCouponError with a customer-facing message otherwise.
    """
    if coupon is None:
        raise InvalidCouponError("Invalid coupon code")

    now = now or datetime.now(timezone.utc)

    if not coupon.is_active:
        raise InvalidCouponError("This coupon is no longer active")
    if coupon.valid_from and _aware(coupon.valid_from) > now:
        raise InvalidCouponError("This coupon is not valid yet")
    if coupon.valid_until and _aware(coupon.valid_until) < now:
        raise InvalidCouponError("This coupon has expired")
    if coupon.max_uses is not None and coupon.usage_count >= coupon.max_uses:
        raise InvalidCouponError("This coupon has been used up")

    total = cart_total_cents(lines)
    if coupon.min_order_amount_cents and total < coupon.min_order_amount_cents:
        raise InvalidCouponError(
            f"Minimum order amount for this coupon is {coupon.min_order_amount_cents} cents"
        )

    if restricted_performance_ids:
        allowed = set(restricted_performance_ids)
        if not any(line.performance_id in allowed for line in lines):
            raise InvalidCouponError(
                "This coupon is not valid for the selected performances"
            )

    return calculate_discount(
        DiscountType(coupon.discount_type),
        coupon.discount_value,
        lines,
    )
