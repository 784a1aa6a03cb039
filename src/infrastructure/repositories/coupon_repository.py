# src/infrastructure/repositories/coupon_repository.py

from sqlalchemy.orm import Session
from sqlalchemy import select

from src.infrastructure.db.models import Coupon, CouponPerformance, CouponUsage


def normalize_code(code: str) -> str:
    return code.strip().upper()


class CouponRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_code(self, code: str) -> Coupon | None:
        stmt = select(Coupon).where(Coupon.code == normalize_code(code))
        return self.db.execute(stmt).scalar_one_or_none()

    def lock_by_code(self, code: str) -> Coupon | None:
        stmt = (
            select(Coupon)
            .where(Coupon.code == normalize_code(code))
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def restricted_performance_ids(self, coupon_id: str) -> list[str]:
        stmt = select(CouponPerformance.performance_id).where(
            CouponPerformance.coupon_id == coupon_id
        )
        return list(self.db.execute(stmt).scalars().all())

    def create_coupon(self, code: str, **fields) -> Coupon:
        coupon = Coupon(code=normalize_code(code), **fields)
        self.db.add(coupon)
        self.db.flush()
        return coupon

    def restrict_to_performance(self, coupon: Coupon, performance_id: str) -> None:
        self.db.add(CouponPerformance(coupon_id=coupon.id, performance_id=performance_id))

    def record_usage(
        self,
        coupon: Coupon,
        order_id: str,
        discount_amount_cents: int,
    ) -> CouponUsage:
        # Caller must hold the coupon row lock.
        usage = CouponUsage(
            coupon_id=coupon.id,
            order_id=order_id,
            discount_amount_cents=discount_amount_cents,
        )
        coupon.usage_count += 1
        self.db.add(usage)
        return usage

    def release_usages(self, order_id: str) -> int:
        """
        Deletes the order's coupon usages and gives the uses back,
        never taking a usage counter below zero.
        """
        usages = list(
            self.db.execute(
                select(CouponUsage)
                .where(CouponUsage.order_id == order_id)
                .order_by(CouponUsage.coupon_id)
            ).scalars().all()
        )

        for usage in usages:
            coupon = self.db.execute(
                select(Coupon)
                .where(Coupon.id == usage.coupon_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            if coupon:
                coupon.usage_count = max(0, coupon.usage_count - 1)
            self.db.delete(usage)

        return len(usages)
