from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from src.domain.coupons import DiscountType
from src.domain.state_machine import PerformanceStatus
from src.infrastructure.db.models import Base, Coupon, Performance, Show
from src.infrastructure.db.session import SessionLocal, engine
from src.infrastructure.repositories.coupon_repository import CouponRepository
from src.infrastructure.repositories.performance_repository import PerformanceRepository


def _dt(days_from_now: int, hour: int, minute: int) -> datetime:
    now = datetime.now(timezone.utc)
    target = now + timedelta(days=days_from_now)
    return target.replace(hour=hour, minute=minute, second=0, microsecond=0)


def seed_shows(db) -> list[Performance]:
    show_defs = [
        {
            "title": "The Importance of Being Earnest",
            "slug": "importance-of-being-earnest",
            "performances": [
                {"starts_at": _dt(7, 20, 0), "price_cents": 2500, "rows": 10, "seats_per_row": 14},
                {"starts_at": _dt(8, 20, 0), "price_cents": 2500, "rows": 10, "seats_per_row": 14},
            ],
        },
        {
            "title": "An Evening of Chamber Music",
            "slug": "evening-of-chamber-music",
            "performances": [
                {"starts_at": _dt(14, 19, 30), "price_cents": 1800, "rows": 6, "seats_per_row": 10},
            ],
        },
    ]

    performances: list[Performance] = []
    repository = PerformanceRepository(db)

    for item in show_defs:
        show = db.execute(select(Show).where(Show.slug == item["slug"])).scalar_one_or_none()
        if show:
            performances.extend(
                db.execute(select(Performance).where(Performance.show_id == show.id)).scalars().all()
            )
            continue

        show = Show(title=item["title"], slug=item["slug"])
        db.add(show)
        db.flush()

        for perf in item["performances"]:
            performances.append(
                repository.create_performance(
                    show_id=show.id,
                    starts_at=perf["starts_at"],
                    price_cents=perf["price_cents"],
                    rows=perf["rows"],
                    seats_per_row=perf["seats_per_row"],
                    status=PerformanceStatus.PUBLISHED,
                )
            )

    db.flush()
    return performances


def seed_coupons(db) -> None:
    coupon_defs = [
        {
            "code": "WELCOME10",
            "description": "10% off your first order",
            "discount_type": DiscountType.PERCENTAGE,
            "discount_value": 10,
        },
        {
            "code": "BRINGAFRIEND",
            "description": "One free ticket on orders of 4 or more",
            "discount_type": DiscountType.FREE_TICKETS,
            "discount_value": 1,
            "min_order_amount_cents": 7000,
            "max_uses": 100,
        },
    ]

    repository = CouponRepository(db)
    for item in coupon_defs:
        existing = db.execute(select(Coupon).where(Coupon.code == item["code"])).scalar_one_or_none()
        if existing:
            existing.is_active = True
            continue
        code = item.pop("code")
        repository.create_coupon(code, **item)


def main() -> None:
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        performances = seed_shows(db)
        seed_coupons(db)
        db.commit()
        print("Seed complete: performances")
        for performance in performances:
            print(f"  {performance.id}  {performance.starts_at.isoformat()}  {performance.total_seats} seats")
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
