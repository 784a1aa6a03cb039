# src/infrastructure/repositories/performance_repository.py

from typing import Iterable

from sqlalchemy.orm import Session
from sqlalchemy import select

from src.infrastructure.db.models import Performance
from src.domain.exceptions import InsufficientCapacityError, PerformanceNotFoundError
from src.domain.state_machine import PerformanceStatus


class PerformanceRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, performance_id: str) -> Performance | None:
        stmt = select(Performance).where(Performance.id == performance_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def lock(self, performance_id: str) -> Performance:
        """
        SELECT ... FOR UPDATE
        Serializes every capacity change for one performance.
        """

        stmt = (
            select(Performance)
            .where(Performance.id == performance_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )

        performance = self.db.execute(stmt).scalar_one_or_none()

        if not performance:
            raise PerformanceNotFoundError(f"Performance {performance_id} not found")

        return performance

    def lock_many(self, performance_ids: Iterable[str]) -> dict[str, Performance]:
        # Ascending id order keeps two multi-performance carts from deadlocking.
        return {
            performance_id: self.lock(performance_id)
            for performance_id in sorted(set(performance_ids))
        }

    def create_performance(
        self,
        show_id: str,
        starts_at,
        price_cents: int,
        rows: int,
        seats_per_row: int,
        status: PerformanceStatus = PerformanceStatus.PUBLISHED,
    ) -> Performance:
        total_seats = rows * seats_per_row
        performance = Performance(
            show_id=show_id,
            starts_at=starts_at,
            price_cents=price_cents,
            rows=rows,
            seats_per_row=seats_per_row,
            total_seats=total_seats,
            available_seats=total_seats,
            status=status,
        )
        self.db.add(performance)
        return performance

    def decrement_available(
        self,
        performance: Performance,
        seat_count: int,
    ) -> None:
        # Caller must hold the row lock from lock()/lock_many().
        if performance.available_seats < seat_count:
            raise InsufficientCapacityError(
                performance_id=performance.id,
                requested=seat_count,
                available=performance.available_seats,
            )
        performance.available_seats -= seat_count

    def increment_available(
        self,
        performance: Performance,
        seat_count: int,
    ) -> int:
        """
        Gives seats back, never past total_seats.
        Returns the number of seats actually released.
        """
        released = min(seat_count, performance.total_seats - performance.available_seats)
        performance.available_seats += released
        return released
