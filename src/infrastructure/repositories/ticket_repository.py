# src/infrastructure/repositories/ticket_repository.py

from datetime import datetime, timezone

from sqlalchemy.orm import Session
from sqlalchemy import func, select, update

from src.infrastructure.db.models import Ticket
from src.domain.seat_allocator import occupancy_from


class TicketRepository:

    def __init__(self, db: Session):
        self.db = db

    def occupied_seats(self, performance_id: str) -> frozenset:
        stmt = select(Ticket.row_index, Ticket.seat_number).where(
            Ticket.performance_id == performance_id
        )
        return occupancy_from(self.db.execute(stmt).all())

    def list_for_performance(self, performance_id: str) -> list[Ticket]:
        stmt = (
            select(Ticket)
            .where(Ticket.performance_id == performance_id)
            .order_by(Ticket.row_index, Ticket.seat_number)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_for_order(self, order_id: str) -> list[Ticket]:
        stmt = (
            select(Ticket)
            .where(Ticket.order_id == order_id)
            .order_by(Ticket.performance_id, Ticket.row_index, Ticket.seat_number)
        )
        return list(self.db.execute(stmt).scalars().all())

    def count_for_order(self, order_id: str) -> int:
        stmt = select(func.count(Ticket.id)).where(Ticket.order_id == order_id)
        return self.db.execute(stmt).scalar_one()

    def add_ticket(
        self,
        line_item_id: str,
        order_id: str,
        performance_id: str,
        row_index: int,
        seat_number: int,
        wheelchair_access: bool,
        ticket_number: str,
        qr_token: str,
    ) -> Ticket:
        ticket = Ticket(
            line_item_id=line_item_id,
            order_id=order_id,
            performance_id=performance_id,
            row_index=row_index,
            seat_number=seat_number,
            wheelchair_access=wheelchair_access,
            ticket_number=ticket_number,
            qr_token=qr_token,
        )
        self.db.add(ticket)
        return ticket

    def get_by_qr_token(self, qr_token: str) -> Ticket | None:
        stmt = select(Ticket).where(Ticket.qr_token == qr_token)
        return self.db.execute(stmt).scalar_one_or_none()

    def mark_scanned(self, ticket_id: str) -> bool:
        """
        Sets scanned_at once. Returns False when another scan got there first.
        """
        result = self.db.execute(
            update(Ticket)
            .where(Ticket.id == ticket_id)
            .where(Ticket.scanned_at.is_(None))
            .values(scanned_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
