# src/application/ticket_service.py

from dataclasses import dataclass
import logging
import secrets

from sqlalchemy.orm import Session

from src.domain.exceptions import (
    TicketAlreadyScannedError,
    TicketGenerationError,
    TicketNotFoundError,
)
from src.domain.seat_allocator import Seat, assign_seats, row_letter
from src.domain.state_machine import OrderStatus
from src.infrastructure.db.models import Order, Performance, Show, Ticket
from src.infrastructure.repositories.order_repository import OrderRepository
from src.infrastructure.repositories.performance_repository import PerformanceRepository
from src.infrastructure.repositories.ticket_repository import TicketRepository

logger = logging.getLogger(__name__)


def ticket_number(performance: Performance, seat: Seat) -> str:
    return f"{performance.show_id[:4].upper()}-{performance.id[:4].upper()}-{seat.label}"


def ticket_summary(ticket: Ticket) -> dict:
    return {
        "ticket_number": ticket.ticket_number,
        "row": row_letter(ticket.row_index),
        "seat": ticket.seat_number,
        "wheelchair_access": ticket.wheelchair_access,
    }


@dataclass(frozen=True)
class TicketDetails:
    ticket: Ticket
    order: Order
    performance: Performance
    show: Show


class TicketService:
    """Turns a paid order's line items into concrete seats, and checks tickets at the door."""

    def __init__(self, db: Session):
        self.db = db
        self.order_repository = OrderRepository(db)
        self.performance_repository = PerformanceRepository(db)
        self.ticket_repository = TicketRepository(db)

    def materialize(self, order: Order) -> list[Ticket]:
        """
        Assigns seats for every line item of the order and persists the tickets.

        Runs inside the caller's transaction. Raises TicketGenerationError when
        a performance cannot seat a whole line item, so the caller can roll
        back the paid transition together with any tickets already added.
        """
        existing = self.ticket_repository.list_for_order(order.id)
        if existing:
            logger.info("Order %s already has %s tickets; skipping", order.id, len(existing))
            return existing

        # Wheelchair groups go last so normal groups keep off the edge seats.
        line_items = sorted(
            self.order_repository.list_line_items(order.id),
            key=lambda item: item.wheelchair_access,
        )
        performances = self.performance_repository.lock_many(
            item.performance_id for item in line_items
        )
        occupied = {
            performance_id: set(self.ticket_repository.occupied_seats(performance_id))
            for performance_id in performances
        }

        tickets: list[Ticket] = []
        for item in line_items:
            performance = performances[item.performance_id]
            seats = assign_seats(
                occupied[performance.id],
                performance.rows,
                performance.seats_per_row,
                item.quantity,
                item.wheelchair_access,
            )
            if len(seats) < item.quantity:
                raise TicketGenerationError(
                    f"Only {len(seats)} of {item.quantity} seats could be assigned "
                    f"for performance {performance.id} (order {order.id})"
                )

            for seat in seats:
                occupied[performance.id].add(seat.key)
                tickets.append(
                    self.ticket_repository.add_ticket(
                        line_item_id=item.id,
                        order_id=order.id,
                        performance_id=performance.id,
                        row_index=seat.row_index,
                        seat_number=seat.seat_number,
                        wheelchair_access=seat.wheelchair_access,
                        ticket_number=ticket_number(performance, seat),
                        qr_token=secrets.token_urlsafe(24),
                    )
                )

        self.db.flush()
        logger.info("Created %s tickets for order %s", len(tickets), order.id)
        return tickets

    def lookup(self, qr_token: str) -> TicketDetails:
        ticket = self.ticket_repository.get_by_qr_token(qr_token)
        if not ticket:
            raise TicketNotFoundError("Ticket not found")

        order = self.db.get(Order, ticket.order_id)
        performance = self.db.get(Performance, ticket.performance_id)
        show = self.db.get(Show, performance.show_id)
        return TicketDetails(ticket=ticket, order=order, performance=performance, show=show)

    def scan(self, qr_token: str) -> TicketDetails:
        details = self.lookup(qr_token)
        ticket = details.ticket

        if details.order.status != OrderStatus.PAID:
            raise TicketNotFoundError("Ticket is not valid for entry")
        if ticket.scanned_at is not None:
            raise TicketAlreadyScannedError(ticket.ticket_number, ticket.scanned_at)

        if not self.ticket_repository.mark_scanned(ticket.id):
            self.db.refresh(ticket)
            raise TicketAlreadyScannedError(ticket.ticket_number, ticket.scanned_at)

        self.db.refresh(ticket)
        return details
