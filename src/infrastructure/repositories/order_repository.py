# src/infrastructure/repositories/order_repository.py

from datetime import datetime

from sqlalchemy.orm import Session, selectinload
from sqlalchemy import select

from src.infrastructure.db.models import LineItem, Order, Payment
from src.domain.state_machine import OrderStatus, PaymentStatus


class OrderRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(
        self,
        order_id: str,
    ) -> Order | None:

        stmt = (
            select(Order)
            .where(Order.id == order_id)
            .options(selectinload(Order.line_items), selectinload(Order.payments))
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def lock(
        self,
        order_id: str,
    ) -> Order | None:
        stmt = (
            select(Order)
            .where(Order.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def create_order(
        self,
        customer_name: str,
        customer_email: str,
        total_amount_cents: int,
        discount_amount_cents: int,
        currency: str,
    ) -> Order:

        order = Order(
            customer_name=customer_name,
            customer_email=customer_email,
            total_amount_cents=total_amount_cents,
            discount_amount_cents=discount_amount_cents,
            currency=currency,
            status=OrderStatus.PENDING,
        )

        self.db.add(order)
        self.db.flush()
        return order

    def add_line_item(
        self,
        order: Order,
        performance_id: str,
        position: int,
        quantity: int,
        price_per_ticket_cents: int,
        wheelchair_access: bool,
    ) -> LineItem:
        line_item = LineItem(
            order_id=order.id,
            performance_id=performance_id,
            position=position,
            quantity=quantity,
            price_per_ticket_cents=price_per_ticket_cents,
            wheelchair_access=wheelchair_access,
        )
        self.db.add(line_item)
        return line_item

    def list_line_items(self, order_id: str) -> list[LineItem]:
        stmt = (
            select(LineItem)
            .where(LineItem.order_id == order_id)
            .order_by(LineItem.position)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_orphaned(self, created_before: datetime) -> list[Order]:
        """
        Pending orders older than the cutoff that have no payment
        still in flight at the provider.
        """
        active_payment = (
            select(Payment.id)
            .where(Payment.order_id == Order.id)
            .where(Payment.status.in_([PaymentStatus.PENDING, PaymentStatus.PROCESSING]))
            .exists()
        )
        stmt = (
            select(Order)
            .where(Order.status == OrderStatus.PENDING)
            .where(Order.created_at < created_before)
            .where(~active_payment)
            .order_by(Order.created_at)
        )
        return list(self.db.execute(stmt).scalars().all())

    def update_status(
        self,
        order: Order,
        new_status: OrderStatus,
    ) -> None:

        order.status = new_status
