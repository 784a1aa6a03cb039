# src/infrastructure/repositories/payment_repository.py

from datetime import datetime, timezone

from sqlalchemy.orm import Session
from sqlalchemy import select

from src.infrastructure.db.models import Payment
from src.domain.state_machine import PaymentStatus

OPEN_PAYMENT_STATUSES = (PaymentStatus.PENDING, PaymentStatus.PROCESSING)


class PaymentRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_provider_transaction_id(
        self,
        provider_transaction_id: str,
    ) -> Payment | None:
        stmt = select(Payment).where(
            Payment.provider_transaction_id == provider_transaction_id
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def lock_by_provider_transaction_id(
        self,
        provider_transaction_id: str,
    ) -> Payment | None:
        stmt = (
            select(Payment)
            .where(Payment.provider_transaction_id == provider_transaction_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def latest_for_order(self, order_id: str) -> Payment | None:
        stmt = (
            select(Payment)
            .where(Payment.order_id == order_id)
            .order_by(Payment.created_at.desc(), Payment.id.desc())
            .limit(1)
        )
        return self.db.execute(stmt).scalars().first()

    def open_payment_for_order(self, order_id: str) -> Payment | None:
        stmt = (
            select(Payment)
            .where(Payment.order_id == order_id)
            .where(Payment.status.in_(OPEN_PAYMENT_STATUSES))
            .order_by(Payment.created_at.desc(), Payment.id.desc())
            .limit(1)
        )
        return self.db.execute(stmt).scalars().first()

    def list_open(self, limit: int = 100) -> list[Payment]:
        stmt = (
            select(Payment)
            .where(Payment.status.in_(OPEN_PAYMENT_STATUSES))
            .order_by(Payment.created_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def create_payment(
        self,
        order_id: str,
        amount_cents: int,
        currency: str,
        provider: str,
        provider_transaction_id: str,
        provider_payment_url: str | None,
    ) -> Payment:
        payment = Payment(
            order_id=order_id,
            amount_cents=amount_cents,
            currency=currency,
            status=PaymentStatus.PENDING,
            provider=provider,
            provider_transaction_id=provider_transaction_id,
            provider_payment_url=provider_payment_url,
        )
        self.db.add(payment)
        self.db.flush()
        return payment

    def update_status(
        self,
        payment: Payment,
        new_status: PaymentStatus,
    ) -> None:
        payment.status = new_status
        if new_status not in OPEN_PAYMENT_STATUSES:
            payment.completed_at = datetime.now(timezone.utc)
