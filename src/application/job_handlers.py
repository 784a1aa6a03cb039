# src/application/job_handlers.py

from datetime import datetime, timedelta, timezone
import logging

from sqlalchemy.orm import Session

from src.infrastructure import config
from src.domain.exceptions import BookingEngineError, JobHandlerError
from src.domain.state_machine import JobType, OrderStatus
from src.application.payment_service import PaymentLifecycle
from src.application.retry_queue import ExhaustionHook, JobHandler
from src.infrastructure.notifications.mailer import Mailer, get_mailer
from src.infrastructure.payments.gateway import PaymentGateway, get_payment_gateway
from src.infrastructure.repositories.job_repository import JobRepository
from src.infrastructure.repositories.order_repository import OrderRepository
from src.infrastructure.repositories.payment_repository import PaymentRepository

logger = logging.getLogger(__name__)


class JobHandlers:
    """Handlers for every job type the worker knows, sharing one gateway and mailer."""

    def __init__(
        self,
        gateway: PaymentGateway | None = None,
        mailer: Mailer | None = None,
    ):
        self.gateway = gateway or get_payment_gateway()
        self.mailer = mailer or get_mailer()

    def registry(self) -> dict[JobType, JobHandler]:
        return {
            JobType.PAYMENT_CREATION: self.payment_creation,
            JobType.PAYMENT_WEBHOOK: self.payment_webhook,
            JobType.ORPHANED_ORDER_CLEANUP: self.orphaned_order_cleanup,
            JobType.CLEANUP_OLD_JOBS: self.cleanup_old_jobs,
        }

    def exhaustion_hooks(self) -> dict[JobType, ExhaustionHook]:
        return {
            JobType.PAYMENT_CREATION: self.payment_creation_exhausted,
        }

    def _lifecycle(self, db: Session) -> PaymentLifecycle:
        return PaymentLifecycle(db, gateway=self.gateway, mailer=self.mailer)

    # -----------------------------
    # payment_creation
    # -----------------------------
    def payment_creation(self, db: Session, data: dict) -> dict:
        order_id = data.get("order_id")
        if not order_id:
            raise JobHandlerError("payment_creation job without order_id")

        order = OrderRepository(db).get_by_id(order_id)
        if not order:
            logger.warning("Order %s no longer exists; skipping payment creation", order_id)
            return {"skipped": "order_not_found"}
        if order.status != OrderStatus.PENDING:
            logger.info("Order %s is %s; skipping payment creation", order_id, order.status.value)
            return {"skipped": f"order_{order.status.value}"}

        existing = PaymentRepository(db).open_payment_for_order(order_id)
        if existing:
            return {
                "payment_id": existing.id,
                "payment_url": existing.provider_payment_url,
                "reused": True,
            }

        lifecycle = self._lifecycle(db)
        # PaymentProviderError propagates and the queue schedules another attempt.
        created = self.gateway.create_payment(**lifecycle.payment_request(order))
        payment = lifecycle.record_payment(order, created)
        db.commit()

        lifecycle.notify_payment_ready(order, created.payment_url)
        return {"payment_id": payment.id, "payment_url": created.payment_url}

    def payment_creation_exhausted(self, db: Session, data: dict, error_message: str) -> None:
        logger.error(
            "Giving up on payment creation for order %s: %s",
            data.get("order_id"),
            error_message,
        )
        if not data.get("customer_email"):
            return
        self.mailer.send_manual_payment_required(
            data["customer_email"],
            data.get("customer_name", ""),
            data.get("order_id", ""),
            int(data.get("amount_cents", 0)),
            data.get("currency", config.PAYMENT_CURRENCY),
        )

    # -----------------------------
    # payment_webhook
    # -----------------------------
    def payment_webhook(self, db: Session, data: dict) -> dict:
        provider_transaction_id = data.get("provider_transaction_id")
        status = data.get("status")
        if not provider_transaction_id or not status:
            raise JobHandlerError("payment_webhook job without transaction id or status")

        result = self._lifecycle(db).handle_webhook(provider_transaction_id, status)
        return {"result": result.value}

    # -----------------------------
    # orphaned_order_cleanup
    # -----------------------------
    def orphaned_order_cleanup(self, db: Session, data: dict) -> dict:
        older_than_hours = int(data.get("older_than_hours") or config.ORPHANED_ORDER_MAX_AGE_HOURS)
        cutoff = datetime.now(timezone.utc) - timedelta(hours=older_than_hours)

        order_repository = OrderRepository(db)
        payment_repository = PaymentRepository(db)
        lifecycle = self._lifecycle(db)

        order_ids = [order.id for order in order_repository.list_orphaned(cutoff)]
        summary = {"orders_processed": 0, "seats_released": 0, "coupons_released": 0, "errors": 0}

        for order_id in order_ids:
            # One transaction per order so one bad order cannot block the rest.
            try:
                order = order_repository.lock(order_id)
                if (
                    not order
                    or order.status != OrderStatus.PENDING
                    or payment_repository.open_payment_for_order(order_id)
                ):
                    db.rollback()
                    continue
                released = lifecycle.release_order(order, OrderStatus.CANCELLED)
                db.commit()
            except BookingEngineError:
                db.rollback()
                logger.exception("Could not clean up orphaned order %s", order_id)
                summary["errors"] += 1
                continue

            summary["orders_processed"] += 1
            summary["seats_released"] += released.seats_released
            summary["coupons_released"] += released.coupons_released

        logger.info("Orphaned order cleanup finished: %s", summary)
        return summary

    # -----------------------------
    # cleanup_old_jobs
    # -----------------------------
    def cleanup_old_jobs(self, db: Session, data: dict) -> dict:
        older_than_days = int(data.get("older_than_days") or config.OLD_JOB_RETENTION_DAYS)
        cutoff = datetime.now(timezone.utc) - timedelta(days=older_than_days)
        deleted = JobRepository(db).cleanup_old(cutoff)
        db.commit()
        logger.info("Deleted %s jobs finished before %s", deleted, cutoff.isoformat())
        return {"deleted": deleted}
