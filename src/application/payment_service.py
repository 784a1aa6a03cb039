# src/application/payment_service.py

from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
import logging

from sqlalchemy.orm import Session

from src.infrastructure import config
from src.domain.exceptions import (
    BookingEngineError,
    OrderNotFoundError,
    PaymentNotFoundError,
    PaymentProviderError,
)
from src.domain.state_machine import (
    JobType,
    OrderStateMachine,
    OrderStatus,
    PaymentOutcome,
    PaymentStateMachine,
    PaymentStatus,
    ProviderTransition,
    map_provider_status,
)
from src.application.ticket_service import TicketService, ticket_summary
from src.infrastructure.db.models import Order, Payment
from src.infrastructure.notifications.mailer import Mailer, get_mailer
from src.infrastructure.payments.gateway import CreatedPayment, PaymentGateway, get_payment_gateway
from src.infrastructure.repositories.coupon_repository import CouponRepository
from src.infrastructure.repositories.job_repository import JobRepository
from src.infrastructure.repositories.order_repository import OrderRepository
from src.infrastructure.repositories.payment_repository import PaymentRepository
from src.infrastructure.repositories.performance_repository import PerformanceRepository

logger = logging.getLogger(__name__)


class WebhookResult(str, Enum):
    PAID = "paid"
    RELEASED = "released"
    PAYMENT_UPDATED = "payment_updated"
    IN_PROGRESS = "in_progress"
    DUPLICATE = "duplicate"
    REFUND_REQUIRED = "refund_required"
    IGNORED = "ignored"
    QUEUED = "queued"


@dataclass(frozen=True)
class PaymentCreationResult:
    status: str
    payment_id: str | None = None
    payment_url: str | None = None
    job_id: str | None = None


@dataclass(frozen=True)
class ReleaseSummary:
    seats_released: int
    coupons_released: int


class PaymentLifecycle:
    """
    Owns every order/payment status change after checkout.

    Lock order is order row, then payment row, then performance rows in
    ascending id, then coupon rows; checkout takes performances before
    coupons as well, so the two paths never wait on each other in a cycle.
    """

    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway | None = None,
        mailer: Mailer | None = None,
    ):
        self.db = db
        self.gateway = gateway or get_payment_gateway()
        self.mailer = mailer or get_mailer()
        self.order_repository = OrderRepository(db)
        self.payment_repository = PaymentRepository(db)
        self.performance_repository = PerformanceRepository(db)
        self.coupon_repository = CouponRepository(db)
        self.job_repository = JobRepository(db)
        self.ticket_service = TicketService(db)

    # -----------------------------
    # Payment creation
    # -----------------------------
    def payment_request(self, order: Order, item_count: int | None = None) -> dict:
        if item_count is None:
            item_count = len(self.order_repository.list_line_items(order.id))
        return {
            "order_id": order.id,
            "amount_cents": order.total_amount_cents,
            "currency": order.currency,
            "description": f"Order {order.id[:8]} - {item_count} item(s)",
            "redirect_url": f"{config.BASE_URL}/orders/{order.id}",
            "webhook_url": f"{config.BASE_URL}/webhooks/{self.gateway.provider_name}",
            "metadata": {"order_id": order.id},
            "customer_name": order.customer_name,
            "customer_email": order.customer_email,
        }

    def record_payment(self, order: Order, created: CreatedPayment) -> Payment:
        return self.payment_repository.create_payment(
            order_id=order.id,
            amount_cents=order.total_amount_cents,
            currency=order.currency,
            provider=self.gateway.provider_name,
            provider_transaction_id=created.provider_transaction_id,
            provider_payment_url=created.payment_url,
        )

    def create_payment(self, order: Order) -> PaymentCreationResult:
        """
        Creates the provider payment for a freshly reserved order.

        Must be called after the reservation transaction committed; the
        provider call happens without any row lock held. When the provider
        is unreachable, a payment_creation job takes over.
        """
        try:
            created = self.gateway.create_payment(**self.payment_request(order))
        except PaymentProviderError as exc:
            logger.warning(
                "Payment creation failed for order %s, queueing retry: %s",
                order.id,
                exc,
            )
            job = self.job_repository.create_job(
                JobType.PAYMENT_CREATION,
                {
                    "order_id": order.id,
                    "amount_cents": order.total_amount_cents,
                    "currency": order.currency,
                    "customer_name": order.customer_name,
                    "customer_email": order.customer_email,
                },
                priority=10,
            )
            self.db.commit()
            self._notify(
                self.mailer.send_payment_queued,
                order.customer_email,
                order.customer_name,
                order.id,
                order.total_amount_cents,
                order.currency,
            )
            return PaymentCreationResult(status="queued", job_id=job.id)

        payment = self.record_payment(order, created)
        self.db.commit()
        logger.info("Payment %s created for order %s", payment.provider_transaction_id, order.id)
        return PaymentCreationResult(
            status="redirect",
            payment_id=payment.id,
            payment_url=created.payment_url,
        )

    def confirm_free_order(self, order: Order) -> PaymentCreationResult:
        """Orders fully covered by a coupon skip the provider."""
        try:
            locked = self.order_repository.lock(order.id)
            self._transition_order(locked, OrderStatus.PAID)
            tickets = self.ticket_service.materialize(locked)
            summaries = [ticket_summary(ticket) for ticket in tickets]
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self._send_confirmation(locked, summaries)
        return PaymentCreationResult(status="confirmed")

    # -----------------------------
    # Webhooks
    # -----------------------------
    def handle_webhook(
        self,
        provider_transaction_id: str,
        provider_status: str,
    ) -> WebhookResult:
        """
        Applies a provider status to the payment and its order.

        Safe to call any number of times for the same notification: the
        order row lock serializes deliveries and every branch checks the
        current state before acting.
        """
        transition = map_provider_status(provider_status)
        if transition is None:
            logger.warning(
                "Ignoring unknown provider status %r for payment %s",
                provider_status,
                provider_transaction_id,
            )
            return WebhookResult.IGNORED

        payment = self.payment_repository.get_by_provider_transaction_id(provider_transaction_id)
        if not payment:
            raise PaymentNotFoundError(f"Payment {provider_transaction_id} not found")

        summaries: list[dict] = []
        try:
            order = self.order_repository.lock(payment.order_id)
            if not order:
                raise OrderNotFoundError(f"Order {payment.order_id} not found")
            payment = self.payment_repository.lock_by_provider_transaction_id(provider_transaction_id)

            if transition.outcome == PaymentOutcome.SUCCEEDED:
                result = self._apply_success(order, payment, transition, summaries)
            elif transition.outcome == PaymentOutcome.IN_PROGRESS:
                result = self._apply_in_progress(payment, transition)
            else:
                result = self._apply_failure(order, payment, transition)

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "Webhook %s for payment %s (order %s): %s",
            provider_status,
            provider_transaction_id,
            order.id,
            result.value,
        )

        if result == WebhookResult.PAID:
            self._send_confirmation(order, summaries)
        return result

    def handle_webhook_or_enqueue(
        self,
        provider_transaction_id: str,
        provider_status: str,
    ) -> WebhookResult:
        """
        Inline webhook processing for the HTTP endpoints. Anything other than
        an unknown payment is handed to the retry queue so the provider gets
        a 200 and stops redelivering.
        """
        try:
            return self.handle_webhook(provider_transaction_id, provider_status)
        except PaymentNotFoundError:
            raise
        except Exception:
            logger.exception(
                "Webhook processing failed for payment %s, queueing retry",
                provider_transaction_id,
            )
            self.job_repository.create_job(
                JobType.PAYMENT_WEBHOOK,
                {
                    "provider_transaction_id": provider_transaction_id,
                    "status": provider_status,
                },
                priority=5,
            )
            self.db.commit()
            return WebhookResult.QUEUED

    def _apply_success(
        self,
        order: Order,
        payment: Payment,
        transition: ProviderTransition,
        summaries: list[dict],
    ) -> WebhookResult:
        if payment.status == PaymentStatus.SUCCEEDED:
            return WebhookResult.DUPLICATE

        if PaymentStateMachine.is_terminal(payment.status):
            logger.error(
                "Provider reports payment %s paid but it is already %s; refund manually (order %s)",
                payment.provider_transaction_id,
                payment.status.value,
                order.id,
            )
            return WebhookResult.REFUND_REQUIRED

        self._transition_payment(payment, transition.payment_status)

        if order.status != OrderStatus.PENDING:
            logger.error(
                "Payment %s succeeded for order %s in status %s; refund manually",
                payment.provider_transaction_id,
                order.id,
                order.status.value,
            )
            return WebhookResult.REFUND_REQUIRED

        self._transition_order(order, OrderStatus.PAID)
        tickets = self.ticket_service.materialize(order)
        summaries.extend(ticket_summary(ticket) for ticket in tickets)
        return WebhookResult.PAID

    def _apply_in_progress(
        self,
        payment: Payment,
        transition: ProviderTransition,
    ) -> WebhookResult:
        if payment.status != PaymentStatus.PENDING:
            return WebhookResult.DUPLICATE
        self._transition_payment(payment, transition.payment_status)
        return WebhookResult.IN_PROGRESS

    def _apply_failure(
        self,
        order: Order,
        payment: Payment,
        transition: ProviderTransition,
    ) -> WebhookResult:
        if PaymentStateMachine.is_terminal(payment.status):
            return WebhookResult.DUPLICATE

        self._transition_payment(payment, transition.payment_status)

        latest = self.payment_repository.latest_for_order(order.id)
        if order.status != OrderStatus.PENDING or latest.id != payment.id:
            # Superseded attempt or order already settled: only the payment row changes.
            return WebhookResult.PAYMENT_UPDATED

        self.release_order(order, transition.order_status)
        return WebhookResult.RELEASED

    # -----------------------------
    # Compensation
    # -----------------------------
    def release_order(self, order: Order, to_status: OrderStatus) -> ReleaseSummary:
        """
        Gives the order's seats and coupon uses back and moves it to a
        terminal status. Runs in the caller's transaction; the caller holds
        the order row lock.
        """
        self._transition_order(order, to_status)

        quantities: dict[str, int] = defaultdict(int)
        for item in self.order_repository.list_line_items(order.id):
            quantities[item.performance_id] += item.quantity

        seats_released = 0
        performances = self.performance_repository.lock_many(quantities)
        for performance_id, performance in performances.items():
            released = self.performance_repository.increment_available(
                performance, quantities[performance_id]
            )
            if released < quantities[performance_id]:
                logger.warning(
                    "Performance %s already at capacity; released %s of %s seats for order %s",
                    performance_id,
                    released,
                    quantities[performance_id],
                    order.id,
                )
            seats_released += released

        coupons_released = self.coupon_repository.release_usages(order.id)
        logger.info(
            "Released order %s as %s: %s seats, %s coupon uses",
            order.id,
            to_status.value,
            seats_released,
            coupons_released,
        )
        return ReleaseSummary(seats_released=seats_released, coupons_released=coupons_released)

    # -----------------------------
    # Provider polling
    # -----------------------------
    def sync_pending_payments(self, limit: int = 100) -> dict:
        """
        Asks the provider for the status of every open payment and applies
        it like a webhook. Covers webhooks that never arrived.
        """
        summary = {"checked": 0, "updated": 0, "errors": 0}
        payments = [
            (payment.provider_transaction_id, payment.status)
            for payment in self.payment_repository.list_open(limit=limit)
            if payment.provider == self.gateway.provider_name
        ]

        for provider_transaction_id, current_status in payments:
            summary["checked"] += 1
            try:
                provider_status = self.gateway.get_payment_status(provider_transaction_id)
                result = self.handle_webhook(provider_transaction_id, provider_status)
            except BookingEngineError:
                logger.exception("Could not sync payment %s", provider_transaction_id)
                summary["errors"] += 1
                continue

            if result not in (WebhookResult.DUPLICATE, WebhookResult.IGNORED) and not (
                result == WebhookResult.IN_PROGRESS and current_status == PaymentStatus.PROCESSING
            ):
                summary["updated"] += 1

        logger.info("Payment sync finished: %s", summary)
        return summary

    # -----------------------------
    # Helpers
    # -----------------------------
    def _transition_order(self, order: Order, to_status: OrderStatus) -> None:
        OrderStateMachine.validate_transition(order.status, to_status)
        self.order_repository.update_status(order, to_status)

    def _transition_payment(self, payment: Payment, to_status: PaymentStatus) -> None:
        PaymentStateMachine.validate_transition(payment.status, to_status)
        self.payment_repository.update_status(payment, to_status)

    def notify_payment_ready(self, order: Order, payment_url: str) -> None:
        self._notify(
            self.mailer.send_payment_ready,
            order.customer_email,
            order.customer_name,
            order.id,
            order.total_amount_cents,
            order.currency,
            payment_url,
        )

    def _send_confirmation(self, order: Order, summaries: list[dict]) -> None:
        self._notify(
            self.mailer.send_order_confirmation,
            order.customer_email,
            order.customer_name,
            order.id,
            order.total_amount_cents,
            order.currency,
            summaries,
        )

    def _notify(self, send, *args) -> None:
        # E-mail is best-effort: a failure is logged and never undoes committed state.
        try:
            if not send(*args):
                logger.warning("%s did not deliver for order %s", send.__name__, args[2])
        except Exception:
            logger.exception("%s failed for order %s", send.__name__, args[2])
