# src/domain/state_machine.py

from dataclasses import dataclass
from enum import Enum
from typing import ClassVar, Dict, Optional, Set, Type

from src.domain.exceptions import InvalidStateTransitionError


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobType(str, Enum):
    PAYMENT_CREATION = "payment_creation"
    PAYMENT_WEBHOOK = "payment_webhook"
    ORPHANED_ORDER_CLEANUP = "orphaned_order_cleanup"
    CLEANUP_OLD_JOBS = "cleanup_old_jobs"


class PerformanceStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    SOLD_OUT = "sold_out"
    CANCELLED = "cancelled"
    ARCHIVED = "archived"


class StateMachine:
    """
    Central lifecycle controller for one status enum.
    Subclasses declare the legal transitions.
    """

    entity: ClassVar[str]
    status_type: ClassVar[Type[Enum]]
    _ALLOWED_TRANSITIONS: ClassVar[Dict[Enum, Set[Enum]]]

    @classmethod
    def can_transition(cls, from_status: Enum, to_status: Enum) -> bool:
        """
        Returns True if transition is allowed.
        """
        cls._ensure_valid_status(from_status)
        cls._ensure_valid_status(to_status)

        return to_status in cls._ALLOWED_TRANSITIONS.get(from_status, set())

    @classmethod
    def validate_transition(cls, from_status: Enum, to_status: Enum) -> None:
        """
        Raises InvalidStateTransitionError if transition is illegal.
        """
        if not cls.can_transition(from_status, to_status):
            raise InvalidStateTransitionError(
                entity=cls.entity,
                from_state=from_status.value,
                to_state=to_status.value,
            )

    @classmethod
    def is_terminal(cls, status: Enum) -> bool:
        """
        Returns True if the state is terminal (no further transitions allowed).
        """
        cls._ensure_valid_status(status)
        return len(cls._ALLOWED_TRANSITIONS.get(status, set())) == 0

    @classmethod
    def get_allowed_transitions(cls, status: Enum) -> Set[Enum]:
        cls._ensure_valid_status(status)
        return cls._ALLOWED_TRANSITIONS.get(status, set())

    @classmethod
    def _ensure_valid_status(cls, status: Enum) -> None:
        if not isinstance(status, cls.status_type):
            raise TypeError(
                f"Expected {cls.status_type.__name__}, got {type(status)}"
            )


class OrderStateMachine(StateMachine):
    entity = "order"
    status_type = OrderStatus
    _ALLOWED_TRANSITIONS = {
        OrderStatus.PENDING: {
            OrderStatus.PAID,
            OrderStatus.FAILED,
            OrderStatus.CANCELLED,
        },
        OrderStatus.PAID: {
            OrderStatus.REFUNDED,
        },
        OrderStatus.FAILED: set(),
        OrderStatus.CANCELLED: set(),
        OrderStatus.REFUNDED: set(),
    }


class PaymentStateMachine(StateMachine):
    # A provider may report a final status in its first notification,
    # so PENDING can skip PROCESSING.
    entity = "payment"
    status_type = PaymentStatus
    _ALLOWED_TRANSITIONS = {
        PaymentStatus.PENDING: {
            PaymentStatus.PROCESSING,
            PaymentStatus.SUCCEEDED,
            PaymentStatus.FAILED,
            PaymentStatus.CANCELLED,
        },
        PaymentStatus.PROCESSING: {
            PaymentStatus.SUCCEEDED,
            PaymentStatus.FAILED,
            PaymentStatus.CANCELLED,
        },
        PaymentStatus.SUCCEEDED: set(),
        PaymentStatus.FAILED: set(),
        PaymentStatus.CANCELLED: set(),
    }


class JobStateMachine(StateMachine):
    entity = "job"
    status_type = JobStatus
    _ALLOWED_TRANSITIONS = {
        JobStatus.PENDING: {
            JobStatus.PROCESSING,
        },
        JobStatus.PROCESSING: {
            JobStatus.PENDING,
            JobStatus.COMPLETED,
            JobStatus.FAILED,
        },
        JobStatus.COMPLETED: set(),
        JobStatus.FAILED: set(),
    }


class PaymentOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    IN_PROGRESS = "in_progress"


@dataclass(frozen=True)
class ProviderTransition:
    payment_status: PaymentStatus
    order_status: OrderStatus
    outcome: PaymentOutcome


_PROVIDER_TRANSITIONS: Dict[str, ProviderTransition] = {
    "paid": ProviderTransition(
        PaymentStatus.SUCCEEDED, OrderStatus.PAID, PaymentOutcome.SUCCEEDED
    ),
    "failed": ProviderTransition(
        PaymentStatus.FAILED, OrderStatus.FAILED, PaymentOutcome.FAILED
    ),
    "expired": ProviderTransition(
        PaymentStatus.FAILED, OrderStatus.FAILED, PaymentOutcome.FAILED
    ),
    "canceled": ProviderTransition(
        PaymentStatus.CANCELLED, OrderStatus.CANCELLED, PaymentOutcome.CANCELLED
    ),
    "pending": ProviderTransition(
        PaymentStatus.PROCESSING, OrderStatus.PENDING, PaymentOutcome.IN_PROGRESS
    ),
    "open": ProviderTransition(
        PaymentStatus.PROCESSING, OrderStatus.PENDING, PaymentOutcome.IN_PROGRESS
    ),
}


def map_provider_status(provider_status: str) -> Optional[ProviderTransition]:
    """
    Maps a gateway status onto internal payment/order statuses.
    Returns None for statuses the engine does not know.
    """
    normalized = (provider_status or "").strip().lower()
    if normalized == "cancelled":
        normalized = "canceled"
    return _PROVIDER_TRANSITIONS.get(normalized)
