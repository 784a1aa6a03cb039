

class BookingEngineError(Exception):
    """
    Base exception for all domain-level errors
    inside the booking engine.
    """


class InvalidStateTransitionError(BookingEngineError):
    """
    Raised when an illegal order, payment or job state transition is attempted.
    """

    def __init__(self, entity: str, from_state: str, to_state: str):
        self.entity = entity
        self.from_state = from_state
        self.to_state = to_state

        message = (
            f"Illegal {entity} state transition attempted: "
            f"{from_state} -> {to_state}"
        )
        super().__init__(message)


class CheckoutValidationError(BookingEngineError):
    """Raised when a cart or customer details are rejected before reservation."""


class InvalidCouponError(CheckoutValidationError):
    """Raised when a coupon code cannot be applied to the cart."""


class InsufficientCapacityError(BookingEngineError):
    """Raised when a performance has fewer available seats than requested."""

    def __init__(self, performance_id: str, requested: int, available: int):
        self.performance_id = performance_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Only {available} seats available for performance {performance_id}, "
            f"{requested} requested"
        )


class PerformanceNotFoundError(BookingEngineError):
    """Raised when a cart references an unknown performance."""


class OrderNotFoundError(BookingEngineError):
    """Raised when an order id does not exist."""


class PaymentNotFoundError(BookingEngineError):
    """Raised when no payment matches a provider transaction id."""


class PaymentProviderError(BookingEngineError):
    """Raised when the external payment gateway cannot be reached or rejects a call."""


class WebhookSignatureError(BookingEngineError):
    """Raised when a provider webhook fails signature verification."""


class TicketGenerationError(BookingEngineError):
    """Raised when seats cannot be assigned for every ticket of a paid order."""


class TicketNotFoundError(BookingEngineError):
    """Raised when a QR token does not match any ticket."""


class TicketAlreadyScannedError(BookingEngineError):
    """Raised when a ticket is presented at the door a second time."""

    def __init__(self, ticket_number: str, scanned_at):
        self.ticket_number = ticket_number
        self.scanned_at = scanned_at
        super().__init__(f"Ticket {ticket_number} was already scanned at {scanned_at}")


class JobHandlerError(BookingEngineError):
    """Raised by job handlers for failures that should be retried."""
