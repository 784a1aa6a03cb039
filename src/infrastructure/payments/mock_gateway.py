# src/infrastructure/payments/mock_gateway.py

import logging
from urllib.parse import urlencode
from uuid import uuid4

from src.domain.exceptions import PaymentProviderError
from src.infrastructure.payments.gateway import CreatedPayment, PaymentGateway

logger = logging.getLogger(__name__)


class MockPaymentGateway(PaymentGateway):
    """
    Local stand-in for the provider.

    Payments are confirmed on /checkout/mock-payment, which posts back to
    /webhooks/mock-payments. Tests flip fail_creation to simulate an outage.
    """

    provider_name = "mock"

    def __init__(self, base_url: str = "http://localhost:8000"):
        self.base_url = base_url.rstrip("/")
        self.fail_creation = False
        self.created: list[dict] = []
        self._statuses: dict[str, str] = {}

    def create_payment(
        self,
        order_id: str,
        amount_cents: int,
        currency: str,
        description: str,
        redirect_url: str,
        webhook_url: str,
        metadata: dict,
        customer_name: str | None = None,
        customer_email: str | None = None,
    ) -> CreatedPayment:
        if self.fail_creation:
            raise PaymentProviderError("Mock payment provider unavailable")

        payment_id = f"mock_{uuid4().hex}"
        query = urlencode({"id": payment_id, "order_id": order_id})
        payment_url = f"{self.base_url}/checkout/mock-payment?{query}"

        self._statuses[payment_id] = "open"
        self.created.append(
            {
                "id": payment_id,
                "order_id": order_id,
                "amount_cents": amount_cents,
                "currency": currency,
                "description": description,
                "redirect_url": redirect_url,
                "webhook_url": webhook_url,
                "metadata": dict(metadata),
            }
        )
        logger.info("Mock payment %s created for order %s", payment_id, order_id)
        return CreatedPayment(provider_transaction_id=payment_id, payment_url=payment_url)

    def set_status(self, provider_transaction_id: str, status: str) -> None:
        self._statuses[provider_transaction_id] = status

    def get_payment_status(self, provider_transaction_id: str) -> str:
        if provider_transaction_id not in self._statuses:
            raise PaymentProviderError(f"Unknown mock payment {provider_transaction_id}")
        return self._statuses[provider_transaction_id]
