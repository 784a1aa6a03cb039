# src/infrastructure/payments/gateway.py

from abc import ABC, abstractmethod
from dataclasses import dataclass
import json
import logging

import razorpay

from src.infrastructure import config
from src.domain.exceptions import PaymentProviderError, WebhookSignatureError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CreatedPayment:
    provider_transaction_id: str
    payment_url: str


@dataclass(frozen=True)
class WebhookNotification:
    provider_transaction_id: str
    status: str


class PaymentGateway(ABC):
    """
    External payment provider.

    Statuses returned by get_payment_status use the provider vocabulary
    understood by map_provider_status: open, pending, paid, failed,
    expired, canceled.
    """

    provider_name: str

    @abstractmethod
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
        raise NotImplementedError

    @abstractmethod
    def get_payment_status(self, provider_transaction_id: str) -> str:
        raise NotImplementedError


# Razorpay payment link statuses -> provider vocabulary
_RAZORPAY_LINK_STATUSES = {
    "created": "open",
    "partially_paid": "pending",
    "paid": "paid",
    "cancelled": "canceled",
    "expired": "expired",
}

_RAZORPAY_ERRORS = (
    razorpay.errors.BadRequestError,
    razorpay.errors.GatewayError,
    razorpay.errors.ServerError,
    OSError,
)


class RazorpayGateway(PaymentGateway):
    provider_name = "razorpay"

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        webhook_secret: str | None = None,
    ):
        self.client = razorpay.Client(auth=(key_id, key_secret))
        self.webhook_secret = webhook_secret

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
        # Webhook URL is configured on the Razorpay dashboard, not per link.
        payload = {
            "amount": amount_cents,
            "currency": currency,
            "description": description,
            "reference_id": order_id[:40],
            "callback_url": redirect_url,
            "callback_method": "get",
            "notes": {key: str(value) for key, value in metadata.items()},
        }
        if customer_name or customer_email:
            payload["customer"] = {
                key: value
                for key, value in (("name", customer_name), ("email", customer_email))
                if value
            }

        try:
            link = self.client.payment_link.create(payload)
        except _RAZORPAY_ERRORS as exc:
            logger.warning("Razorpay payment link creation failed for order %s: %s", order_id, exc)
            raise PaymentProviderError(str(exc)) from exc

        link_id = link.get("id")
        short_url = link.get("short_url")
        if not link_id or not short_url:
            raise PaymentProviderError("Razorpay returned a payment link without id or url")

        return CreatedPayment(provider_transaction_id=link_id, payment_url=short_url)

    def get_payment_status(self, provider_transaction_id: str) -> str:
        try:
            link = self.client.payment_link.fetch(provider_transaction_id)
        except _RAZORPAY_ERRORS as exc:
            raise PaymentProviderError(str(exc)) from exc

        status = link.get("status", "")
        return _RAZORPAY_LINK_STATUSES.get(status, status)

    def parse_webhook(self, body: bytes, signature: str | None) -> WebhookNotification:
        """
        Verifies X-Razorpay-Signature and extracts the payment link id and status.
        """
        if not self.webhook_secret:
            raise WebhookSignatureError("RAZORPAY_WEBHOOK_SECRET is not configured")
        if not signature:
            raise WebhookSignatureError("Missing webhook signature")

        try:
            text = body.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise WebhookSignatureError("Unsupported webhook payload") from exc

        try:
            self.client.utility.verify_webhook_signature(text, signature, self.webhook_secret)
        except razorpay.errors.SignatureVerificationError as exc:
            raise WebhookSignatureError("Invalid webhook signature") from exc

        try:
            event = json.loads(text)
            entity = event["payload"]["payment_link"]["entity"]
        except (ValueError, KeyError, TypeError) as exc:
            raise WebhookSignatureError("Unsupported webhook payload") from exc

        status = entity.get("status", "")
        return WebhookNotification(
            provider_transaction_id=entity.get("id", ""),
            status=_RAZORPAY_LINK_STATUSES.get(status, status),
        )


_mock_gateway = None


def get_payment_gateway() -> PaymentGateway:
    """
    Razorpay when keys are configured, otherwise the local mock gateway.
    The mock instance is shared so its scripted statuses survive between calls.
    """
    global _mock_gateway

    if not config.USE_MOCK_PAYMENT and config.RAZORPAY_KEY_ID and config.RAZORPAY_KEY_SECRET:
        return RazorpayGateway(
            key_id=config.RAZORPAY_KEY_ID,
            key_secret=config.RAZORPAY_KEY_SECRET,
            webhook_secret=config.RAZORPAY_WEBHOOK_SECRET,
        )

    if _mock_gateway is None:
        from src.infrastructure.payments.mock_gateway import MockPaymentGateway

        if not config.USE_MOCK_PAYMENT:
            logger.warning("Razorpay keys not configured, falling back to mock payments.")
        _mock_gateway = MockPaymentGateway(base_url=config.BASE_URL)
    return _mock_gateway
