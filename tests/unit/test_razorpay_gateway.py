# tests/unit/test_razorpay_gateway.py

import hashlib
import hmac
import json

import pytest
import razorpay

from src.domain.exceptions import PaymentProviderError, WebhookSignatureError
from src.infrastructure.payments.gateway import RazorpayGateway

WEBHOOK_SECRET = "whsec_test"


class StubPaymentLinks:
    def __init__(self, link=None, error=None):
        self.link = link
        self.error = error
        self.payloads = []

    def create(self, payload):
        self.payloads.append(payload)
        if self.error:
            raise self.error
        return self.link

    def fetch(self, link_id):
        if self.error:
            raise self.error
        return self.link


def make_gateway(links):
    gateway = RazorpayGateway("rzp_test_key", "secret", webhook_secret=WEBHOOK_SECRET)
    gateway.client.payment_link = links
    return gateway


def sign(body: bytes) -> str:
    return hmac.new(WEBHOOK_SECRET.encode(), body, hashlib.sha256).hexdigest()


def link_event(link_id, status):
    return json.dumps(
        {
            "event": f"payment_link.{status}",
            "payload": {"payment_link": {"entity": {"id": link_id, "status": status}}},
        }
    ).encode()


def test_create_payment_builds_payment_link():
    links = StubPaymentLinks(link={"id": "plink_123", "short_url": "https://rzp.io/i/abc"})
    gateway = make_gateway(links)

    created = gateway.create_payment(
        order_id="order-1",
        amount_cents=4500,
        currency="INR",
        description="Order order-1 - 1 item(s)",
        redirect_url="http://localhost:8000/orders/order-1",
        webhook_url="http://localhost:8000/webhooks/razorpay",
        metadata={"order_id": "order-1"},
        customer_email="ada@example.com",
    )

    assert created.provider_transaction_id == "plink_123"
    assert created.payment_url == "https://rzp.io/i/abc"
    payload = links.payloads[0]
    assert payload["amount"] == 4500
    assert payload["notes"] == {"order_id": "order-1"}
    assert payload["customer"] == {"email": "ada@example.com"}


def test_provider_errors_become_payment_provider_errors():
    gateway = make_gateway(StubPaymentLinks(error=razorpay.errors.ServerError("down")))

    with pytest.raises(PaymentProviderError):
        gateway.create_payment(
            order_id="order-1",
            amount_cents=100,
            currency="INR",
            description="x",
            redirect_url="http://localhost/orders/order-1",
            webhook_url="http://localhost/webhooks/razorpay",
            metadata={},
        )

    with pytest.raises(PaymentProviderError):
        gateway.get_payment_status("plink_123")


@pytest.mark.parametrize(
    "link_status, provider_status",
    [("created", "open"), ("paid", "paid"), ("cancelled", "canceled"), ("expired", "expired")],
)
def test_link_status_translation(link_status, provider_status):
    gateway = make_gateway(StubPaymentLinks(link={"id": "plink_1", "status": link_status}))

    assert gateway.get_payment_status("plink_1") == provider_status


def test_signed_webhook_is_parsed():
    gateway = make_gateway(StubPaymentLinks())
    body = link_event("plink_9", "paid")

    notification = gateway.parse_webhook(body, sign(body))

    assert notification.provider_transaction_id == "plink_9"
    assert notification.status == "paid"


def test_tampered_webhook_is_rejected():
    gateway = make_gateway(StubPaymentLinks())
    body = link_event("plink_9", "paid")
    signature = sign(body)

    with pytest.raises(WebhookSignatureError):
        gateway.parse_webhook(link_event("plink_9", "cancelled"), signature)

    with pytest.raises(WebhookSignatureError):
        gateway.parse_webhook(body, None)


def test_webhook_for_other_entities_is_unsupported():
    gateway = make_gateway(StubPaymentLinks())
    body = json.dumps({"event": "payment.captured", "payload": {"payment": {}}}).encode()

    with pytest.raises(WebhookSignatureError):
        gateway.parse_webhook(body, sign(body))


def test_webhook_body_that_is_not_utf8_is_rejected():
    gateway = make_gateway(StubPaymentLinks())
    body = b"\xff\xfe{not utf8}"

    with pytest.raises(WebhookSignatureError):
        gateway.parse_webhook(body, sign(body))
