# tests/integration/test_checkout_flow.py

from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select

from src.domain.coupons import DiscountType
from src.domain.state_machine import PerformanceStatus
from src.infrastructure.db.models import Coupon, CouponUsage, Order, Performance
from src.infrastructure.repositories.performance_repository import PerformanceRepository


def checkout_payload(*items, coupon_code=None):
    payload = {
        "customer_name": "Ada Lovelace",
        "customer_email": "ada@example.com",
        "items": [
            {"performance_id": performance_id, "quantity": quantity, "wheelchair_access": wheelchair}
            for performance_id, quantity, wheelchair in items
        ],
    }
    if coupon_code:
        payload["coupon_code"] = coupon_code
    return payload


def available_seats(db, performance_id):
    return db.get(Performance, performance_id, populate_existing=True).available_seats


def test_checkout_flow(client, make_performance, mailer):
    performance = make_performance(rows=5, seats_per_row=10, price_cents=2500)

    response = client.post("/checkout", json=checkout_payload((performance.id, 3, False)))

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "redirect"
    assert body["total_amount_cents"] == 7500
    assert "/checkout/mock-payment?" in body["payment_url"]
    order_id = body["order_id"]

    stats = client.get(f"/performances/{performance.id}").json()
    assert stats["available_seats"] == 47
    assert stats["booked_seats"] == 3

    order = client.get(f"/orders/{order_id}").json()
    assert order["status"] == "pending"
    assert order["tickets"] == []
    transaction_id = order["payments"][0]["provider_transaction_id"]

    webhook = client.post(
        "/webhooks/mock-payments",
        json={"provider_transaction_id": transaction_id, "status": "paid"},
    )
    assert webhook.status_code == 200
    assert webhook.json()["result"] == "paid"

    order = client.get(f"/orders/{order_id}").json()
    assert order["status"] == "paid"
    assert order["payments"][0]["status"] == "succeeded"
    assert len(order["tickets"]) == 3
    assert {(t["row"], t["seat_number"]) for t in order["tickets"]} == {("A", 3), ("A", 4), ("A", 5)}

    seats = client.get(f"/performances/{performance.id}/seats").json()["seats"]
    assert [seat["label"] for seat in seats] == ["A3", "A4", "A5"]

    assert mailer.sent_emails[-1]["subject"].startswith("Order confirmation")
    assert mailer.sent_emails[-1]["to"] == "ada@example.com"


def test_wheelchair_line_items_seated_after_normal_groups(client, make_performance):
    performance = make_performance(rows=2, seats_per_row=10)

    response = client.post(
        "/checkout",
        json=checkout_payload((performance.id, 2, True), (performance.id, 4, False)),
    )
    order_id = response.json()["order_id"]
    transaction_id = client.get(f"/orders/{order_id}").json()["payments"][0]["provider_transaction_id"]
    client.post(
        "/webhooks/mock-payments",
        json={"provider_transaction_id": transaction_id, "status": "paid"},
    )

    tickets = client.get(f"/orders/{order_id}").json()["tickets"]
    wheelchair = [t for t in tickets if t["wheelchair_access"]]
    assert {(t["row"], t["seat_number"]) for t in tickets} == {
        ("A", 3), ("A", 4), ("A", 5), ("A", 6), ("A", 9), ("A", 10),
    }
    assert [(t["row"], t["seat_number"]) for t in wheelchair] == [("A", 10)]


def test_insufficient_capacity_returns_409_and_persists_nothing(client, db, make_performance):
    performance = make_performance(rows=1, seats_per_row=4)

    response = client.post("/checkout", json=checkout_payload((performance.id, 5, False)))

    assert response.status_code == 409
    assert response.json()["detail"]["available"] == 4
    assert available_seats(db, performance.id) == 4
    assert db.execute(select(func.count(Order.id))).scalar_one() == 0


def test_multi_performance_cart_is_all_or_nothing(client, db, make_performance):
    roomy = make_performance(rows=2, seats_per_row=5)
    tight = make_performance(rows=1, seats_per_row=2)

    response = client.post(
        "/checkout",
        json=checkout_payload((roomy.id, 3, False), (tight.id, 3, False)),
    )

    assert response.status_code == 409
    assert available_seats(db, roomy.id) == 10
    assert available_seats(db, tight.id) == 2


def test_quantities_for_same_performance_are_summed(client, db, make_performance):
    performance = make_performance(rows=1, seats_per_row=5)

    response = client.post(
        "/checkout",
        json=checkout_payload((performance.id, 3, False), (performance.id, 3, True)),
    )

    assert response.status_code == 409
    assert available_seats(db, performance.id) == 5


def test_sold_out_exactly(client, db, make_performance):
    performance = make_performance(rows=1, seats_per_row=4)

    first = client.post("/checkout", json=checkout_payload((performance.id, 4, False)))
    second = client.post("/checkout", json=checkout_payload((performance.id, 1, False)))

    assert first.status_code == 200
    assert second.status_code == 409
    assert available_seats(db, performance.id) == 0


def test_unpublished_performance_is_not_on_sale(client, make_performance):
    performance = make_performance(status=PerformanceStatus.DRAFT)

    response = client.post("/checkout", json=checkout_payload((performance.id, 1, False)))

    assert response.status_code == 400


def test_unknown_performance_returns_404(client):
    response = client.post("/checkout", json=checkout_payload(("missing", 1, False)))

    assert response.status_code == 404


def test_checkout_validation(client, make_performance):
    performance = make_performance()

    empty = client.post("/checkout", json=checkout_payload())
    assert empty.status_code == 400

    bad_email = checkout_payload((performance.id, 1, False))
    bad_email["customer_email"] = "not-an-email"
    assert client.post("/checkout", json=bad_email).status_code == 400

    too_many = client.post("/checkout", json=checkout_payload((performance.id, 21, False)))
    assert too_many.status_code == 400

    zero = client.post("/checkout", json=checkout_payload((performance.id, 0, False)))
    assert zero.status_code == 422


def test_coupon_applied_at_checkout(client, db, make_performance, make_coupon):
    performance = make_performance(price_cents=2500)
    coupon = make_coupon(code="spring10", discount_value=10)

    response = client.post(
        "/checkout",
        json=checkout_payload((performance.id, 2, False), coupon_code="SPRING10"),
    )

    assert response.status_code == 200
    assert response.json()["discount_amount_cents"] == 500
    assert response.json()["total_amount_cents"] == 4500
    assert db.get(Coupon, coupon.id, populate_existing=True).usage_count == 1
    assert db.execute(select(func.count(CouponUsage.id))).scalar_one() == 1


def test_invalid_coupon_rolls_back_reservation(client, db, make_performance, make_coupon):
    performance = make_performance(rows=1, seats_per_row=10)
    make_coupon(code="OLD", valid_until=datetime.now(timezone.utc) - timedelta(days=1))

    response = client.post(
        "/checkout",
        json=checkout_payload((performance.id, 2, False), coupon_code="OLD"),
    )

    assert response.status_code == 400
    assert available_seats(db, performance.id) == 10
    assert db.execute(select(func.count(Order.id))).scalar_one() == 0


def test_coupon_limited_to_other_performance(client, make_performance, make_coupon):
    performance = make_performance()
    other = make_performance(title="Macbeth")
    make_coupon(code="MACBETH", performance_ids=[other.id])

    response = client.post(
        "/checkout",
        json=checkout_payload((performance.id, 1, False), coupon_code="MACBETH"),
    )

    assert response.status_code == 400


def test_coupon_preview_does_not_reserve(client, db, make_performance, make_coupon):
    performance = make_performance(price_cents=2000)
    coupon = make_coupon(code="TWOFREE", discount_type=DiscountType.FREE_TICKETS, discount_value=2)

    response = client.post(
        "/coupons/validate",
        json={"code": "twofree", "items": [{"performance_id": performance.id, "quantity": 3}]},
    )

    assert response.status_code == 200
    assert response.json() == {
        "code": "TWOFREE",
        "subtotal_cents": 6000,
        "discount_amount_cents": 4000,
        "total_amount_cents": 2000,
    }
    assert db.get(Coupon, coupon.id, populate_existing=True).usage_count == 0
    assert available_seats(db, performance.id) == 50


def test_fully_discounted_order_is_confirmed_without_provider(client, make_performance, make_coupon, gateway):
    performance = make_performance(price_cents=1500)
    make_coupon(code="COMP", discount_type=DiscountType.FREE_TICKETS, discount_value=4)

    response = client.post(
        "/checkout",
        json=checkout_payload((performance.id, 2, False), coupon_code="COMP"),
    )

    assert response.status_code == 200
    assert response.json()["status"] == "confirmed"
    assert response.json()["total_amount_cents"] == 0
    assert gateway.created == []

    order = client.get(f"/orders/{response.json()['order_id']}").json()
    assert order["status"] == "paid"
    assert len(order["tickets"]) == 2


def test_provider_outage_queues_payment_creation(client, db, make_performance, gateway, mailer):
    performance = make_performance(rows=1, seats_per_row=10)
    gateway.fail_creation = True

    response = client.post("/checkout", json=checkout_payload((performance.id, 2, False)))

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "queued"
    assert body["payment_url"] is None

    job = client.get(f"/jobs/{body['job_id']}").json()
    assert job["type"] == "payment_creation"
    assert job["status"] == "pending"
    assert job["data"]["order_id"] == body["order_id"]

    # Seats stay reserved while the payment is retried.
    assert available_seats(db, performance.id) == 8
    assert "reserved" in mailer.sent_emails[-1]["subject"]


def test_retry_payment_returns_open_payment_link(client, make_performance):
    performance = make_performance()
    body = client.post("/checkout", json=checkout_payload((performance.id, 1, False))).json()

    response = client.get(f"/orders/{body['order_id']}/retry-payment")

    assert response.status_code == 200
    assert response.json()["payment_url"] == body["payment_url"]


def test_retry_payment_rejected_for_paid_order(client, make_performance):
    performance = make_performance()
    body = client.post("/checkout", json=checkout_payload((performance.id, 1, False))).json()
    transaction_id = client.get(f"/orders/{body['order_id']}").json()["payments"][0]["provider_transaction_id"]
    client.post(
        "/webhooks/mock-payments",
        json={"provider_transaction_id": transaction_id, "status": "paid"},
    )

    response = client.get(f"/orders/{body['order_id']}/retry-payment")

    assert response.status_code == 400


def test_mock_payment_page_renders(client, make_performance):
    performance = make_performance()
    body = client.post("/checkout", json=checkout_payload((performance.id, 1, False))).json()
    transaction_id = client.get(f"/orders/{body['order_id']}").json()["payments"][0]["provider_transaction_id"]

    response = client.get(
        "/checkout/mock-payment",
        params={"id": transaction_id, "order_id": body["order_id"]},
    )

    assert response.status_code == 200
    assert transaction_id in response.text
    assert "25.00" in response.text


def test_missing_order_and_performance(client):
    assert client.get("/orders/nope").status_code == 404
    assert client.get("/performances/nope").status_code == 404
    assert client.get("/health").status_code == 200


def test_unsellable_cart_rejected_before_taking_locks(client, make_performance, monkeypatch):
    def refuse_locks(self, performance_ids):
        raise AssertionError("performance rows locked for an unsellable cart")

    monkeypatch.setattr(PerformanceRepository, "lock_many", refuse_locks)
    draft = make_performance(status=PerformanceStatus.DRAFT)

    not_on_sale = client.post("/checkout", json=checkout_payload((draft.id, 1, False)))
    missing = client.post("/checkout", json=checkout_payload(("missing", 1, False)))

    assert not_on_sale.status_code == 400
    assert missing.status_code == 404
