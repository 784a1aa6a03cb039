# tests/integration/test_housekeeping.py

from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update

from src.application.checkout_service import CheckoutItem, CheckoutRequest, CheckoutService
from src.application.job_handlers import JobHandlers
from src.domain.state_machine import JobStatus, JobType, OrderStatus
from src.infrastructure.db.models import Coupon, Job, Order, Performance
from src.infrastructure.repositories.job_repository import JobRepository
from src.worker import JobWorker


def place(db, lifecycle, performance_id, quantity, coupon_code=None, provider_down=False):
    lifecycle.gateway.fail_creation = provider_down
    return CheckoutService(db, lifecycle).checkout(
        CheckoutRequest(
            customer_name="Dorothy Vaughan",
            customer_email="dorothy@example.com",
            items=[CheckoutItem(performance_id=performance_id, quantity=quantity)],
            coupon_code=coupon_code,
        )
    )


def age_order(db, order_id, hours):
    db.execute(
        update(Order)
        .where(Order.id == order_id)
        .values(created_at=datetime.now(timezone.utc) - timedelta(hours=hours))
    )
    db.commit()


# ---------------------
# ORPHANED ORDERS
# ---------------------

def test_orphaned_order_cleanup_releases_old_orders_without_payment(
    db, lifecycle, gateway, mailer, make_performance, make_coupon
):
    performance = make_performance(rows=1, seats_per_row=10)
    coupon = make_coupon(code="ORPHAN", discount_value=10)

    orphan = place(db, lifecycle, performance.id, 2, coupon_code="ORPHAN", provider_down=True)
    fresh = place(db, lifecycle, performance.id, 1, provider_down=True)
    awaiting_payment = place(db, lifecycle, performance.id, 3)
    age_order(db, orphan.order_id, hours=48)
    age_order(db, awaiting_payment.order_id, hours=48)

    summary = JobHandlers(gateway=gateway, mailer=mailer).orphaned_order_cleanup(
        db, {"older_than_hours": 24}
    )

    assert summary == {
        "orders_processed": 1,
        "seats_released": 2,
        "coupons_released": 1,
        "errors": 0,
    }
    assert db.get(Order, orphan.order_id, populate_existing=True).status == OrderStatus.CANCELLED
    assert db.get(Order, fresh.order_id, populate_existing=True).status == OrderStatus.PENDING
    assert db.get(Order, awaiting_payment.order_id, populate_existing=True).status == OrderStatus.PENDING
    assert db.get(Performance, performance.id, populate_existing=True).available_seats == 6
    assert db.get(Coupon, coupon.id, populate_existing=True).usage_count == 0


def test_orphaned_order_cleanup_is_idempotent(db, lifecycle, gateway, mailer, make_performance):
    performance = make_performance(rows=1, seats_per_row=10)
    orphan = place(db, lifecycle, performance.id, 4, provider_down=True)
    age_order(db, orphan.order_id, hours=48)
    handlers = JobHandlers(gateway=gateway, mailer=mailer)

    handlers.orphaned_order_cleanup(db, {"older_than_hours": 24})
    second = handlers.orphaned_order_cleanup(db, {"older_than_hours": 24})

    assert second["orders_processed"] == 0
    assert db.get(Performance, performance.id, populate_existing=True).available_seats == 10


# ---------------------
# OLD JOBS
# ---------------------

def test_cleanup_old_jobs_deletes_only_old_finished_jobs(db, gateway, mailer):
    repository = JobRepository(db)
    old_completed = repository.create_job(JobType.CLEANUP_OLD_JOBS, {})
    old_failed = repository.create_job(JobType.PAYMENT_CREATION, {})
    recent = repository.create_job(JobType.CLEANUP_OLD_JOBS, {})
    pending = repository.create_job(JobType.ORPHANED_ORDER_CLEANUP, {})
    db.commit()

    month_ago = datetime.now(timezone.utc) - timedelta(days=30)
    db.execute(
        update(Job)
        .where(Job.id == old_completed.id)
        .values(status=JobStatus.COMPLETED, completed_at=month_ago)
    )
    db.execute(
        update(Job)
        .where(Job.id == old_failed.id)
        .values(status=JobStatus.FAILED, completed_at=month_ago)
    )
    db.execute(
        update(Job)
        .where(Job.id == recent.id)
        .values(status=JobStatus.COMPLETED, completed_at=datetime.now(timezone.utc))
    )
    db.commit()

    result = JobHandlers(gateway=gateway, mailer=mailer).cleanup_old_jobs(db, {"older_than_days": 7})

    assert result == {"deleted": 2}
    remaining = set(db.execute(select(Job.id)).scalars().all())
    assert remaining == {recent.id, pending.id}


# ---------------------
# WORKER
# ---------------------

class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def make_worker(retry_queue, clock):
    return JobWorker(
        retry_queue,
        polling_interval=1.0,
        max_idle_interval=2.0,
        batch_size=10,
        schedule_interval=3600,
        clock=clock,
    )


def test_worker_schedules_housekeeping_and_backs_off_when_idle(db, retry_queue):
    clock = FakeClock()
    worker = make_worker(retry_queue, clock)

    assert worker.run_once() == 2
    assert worker.current_interval == 1.0

    types = {job.type for job in db.execute(select(Job)).scalars().all()}
    assert types == {JobType.ORPHANED_ORDER_CLEANUP, JobType.CLEANUP_OLD_JOBS}

    assert worker.run_once() == 0
    assert worker.current_interval == 1.5
    assert worker.run_once() == 0
    assert worker.current_interval == 2.0

    clock.now = 3600.0
    assert worker.run_once() == 2
    assert worker.current_interval == 1.0


def test_worker_stops_between_jobs(retry_queue):
    worker = make_worker(retry_queue, FakeClock())
    worker.request_shutdown()

    assert worker.run_once() == 0
    worker.run()
    assert worker.stopping
