import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("USE_MOCK_PAYMENT", "true")
os.environ.setdefault("EMAIL_BACKEND", "console")

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from src.main import app
from src.api.routes.routes import get_db
from src.application.job_handlers import JobHandlers
from src.application.payment_service import PaymentLifecycle
from src.application.retry_queue import RetryQueue
from src.domain.coupons import DiscountType
from src.domain.state_machine import PerformanceStatus
from src.infrastructure.db.models import Base, Show
from src.infrastructure.db.session import build_engine
from src.infrastructure.notifications.mailer import ConsoleMailer, get_mailer
from src.infrastructure.payments.gateway import get_payment_gateway
from src.infrastructure.payments.mock_gateway import MockPaymentGateway
from src.infrastructure.repositories.coupon_repository import CouponRepository
from src.infrastructure.repositories.performance_repository import PerformanceRepository


@pytest.fixture
def engine(tmp_path):
    test_engine = build_engine(f"sqlite:///{tmp_path / 'tickets.db'}")
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
    )


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def gateway():
    return MockPaymentGateway(base_url="http://testserver")


@pytest.fixture
def mailer():
    return ConsoleMailer()


@pytest.fixture
def lifecycle(db, gateway, mailer):
    return PaymentLifecycle(db, gateway=gateway, mailer=mailer)


@pytest.fixture
def retry_queue(session_factory, gateway, mailer):
    handlers = JobHandlers(gateway=gateway, mailer=mailer)
    return RetryQueue(
        handlers=handlers.registry(),
        exhaustion_hooks=handlers.exhaustion_hooks(),
        session_factory=session_factory,
        max_attempts=5,
        base_interval_ms=5_000,
        max_interval_ms=300_000,
        lease_seconds=600,
    )


@pytest.fixture
def client(session_factory, gateway, mailer):
    def override_get_db():
        session = session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_mailer] = lambda: mailer
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_performance(db):
    def _make(
        rows: int = 5,
        seats_per_row: int = 10,
        price_cents: int = 2500,
        status: PerformanceStatus = PerformanceStatus.PUBLISHED,
        title: str = "Hamlet",
    ):
        show = Show(title=title, slug=f"{title.lower()}-{uuid4().hex[:8]}")
        db.add(show)
        db.flush()
        performance = PerformanceRepository(db).create_performance(
            show_id=show.id,
            starts_at=datetime.now(timezone.utc) + timedelta(days=7),
            price_cents=price_cents,
            rows=rows,
            seats_per_row=seats_per_row,
            status=status,
        )
        db.commit()
        return performance

    return _make


@pytest.fixture
def make_coupon(db):
    def _make(
        code: str = "SPRING10",
        discount_type: DiscountType = DiscountType.PERCENTAGE,
        discount_value: int = 10,
        performance_ids=(),
        **fields,
    ):
        repository = CouponRepository(db)
        coupon = repository.create_coupon(
            code,
            discount_type=discount_type,
            discount_value=discount_value,
            **fields,
        )
        for performance_id in performance_ids:
            repository.restrict_to_performance(coupon, performance_id)
        db.commit()
        return coupon

    return _make
