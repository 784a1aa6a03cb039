# src/infrastructure/db/models.py

from sqlalchemy import (
    JSON,
    Boolean,
    String,
    Integer,
    DateTime,
    Enum,
    Text,
    UniqueConstraint,
    CheckConstraint,
    ForeignKey,
    Index,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from datetime import datetime, timezone
from uuid import uuid4

from src.infrastructure.db.session import Base
from src.domain.coupons import DiscountType
from src.domain.state_machine import (
    JobStatus,
    JobType,
    OrderStatus,
    PaymentStatus,
    PerformanceStatus,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid4())


def _enum(enum_cls, name: str) -> Enum:
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda members: [member.value for member in members],
    )


class Show(Base):
    __tablename__ = "shows"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    performances: Mapped[list["Performance"]] = relationship(back_populates="show")


class Performance(Base):
    """
    One dated instance of a show in the venue.
    available_seats is the capacity counter guarded by row locks.
    """

    __tablename__ = "performances"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    show_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("shows.id"),
        nullable=False,
    )
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    rows: Mapped[int] = mapped_column(Integer, nullable=False)
    seats_per_row: Mapped[int] = mapped_column(Integer, nullable=False)
    total_seats: Mapped[int] = mapped_column(Integer, nullable=False)
    available_seats: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[PerformanceStatus] = mapped_column(
        _enum(PerformanceStatus, "performance_status"),
        nullable=False,
        default=PerformanceStatus.DRAFT,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )

    show: Mapped[Show] = relationship(back_populates="performances")

    __table_args__ = (
        CheckConstraint("price_cents >= 0", name="ck_performance_price_nonnegative"),
        CheckConstraint("rows > 0", name="ck_performance_rows_positive"),
        CheckConstraint("seats_per_row > 0", name="ck_performance_seats_per_row_positive"),
        CheckConstraint("total_seats >= 0", name="ck_performance_total_seats_nonnegative"),
        CheckConstraint("available_seats >= 0", name="ck_performance_available_nonnegative"),
        CheckConstraint("available_seats <= total_seats", name="ck_performance_available_lte_total"),
    )


class Order(Base):
    """
    A checkout attempt.
    Domain controls transitions; the row stores the current state.
    """

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    customer_name: Mapped[str] = mapped_column(String(100), nullable=False)
    customer_email: Mapped[str] = mapped_column(String(255), nullable=False)
    total_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    discount_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    status: Mapped[OrderStatus] = mapped_column(
        _enum(OrderStatus, "order_status"),
        nullable=False,
        default=OrderStatus.PENDING,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )

    line_items: Mapped[list["LineItem"]] = relationship(
        back_populates="order",
        order_by="LineItem.position",
    )
    payments: Mapped[list["Payment"]] = relationship(
        back_populates="order",
        order_by="Payment.created_at",
    )

    __table_args__ = (
        CheckConstraint("total_amount_cents >= 0", name="ck_order_total_nonnegative"),
        Index("ix_orders_status_created_at", "status", "created_at"),
    )


class LineItem(Base):
    __tablename__ = "line_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    order_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    performance_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("performances.id"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    price_per_ticket_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    wheelchair_access: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    order: Mapped[Order] = relationship(back_populates="line_items")
    performance: Mapped[Performance] = relationship()

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_line_item_quantity_positive"),
        CheckConstraint("price_per_ticket_cents >= 0", name="ck_line_item_price_nonnegative"),
    )


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    order_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(
        _enum(PaymentStatus, "payment_status"),
        nullable=False,
        default=PaymentStatus.PENDING,
    )
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    provider_transaction_id: Mapped[str] = mapped_column(String(128), nullable=False)
    provider_payment_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    order: Mapped[Order] = relationship(back_populates="payments")

    __table_args__ = (
        UniqueConstraint(
            "provider_transaction_id",
            name="uq_payment_provider_transaction_id",
        ),
    )


class Coupon(Base):
    __tablename__ = "coupons"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    code: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    discount_type: Mapped[DiscountType] = mapped_column(
        _enum(DiscountType, "coupon_discount_type"),
        nullable=False,
    )
    discount_value: Mapped[int] = mapped_column(Integer, nullable=False)
    min_order_amount_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_uses: Mapped[int | None] = mapped_column(Integer, nullable=True)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    valid_from: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    valid_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("usage_count >= 0", name="ck_coupon_usage_count_nonnegative"),
        CheckConstraint("discount_value >= 0", name="ck_coupon_discount_value_nonnegative"),
    )


class CouponPerformance(Base):
    """Restricts a coupon to specific performances; no rows means unrestricted."""

    __tablename__ = "coupon_performances"

    coupon_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("coupons.id", ondelete="CASCADE"),
        primary_key=True,
    )
    performance_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("performances.id", ondelete="CASCADE"),
        primary_key=True,
    )


class CouponUsage(Base):
    __tablename__ = "coupon_usages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    coupon_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("coupons.id", ondelete="CASCADE"),
        nullable=False,
    )
    order_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    discount_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    used_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    coupon: Mapped[Coupon] = relationship()


class Ticket(Base):
    __tablename__ = "tickets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    line_item_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("line_items.id", ondelete="CASCADE"),
        nullable=False,
    )
    order_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    performance_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("performances.id"),
        nullable=False,
        index=True,
    )
    row_index: Mapped[int] = mapped_column(Integer, nullable=False)
    seat_number: Mapped[int] = mapped_column(Integer, nullable=False)
    wheelchair_access: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    ticket_number: Mapped[str] = mapped_column(String(64), nullable=False)
    qr_token: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    scanned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "performance_id",
            "row_index",
            "seat_number",
            name="uq_ticket_performance_seat",
        ),
        CheckConstraint("row_index >= 0", name="ck_ticket_row_index_nonnegative"),
        CheckConstraint("seat_number > 0", name="ck_ticket_seat_number_positive"),
    )


class Job(Base):
    """
    Durable retry unit processed by the worker.
    Claimed with a status-guarded UPDATE so several workers can share the table.
    """

    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    type: Mapped[JobType] = mapped_column(_enum(JobType, "job_type"), nullable=False)
    status: Mapped[JobStatus] = mapped_column(
        _enum(JobStatus, "job_status"),
        nullable=False,
        default=JobStatus.PENDING,
    )
    data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    result: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    execution_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("execution_count >= 0", name="ck_job_execution_count_nonnegative"),
        Index("ix_jobs_status_next_retry_at", "status", "next_retry_at"),
    )
