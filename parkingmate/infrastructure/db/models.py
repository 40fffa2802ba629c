"""
SQLAlchemy ORM models for database tables.

These models define the database schema and provide
persistence for domain entities.

The single-active/single-pending/single-outstanding invariants are backed by
nullable unique "sentinel" columns that hold a value only while the row is in
the guarded state. Rows leaving that state clear the sentinel, so many
historical rows can coexist with at most one live one.
"""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class CameraEventDB(Base):
    """
    Audit record of one camera detection.

    Unique per (org_id, event_id); camera redeliveries reuse the row.
    """

    __tablename__ = "camera_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    event_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    license_plate: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    camera_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    location_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    direction: Mapped[str] = mapped_column(String(10), nullable=False)
    image_base64: Mapped[str | None] = mapped_column(Text, nullable=True)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    device_type: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Outcome of processing
    processed_action: Mapped[str | None] = mapped_column(String(40), nullable=True)
    is_guest_entry: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    customer_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    session_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    guest_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("org_id", "event_id", name="uq_camera_events_org_event"),
        Index("ix_camera_events_plate_direction", "org_id", "license_plate", "direction", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<CameraEvent(plate={self.license_plate}, direction={self.direction})>"


class CustomerDB(Base):
    """Customer account; ``registered`` flips once OTP verification succeeds."""

    __tablename__ = "customers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    registered: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="active", nullable=False)
    membership_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    membership_expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("org_id", "email", name="uq_customers_org_email"),
    )

    def __repr__(self) -> str:
        return f"<Customer(email={self.email}, registered={self.registered})>"


class VehicleDB(Base):
    """Vehicle owned by a customer, keyed by normalized plate within an org."""

    __tablename__ = "vehicles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    license_plate: Mapped[str] = mapped_column(String(20), nullable=False)
    customer_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("customers.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    label: Mapped[str | None] = mapped_column(String(100), nullable=True)
    brand: Mapped[str | None] = mapped_column(String(100), nullable=True)
    model: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("org_id", "license_plate", name="uq_vehicles_org_plate"),
    )

    def __repr__(self) -> str:
        return f"<Vehicle(plate={self.license_plate})>"


class ParkingSessionDB(Base):
    """
    Parking session.

    ``active_vehicle_id`` mirrors ``vehicle_id`` while the session is active
    and is NULL otherwise.
    """

    __tablename__ = "parking_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    vehicle_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    customer_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    entry_event_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    entry_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    exit_event_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    exit_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    penalty_amount: Mapped[float | None] = mapped_column(Numeric(10, 2), nullable=True)
    active_vehicle_id: Mapped[str | None] = mapped_column(
        String(36),
        nullable=True,
        unique=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<ParkingSession(vehicle={self.vehicle_id}, status={self.status})>"


class GuestDB(Base):
    """
    Guest authorization.

    ``pending_key`` is ``"{org_id}:{plate}"`` while pending and NULL afterwards.
    """

    __tablename__ = "guests"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    license_plate: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(30), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    pending_key: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_guests_org_plate_status", "org_id", "license_plate", "status"),
    )

    def __repr__(self) -> str:
        return f"<Guest(plate={self.license_plate}, status={self.status})>"


class RegistrationTokenDB(Base):
    """
    Registration token.

    ``outstanding_customer_id`` holds the customer id until the token is used
    or released after expiry.
    """

    __tablename__ = "customer_registration_tokens"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    customer_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("customers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    token: Mapped[str] = mapped_column(String(500), nullable=False, unique=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    used: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    outstanding_customer_id: Mapped[str | None] = mapped_column(
        String(36),
        nullable=True,
        unique=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    def __repr__(self) -> str:
        return f"<RegistrationToken(customer={self.customer_id}, used={self.used})>"


class OtpCodeDB(Base):
    """One-time verification code."""

    __tablename__ = "otp_codes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(String(36), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[str] = mapped_column(String(10), nullable=False)
    purpose: Mapped[str] = mapped_column(String(20), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    used: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_otp_codes_lookup", "org_id", "email", "code"),
    )


class NotificationOutboxDB(Base):
    """
    Notification queued inside a business transaction.

    Dispatched after commit; a conditional update from pending to sending
    claims a message for exactly one sender.
    """

    __tablename__ = "notification_outbox"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    kind: Mapped[str] = mapped_column(String(40), nullable=False)
    org_id: Mapped[str] = mapped_column(String(36), nullable=False)
    recipient_email: Mapped[str] = mapped_column(String(255), nullable=False)
    recipient_name: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    camera_event_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<NotificationOutbox(kind={self.kind}, status={self.status})>"
