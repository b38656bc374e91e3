"""
Registration model: the admission ledger for event tickets.

Key design decisions:
- Unique constraint on (event_id, user_id). A cancelled or failed row is
  reused by the next attempt instead of inserting a second one.
- `status` tracks the reservation, `payment_status` tracks the M-Pesa leg;
  free events keep payment_status = "none".
- `payment_amount` / `payment_currency` are a snapshot taken when the push
  is initiated, so later price edits never touch in-flight registrations.
- `checkout_request_id` is the gateway correlation id and resolves callbacks.
- Rows are never deleted.
"""

import enum

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from app.db.base import Base, TimestampMixin

MIN_QUANTITY = 1
MAX_QUANTITY = 10


class RegistrationStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class PaymentStatus(str, enum.Enum):
    NONE = "none"
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


ACTIVE_STATUSES = (RegistrationStatus.PENDING.value, RegistrationStatus.CONFIRMED.value)
REUSABLE_STATUSES = (RegistrationStatus.CANCELLED.value, RegistrationStatus.FAILED.value)


class Registration(Base, TimestampMixin):
    __tablename__ = "registrations"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(Integer, ForeignKey("events.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False, default=1)
    status = Column(String(20), nullable=False, default=RegistrationStatus.PENDING.value)
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.NONE.value)

    # Payment snapshot
    phone_number = Column(String(20), nullable=True)
    payment_amount = Column(Numeric(12, 2), nullable=True)
    payment_currency = Column(String(3), nullable=True)

    # Gateway correlation and settlement
    checkout_request_id = Column(String(100), nullable=True, unique=True)
    merchant_request_id = Column(String(100), nullable=True)
    payment_reference = Column(String(50), nullable=True)
    settled_amount = Column(Numeric(12, 2), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    failure_reason = Column(String(255), nullable=True)

    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(String(255), nullable=True)

    event = relationship("Event", back_populates="registrations", lazy="raise")
    user = relationship("User", back_populates="registrations", lazy="raise")

    __table_args__ = (
        UniqueConstraint("event_id", "user_id", name="uq_registration_event_user"),
        CheckConstraint(
            f"quantity >= {MIN_QUANTITY} AND quantity <= {MAX_QUANTITY}",
            name="check_registration_quantity_range",
        ),
        CheckConstraint(
            "status IN ('pending', 'confirmed', 'cancelled', 'failed')",
            name="check_registration_status",
        ),
        CheckConstraint(
            "payment_status IN ('none', 'pending', 'success', 'failed')",
            name="check_registration_payment_status",
        ),
        # Stale-pending sweep and attendee listings
        Index("ix_registrations_event_status", "event_id", "status"),
        Index("ix_registrations_payment_status_updated", "payment_status", "updated_at"),
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_reusable(self) -> bool:
        return self.status in REUSABLE_STATUSES

    def __repr__(self) -> str:
        return (
            f"<Registration(id={self.id}, event={self.event_id}, user={self.user_id}, "
            f"status={self.status}, payment={self.payment_status})>"
        )
