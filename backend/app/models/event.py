"""
Event model as seen by the registration subsystem.

Key design decisions:
- Events are created and edited elsewhere; this service only reads them,
  except for the `confirmed_quantity` counter.
- `confirmed_quantity` is denormalized (avoids SUM over registrations) and
  is only ever changed with a conditional UPDATE that re-checks capacity.
- `max_attendees = 0` means unlimited.
- `version` is bumped on every capacity change for optimistic readers.
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import relationship

from app.db.base import Base, TimestampMixin


class Event(Base, TimestampMixin):
    __tablename__ = "events"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    description = Column(String(1000), nullable=True)
    date = Column(DateTime(timezone=True), nullable=True)
    location = Column(String(255), nullable=True)
    organizer_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    max_attendees = Column(Integer, nullable=False, default=0)
    is_paid = Column(Boolean, nullable=False, default=False)
    price = Column(Numeric(10, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="KES")

    confirmed_quantity = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)

    organizer = relationship("User", back_populates="organized_events", lazy="raise")
    registrations = relationship("Registration", back_populates="event", lazy="raise")

    __table_args__ = (
        CheckConstraint("max_attendees >= 0", name="check_max_attendees_non_negative"),
        CheckConstraint("confirmed_quantity >= 0", name="check_confirmed_quantity_non_negative"),
        # Final safety net against overselling
        CheckConstraint(
            "max_attendees = 0 OR confirmed_quantity <= max_attendees",
            name="check_confirmed_lte_capacity",
        ),
        CheckConstraint("NOT is_paid OR price > 0", name="check_paid_event_has_price"),
        Index("ix_events_date", "date"),
    )

    @property
    def is_limited(self) -> bool:
        return self.max_attendees > 0

    @property
    def remaining_slots(self):
        """None for unlimited events."""
        if not self.is_limited:
            return None
        return max(self.max_attendees - self.confirmed_quantity, 0)

    def __repr__(self) -> str:
        return (
            f"<Event(id={self.id}, title={self.title}, "
            f"confirmed={self.confirmed_quantity}/{self.max_attendees or 'unlimited'})>"
        )
