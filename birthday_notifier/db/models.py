from typing import List, Optional
from datetime import datetime, date
import uuid
from sqlalchemy import (
    String,
    Integer,
    Text,
    ForeignKey,
    Enum,
    Index,
    UniqueConstraint,
    CheckConstraint,
    DateTime,
    Date,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
import enum

from birthday_notifier.utils.datetime_utils import naive_utc_now


class Base(DeclarativeBase):
    pass


# Enums
class OccurrenceStatus(enum.Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SENT = "sent"
    FAILED = "failed"


class DeliveryErrorKind(enum.Enum):
    TRANSPORT = "transport"
    PERSISTENCE = "persistence"
    SUBJECT_MISSING = "subject_missing"
    INTERNAL = "internal"


# Base model with common audit fields
class AuditMixin:
    """Mixin for common audit fields"""

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=naive_utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=naive_utc_now, onupdate=naive_utc_now
    )


# Models
class User(Base, AuditMixin):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    birthday: Mapped[date] = mapped_column(Date, nullable=False)
    location: Mapped[str] = mapped_column(String(200), nullable=False)
    # IANA identifier, e.g. "America/New_York"
    timezone: Mapped[str] = mapped_column(String(50), nullable=False)

    # Relationships
    notifications: Mapped[List["BirthdayNotification"]] = relationship(
        back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    # Constraints
    __table_args__ = (
        UniqueConstraint(
            "first_name", "last_name", "birthday", name="uq_users_name_birthday"
        ),
        Index("idx_users_birthday", "birthday"),
        Index("idx_users_timezone", "timezone"),
    )


class BirthdayNotification(Base, AuditMixin):
    __tablename__ = "birthday_notifications"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    # Naive UTC instant at which the alert fires
    scheduled_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[OccurrenceStatus] = mapped_column(
        Enum(OccurrenceStatus, values_callable=lambda e: [m.value for m in e]),
        default=OccurrenceStatus.PENDING,
        nullable=False,
    )
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_kind: Mapped[Optional[DeliveryErrorKind]] = mapped_column(
        Enum(DeliveryErrorKind, values_callable=lambda e: [m.value for m in e])
    )
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    # Set whenever the row enters in_flight; used to detect claims abandoned by a crash
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    # Relationships
    user: Mapped["User"] = relationship(back_populates="notifications")

    # Constraints
    __table_args__ = (
        UniqueConstraint(
            "user_id", "scheduled_at", name="uq_bday_notif_user_scheduled"
        ),
        CheckConstraint("attempt_count >= 0", name="ck_bday_notif_attempts_positive"),
        Index("idx_bday_notif_status_scheduled", "status", "scheduled_at"),
        Index("idx_bday_notif_user_status", "user_id", "status"),
    )

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "user_id": str(self.user_id),
            "scheduled_at": self.scheduled_at.isoformat(),
            "status": self.status.value,
            "attempt_count": self.attempt_count,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "last_error": self.last_error,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
        }
