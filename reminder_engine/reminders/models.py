"""
Store schema: reminders, users, subscriptions and per-user usage counters
"""
import uuid

from sqlalchemy import Column, String, DateTime, Boolean, Integer, ForeignKey, Index
from sqlalchemy.types import TypeDecorator

from reminder_engine.db.base import Base
from reminder_engine.utils.timezone import to_utc_aware, utcnow


class UTCDateTime(TypeDecorator):
    """Timestamp that is always written and read back as UTC-aware"""
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return to_utc_aware(value)

    def process_result_value(self, value, dialect):
        return to_utc_aware(value)


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String, nullable=True)
    whatsapp_number = Column(String, nullable=True)  # raw, unvalidated
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)


class Subscription(Base):
    """Billing state written by the payment webhook flow; read-only here"""
    __tablename__ = "subscriptions"

    user_id = Column(String, ForeignKey("users.id"), primary_key=True)
    status = Column(String, nullable=False, default="inactive")  # active, trialing, canceled, ...
    price_id = Column(String, nullable=True)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)


class UsageCounter(Base):
    __tablename__ = "usage_counters"

    user_id = Column(String, ForeignKey("users.id"), primary_key=True)
    count = Column(Integer, nullable=False, default=0)
    period = Column(String(7), nullable=False)  # "YYYY-MM"
    reset_notified = Column(Boolean, nullable=False, default=False)


class Reminder(Base):
    __tablename__ = "reminders"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    trigger_at = Column(UTCDateTime, nullable=False)
    recurrence = Column(String, nullable=True)  # NULL for one-shot reminders
    delivered = Column(Boolean, nullable=False, default=False)
    last_outcome = Column(String, nullable=True)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_reminders_delivered_trigger", "delivered", "trigger_at"),
        Index("ix_reminders_user_trigger", "user_id", "trigger_at"),
    )
