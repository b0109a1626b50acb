"""SQLAlchemy models for subscription records and usage counters."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from bonsai_entitlements.db.base import Base, TimestampMixin

SUBSCRIPTION_STATUSES = ("active", "trialing", "past_due", "canceled")


class SubscriptionRecord(TimestampMixin, Base):
    """One row per user; authoritative copy of the provider's subscription.

    ``user_id`` is only NULL for rows created from provider events that
    arrived before the customer was linked to a local user.
    """

    __tablename__ = "subscription_records"
    __table_args__ = (
        UniqueConstraint("user_id", name="uq_subscription_records_user_id"),
        UniqueConstraint(
            "provider_subscription_id", name="uq_subscription_records_provider_subscription_id"
        ),
        Index("ix_subscription_records_provider_customer_id", "provider_customer_id"),
    )

    user_id: Mapped[str | None] = mapped_column(String(64))
    tier: Mapped[str] = mapped_column(String(32), default="free", nullable=False)
    status: Mapped[str] = mapped_column(
        Enum(*SUBSCRIPTION_STATUSES, name="subscription_status"),
        default="active",
        nullable=False,
    )
    current_period_start: Mapped[datetime | None] = mapped_column(DateTime)
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime)
    trial_end: Mapped[datetime | None] = mapped_column(DateTime)
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime)
    provider_customer_id: Mapped[str | None] = mapped_column(String(64))
    provider_subscription_id: Mapped[str | None] = mapped_column(String(64))
    provider_price_id: Mapped[str | None] = mapped_column(String(64))
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    pending_confirmation: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    provider_event_at: Mapped[datetime | None] = mapped_column(DateTime)


class UsageCounter(TimestampMixin, Base):
    __tablename__ = "usage_counters"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "quota_type", "period_start", name="uq_usage_counters_user_quota_period"
        ),
    )

    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    quota_type: Mapped[str] = mapped_column(String(64), nullable=False)
    period_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    used_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class TerminatedSubscription(Base):
    """Provider subscription ids that received a deletion; terminal."""

    __tablename__ = "terminated_subscriptions"
    __table_args__ = (
        UniqueConstraint(
            "provider_subscription_id",
            name="uq_terminated_subscriptions_provider_subscription_id",
        ),
    )

    provider_subscription_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(64))
    terminated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class BillingEventLog(Base):
    __tablename__ = "billing_event_log"
    __table_args__ = (UniqueConstraint("event_id", name="uq_billing_event_log_event_id"),)

    event_id: Mapped[str] = mapped_column(String(128), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    provider_subscription_id: Mapped[str | None] = mapped_column(String(64))
    outcome: Mapped[str] = mapped_column(String(32), nullable=False)
    received_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


__all__ = [
    "SUBSCRIPTION_STATUSES",
    "SubscriptionRecord",
    "UsageCounter",
    "TerminatedSubscription",
    "BillingEventLog",
]
