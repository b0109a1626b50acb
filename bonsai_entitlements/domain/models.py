"""Pydantic models shared across the service and web layers."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

UNLIMITED = -1

SubscriptionStatus = Literal["active", "trialing", "past_due", "canceled"]
Period = Literal["daily", "monthly"]


class TierComparison(str, Enum):
    LOWER = "lower"
    EQUAL = "equal"
    HIGHER = "higher"


class DecisionReason(str, Enum):
    FEATURE_DISABLED = "feature_disabled"
    LIMIT_EXCEEDED = "limit_exceeded"
    TIER_TOO_LOW = "tier_too_low"


class QuotaDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    display_name: str
    period: Period = "daily"


class Tier(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    monthly_price: float
    price_id: str | None = None
    features: dict[str, bool] = Field(default_factory=dict)
    limits: dict[str, int] = Field(default_factory=dict)


class QuotaStatus(BaseModel):
    limit: int
    used: int
    remaining: int
    reset_at: datetime
    period: Period


class EntitlementSnapshot(BaseModel):
    user_id: str
    tier: str
    status: SubscriptionStatus
    cancel_at_period_end: bool = False
    features: dict[str, bool]
    quotas: dict[str, QuotaStatus]


class UpgradeSuggestion(BaseModel):
    tier: str
    name: str
    price: float
    benefits: list[str]


class FeatureDecision(BaseModel):
    allowed: bool
    feature: str
    tier: str
    reason: DecisionReason | None = None
    message: str | None = None
    upgrade: UpgradeSuggestion | None = None
    degraded: bool = False


class QuotaDecision(BaseModel):
    allowed: bool
    quota: str
    tier: str
    limit: int
    used: int
    remaining: int
    reset_at: datetime
    reason: DecisionReason | None = None
    message: str | None = None
    upgrade: UpgradeSuggestion | None = None


class TierDecision(BaseModel):
    allowed: bool
    tier: str
    required_tier: str
    reason: DecisionReason | None = None
    upgrade: UpgradeSuggestion | None = None


class IncrementResult(BaseModel):
    allowed: bool
    used: int
    remaining: int
    period_start: datetime
    reset_at: datetime


class SubscriptionView(BaseModel):
    user_id: str | None
    tier: str
    status: SubscriptionStatus
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None
    provider_customer_id: str | None = None
    provider_subscription_id: str | None = None
    provider_price_id: str | None = None
    pending_confirmation: bool = False


class ProviderSubscription(BaseModel):
    """The subset of a provider subscription object the engine consumes."""

    id: str
    customer: str | None = None
    status: str = "active"
    price_id: str | None = None
    item_id: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_end: datetime | None = None
    cancel_at_period_end: bool = False
    metadata: dict[str, str] = Field(default_factory=dict)


class CheckoutSession(BaseModel):
    session_id: str
    url: str | None = None
    customer_id: str


class PortalSession(BaseModel):
    url: str
    customer_id: str


class BillingEvent(BaseModel):
    id: str
    type: str
    created: datetime
    data: dict[str, Any]


class ReconcileOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"
    TERMINATED = "terminated"
    IGNORED = "ignored"
    UNMATCHED = "unmatched"


__all__ = [
    "UNLIMITED",
    "BillingEvent",
    "CheckoutSession",
    "DecisionReason",
    "EntitlementSnapshot",
    "FeatureDecision",
    "IncrementResult",
    "Period",
    "PortalSession",
    "ProviderSubscription",
    "QuotaDecision",
    "QuotaDefinition",
    "QuotaStatus",
    "ReconcileOutcome",
    "SubscriptionStatus",
    "SubscriptionView",
    "Tier",
    "TierComparison",
    "TierDecision",
    "UpgradeSuggestion",
]
