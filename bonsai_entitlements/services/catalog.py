"""Subscription tier catalog.

The catalog is plain configuration: it is built once at startup from the
tier definitions below plus the provider price ids in settings, and handed
to every service that needs it. Nothing here performs I/O.
"""

from __future__ import annotations

from typing import Iterable, Mapping

from bonsai_entitlements.config import EngineSettings, get_settings
from bonsai_entitlements.domain.models import UNLIMITED, QuotaDefinition, Tier, TierComparison
from bonsai_entitlements.services.exceptions import ValidationError

FEATURE_DISPLAY_NAMES: dict[str, str] = {
    "voiceCommands": "Voice Commands",
    "advancedAnalytics": "Advanced Analytics",
    "prioritySupport": "Priority Support",
    "customBonsai": "Custom Bonsai",
    "spiralQuestions": "Spiral Questions",
    "performancePredictions": "Performance Predictions",
    "studyPlanning": "Study Planning",
    "offlineMode": "Offline Mode",
    "whiteLabel": "White Labeling",
    "apiAccess": "API Access",
    "customIntegrations": "Custom Integrations",
    "dedicatedSupport": "Dedicated Support",
}

DEFAULT_QUOTAS: tuple[QuotaDefinition, ...] = (
    QuotaDefinition(name="dailyAiInteractions", display_name="Daily AI Interactions", period="daily"),
    QuotaDefinition(name="monthlyStudyMinutes", display_name="Monthly Study Minutes", period="monthly"),
    QuotaDefinition(name="savedQuestions", display_name="Saved Questions", period="daily"),
    QuotaDefinition(name="practiceTests", display_name="Practice Tests", period="daily"),
    QuotaDefinition(name="organizationSeats", display_name="Organization Seats", period="monthly"),
)

_BASIC_FEATURES = (
    "voiceCommands",
    "advancedAnalytics",
    "customBonsai",
    "spiralQuestions",
    "performancePredictions",
    "studyPlanning",
)
_PRO_FEATURES = _BASIC_FEATURES + ("prioritySupport", "offlineMode")
_ENTERPRISE_FEATURES = _PRO_FEATURES + (
    "whiteLabel",
    "apiAccess",
    "customIntegrations",
    "dedicatedSupport",
)


def default_tier_definitions(settings: EngineSettings) -> list[dict]:
    """Free/Basic/Pro/Enterprise as sold on the pricing page."""

    stripe_cfg = settings.stripe
    return [
        {
            "id": "free",
            "name": "Free",
            "monthly_price": 0.0,
            "price_id": None,
            "features": (),
            "limits": {
                "dailyAiInteractions": 5,
                "monthlyStudyMinutes": 300,
                "savedQuestions": 50,
                "practiceTests": 1,
            },
        },
        {
            "id": "basic",
            "name": "Basic",
            "monthly_price": 19.99,
            "price_id": stripe_cfg.basic_price_id,
            "features": _BASIC_FEATURES,
            "limits": {
                "dailyAiInteractions": 50,
                "monthlyStudyMinutes": 3000,
                "savedQuestions": 500,
                "practiceTests": 10,
            },
        },
        {
            "id": "pro",
            "name": "Pro",
            "monthly_price": 39.99,
            "price_id": stripe_cfg.pro_price_id,
            "features": _PRO_FEATURES,
            "limits": {
                "dailyAiInteractions": UNLIMITED,
                "monthlyStudyMinutes": UNLIMITED,
                "savedQuestions": UNLIMITED,
                "practiceTests": UNLIMITED,
            },
        },
        {
            "id": "enterprise",
            "name": "Enterprise",
            "monthly_price": 299.0,
            "price_id": stripe_cfg.enterprise_price_id,
            "features": _ENTERPRISE_FEATURES,
            "limits": {
                "dailyAiInteractions": UNLIMITED,
                "monthlyStudyMinutes": UNLIMITED,
                "savedQuestions": UNLIMITED,
                "practiceTests": UNLIMITED,
                "organizationSeats": 100,
            },
        },
    ]


def _limit_rank(limit: int) -> float:
    return float("inf") if limit == UNLIMITED else float(limit)


def format_limit(limit: int) -> str:
    return "Unlimited" if limit == UNLIMITED else str(limit)


def limit_admits(limit: int, requested_total: int) -> bool:
    return limit == UNLIMITED or requested_total <= limit


class TierCatalog:
    """Read-only view over the configured tiers, ordered by monthly price."""

    def __init__(
        self,
        tiers: Iterable[Tier],
        quotas: Iterable[QuotaDefinition] = DEFAULT_QUOTAS,
        feature_names: Mapping[str, str] | None = None,
    ) -> None:
        ordered = sorted(tiers, key=lambda tier: tier.monthly_price)
        if not ordered:
            raise ValueError("Tier catalog needs at least one tier.")
        self._tiers: dict[str, Tier] = {tier.id: tier for tier in ordered}
        if len(self._tiers) != len(ordered):
            raise ValueError("Duplicate tier id in catalog.")
        self._order: tuple[str, ...] = tuple(tier.id for tier in ordered)
        self._by_price: dict[str, str] = {
            tier.price_id: tier.id for tier in ordered if tier.price_id
        }
        self._quotas: dict[str, QuotaDefinition] = {quota.name: quota for quota in quotas}
        self._feature_names = dict(feature_names or FEATURE_DISPLAY_NAMES)

        known_features: list[str] = list(self._feature_names)
        for tier in ordered:
            for feature in tier.features:
                if feature not in known_features:
                    known_features.append(feature)
            for quota in tier.limits:
                if quota not in self._quotas:
                    raise ValueError(f"Tier {tier.id!r} limits undeclared quota {quota!r}.")
        self._features: tuple[str, ...] = tuple(known_features)

    @classmethod
    def from_settings(cls, settings: EngineSettings | None = None) -> "TierCatalog":
        settings = settings or get_settings()
        tiers = []
        for payload in default_tier_definitions(settings):
            tiers.append(
                Tier(
                    id=payload["id"],
                    name=payload["name"],
                    monthly_price=payload["monthly_price"],
                    price_id=payload["price_id"],
                    features={name: True for name in payload["features"]},
                    limits=dict(payload["limits"]),
                )
            )
        return cls(tiers)

    # Lookups ----------------------------------------------------------

    def get(self, tier_id: str) -> Tier:
        try:
            return self._tiers[tier_id]
        except KeyError:
            raise ValidationError(f"Unknown tier: {tier_id!r}") from None

    def has_tier(self, tier_id: str) -> bool:
        return tier_id in self._tiers

    def ordered(self) -> list[Tier]:
        return [self._tiers[tier_id] for tier_id in self._order]

    def lowest(self) -> Tier:
        return self._tiers[self._order[0]]

    def tier_for(self, price_id: str | None) -> str:
        """Map a provider price id to a tier; anything unknown is the lowest tier."""

        if not price_id:
            return self._order[0]
        return self._by_price.get(price_id, self._order[0])

    def features_of(self, tier_id: str) -> dict[str, bool]:
        tier = self.get(tier_id)
        return {name: bool(tier.features.get(name, False)) for name in self._features}

    def limits_of(self, tier_id: str) -> dict[str, int]:
        return dict(self.get(tier_id).limits)

    def compare(self, tier_a: str, tier_b: str) -> TierComparison:
        """Where ``tier_a`` sits relative to ``tier_b``."""

        index_a = self._order.index(self.get(tier_a).id)
        index_b = self._order.index(self.get(tier_b).id)
        if index_a < index_b:
            return TierComparison.LOWER
        if index_a > index_b:
            return TierComparison.HIGHER
        return TierComparison.EQUAL

    def higher_than(self, tier_id: str) -> list[Tier]:
        start = self._order.index(self.get(tier_id).id) + 1
        return [self._tiers[name] for name in self._order[start:]]

    # Features and quotas ----------------------------------------------

    def known_feature(self, feature: str) -> bool:
        return feature in self._features

    def known_quota(self, quota_type: str) -> bool:
        return quota_type in self._quotas

    def quota(self, quota_type: str) -> QuotaDefinition:
        try:
            return self._quotas[quota_type]
        except KeyError:
            raise ValidationError(f"Unknown quota type: {quota_type!r}") from None

    def feature_display_name(self, feature: str) -> str:
        return self._feature_names.get(feature, feature)

    def benefits(self, from_tier: str, to_tier: str) -> list[str]:
        """Human-facing list of what ``to_tier`` adds over ``from_tier``."""

        current = self.get(from_tier)
        target = self.get(to_tier)
        benefits: list[str] = []
        for feature in self._features:
            if target.features.get(feature) and not current.features.get(feature):
                benefits.append(self.feature_display_name(feature))
        for quota_type, limit in target.limits.items():
            current_limit = current.limits.get(quota_type, 0)
            if _limit_rank(limit) > _limit_rank(current_limit):
                display = self._quotas[quota_type].display_name
                benefits.append(f"{display}: {format_limit(limit)} (vs {format_limit(current_limit)})")
        return benefits


__all__ = [
    "DEFAULT_QUOTAS",
    "FEATURE_DISPLAY_NAMES",
    "TierCatalog",
    "default_tier_definitions",
    "format_limit",
    "limit_admits",
]
