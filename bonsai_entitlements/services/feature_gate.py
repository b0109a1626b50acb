"""Allow/deny decisions for features, quotas and minimum tiers."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from bonsai_entitlements.config import EngineSettings, get_settings
from bonsai_entitlements.domain.models import (
    DecisionReason,
    FeatureDecision,
    QuotaDecision,
    TierComparison,
    TierDecision,
    UpgradeSuggestion,
)
from bonsai_entitlements.logging import logger
from bonsai_entitlements.services.catalog import TierCatalog, limit_admits
from bonsai_entitlements.services.entitlement_resolver import EntitlementResolver
from bonsai_entitlements.services.exceptions import UpstreamUnavailable, ValidationError
from bonsai_entitlements.services.subscriptions import require_user_id
from bonsai_entitlements.utils.datetime import utc_now

PAID_STATUSES = {"active", "trialing"}


class FeatureGate:
    """Decision point consulted on every privileged request.

    Denials are ordinary results carrying a reason and, when some tier would
    help, an upgrade suggestion. Only infrastructure failures raise.
    """

    def __init__(
        self,
        session: AsyncSession,
        catalog: TierCatalog,
        settings: EngineSettings | None = None,
        *,
        resolver: EntitlementResolver | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.catalog = catalog
        self.resolver = resolver or EntitlementResolver(session, catalog, self.settings)
        self.ledger = self.resolver.ledger

    def effective_tier(self, tier: str, status: str) -> str:
        lowest = self.catalog.lowest().id
        if not self.catalog.has_tier(tier):
            return lowest
        if status in PAID_STATUSES:
            return tier
        if status == "past_due" and self.settings.entitlements.past_due_grants_paid_tier:
            return tier
        return lowest

    async def current_tier(self, user_id: str) -> str:
        record = await self.resolver.subscription(user_id)
        if record is None:
            return self.catalog.lowest().id
        return self.effective_tier(record.tier, record.status)

    async def check_feature(self, user_id: str, feature: str) -> FeatureDecision:
        user_id = require_user_id(user_id)
        if not self.catalog.known_feature(feature):
            raise ValidationError(f"Unknown feature: {feature!r}")

        try:
            tier = await self.current_tier(user_id)
        except UpstreamUnavailable:
            if not self.settings.entitlements.fail_open_feature_checks:
                raise
            logger.warning("feature_check_degraded", user_id=user_id, feature=feature)
            return FeatureDecision(
                allowed=True,
                feature=feature,
                tier=self.catalog.lowest().id,
                degraded=True,
            )

        if self.catalog.features_of(tier).get(feature, False):
            return FeatureDecision(allowed=True, feature=feature, tier=tier)

        upgrade = self.upgrade_for_feature(tier, feature)
        required = upgrade.name if upgrade else "a higher"
        logger.info("feature_denied", user_id=user_id, feature=feature, tier=tier)
        return FeatureDecision(
            allowed=False,
            feature=feature,
            tier=tier,
            reason=DecisionReason.FEATURE_DISABLED,
            message=f"Feature requires {required} tier or higher",
            upgrade=upgrade,
        )

    async def check_and_consume(
        self,
        user_id: str,
        quota_type: str,
        amount: int = 1,
        now: datetime | None = None,
    ) -> QuotaDecision:
        """Check the quota and record the usage in one atomic ledger call.

        Store failures propagate as UpstreamUnavailable; a quota is never
        granted without a committed increment.
        """

        user_id = require_user_id(user_id)
        if not self.catalog.known_quota(quota_type):
            raise ValidationError(f"Unknown quota type: {quota_type!r}")
        if amount < 1:
            raise ValidationError("Usage amount must be a positive integer.")
        now = now or utc_now()

        tier = await self.current_tier(user_id)
        limit = self.catalog.limits_of(tier).get(quota_type, 0)
        result = await self.ledger.try_increment(user_id, quota_type, amount, limit, now)

        if result.allowed:
            return QuotaDecision(
                allowed=True,
                quota=quota_type,
                tier=tier,
                limit=limit,
                used=result.used,
                remaining=result.remaining,
                reset_at=result.reset_at,
            )

        upgrade = self.upgrade_for_quota(tier, quota_type, result.used + amount)
        return QuotaDecision(
            allowed=False,
            quota=quota_type,
            tier=tier,
            limit=limit,
            used=result.used,
            remaining=result.remaining,
            reset_at=result.reset_at,
            reason=DecisionReason.LIMIT_EXCEEDED,
            message=(
                f"Usage limit exceeded. {result.remaining} remaining until "
                f"{result.reset_at.date().isoformat()}"
            ),
            upgrade=upgrade,
        )

    async def check_tier(self, user_id: str, required_tier: str) -> TierDecision:
        user_id = require_user_id(user_id)
        required = self.catalog.get(required_tier)
        tier = await self.current_tier(user_id)
        if self.catalog.compare(tier, required.id) != TierComparison.LOWER:
            return TierDecision(allowed=True, tier=tier, required_tier=required.id)
        return TierDecision(
            allowed=False,
            tier=tier,
            required_tier=required.id,
            reason=DecisionReason.TIER_TOO_LOW,
            upgrade=self._suggest(tier, required.id),
        )

    # Upgrade suggestions ----------------------------------------------

    def upgrade_for_feature(self, current_tier: str, feature: str) -> UpgradeSuggestion | None:
        for candidate in self.catalog.higher_than(current_tier):
            if candidate.features.get(feature):
                return self._suggest(current_tier, candidate.id)
        return None

    def upgrade_for_quota(
        self, current_tier: str, quota_type: str, requested_total: int
    ) -> UpgradeSuggestion | None:
        for candidate in self.catalog.higher_than(current_tier):
            limit = candidate.limits.get(quota_type)
            if limit is not None and limit_admits(limit, requested_total):
                return self._suggest(current_tier, candidate.id)
        return None

    def _suggest(self, current_tier: str, target_tier: str) -> UpgradeSuggestion:
        target = self.catalog.get(target_tier)
        return UpgradeSuggestion(
            tier=target.id,
            name=target.name,
            price=target.monthly_price,
            benefits=self.catalog.benefits(current_tier, target.id),
        )


__all__ = ["FeatureGate", "PAID_STATUSES"]
