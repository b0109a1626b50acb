"""Project a user's subscription record and usage into an entitlement snapshot."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from bonsai_entitlements.config import EngineSettings, get_settings
from bonsai_entitlements.db.models.core import SubscriptionRecord
from bonsai_entitlements.domain.models import UNLIMITED, EntitlementSnapshot, QuotaStatus
from bonsai_entitlements.services.catalog import TierCatalog
from bonsai_entitlements.services.subscriptions import SubscriptionRepository, require_user_id
from bonsai_entitlements.services.usage_ledger import UsageLedger
from bonsai_entitlements.utils.datetime import utc_now


class EntitlementResolver:
    """Read-only: nothing here writes to the store.

    The snapshot carries the record's nominal tier even when the status is
    not ``active``/``trialing``; deciding what a lapsed status is worth is
    the feature gate's job.
    """

    def __init__(
        self,
        session: AsyncSession,
        catalog: TierCatalog,
        settings: EngineSettings | None = None,
        *,
        ledger: UsageLedger | None = None,
        subscriptions: SubscriptionRepository | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.catalog = catalog
        self.ledger = ledger or UsageLedger(session, catalog, self.settings)
        self.subscriptions = subscriptions or SubscriptionRepository(session, catalog, self.settings)

    async def subscription(self, user_id: str) -> SubscriptionRecord | None:
        return await self.subscriptions.get_by_user(require_user_id(user_id))

    async def resolve(self, user_id: str, now: datetime | None = None) -> EntitlementSnapshot:
        user_id = require_user_id(user_id)
        now = now or utc_now()
        record = await self.subscriptions.get_by_user(user_id)
        if record is None:
            tier_id, status, cancel_at_period_end = self.catalog.lowest().id, "active", False
        else:
            tier_id, status = record.tier, record.status
            cancel_at_period_end = record.cancel_at_period_end
            if not self.catalog.has_tier(tier_id):
                tier_id = self.catalog.lowest().id

        quotas: dict[str, QuotaStatus] = {}
        for quota_type, limit in self.catalog.limits_of(tier_id).items():
            quotas[quota_type] = await self.quota_status(user_id, quota_type, limit, now)

        return EntitlementSnapshot(
            user_id=user_id,
            tier=tier_id,
            status=status,
            cancel_at_period_end=cancel_at_period_end,
            features=self.catalog.features_of(tier_id),
            quotas=quotas,
        )

    async def quota_status(
        self, user_id: str, quota_type: str, limit: int, now: datetime
    ) -> QuotaStatus:
        used, _ = await self.ledger.get(user_id, quota_type, now)
        reset_at = self.ledger.period_end(quota_type, now)
        remaining = UNLIMITED if limit == UNLIMITED else max(0, limit - used)
        return QuotaStatus(
            limit=limit,
            used=used,
            remaining=remaining,
            reset_at=reset_at,
            period=self.catalog.quota(quota_type).period,
        )


__all__ = ["EntitlementResolver"]
