"""Subscription record access shared by the resolver, reconciler and dispatcher."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bonsai_entitlements.config import EngineSettings, get_settings
from bonsai_entitlements.db.models.core import SubscriptionRecord, TerminatedSubscription
from bonsai_entitlements.domain.models import SubscriptionView
from bonsai_entitlements.logging import logger
from bonsai_entitlements.services.catalog import TierCatalog
from bonsai_entitlements.services.exceptions import Unauthorized
from bonsai_entitlements.utils.datetime import from_storage, to_storage, utc_now
from bonsai_entitlements.utils.store import bounded


def require_user_id(user_id: str | None) -> str:
    """Reject calls that arrive without a verified caller identity."""

    if user_id is None or not str(user_id).strip():
        raise Unauthorized("A verified user identity is required.")
    return str(user_id).strip()


class SubscriptionRepository:
    def __init__(
        self,
        session: AsyncSession,
        catalog: TierCatalog,
        settings: EngineSettings | None = None,
    ) -> None:
        self.session = session
        self.catalog = catalog
        self.settings = settings or get_settings()
        self.timeout = self.settings.database.statement_timeout_seconds

    async def get_by_user(
        self, user_id: str, *, for_update: bool = False
    ) -> SubscriptionRecord | None:
        stmt = select(SubscriptionRecord).where(SubscriptionRecord.user_id == user_id)
        return await self._first(stmt, for_update)

    async def get_by_provider_subscription(
        self, subscription_id: str, *, for_update: bool = False
    ) -> SubscriptionRecord | None:
        stmt = select(SubscriptionRecord).where(
            SubscriptionRecord.provider_subscription_id == subscription_id
        )
        return await self._first(stmt, for_update)

    async def get_by_customer(
        self, customer_id: str, *, for_update: bool = False
    ) -> SubscriptionRecord | None:
        stmt = (
            select(SubscriptionRecord)
            .where(SubscriptionRecord.provider_customer_id == customer_id)
            .order_by(SubscriptionRecord.id)
        )
        return await self._first(stmt, for_update)

    async def is_terminated(self, subscription_id: str) -> bool:
        stmt = select(TerminatedSubscription.id).where(
            TerminatedSubscription.provider_subscription_id == subscription_id
        )
        result = await bounded(self.session.execute(stmt), timeout=self.timeout, store="subscriptions")
        return result.scalar_one_or_none() is not None

    async def ensure_record(self, user_id: str) -> SubscriptionRecord:
        """Make sure the user has a record; new accounts start on the lowest tier."""

        user_id = require_user_id(user_id)
        record = await self.get_by_user(user_id, for_update=True)
        if record is not None:
            return record

        now = to_storage(utc_now())
        record = SubscriptionRecord(
            user_id=user_id,
            tier=self.catalog.lowest().id,
            status="active",
            cancel_at_period_end=False,
            pending_confirmation=False,
            created_at=now,
            updated_at=now,
        )
        self.session.add(record)
        await bounded(self.session.flush(), timeout=self.timeout, store="subscriptions")
        logger.info("subscription_record_created", user_id=user_id, tier=record.tier)
        return record

    def to_view(self, record: SubscriptionRecord | None, user_id: str | None = None) -> SubscriptionView:
        if record is None:
            return SubscriptionView(user_id=user_id, tier=self.catalog.lowest().id, status="active")
        return SubscriptionView(
            user_id=record.user_id,
            tier=record.tier,
            status=record.status,
            current_period_start=from_storage(record.current_period_start),
            current_period_end=from_storage(record.current_period_end),
            cancel_at_period_end=record.cancel_at_period_end,
            canceled_at=from_storage(record.canceled_at),
            provider_customer_id=record.provider_customer_id,
            provider_subscription_id=record.provider_subscription_id,
            provider_price_id=record.provider_price_id,
            pending_confirmation=record.pending_confirmation,
        )

    async def flush(self) -> None:
        await bounded(self.session.flush(), timeout=self.timeout, store="subscriptions")

    # Internal helpers -------------------------------------------------

    async def _first(self, stmt, for_update: bool) -> SubscriptionRecord | None:
        if for_update:
            stmt = stmt.with_for_update()
        result = await bounded(self.session.execute(stmt), timeout=self.timeout, store="subscriptions")
        return result.scalars().first()


__all__ = ["SubscriptionRepository", "require_user_id"]
