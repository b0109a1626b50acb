"""User-initiated subscription changes.

Each command validates against the catalog and the stored record, asks the
billing provider to make the change, and only then writes the provider's
answer onto the record with ``pending_confirmation`` set. The provider's
webhook later confirms (or overrides) that write.
"""

from __future__ import annotations

from typing import Literal, Protocol
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from bonsai_entitlements.config import EngineSettings, get_settings
from bonsai_entitlements.db.models.core import SubscriptionRecord
from bonsai_entitlements.domain.models import (
    CheckoutSession,
    PortalSession,
    ProviderSubscription,
    SubscriptionView,
    TierComparison,
)
from bonsai_entitlements.logging import logger
from bonsai_entitlements.services.catalog import TierCatalog
from bonsai_entitlements.services.exceptions import SubscriptionNotFound, ValidationError
from bonsai_entitlements.services.subscriptions import SubscriptionRepository, require_user_id
from bonsai_entitlements.utils.datetime import to_storage, utc_now

Direction = Literal["upgrade", "downgrade"]


class BillingProvider(Protocol):
    async def change_price(
        self, subscription_id: str, price_id: str, *, idempotency_key: str
    ) -> ProviderSubscription: ...

    async def cancel(self, subscription_id: str, *, idempotency_key: str) -> ProviderSubscription: ...

    async def set_cancel_at_period_end(
        self, subscription_id: str, value: bool, *, idempotency_key: str
    ) -> ProviderSubscription: ...

    async def create_customer(self, user_id: str, email: str | None, *, idempotency_key: str) -> str: ...

    async def create_checkout_session(
        self,
        *,
        user_id: str,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        idempotency_key: str,
    ) -> CheckoutSession: ...

    async def create_portal_session(self, *, customer_id: str, return_url: str) -> PortalSession: ...


def _idempotency_key(action: str, user_id: str) -> str:
    return f"{action}:{user_id}:{uuid4().hex}"


class SubscriptionCommandDispatcher:
    def __init__(
        self,
        session: AsyncSession,
        catalog: TierCatalog,
        provider: BillingProvider,
        settings: EngineSettings | None = None,
        *,
        subscriptions: SubscriptionRepository | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.catalog = catalog
        self.provider = provider
        self.subscriptions = subscriptions or SubscriptionRepository(session, catalog, self.settings)

    async def upgrade(self, user_id: str, target_tier: str, price_id: str) -> SubscriptionView:
        return await self.change_tier(user_id, target_tier, price_id, "upgrade")

    async def downgrade(self, user_id: str, target_tier: str, price_id: str) -> SubscriptionView:
        return await self.change_tier(user_id, target_tier, price_id, "downgrade")

    async def change_tier(
        self,
        user_id: str,
        target_tier: str,
        price_id: str,
        direction: Direction,
    ) -> SubscriptionView:
        user_id = require_user_id(user_id)
        target = self.catalog.get(target_tier)
        if target.id == self.catalog.lowest().id or not target.price_id:
            raise ValidationError(f"Tier {target.id!r} cannot be purchased; cancel instead.")
        if not price_id or self.catalog.tier_for(price_id) != target.id:
            raise ValidationError(f"Price {price_id!r} does not belong to tier {target.id!r}.")

        record = await self._active_record(user_id)
        previous_tier = self._current_tier(record)
        comparison = self.catalog.compare(target.id, previous_tier)
        expected = TierComparison.HIGHER if direction == "upgrade" else TierComparison.LOWER
        if comparison != expected:
            raise ValidationError(f"Cannot {direction} from {previous_tier!r} to {target.id!r}.")

        updated = await self.provider.change_price(
            record.provider_subscription_id,
            price_id,
            idempotency_key=_idempotency_key(direction, user_id),
        )

        record.tier = target.id
        record.provider_price_id = updated.price_id or price_id
        if updated.current_period_start is not None:
            record.current_period_start = to_storage(updated.current_period_start)
        if updated.current_period_end is not None:
            record.current_period_end = to_storage(updated.current_period_end)
        return await self._commit_optimistic(record, direction, from_tier=previous_tier)

    async def cancel(self, user_id: str, at_period_end: bool = True) -> SubscriptionView:
        user_id = require_user_id(user_id)
        record = await self._active_record(user_id)
        subscription_id = record.provider_subscription_id

        if at_period_end:
            await self.provider.set_cancel_at_period_end(
                subscription_id,
                True,
                idempotency_key=_idempotency_key("cancel_at_period_end", user_id),
            )
            record.cancel_at_period_end = True
        else:
            await self.provider.cancel(
                subscription_id,
                idempotency_key=_idempotency_key("cancel", user_id),
            )
            record.status = "canceled"
            record.canceled_at = to_storage(utc_now())
        return await self._commit_optimistic(record, "cancel", at_period_end=at_period_end)

    async def reactivate(self, user_id: str) -> SubscriptionView:
        user_id = require_user_id(user_id)
        record = await self._active_record(user_id)
        if not record.cancel_at_period_end:
            raise ValidationError("Subscription is not scheduled for cancellation.")

        await self.provider.set_cancel_at_period_end(
            record.provider_subscription_id,
            False,
            idempotency_key=_idempotency_key("reactivate", user_id),
        )
        record.cancel_at_period_end = False
        return await self._commit_optimistic(record, "reactivate")

    async def start_checkout(
        self,
        user_id: str,
        target_tier: str,
        success_url: str,
        cancel_url: str,
        email: str | None = None,
    ) -> CheckoutSession:
        """Open a hosted checkout; entitlements change only once the provider confirms."""

        user_id = require_user_id(user_id)
        target = self.catalog.get(target_tier)
        if not target.price_id:
            raise ValidationError(f"Tier {target.id!r} has no purchasable price.")
        if not success_url or not cancel_url:
            raise ValidationError("Both success and cancel URLs are required.")

        record = await self.subscriptions.ensure_record(user_id)
        if record.provider_subscription_id and record.status != "canceled":
            raise ValidationError("User already has an active subscription; change tiers instead.")

        customer_id = record.provider_customer_id
        if not customer_id:
            customer_id = await self.provider.create_customer(
                user_id,
                email,
                idempotency_key=_idempotency_key("customer", user_id),
            )
            record.provider_customer_id = customer_id
            record.updated_at = to_storage(utc_now())
            await self.subscriptions.flush()

        checkout = await self.provider.create_checkout_session(
            user_id=user_id,
            customer_id=customer_id,
            price_id=target.price_id,
            success_url=success_url,
            cancel_url=cancel_url,
            idempotency_key=_idempotency_key("checkout", user_id),
        )
        logger.info(
            "checkout_session_created",
            user_id=user_id,
            tier=target.id,
            session_id=checkout.session_id,
        )
        return checkout

    async def open_portal(self, user_id: str, return_url: str | None = None) -> PortalSession:
        """Hosted billing portal for a user who has reached the provider at least once."""

        user_id = require_user_id(user_id)
        record = await self.subscriptions.get_by_user(user_id)
        if record is None or not record.provider_customer_id:
            raise SubscriptionNotFound("No billing account found for this user.")

        portal = await self.provider.create_portal_session(
            customer_id=record.provider_customer_id,
            return_url=return_url or self.settings.stripe.portal_return_url,
        )
        logger.info("portal_session_created", user_id=user_id)
        return portal

    # Internal helpers -------------------------------------------------

    async def _active_record(self, user_id: str) -> SubscriptionRecord:
        record = await self.subscriptions.get_by_user(user_id, for_update=True)
        if record is None or not record.provider_subscription_id or record.status == "canceled":
            raise SubscriptionNotFound("No active subscription found.")
        return record

    def _current_tier(self, record: SubscriptionRecord) -> str:
        if self.catalog.has_tier(record.tier):
            return record.tier
        return self.catalog.lowest().id

    async def _commit_optimistic(
        self, record: SubscriptionRecord, action: str, **fields
    ) -> SubscriptionView:
        record.pending_confirmation = True
        record.updated_at = to_storage(utc_now())
        await self.subscriptions.flush()
        logger.info(
            "subscription_command_applied",
            user_id=record.user_id,
            action=action,
            tier=record.tier,
            **fields,
        )
        return self.subscriptions.to_view(record)


__all__ = ["BillingProvider", "SubscriptionCommandDispatcher"]
