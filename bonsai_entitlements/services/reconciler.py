"""Fold billing provider lifecycle events into subscription records.

Every handler writes the absolute values carried by the event, so replaying
an event (or receiving it twice) converges on the same record. Events older
than the last one applied to a record are dropped, and once a subscription
id has been deleted it never comes back to life.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Awaitable, Callable

import stripe
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bonsai_entitlements.config import EngineSettings, get_settings
from bonsai_entitlements.db.models.core import (
    BillingEventLog,
    SubscriptionRecord,
    TerminatedSubscription,
)
from bonsai_entitlements.domain.models import BillingEvent, ProviderSubscription, ReconcileOutcome
from bonsai_entitlements.logging import logger
from bonsai_entitlements.services.billing_provider import provider_subscription_from_payload
from bonsai_entitlements.services.catalog import TierCatalog
from bonsai_entitlements.services.exceptions import (
    SignatureInvalid,
    UpstreamUnavailable,
    ValidationError,
)
from bonsai_entitlements.services.subscriptions import SubscriptionRepository
from bonsai_entitlements.utils.datetime import from_timestamp, to_storage, utc_now
from bonsai_entitlements.utils.store import bounded

SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
PAYMENT_FAILED = "invoice.payment_failed"

# Provider statuses outside our four-state machine.
_STATUS_MAP = {
    "active": "active",
    "trialing": "trialing",
    "past_due": "past_due",
    "canceled": "canceled",
    "unpaid": "past_due",
    "incomplete": "past_due",
    "paused": "past_due",
    "incomplete_expired": "canceled",
}

Handler = Callable[[BillingEvent], Awaitable[ReconcileOutcome]]


def normalize_status(provider_status: str | None) -> str:
    return _STATUS_MAP.get(provider_status or "active", "past_due")


def _invoice_subscription_id(invoice: dict[str, Any]) -> str | None:
    subscription = invoice.get("subscription")
    if isinstance(subscription, dict):
        subscription = subscription.get("id")
    if subscription:
        return str(subscription)
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    value = details.get("subscription")
    return str(value) if value else None


class BillingEventReconciler:
    def __init__(
        self,
        session: AsyncSession,
        catalog: TierCatalog,
        settings: EngineSettings | None = None,
        *,
        subscriptions: SubscriptionRepository | None = None,
    ) -> None:
        self.session = session
        self.catalog = catalog
        self.settings = settings or get_settings()
        self.subscriptions = subscriptions or SubscriptionRepository(session, catalog, self.settings)
        self.timeout = self.settings.database.statement_timeout_seconds
        self._handlers: dict[str, Handler] = {
            SUBSCRIPTION_CREATED: self._handle_subscription_upsert,
            SUBSCRIPTION_UPDATED: self._handle_subscription_upsert,
            SUBSCRIPTION_DELETED: self._handle_subscription_deleted,
            PAYMENT_SUCCEEDED: self._handle_payment_succeeded,
            PAYMENT_FAILED: self._handle_payment_failed,
        }

    def verify(self, payload: bytes | str, signature_header: str | None) -> BillingEvent:
        """Authenticate a webhook delivery and decode it. Touches no state."""

        secret = self.settings.stripe.webhook_secret
        if secret is None:
            logger.error("webhook_secret_missing")
            raise UpstreamUnavailable("Webhook verification is not configured.")
        if not signature_header:
            raise SignatureInvalid("Missing signature header.")

        try:
            text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        except UnicodeDecodeError as exc:
            logger.warning("webhook_payload_undecodable", error=str(exc))
            raise SignatureInvalid("Invalid signature.") from exc
        try:
            stripe.WebhookSignature.verify_header(
                text,
                signature_header,
                secret.get_secret_value(),
                tolerance=self.settings.stripe.webhook_tolerance_seconds,
            )
        except stripe.SignatureVerificationError as exc:
            logger.warning("webhook_signature_invalid", error=str(exc))
            raise SignatureInvalid("Invalid signature.") from exc

        try:
            body = json.loads(text)
            return BillingEvent(
                id=str(body["id"]),
                type=str(body["type"]),
                created=from_timestamp(body["created"]),
                data=body.get("data") or {},
            )
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("webhook_payload_malformed", error=str(exc))
            raise SignatureInvalid("Malformed webhook payload.") from exc

    async def apply(self, event: BillingEvent) -> ReconcileOutcome:
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.info("webhook_event_ignored", event_type=event.type, event_id=event.id)
            return ReconcileOutcome.IGNORED

        if await self._already_processed(event.id):
            logger.info("webhook_event_duplicate", event_type=event.type, event_id=event.id)
            return ReconcileOutcome.DUPLICATE

        outcome = await handler(event)
        self.session.add(
            BillingEventLog(
                event_id=event.id,
                event_type=event.type,
                provider_subscription_id=self._subscription_id_of(event),
                outcome=outcome.value,
                received_at=to_storage(utc_now()),
            )
        )
        await self.subscriptions.flush()
        logger.info(
            "webhook_event_reconciled",
            event_type=event.type,
            event_id=event.id,
            outcome=outcome.value,
        )
        return outcome

    async def ensure_record(self, user_id: str) -> SubscriptionRecord:
        """Signup hook: give a new account its lowest-tier record. Idempotent."""

        return await self.subscriptions.ensure_record(user_id)

    # Handlers ---------------------------------------------------------

    async def _handle_subscription_upsert(self, event: BillingEvent) -> ReconcileOutcome:
        sub = provider_subscription_from_payload(self._object(event))
        if await self.subscriptions.is_terminated(sub.id):
            logger.info("webhook_subscription_terminated", subscription_id=sub.id, event_id=event.id)
            return ReconcileOutcome.TERMINATED

        record = await self._locate(sub)
        if self._is_stale(record, event.created):
            logger.info("webhook_event_stale", subscription_id=sub.id, event_id=event.id)
            return ReconcileOutcome.STALE

        tier = self.catalog.tier_for(sub.price_id)
        record.provider_subscription_id = sub.id
        record.provider_customer_id = sub.customer or record.provider_customer_id
        record.provider_price_id = sub.price_id
        record.tier = tier
        record.status = normalize_status(sub.status)
        record.current_period_start = to_storage(sub.current_period_start)
        record.current_period_end = to_storage(sub.current_period_end)
        record.trial_end = to_storage(sub.trial_end)
        record.cancel_at_period_end = sub.cancel_at_period_end
        if record.status != "canceled":
            record.canceled_at = None
        record.pending_confirmation = False
        record.provider_event_at = to_storage(event.created)
        record.updated_at = to_storage(utc_now())
        logger.info(
            "subscription_synced",
            user_id=record.user_id,
            subscription_id=sub.id,
            tier=tier,
            status=record.status,
        )
        return ReconcileOutcome.APPLIED

    async def _handle_subscription_deleted(self, event: BillingEvent) -> ReconcileOutcome:
        sub = provider_subscription_from_payload(self._object(event))
        record = await self.subscriptions.get_by_provider_subscription(sub.id, for_update=True)
        await self._tombstone(sub.id, record.user_id if record else None)
        if record is None:
            logger.info("webhook_subscription_unmatched", subscription_id=sub.id, event_id=event.id)
            return ReconcileOutcome.UNMATCHED

        now = to_storage(utc_now())
        record.status = "canceled"
        record.tier = self.catalog.lowest().id
        record.provider_subscription_id = None
        record.provider_price_id = None
        record.cancel_at_period_end = False
        record.canceled_at = record.canceled_at or now
        record.pending_confirmation = False
        record.provider_event_at = max(
            filter(None, (record.provider_event_at, to_storage(event.created)))
        )
        record.updated_at = now
        logger.info("subscription_canceled", user_id=record.user_id, subscription_id=sub.id)
        return ReconcileOutcome.APPLIED

    async def _handle_payment_succeeded(self, event: BillingEvent) -> ReconcileOutcome:
        return await self._set_payment_status(event, "active")

    async def _handle_payment_failed(self, event: BillingEvent) -> ReconcileOutcome:
        return await self._set_payment_status(event, "past_due")

    async def _set_payment_status(self, event: BillingEvent, status: str) -> ReconcileOutcome:
        subscription_id = _invoice_subscription_id(self._object(event))
        if subscription_id is None:
            return ReconcileOutcome.IGNORED
        if await self.subscriptions.is_terminated(subscription_id):
            return ReconcileOutcome.TERMINATED

        record = await self.subscriptions.get_by_provider_subscription(subscription_id, for_update=True)
        if record is None:
            logger.warning(
                "webhook_payment_unmatched", subscription_id=subscription_id, event_id=event.id
            )
            return ReconcileOutcome.UNMATCHED
        if self._is_stale(record, event.created):
            return ReconcileOutcome.STALE

        record.status = status
        record.provider_event_at = to_storage(event.created)
        record.updated_at = to_storage(utc_now())
        logger.info(
            "subscription_payment_status",
            user_id=record.user_id,
            subscription_id=subscription_id,
            status=status,
        )
        return ReconcileOutcome.APPLIED

    # Internal helpers -------------------------------------------------

    async def _locate(self, sub: ProviderSubscription) -> SubscriptionRecord:
        """Find the record for a provider subscription, creating or linking it.

        Lookup order: provider subscription id, the user id stamped into the
        subscription metadata at checkout, then the provider customer id.
        """

        user_id = sub.metadata.get("user_id") or sub.metadata.get("userId")
        record = await self.subscriptions.get_by_provider_subscription(sub.id, for_update=True)
        if record is not None:
            if record.user_id is None and user_id:
                record = await self._link(record, user_id)
            return record

        if user_id:
            record = await self.subscriptions.get_by_user(user_id, for_update=True)
        if record is None and sub.customer:
            record = await self.subscriptions.get_by_customer(sub.customer, for_update=True)
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
        if user_id is None:
            logger.info("subscription_record_unlinked", subscription_id=sub.id)
        return record

    async def _link(self, orphan: SubscriptionRecord, user_id: str) -> SubscriptionRecord:
        """Attach an unlinked record to its user, folding it into an existing row."""

        existing = await self.subscriptions.get_by_user(user_id, for_update=True)
        if existing is None:
            orphan.user_id = user_id
            logger.info(
                "subscription_record_linked",
                user_id=user_id,
                subscription_id=orphan.provider_subscription_id,
            )
            return orphan

        existing.provider_customer_id = orphan.provider_customer_id or existing.provider_customer_id
        existing.provider_event_at = orphan.provider_event_at
        orphan.provider_subscription_id = None
        orphan.status = "canceled"
        await self.subscriptions.flush()
        logger.info("subscription_record_merged", user_id=user_id, orphan_id=orphan.id)
        return existing

    async def _tombstone(self, subscription_id: str, user_id: str | None) -> None:
        if await self.subscriptions.is_terminated(subscription_id):
            return
        self.session.add(
            TerminatedSubscription(
                provider_subscription_id=subscription_id,
                user_id=user_id,
                terminated_at=to_storage(utc_now()),
            )
        )

    async def _already_processed(self, event_id: str) -> bool:
        stmt = select(BillingEventLog.id).where(BillingEventLog.event_id == event_id)
        result = await bounded(self.session.execute(stmt), timeout=self.timeout, store="event_log")
        return result.scalar_one_or_none() is not None

    @staticmethod
    def _is_stale(record: SubscriptionRecord, created: datetime) -> bool:
        applied = record.provider_event_at
        return applied is not None and to_storage(created) < applied

    @staticmethod
    def _object(event: BillingEvent) -> dict[str, Any]:
        obj = event.data.get("object")
        if not isinstance(obj, dict) or not obj.get("id"):
            raise ValidationError(f"Event {event.id} carries no object.")
        return obj

    @staticmethod
    def _subscription_id_of(event: BillingEvent) -> str | None:
        obj = event.data.get("object") or {}
        if event.type.startswith("customer.subscription."):
            return obj.get("id")
        return _invoice_subscription_id(obj)


__all__ = [
    "BillingEventReconciler",
    "PAYMENT_FAILED",
    "PAYMENT_SUCCEEDED",
    "SUBSCRIPTION_CREATED",
    "SUBSCRIPTION_DELETED",
    "SUBSCRIPTION_UPDATED",
    "normalize_status",
]
