"""Stripe adapter for subscription mutations.

The Stripe SDK is synchronous; every call runs in a worker thread under a
hard timeout and is retried only for connection-level failures, always with
the same idempotency key so a retried mutation is applied once.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from functools import partial
from typing import Any, Callable, TypeVar

import stripe

from bonsai_entitlements.config import EngineSettings, get_settings
from bonsai_entitlements.domain.models import CheckoutSession, PortalSession, ProviderSubscription
from bonsai_entitlements.logging import logger
from bonsai_entitlements.services.exceptions import BillingProviderError, UpstreamUnavailable
from bonsai_entitlements.utils.datetime import from_timestamp
from bonsai_entitlements.utils.retry import retry_async

T = TypeVar("T")

_TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, asyncio.TimeoutError)


def _get(obj: Any, key: str, default: Any = None) -> Any:
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError, AttributeError):
        return default
    return default if value is None else value


def provider_subscription_from_payload(payload: Mapping[str, Any] | Any) -> ProviderSubscription:
    """Pull the fields the engine needs out of a subscription object.

    Newer API versions moved the billing period onto subscription items, so
    the first item is consulted when the top-level fields are absent.
    """

    items = _get(_get(payload, "items"), "data", [])
    first_item = items[0] if items else None
    price_id = _get(_get(first_item, "price"), "id") or _get(_get(first_item, "plan"), "id")
    period_start = _get(payload, "current_period_start") or _get(first_item, "current_period_start")
    period_end = _get(payload, "current_period_end") or _get(first_item, "current_period_end")
    metadata = _get(payload, "metadata", {}) or {}
    return ProviderSubscription(
        id=_get(payload, "id"),
        customer=_get(payload, "customer"),
        status=_get(payload, "status", "active"),
        price_id=price_id,
        item_id=_get(first_item, "id"),
        current_period_start=from_timestamp(period_start),
        current_period_end=from_timestamp(period_end),
        trial_end=from_timestamp(_get(payload, "trial_end")),
        cancel_at_period_end=bool(_get(payload, "cancel_at_period_end", False)),
        metadata={str(key): str(value) for key, value in dict(metadata).items()},
    )


class StripeBillingProvider:
    def __init__(self, settings: EngineSettings | None = None) -> None:
        self.settings = settings or get_settings()
        cfg = self.settings.stripe
        self.timeout = cfg.request_timeout_seconds
        self.max_attempts = cfg.max_attempts
        self._api_key = cfg.secret_key.get_secret_value() if cfg.secret_key else None

    async def retrieve(self, subscription_id: str) -> ProviderSubscription:
        obj = await self._call(
            "retrieve_subscription",
            partial(stripe.Subscription.retrieve, subscription_id),
        )
        return provider_subscription_from_payload(obj)

    async def change_price(
        self, subscription_id: str, price_id: str, *, idempotency_key: str
    ) -> ProviderSubscription:
        current = await self.retrieve(subscription_id)
        obj = await self._call(
            "change_price",
            partial(
                stripe.Subscription.modify,
                subscription_id,
                items=[{"id": current.item_id, "price": price_id}],
                proration_behavior="create_prorations",
                idempotency_key=idempotency_key,
            ),
        )
        return provider_subscription_from_payload(obj)

    async def cancel(self, subscription_id: str, *, idempotency_key: str) -> ProviderSubscription:
        obj = await self._call(
            "cancel_subscription",
            partial(stripe.Subscription.cancel, subscription_id, idempotency_key=idempotency_key),
        )
        return provider_subscription_from_payload(obj)

    async def set_cancel_at_period_end(
        self, subscription_id: str, value: bool, *, idempotency_key: str
    ) -> ProviderSubscription:
        obj = await self._call(
            "set_cancel_at_period_end",
            partial(
                stripe.Subscription.modify,
                subscription_id,
                cancel_at_period_end=value,
                idempotency_key=idempotency_key,
            ),
        )
        return provider_subscription_from_payload(obj)

    async def create_customer(
        self, user_id: str, email: str | None, *, idempotency_key: str
    ) -> str:
        obj = await self._call(
            "create_customer",
            partial(
                stripe.Customer.create,
                email=email,
                metadata={"user_id": user_id},
                idempotency_key=idempotency_key,
            ),
        )
        return str(_get(obj, "id"))

    async def create_checkout_session(
        self,
        *,
        user_id: str,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        idempotency_key: str,
    ) -> CheckoutSession:
        subscription_data: dict[str, Any] = {"metadata": {"user_id": user_id}}
        if self.settings.stripe.trial_period_days:
            subscription_data["trial_period_days"] = self.settings.stripe.trial_period_days
        obj = await self._call(
            "create_checkout_session",
            partial(
                stripe.checkout.Session.create,
                customer=customer_id,
                mode="subscription",
                line_items=[{"price": price_id, "quantity": 1}],
                success_url=success_url,
                cancel_url=cancel_url,
                metadata={"user_id": user_id},
                subscription_data=subscription_data,
                allow_promotion_codes=True,
                idempotency_key=idempotency_key,
            ),
        )
        return CheckoutSession(
            session_id=str(_get(obj, "id")),
            url=_get(obj, "url"),
            customer_id=customer_id,
        )

    async def create_portal_session(self, *, customer_id: str, return_url: str) -> PortalSession:
        obj = await self._call(
            "create_portal_session",
            partial(
                stripe.billing_portal.Session.create,
                customer=customer_id,
                return_url=return_url,
            ),
        )
        return PortalSession(url=str(_get(obj, "url")), customer_id=customer_id)

    # Internal helpers -------------------------------------------------

    async def _call(self, operation_name: str, func: Callable[..., T]) -> T:
        if self._api_key is None:
            raise UpstreamUnavailable("Billing provider is not configured.")
        bound = partial(func, api_key=self._api_key)

        async def attempt() -> T:
            return await asyncio.wait_for(asyncio.to_thread(bound), timeout=self.timeout)

        try:
            return await retry_async(
                attempt,
                max_attempts=self.max_attempts,
                retry_on=_TRANSIENT_ERRORS,
                logger=logger,
                operation_name=operation_name,
            )
        except _TRANSIENT_ERRORS as exc:
            logger.warning("billing_provider_unavailable", operation=operation_name, error=str(exc))
            raise UpstreamUnavailable(f"Billing provider unavailable during {operation_name}.") from exc
        except stripe.StripeError as exc:
            message = exc.user_message or str(exc)
            logger.warning(
                "billing_provider_rejected",
                operation=operation_name,
                code=exc.code,
                error=message,
            )
            raise BillingProviderError(message, code=exc.code) from exc


__all__ = ["StripeBillingProvider", "provider_subscription_from_payload"]
