"""Subscription commands issued by the user."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from bonsai_entitlements.db.models.core import SubscriptionRecord
from bonsai_entitlements.domain.models import CheckoutSession, PortalSession, ProviderSubscription
from bonsai_entitlements.services.commands import SubscriptionCommandDispatcher
from bonsai_entitlements.services.exceptions import (
    BillingProviderError,
    SubscriptionNotFound,
    UpstreamUnavailable,
    ValidationError,
)

PERIOD_START = datetime(2026, 6, 1, tzinfo=timezone.utc)
PERIOD_END = datetime(2026, 7, 1, tzinfo=timezone.utc)


class FakeProvider:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[tuple] = []

    def _maybe_fail(self) -> None:
        if self.error is not None:
            raise self.error

    async def change_price(self, subscription_id, price_id, *, idempotency_key):
        self.calls.append(("change_price", subscription_id, price_id, idempotency_key))
        self._maybe_fail()
        return ProviderSubscription(
            id=subscription_id,
            price_id=price_id,
            current_period_start=PERIOD_START,
            current_period_end=PERIOD_END,
        )

    async def cancel(self, subscription_id, *, idempotency_key):
        self.calls.append(("cancel", subscription_id))
        self._maybe_fail()
        return ProviderSubscription(id=subscription_id, status="canceled")

    async def set_cancel_at_period_end(self, subscription_id, value, *, idempotency_key):
        self.calls.append(("set_cancel_at_period_end", subscription_id, value))
        self._maybe_fail()
        return ProviderSubscription(id=subscription_id, cancel_at_period_end=value)

    async def create_customer(self, user_id, email, *, idempotency_key):
        self.calls.append(("create_customer", user_id, email))
        self._maybe_fail()
        return "cus_new"

    async def create_checkout_session(self, **kwargs):
        self.calls.append(("create_checkout_session", kwargs))
        self._maybe_fail()
        return CheckoutSession(
            session_id="cs_1",
            url="https://checkout.stripe.com/c/cs_1",
            customer_id=kwargs["customer_id"],
        )

    async def create_portal_session(self, *, customer_id, return_url):
        self.calls.append(("create_portal_session", customer_id, return_url))
        self._maybe_fail()
        return PortalSession(url=f"https://billing.stripe.com/p/{customer_id}", customer_id=customer_id)


async def _subscribed(session, tier="basic", **fields):
    record = SubscriptionRecord(
        user_id="user-1",
        tier=tier,
        status=fields.pop("status", "active"),
        provider_subscription_id="sub_1",
        provider_customer_id="cus_1",
        provider_price_id=f"price_{tier}",
        **fields,
    )
    session.add(record)
    await session.flush()
    return record


@pytest.mark.asyncio
async def test_upgrade_writes_optimistically_with_pending_flag(session, catalog, settings):
    record = await _subscribed(session)
    provider = FakeProvider()
    dispatcher = SubscriptionCommandDispatcher(session, catalog, provider, settings)

    view = await dispatcher.upgrade("user-1", "pro", "price_pro")

    assert view.tier == "pro"
    assert view.pending_confirmation is True
    assert view.current_period_end == PERIOD_END
    assert record.provider_price_id == "price_pro"
    name, subscription_id, price_id, key = provider.calls[0]
    assert (name, subscription_id, price_id) == ("change_price", "sub_1", "price_pro")
    assert key.startswith("upgrade:user-1:")


@pytest.mark.asyncio
async def test_provider_failure_leaves_record_untouched(session, catalog, settings):
    record = await _subscribed(session)
    provider = FakeProvider(BillingProviderError("Your card was declined.", code="card_declined"))
    dispatcher = SubscriptionCommandDispatcher(session, catalog, provider, settings)

    with pytest.raises(BillingProviderError):
        await dispatcher.upgrade("user-1", "pro", "price_pro")

    assert record.tier == "basic"
    assert record.provider_price_id == "price_basic"
    assert record.pending_confirmation is False


@pytest.mark.asyncio
async def test_provider_outage_surfaces_as_unavailable(session, catalog, settings):
    await _subscribed(session)
    dispatcher = SubscriptionCommandDispatcher(
        session, catalog, FakeProvider(UpstreamUnavailable("down")), settings
    )
    with pytest.raises(UpstreamUnavailable):
        await dispatcher.cancel("user-1", at_period_end=False)


@pytest.mark.asyncio
async def test_direction_must_match_tier_order(session, catalog, settings):
    await _subscribed(session, tier="pro")
    dispatcher = SubscriptionCommandDispatcher(session, catalog, FakeProvider(), settings)

    with pytest.raises(ValidationError):
        await dispatcher.upgrade("user-1", "basic", "price_basic")
    view = await dispatcher.downgrade("user-1", "basic", "price_basic")
    assert view.tier == "basic"


@pytest.mark.asyncio
async def test_price_must_belong_to_target_tier(session, catalog, settings):
    await _subscribed(session)
    dispatcher = SubscriptionCommandDispatcher(session, catalog, FakeProvider(), settings)

    with pytest.raises(ValidationError):
        await dispatcher.upgrade("user-1", "pro", "price_enterprise")
    with pytest.raises(ValidationError):
        await dispatcher.upgrade("user-1", "platinum", "price_pro")


@pytest.mark.asyncio
async def test_free_tier_cannot_be_bought(session, catalog, settings):
    await _subscribed(session)
    dispatcher = SubscriptionCommandDispatcher(session, catalog, FakeProvider(), settings)
    with pytest.raises(ValidationError):
        await dispatcher.downgrade("user-1", "free", "price_basic")


@pytest.mark.asyncio
async def test_commands_require_linked_subscription(session, catalog, settings):
    session.add(SubscriptionRecord(user_id="user-1", tier="free", status="active"))
    await session.flush()
    dispatcher = SubscriptionCommandDispatcher(session, catalog, FakeProvider(), settings)

    with pytest.raises(SubscriptionNotFound):
        await dispatcher.upgrade("user-1", "pro", "price_pro")
    with pytest.raises(SubscriptionNotFound):
        await dispatcher.cancel("someone-else")


@pytest.mark.asyncio
async def test_cancel_at_period_end_then_reactivate(session, catalog, settings):
    record = await _subscribed(session)
    provider = FakeProvider()
    dispatcher = SubscriptionCommandDispatcher(session, catalog, provider, settings)

    view = await dispatcher.cancel("user-1", at_period_end=True)
    assert view.cancel_at_period_end is True
    assert view.status == "active"

    view = await dispatcher.reactivate("user-1")
    assert view.cancel_at_period_end is False
    assert record.pending_confirmation is True
    assert [call[2] for call in provider.calls] == [True, False]


@pytest.mark.asyncio
async def test_immediate_cancel_marks_canceled(session, catalog, settings):
    await _subscribed(session)
    dispatcher = SubscriptionCommandDispatcher(session, catalog, FakeProvider(), settings)

    view = await dispatcher.cancel("user-1", at_period_end=False)

    assert view.status == "canceled"
    assert view.canceled_at is not None
    with pytest.raises(SubscriptionNotFound):
        await dispatcher.reactivate("user-1")


@pytest.mark.asyncio
async def test_reactivate_requires_scheduled_cancellation(session, catalog, settings):
    await _subscribed(session)
    dispatcher = SubscriptionCommandDispatcher(session, catalog, FakeProvider(), settings)
    with pytest.raises(ValidationError):
        await dispatcher.reactivate("user-1")


@pytest.mark.asyncio
async def test_start_checkout_creates_customer_once(session, catalog, settings):
    provider = FakeProvider()
    dispatcher = SubscriptionCommandDispatcher(session, catalog, provider, settings)

    checkout = await dispatcher.start_checkout(
        "user-2", "basic", "https://app/success", "https://app/cancel", email="a@b.c"
    )
    await dispatcher.start_checkout("user-2", "pro", "https://app/success", "https://app/cancel")

    assert checkout.session_id == "cs_1"
    assert [call[0] for call in provider.calls] == [
        "create_customer",
        "create_checkout_session",
        "create_checkout_session",
    ]
    assert provider.calls[1][1]["price_id"] == "price_basic"
    assert provider.calls[2][1]["customer_id"] == "cus_new"
    record = await dispatcher.subscriptions.get_by_user("user-2")
    assert record.tier == "free"
    assert record.provider_customer_id == "cus_new"


@pytest.mark.asyncio
async def test_start_checkout_rejects_existing_subscription(session, catalog, settings):
    await _subscribed(session)
    dispatcher = SubscriptionCommandDispatcher(session, catalog, FakeProvider(), settings)
    with pytest.raises(ValidationError):
        await dispatcher.start_checkout("user-1", "pro", "https://app/s", "https://app/c")


@pytest.mark.asyncio
async def test_portal_needs_a_provider_customer(session, catalog, settings):
    provider = FakeProvider()
    dispatcher = SubscriptionCommandDispatcher(session, catalog, provider, settings)

    with pytest.raises(SubscriptionNotFound):
        await dispatcher.open_portal("user-1")
    assert provider.calls == []

    await _subscribed(session)
    portal = await dispatcher.open_portal("user-1")

    assert portal.url == "https://billing.stripe.com/p/cus_1"
    assert provider.calls == [
        ("create_portal_session", "cus_1", settings.stripe.portal_return_url)
    ]


@pytest.mark.asyncio
async def test_portal_uses_caller_return_url(session, catalog, settings):
    await _subscribed(session, status="canceled")
    provider = FakeProvider()
    dispatcher = SubscriptionCommandDispatcher(session, catalog, provider, settings)

    await dispatcher.open_portal("user-1", "https://app/billing")

    assert provider.calls[-1] == ("create_portal_session", "cus_1", "https://app/billing")
