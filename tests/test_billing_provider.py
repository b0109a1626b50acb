"""Stripe adapter behaviour with the SDK patched out."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
import stripe

from bonsai_entitlements.config import EngineSettings, StripeSettings
from bonsai_entitlements.services.billing_provider import (
    StripeBillingProvider,
    provider_subscription_from_payload,
)
from bonsai_entitlements.services.exceptions import BillingProviderError, UpstreamUnavailable


def _subscription(**overrides):
    payload = {
        "id": "sub_1",
        "customer": "cus_1",
        "status": "active",
        "cancel_at_period_end": False,
        "metadata": {"user_id": "user-1"},
        "items": {
            "data": [
                {
                    "id": "si_1",
                    "price": {"id": "price_basic"},
                    "current_period_start": 1_760_000_000,
                    "current_period_end": 1_762_592_000,
                }
            ]
        },
    }
    payload.update(overrides)
    return payload


def test_payload_parsing_reads_item_level_periods():
    sub = provider_subscription_from_payload(_subscription())

    assert sub.price_id == "price_basic"
    assert sub.item_id == "si_1"
    assert sub.metadata == {"user_id": "user-1"}
    assert sub.current_period_start == datetime(2025, 10, 9, 8, 53, 20, tzinfo=timezone.utc)
    assert sub.trial_end is None


def test_payload_parsing_falls_back_to_plan():
    payload = _subscription(items={"data": [{"id": "si_2", "plan": {"id": "price_old"}}]})
    assert provider_subscription_from_payload(payload).price_id == "price_old"


@pytest.mark.asyncio
async def test_change_price_swaps_the_subscription_item(monkeypatch, settings):
    calls = {}

    def fake_retrieve(subscription_id, **kwargs):
        calls["retrieve"] = (subscription_id, kwargs)
        return _subscription()

    def fake_modify(subscription_id, **kwargs):
        calls["modify"] = (subscription_id, kwargs)
        return _subscription(items={"data": [{"id": "si_1", "price": {"id": "price_pro"}}]})

    monkeypatch.setattr(stripe.Subscription, "retrieve", fake_retrieve)
    monkeypatch.setattr(stripe.Subscription, "modify", fake_modify)
    provider = StripeBillingProvider(settings)

    updated = await provider.change_price("sub_1", "price_pro", idempotency_key="upgrade:user-1:abc")

    assert updated.price_id == "price_pro"
    subscription_id, kwargs = calls["modify"]
    assert subscription_id == "sub_1"
    assert kwargs["items"] == [{"id": "si_1", "price": "price_pro"}]
    assert kwargs["proration_behavior"] == "create_prorations"
    assert kwargs["idempotency_key"] == "upgrade:user-1:abc"
    assert kwargs["api_key"] == "sk_test_123"


@pytest.mark.asyncio
async def test_checkout_session_carries_user_metadata_and_trial(monkeypatch, settings):
    captured = {}

    def fake_create(**kwargs):
        captured.update(kwargs)
        return {"id": "cs_1", "url": "https://checkout.stripe.com/c/cs_1"}

    monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)
    provider = StripeBillingProvider(settings)

    checkout = await provider.create_checkout_session(
        user_id="user-1",
        customer_id="cus_1",
        price_id="price_pro",
        success_url="https://app/ok",
        cancel_url="https://app/no",
        idempotency_key="checkout:user-1:abc",
    )

    assert checkout.session_id == "cs_1"
    assert captured["mode"] == "subscription"
    assert captured["subscription_data"] == {"metadata": {"user_id": "user-1"}, "trial_period_days": 7}


@pytest.mark.asyncio
async def test_card_errors_become_billing_provider_errors(monkeypatch, settings):
    def declined(subscription_id, **kwargs):
        raise stripe.CardError("Your card was declined.", param=None, code="card_declined")

    monkeypatch.setattr(stripe.Subscription, "cancel", declined)
    provider = StripeBillingProvider(settings)

    with pytest.raises(BillingProviderError) as excinfo:
        await provider.cancel("sub_1", idempotency_key="cancel:user-1:abc")

    assert excinfo.value.code == "card_declined"
    assert "declined" in str(excinfo.value)


@pytest.mark.asyncio
async def test_connection_errors_are_retried_then_surface_as_unavailable(monkeypatch):
    settings = EngineSettings(stripe=StripeSettings(secret_key="sk_test_123", max_attempts=2))
    attempts = []

    def flaky(subscription_id, **kwargs):
        attempts.append(kwargs["idempotency_key"])
        raise stripe.APIConnectionError("connection reset")

    async def no_sleep(delay):
        return None

    monkeypatch.setattr(stripe.Subscription, "cancel", flaky)
    monkeypatch.setattr("bonsai_entitlements.utils.retry.asyncio.sleep", no_sleep)
    provider = StripeBillingProvider(settings)

    with pytest.raises(UpstreamUnavailable):
        await provider.cancel("sub_1", idempotency_key="cancel:user-1:abc")

    assert attempts == ["cancel:user-1:abc", "cancel:user-1:abc"]


@pytest.mark.asyncio
async def test_missing_api_key_is_unavailable():
    provider = StripeBillingProvider(EngineSettings(stripe=StripeSettings()))
    with pytest.raises(UpstreamUnavailable):
        await provider.retrieve("sub_1")


@pytest.mark.asyncio
async def test_portal_session_returns_hosted_url(monkeypatch, settings):
    captured = {}

    def fake_create(**kwargs):
        captured.update(kwargs)
        return {"id": "bps_1", "url": "https://billing.stripe.com/p/session/bps_1"}

    monkeypatch.setattr(stripe.billing_portal.Session, "create", fake_create)
    provider = StripeBillingProvider(settings)

    portal = await provider.create_portal_session(customer_id="cus_1", return_url="https://app/settings")

    assert portal.url == "https://billing.stripe.com/p/session/bps_1"
    assert captured["customer"] == "cus_1"
    assert captured["return_url"] == "https://app/settings"
    assert captured["api_key"] == "sk_test_123"
