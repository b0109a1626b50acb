"""Shared pytest fixtures for database-backed service tests."""

from __future__ import annotations

import hashlib
import hmac
import json
import time

import pytest
import pytest_asyncio
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from bonsai_entitlements.config import EngineSettings, StripeSettings
from bonsai_entitlements.db.base import Base
from bonsai_entitlements.services.catalog import TierCatalog

WEBHOOK_SECRET = "whsec_test_secret"
PRICE_IDS = {"basic": "price_basic", "pro": "price_pro", "enterprise": "price_enterprise"}


class _AsyncSessionWrapper:
    def __init__(self, sync_session) -> None:
        self._sync = sync_session
        self.bind = sync_session.bind

    async def execute(self, *args, **kwargs):
        return self._sync.execute(*args, **kwargs)

    async def get(self, *args, **kwargs):
        return self._sync.get(*args, **kwargs)

    def add(self, obj) -> None:
        self._sync.add(obj)

    def add_all(self, objs) -> None:
        self._sync.add_all(objs)

    async def flush(self) -> None:
        self._sync.flush()

    async def commit(self) -> None:
        self._sync.commit()

    async def rollback(self) -> None:
        self._sync.rollback()

    async def close(self) -> None:
        self._sync.close()


@pytest_asyncio.fixture
async def session():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)
    sync_session = SessionLocal()
    try:
        yield _AsyncSessionWrapper(sync_session)
    finally:
        sync_session.close()
        engine.dispose()


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(
        admin_user_ids=["admin-1"],
        stripe=StripeSettings(
            secret_key="sk_test_123",
            webhook_secret=WEBHOOK_SECRET,
            basic_price_id=PRICE_IDS["basic"],
            pro_price_id=PRICE_IDS["pro"],
            enterprise_price_id=PRICE_IDS["enterprise"],
            max_attempts=1,
        ),
    )


@pytest.fixture
def catalog(settings) -> TierCatalog:
    return TierCatalog.from_settings(settings)


@pytest.fixture
def sign_webhook():
    """Build a payload plus a valid ``Stripe-Signature`` header for it."""

    def _sign(event: dict, secret: str = WEBHOOK_SECRET, timestamp: int | None = None):
        payload = json.dumps(event)
        timestamp = int(time.time()) if timestamp is None else timestamp
        signed = f"{timestamp}.{payload}".encode("utf-8")
        digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
        return payload, f"t={timestamp},v1={digest}"

    return _sign


@pytest.fixture
def make_event():
    """Provider event factory with subscription or invoice objects."""

    counter = {"value": 0}

    def _event(event_type: str, obj: dict, created: int, event_id: str | None = None) -> dict:
        counter["value"] += 1
        return {
            "id": event_id or f"evt_{counter['value']}",
            "type": event_type,
            "created": created,
            "data": {"object": obj},
        }

    return _event


def subscription_object(
    subscription_id: str = "sub_1",
    *,
    price_id: str = "price_pro",
    status: str = "active",
    customer: str = "cus_1",
    user_id: str | None = "user-1",
    cancel_at_period_end: bool = False,
    period_start: int = 1_760_000_000,
    period_end: int = 1_762_592_000,
) -> dict:
    return {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "current_period_start": period_start,
        "current_period_end": period_end,
        "trial_end": None,
        "metadata": {"user_id": user_id} if user_id else {},
        "items": {"data": [{"id": "si_1", "price": {"id": price_id}}]},
    }


@pytest.fixture
def subscription_payload():
    return subscription_object
