"""Request-scoped dependencies: store session, caller identity, services and gates."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Callable

import structlog
from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from bonsai_entitlements.config import EngineSettings
from bonsai_entitlements.db.session import Database
from bonsai_entitlements.domain.models import FeatureDecision, QuotaDecision, TierDecision
from bonsai_entitlements.services.catalog import TierCatalog
from bonsai_entitlements.services.commands import BillingProvider, SubscriptionCommandDispatcher
from bonsai_entitlements.services.entitlement_resolver import EntitlementResolver
from bonsai_entitlements.services.feature_gate import FeatureGate
from bonsai_entitlements.services.reconciler import BillingEventReconciler
from bonsai_entitlements.services.subscriptions import require_user_id
from bonsai_entitlements.services.usage_ledger import UsageLedger
from bonsai_entitlements.utils.store import bounded


async def get_session(request: Request) -> AsyncIterator[AsyncSession]:
    database: Database = request.app.state.database
    async with database.session() as session:
        yield session


async def commit(session: AsyncSession, settings: EngineSettings) -> None:
    await bounded(
        session.commit(),
        timeout=settings.database.statement_timeout_seconds,
        store="commit",
    )


def get_app_settings(request: Request) -> EngineSettings:
    return request.app.state.settings


def get_catalog(request: Request) -> TierCatalog:
    return request.app.state.catalog


def get_billing_provider(request: Request) -> BillingProvider:
    return request.app.state.billing_provider


async def current_user_id(
    request: Request, settings: EngineSettings = Depends(get_app_settings)
) -> str:
    """Identity is asserted by the upstream auth layer via a trusted header."""

    user_id = require_user_id(request.headers.get(settings.user_id_header))
    structlog.contextvars.bind_contextvars(user_id=user_id)
    return user_id


async def require_admin(
    user_id: str = Depends(current_user_id),
    settings: EngineSettings = Depends(get_app_settings),
) -> str:
    if user_id not in settings.admin_user_ids:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user_id


def get_ledger(
    session: AsyncSession = Depends(get_session),
    catalog: TierCatalog = Depends(get_catalog),
    settings: EngineSettings = Depends(get_app_settings),
) -> UsageLedger:
    return UsageLedger(session, catalog, settings)


def get_resolver(
    session: AsyncSession = Depends(get_session),
    catalog: TierCatalog = Depends(get_catalog),
    settings: EngineSettings = Depends(get_app_settings),
    ledger: UsageLedger = Depends(get_ledger),
) -> EntitlementResolver:
    return EntitlementResolver(session, catalog, settings, ledger=ledger)


def get_gate(
    session: AsyncSession = Depends(get_session),
    catalog: TierCatalog = Depends(get_catalog),
    settings: EngineSettings = Depends(get_app_settings),
    resolver: EntitlementResolver = Depends(get_resolver),
) -> FeatureGate:
    return FeatureGate(session, catalog, settings, resolver=resolver)


def get_reconciler(
    session: AsyncSession = Depends(get_session),
    catalog: TierCatalog = Depends(get_catalog),
    settings: EngineSettings = Depends(get_app_settings),
) -> BillingEventReconciler:
    return BillingEventReconciler(session, catalog, settings)


def get_dispatcher(
    session: AsyncSession = Depends(get_session),
    catalog: TierCatalog = Depends(get_catalog),
    provider: BillingProvider = Depends(get_billing_provider),
    settings: EngineSettings = Depends(get_app_settings),
) -> SubscriptionCommandDispatcher:
    return SubscriptionCommandDispatcher(session, catalog, provider, settings)


def require_feature(feature: str) -> Callable:
    """Dependency factory guarding a route behind a feature flag."""

    async def check_feature(
        user_id: str = Depends(current_user_id),
        gate: FeatureGate = Depends(get_gate),
    ) -> FeatureDecision:
        decision = await gate.check_feature(user_id, feature)
        if not decision.allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=decision.model_dump(mode="json"),
            )
        return decision

    return check_feature


def consume_quota(quota_type: str, amount: int = 1) -> Callable:
    """Dependency factory charging one unit of a quota before the route runs.

    The increment is committed before the protected handler executes.
    """

    async def check_quota(
        user_id: str = Depends(current_user_id),
        gate: FeatureGate = Depends(get_gate),
        session: AsyncSession = Depends(get_session),
        settings: EngineSettings = Depends(get_app_settings),
    ) -> QuotaDecision:
        decision = await gate.check_and_consume(user_id, quota_type, amount)
        if not decision.allowed:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail=decision.model_dump(mode="json"),
            )
        await commit(session, settings)
        return decision

    return check_quota


def require_tier(tier: str) -> Callable:
    async def check_tier(
        user_id: str = Depends(current_user_id),
        gate: FeatureGate = Depends(get_gate),
    ) -> TierDecision:
        decision = await gate.check_tier(user_id, tier)
        if not decision.allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=decision.model_dump(mode="json"),
            )
        return decision

    return check_tier


__all__ = [
    "commit",
    "consume_quota",
    "current_user_id",
    "get_app_settings",
    "get_billing_provider",
    "get_catalog",
    "get_dispatcher",
    "get_gate",
    "get_ledger",
    "get_reconciler",
    "get_resolver",
    "get_session",
    "require_admin",
    "require_feature",
    "require_tier",
]
