"""Entitlement queries and subscription management for the calling user."""

from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from bonsai_entitlements.config import EngineSettings
from bonsai_entitlements.domain.models import (
    EntitlementSnapshot,
    FeatureDecision,
    QuotaDecision,
    SubscriptionView,
)
from bonsai_entitlements.services.catalog import TierCatalog
from bonsai_entitlements.services.commands import SubscriptionCommandDispatcher
from bonsai_entitlements.services.entitlement_resolver import EntitlementResolver
from bonsai_entitlements.services.exceptions import ValidationError
from bonsai_entitlements.services.feature_gate import FeatureGate
from bonsai_entitlements.web.dependencies import (
    commit,
    current_user_id,
    get_app_settings,
    get_catalog,
    get_dispatcher,
    get_gate,
    get_resolver,
    get_session,
)

router = APIRouter(prefix="/subscription", tags=["subscription"])


class FeatureCheckRequest(BaseModel):
    feature: str


class LimitCheckRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    limit_type: str = Field(alias="limitType")
    amount: int = Field(default=1, ge=1)


class ManageSubscriptionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: Literal["upgrade", "downgrade", "cancel", "reactivate"]
    target_tier: str | None = Field(default=None, alias="targetTier")
    price_id: str | None = Field(default=None, alias="priceId")
    cancel_at_period_end: bool = Field(default=True, alias="cancelAtPeriodEnd")


@router.post(
    "/check-feature",
    response_model=FeatureDecision,
    responses={status.HTTP_403_FORBIDDEN: {"model": FeatureDecision}},
)
async def check_feature(
    body: FeatureCheckRequest,
    user_id: str = Depends(current_user_id),
    gate: FeatureGate = Depends(get_gate),
):
    decision = await gate.check_feature(user_id, body.feature)
    if not decision.allowed:
        return JSONResponse(
            status_code=status.HTTP_403_FORBIDDEN,
            content=decision.model_dump(mode="json"),
        )
    return decision


@router.post(
    "/check-limit",
    response_model=QuotaDecision,
    responses={status.HTTP_429_TOO_MANY_REQUESTS: {"model": QuotaDecision}},
)
async def check_limit(
    body: LimitCheckRequest,
    user_id: str = Depends(current_user_id),
    gate: FeatureGate = Depends(get_gate),
    session: AsyncSession = Depends(get_session),
    settings: EngineSettings = Depends(get_app_settings),
):
    decision = await gate.check_and_consume(user_id, body.limit_type, body.amount)
    await commit(session, settings)
    if not decision.allowed:
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content=decision.model_dump(mode="json"),
        )
    return decision


@router.get("/user-access", response_model=EntitlementSnapshot)
async def user_access(
    user_id: str = Depends(current_user_id),
    resolver: EntitlementResolver = Depends(get_resolver),
) -> EntitlementSnapshot:
    return await resolver.resolve(user_id)


@router.get("/status", response_model=SubscriptionView)
async def subscription_status(
    user_id: str = Depends(current_user_id),
    resolver: EntitlementResolver = Depends(get_resolver),
) -> SubscriptionView:
    record = await resolver.subscription(user_id)
    return resolver.subscriptions.to_view(record, user_id)


@router.post("/manage", response_model=SubscriptionView)
async def manage_subscription(
    body: ManageSubscriptionRequest,
    user_id: str = Depends(current_user_id),
    dispatcher: SubscriptionCommandDispatcher = Depends(get_dispatcher),
    catalog: TierCatalog = Depends(get_catalog),
    session: AsyncSession = Depends(get_session),
    settings: EngineSettings = Depends(get_app_settings),
) -> SubscriptionView:
    if body.action in ("upgrade", "downgrade"):
        if not body.target_tier:
            raise ValidationError("targetTier is required to change tiers.")
        price_id = body.price_id or catalog.get(body.target_tier).price_id
        view = await dispatcher.change_tier(user_id, body.target_tier, price_id, body.action)
    elif body.action == "cancel":
        view = await dispatcher.cancel(user_id, at_period_end=body.cancel_at_period_end)
    else:
        view = await dispatcher.reactivate(user_id)
    await commit(session, settings)
    return view


__all__ = ["router"]
