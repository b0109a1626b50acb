"""Hosted checkout and billing portal sessions."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from bonsai_entitlements.config import EngineSettings
from bonsai_entitlements.services.commands import SubscriptionCommandDispatcher
from bonsai_entitlements.web.dependencies import (
    commit,
    current_user_id,
    get_app_settings,
    get_dispatcher,
    get_session,
)

router = APIRouter(prefix="/subscriptions", tags=["subscription"])


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tier: str
    success_url: str = Field(alias="successUrl")
    cancel_url: str = Field(alias="cancelUrl")
    email: str | None = None


class CheckoutResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(serialization_alias="sessionId")
    url: str | None = None


class PortalRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    return_url: str | None = Field(default=None, alias="returnUrl")


class PortalResponse(BaseModel):
    url: str


@router.post("/checkout", response_model=CheckoutResponse, response_model_by_alias=True)
async def create_checkout(
    body: CheckoutRequest,
    user_id: str = Depends(current_user_id),
    dispatcher: SubscriptionCommandDispatcher = Depends(get_dispatcher),
    session: AsyncSession = Depends(get_session),
    settings: EngineSettings = Depends(get_app_settings),
) -> CheckoutResponse:
    checkout = await dispatcher.start_checkout(
        user_id,
        body.tier,
        success_url=body.success_url,
        cancel_url=body.cancel_url,
        email=body.email,
    )
    await commit(session, settings)
    return CheckoutResponse(session_id=checkout.session_id, url=checkout.url)


@router.post("/portal", response_model=PortalResponse)
async def create_portal(
    body: PortalRequest | None = None,
    user_id: str = Depends(current_user_id),
    dispatcher: SubscriptionCommandDispatcher = Depends(get_dispatcher),
) -> PortalResponse:
    portal = await dispatcher.open_portal(user_id, body.return_url if body else None)
    return PortalResponse(url=portal.url)


__all__ = ["router"]
