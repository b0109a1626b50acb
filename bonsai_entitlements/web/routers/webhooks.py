"""Billing provider webhook intake."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from bonsai_entitlements.config import EngineSettings
from bonsai_entitlements.services.reconciler import BillingEventReconciler
from bonsai_entitlements.web.dependencies import (
    commit,
    get_app_settings,
    get_reconciler,
    get_session,
)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def handle_stripe_webhook(
    request: Request,
    session: AsyncSession = Depends(get_session),
    reconciler: BillingEventReconciler = Depends(get_reconciler),
    settings: EngineSettings = Depends(get_app_settings),
) -> dict[str, object]:
    """Verify, then fold the event into the subscription store.

    A bad signature is rejected before anything is read or written. Unknown
    event types are acknowledged so the provider stops redelivering them.
    """

    payload = await request.body()
    event = reconciler.verify(payload, request.headers.get("stripe-signature"))
    outcome = await reconciler.apply(event)
    await commit(session, settings)
    return {"received": True, "outcome": outcome.value}
