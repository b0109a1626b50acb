"""Administrative corrections."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from bonsai_entitlements.config import EngineSettings
from bonsai_entitlements.logging import logger
from bonsai_entitlements.services.usage_ledger import UsageLedger
from bonsai_entitlements.web.dependencies import (
    commit,
    get_app_settings,
    get_ledger,
    get_session,
    require_admin,
)

router = APIRouter(prefix="/admin", tags=["admin"])


class UsageResetRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId", min_length=1)
    quota_type: str = Field(alias="quotaType")


class UsageResetResponse(BaseModel):
    user_id: str
    quota_type: str
    period_start: datetime


@router.post("/usage/reset", response_model=UsageResetResponse)
async def reset_usage(
    body: UsageResetRequest,
    admin_id: str = Depends(require_admin),
    ledger: UsageLedger = Depends(get_ledger),
    session: AsyncSession = Depends(get_session),
    settings: EngineSettings = Depends(get_app_settings),
) -> UsageResetResponse:
    period_start = await ledger.reset_period(body.user_id, body.quota_type)
    await commit(session, settings)
    logger.info("admin_usage_reset", admin_id=admin_id, user_id=body.user_id, quota=body.quota_type)
    return UsageResetResponse(
        user_id=body.user_id,
        quota_type=body.quota_type,
        period_start=period_start,
    )


__all__ = ["router"]
