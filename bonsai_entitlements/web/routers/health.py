"""Liveness and store readiness probes."""

from __future__ import annotations

from fastapi import APIRouter, Request

from bonsai_entitlements.db.session import Database

router = APIRouter(tags=["health"])


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz")
async def readyz(request: Request) -> dict[str, str]:
    database: Database = request.app.state.database
    await database.ping()
    return {"status": "ready"}
