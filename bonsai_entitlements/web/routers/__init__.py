from fastapi import APIRouter

from bonsai_entitlements.web.routers import admin, checkout, health, subscription, webhooks


def setup_routers() -> APIRouter:
    router = APIRouter()
    router.include_router(health.router)
    router.include_router(webhooks.router)
    router.include_router(subscription.router)
    router.include_router(checkout.router)
    router.include_router(admin.router)
    return router


__all__ = ["setup_routers"]
