"""Timeout and error translation for store calls."""

from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

from sqlalchemy.exc import DBAPIError

from bonsai_entitlements.logging import logger
from bonsai_entitlements.services.exceptions import UpstreamUnavailable

T = TypeVar("T")


async def bounded(operation: Awaitable[T], *, timeout: float, store: str = "store") -> T:
    """Await a store operation, mapping timeouts and driver errors to UpstreamUnavailable."""

    try:
        return await asyncio.wait_for(operation, timeout=timeout)
    except asyncio.TimeoutError as exc:
        logger.warning("store_timeout", store=store, timeout=timeout)
        raise UpstreamUnavailable(f"{store} timed out.") from exc
    except DBAPIError as exc:
        logger.warning("store_unavailable", store=store, error=str(exc))
        raise UpstreamUnavailable(f"{store} unavailable.") from exc


__all__ = ["bounded"]
