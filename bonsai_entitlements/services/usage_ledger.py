"""Per-user quota counters windowed on daily or monthly boundaries."""

from __future__ import annotations

from datetime import datetime, time, timedelta
from typing import Awaitable, TypeVar
from zoneinfo import ZoneInfo

from sqlalchemy import delete, insert, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from bonsai_entitlements.config import EngineSettings, get_settings
from bonsai_entitlements.db.models.core import UsageCounter
from bonsai_entitlements.domain.models import UNLIMITED, IncrementResult, Period
from bonsai_entitlements.logging import logger
from bonsai_entitlements.services.catalog import TierCatalog
from bonsai_entitlements.services.exceptions import ValidationError
from bonsai_entitlements.utils.datetime import to_storage, utc_now
from bonsai_entitlements.utils.store import bounded

T = TypeVar("T")

_COUNTER_KEY = ("user_id", "quota_type", "period_start")


def _month_start(year: int, month: int, tz: ZoneInfo) -> datetime:
    year += (month - 1) // 12
    month = (month - 1) % 12 + 1
    return datetime(year, month, 1, tzinfo=tz)


def period_bounds(period: Period, now: datetime, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """Return the [start, end) window containing ``now`` in local time."""

    local = now.astimezone(tz)
    if period == "monthly":
        start = _month_start(local.year, local.month, tz)
        end = _month_start(local.year, local.month + 1, tz)
        return start, end
    start = datetime.combine(local.date(), time(), tzinfo=tz)
    end = datetime.combine(local.date() + timedelta(days=1), time(), tzinfo=tz)
    return start, end


def shift_period(start: datetime, period: Period, periods: int) -> datetime:
    """Move a window start by a whole number of windows (negative goes back)."""

    tz = start.tzinfo
    if period == "monthly":
        return _month_start(start.year, start.month + periods, tz)
    return datetime.combine(start.date() + timedelta(days=periods), time(), tzinfo=tz)


class UsageLedger:
    def __init__(
        self,
        session: AsyncSession,
        catalog: TierCatalog,
        settings: EngineSettings | None = None,
    ) -> None:
        self.session = session
        self.catalog = catalog
        self.settings = settings or get_settings()
        self.tz = ZoneInfo(self.settings.usage.timezone)
        self.timeout = self.settings.database.statement_timeout_seconds

    def window(self, quota_type: str, now: datetime | None = None) -> tuple[datetime, datetime]:
        quota = self.catalog.quota(quota_type)
        return period_bounds(quota.period, now or utc_now(), self.tz)

    def period_start(self, quota_type: str, now: datetime | None = None) -> datetime:
        return self.window(quota_type, now)[0]

    def period_end(self, quota_type: str, now: datetime | None = None) -> datetime:
        """Exclusive end of the window, which is also when usage resets."""

        return self.window(quota_type, now)[1]

    async def get(
        self, user_id: str, quota_type: str, now: datetime | None = None
    ) -> tuple[int, datetime]:
        """Return ``(used, period_start)`` for the window containing ``now``."""

        period_start = self.period_start(quota_type, now)
        used = await self._bounded(self._read_used(user_id, quota_type, period_start))
        return used or 0, period_start

    async def try_increment(
        self,
        user_id: str,
        quota_type: str,
        amount: int,
        limit: int,
        now: datetime | None = None,
    ) -> IncrementResult:
        """Atomically add ``amount`` unless that would push usage past ``limit``.

        The limit check lives inside the UPDATE's WHERE clause, so two
        callers racing on the same counter cannot both pass it.
        """

        if amount < 1:
            raise ValidationError("Usage amount must be a positive integer.")
        period_start, reset_at = self.window(quota_type, now)
        return await self._bounded(
            self._increment(user_id, quota_type, amount, limit, period_start, reset_at)
        )

    async def reset_period(
        self, user_id: str, quota_type: str, now: datetime | None = None
    ) -> datetime:
        """Zero the current window's counter. Administrative correction only."""

        period_start, _ = self.window(quota_type, now)
        stmt = (
            update(UsageCounter)
            .where(*self._key_clause(user_id, quota_type, period_start))
            .values(used_count=0, updated_at=to_storage(utc_now()))
            .execution_options(synchronize_session=False)
        )
        await self._bounded(self.session.execute(stmt))
        logger.info(
            "usage_period_reset",
            user_id=user_id,
            quota=quota_type,
            period_start=period_start.isoformat(),
        )
        return period_start

    async def purge_expired(
        self, user_id: str, quota_type: str, period_start: datetime
    ) -> None:
        """Drop counters older than the retention horizon for one user/quota."""

        quota = self.catalog.quota(quota_type)
        cutoff = shift_period(period_start, quota.period, -self.settings.usage.retention_periods)
        stmt = delete(UsageCounter).where(
            UsageCounter.user_id == user_id,
            UsageCounter.quota_type == quota_type,
            UsageCounter.period_start < to_storage(cutoff),
        )
        await self.session.execute(stmt)

    # Internal helpers -------------------------------------------------

    async def _increment(
        self,
        user_id: str,
        quota_type: str,
        amount: int,
        limit: int,
        period_start: datetime,
        reset_at: datetime,
    ) -> IncrementResult:
        created = await self._ensure_counter(user_id, quota_type, period_start)
        if created:
            await self.purge_expired(user_id, quota_type, period_start)

        stmt = (
            update(UsageCounter)
            .where(*self._key_clause(user_id, quota_type, period_start))
            .values(
                used_count=UsageCounter.used_count + amount,
                updated_at=to_storage(utc_now()),
            )
            .execution_options(synchronize_session=False)
        )
        if limit != UNLIMITED:
            stmt = stmt.where(UsageCounter.used_count + amount <= limit)
        result = await self.session.execute(stmt)
        allowed = result.rowcount == 1

        used = await self._read_used(user_id, quota_type, period_start) or 0
        remaining = UNLIMITED if limit == UNLIMITED else max(0, limit - used)
        logger.info(
            "usage_increment" if allowed else "usage_limit_reached",
            user_id=user_id,
            quota=quota_type,
            amount=amount,
            used=used,
            limit=limit,
        )
        return IncrementResult(
            allowed=allowed,
            used=used,
            remaining=remaining,
            period_start=period_start,
            reset_at=reset_at,
        )

    async def _ensure_counter(
        self, user_id: str, quota_type: str, period_start: datetime
    ) -> bool:
        values = {
            "user_id": user_id,
            "quota_type": quota_type,
            "period_start": to_storage(period_start),
            "used_count": 0,
        }
        table = UsageCounter.__table__
        dialect = self.session.bind.dialect.name
        if dialect in ("postgresql", "sqlite"):
            dialect_insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
            stmt = dialect_insert(table).values(**values).on_conflict_do_nothing(
                index_elements=list(_COUNTER_KEY)
            )
        else:
            stmt = insert(table).values(**values).prefix_with("IGNORE")
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def _read_used(
        self, user_id: str, quota_type: str, period_start: datetime
    ) -> int | None:
        stmt = select(UsageCounter.used_count).where(
            *self._key_clause(user_id, quota_type, period_start)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    def _key_clause(user_id: str, quota_type: str, period_start: datetime):
        return (
            UsageCounter.user_id == user_id,
            UsageCounter.quota_type == quota_type,
            UsageCounter.period_start == to_storage(period_start),
        )

    async def _bounded(self, operation: Awaitable[T]) -> T:
        return await bounded(operation, timeout=self.timeout, store="usage_ledger")


__all__ = ["UsageLedger", "period_bounds", "shift_period"]
