"""Per-user quota ledger with atomic multi-window check-and-consume."""

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trackcore.clock import Clock, utcnow
from trackcore.config import QuotaConfig, QuotaWindow
from trackcore.database import dialect_insert
from trackcore.errors import QuotaExceededError, ValidationError, translate_db_error
from trackcore.models.quota import QuotaCounter
from trackcore.schemas.quota import WindowUsage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaCharge:
    """Record of a successful consume, enough to refund it exactly."""

    user_id: UUID
    dimension: str
    amount: int
    window_keys: tuple[str, ...]


def window_bounds(window: QuotaWindow, now: datetime | None = None) -> tuple[str, datetime]:
    """
    Compute the counter key and end of the window containing `now`.

    Day windows start at UTC midnight; numeric periods are aligned to the
    Unix epoch. The window name is part of the key so several windows of
    one dimension never share a counter.
    """
    now = (now or utcnow()).astimezone(timezone.utc)
    if window.period == "day":
        start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return f"{window.name}:{start.date().isoformat()}", start + timedelta(days=1)

    period = int(window.period)
    if period <= 0:
        raise ValueError(f"Window period must be positive: {window.period!r}")
    epoch = int(now.timestamp())
    start = datetime.fromtimestamp(epoch - epoch % period, tz=timezone.utc)
    return (
        f"{window.name}:{start.strftime('%Y-%m-%dT%H:%M:%SZ')}",
        start + timedelta(seconds=period),
    )


class QuotaLedger:
    """Owns the quota_counters table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: QuotaConfig,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.config = config
        self.clock = clock

    def list_quota_definitions(self) -> list[str]:
        """Configured dimension names in evaluation order."""
        return list(self.config.definitions)

    async def check_and_consume(
        self,
        user_id: UUID,
        dimension: str,
        amount: int = 1,
        windows: Iterable[QuotaWindow] | None = None,
    ) -> bool:
        """Consume `amount` from every window, or from none of them."""
        try:
            await self.require(user_id, dimension, amount, windows)
        except QuotaExceededError:
            return False
        return True

    async def require(
        self,
        user_id: UUID,
        dimension: str,
        amount: int = 1,
        windows: Iterable[QuotaWindow] | None = None,
    ) -> QuotaCharge:
        """
        Consume quota or raise.

        All windows are locked in their configured order and checked before
        any of them is incremented, so a denial never leaves partial
        consumption behind. Reaching a limit exactly is allowed. Without
        explicit `windows` the user's effective limits apply.

        Returns the charge, which `refund` accepts if the paid-for work fails.

        Raises:
            ValidationError - amount is not a positive integer, or a window repeats
            QuotaExceededError - a window would be exceeded, or none is configured
            TransientStorageError - database unavailable
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 1:
            raise ValidationError("Quota amount must be a positive integer", code="INVALID_AMOUNT")

        if windows is None:
            windows = self.config.windows_for_user(user_id, dimension)
        windows = tuple(windows)
        names = [window.name for window in windows]
        if len(set(names)) != len(names):
            raise ValidationError("Quota windows must be distinct", code="DUPLICATE_WINDOW", windows=names)
        if not windows:
            # No quota configured means no access
            raise QuotaExceededError(
                f"No quota configured for '{dimension}'",
                code="QUOTA_NOT_CONFIGURED",
                dimension=dimension,
            )

        now = self.clock()
        try:
            async with self.session_factory() as session, session.begin():
                counters = []
                for window in windows:
                    counter = await self._lock_counter(session, user_id, dimension, window, now)
                    counters.append((window, counter))

                for window, counter in counters:
                    if counter.consumed + amount > window.limit:
                        logger.info(
                            "Quota denied user=%s dimension=%s window=%s consumed=%d limit=%d amount=%d",
                            user_id,
                            dimension,
                            window.name,
                            counter.consumed,
                            window.limit,
                            amount,
                        )
                        raise QuotaExceededError(
                            f"Quota '{dimension}.{window.name}' exceeded",
                            dimension=dimension,
                            window=window.name,
                            limit=window.limit,
                        )

                for window, counter in counters:
                    counter.consumed += amount
                    counter.limit = window.limit
                    counter.updated_at = now
        except DBAPIError as exc:
            raise translate_db_error(exc) from exc

        return QuotaCharge(
            user_id=user_id,
            dimension=dimension,
            amount=amount,
            window_keys=tuple(counter.window_key for _, counter in counters),
        )

    async def refund(self, charge: QuotaCharge) -> bool:
        """
        Give back a charge whose paid-for work failed.

        Targets the window keys that were charged, so a refund after a
        window rolled over never credits the new window. Runs on error
        paths, so a database failure is logged and reported as False
        instead of masking the original error.
        """
        now = self.clock()
        try:
            async with self.session_factory() as session, session.begin():
                await session.execute(
                    update(QuotaCounter)
                    .where(QuotaCounter.user_id == charge.user_id)
                    .where(QuotaCounter.dimension == charge.dimension)
                    .where(QuotaCounter.window_key.in_(charge.window_keys))
                    .where(QuotaCounter.consumed >= charge.amount)
                    .values(consumed=QuotaCounter.consumed - charge.amount, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
        except DBAPIError as exc:
            logger.error("Failed to refund quota %s %s: %s", charge.user_id, charge.dimension, exc)
            return False
        logger.info(
            "Refunded quota user=%s dimension=%s amount=%d",
            charge.user_id,
            charge.dimension,
            charge.amount,
        )
        return True

    async def _lock_counter(
        self,
        session: AsyncSession,
        user_id: UUID,
        dimension: str,
        window: QuotaWindow,
        now: datetime,
    ) -> QuotaCounter:
        window_key, ends_at = window_bounds(window, now)
        # Create the window's counter lazily, then take its row lock
        await session.execute(
            dialect_insert(session, QuotaCounter)
            .values(
                user_id=user_id,
                dimension=dimension,
                window_key=window_key,
                window_name=window.name,
                consumed=0,
                limit=window.limit,
                window_ends_at=ends_at,
                updated_at=now,
            )
            .on_conflict_do_nothing(
                index_elements=[
                    QuotaCounter.user_id,
                    QuotaCounter.dimension,
                    QuotaCounter.window_key,
                ]
            )
        )
        result = await session.execute(
            select(QuotaCounter)
            .where(QuotaCounter.user_id == user_id)
            .where(QuotaCounter.dimension == dimension)
            .where(QuotaCounter.window_key == window_key)
            .with_for_update()
        )
        return result.scalar_one()

    async def get_usage(self, user_id: UUID, dimension: str) -> list[WindowUsage]:
        """Unlocked read of the current windows, for display only."""
        now = self.clock()
        windows = self.config.windows_for_user(user_id, dimension)
        keyed = [(window, window_bounds(window, now)[0]) for window in windows]
        if not keyed:
            return []

        async with self.session_factory() as session:
            result = await session.execute(
                select(QuotaCounter)
                .where(QuotaCounter.user_id == user_id)
                .where(QuotaCounter.dimension == dimension)
                .where(QuotaCounter.window_key.in_([key for _, key in keyed]))
            )
            consumed = {counter.window_key: counter.consumed for counter in result.scalars()}

        usage = []
        for window, key in keyed:
            used = consumed.get(key, 0)
            usage.append(
                WindowUsage(
                    window=window.name,
                    window_key=key,
                    consumed=used,
                    limit=window.limit,
                    remaining=max(window.limit - used, 0),
                )
            )
        return usage

    async def purge_stale(self, before: datetime | None = None) -> int:
        """Delete counters whose window ended before `before` (default: now)."""
        cutoff = before or self.clock()
        async with self.session_factory() as session, session.begin():
            result = await session.execute(
                delete(QuotaCounter)
                .where(QuotaCounter.window_ends_at < cutoff)
                .execution_options(synchronize_session=False)
            )
        if result.rowcount:
            logger.info("Purged %d stale quota counters", result.rowcount)
        return result.rowcount
