"""Idempotency gate for safe write operation retries."""

import hashlib
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trackcore.clock import Clock, utcnow
from trackcore.config import IdempotencyConfig
from trackcore.database import dialect_insert
from trackcore.errors import ConflictError, ValidationError, is_transient, translate_db_error
from trackcore.models.idempotency import IdempotencyRecord
from trackcore.services.request_key import normalize

logger = logging.getLogger(__name__)

# Reservation attempts while reclaiming expired or abandoned records
MAX_RESERVE_ATTEMPTS = 3


@dataclass
class IdempotentResult:
    """Outcome of a gated handler, as stored and replayed."""

    status_code: int
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)
    replayed: bool = False


Handler = Callable[[], Awaitable[IdempotentResult]]


def record_scope(scope: str, owner: str | None = None) -> str:
    return f"{scope}|{owner}" if owner else scope


class IdempotencyGate:
    """
    Runs mutating handlers at most once per (scope, key).

    The key is reserved before the handler runs, so concurrent retries of
    the same request cannot both execute side effects. A duplicate that
    arrives while the first is running gets a conflict; one that arrives
    after it completed gets the stored result.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: IdempotencyConfig,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.config = config
        self.clock = clock

    @staticmethod
    def hash_request_body(body: bytes) -> str:
        """Generate SHA256 hash of request body."""
        return hashlib.sha256(body).hexdigest()

    async def execute(
        self,
        scope: str,
        raw_key: str | None,
        handler: Handler,
        fingerprint: str | None = None,
        owner: str | None = None,
    ) -> IdempotentResult:
        """
        Run `handler` under the idempotency key `raw_key`.

        `scope` selects the configuration (e.g. "POST /api/v1/files"); `owner`
        narrows the stored scope so two users never share a key space.

        Raises:
            ValidationError - key missing on a scope that requires one
            ConflictError - same key in flight, or reused for another payload
            TransientStorageError - database unavailable
        """
        key = normalize(raw_key)
        if key is None:
            if self.config.key_required(scope):
                raise ValidationError(
                    "A request id is required for this operation",
                    code="REQUEST_ID_REQUIRED",
                    scope=scope,
                )
            return await handler()

        scope = record_scope(scope, owner)
        reserved = await self._reserve(scope, key, fingerprint)
        if isinstance(reserved, IdempotentResult):
            return reserved

        try:
            result = await handler()
        except Exception:
            await self._release(scope, key, reserved)
            raise

        await self._complete(scope, key, reserved, result)
        return result

    async def _reserve(
        self,
        scope: str,
        key: str,
        fingerprint: str | None,
    ) -> uuid.UUID | IdempotentResult:
        try:
            return await self._try_reserve(scope, key, fingerprint)
        except DBAPIError as exc:
            if not is_transient(exc):
                raise translate_db_error(exc) from exc
            # A failed reservation leaves no record, so one retry is safe
            logger.warning("Transient error reserving %s %s, retrying: %s", scope, key, exc)

        try:
            return await self._try_reserve(scope, key, fingerprint)
        except DBAPIError as exc:
            raise translate_db_error(exc) from exc

    async def _try_reserve(
        self,
        scope: str,
        key: str,
        fingerprint: str | None,
    ) -> uuid.UUID | IdempotentResult:
        for _ in range(MAX_RESERVE_ATTEMPTS):
            now = self.clock()
            token = uuid.uuid4()
            async with self.session_factory() as session, session.begin():
                inserted = await session.execute(
                    dialect_insert(session, IdempotencyRecord)
                    .values(
                        id=uuid.uuid4(),
                        scope=scope,
                        key=key,
                        state="in_progress",
                        reservation_token=token,
                        fingerprint=fingerprint,
                        created_at=now,
                        expires_at=now + self.config.max_execution_time,
                    )
                    .on_conflict_do_nothing(
                        index_elements=[IdempotencyRecord.scope, IdempotencyRecord.key]
                    )
                    .returning(IdempotencyRecord.id)
                )
                if inserted.first() is not None:
                    logger.debug("Reserved idempotency key %s %s", scope, key)
                    return token

                result = await session.execute(
                    select(IdempotencyRecord)
                    .where(IdempotencyRecord.scope == scope)
                    .where(IdempotencyRecord.key == key)
                    .with_for_update()
                )
                record = result.scalar_one_or_none()
                if record is None:
                    # Removed between our insert and select; try again
                    continue

                if record.expires_at <= now:
                    logger.info(
                        "Reclaiming %s idempotency record %s %s",
                        "abandoned" if record.state == "in_progress" else "expired",
                        scope,
                        key,
                    )
                    await session.delete(record)
                    continue

                if fingerprint and record.fingerprint and record.fingerprint != fingerprint:
                    raise ConflictError(
                        "Idempotency key reused with different request",
                        code="IDEMPOTENCY_KEY_REUSED",
                    )

                if record.state == "completed":
                    logger.info("Replaying stored result for %s %s", scope, key)
                    return IdempotentResult(
                        status_code=record.response_status,
                        body=record.response_body,
                        headers=dict(record.response_headers or {}),
                        replayed=True,
                    )

                logger.info("Rejecting duplicate in-flight request %s %s", scope, key)
                raise ConflictError()

        raise ConflictError("Could not reserve idempotency key, retry later")

    async def _complete(
        self,
        scope: str,
        key: str,
        token: uuid.UUID,
        result: IdempotentResult,
    ) -> None:
        """Persist the handler outcome. Not retried: a retry could re-run the handler."""
        now = self.clock()
        try:
            async with self.session_factory() as session, session.begin():
                updated = await session.execute(
                    update(IdempotencyRecord)
                    .where(IdempotencyRecord.scope == scope)
                    .where(IdempotencyRecord.key == key)
                    .where(IdempotencyRecord.reservation_token == token)
                    .where(IdempotencyRecord.state == "in_progress")
                    .values(
                        state="completed",
                        response_status=result.status_code,
                        response_body=result.body,
                        response_headers=result.headers,
                        completed_at=now,
                        expires_at=now + self.config.ttl,
                    )
                    .execution_options(synchronize_session=False)
                )
        except DBAPIError as exc:
            raise translate_db_error(exc) from exc

        if updated.rowcount == 0:
            # Reclaimed as abandoned while the handler was still running
            logger.warning("Reservation for %s %s was lost before completion", scope, key)

    async def _release(self, scope: str, key: str, token: uuid.UUID) -> None:
        """Drop our reservation so a retry with the same key can run."""
        try:
            async with self.session_factory() as session, session.begin():
                await session.execute(
                    delete(IdempotencyRecord)
                    .where(IdempotencyRecord.scope == scope)
                    .where(IdempotencyRecord.key == key)
                    .where(IdempotencyRecord.reservation_token == token)
                    .where(IdempotencyRecord.state == "in_progress")
                    .execution_options(synchronize_session=False)
                )
        except DBAPIError as exc:
            # The handler's error is what the caller sees; the record will be
            # reclaimed once its execution deadline passes.
            logger.error("Failed to release idempotency key %s %s: %s", scope, key, exc)
        else:
            logger.info("Released idempotency key %s %s after handler failure", scope, key)

    async def lookup(
        self,
        scope: str,
        raw_key: str | None,
        owner: str | None = None,
    ) -> IdempotencyRecord | None:
        """Read the record for a key without locking it."""
        key = normalize(raw_key)
        if key is None:
            return None
        scope = record_scope(scope, owner)
        async with self.session_factory() as session:
            result = await session.execute(
                select(IdempotencyRecord)
                .where(IdempotencyRecord.scope == scope)
                .where(IdempotencyRecord.key == key)
            )
            return result.scalar_one_or_none()

    async def sweep(self, now: datetime | None = None) -> int:
        """Delete expired completed records and abandoned in-progress ones."""
        cutoff = now or self.clock()
        async with self.session_factory() as session, session.begin():
            result = await session.execute(
                delete(IdempotencyRecord)
                .where(IdempotencyRecord.expires_at <= cutoff)
                .execution_options(synchronize_session=False)
            )
        if result.rowcount:
            logger.info("Swept %d idempotency records", result.rowcount)
        return result.rowcount
