from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Optional
from uuid import uuid4

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from chunkswap.config import get_settings
from chunkswap.database import commit
from chunkswap.errors import ConcurrencyError
from chunkswap.logger import get_logger
from chunkswap.models.operation_lock import OperationLock

_logger = get_logger("services.locks")

TOPOLOGY_LOCK = "disk-topology"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; every stored value is UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


async def acquire_lock(
    session: AsyncSession,
    name: str,
    *,
    purpose: str,
    ttl_seconds: Optional[int] = None,
) -> str:
    ttl = ttl_seconds or get_settings().lock_ttl_seconds
    now = _utcnow()
    existing = await session.get(OperationLock, name)
    if existing is not None:
        expires_at = _aware(existing.expires_at)
        if expires_at > now:
            raise ConcurrencyError(
                "operation_locked",
                f"{name} is held by another operation ({existing.purpose}) until {expires_at.isoformat()}",
            )
        _logger.warning(
            "lock.takeover",
            "Taking over expired operation lock",
            lock=name,
            previous_owner=existing.owner,
            previous_purpose=existing.purpose,
        )
        await session.delete(existing)
        await session.flush()

    owner = uuid4().hex
    session.add(
        OperationLock(
            name=name,
            owner=owner,
            purpose=purpose,
            expires_at=now + timedelta(seconds=ttl),
        )
    )
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise ConcurrencyError(
            "operation_locked",
            f"{name} was acquired concurrently by another operation",
        ) from exc
    _logger.info("lock.acquire", "Acquired operation lock", lock=name, owner=owner, purpose=purpose)
    return owner


async def release_lock(session: AsyncSession, name: str, owner: str) -> None:
    await session.execute(
        delete(OperationLock).where(OperationLock.name == name, OperationLock.owner == owner)
    )
    await commit(session, "lock.release")
    _logger.info("lock.release", "Released operation lock", lock=name, owner=owner)


@asynccontextmanager
async def hold_lock(
    session: AsyncSession,
    name: str = TOPOLOGY_LOCK,
    *,
    purpose: str,
    ttl_seconds: Optional[int] = None,
) -> AsyncIterator[str]:
    owner = await acquire_lock(session, name, purpose=purpose, ttl_seconds=ttl_seconds)
    try:
        yield owner
    except BaseException:
        await session.rollback()
        raise
    finally:
        await release_lock(session, name, owner)
