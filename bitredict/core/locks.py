import asyncio
import hashlib
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError

from .db import engine
from .logger import get_logger

log = get_logger("locks")


def advisory_key(kind: str, entity_id: object) -> int:
    """Stable 63-bit key for ``pg_*_advisory_lock`` (per kind + entity)."""
    digest = hashlib.blake2b(f"bitredict:{kind}:{entity_id}".encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big") & 0x7FFF_FFFF_FFFF_FFFF


async def try_advisory_lock(conn, key: int) -> bool:
    row = (await conn.execute(text("SELECT pg_try_advisory_lock(:k) AS ok"), {"k": int(key)})).first()
    return bool(row.ok) if row else False


async def advisory_unlock(conn, key: int) -> None:
    try:
        await conn.execute(text("SELECT pg_advisory_unlock(:k)"), {"k": int(key)})
    except DBAPIError as e:
        # Session-level locks die with the connection; closing it is enough.
        log.warning("advisory_unlock_failed key=%s err=%s", key, e)


@asynccontextmanager
async def entity_lock(
    kind: str,
    entity_id: object,
    *,
    timeout: float = 0.0,
    poll_interval: float = 0.25,
    _sleep=asyncio.sleep,
) -> AsyncIterator[bool]:
    """Hold a session advisory lock for one entity on a dedicated connection.

    Yields ``True`` when the lock is held. With ``timeout > 0`` acquisition is
    retried until the deadline, otherwise a single try is made. The caller
    must skip the entity when ``False`` is yielded.
    """
    key = advisory_key(kind, entity_id)
    deadline = time.monotonic() + max(0.0, float(timeout))
    async with engine.connect() as conn:
        acquired = await try_advisory_lock(conn, key)
        while not acquired and time.monotonic() < deadline:
            await _sleep(poll_interval)
            acquired = await try_advisory_lock(conn, key)
        if not acquired:
            log.info("lock_busy kind=%s id=%s", kind, entity_id)
        try:
            yield acquired
        finally:
            if acquired:
                await advisory_unlock(conn, key)
