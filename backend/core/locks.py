"""
Per-site serialization for read-then-write sequences.

Three layers are used together:
  1. an in-process ``asyncio.Lock`` keyed by (namespace, site_id), acquired
     with a timeout so callers queue instead of racing. Locks live in one
     registry per event loop, so every service object in the process that
     names the same namespace contends on the same lock;
  2. on PostgreSQL, a transaction-scoped advisory lock on the same key so
     workers in other processes serialize too. It releases at COMMIT/ROLLBACK;
  3. a write lock on the site's row, taken before any reads. PostgreSQL gets
     ``SELECT ... FOR UPDATE``; other dialects get a no-op UPDATE, which on
     SQLite claims the database write lock for the rest of the transaction.

A timeout at any layer raises ConcurrencyConflict (or a retryable DBAPIError).
"""

import asyncio
import uuid
import weakref
from contextlib import asynccontextmanager

import structlog
from sqlalchemy import select, text, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import ConcurrencyConflict
from db.models import Site

logger = structlog.get_logger()

# event loop -> lock key -> lock
_LOOP_LOCKS: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, dict[str, asyncio.Lock]]" = (
    weakref.WeakKeyDictionary()
)


class SiteLocks:
    """Handle on the process-wide lock registry for one namespace.

    Two handles with the same namespace share their locks on a given event
    loop. Locks are never shared across loops.
    """

    def __init__(self, namespace: str):
        self.namespace = namespace

    def key(self, site_id: uuid.UUID) -> str:
        return f"{self.namespace}:{site_id}"

    def _lock_for(self, site_id: uuid.UUID) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        locks = _LOOP_LOCKS.get(loop)
        if locks is None:
            locks = {}
            _LOOP_LOCKS[loop] = locks
        lock_key = self.key(site_id)
        lock = locks.get(lock_key)
        if lock is None:
            lock = asyncio.Lock()
            locks[lock_key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, site_id: uuid.UUID, timeout: float):
        lock = self._lock_for(site_id)
        try:
            await asyncio.wait_for(lock.acquire(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("lock.timeout", lock=self.key(site_id), timeout=timeout)
            raise ConcurrencyConflict(f"Timed out waiting for {self.key(site_id)}", site_id=str(site_id)) from exc
        try:
            yield
        finally:
            lock.release()


async def acquire_advisory_lock(db: AsyncSession, lock_key: str) -> None:
    """Take a transaction-scoped advisory lock where the dialect supports one."""
    if db.bind is None or db.bind.dialect.name != "postgresql":
        return
    try:
        await db.execute(text("SELECT pg_advisory_xact_lock(hashtext(:key))"), {"key": lock_key})
    except DBAPIError as exc:
        if is_retryable_db_error(exc):
            raise ConcurrencyConflict(f"Advisory lock contention on {lock_key}") from exc
        raise


async def lock_site_row(db: AsyncSession, site_id: uuid.UUID) -> None:
    """Claim the site row for the rest of the transaction, before any reads."""
    if db.bind is not None and db.bind.dialect.name == "postgresql":
        await db.execute(select(Site.site_id).where(Site.site_id == site_id).with_for_update())
        return
    await db.execute(
        update(Site)
        .where(Site.site_id == site_id)
        .values(name=Site.name)
        .execution_options(synchronize_session=False)
    )


RETRYABLE_SQLSTATES = {
    "40001",  # serialization_failure
    "40P01",  # deadlock_detected
    "55P03",  # lock_not_available
}


def is_retryable_db_error(exc: BaseException) -> bool:
    """True for contention errors a fresh transaction could get past."""
    if not isinstance(exc, DBAPIError):
        return False
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in RETRYABLE_SQLSTATES:
        return True
    return "database is locked" in str(orig).lower()
