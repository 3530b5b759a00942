# ==== LEDGER LOCK SERVICE ==== #

"""
Per-entity mutual exclusion for ledger mutations.

Every operation that reads a balance, validates it and writes it back runs
while holding the lock of the entity it mutates (``invoice:<id>`` covers an
invoice and its receivable; drafts take ``shipments:<client_id>`` and notes
``note:<id>``), so two payments against the same receivable serialize
instead of interleaving.

Two backends are provided: ``local`` keeps one ``asyncio.Lock`` per key and
is correct for a single process; ``redis`` takes a token lease with
``SET NX EX`` and releases it with compare-and-delete, for multi-instance
deployments.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional
from uuid import uuid4

import redis.asyncio as redis

from app.business.errors import LedgerLockTimeout
from app.observability.logging import get_logger
from app.observability.metrics import ledger_lock_wait_seconds
from app.observability.tracing import get_tracer
from app.settings import settings


# ==== MODULE INITIALIZATION ==== #


tracer = get_tracer(__name__)
logger = get_logger(__name__)

# Delete the key only while it still holds our token
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


# ==== LOCAL BACKEND ==== #


class _LocalLocks:
    """Reference-counted ``asyncio.Lock`` per key."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    async def acquire(self, key: str, timeout: float) -> None:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            await asyncio.wait_for(lock.acquire(), timeout=timeout)
        except asyncio.TimeoutError:
            self._forget(key)
            raise LedgerLockTimeout(f"Timed out waiting for ledger lock {key}", lock_key=key)
        except BaseException:
            # cancelled while queued
            self._forget(key)
            raise

    def release(self, key: str) -> None:
        self._locks[key].release()
        self._forget(key)

    def _forget(self, key: str) -> None:
        self._waiters[key] -= 1
        if self._waiters[key] == 0:
            del self._waiters[key]
            del self._locks[key]


# ==== LOCK MANAGER ==== #


class LedgerLockManager:
    """
    Hands out per-key ledger locks.

    Args:
        backend (str): ``local`` or ``redis``
        timeout_seconds (float): How long to wait before ``LedgerLockTimeout``
        lease_seconds (int): Redis lease expiry, bounds a crashed holder
        redis_url (str | None): Redis connection URL (defaults to settings)
    """

    def __init__(
        self,
        backend: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        lease_seconds: Optional[int] = None,
        redis_url: Optional[str] = None,
    ):
        self.backend = backend or settings.LEDGER_LOCK_BACKEND
        if self.backend not in ("local", "redis"):
            raise ValueError(f"Unknown ledger lock backend: {self.backend}")

        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None
            else settings.LEDGER_LOCK_TIMEOUT_SECONDS
        )
        self.lease_seconds = lease_seconds or settings.LEDGER_LOCK_LEASE_SECONDS
        self.redis_url = redis_url or settings.REDIS_URL
        self.poll_interval = 0.05

        self._local = _LocalLocks()
        self._redis: Optional[redis.Redis] = None


    # ==== REDIS CONNECTION MANAGEMENT ==== #


    async def _get_redis(self) -> redis.Redis:
        if self._redis is None:
            ssl_config = {}
            if self.redis_url.startswith('rediss://'):
                ssl_config = {
                    'ssl_cert_reqs': None,
                    'ssl_check_hostname': False,
                }

            self._redis = redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                **ssl_config
            )
        return self._redis

    def _lock_key(self, key: str) -> str:
        return f"ledger-lock:{key}"


    # ==== REDIS LEASES ==== #


    async def _acquire_redis(self, key: str) -> str:
        redis_client = await self._get_redis()
        token = uuid4().hex
        deadline = time.monotonic() + self.timeout_seconds

        while True:
            acquired = await redis_client.set(
                self._lock_key(key),
                token,
                nx=True,
                ex=self.lease_seconds
            )
            if acquired:
                return token
            if time.monotonic() >= deadline:
                raise LedgerLockTimeout(f"Timed out waiting for ledger lock {key}", lock_key=key)
            await asyncio.sleep(self.poll_interval)

    async def _release_redis(self, key: str, token: str) -> None:
        redis_client = await self._get_redis()
        released = await redis_client.eval(_RELEASE_SCRIPT, 1, self._lock_key(key), token)
        if not released:
            logger.warning("Ledger lock lease expired before release", lock_key=key)


    # ==== PUBLIC API ==== #


    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """
        Hold the lock for ``key`` for the duration of the block.

        Raises:
            LedgerLockTimeout: If the lock is not acquired within the timeout
        """
        with tracer.start_as_current_span("ledger_lock_hold") as span:
            span.set_attribute("lock_key", key)
            span.set_attribute("backend", self.backend)

            started = time.perf_counter()
            token: Optional[str] = None
            if self.backend == "redis":
                token = await self._acquire_redis(key)
            else:
                await self._local.acquire(key, self.timeout_seconds)
            ledger_lock_wait_seconds.labels(backend=self.backend).observe(
                time.perf_counter() - started
            )

            try:
                yield
            finally:
                if token is not None:
                    await self._release_redis(key, token)
                else:
                    self._local.release(key)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.close()
            self._redis = None


# ==== GLOBAL SERVICE INSTANCE ==== #


_lock_manager: Optional[LedgerLockManager] = None


def get_lock_manager() -> LedgerLockManager:
    """
    Get the process-wide lock manager.

    Returns:
        LedgerLockManager: Global lock manager instance
    """
    global _lock_manager
    if _lock_manager is None:
        _lock_manager = LedgerLockManager()
    return _lock_manager
