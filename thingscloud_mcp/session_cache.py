"""
Per-account session cache.

Building a session means logging in to Things Cloud and replaying the
account's whole item log, so it is done at most once per account and then
shared by every request for that account.
"""

import asyncio
import hashlib
import hmac
import logging
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .backend import SessionFactory, mask_email

logger = logging.getLogger(__name__)


@dataclass
class _CacheEntry:
    session: Any
    fingerprint: str
    created_at: float


class SessionCache:
    """Lazily build and cache one backend session per account.

    Lookups that hit the cache never wait on anything. On a miss the session
    is built outside the lock, and concurrent misses for the same account
    join the single in-flight build instead of starting their own. Builds for
    different accounts run independently.

    A cached session is rebuilt when the password presented differs from the
    one it was built with, and, when ``ttl`` is set, once it is older than
    ``ttl`` seconds. Failed builds are never cached.
    """

    def __init__(
        self,
        factory: SessionFactory,
        ttl: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._factory = factory
        self._ttl = ttl
        self._clock = clock
        self._entries: dict[str, _CacheEntry] = {}
        self._inflight: dict[str, tuple[str, asyncio.Task[Any]]] = {}
        self._lock = asyncio.Lock()
        self._salt = secrets.token_bytes(16)

    def _fingerprint(self, secret: str) -> str:
        return hmac.new(self._salt, secret.encode(), hashlib.sha256).hexdigest()

    def _is_fresh(self, entry: _CacheEntry | None, fingerprint: str) -> bool:
        if entry is None or not hmac.compare_digest(entry.fingerprint, fingerprint):
            return False
        if self._ttl is not None and self._clock() - entry.created_at > self._ttl:
            return False
        return True

    async def get_or_create(self, identity: str, secret: str) -> Any:
        """Return the cached session for ``identity``, building it if needed."""
        fingerprint = self._fingerprint(secret)
        entry = self._entries.get(identity)
        if self._is_fresh(entry, fingerprint):
            return entry.session  # type: ignore[union-attr]

        async with self._lock:
            entry = self._entries.get(identity)
            if self._is_fresh(entry, fingerprint):
                return entry.session  # type: ignore[union-attr]
            flight = self._inflight.get(identity)
            if flight is None or flight[0] != fingerprint:
                task = asyncio.create_task(self._build(identity, secret, fingerprint))
                task.add_done_callback(_consume_result)
                self._inflight[identity] = (fingerprint, task)
            else:
                task = flight[1]
                logger.debug(f"Joining in-flight session build for {mask_email(identity)}")

        # The build keeps running even if this caller goes away
        return await asyncio.shield(task)

    async def _build(self, identity: str, secret: str, fingerprint: str) -> Any:
        task = asyncio.current_task()
        try:
            session = await self._factory.create(identity, secret)
        except Exception as e:
            logger.warning(f"Session build failed for {mask_email(identity)}: {e}")
            async with self._lock:
                self._drop_flight(identity, task)
            raise

        async with self._lock:
            self._drop_flight(identity, task)
            existing = self._entries.get(identity)
            if self._is_fresh(existing, fingerprint):
                logger.debug(f"Discarding duplicate session for {mask_email(identity)}")
                return existing.session  # type: ignore[union-attr]
            self._entries[identity] = _CacheEntry(session, fingerprint, self._clock())
        logger.info(f"Cached session for {mask_email(identity)}")
        return session

    def _drop_flight(self, identity: str, task: "asyncio.Task[Any] | None") -> None:
        flight = self._inflight.get(identity)
        if flight is not None and flight[1] is task:
            del self._inflight[identity]

    def invalidate(self, identity: str) -> bool:
        """Forget the cached session for ``identity``. Returns whether one existed."""
        return self._entries.pop(identity, None) is not None

    def __contains__(self, identity: object) -> bool:
        return identity in self._entries

    def __len__(self) -> int:
        return len(self._entries)


def _consume_result(task: "asyncio.Task[Any]") -> None:
    # Mark the exception retrieved when every waiter has gone away
    if not task.cancelled():
        task.exception()
