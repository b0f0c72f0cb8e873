"""
relay_store.py: Redis-backed key-value store for org mappings.

The connection is opened lazily on first use. Concurrent callers share one
in-flight connect attempt. A transient socket failure (reset, broken pipe,
unreachable) drops the client and retries the operation exactly once after
reconnecting; anything else surfaces as StoreError.
"""

import asyncio
import errno
import logging
from enum import Enum
from typing import Any, Callable

import redis.asyncio as redis
from redis.exceptions import AuthenticationError, MaxConnectionsError, RedisError
from redis.exceptions import ConnectionError as RedisConnectionError

logger = logging.getLogger("relay-store")

TRANSIENT_ERRNOS = {
    errno.ECONNRESET,
    errno.EPIPE,
    errno.ECONNREFUSED,
    errno.ENETUNREACH,
    errno.EHOSTUNREACH,
}


class StoreError(Exception):
    """The store could not complete an operation."""


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"


def _is_transient_failure(exc: BaseException) -> bool:
    # AuthenticationError and MaxConnectionsError subclass ConnectionError.
    if isinstance(exc, (AuthenticationError, MaxConnectionsError)):
        return False
    if isinstance(exc, RedisConnectionError):
        return True
    return isinstance(exc, OSError) and exc.errno in TRANSIENT_ERRNOS


def _default_client_factory(url: str) -> redis.Redis:
    return redis.from_url(url, decode_responses=True)


class KeyValueStore:
    """TTL-capable string store with sliding-expiration reads."""

    def __init__(
        self,
        url: str,
        client_factory: Callable[[str], Any] | None = None,
    ):
        self.url = url
        self.state = ConnectionState.DISCONNECTED
        self._client_factory = client_factory or _default_client_factory
        self._client: Any = None
        self._connecting: asyncio.Task | None = None
        self._lock = asyncio.Lock()

    # --- Operations ---

    async def set_with_ttl(self, key: str, value: str, ttl: int) -> None:
        await self._call("setex", key, max(1, int(ttl)), value)

    async def get(self, key: str) -> str | None:
        return await self._call("get", key)

    async def get_and_refresh_ttl(self, key: str, ttl: int) -> str | None:
        """Read a key and reset its TTL to the full window (GETEX ... EX)."""
        return await self._call("getex", key, ex=max(1, int(ttl)))

    async def delete(self, key: str) -> None:
        await self._call("delete", key)

    async def close(self) -> None:
        async with self._lock:
            await self._drop_client()

    # --- Connection lifecycle ---

    async def _call(self, op: str, *args: Any, **kwargs: Any) -> Any:
        for attempt in (1, 2):
            try:
                client = await self._ensure_client()
                return await getattr(client, op)(*args, **kwargs)
            except (RedisError, OSError) as e:
                if attempt == 1 and _is_transient_failure(e):
                    logger.warning("store %s: transient failure, reconnecting: %s", op, e)
                    async with self._lock:
                        await self._drop_client()
                    continue
                logger.error("store %s failed: %s", op, e)
                raise StoreError(f"store {op} failed: {e}") from e
        raise StoreError(f"store {op} failed")  # unreachable

    async def _ensure_client(self) -> Any:
        if self.state is ConnectionState.READY and self._client is not None:
            return self._client
        async with self._lock:
            if self.state is ConnectionState.READY and self._client is not None:
                return self._client
            if self._connecting is None:
                self.state = ConnectionState.CONNECTING
                self._connecting = asyncio.ensure_future(self._connect())
                self._connecting.add_done_callback(self._connect_finished)
            pending = self._connecting
        # Shielded so one cancelled caller does not abort the shared attempt.
        return await asyncio.shield(pending)

    async def _connect(self) -> Any:
        logger.info("store: connecting to %s", _redact(self.url))
        client = self._client_factory(self.url)
        try:
            await client.ping()
        except (RedisError, OSError):
            await _close_quietly(client)
            raise
        self._client = client
        return client

    def _connect_finished(self, task: asyncio.Task) -> None:
        if self._connecting is task:
            self._connecting = None
        if task.cancelled() or task.exception() is not None:
            self.state = ConnectionState.DISCONNECTED
        else:
            self.state = ConnectionState.READY
            logger.info("store: ready")

    async def _drop_client(self) -> None:
        client, self._client = self._client, None
        self.state = ConnectionState.DISCONNECTED
        if client is not None:
            await _close_quietly(client)


async def _close_quietly(client: Any) -> None:
    try:
        await client.aclose()
    except (RedisError, OSError) as e:
        logger.debug("store: error closing client: %s", e)


def _redact(url: str) -> str:
    """Hide credentials in a redis:// URL for logging."""
    if "@" not in url:
        return url
    scheme, _, rest = url.partition("://")
    return f"{scheme}://***@{rest.split('@', 1)[1]}"
