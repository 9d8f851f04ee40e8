"""Single-use, time-bound challenge nonces.

Nonces live in a short-TTL keyed store. Redis is the production backend; the
in-process store serves single-node deployments and tests. Both expose an
atomic claim (compare-and-delete) so a token can never validate twice.
"""

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from threading import Lock
from typing import Final, Protocol

import redis.asyncio as redis

from rolegate.core.settings import settings

logger = logging.getLogger(__name__)

NONCE_KEY_PREFIX: Final[str] = "nonce:"
TOKEN_FIELD: Final[str] = "token"

Clock = Callable[[], float]

# KEYS[1] = record key, ARGV[1] = field name, ARGV[2] = expected value.
_CLAIM_SCRIPT: Final[str] = """
if redis.call('HGET', KEYS[1], ARGV[1]) == ARGV[2] then
  local data = redis.call('HGETALL', KEYS[1])
  redis.call('DEL', KEYS[1])
  return data
end
return nil
"""


class KeyedStateStore(Protocol):
    """Keyed string-map storage with per-key expiry."""

    async def put(self, key: str, fields: Mapping[str, str], ttl_seconds: int) -> None: ...

    async def get(self, key: str) -> dict[str, str] | None: ...

    async def delete(self, key: str) -> None: ...

    async def pop_if(self, key: str, field: str, expected: str) -> dict[str, str] | None:
        """Delete and return the record only if ``field`` equals ``expected``."""
        ...


class MemoryStateStore:
    """Process-local keyed store with explicit expiry sweeping."""

    def __init__(self, clock: Clock = time.time) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[float, dict[str, str]]] = {}
        self._lock = Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    async def put(self, key: str, fields: Mapping[str, str], ttl_seconds: int) -> None:
        expiry = self._clock() + max(0, int(ttl_seconds))
        with self._lock:
            self._sweep_locked()
            self._entries[key] = (expiry, dict(fields))

    async def get(self, key: str) -> dict[str, str] | None:
        with self._lock:
            return self._live_locked(key)

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def pop_if(self, key: str, field: str, expected: str) -> dict[str, str] | None:
        with self._lock:
            record = self._live_locked(key)
            if record is None:
                return None
            stored = record.get(field)
            if stored is None or not secrets.compare_digest(stored, expected):
                return None
            self._entries.pop(key, None)
            return record

    def sweep_expired(self) -> int:
        """Drop every expired entry and return how many were removed."""
        with self._lock:
            return self._sweep_locked()

    def _live_locked(self, key: str) -> dict[str, str] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expiry, fields = entry
        if expiry <= self._clock():
            self._entries.pop(key, None)
            return None
        return dict(fields)

    def _sweep_locked(self) -> int:
        now = self._clock()
        stale = [key for key, (expiry, _) in self._entries.items() if expiry <= now]
        for key in stale:
            del self._entries[key]
        return len(stale)


class RedisStateStore:
    """Redis hash per key with server-side TTL."""

    def __init__(self, client: redis.Redis) -> None:
        self._redis = client
        self._claim = client.register_script(_CLAIM_SCRIPT)

    @classmethod
    def from_url(cls, url: str) -> RedisStateStore:
        return cls(redis.from_url(url, decode_responses=True))

    async def put(self, key: str, fields: Mapping[str, str], ttl_seconds: int) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.delete(key)
            pipe.hset(key, mapping=dict(fields))
            pipe.expire(key, max(1, int(ttl_seconds)))
            await pipe.execute()

    async def get(self, key: str) -> dict[str, str] | None:
        data = await self._redis.hgetall(key)
        return dict(data) if data else None

    async def delete(self, key: str) -> None:
        await self._redis.delete(key)

    async def pop_if(self, key: str, field: str, expected: str) -> dict[str, str] | None:
        flat = await self._claim(keys=[key], args=[field, expected])
        if not flat:
            return None
        return dict(zip(flat[::2], flat[1::2], strict=True))

    async def close(self) -> None:
        await self._redis.aclose()


@dataclass(frozen=True)
class NonceContext:
    """Interactive context a challenge was issued from."""

    message_id: str | None = None
    channel_id: str | None = None

    @property
    def routable(self) -> bool:
        return bool(self.message_id and self.channel_id)


class NonceStore:
    """Issues and consumes per-user challenge nonces."""

    def __init__(
        self,
        backend: KeyedStateStore,
        *,
        ttl_seconds: int | None = None,
        clock: Clock = time.time,
    ) -> None:
        self._backend = backend
        self._ttl = int(ttl_seconds if ttl_seconds is not None else settings.nonce_ttl_seconds)
        self._clock = clock

    @property
    def ttl_seconds(self) -> int:
        return self._ttl

    @staticmethod
    def _key(user_id: str) -> str:
        return f"{NONCE_KEY_PREFIX}{user_id}"

    async def create_nonce(
        self,
        user_id: str,
        message_id: str | None = None,
        channel_id: str | None = None,
    ) -> str:
        """Issue a fresh nonce, superseding any unused one for the user."""
        token = secrets.token_hex(16)
        issued_at = self._clock()
        fields = {
            TOKEN_FIELD: token,
            "issued_at": repr(issued_at),
            "expires_at": repr(issued_at + self._ttl),
        }
        if message_id:
            fields["message_id"] = message_id
        if channel_id:
            fields["channel_id"] = channel_id
        await self._backend.put(self._key(user_id), fields, self._ttl)
        logger.debug("Issued nonce for user %s (ttl=%ss)", user_id, self._ttl)
        return token

    async def get_nonce_data(self, user_id: str) -> NonceContext:
        """Return the message/channel the pending challenge belongs to."""
        record = await self._backend.get(self._key(user_id))
        if record is None or self._expired(record):
            return NonceContext()
        return self._context(record)

    async def validate_nonce(self, user_id: str, token: str) -> bool:
        """Return True if the user's live nonce equals ``token``. Does not consume it."""
        record = await self._backend.get(self._key(user_id))
        if record is None or self._expired(record):
            return False
        return secrets.compare_digest(record.get(TOKEN_FIELD, ""), token)

    async def invalidate_nonce(self, user_id: str) -> None:
        await self._backend.delete(self._key(user_id))

    async def claim_nonce(self, user_id: str, token: str) -> NonceContext | None:
        """Atomically validate and consume the user's nonce.

        Returns the stored context on success and None when the nonce is missing,
        expired or does not match. A mismatched token leaves the record in place.
        """
        if not token:
            return None
        record = await self._backend.pop_if(self._key(user_id), TOKEN_FIELD, token)
        if record is None or self._expired(record):
            return None
        return self._context(record)

    def _expired(self, record: Mapping[str, str]) -> bool:
        try:
            return float(record["expires_at"]) <= self._clock()
        except (KeyError, ValueError):
            return True

    @staticmethod
    def _context(record: Mapping[str, str]) -> NonceContext:
        return NonceContext(
            message_id=record.get("message_id"),
            channel_id=record.get("channel_id"),
        )


def build_state_store() -> KeyedStateStore:
    """Build the keyed store selected by ``NONCE_BACKEND``."""
    if settings.nonce_backend == "memory":
        return MemoryStateStore()
    return RedisStateStore.from_url(settings.redis_url)


class _NonceStoreSingleton:
    _instance: NonceStore | None = None

    @classmethod
    def get_instance(cls) -> NonceStore:
        if cls._instance is None:
            cls._instance = NonceStore(build_state_store())
        return cls._instance


def get_nonce_store() -> NonceStore:
    """Return the process-wide nonce store."""
    return _NonceStoreSingleton.get_instance()
