"""Reputation, rate-limit and decision cache.

Redis is the shared cache; the durable store (reached only through a
``ReputationStore`` delegate) is the system of record. Every operation here
fails soft: a cache or store outage degrades to a miss, a no-op or the
default score and is logged, never raised to the cascade.

Writes are dual: the cache is updated synchronously with an atomic
increment-and-clamp, the durable store gets a fire-and-forget increment.
The two may briefly disagree; that is the accepted latency trade-off.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from typing import Any, Awaitable, Dict, Optional, Protocol, Set

import redis.asyncio as aioredis
from cachetools import TTLCache
from redis.exceptions import RedisError

from ..config import Settings, get_settings
from ..core.errors import CacheUnavailable, PersistenceError
from ..models.verdict import Verdict

logger = logging.getLogger(__name__)

# KEYS[1]=score key; ARGV: delta, baseline, max, min, ttl
_ADJUST_SCRIPT = """
local current = tonumber(redis.call('get', KEYS[1]) or ARGV[2])
local new_score = current + tonumber(ARGV[1])
if new_score > tonumber(ARGV[3]) then new_score = tonumber(ARGV[3]) end
if new_score < tonumber(ARGV[4]) then new_score = tonumber(ARGV[4]) end
redis.call('set', KEYS[1], new_score, 'EX', tonumber(ARGV[5]))
return new_score
"""

# KEYS[1]=window counter; ARGV: window seconds. A counter without TTL always gets one.
_WINDOW_SCRIPT = """
local current = redis.call('incr', KEYS[1])
if redis.call('ttl', KEYS[1]) < 0 then redis.call('expire', KEYS[1], tonumber(ARGV[1])) end
return current
"""


class ReputationStore(Protocol):
    """Persistence delegate for the durable reputation score."""

    async def get_score(self, user_id: str) -> Optional[int]:
        ...

    async def increment_score(self, user_id: str, delta: int) -> None:
        ...


class NullReputationStore:
    """Delegate used when no durable store is wired in."""

    async def get_score(self, user_id: str) -> Optional[int]:
        return None

    async def increment_score(self, user_id: str, delta: int) -> None:
        return None


def content_hash(text: str) -> str:
    """One-way key for a message; raw text never becomes a cache key."""
    return hashlib.sha256((text or "").encode("utf-8")).hexdigest()


class ReputationCache:
    def __init__(
        self,
        redis_client: Optional[Any] = None,
        store: Optional[ReputationStore] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self._redis = redis_client
        self.store: ReputationStore = store or NullReputationStore()
        self._local: TTLCache = TTLCache(
            maxsize=self.settings.LOCAL_CACHE_MAX_ENTRIES,
            ttl=self.settings.VERDICT_CACHE_TTL_S,
        )
        # Unsafe-penalty markers used when the shared cache is unreachable
        self._penalized: TTLCache = TTLCache(
            maxsize=self.settings.LOCAL_CACHE_MAX_ENTRIES,
            ttl=self.settings.VERDICT_CACHE_TTL_S,
        )
        self._down_until = 0.0
        self._pending: Set[asyncio.Task] = set()

        if redis_client is None:
            logger.warning("No REDIS_URL configured. Running in local memory mode.")

    @classmethod
    def from_settings(
        cls,
        store: Optional[ReputationStore] = None,
        settings: Optional[Settings] = None,
    ) -> "ReputationCache":
        settings = settings or get_settings()
        client = None
        if settings.REDIS_URL:
            client = aioredis.from_url(
                settings.REDIS_URL,
                decode_responses=True,
                socket_timeout=settings.REDIS_SOCKET_TIMEOUT_S,
                socket_connect_timeout=settings.REDIS_SOCKET_TIMEOUT_S,
            )
            logger.info("Shared cache configured", extra={"redis": True})
        return cls(redis_client=client, store=store, settings=settings)

    # -- plumbing ------------------------------------------------------------

    @property
    def redis(self) -> Optional[Any]:
        return self._redis

    @property
    def shared_available(self) -> bool:
        return self._redis is not None and time.monotonic() >= self._down_until

    def _key(self, kind: str, ident: str) -> str:
        return f"{self.settings.REDIS_KEY_PREFIX}{kind}:{ident}"

    def _clamp(self, score: int) -> int:
        return max(self.settings.REPUTATION_MIN, min(self.settings.REPUTATION_MAX, int(score)))

    def _mark_down(self, op: str, err: BaseException) -> None:
        if time.monotonic() >= self._down_until:
            logger.warning("Redis error during %s: %s", op, err)
        self._down_until = time.monotonic() + self.settings.REDIS_RETRY_BACKOFF_S

    async def _shared(self, command: str, *args, **kwargs) -> Any:
        if not self.shared_available:
            raise CacheUnavailable(f"shared cache unavailable for {command}")
        try:
            return await getattr(self._redis, command)(*args, **kwargs)
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            self._mark_down(command, e)
            raise CacheUnavailable(str(e)) from e

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for outstanding fire-and-forget writes (shutdown, tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        if self._redis is not None:
            try:
                await self._redis.aclose()
            except (RedisError, OSError, AttributeError) as e:
                logger.warning("Redis close failed: %s", e)

    # -- reputation ----------------------------------------------------------

    async def get_reputation(self, user_id: str) -> int:
        """Cache first, then the durable store; the start score on total absence."""
        try:
            return await self._read_reputation(user_id)
        except Exception as e:
            logger.warning("Reputation read failed for %s, using default: %s", user_id, e)
            return self.settings.REPUTATION_START

    async def _read_reputation(self, user_id: str) -> int:
        key = self._key("user_rep", user_id)
        try:
            raw = await self._shared("get", key)
        except CacheUnavailable:
            raw = None
        if raw is not None:
            return self._clamp(int(raw))

        score = await self.store.get_score(user_id)
        if score is None:
            return self.settings.REPUTATION_START

        score = self._clamp(score)
        try:
            await self._shared(
                "set", key, score, ex=self.settings.REPUTATION_CACHE_TTL_S
            )
        except CacheUnavailable:
            pass
        return score

    async def adjust_reputation(self, user_id: str, delta: int, baseline: Optional[int] = None) -> Optional[int]:
        """Apply ``delta`` with clamping in the cache and queue the durable increment.

        ``baseline`` is the score to start from when the cache holds none
        (typically the value the caller just read). Returns the new cached
        score, or None when the shared cache was unavailable.
        """
        logger.info("reputation_adjust", extra={"user_id": user_id, "delta": delta})
        start = self.settings.REPUTATION_START if baseline is None else self._clamp(baseline)
        new_score: Optional[int] = None
        try:
            new_score = int(
                await self._shared(
                    "eval",
                    _ADJUST_SCRIPT,
                    1,
                    self._key("user_rep", user_id),
                    delta,
                    start,
                    self.settings.REPUTATION_MAX,
                    self.settings.REPUTATION_MIN,
                    self.settings.REPUTATION_CACHE_TTL_S,
                )
            )
        except CacheUnavailable:
            pass

        self._spawn(self._persist_increment(user_id, delta))
        return new_score

    async def _persist_increment(self, user_id: str, delta: int) -> None:
        try:
            await self.store.increment_score(user_id, delta)
        except PersistenceError as e:
            logger.error("Durable reputation increment failed for %s: %s", user_id, e)
        except Exception as e:
            logger.error("Durable reputation increment crashed for %s: %s", user_id, e, exc_info=True)

    async def penalize_once(self, user_id: str, text: str, delta: int, baseline: Optional[int] = None) -> bool:
        """Charge the unsafe penalty for one message at most once.

        The marker is keyed by user and message hash and lives as long as a
        cached verdict, so a replay of the same verdict (cache hit, retried
        review) never charges again. Returns True when the penalty was applied.
        """
        marker = f"{user_id}:{content_hash(text)}"
        try:
            first = bool(
                await self._shared(
                    "set",
                    self._key("mod_penalty", marker),
                    1,
                    ex=self.settings.VERDICT_CACHE_TTL_S,
                    nx=True,
                )
            )
        except CacheUnavailable:
            first = marker not in self._penalized
        self._penalized[marker] = True
        if not first:
            logger.info("Unsafe penalty already charged for %s, skipping", user_id)
            return False
        await self.adjust_reputation(user_id, delta, baseline=baseline)
        return True

    # -- rate limiting -------------------------------------------------------

    async def should_throttle(self, user_id: str, limit: int) -> bool:
        """Fixed-window counter. Never throttles when the shared cache is down."""
        key = self._key("mod_ratelimit", user_id)
        try:
            current = int(
                await self._shared("eval", _WINDOW_SCRIPT, 1, key, self.settings.RATE_LIMIT_WINDOW_S)
            )
        except CacheUnavailable:
            return False
        if current > limit:
            logger.warning("Rate limit exceeded for user %s (%s > %s)", user_id, current, limit)
            return True
        return False

    # -- decision cache ------------------------------------------------------

    async def get_cached_verdict(self, text: str) -> Optional[Dict[str, Any]]:
        digest = content_hash(text)
        if self._redis is not None:
            try:
                raw = await self._shared("get", self._key("mod_cache", digest))
                if raw:
                    return json.loads(raw)
            except CacheUnavailable:
                pass
            except ValueError as e:
                logger.warning("Discarding undecodable cached verdict: %s", e)
                return None
        return self._local.get(digest)

    async def set_cached_verdict(self, text: str, verdict: Verdict) -> None:
        if verdict.review_needed:
            # Uncertain verdicts must be re-adjudicated, never replayed
            logger.debug("Not caching uncertain verdict from %s", verdict.source)
            return
        digest = content_hash(text)
        payload = verdict.for_cache()
        if self._redis is not None:
            try:
                await self._shared(
                    "set",
                    self._key("mod_cache", digest),
                    json.dumps(payload),
                    ex=self.settings.VERDICT_CACHE_TTL_S,
                )
                return
            except CacheUnavailable:
                pass
        self._local[digest] = payload
