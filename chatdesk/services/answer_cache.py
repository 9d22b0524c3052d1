from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import re
import time
from collections import OrderedDict
from typing import Callable, Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError

from chatdesk.core.config import get_settings
from chatdesk.domain.state import ResolvedAnswer, SourceKind
from chatdesk.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_query(query: str) -> str:
    return _WHITESPACE_RE.sub(" ", query.strip().lower())


def cache_key(workspace_id: str, query: str, *, prefix: str = "answer") -> str:
    # Workspace id is hashed alongside the query so tenants never share entries.
    digest = hashlib.sha256(f"{workspace_id}\x1f{normalize_query(query)}".encode("utf-8")).hexdigest()
    return f"{prefix}:{digest}"


def _encode(answer: ResolvedAnswer) -> str:
    return json.dumps({"text": answer.text, "source_kind": answer.source_kind.value})


def _decode(raw: str | bytes) -> ResolvedAnswer | None:
    try:
        payload = json.loads(raw)
        return ResolvedAnswer(text=str(payload["text"]), source_kind=SourceKind(payload["source_kind"]))
    except (TypeError, ValueError, KeyError):
        return None


class AnswerCache(Protocol):
    async def get(self, workspace_id: str, query: str) -> ResolvedAnswer | None:
        ...

    async def put(self, workspace_id: str, query: str, answer: ResolvedAnswer) -> None:
        ...


class InMemoryAnswerCache:
    def __init__(
        self,
        *,
        ttl_s: int | None = None,
        max_entries: int | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        settings = get_settings()
        self._ttl_s = ttl_s if ttl_s is not None else settings.answer_cache_ttl_s
        self._max_entries = max_entries if max_entries is not None else settings.answer_cache_max_entries
        self._time = time_source or time.monotonic
        self._entries: OrderedDict[str, tuple[float, str]] = OrderedDict()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, workspace_id: str, query: str) -> ResolvedAnswer | None:
        key = cache_key(workspace_id, query)
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                increment_counter("answer_cache_misses_total")
                return None
            expires_at, raw = entry
            if expires_at <= self._time():
                self._entries.pop(key, None)
                increment_counter("answer_cache_misses_total")
                return None
            self._entries.move_to_end(key)
        increment_counter("answer_cache_hits_total")
        return _decode(raw)

    async def put(self, workspace_id: str, query: str, answer: ResolvedAnswer) -> None:
        if not answer.cacheable:
            return
        key = cache_key(workspace_id, query)
        async with self._lock:
            self._entries[key] = (self._time() + self._ttl_s, _encode(answer))
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)


class RedisAnswerCache:
    def __init__(self, redis: Redis, *, ttl_s: int | None = None, prefix: str | None = None) -> None:
        settings = get_settings()
        self._redis = redis
        self._ttl_s = ttl_s if ttl_s is not None else settings.answer_cache_ttl_s
        self._prefix = prefix or settings.answer_cache_prefix

    async def get(self, workspace_id: str, query: str) -> ResolvedAnswer | None:
        key = cache_key(workspace_id, query, prefix=self._prefix)
        try:
            raw = await self._redis.get(key)
        except (RedisError, OSError) as exc:
            # The cache has no durability guarantee; a broken backend is just a miss.
            logger.warning("answer_cache_get_failed workspace_id=%s", workspace_id, exc_info=exc)
            increment_counter("answer_cache_errors_total")
            return None
        if raw is None:
            increment_counter("answer_cache_misses_total")
            return None
        answer = _decode(raw)
        if answer is None:
            logger.warning("answer_cache_entry_corrupt workspace_id=%s", workspace_id)
            return None
        increment_counter("answer_cache_hits_total")
        return answer

    async def put(self, workspace_id: str, query: str, answer: ResolvedAnswer) -> None:
        if not answer.cacheable:
            return
        key = cache_key(workspace_id, query, prefix=self._prefix)
        try:
            await self._redis.setex(key, self._ttl_s, _encode(answer))
        except (RedisError, OSError) as exc:
            logger.warning("answer_cache_put_failed workspace_id=%s", workspace_id, exc_info=exc)
            increment_counter("answer_cache_errors_total")


def build_answer_cache() -> AnswerCache:
    settings = get_settings()
    backend = (settings.answer_cache_backend or "memory").lower()
    if backend == "redis":
        redis = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
        return RedisAnswerCache(redis)
    return InMemoryAnswerCache()
