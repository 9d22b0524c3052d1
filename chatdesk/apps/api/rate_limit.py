from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass
from functools import lru_cache
import hashlib
import logging
import math
import time
from typing import Callable, Protocol

from fastapi import Depends, HTTPException, Request, status
from redis.asyncio import Redis

from chatdesk.apps.api.deps import ANONYMOUS_USER_ID, get_tenant_context
from chatdesk.apps.api.response import get_request_id
from chatdesk.core.config import get_settings
from chatdesk.domain.state import TenantContext
from chatdesk.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

ROUTE_CLASS_CHAT = "chat"

SCOPE_CALLER = "caller"
SCOPE_WORKSPACE = "workspace"


@dataclass(frozen=True)
class BucketConfig:
    # Configure rate limits with a sustained rate and burst capacity.
    rps: float
    burst: int


@dataclass(frozen=True)
class RouteLimitConfig:
    # Caller and workspace buckets are separate so one noisy visitor cannot drain a workspace.
    caller: BucketConfig
    workspace: BucketConfig


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    route_class: str
    scope: str | None
    retry_after_ms: int
    caller_remaining: float | None = None
    workspace_remaining: float | None = None
    degraded: bool = False


_TOKEN_BUCKET_LUA = r"""
local now_ms = tonumber(ARGV[1])
local caller_rate = tonumber(ARGV[2])
local caller_burst = tonumber(ARGV[3])
local caller_cost = tonumber(ARGV[4])
local caller_ttl = tonumber(ARGV[5])
local workspace_rate = tonumber(ARGV[6])
local workspace_burst = tonumber(ARGV[7])
local workspace_cost = tonumber(ARGV[8])
local workspace_ttl = tonumber(ARGV[9])

local function get_tokens(key, rate, burst)
  local data = redis.call("HMGET", key, "tokens", "ts")
  local tokens = tonumber(data[1])
  local ts = tonumber(data[2])
  if tokens == nil then
    tokens = burst
    ts = now_ms
  end
  if now_ms < ts then
    ts = now_ms
  end
  local delta = (now_ms - ts) / 1000.0
  return math.min(burst, tokens + delta * rate)
end

local function retry_after_ms(tokens, rate, cost)
  if tokens >= cost then
    return 0
  end
  if rate <= 0 then
    return 1000
  end
  return math.ceil(((cost - tokens) / rate) * 1000)
end

local caller_tokens = get_tokens(KEYS[1], caller_rate, caller_burst)
local workspace_tokens = get_tokens(KEYS[2], workspace_rate, workspace_burst)

local caller_allowed = caller_tokens >= caller_cost
local workspace_allowed = workspace_tokens >= workspace_cost
local allowed = caller_allowed and workspace_allowed

local caller_retry = retry_after_ms(caller_tokens, caller_rate, caller_cost)
local workspace_retry = retry_after_ms(workspace_tokens, workspace_rate, workspace_cost)

if allowed then
  caller_tokens = caller_tokens - caller_cost
  workspace_tokens = workspace_tokens - workspace_cost
end

redis.call("HSET", KEYS[1], "tokens", caller_tokens, "ts", now_ms)
redis.call("HSET", KEYS[2], "tokens", workspace_tokens, "ts", now_ms)
redis.call("EXPIRE", KEYS[1], caller_ttl)
redis.call("EXPIRE", KEYS[2], workspace_ttl)

return {allowed and 1 or 0, caller_allowed and 1 or 0, tostring(caller_tokens), caller_retry,
        workspace_allowed and 1 or 0, tostring(workspace_tokens), workspace_retry}
"""


def _calculate_tokens(
    *,
    tokens: float | None,
    last_ms: int | None,
    now_ms: int,
    rate: float,
    burst: int,
) -> float:
    # Refill tokens based on elapsed time while enforcing burst capacity.
    if tokens is None:
        tokens = float(burst)
    if last_ms is None:
        last_ms = now_ms
    if now_ms < last_ms:
        last_ms = now_ms
    delta_s = (now_ms - last_ms) / 1000.0
    return min(float(burst), tokens + (delta_s * rate))


def _retry_after_ms(tokens: float, *, rate: float, cost: int) -> int:
    # Compute retry-after using the token deficit and sustained rate.
    if tokens >= cost:
        return 0
    if rate <= 0:
        return 1000
    needed = cost - tokens
    return int(math.ceil((needed / rate) * 1000))


def _ttl_seconds(rate: float, burst: int) -> int:
    # Expire idle buckets after a conservative refill window.
    if rate <= 0:
        return max(1, burst)
    return max(1, int(math.ceil((burst / rate) * 2)))


def _decide(
    *,
    route_class: str,
    caller_allowed: bool,
    caller_tokens: float,
    caller_retry: int,
    workspace_allowed: bool,
    workspace_tokens: float,
    workspace_retry: int,
) -> RateLimitDecision:
    # Report the scope that keeps the caller waiting longest.
    if caller_allowed and workspace_allowed:
        return RateLimitDecision(
            allowed=True,
            route_class=route_class,
            scope=None,
            retry_after_ms=0,
            caller_remaining=caller_tokens,
            workspace_remaining=workspace_tokens,
        )
    scope = SCOPE_CALLER
    retry_after_ms = caller_retry
    if caller_allowed or workspace_retry > caller_retry:
        scope = SCOPE_WORKSPACE
        retry_after_ms = workspace_retry
    return RateLimitDecision(
        allowed=False,
        route_class=route_class,
        scope=scope,
        retry_after_ms=retry_after_ms,
        caller_remaining=caller_tokens,
        workspace_remaining=workspace_tokens,
    )


def bucket_keys(caller_id: str, workspace_id: str, route_class: str) -> tuple[str, str]:
    prefix = get_settings().rl_redis_prefix
    return (
        f"{prefix}:caller:{caller_id}:{route_class}",
        f"{prefix}:workspace:{workspace_id}:{route_class}",
    )


class RateLimiter(Protocol):
    async def check(
        self,
        *,
        caller_id: str,
        workspace_id: str,
        route_class: str,
        cost: int,
        limits: RouteLimitConfig,
    ) -> RateLimitDecision:
        ...


class RedisRateLimiter:
    def __init__(self, redis: Redis, *, time_provider: Callable[[], float] | None = None) -> None:
        self._redis = redis
        # Allow injecting time for deterministic tests.
        self._time_provider = time_provider or time.time

    async def check(
        self,
        *,
        caller_id: str,
        workspace_id: str,
        route_class: str,
        cost: int,
        limits: RouteLimitConfig,
    ) -> RateLimitDecision:
        # Evaluate both buckets atomically in Redis so replicas share one budget.
        caller_bucket, workspace_bucket = bucket_keys(caller_id, workspace_id, route_class)
        now_ms = int(self._time_provider() * 1000)
        result = await self._redis.eval(
            _TOKEN_BUCKET_LUA,
            2,
            caller_bucket,
            workspace_bucket,
            now_ms,
            limits.caller.rps,
            limits.caller.burst,
            cost,
            _ttl_seconds(limits.caller.rps, limits.caller.burst),
            limits.workspace.rps,
            limits.workspace.burst,
            cost,
            _ttl_seconds(limits.workspace.rps, limits.workspace.burst),
        )
        return _decide(
            route_class=route_class,
            caller_allowed=int(result[1]) == 1,
            caller_tokens=float(result[2]),
            caller_retry=int(float(result[3])),
            workspace_allowed=int(result[4]) == 1,
            workspace_tokens=float(result[5]),
            workspace_retry=int(float(result[6])),
        )


class InMemoryRateLimiter:
    def __init__(
        self,
        *,
        max_buckets: int | None = None,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        self._max_buckets = max_buckets or get_settings().rl_memory_max_buckets
        self._time_provider = time_provider or time.time
        # bucket key -> (tokens, last refill ms), least recently used first.
        self._buckets: OrderedDict[str, tuple[float, int]] = OrderedDict()
        self._lock = asyncio.Lock()

    def _tokens(self, key: str, now_ms: int, config: BucketConfig) -> float:
        tokens, last_ms = self._buckets.get(key, (None, None))
        return _calculate_tokens(tokens=tokens, last_ms=last_ms, now_ms=now_ms, rate=config.rps, burst=config.burst)

    def _store(self, key: str, tokens: float, now_ms: int) -> None:
        self._buckets[key] = (tokens, now_ms)
        self._buckets.move_to_end(key)
        while len(self._buckets) > self._max_buckets:
            self._buckets.popitem(last=False)

    async def check(
        self,
        *,
        caller_id: str,
        workspace_id: str,
        route_class: str,
        cost: int,
        limits: RouteLimitConfig,
    ) -> RateLimitDecision:
        caller_bucket, workspace_bucket = bucket_keys(caller_id, workspace_id, route_class)
        now_ms = int(self._time_provider() * 1000)
        async with self._lock:
            caller_tokens = self._tokens(caller_bucket, now_ms, limits.caller)
            workspace_tokens = self._tokens(workspace_bucket, now_ms, limits.workspace)
            caller_allowed = caller_tokens >= cost
            workspace_allowed = workspace_tokens >= cost
            caller_retry = _retry_after_ms(caller_tokens, rate=limits.caller.rps, cost=cost)
            workspace_retry = _retry_after_ms(workspace_tokens, rate=limits.workspace.rps, cost=cost)
            if caller_allowed and workspace_allowed:
                caller_tokens -= cost
                workspace_tokens -= cost
            self._store(caller_bucket, caller_tokens, now_ms)
            self._store(workspace_bucket, workspace_tokens, now_ms)
        return _decide(
            route_class=route_class,
            caller_allowed=caller_allowed,
            caller_tokens=caller_tokens,
            caller_retry=caller_retry,
            workspace_allowed=workspace_allowed,
            workspace_tokens=workspace_tokens,
            workspace_retry=workspace_retry,
        )


@lru_cache
def get_rate_limiter() -> RateLimiter:
    # Cache the limiter so requests share one Redis connection pool or one bucket table.
    settings = get_settings()
    if settings.rate_limit_backend == "memory":
        return InMemoryRateLimiter()
    return RedisRateLimiter(Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True))


def chat_limits() -> RouteLimitConfig:
    settings = get_settings()
    return RouteLimitConfig(
        caller=BucketConfig(settings.rl_caller_chat_rps, settings.rl_caller_chat_burst),
        workspace=BucketConfig(settings.rl_workspace_chat_rps, settings.rl_workspace_chat_burst),
    )


def caller_key(request: Request, tenant: TenantContext) -> str:
    # Anonymous widget visitors share a user id, so they are told apart by address and agent.
    if tenant.user_id != ANONYMOUS_USER_ID:
        return f"user:{tenant.user_id}"
    host = request.client.host if request.client else "unknown"
    agent = (request.headers.get("user-agent") or "unknown")[:50]
    return f"ip:{host}:{hashlib.sha256(agent.encode('utf-8')).hexdigest()[:12]}"


def _throttle_exception(*, decision: RateLimitDecision) -> HTTPException:
    # Construct a stable 429 response with retry hints and metadata.
    retry_after_s = int(math.ceil(decision.retry_after_ms / 1000.0))
    headers = {
        "Retry-After": str(retry_after_s),
        "X-RateLimit-Scope": decision.scope or "unknown",
        "X-RateLimit-Route-Class": decision.route_class,
        "X-RateLimit-Retry-After-Ms": str(decision.retry_after_ms),
    }
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail={
            "code": "RATE_LIMITED",
            "message": "Too many messages, please slow down",
            "scope": decision.scope or "unknown",
            "retry_after_ms": decision.retry_after_ms,
        },
        headers=headers,
    )


def _unavailable_exception() -> HTTPException:
    # Return a stable 503 when rate limit storage is unavailable and fail-closed.
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"code": "RATE_LIMIT_UNAVAILABLE", "message": "Rate limiting unavailable"},
    )


async def enforce_chat_rate_limit(
    request: Request,
    tenant: TenantContext = Depends(get_tenant_context),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> RateLimitDecision | None:
    # Runs after identity resolution and before any cache, quota or model work.
    settings = get_settings()
    if not settings.rate_limit_enabled:
        return None

    caller = caller_key(request, tenant)
    try:
        decision = await limiter.check(
            caller_id=caller,
            workspace_id=tenant.workspace_id,
            route_class=ROUTE_CLASS_CHAT,
            cost=1,
            limits=chat_limits(),
        )
    except Exception as exc:  # noqa: BLE001 - guard against Redis connectivity failures
        increment_counter("rate_limit_degraded_total")
        if settings.rl_fail_mode.lower() == "closed":
            logger.error("rate_limit_unavailable path=%s", request.url.path, exc_info=exc)
            raise _unavailable_exception() from exc
        logger.warning("rate_limit_degraded path=%s", request.url.path, exc_info=exc)
        return RateLimitDecision(
            allowed=True,
            route_class=ROUTE_CLASS_CHAT,
            scope=None,
            retry_after_ms=0,
            degraded=True,
        )

    if decision.allowed:
        return decision

    increment_counter("rate_limited_total")
    logger.info(
        "rate_limited request_id=%s workspace_id=%s scope=%s retry_after_ms=%s",
        get_request_id(request),
        tenant.workspace_id,
        decision.scope,
        decision.retry_after_ms,
    )
    raise _throttle_exception(decision=decision)
