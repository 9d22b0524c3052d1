from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Callable, Protocol

from chatdesk.core.config import get_settings
from chatdesk.domain.state import TenantContext
from chatdesk.persistence.db import session_scope
from chatdesk.persistence.repos.usage import get_conversation_count, increment_conversation_count
from chatdesk.services.background import BackgroundDispatcher
from chatdesk.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

# Monthly conversation caps per subscription tier; None means unlimited.
PLAN_CONVERSATION_CAPS: dict[str, int | None] = {
    "basic": 1000,
    "pro": None,
    "ultra": None,
}

QUOTA_EXCEEDED_MESSAGE = "Monthly conversation limit reached"


@dataclass(frozen=True)
class QuotaDecision:
    # Outcome of a quota check; denied decisions carry user-facing remediation text.
    allowed: bool
    limit: int | None = None
    used: int | None = None
    error: str | None = None
    details: str | None = None


class QuotaStore(Protocol):
    async def get_count(self, workspace_id: str, month_key: str) -> int:
        ...

    async def increment(self, workspace_id: str, month_key: str) -> None:
        ...


class SqlQuotaStore:
    async def get_count(self, workspace_id: str, month_key: str) -> int:
        async with session_scope("usage_counter_read") as session:
            return await get_conversation_count(session, workspace_id, month_key)

    async def increment(self, workspace_id: str, month_key: str) -> None:
        async with session_scope("usage_counter_increment") as session:
            await increment_conversation_count(session, workspace_id, month_key)


def _utc_now() -> datetime:
    # Use UTC for consistent quota period boundaries.
    return datetime.now(timezone.utc)


def month_key(now: datetime) -> str:
    # Rollover is implicit: a new calendar month produces a new counter key.
    return now.astimezone(timezone.utc).strftime("%Y-%m")


def monthly_cap(subscription_tier: str | None) -> int | None:
    # Unknown tiers and zero caps are treated as unlimited.
    cap = PLAN_CONVERSATION_CAPS.get((subscription_tier or "").strip().lower())
    if not cap or cap <= 0:
        return None
    return cap


def quota_exceeded_details(cap: int) -> str:
    return f"Current plan allows {cap} conversations per month. Upgrade for unlimited access."


class QuotaLedger:
    def __init__(
        self,
        store: QuotaStore,
        dispatcher: BackgroundDispatcher,
        *,
        time_provider: Callable[[], datetime] | None = None,
        demo_workspace_id: str | None = None,
        fail_mode: str | None = None,
    ) -> None:
        settings = get_settings()
        self._store = store
        self._dispatcher = dispatcher
        # Allow time injection for deterministic rollover tests.
        self._time_provider = time_provider or _utc_now
        self._demo_workspace_id = demo_workspace_id or settings.demo_workspace_id
        self._fail_mode = (fail_mode or settings.quota_fail_mode).lower()

    async def check_and_reserve(self, tenant: TenantContext, workspace_id: str) -> QuotaDecision:
        if workspace_id == self._demo_workspace_id:
            return QuotaDecision(allowed=True)

        cap = monthly_cap(tenant.subscription_tier)
        if cap is None:
            self._reserve(workspace_id)
            return QuotaDecision(allowed=True)

        key = month_key(self._time_provider())
        try:
            used = await self._store.get_count(workspace_id, key)
        except Exception as exc:  # noqa: BLE001 - accounting outages must not take chat down
            increment_counter("quota_read_failures_total")
            if self._fail_mode == "closed":
                logger.error("quota_read_failed_closed workspace_id=%s", workspace_id, exc_info=exc)
                return QuotaDecision(
                    allowed=False,
                    limit=cap,
                    error=QUOTA_EXCEEDED_MESSAGE,
                    details=quota_exceeded_details(cap),
                )
            logger.warning("quota_read_failed_open workspace_id=%s", workspace_id, exc_info=exc)
            return QuotaDecision(allowed=True, limit=cap)

        if used >= cap:
            logger.info(
                "quota_exceeded workspace_id=%s month=%s used=%s cap=%s",
                workspace_id,
                key,
                used,
                cap,
            )
            increment_counter("quota_denied_total")
            return QuotaDecision(
                allowed=False,
                limit=cap,
                used=used,
                error=QUOTA_EXCEEDED_MESSAGE,
                details=quota_exceeded_details(cap),
            )

        # Check-then-increment is not atomic; concurrent turns may overshoot the cap slightly.
        self._reserve(workspace_id, key)
        return QuotaDecision(allowed=True, limit=cap, used=used)

    def _reserve(self, workspace_id: str, key: str | None = None) -> None:
        resolved_key = key or month_key(self._time_provider())
        self._dispatcher.dispatch(
            "quota_increment",
            self._store.increment(workspace_id, resolved_key),
        )
