from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from typing import Callable

from chatdesk.core.config import get_settings


logger = logging.getLogger(__name__)


class SessionRegistry:
    """Remembers which conversation sessions have been seen recently."""

    def __init__(
        self,
        *,
        idle_ttl_s: int | None = None,
        max_entries: int | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        settings = get_settings()
        self._idle_ttl_s = idle_ttl_s if idle_ttl_s is not None else settings.session_idle_ttl_s
        self._max_entries = max_entries if max_entries is not None else settings.session_max_entries
        self._time = time_source or time.monotonic
        # session key -> last seen timestamp, oldest first.
        self._seen: OrderedDict[str, float] = OrderedDict()

    def __len__(self) -> int:
        return len(self._seen)

    def touch(self, workspace_id: str, session_id: str) -> bool:
        # Returns True the first time a session is seen (or after it expired).
        key = f"{workspace_id}:{session_id}"
        now = self._time()
        last_seen = self._seen.get(key)
        is_new = last_seen is None or now - last_seen > self._idle_ttl_s
        self._seen[key] = now
        self._seen.move_to_end(key)
        while len(self._seen) > self._max_entries:
            self._seen.popitem(last=False)
        return is_new

    def sweep(self) -> int:
        cutoff = self._time() - self._idle_ttl_s
        removed = 0
        while self._seen:
            key, last_seen = next(iter(self._seen.items()))
            if last_seen >= cutoff:
                break
            self._seen.popitem(last=False)
            removed += 1
        return removed


async def run_session_sweeper(registry: SessionRegistry, *, interval_s: int | None = None) -> None:
    # Periodically evict idle sessions so the registry stays bounded between bursts.
    resolved_interval = max(1, int(interval_s or get_settings().session_sweep_interval_s))
    while True:
        try:
            removed = registry.sweep()
            if removed:
                logger.debug("session_sweep removed=%s remaining=%s", removed, len(registry))
        except Exception:  # noqa: BLE001 - keep the sweeper alive while surfacing failures in logs
            logger.exception("session sweeper failed")
        await asyncio.sleep(resolved_interval)
