from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from chatdesk.domain.models import AuditEvent
from chatdesk.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

# Chat text never belongs in audit rows, whatever key it arrives under.
_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password", "text", "content", "message"]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


async def record_event(
    *,
    workspace_id: str | None,
    actor_type: str,
    actor_id: str | None,
    event_type: str,
    outcome: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request_id: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    best_effort: bool = True,
) -> None:
    # Write audit rows in their own session so a failed insert never poisons request state.
    event = AuditEvent(
        occurred_at=datetime.now(timezone.utc),
        workspace_id=workspace_id,
        actor_type=actor_type,
        actor_id=actor_id,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_id,
        ip_address=ip_address,
        user_agent=user_agent,
        metadata_json=sanitize_metadata(metadata or {}),
        error_code=error_code,
    )
    async with SessionLocal() as session:
        try:
            session.add(event)
            await session.commit()
        except (SQLAlchemyError, OSError) as exc:
            await session.rollback()
            if not best_effort:
                raise
            logger.warning(
                "audit_event_write_failed event_type=%s request_id=%s",
                event_type,
                request_id,
                exc_info=exc,
            )
