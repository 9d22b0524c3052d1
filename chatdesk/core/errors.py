from __future__ import annotations

from typing import Any


class ChatDeskError(Exception):
    """Base error for chatdesk."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details


class AccessDeniedError(ChatDeskError):
    """Caller may not act on the requested bot or workspace."""

    status_code = 403
    code = "ACCESS_DENIED"


class ChatValidationError(ChatDeskError):
    """Chat payload is malformed or carries no usable user turn."""

    status_code = 400
    code = "INVALID_REQUEST"


class QuotaExceededError(ChatDeskError):
    """Workspace has used its monthly conversation allowance."""

    status_code = 429
    code = "QUOTA_EXCEEDED"


class ProcessingError(ChatDeskError):
    """Chat turn failed before any answer could be produced."""

    status_code = 500
    code = "CHAT_PROCESSING_ERROR"


class ProviderConfigError(ChatDeskError):
    """Missing or invalid provider configuration."""


class GenerationError(ChatDeskError):
    """LLM generation request failure."""

    def __init__(self, message: str, *, upstream_status: int | None = None) -> None:
        super().__init__(message)
        self.upstream_status = upstream_status


class RetrievalError(ChatDeskError):
    """Retrieval layer failure."""


class DatabaseError(ChatDeskError):
    """Database operation failure."""
