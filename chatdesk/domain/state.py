from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class SourceKind(str, Enum):
    # Header values are part of the public contract; keep them short and stable.
    KB = "kb"
    DOCS = "docs"
    GENERAL = "general"
    ERROR = "error"


USER_ROLE = "user"
BOT_ROLE = "bot"


@dataclass(frozen=True)
class TenantContext:
    # Identity established once per request by the upstream auth layer.
    user_id: str
    workspace_id: str
    subscription_tier: str = "basic"


@dataclass(frozen=True)
class ChatTurn:
    role: str
    content: str

    @property
    def is_user(self) -> bool:
        return self.role == USER_ROLE


@dataclass(frozen=True)
class SourceRef:
    snippet: str
    ref: str
    title: str | None = None


@dataclass(frozen=True)
class ResolvedAnswer:
    # Final answer plus provenance for one chat turn.
    text: str
    source_kind: SourceKind
    sources: tuple[SourceRef, ...] = field(default_factory=tuple)
    is_fallback: bool = False

    @property
    def used_docs(self) -> bool:
        return self.source_kind is SourceKind.DOCS

    @property
    def cacheable(self) -> bool:
        # Fallback and error text must never be replayed from cache.
        return not self.is_fallback and self.source_kind is not SourceKind.ERROR


@dataclass(frozen=True)
class ChatContext:
    # Everything a resolution strategy may read; workspace_id is already verified.
    workspace_id: str
    is_demo: bool
    user_text: str
    conversation_window: tuple[ChatTurn, ...] = ()
    request_id: str | None = None
