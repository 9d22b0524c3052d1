from __future__ import annotations

import re
from dataclasses import dataclass


_XSS_PATTERNS = (
    re.compile(r"<\s*script\b", re.IGNORECASE),
    re.compile(r"<\s*iframe\b", re.IGNORECASE),
    re.compile(r"<\s*object\b", re.IGNORECASE),
    re.compile(r"<\s*embed\b", re.IGNORECASE),
    re.compile(r"<\s*form\b", re.IGNORECASE),
    re.compile(r"javascript\s*:", re.IGNORECASE),
    re.compile(r"vbscript\s*:", re.IGNORECASE),
    re.compile(r"data\s*:\s*text/html", re.IGNORECASE),
    re.compile(r"<[^>]*\bon\w+\s*=", re.IGNORECASE),
)
_PATH_TRAVERSAL_PATTERNS = (
    re.compile(r"\.\./"),
    re.compile(r"\.\.\\"),
    re.compile(r"%2e%2e", re.IGNORECASE),
    re.compile(r"%2f", re.IGNORECASE),
    re.compile(r"%5c", re.IGNORECASE),
)
_TAG_RE = re.compile(r"<[^>]+>")
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_WHITESPACE_RE = re.compile(r"[ \t]+")


@dataclass(frozen=True)
class SanitizedText:
    value: str
    rejected: bool = False
    reason: str | None = None


def strip_chat_text(raw: str) -> str:
    # Remove markup and control characters and normalize spacing, never rejecting.
    text = _CONTROL_RE.sub("", raw)
    text = _TAG_RE.sub("", text)
    text = _WHITESPACE_RE.sub(" ", text)
    lines = [line.strip() for line in text.splitlines()]
    return "\n".join(line for line in lines if line).strip()


def sanitize_chat_text(raw: str) -> SanitizedText:
    # Reject active content outright; strip inert markup and normalize spacing.
    for pattern in _XSS_PATTERNS:
        if pattern.search(raw):
            return SanitizedText(value="", rejected=True, reason="markup")
    for pattern in _PATH_TRAVERSAL_PATTERNS:
        if pattern.search(raw):
            return SanitizedText(value="", rejected=True, reason="path_traversal")
    return SanitizedText(value=strip_chat_text(raw))
