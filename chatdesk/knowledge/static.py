from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Protocol

from chatdesk.knowledge.catalog import PRODUCT_KNOWLEDGE, KnowledgeEntry


logger = logging.getLogger(__name__)

MAX_ANSWER_LENGTH = 1400
TRUNCATION_HINT = " (Truncated) Ask for more detail if needed."
FUZZY_THRESHOLD = 0.33
MIN_KEYWORD_HITS = 2
DIRECT_HIT_SCORE = 1.0
FUZZY_BASE_SCORE = 0.5
# Each priority step above 1 boosts fuzzy scores by 15%.
PRIORITY_BOOST = 0.15
FUZZY_SCORE_CAP = 0.99

_NON_WORD_RE = re.compile(r"[^a-z0-9\s]")


@dataclass(frozen=True)
class KnowledgeMatch:
    id: str
    answer: str
    direct_pattern: bool
    score: float
    truncated: bool


class StaticKnowledgeStore(Protocol):
    def find(self, user_text: str) -> KnowledgeMatch | None:
        ...


def tokenize(text: str) -> set[str]:
    return {token for token in _NON_WORD_RE.sub(" ", text.lower()).split() if token}


@dataclass(frozen=True)
class _CompiledEntry:
    entry: KnowledgeEntry
    patterns: tuple[re.Pattern[str], ...]
    keywords: tuple[str, ...]


class StaticKnowledgeBase:
    def __init__(self, entries: Iterable[KnowledgeEntry] = PRODUCT_KNOWLEDGE) -> None:
        self._entries = tuple(self._compile(entry) for entry in entries)

    @staticmethod
    def _compile(entry: KnowledgeEntry) -> _CompiledEntry:
        patterns: list[re.Pattern[str]] = []
        for raw in entry.question_patterns:
            try:
                patterns.append(re.compile(raw, re.IGNORECASE))
            except re.error:
                # A broken pattern disables itself instead of the whole knowledge set.
                logger.warning("knowledge_pattern_invalid entry_id=%s pattern=%s", entry.id, raw)
        keywords = tuple(dict.fromkeys(keyword.lower() for keyword in entry.keywords))
        return _CompiledEntry(entry=entry, patterns=tuple(patterns), keywords=keywords)

    def find(self, user_text: str) -> KnowledgeMatch | None:
        if not user_text or not user_text.strip():
            return None

        # Direct pattern pass: first entry in catalog order wins.
        for compiled in self._entries:
            if any(pattern.search(user_text) for pattern in compiled.patterns):
                return _build_match(compiled.entry, direct=True, score=DIRECT_HIT_SCORE)

        # Fuzzy keyword pass: best normalized overlap wins.
        tokens = tokenize(user_text)
        best: KnowledgeMatch | None = None
        for compiled in self._entries:
            if not compiled.keywords:
                continue
            hits = sum(1 for keyword in compiled.keywords if keyword in tokens)
            if hits < MIN_KEYWORD_HITS:
                continue
            ratio = hits / len(compiled.keywords)
            if ratio < FUZZY_THRESHOLD:
                continue
            boost = 1 + (compiled.entry.priority - 1) * PRIORITY_BOOST
            score = min(FUZZY_BASE_SCORE * ratio * boost, FUZZY_SCORE_CAP)
            if best is None or score > best.score:
                best = _build_match(compiled.entry, direct=False, score=score)
        return best


def _build_match(entry: KnowledgeEntry, *, direct: bool, score: float) -> KnowledgeMatch:
    answer = entry.answer
    truncated = len(answer) > MAX_ANSWER_LENGTH
    if truncated:
        answer = answer[:MAX_ANSWER_LENGTH] + TRUNCATION_HINT
    return KnowledgeMatch(
        id=entry.id,
        answer=answer,
        direct_pattern=direct,
        score=score,
        truncated=truncated,
    )
