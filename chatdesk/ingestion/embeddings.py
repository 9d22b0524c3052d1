from __future__ import annotations

import hashlib
import math
import re

from chatdesk.core.config import EMBED_DIM


_TOKEN_RE = re.compile(r"[a-z0-9_]+")
# Very common words carry no topical signal and would dominate short queries.
_STOPWORDS = frozenset(
    {"a", "an", "and", "are", "do", "does", "for", "how", "i", "in", "is", "it", "of", "on", "the", "to", "what", "you"}
)


def _bucket(token: str) -> tuple[int, float]:
    # Hash each token to a stable signed weight in a fixed bucket.
    digest = hashlib.sha256(token.encode("utf-8")).digest()
    idx = int.from_bytes(digest[:4], "big") % EMBED_DIM
    sign = 1.0 if digest[4] % 2 == 0 else -1.0
    weight = 0.2 + (int.from_bytes(digest[5:8], "big") % 1000) / 1000.0
    return idx, sign * weight


def tokenize(text: str) -> list[str]:
    return [token for token in _TOKEN_RE.findall(text.lower()) if token not in _STOPWORDS]


def embed_text(text: str) -> list[float]:
    # Deterministic local embedding so dev and tests can exercise pgvector without a model.
    vector = [0.0] * EMBED_DIM
    for token in tokenize(text):
        idx, value = _bucket(token)
        vector[idx] += value
    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0:
        return vector
    return [v / norm for v in vector]
