from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from urllib.parse import urlparse

from chatdesk.core.config import get_settings


_ELLIPSIS = "…"


@dataclass(frozen=True)
class BrandRules:
    name: str
    host: str
    legacy_names: tuple[str, ...]
    legacy_domains: tuple[str, ...]


def _host_from_url(url: str) -> str:
    parsed = urlparse(url)
    return parsed.netloc or parsed.path


@lru_cache
def default_brand_rules() -> BrandRules:
    settings = get_settings()
    return BrandRules(
        name=settings.brand_name,
        host=_host_from_url(settings.brand_url),
        legacy_names=tuple(settings.legacy_brand_names),
        legacy_domains=tuple(settings.legacy_brand_domains),
    )


@lru_cache(maxsize=32)
def _compile(rules: BrandRules) -> tuple[tuple[re.Pattern[str], str], ...]:
    # Domains go first so "anemo.ai" is not half-rewritten by the name rule.
    compiled: list[tuple[re.Pattern[str], str]] = []
    for domain in rules.legacy_domains:
        compiled.append((re.compile(re.escape(domain), re.IGNORECASE), rules.host))
    for name in rules.legacy_names:
        compiled.append((re.compile(rf"\b{re.escape(name)}\b"), rules.name))
    return tuple(compiled)


def brandify(text: str, rules: BrandRules | None = None) -> str:
    # Rewrite legacy product names and domains; applying it twice changes nothing.
    if not text:
        return text
    resolved = rules or default_brand_rules()
    for pattern, replacement in _compile(resolved):
        text = pattern.sub(replacement, text)
    return text


def truncate_snippet(text: str, max_chars: int | None = None) -> str:
    limit = max_chars if max_chars is not None else get_settings().snippet_max_chars
    if len(text) <= limit:
        return text
    return text[:limit] + _ELLIPSIS
