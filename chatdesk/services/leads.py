from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Protocol, Sequence

from chatdesk.core.config import get_settings
from chatdesk.domain.state import ChatTurn
from chatdesk.persistence.db import session_scope
from chatdesk.persistence.repos.leads import insert_lead


logger = logging.getLogger(__name__)

INTENT_KEYWORDS = (
    "pricing",
    "price",
    "plan",
    "plans",
    "buy",
    "purchase",
    "trial",
    "subscribe",
    "integration",
    "support",
    "cost",
    "charge",
    "billing",
    "quote",
    "demo",
)
MAX_INTENT_KEYWORDS = 8

_EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
# 3-3-4 digit groups with an optional country code; dates and order ids do not fit.
_PHONE_RE = re.compile(r"(?<![\w+])((?:\+\d{1,3}[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4})(?!\w)")
_CONTACT_PROMPT_RE = re.compile(
    r"\b(contact\s+me|call\s+me|email\s+me|reach\s+(me|out)|get\s+in\s+touch|talk\s+to\s+(sales|someone|a\s+human)"
    r"|speak\s+to\s+(sales|someone|a\s+human)|follow\s+up)\b",
    re.IGNORECASE,
)
# Only the lead-in is case-insensitive; the captured name must be capitalized.
_NAME_RE = re.compile(r"\b(?i:my\s+name\s+is|i'm|i\s+am)\s+([A-Z][a-z]+(?:\s+[A-Z][a-z]+){0,2})")
_COMPANY_RE = re.compile(r"\b(?:at|from)\s+([A-Z][A-Za-z0-9&\- ]{2,40})(?:[.,\n]|$)")
_COMPANY_NOISE_RE = re.compile(r"\b(pricing|price|plan|support|billing|cost|help)\b", re.IGNORECASE)

LEAD_STATUS_NEW = "new"
LEAD_STATUS_INCOMPLETE = "incomplete"


@dataclass(frozen=True)
class LeadSignal:
    email: str | None = None
    phone: str | None = None
    intent_prompt: bool = False

    @property
    def reachable(self) -> bool:
        return bool(self.email or self.phone)


@dataclass(frozen=True)
class LeadRecord:
    workspace_id: str
    first_message: str
    email: str | None
    phone: str | None
    name: str | None
    company: str | None
    intent_keywords: tuple[str, ...]
    origin: str
    status: str


class LeadStore(Protocol):
    async def save(self, lead: LeadRecord) -> None:
        ...


class SqlLeadStore:
    async def save(self, lead: LeadRecord) -> None:
        async with session_scope("lead_insert") as session:
            await insert_lead(
                session,
                workspace_id=lead.workspace_id,
                first_message=lead.first_message,
                email=lead.email,
                phone=lead.phone,
                name=lead.name,
                company=lead.company,
                intent_keywords=list(lead.intent_keywords),
                origin=lead.origin,
                status=lead.status,
            )


def extract_intent_keywords(text: str) -> list[str]:
    if not text:
        return []
    lowered = text.lower()
    return [keyword for keyword in INTENT_KEYWORDS if keyword in lowered][:MAX_INTENT_KEYWORDS]


def derive_name_company(turns: Sequence[ChatTurn]) -> tuple[str | None, str | None]:
    user_text = "\n".join(turn.content for turn in turns if turn.is_user)
    name = None
    company = None
    name_match = _NAME_RE.search(user_text)
    if name_match:
        name = name_match.group(1).strip()
    company_match = _COMPANY_RE.search(user_text)
    if company_match:
        raw = company_match.group(1).strip()
        if not _COMPANY_NOISE_RE.search(raw):
            company = raw
    return name, company


class LeadDetector:
    def __init__(self, store: LeadStore, *, demo_workspace_id: str | None = None) -> None:
        self._store = store
        self._demo_workspace_id = demo_workspace_id or get_settings().demo_workspace_id

    def detect(self, text: str) -> LeadSignal | None:
        if not text:
            return None
        email_match = _EMAIL_RE.search(text)
        phone_match = _PHONE_RE.search(text)
        phone = phone_match.group(1).strip() if phone_match else None
        intent_prompt = bool(_CONTACT_PROMPT_RE.search(text))
        if not email_match and not phone and not intent_prompt:
            return None
        return LeadSignal(
            email=email_match.group(0).lower() if email_match else None,
            phone=phone,
            intent_prompt=intent_prompt,
        )

    async def capture(
        self,
        workspace_id: str,
        text: str,
        *,
        conversation: Sequence[ChatTurn] = (),
        request_id: str | None = None,
    ) -> LeadRecord | None:
        # Leads are always scoped to a real workspace; the demo never stores them.
        if not workspace_id or workspace_id == self._demo_workspace_id:
            return None
        signal = self.detect(text)
        if signal is None:
            return None
        name, company = derive_name_company(conversation)
        lead = LeadRecord(
            workspace_id=workspace_id,
            first_message=text,
            email=signal.email,
            phone=signal.phone,
            name=name,
            company=company,
            intent_keywords=tuple(extract_intent_keywords(text)),
            origin="subscriber",
            status=LEAD_STATUS_NEW if signal.reachable else LEAD_STATUS_INCOMPLETE,
        )
        await self._store.save(lead)
        logger.info(
            "lead_captured request_id=%s workspace_id=%s status=%s",
            request_id,
            workspace_id,
            lead.status,
        )
        return lead
