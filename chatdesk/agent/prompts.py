from __future__ import annotations

import re
from typing import Sequence

from chatdesk.domain.state import ChatTurn
from chatdesk.knowledge.catalog import PRODUCT_PROFILE, ProductProfile
from chatdesk.providers.retrieval.base import RetrievedChunk


NO_ANSWER_SENTENCE = "I don't find that in the stored documents."
_NO_ANSWER_RE = re.compile(r"i don.?t find that in the stored documents", re.IGNORECASE)

GENERAL_MODE_DEMO = "demo"
GENERAL_MODE_FALLBACK = "fallback"

HALLUCINATION_KEYWORDS = (
    "project management",
    "kanban",
    "sprints",
    "sprint planning",
    "gantt",
    "scrum board",
    "task tracking",
    "issue tracking",
)


def indicates_no_answer(text: str) -> bool:
    return bool(_NO_ANSWER_RE.search(text or ""))


def format_conversation_window(turns: Sequence[ChatTurn]) -> str:
    # Bot turns are labelled "assistant" so the model reads them as its own replies.
    lines = []
    for turn in turns:
        label = "user" if turn.is_user else "assistant"
        lines.append(f"{label}: {turn.content}")
    return "\n".join(lines)


def build_context_block(chunks: Sequence[RetrievedChunk], *, max_chars: int) -> str:
    blocks = []
    for chunk in chunks:
        title = chunk.title or chunk.document_id
        blocks.append(f"[Doc: {title} | Score: {chunk.score:.2f}]\n{chunk.content[:max_chars]}")
    return "\n\n".join(blocks)


def build_grounded_messages(
    question: str,
    chunks: Sequence[RetrievedChunk],
    window: Sequence[ChatTurn],
    *,
    context_chars: int,
) -> list[dict[str, str]]:
    system_prompt = (
        "You are a customer support assistant for this business. Answer ONLY from the documents "
        "below. Quote prices, policies and names exactly as written. If the documents do not "
        f'contain the answer, reply exactly: "{NO_ANSWER_SENTENCE}"\n\n'
        "Documents:\n" + build_context_block(chunks, max_chars=context_chars)
    )
    messages = [{"role": "system", "content": system_prompt}]
    if window:
        messages.append(
            {
                "role": "system",
                "content": "Recent conversation context (for continuity only):\n"
                + format_conversation_window(window),
            }
        )
    messages.append({"role": "user", "content": question})
    return messages


def _profile_block(profile: ProductProfile) -> str:
    return "\n".join(
        [
            "[PRODUCT_PROFILE]",
            f"Name: {profile.name}",
            f"Tagline: {profile.tagline}",
            "Core features:",
            *(f"- {item}" for item in profile.core_features),
            "Pricing (do not invent unlisted tiers):",
            *(f"- {item}" for item in profile.pricing_summary),
            "Never claim:",
            *(f"- {item}" for item in profile.disallowed_claims),
            f"Style: {profile.tone}; at most about {profile.max_words} words.",
            "[END_PRODUCT_PROFILE]",
        ]
    )


def build_general_messages(
    question: str,
    window: Sequence[ChatTurn],
    *,
    mode: str,
    profile: ProductProfile = PRODUCT_PROFILE,
) -> list[dict[str, str]]:
    if mode == GENERAL_MODE_DEMO:
        mode_note = (
            "The user is talking to the public demo bot. Never imply access to private customer "
            "documents; the demo only has general product knowledge."
        )
    else:
        mode_note = (
            "No matching business documents were found. Give general, truthful product information "
            "grounded only in the product profile."
        )
    system_prompt = "\n\n".join(
        [
            f"You are the product knowledge assistant for {profile.name}. {mode_note}",
            _profile_block(profile),
            "If asked about an unlisted feature, say it is not offered and point to real capabilities. "
            "Gently steer off-topic questions back to the product. Output only the final answer.",
        ]
    )
    messages = [{"role": "system", "content": system_prompt}]
    if window:
        messages.append(
            {
                "role": "system",
                "content": "Recent conversation context (for continuity only):\n"
                + format_conversation_window(window),
            }
        )
    messages.append({"role": "user", "content": question})
    return messages


def correction_note(text: str, profile: ProductProfile = PRODUCT_PROFILE) -> str | None:
    lowered = text.lower()
    if any(keyword in lowered for keyword in HALLUCINATION_KEYWORDS):
        return (
            f"(Note: {profile.name} is not a project or task management platform; "
            "it is an AI customer support chatbot.)"
        )
    return None
