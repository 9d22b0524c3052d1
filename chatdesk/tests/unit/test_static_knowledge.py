from __future__ import annotations

from chatdesk.knowledge.catalog import KnowledgeEntry
from chatdesk.knowledge.static import MAX_ANSWER_LENGTH, TRUNCATION_HINT, StaticKnowledgeBase


def test_direct_pattern_match_scores_full() -> None:
    match = StaticKnowledgeBase().find("What does your pricing look like?")
    assert match is not None
    assert match.id == "pricing-overview"
    assert match.direct_pattern is True
    assert match.score == 1.0


def test_fuzzy_keywords_need_two_hits() -> None:
    kb = StaticKnowledgeBase()
    match = kb.find("widget script install")
    assert match is not None
    assert match.id == "embedding"
    assert match.direct_pattern is False
    # 3 of 6 keywords at priority 4.
    assert abs(match.score - 0.5 * 0.5 * 1.45) < 1e-9

    assert kb.find("install") is None


def test_unrelated_and_blank_text_do_not_match() -> None:
    kb = StaticKnowledgeBase()
    assert kb.find("Do you ship to Mars?") is None
    assert kb.find("   ") is None


def test_long_answers_are_truncated_with_hint() -> None:
    entry = KnowledgeEntry(id="long", answer="a" * 2000, question_patterns=(r"long\s+answer",))
    match = StaticKnowledgeBase([entry]).find("give me the long answer")
    assert match is not None
    assert match.truncated is True
    assert match.answer == "a" * MAX_ANSWER_LENGTH + TRUNCATION_HINT


def test_invalid_pattern_only_disables_itself() -> None:
    entry = KnowledgeEntry(
        id="broken",
        answer="still reachable",
        question_patterns=(r"(unclosed", r"refund\s+policy"),
    )
    match = StaticKnowledgeBase([entry]).find("What is the refund policy?")
    assert match is not None
    assert match.answer == "still reachable"
