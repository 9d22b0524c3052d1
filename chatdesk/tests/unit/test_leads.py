from __future__ import annotations

import pytest

from chatdesk.domain.state import ChatTurn
from chatdesk.services.leads import (
    MAX_INTENT_KEYWORDS,
    LeadDetector,
    derive_name_company,
    extract_intent_keywords,
)
from chatdesk.tests.utils.fakes import FakeLeadStore


def test_detects_email_and_contact_prompt() -> None:
    signal = LeadDetector(FakeLeadStore(), demo_workspace_id="demo").detect("Please email me at Jane@Example.com")
    assert signal is not None
    assert signal.email == "jane@example.com"
    assert signal.intent_prompt is True
    assert signal.reachable is True


def test_detects_phone_numbers_but_not_short_digit_runs() -> None:
    detector = LeadDetector(FakeLeadStore(), demo_workspace_id="demo")
    signal = detector.detect("You can reach me on +1 (555) 123-4567")
    assert signal is not None
    assert signal.phone == "+1 (555) 123-4567"

    assert detector.detect("My order 12345 arrived in 2024") is None


@pytest.mark.parametrize(
    "text",
    [
        "My order from 2024-06-15 never arrived",
        "Order 10234567 is late",
        "Tracking 1Z 999 AA1 01 2345 6784 shows nothing",
        "Invoice 2024.06.15-0001 was charged twice",
    ],
)
def test_dates_and_order_ids_are_not_phone_numbers(text: str) -> None:
    assert LeadDetector(FakeLeadStore(), demo_workspace_id="demo").detect(text) is None


@pytest.mark.parametrize("text", ["call 555-123-4567", "555.123.4567 works", "ring +44 207 123 4567"])
def test_common_phone_layouts_are_detected(text: str) -> None:
    signal = LeadDetector(FakeLeadStore(), demo_workspace_id="demo").detect(text)
    assert signal is not None and signal.phone is not None


def test_intent_keywords_are_capped() -> None:
    text = "pricing price plan plans buy purchase trial subscribe integration support cost"
    keywords = extract_intent_keywords(text)
    assert len(keywords) == MAX_INTENT_KEYWORDS
    assert keywords[0] == "pricing"
    assert extract_intent_keywords("") == []


def test_name_and_company_come_from_user_turns() -> None:
    turns = (
        ChatTurn(role="user", content="Hi, my name is Jane Doe from Acme Corp."),
        ChatTurn(role="bot", content="I'm Bot from Example Inc."),
    )
    assert derive_name_company(turns) == ("Jane Doe", "Acme Corp")


@pytest.mark.asyncio
async def test_capture_stores_reachable_lead_as_new() -> None:
    store = FakeLeadStore()
    detector = LeadDetector(store, demo_workspace_id="demo")
    conversation = (
        ChatTurn(role="user", content="Hi, my name is Jane Doe from Acme Corp."),
        ChatTurn(role="user", content="What does pricing look like? Email jane@acme.io"),
    )

    lead = await detector.capture("ws-1", conversation[-1].content, conversation=conversation)
    assert lead is not None
    assert store.saved == [lead]
    assert lead.workspace_id == "ws-1"
    assert lead.status == "new"
    assert lead.origin == "subscriber"
    assert lead.email == "jane@acme.io"
    assert lead.name == "Jane Doe"
    assert lead.company == "Acme Corp"
    assert lead.intent_keywords == ("pricing",)


@pytest.mark.asyncio
async def test_contact_request_without_details_is_incomplete() -> None:
    store = FakeLeadStore()
    lead = await LeadDetector(store, demo_workspace_id="demo").capture("ws-1", "Can someone contact me?")
    assert lead is not None
    assert lead.status == "incomplete"
    assert lead.email is None and lead.phone is None


@pytest.mark.asyncio
async def test_demo_and_plain_messages_store_nothing() -> None:
    store = FakeLeadStore()
    detector = LeadDetector(store, demo_workspace_id="demo")
    assert await detector.capture("demo", "email me at jane@acme.io") is None
    assert await detector.capture("", "email me at jane@acme.io") is None
    assert await detector.capture("ws-1", "How do refunds work?") is None
    assert store.saved == []
