from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from redis.exceptions import ConnectionError as RedisConnectionError

from chatdesk.apps.api.deps import get_chat_service, get_tenant_context
from chatdesk.apps.api.main import create_app
from chatdesk.apps.api.rate_limit import RedisRateLimiter, get_rate_limiter
from chatdesk.core.config import get_settings
from chatdesk.domain.state import TenantContext
from chatdesk.tests.utils.fakes import FakeLeadStore, FakeQuotaStore, Harness, StubRetriever, chunk


TENANT = TenantContext(user_id="u-1", workspace_id="ws-1", subscription_tier="basic")
JUNE = datetime(2026, 6, 3, 9, 30, tzinfo=timezone.utc)
RETURNS = "Items can be returned within 30 days of delivery for a full refund to the original payment method."


def _build_app(harness: Harness, *, tenant: TenantContext | None = TENANT) -> FastAPI:
    app = create_app()
    # Swap production wiring for in-memory collaborators.
    app.dependency_overrides[get_chat_service] = lambda: harness.service
    if tenant is not None:
        app.dependency_overrides[get_tenant_context] = lambda: tenant
    return app


def _user(text: str) -> dict[str, Any]:
    return {"messages": [{"role": "user", "content": text}]}


@pytest.mark.asyncio
async def test_health() -> None:
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_static_answer_streams_with_kb_headers() -> None:
    harness = Harness()
    app = _build_app(harness)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(
            "/v1/chat",
            json=_user("How do I embed the widget on my site?"),
            headers={"X-Request-Id": "req-embed"},
        )
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert response.headers["X-Knowledge-Source"] == "kb"
    assert response.headers["X-Used-Docs"] == "false"
    assert response.headers["X-Fallback"] == "false"
    assert response.headers["X-Cached"] == "false"
    assert response.headers["X-Workspace-ID"] == "ws-1"
    assert response.headers["X-Request-ID"] == "req-embed"
    assert response.headers["X-Response-Time"].endswith("ms")
    assert "</head>" in response.text
    assert harness.llm_calls == 0


@pytest.mark.asyncio
async def test_follow_up_after_embed_answer_is_accepted() -> None:
    harness = Harness()
    app = _build_app(harness)
    question = "How do I embed the widget on my site?"
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        first = await client.post("/v1/chat", json=_user(question))
        assert first.status_code == 200
        assert "<script" in first.text
        follow_up = await client.post(
            "/v1/chat",
            json={
                "messages": [
                    {"role": "user", "content": question},
                    {"role": "bot", "content": first.text},
                    {"role": "user", "content": "Thanks, what about pricing?"},
                ]
            },
        )
    assert follow_up.status_code == 200
    assert follow_up.text


@pytest.mark.asyncio
async def test_document_answer_is_cached_on_repeat() -> None:
    harness = Harness(retriever=StubRetriever([chunk(RETURNS)]))
    app = _build_app(harness)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        first = await client.post("/v1/chat", json=_user("What is the return window for sweaters?"))
        await harness.dispatcher.drain()
        second = await client.post("/chat", json=_user("what is the return window for sweaters?"))

    assert first.status_code == 200
    assert first.headers["X-Knowledge-Source"] == "docs"
    assert first.headers["X-Used-Docs"] == "true"
    assert first.text == "Returns are accepted within 30 days of delivery."
    assert second.status_code == 200
    assert second.headers["X-Cached"] == "true"
    assert second.text == first.text
    assert harness.llm_calls == 1


@pytest.mark.asyncio
async def test_quota_exhausted_workspace_gets_429_but_demo_still_answers() -> None:
    quota_store = FakeQuotaStore()
    quota_store.counts[("ws-1", "2026-06")] = 1000
    harness = Harness(quota_store=quota_store, time_provider=lambda: JUNE)
    app = _build_app(harness)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        denied = await client.post("/v1/chat", json=_user("hi"))
        demo = await client.post("/v1/chat", json={**_user("hi"), "botId": "demo"})

    assert denied.status_code == 429
    body = denied.json()
    assert body["code"] == "QUOTA_EXCEEDED"
    assert body["error"] == "Monthly conversation limit reached"
    assert body["details"] == "Current plan allows 1000 conversations per month. Upgrade for unlimited access."
    assert body["request_id"]
    assert demo.status_code == 200
    assert demo.headers["X-Workspace-ID"] == "demo"
    assert demo.headers["X-Knowledge-Source"] == "general"
    assert demo.headers["X-Fallback"] == "true"


@pytest.mark.asyncio
async def test_foreign_bot_is_forbidden_without_touching_knowledge() -> None:
    harness = Harness(retriever=StubRetriever([chunk(RETURNS)]))
    app = _build_app(harness)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/v1/chat", json={**_user("What is the return window?"), "botId": "ws-other"})
    await harness.dispatcher.drain()

    assert response.status_code == 403
    assert response.json()["code"] == "BOT_ACCESS_DENIED"
    assert harness.retriever.calls == []
    assert harness.llm_calls == 0
    assert harness.audit.events[0]["error_code"] == "BOT_ACCESS_DENIED"


@pytest.mark.asyncio
async def test_unowned_workspace_is_forbidden() -> None:
    harness = Harness(grants={"u-1": {"ws-2"}})
    app = _build_app(harness)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        owned = await client.post("/v1/chat", json={**_user("hi"), "workspaceId": "ws-2"})
        unowned = await client.post("/v1/chat", json={**_user("hi"), "workspaceId": "ws-3"})
    assert owned.status_code == 200
    assert owned.headers["X-Workspace-ID"] == "ws-2"
    assert unowned.status_code == 403
    assert unowned.json()["code"] == "WORKSPACE_ACCESS_DENIED"


@pytest.mark.asyncio
async def test_contact_details_create_a_lead_after_the_response() -> None:
    lead_store = FakeLeadStore()
    harness = Harness(lead_store=lead_store)
    app = _build_app(harness)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/v1/chat", json=_user("I'd like a quote, email me at sam@shop.io"))
    await harness.dispatcher.drain()

    assert response.status_code == 200
    assert len(lead_store.saved) == 1
    lead = lead_store.saved[0]
    assert lead.workspace_id == "ws-1"
    assert lead.email == "sam@shop.io"
    assert lead.status == "new"
    assert "quote" in lead.intent_keywords


@pytest.mark.asyncio
async def test_lead_store_outage_does_not_affect_the_reply() -> None:
    harness = Harness(lead_store=FakeLeadStore(fail=True))
    app = _build_app(harness)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/v1/chat", json=_user("email me at sam@shop.io"))
    await harness.dispatcher.drain()
    assert response.status_code == 200
    assert response.text


@pytest.mark.asyncio
async def test_request_validation_errors() -> None:
    harness = Harness()
    app = _build_app(harness)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        bot_only = await client.post("/v1/chat", json={"messages": [{"role": "bot", "content": "Welcome!"}]})
        empty = await client.post("/v1/chat", json={"messages": []})
        bad_role = await client.post("/v1/chat", json={"messages": [{"role": "system", "content": "x"}]})
        markup = await client.post("/v1/chat", json=_user("<script>alert(1)</script>"))

    assert bot_only.status_code == 400
    assert bot_only.json()["code"] == "NO_USER_MESSAGE"
    assert empty.status_code == 400
    assert empty.json()["code"] == "INVALID_REQUEST"
    assert "errors" in empty.json()["details"]
    assert bad_role.status_code == 400
    assert bad_role.json()["code"] == "INVALID_REQUEST"
    assert markup.status_code == 400
    assert markup.json()["code"] == "INVALID_INPUT"
    assert harness.llm_calls == 0


@pytest.mark.asyncio
async def test_session_header_reports_new_sessions() -> None:
    harness = Harness()
    app = _build_app(harness)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        first = await client.post("/v1/chat", json=_user("hi"), headers={"X-Session-Id": "visit-1"})
        second = await client.post("/v1/chat", json=_user("hi"), headers={"X-Session-Id": "visit-1"})
        none = await client.post("/v1/chat", json=_user("hi"))
    assert first.headers["X-Session-New"] == "true"
    assert second.headers["X-Session-New"] == "false"
    assert "X-Session-New" not in none.headers


@pytest.mark.asyncio
async def test_anonymous_callers_are_bound_to_demo() -> None:
    harness = Harness()
    app = _build_app(harness, tenant=None)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/v1/chat", json=_user("hi"))
    assert response.status_code == 200
    assert response.headers["X-Workspace-ID"] == "demo"


@pytest.mark.asyncio
async def test_anonymous_callers_are_rejected_when_demo_is_closed(monkeypatch) -> None:
    monkeypatch.setenv("DEMO_ANONYMOUS_ENABLED", "false")
    get_settings.cache_clear()
    harness = Harness()
    app = _build_app(harness, tenant=None)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/v1/chat", json=_user("hi"))
    assert response.status_code == 401
    assert response.json()["code"] == "AUTH_UNAUTHORIZED"


@pytest.mark.asyncio
async def test_dev_bypass_headers_identify_the_tenant(monkeypatch) -> None:
    monkeypatch.setenv("AUTH_DEV_BYPASS", "true")
    get_settings.cache_clear()
    harness = Harness()
    app = _build_app(harness, tenant=None)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(
            "/v1/chat",
            json=_user("hi"),
            headers={"X-Workspace-Id": "ws-dev", "X-User-Id": "u-dev"},
        )
    assert response.status_code == 200
    assert response.headers["X-Workspace-ID"] == "ws-dev"


@pytest.mark.asyncio
async def test_metrics_expose_answer_counters() -> None:
    harness = Harness()
    app = _build_app(harness)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        await client.post("/v1/chat", json=_user("How do I embed the widget on my site?"))
        metrics = await client.get("/v1/metrics")
    assert metrics.status_code == 200
    payload = metrics.json()
    assert payload["counters"]["answers_kb_total"] == 1
    assert payload["chat_p95_latency_ms"] is not None


class _UnreachableRedis:
    async def eval(self, *_args: object) -> list[object]:
        raise RedisConnectionError("connection refused")


@pytest.mark.asyncio
async def test_chat_is_rate_limited_per_caller(monkeypatch) -> None:
    monkeypatch.setenv("RL_CALLER_CHAT_BURST", "2")
    get_settings.cache_clear()
    harness = Harness()
    app = _build_app(harness)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        allowed = [await client.post("/v1/chat", json=_user("hi")) for _ in range(2)]
        throttled = await client.post("/v1/chat", json=_user("hi"))

    assert [response.status_code for response in allowed] == [200, 200]
    assert throttled.status_code == 429
    body = throttled.json()
    assert body["code"] == "RATE_LIMITED"
    assert body["details"]["scope"] == "caller"
    assert int(throttled.headers["Retry-After"]) >= 1
    # Throttled turns never reach quota or the model.
    assert harness.llm_calls == 2
    assert harness.quota_store.reads == 2


@pytest.mark.asyncio
async def test_rate_limit_store_outage_fails_open_by_default() -> None:
    harness = Harness()
    app = _build_app(harness)
    app.dependency_overrides[get_rate_limiter] = lambda: RedisRateLimiter(_UnreachableRedis())  # type: ignore[arg-type]
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/v1/chat", json=_user("hi"))
    assert response.status_code == 200
    assert response.headers["X-RateLimit-Status"] == "degraded"


@pytest.mark.asyncio
async def test_rate_limit_store_outage_can_fail_closed(monkeypatch) -> None:
    monkeypatch.setenv("RL_FAIL_MODE", "closed")
    get_settings.cache_clear()
    harness = Harness()
    app = _build_app(harness)
    app.dependency_overrides[get_rate_limiter] = lambda: RedisRateLimiter(_UnreachableRedis())  # type: ignore[arg-type]
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/v1/chat", json=_user("hi"))
    assert response.status_code == 503
    assert response.json()["code"] == "RATE_LIMIT_UNAVAILABLE"
    assert harness.llm_calls == 0
