from __future__ import annotations

from functools import lru_cache

from fastapi import HTTPException, Request, status
from sqlalchemy.exc import SQLAlchemyError

from chatdesk.agent.cascade import (
    DocumentRetrievalStrategy,
    GeneralFallbackStrategy,
    KnowledgeCascade,
    StaticKnowledgeStrategy,
)
from chatdesk.agent.generation import GeneralAnswerGenerator, GroundedAnswerGenerator
from chatdesk.core.config import get_settings
from chatdesk.domain.state import TenantContext
from chatdesk.knowledge.static import StaticKnowledgeBase
from chatdesk.persistence.db import SessionLocal
from chatdesk.persistence.repos.profiles import get_profile_by_key_hash, touch_api_key
from chatdesk.providers.retrieval.local_pgvector import LocalPgVectorRetriever
from chatdesk.services.answer_cache import build_answer_cache
from chatdesk.services.api_keys import hash_api_key
from chatdesk.services.background import BackgroundDispatcher
from chatdesk.services.chat import ChatService
from chatdesk.services.leads import LeadDetector, SqlLeadStore
from chatdesk.services.quota import QuotaLedger, SqlQuotaStore
from chatdesk.services.sessions import SessionRegistry
from chatdesk.services.tenancy import SqlWorkspaceOwnershipStore, TenantResolver


ANONYMOUS_USER_ID = "anonymous"


def _auth_error(message: str) -> HTTPException:
    # Normalize auth errors for clients without leaking internal details.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


def _tenant_from_dev_headers(request: Request) -> TenantContext | None:
    # Allow header-declared identities only when explicitly enabled for local dev.
    workspace_id = request.headers.get("X-Workspace-Id")
    if not workspace_id:
        return None
    return TenantContext(
        user_id=request.headers.get("X-User-Id") or f"dev-{workspace_id}",
        workspace_id=workspace_id,
        subscription_tier=(request.headers.get("X-Subscription-Tier") or "basic").lower(),
    )


def _anonymous_demo_tenant() -> TenantContext:
    settings = get_settings()
    return TenantContext(user_id=ANONYMOUS_USER_ID, workspace_id=settings.demo_workspace_id)


async def _touch_last_used(api_key_id: str) -> None:
    async with SessionLocal() as session:
        try:
            await touch_api_key(session, api_key_id)
            await session.commit()
        except SQLAlchemyError:
            await session.rollback()
            raise


async def _tenant_from_api_key(raw_key: str) -> TenantContext:
    try:
        async with SessionLocal() as session:
            row = await get_profile_by_key_hash(session, hash_api_key(raw_key))
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "AUTH_UNAVAILABLE", "message": "Authentication is temporarily unavailable"},
        ) from exc
    if row is None:
        raise _auth_error("Invalid API key")
    api_key, profile = row
    get_dispatcher().dispatch("api_key_touch", _touch_last_used(api_key.id))
    return TenantContext(
        user_id=profile.user_id,
        workspace_id=profile.workspace_id,
        subscription_tier=profile.subscription_tier or "basic",
    )


async def get_tenant_context(request: Request) -> TenantContext:
    # Identity comes from credentials; client-declared workspace ids are verified later.
    settings = get_settings()
    bearer_token = _parse_bearer_token(request.headers.get(settings.auth_api_key_header))
    if bearer_token and settings.auth_enabled:
        return await _tenant_from_api_key(bearer_token)
    if settings.auth_dev_bypass:
        tenant = _tenant_from_dev_headers(request)
        if tenant is not None:
            return tenant
    if settings.demo_anonymous_enabled:
        return _anonymous_demo_tenant()
    raise _auth_error("Missing API key")


@lru_cache
def get_dispatcher() -> BackgroundDispatcher:
    return BackgroundDispatcher()


@lru_cache
def get_session_registry() -> SessionRegistry:
    return SessionRegistry()


@lru_cache
def get_chat_service() -> ChatService:
    # Wire the production collaborators once per process.
    settings = get_settings()
    dispatcher = get_dispatcher()
    cascade = KnowledgeCascade(
        [
            StaticKnowledgeStrategy(StaticKnowledgeBase()),
            DocumentRetrievalStrategy(LocalPgVectorRetriever(SessionLocal), GroundedAnswerGenerator()),
            GeneralFallbackStrategy(GeneralAnswerGenerator()),
        ],
        snippet_max_chars=settings.snippet_max_chars,
    )
    return ChatService(
        tenants=TenantResolver(SqlWorkspaceOwnershipStore(), dispatcher),
        cache=build_answer_cache(),
        quota=QuotaLedger(SqlQuotaStore(), dispatcher),
        cascade=cascade,
        leads=LeadDetector(SqlLeadStore()),
        dispatcher=dispatcher,
        sessions=get_session_registry(),
        context_window=settings.chat_context_window,
    )


def reset_services() -> None:
    # Drop cached singletons so tests and reloads pick up fresh settings.
    get_chat_service.cache_clear()
    get_session_registry.cache_clear()
    get_dispatcher.cache_clear()
