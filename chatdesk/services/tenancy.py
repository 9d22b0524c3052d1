from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Protocol

from chatdesk.core.config import get_settings
from chatdesk.core.errors import AccessDeniedError
from chatdesk.domain.state import TenantContext
from chatdesk.persistence.db import session_scope
from chatdesk.persistence.repos.profiles import is_workspace_member
from chatdesk.services.audit import record_event
from chatdesk.services.background import BackgroundDispatcher
from chatdesk.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

BOT_ACCESS_DENIED = "BOT_ACCESS_DENIED"
WORKSPACE_ACCESS_DENIED = "WORKSPACE_ACCESS_DENIED"

AuditRecorder = Callable[..., Awaitable[None]]


class WorkspaceOwnershipStore(Protocol):
    async def user_owns_workspace(self, user_id: str, workspace_id: str) -> bool:
        ...


class SqlWorkspaceOwnershipStore:
    async def user_owns_workspace(self, user_id: str, workspace_id: str) -> bool:
        async with session_scope("workspace_ownership_lookup") as session:
            return await is_workspace_member(session, user_id, workspace_id)


class TenantResolver:
    def __init__(
        self,
        ownership: WorkspaceOwnershipStore,
        dispatcher: BackgroundDispatcher,
        *,
        audit: AuditRecorder | None = None,
        demo_workspace_id: str | None = None,
    ) -> None:
        self._ownership = ownership
        self._dispatcher = dispatcher
        self._audit = audit or record_event
        self._demo_workspace_id = demo_workspace_id or get_settings().demo_workspace_id

    @property
    def demo_workspace_id(self) -> str:
        return self._demo_workspace_id

    async def resolve(
        self,
        tenant: TenantContext,
        *,
        bot_id: str | None = None,
        workspace_id: str | None = None,
        request_id: str | None = None,
    ) -> str:
        # A bot id is a workspace id; only the caller's own bot or the demo bot may be addressed.
        target = tenant.workspace_id
        if bot_id:
            if bot_id == self._demo_workspace_id:
                target = self._demo_workspace_id
            elif bot_id != tenant.workspace_id:
                self._deny(tenant, BOT_ACCESS_DENIED, bot_id, request_id)
                raise AccessDeniedError("Bot not found or access denied", code=BOT_ACCESS_DENIED)

        if workspace_id and workspace_id != tenant.workspace_id:
            if not await self._owns(tenant, workspace_id, request_id):
                self._deny(tenant, WORKSPACE_ACCESS_DENIED, workspace_id, request_id)
                raise AccessDeniedError("Workspace access denied", code=WORKSPACE_ACCESS_DENIED)
            target = workspace_id

        return target

    async def _owns(self, tenant: TenantContext, workspace_id: str, request_id: str | None) -> bool:
        try:
            return await self._ownership.user_owns_workspace(tenant.user_id, workspace_id)
        except Exception as exc:  # noqa: BLE001 - an unverifiable claim is a denied claim
            logger.error(
                "workspace_ownership_check_failed request_id=%s user_id=%s workspace_id=%s",
                request_id,
                tenant.user_id,
                workspace_id,
                exc_info=exc,
            )
            return False

    def _deny(self, tenant: TenantContext, code: str, requested: str, request_id: str | None) -> None:
        logger.warning(
            "tenant_access_denied request_id=%s user_id=%s user_workspace=%s requested=%s code=%s",
            request_id,
            tenant.user_id,
            tenant.workspace_id,
            requested,
            code,
        )
        increment_counter("tenant_access_denied_total")
        self._dispatcher.dispatch(
            "audit_access_denied",
            self._audit(
                workspace_id=tenant.workspace_id,
                actor_type="user",
                actor_id=tenant.user_id,
                event_type="chat.access.denied",
                outcome="failure",
                resource_type="workspace",
                resource_id=requested,
                request_id=request_id,
                metadata=_denied_metadata(code),
                error_code=code,
            ),
        )


def _denied_metadata(code: str) -> dict[str, Any]:
    return {"reason": code.lower()}
