from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from chatdesk.domain.models import Lead
from chatdesk.persistence.guards import require_workspace_id


async def insert_lead(
    session: AsyncSession,
    *,
    workspace_id: str,
    first_message: str,
    email: str | None,
    phone: str | None,
    name: str | None,
    company: str | None,
    intent_keywords: list[str],
    origin: str,
    status: str,
) -> Lead:
    require_workspace_id(workspace_id)
    lead = Lead(
        workspace_id=workspace_id,
        first_message=first_message,
        email=email,
        phone=phone,
        name=name,
        company=company,
        intent_keywords=intent_keywords,
        origin=origin,
        status=status,
    )
    session.add(lead)
    await session.flush()
    return lead

