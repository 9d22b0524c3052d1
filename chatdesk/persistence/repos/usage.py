from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from chatdesk.domain.models import UsageCounter
from chatdesk.persistence.guards import workspace_predicate


async def get_conversation_count(session: AsyncSession, workspace_id: str, month_key: str) -> int:
    result = await session.execute(
        select(UsageCounter.conversation_count).where(
            workspace_predicate(UsageCounter, workspace_id),
            UsageCounter.month_key == month_key,
        )
    )
    value = result.scalar_one_or_none()
    return int(value or 0)


async def increment_conversation_count(session: AsyncSession, workspace_id: str, month_key: str) -> None:
    # Upsert with count + 1 in SQL so concurrent increments never lose or undo each other.
    stmt = insert(UsageCounter).values(
        workspace_id=workspace_id,
        month_key=month_key,
        conversation_count=1,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[UsageCounter.workspace_id, UsageCounter.month_key],
        set_={
            "conversation_count": UsageCounter.conversation_count + 1,
            "updated_at": func.now(),
        },
    )
    await session.execute(stmt)
