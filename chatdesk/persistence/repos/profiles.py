from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from chatdesk.domain.models import ApiKey, Profile, WorkspaceMember


async def get_profile_by_key_hash(session: AsyncSession, key_hash: str) -> tuple[ApiKey, Profile] | None:
    # Join keys to profiles so one round trip resolves both credential and tenant.
    now = datetime.now(timezone.utc)
    stmt = (
        select(ApiKey, Profile)
        .join(Profile, Profile.user_id == ApiKey.user_id)
        .where(ApiKey.key_hash == key_hash)
        .where(ApiKey.revoked_at.is_(None))
        .where((ApiKey.expires_at.is_(None)) | (ApiKey.expires_at > now))
    )
    row = (await session.execute(stmt)).first()
    if row is None:
        return None
    return row[0], row[1]


async def touch_api_key(session: AsyncSession, api_key_id: str) -> None:
    await session.execute(
        update(ApiKey).where(ApiKey.id == api_key_id).values(last_used_at=func.now())
    )


async def is_workspace_member(session: AsyncSession, user_id: str, workspace_id: str) -> bool:
    # Home workspace ownership counts as membership even without an explicit row.
    home = await session.execute(
        select(Profile.user_id).where(Profile.user_id == user_id, Profile.workspace_id == workspace_id)
    )
    if home.first() is not None:
        return True
    member = await session.execute(
        select(WorkspaceMember.user_id).where(
            WorkspaceMember.user_id == user_id,
            WorkspaceMember.workspace_id == workspace_id,
        )
    )
    return member.first() is not None
