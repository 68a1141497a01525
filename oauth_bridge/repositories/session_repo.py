from datetime import datetime

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from oauth_bridge.common.utils import utcnow
from oauth_bridge.models.persistance.sessions import McpSession


async def insert_session(
    db: AsyncSession,
    *,
    session_id: str,
    user_id: str,
    expires_at: datetime,
) -> McpSession:
    record = McpSession(
        session_id=session_id,
        user_id=user_id,
        created_at=utcnow(),
        expires_at=expires_at,
        terminated_at=None,
    )

    db.add(record)
    await db.commit()
    return record


async def get_session_by_id(
    db: AsyncSession,
    session_id: str,
) -> McpSession | None:
    stmt = select(McpSession).where(McpSession.session_id == session_id)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def mark_session_terminated(
    db: AsyncSession,
    session_id: str,
) -> None:
    await db.execute(
        update(McpSession)
        .where(McpSession.session_id == session_id)
        .values(terminated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def find_expired_session_ids(
    db: AsyncSession,
    *,
    stale_termination_cutoff: datetime,
) -> list[str]:
    stmt = select(McpSession.session_id).where(
        or_(
            McpSession.expires_at < utcnow(),
            and_(
                McpSession.terminated_at.is_not(None),
                McpSession.terminated_at < stale_termination_cutoff,
            ),
        )
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def delete_sessions_by_ids(
    db: AsyncSession,
    session_ids: list[str],
) -> int:
    if not session_ids:
        return 0

    result = await db.execute(
        delete(McpSession)
        .where(McpSession.session_id.in_(session_ids))
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount or 0
