from datetime import datetime

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from oauth_bridge.common.utils import utcnow
from oauth_bridge.models.persistance.tokens import UpstreamToken

_UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


async def upsert_upstream_token(
    db: AsyncSession,
    *,
    user_id: str,
    enc_access_token: str,
    enc_refresh_token: str,
    expires_at: datetime,
) -> None:
    dialect = db.get_bind().dialect.name
    insert = _UPSERT_DIALECTS.get(dialect)
    if insert is None:
        raise NotImplementedError(f"Upsert is not supported for dialect '{dialect}'")

    now = utcnow()
    stmt = insert(UpstreamToken).values(
        user_id=user_id,
        enc_access_token=enc_access_token,
        enc_refresh_token=enc_refresh_token,
        expires_at=expires_at,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[UpstreamToken.user_id],
        set_={
            "enc_access_token": stmt.excluded.enc_access_token,
            "enc_refresh_token": stmt.excluded.enc_refresh_token,
            "expires_at": stmt.excluded.expires_at,
            "updated_at": now,
        },
    )

    await db.execute(stmt)
    await db.commit()


async def get_upstream_token(
    db: AsyncSession,
    user_id: str,
) -> UpstreamToken | None:
    stmt = select(UpstreamToken).where(UpstreamToken.user_id == user_id)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()
