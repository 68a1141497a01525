from datetime import datetime

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from oauth_bridge.common.utils import utcnow
from oauth_bridge.models.persistance.auth import (
    AccessToken,
    AuthorizationCode,
    Client,
    OAuthState,
)


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------

async def create_client(
    db: AsyncSession,
    *,
    client_id: str,
    issued_at: int,
    client_name: str | None,
    redirect_uris: list[str],
    grant_types: list[str],
    response_types: list[str],
) -> Client:
    client = Client(
        client_id=client_id,
        client_id_issued_at=issued_at,
        client_name=client_name,
        redirect_uris=redirect_uris,
        grant_types=grant_types,
        response_types=response_types,
        token_endpoint_auth_method="none",
    )

    db.add(client)
    await db.commit()
    await db.refresh(client)
    return client


async def get_client_by_id(
    db: AsyncSession,
    client_id: str,
) -> Client | None:
    stmt = select(Client).where(Client.client_id == client_id)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Authorization states
# ---------------------------------------------------------------------------

async def create_state(
    db: AsyncSession,
    *,
    state: str,
    client_id: str,
    redirect_uri: str,
    client_state: str,
    pkce_challenge: str | None,
    pkce_method: str | None,
    expires_at: datetime,
) -> OAuthState:
    record = OAuthState(
        state=state,
        client_id=client_id,
        redirect_uri=redirect_uri,
        client_state=client_state,
        pkce_challenge=pkce_challenge,
        pkce_method=pkce_method,
        expires_at=expires_at,
    )

    db.add(record)
    await db.commit()
    return record


async def consume_state(
    db: AsyncSession,
    state: str,
) -> OAuthState | None:
    """Load an unexpired state and delete it; only one caller can win."""
    stmt = select(OAuthState).where(
        OAuthState.state == state,
        OAuthState.expires_at > utcnow(),
    )
    record = (await db.execute(stmt)).scalar_one_or_none()
    if record is None:
        return None

    result = await db.execute(
        delete(OAuthState)
        .where(OAuthState.state == state)
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    if result.rowcount != 1:
        return None
    return record


# ---------------------------------------------------------------------------
# Authorization codes
# ---------------------------------------------------------------------------

async def create_auth_code(
    db: AsyncSession,
    *,
    code: str,
    user_id: str,
    client_id: str,
    redirect_uri: str,
    pkce_challenge: str | None,
    pkce_method: str | None,
    scope: str,
    expires_at: datetime,
) -> AuthorizationCode:
    record = AuthorizationCode(
        code=code,
        user_id=user_id,
        client_id=client_id,
        redirect_uri=redirect_uri,
        pkce_challenge=pkce_challenge,
        pkce_method=pkce_method,
        scope=scope,
        expires_at=expires_at,
    )

    db.add(record)
    await db.commit()
    return record


async def consume_auth_code(
    db: AsyncSession,
    code: str,
) -> AuthorizationCode | None:
    """
    Select an unexpired, unused code and mark it used in one transaction.

    The update is conditional on ``used_at IS NULL`` so concurrent redemptions
    of the same code produce exactly one winner.
    """
    now = utcnow()
    stmt = select(AuthorizationCode).where(
        AuthorizationCode.code == code,
        AuthorizationCode.expires_at > now,
        AuthorizationCode.used_at.is_(None),
    )
    record = (await db.execute(stmt)).scalar_one_or_none()
    if record is None:
        await db.commit()
        return None

    result = await db.execute(
        update(AuthorizationCode)
        .where(
            AuthorizationCode.code == code,
            AuthorizationCode.used_at.is_(None),
        )
        .values(used_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    if result.rowcount != 1:
        return None
    return record


# ---------------------------------------------------------------------------
# Access tokens
# ---------------------------------------------------------------------------

async def create_access_token(
    db: AsyncSession,
    *,
    token: str,
    user_id: str,
    scope: str,
    expires_at: datetime,
) -> AccessToken:
    record = AccessToken(
        token=token,
        user_id=user_id,
        scope=scope,
        expires_at=expires_at,
    )

    db.add(record)
    await db.commit()
    return record


async def get_valid_access_token(
    db: AsyncSession,
    token: str,
) -> AccessToken | None:
    stmt = select(AccessToken).where(
        AccessToken.token == token,
        AccessToken.expires_at > utcnow(),
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Cleanup
# ---------------------------------------------------------------------------

async def delete_expired_oauth_data(
    db: AsyncSession,
    *,
    stale_used_cutoff: datetime,
) -> dict[str, int]:
    now = utcnow()

    states = await db.execute(
        delete(OAuthState)
        .where(OAuthState.expires_at < now)
        .execution_options(synchronize_session=False)
    )
    codes = await db.execute(
        delete(AuthorizationCode).where(
            or_(
                AuthorizationCode.expires_at < now,
                and_(
                    AuthorizationCode.used_at.is_not(None),
                    AuthorizationCode.used_at < stale_used_cutoff,
                ),
            )
        )
        .execution_options(synchronize_session=False)
    )
    tokens = await db.execute(
        delete(AccessToken)
        .where(AccessToken.expires_at < now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    return {
        "oauth_states": states.rowcount or 0,
        "authorization_codes": codes.rowcount or 0,
        "access_tokens": tokens.rowcount or 0,
    }
