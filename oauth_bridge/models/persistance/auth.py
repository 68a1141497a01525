from datetime import datetime

from sqlalchemy import (
    String,
    Integer,
    Text,
    JSON,
    DateTime,
)
from sqlalchemy.orm import Mapped, mapped_column

from oauth_bridge.common.utils import utcnow
from oauth_bridge.core.db import Base


class Client(Base):
    __tablename__ = "oauth_clients"

    # OAuth identifiers
    client_id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        index=True,
    )

    client_id_issued_at: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    # Metadata
    client_name: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    # Registered metadata (JSON lists)
    redirect_uris: Mapped[list[str]] = mapped_column(
        JSON,
        nullable=False,
    )

    grant_types: Mapped[list[str]] = mapped_column(
        JSON,
        nullable=False,
    )

    response_types: Mapped[list[str]] = mapped_column(
        JSON,
        nullable=False,
    )

    token_endpoint_auth_method: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default="none",
    )


class OAuthState(Base):
    """Correlates one downstream /authorize call with our upstream round-trip."""

    __tablename__ = "oauth_states"

    state: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
    )

    client_id: Mapped[str] = mapped_column(String(64), nullable=False)
    redirect_uri: Mapped[str] = mapped_column(Text, nullable=False)
    client_state: Mapped[str] = mapped_column(Text, nullable=False, default="")

    pkce_challenge: Mapped[str | None] = mapped_column(Text, nullable=True)
    pkce_method: Mapped[str | None] = mapped_column(String(16), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)


class AuthorizationCode(Base):
    __tablename__ = "auth_codes"

    code: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
    )

    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    client_id: Mapped[str] = mapped_column(String(64), nullable=False)
    redirect_uri: Mapped[str] = mapped_column(Text, nullable=False)

    pkce_challenge: Mapped[str | None] = mapped_column(Text, nullable=True)
    pkce_method: Mapped[str | None] = mapped_column(String(16), nullable=True)

    scope: Mapped[str] = mapped_column(Text, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    used_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class AccessToken(Base):
    __tablename__ = "access_tokens"

    token: Mapped[str] = mapped_column(
        String(128),
        primary_key=True,
    )

    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    scope: Mapped[str] = mapped_column(Text, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
