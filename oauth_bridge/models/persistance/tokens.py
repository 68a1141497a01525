from datetime import datetime

from sqlalchemy import String, Text, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from oauth_bridge.common.utils import utcnow
from oauth_bridge.core.db import Base


class UpstreamToken(Base):
    """Encrypted upstream credential pair, one row per internal user."""

    __tablename__ = "upstream_tokens"

    user_id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
    )

    enc_access_token: Mapped[str] = mapped_column(Text, nullable=False)
    enc_refresh_token: Mapped[str] = mapped_column(Text, nullable=False)

    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
