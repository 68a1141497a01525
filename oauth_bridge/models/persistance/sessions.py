from datetime import datetime

from sqlalchemy import String, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from oauth_bridge.common.utils import utcnow
from oauth_bridge.core.db import Base


class McpSession(Base):
    __tablename__ = "sessions"

    session_id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
    )

    user_id: Mapped[str] = mapped_column(String(64), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    terminated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
