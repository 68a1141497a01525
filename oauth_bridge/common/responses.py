from typing import Any, Optional

from pydantic import BaseModel


class AppResponse(BaseModel):
    """
    Envelope returned by every tool on the per-session server.

    ``status`` is False when the upstream account is missing or unusable;
    ``data`` then says whether retrying can help.
    """
    status: bool
    message: str
    data: Optional[Any] = None
