import secrets
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse


def utcnow() -> datetime:
    """Naive UTC now; every timestamp column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def expires_in(seconds: int) -> datetime:
    return utcnow() + timedelta(seconds=seconds)


def new_token(nbytes: int = 32) -> str:
    return secrets.token_urlsafe(nbytes)


def is_absolute_uri(uri: str) -> bool:
    parsed = urlparse(uri)
    return bool(parsed.scheme and parsed.netloc)


def add_query_params(url: str, params: dict) -> str:
    """Append params to url, keeping any query string it already carries."""
    parsed = urlparse(url)
    query = parse_qsl(parsed.query, keep_blank_values=True)
    query.extend((k, v) for k, v in params.items() if v is not None)
    return urlunparse(parsed._replace(query=urlencode(query)))
