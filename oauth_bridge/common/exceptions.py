import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

RECONNECT_MESSAGE = (
    "Your upstream account link has expired or was revoked. "
    "Please reconnect your account from your client's connector settings."
)


class OAuthException(Exception):
    error: str = "invalid_request"
    status_code: int = 400

    def __init__(
        self,
        error: str | None = None,
        description: str | None = None,
        status_code: int | None = None,
        headers: dict | None = None,
    ):
        super().__init__(description or error or self.error)
        self.error = error or self.error
        self.description = description
        self.status_code = status_code or self.status_code
        self.headers = headers or {}


class AppException(Exception):
    code: str = "bad_request"
    status_code: int = 400

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        headers: dict | None = None,
        code: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code or self.status_code
        self.headers = headers or {}
        self.code = code or self.code


# ---------------------------------------------------------------------------
# OAuth flow errors (surfaced as 4xx with an RFC 6749 error code)
# ---------------------------------------------------------------------------

class ClientError(OAuthException):
    error = "invalid_client"


class RedirectMismatch(OAuthException):
    error = "invalid_redirect_uri"


class StateInvalidOrExpired(OAuthException):
    error = "invalid_state"


class GrantInvalid(OAuthException):
    error = "invalid_grant"


class MissingCodeVerifier(GrantInvalid):
    error = "invalid_request"


class InvalidAccessToken(OAuthException):
    error = "invalid_token"
    status_code = 401


# ---------------------------------------------------------------------------
# Upstream / vault errors
# ---------------------------------------------------------------------------

class NoUpstreamAccount(AppException):
    code = "no_upstream_account"
    status_code = 401


class UpstreamUnavailable(AppException):
    code = "upstream_error"
    status_code = 502
    retryable = False


class UpstreamRetryable(UpstreamUnavailable):
    code = "upstream_unavailable"
    retryable = True


class UpstreamRevoked(UpstreamUnavailable):
    code = "upstream_revoked"
    status_code = 401

    def __init__(self, message: str = RECONNECT_MESSAGE, **kwargs):
        super().__init__(message, **kwargs)


# ---------------------------------------------------------------------------
# Persistence / session errors
# ---------------------------------------------------------------------------

class PersistenceFailure(AppException):
    code = "server_error"
    status_code = 500


class SessionError(AppException):
    code = "bad_request"


class SessionNotFound(AppException):
    code = "not_found"
    status_code = 404

    def __init__(self, message: str = "Session not found", **kwargs):
        super().__init__(message, **kwargs)


class SessionForbidden(AppException):
    code = "forbidden"
    status_code = 403

    def __init__(self, message: str = "Session does not belong to this user", **kwargs):
        super().__init__(message, **kwargs)


def attach_exception_handlers(app: FastAPI):

    @app.exception_handler(OAuthException)
    async def oauth_exception_handler(request: Request, exc: OAuthException):
        logger.info(f"[OAUTH] {request.method} {request.url.path} -> {exc.error}: {exc.description}")
        body = {"error": exc.error}

        if exc.description:
            body["error_description"] = exc.description

        return JSONResponse(
            status_code=exc.status_code,
            content=body,
            headers=exc.headers,
        )

    @app.exception_handler(AppException)
    async def app_exception_handler(request: Request, exc: AppException):
        if exc.status_code >= 500:
            logger.error(
                f"[ERROR] {request.method} {request.url.path} -> {exc.code}: {exc.message}",
                exc_info=exc,
            )
            message = "Internal server error"
        else:
            logger.warning(f"[ERROR] {request.method} {request.url.path} -> {exc.code}: {exc.message}")
            message = exc.message

        return JSONResponse(
            status_code=exc.status_code,
            content={
                "status": False,
                "code": exc.code,
                "message": message,
            },
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.error(
            f"[ERROR] Unhandled exception on {request.method} {request.url.path}",
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content={
                "status": False,
                "code": "server_error",
                "message": "Internal server error",
            },
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        messages = []

        for err in exc.errors():
            loc = err.get("loc", [])
            err_type = err.get("type", "")

            where = loc[0] if len(loc) > 0 else "request"
            field = loc[-1] if len(loc) > 1 else "field"

            if err_type == "missing":
                messages.append(f"missing field '{field}' in {where}")
            else:
                messages.append(f"invalid field '{field}' in {where}")

        # remove duplicates while preserving order
        messages = list(dict.fromkeys(messages))

        return JSONResponse(
            status_code=400,
            content={
                "error": "invalid_request",
                "error_description": "Invalid request: " + ", ".join(messages),
            },
        )
