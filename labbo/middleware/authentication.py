# labbo/middleware/authentication.py
from typing import Callable, Awaitable, Set, Tuple

from fastapi import Request, status
from fastapi.responses import JSONResponse
from jose import JWTError
from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from labbo.core.config import MEDIA_URL
from labbo.core.security import decode_token, get_token_from_request

# Paths reachable without a session
PUBLIC_PATHS: Set[str] = {
    "/",
    "/health",
    "/ping-mongodb",
    "/docs",
    "/redoc",
    "/openapi.json",
    "/api/v1/auth/token",
    "/api/v1/auth/login",
    "/api/v1/auth/login/mfa",
    "/api/v1/auth/register",
    "/api/v1/auth/logout",
    "/api/v1/auth/verify-email",
    "/api/v1/auth/resend-verification",
    "/api/v1/auth/forgot-password",
    "/api/v1/auth/reset-password",
}

PUBLIC_PREFIXES: Tuple[str, ...] = ("/docs", "/redoc", "/health", MEDIA_URL + "/")


def is_public_path(path: str) -> bool:
    if path in PUBLIC_PATHS or path.rstrip("/") in PUBLIC_PATHS:
        return True
    return path.startswith(PUBLIC_PREFIXES)


def _unauthorized(detail: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={"detail": detail},
        headers={"WWW-Authenticate": "Bearer"},
    )


class AuthMiddleware(BaseHTTPMiddleware):
    """
    Rejects requests to protected paths that carry no valid access token
    (Authorization header or session cookie). The decoded payload is stored on
    request.state for the get_current_user dependency.
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        path = request.url.path
        request_id = getattr(request.state, "request_id", "N/A")

        if request.method == "OPTIONS" or is_public_path(path):
            return await call_next(request)

        token = get_token_from_request(request)
        if not token:
            logger.warning(f"RID:{request_id} Auth failed: no token for protected path {path}.")
            return _unauthorized("Not authenticated")

        try:
            payload = decode_token(token)
        except JWTError as e:
            logger.warning(f"RID:{request_id} Auth failed: invalid token for path {path}. Error: {e}")
            return _unauthorized("Invalid or expired token")

        request.state.token_payload = payload
        request.state.user_id = payload["sub"]
        logger.debug(f"RID:{request_id} Auth ok for user '{payload['sub']}' on {path}.")
        return await call_next(request)
