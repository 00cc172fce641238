import logging

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from authcore.auth.claims import Identity
from authcore.auth.service import AuthService, decode_access_token
from authcore.core.deadline import Deadline
from authcore.core.errors import TokenInvalid, Unauthenticated
from authcore.db.session import get_db
from authcore.system.runtime import Runtime, get_runtime

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "


def bearer_token(request: Request) -> str | None:
    """The token from ``Authorization: Bearer <token>``, or None if absent or malformed."""
    header = request.headers.get("Authorization")
    if not header or not header.startswith(BEARER_PREFIX):
        return None
    token = header[len(BEARER_PREFIX):]
    if not token or token != token.strip() or " " in token:
        return None
    return token


def _authenticate(request: Request, runtime: Runtime, token: str) -> Identity:
    try:
        claims = decode_access_token(runtime, token)
    except TokenInvalid as exc:
        logger.info("bearer token rejected: %s %s", type(exc).__name__, exc.detail or "")
        raise
    identity = Identity.from_claims(claims)
    request.state.identity = identity
    request.state.token = token
    return identity


def require_identity(request: Request, runtime: Runtime = Depends(get_runtime)) -> Identity:
    token = bearer_token(request)
    if token is None:
        raise Unauthenticated()
    return _authenticate(request, runtime, token)


def optional_identity(request: Request, runtime: Runtime = Depends(get_runtime)) -> Identity | None:
    token = bearer_token(request)
    if token is None:
        request.state.identity = None
        return None
    return _authenticate(request, runtime, token)


def get_deadline(runtime: Runtime = Depends(get_runtime)) -> Deadline:
    return Deadline(runtime.settings.REQUEST_TIMEOUT_SECONDS)


def get_auth_service(
    db: Session = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
    deadline: Deadline = Depends(get_deadline),
) -> AuthService:
    return AuthService(db, runtime, deadline=deadline)
