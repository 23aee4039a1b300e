import datetime as dt
import logging
import uuid

import jwt
from fastapi import Depends, Request, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from .config import settings
from .database import get_db
from .errors import Unauthorized
from .models import User


logger = logging.getLogger("notes.auth")

bearer_scheme = HTTPBearer(auto_error=False)


def create_access_token(user_id: str, email: str) -> str:
    now = dt.datetime.now(dt.timezone.utc)
    payload = {
        "sub": user_id,
        "email": email,
        "iat": int(now.timestamp()),
        "exp": int((now + settings.jwt_expires_delta).timestamp()),
        "iss": settings.JWT_ISSUER,
        "aud": settings.JWT_AUDIENCE,
    }
    # Sign with current secret (first in list)
    return jwt.encode(payload, settings.JWT_SECRETS[0], algorithm="HS256")


def decode_access_token(token: str) -> dict:
    """Try every configured secret (rotation). Raises jwt.InvalidTokenError."""
    options = {"require": ["exp", "iat", "sub"], "verify_aud": settings.JWT_VALIDATE_AUD}
    last_err: jwt.InvalidTokenError | None = None
    for secret in settings.JWT_SECRETS:
        try:
            return jwt.decode(
                token,
                secret,
                algorithms=["HS256"],
                audience=(settings.JWT_AUDIENCE if settings.JWT_VALIDATE_AUD else None),
                issuer=(settings.JWT_ISSUER if settings.JWT_VALIDATE_ISS else None),
                leeway=settings.JWT_CLOCK_SKEW_SECS,
                options=options,
            )
        except jwt.ExpiredSignatureError:
            raise
        except jwt.InvalidTokenError as e:
            last_err = e
    raise last_err or jwt.InvalidTokenError("No JWT secret configured")


def set_session_cookie(response: Response, token: str) -> None:
    if not settings.SESSION_COOKIE_ENABLED:
        return
    response.set_cookie(
        key=settings.SESSION_COOKIE_NAME,
        value=token,
        httponly=True,
        secure=settings.SESSION_COOKIE_SECURE,
        samesite=settings.SESSION_COOKIE_SAMESITE,
        max_age=int(settings.jwt_expires_delta.total_seconds()),
        path="/",
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(settings.SESSION_COOKIE_NAME, path="/")


def _presented_credential(request: Request, creds: HTTPAuthorizationCredentials | None) -> str | None:
    if creds is not None and creds.credentials:
        return creds.credentials
    if request.headers.get("authorization"):
        # Present but not "Bearer <token>".
        return None
    if settings.SESSION_COOKIE_ENABLED:
        return request.cookies.get(settings.SESSION_COOKIE_NAME) or None
    return None


def get_current_user(
    request: Request,
    creds: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> User:
    token = _presented_credential(request, creds)
    if not token:
        raise Unauthorized("Access token required", code="missing_credential")
    try:
        payload = decode_access_token(token)
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Token expired", code="invalid_credential")
    except jwt.InvalidTokenError:
        raise Unauthorized("Invalid or expired token", code="invalid_credential")
    user_id = payload.get("sub")
    try:
        uid = uuid.UUID(str(user_id))
    except ValueError:
        raise Unauthorized("Invalid token payload", code="invalid_credential")
    user = db.get(User, uid)
    if user is None:
        logger.info("Token for unknown user id=%s rejected", uid)
        raise Unauthorized("Invalid or expired token", code="invalid_credential")
    request.state.user_id = user.id
    return user


def session_subject(request: Request) -> str | None:
    """Subject of a valid session token on the request. No database lookup."""
    scheme, _, value = request.headers.get("authorization", "").partition(" ")
    creds = None
    if scheme.lower() == "bearer" and value.strip():
        creds = HTTPAuthorizationCredentials(scheme=scheme, credentials=value.strip())
    token = _presented_credential(request, creds)
    if not token:
        return None
    try:
        payload = decode_access_token(token)
    except jwt.InvalidTokenError:
        return None
    sub = payload.get("sub")
    return str(sub) if sub else None
