"""Bearer token handling for the identity supplied by the authentication provider."""
from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .errors import Unauthenticated

logger = logging.getLogger(__name__)

_security = HTTPBearer(auto_error=False)

ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
DEFAULT_TOKEN_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "1440"))

_PLACEHOLDER_VALUES = {"changeme", "change-me", "placeholder", "example", "sample", "your-key-here"}


class MissingSecretError(RuntimeError):
    """Raised when a required secret environment variable is not set."""


def require_secret(name: str) -> str:
    """Return a trimmed secret value or raise :class:`MissingSecretError`."""

    value = (os.getenv(name) or "").strip()
    if not value or value.lower() in _PLACEHOLDER_VALUES:
        raise MissingSecretError(f"Environment variable {name} is required and must not use placeholder defaults")
    return value


@lru_cache(maxsize=1)
def _get_jwt_secret() -> str:
    try:
        return require_secret("JWT_SECRET_KEY")
    except MissingSecretError as exc:
        raise RuntimeError(str(exc)) from exc


def create_access_token(uid: str, *, expires_minutes: Optional[int] = None) -> str:
    """Create a signed JWT whose subject is ``uid``."""

    expire_delta = timedelta(minutes=expires_minutes or DEFAULT_TOKEN_MINUTES)
    now = datetime.now(timezone.utc)
    payload = {"sub": uid, "exp": now + expire_delta, "iat": now}
    return jwt.encode(payload, _get_jwt_secret(), algorithm=ALGORITHM)


def decode_access_token(token: str) -> str:
    """Decode and validate a JWT, returning the embedded uid."""

    try:
        payload = jwt.decode(token, _get_jwt_secret(), algorithms=[ALGORITHM])
    except JWTError as exc:
        raise Unauthenticated("Invalid token") from exc

    subject = payload.get("sub")
    if not subject or not isinstance(subject, str) or "/" in subject:
        raise Unauthenticated("Invalid token payload")
    return subject


async def get_current_uid(
    credentials: HTTPAuthorizationCredentials | None = Depends(_security),
) -> str:
    """Resolve the caller's uid from the bearer token."""

    if not credentials or credentials.scheme.lower() != "bearer":
        raise Unauthenticated("Missing bearer token")
    return decode_access_token(credentials.credentials)


__all__ = [
    "MissingSecretError",
    "require_secret",
    "create_access_token",
    "decode_access_token",
    "get_current_uid",
]
