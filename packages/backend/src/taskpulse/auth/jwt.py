"""JWT verification for session sockets.

Learn: Authentication itself belongs to the tracker app. We only need
to turn the token the browser already holds into a stable user id, and
to refuse sockets whose token doesn't belong to the user they ask for.
create_access_token() exists for local development and tests.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from taskpulse.config import settings


class TokenError(Exception):
    """Raised when token creation/verification fails."""


def create_access_token(user_id: str, expires_minutes: Optional[int] = None) -> str:
    """Create a JWT access token."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "type": "access",
        "exp": now + timedelta(
            minutes=expires_minutes or settings.access_token_expire_minutes
        ),
        "iat": now,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def verify_token(token: str) -> dict:
    """Verify and decode a JWT token.

    Returns the payload dict on success.
    Raises TokenError on failure.
    """
    try:
        return jwt.decode(
            token, settings.jwt_secret, algorithms=[settings.jwt_algorithm]
        )
    except jwt.ExpiredSignatureError:
        raise TokenError("Token has expired")
    except jwt.InvalidTokenError as e:
        raise TokenError(f"Invalid token: {e}")


def session_user_id(token: str) -> str:
    """Return the user id (`sub`) of a valid access token."""
    payload = verify_token(token)
    if payload.get("type") != "access" or not payload.get("sub"):
        raise TokenError("Not an access token")
    return payload["sub"]
