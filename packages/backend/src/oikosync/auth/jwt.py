"""JWT verification for session tokens issued by the CRM app.

Learn: Sign-in happens in the CRM front end. It hands the browser a short
access token carrying the user id ("sub") and the active organization
("org_id"). This service only verifies tokens; create_access_token exists for
service-to-service calls, the CLI, and tests.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from oikosync.config import settings


class TokenError(Exception):
    """Raised when token creation/verification fails."""


def create_access_token(
    user_id: str,
    org_id: Optional[str] = None,
    expires_minutes: int = 60,
) -> str:
    """Create a JWT access token."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "type": "access",
        "exp": now + timedelta(minutes=expires_minutes),
        "iat": now,
    }
    if org_id:
        payload["org_id"] = org_id
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def verify_token(token: str) -> dict:
    """Verify and decode a JWT token.

    Returns the payload dict on success.
    Raises TokenError on failure.
    """
    try:
        payload = jwt.decode(
            token, settings.jwt_secret, algorithms=[settings.jwt_algorithm]
        )
    except jwt.ExpiredSignatureError:
        raise TokenError("Token has expired")
    except jwt.InvalidTokenError as e:
        raise TokenError(f"Invalid token: {e}")
    if payload.get("type") != "access":
        raise TokenError("Not an access token")
    return payload
