"""JWT verification for dashboard and operator tokens.

Learn: Tokens are issued by the main compliance application with the
shared secret; this service only checks them. Claims it relies on:

    sub         user id (required)
    exp         expiry (required)
    project_id  the caller's default project (optional, informational)

create_access_token() mints the same shape for service-to-service
callers (the CLI, the REST layer) and for tests.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import jwt

from compliance_realtime.config import settings

REQUIRED_CLAIMS = ["exp", "sub"]


class TokenError(Exception):
    """The token is malformed, expired, or signed with another key."""


def create_access_token(
    user_id: str,
    project_id: Optional[str] = None,
    expires_minutes: Optional[int] = None,
) -> str:
    issued_at = datetime.now(timezone.utc)
    lifetime = timedelta(minutes=expires_minutes or settings.access_token_expire_minutes)
    claims: dict[str, Any] = {
        "sub": user_id,
        "type": "access",
        "iat": issued_at,
        "exp": issued_at + lifetime,
    }
    if project_id:
        claims["project_id"] = project_id
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def verify_token(token: str) -> dict[str, Any]:
    """Decode `token` and return its claims. Raises TokenError on any failure."""
    try:
        return jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"require": REQUIRED_CLAIMS},
        )
    except jwt.ExpiredSignatureError:
        raise TokenError("Token has expired")
    except jwt.MissingRequiredClaimError as e:
        raise TokenError(f"Token is missing the {e.claim!r} claim")
    except jwt.InvalidTokenError as e:
        raise TokenError(f"Invalid token: {e}")
