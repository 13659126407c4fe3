"""FastAPI auth dependencies.

Learn: Used as Depends() on routers to extract and validate the caller's
identity from the Authorization header. Tests override get_current_user
via app.dependency_overrides, same as any other dependency.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException

from compliance_realtime.auth.jwt import TokenError, verify_token


@dataclass
class CurrentIdentity:
    """The authenticated caller."""
    user_id: str
    project_id: Optional[str] = None


async def get_current_user_optional(
    authorization: Optional[str] = Header(None),
) -> Optional[CurrentIdentity]:
    """Extract current identity (optional — returns None if no auth)."""
    if not authorization or not authorization.startswith("Bearer "):
        return None
    try:
        payload = verify_token(authorization[7:])
    except TokenError as e:
        raise HTTPException(
            status_code=401,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )
    return CurrentIdentity(user_id=payload["sub"], project_id=payload.get("project_id"))


async def get_current_user(
    identity: Optional[CurrentIdentity] = Depends(get_current_user_optional),
) -> CurrentIdentity:
    """Extract current identity (required — 401 if no auth)."""
    if not identity:
        raise HTTPException(
            status_code=401,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return identity
