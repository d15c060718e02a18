"""FastAPI auth dependencies.

Learn: Every organization-scoped route goes through get_org_identity(). The
token's org_id claim must equal the organization in the path; anything else
is answered with 404 "Organization not found" so callers cannot probe which
organizations exist.
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException

from oikosync.auth.jwt import TokenError, verify_token


class CurrentIdentity:
    """The authenticated user and their active organization."""

    def __init__(self, user_id: str, org_id: Optional[str] = None):
        self.user_id = user_id
        self.org_id = org_id

    def can_access(self, organization_id: str) -> bool:
        return bool(organization_id) and self.org_id == organization_id


def identity_from_token(token: str) -> CurrentIdentity:
    """Decode a bearer token into an identity. Raises TokenError."""
    payload = verify_token(token)
    return CurrentIdentity(user_id=payload["sub"], org_id=payload.get("org_id"))


async def get_current_user(
    authorization: Optional[str] = Header(None),
) -> CurrentIdentity:
    """Extract current identity (required — 401 if no auth)."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=401,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return identity_from_token(authorization[7:])
    except TokenError as e:
        raise HTTPException(
            status_code=401,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_org_identity(
    org_id: str,
    identity: CurrentIdentity = Depends(get_current_user),
) -> CurrentIdentity:
    """Require that the caller belongs to the organization in the path."""
    if not identity.can_access(org_id):
        raise HTTPException(status_code=404, detail="Organization not found")
    return identity
