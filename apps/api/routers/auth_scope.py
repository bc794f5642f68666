"""Authentication dependencies mapping identity-provider sessions onto users."""

from dataclasses import dataclass, field
from typing import Any, Dict

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.user import User
from services.session_token import decode_session_token, profile_from_claims
from services.users import get_or_create_user


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    external_id: str
    profile: Dict[str, Any] = field(default_factory=dict)


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve the verified identity from a Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        payload = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(
        external_id=str(payload.get("sub", "")),
        profile=profile_from_claims(payload),
    )


async def get_current_user(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Return the User for the session, creating it on first sight."""
    return await get_or_create_user(auth.external_id, db, profile=auth.profile)
