"""Session tokens carrying the identity-provider user id as subject."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "imaginify_session"
PROFILE_CLAIMS = ("email", "username", "first_name", "last_name", "photo")


def create_session_token(
    external_id: str,
    profile: Optional[Dict[str, Any]] = None,
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    """Issue a signed session token whose subject is the identity-provider user id."""
    now = datetime.now(timezone.utc)
    ttl_hours = int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24)
    expires_at = now + timedelta(hours=max(ttl_hours, 1))
    claims: Dict[str, Any] = {
        "sub": external_id,
        "type": SESSION_TOKEN_TYPE,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    for key in PROFILE_CLAIMS:
        value = (profile or {}).get(key)
        if value:
            claims[key] = value

    token = jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    return {
        "token": token,
        "expires_at": int(expires_at.timestamp()),
    }


def decode_session_token(token: str) -> Dict[str, Any]:
    """Decode and validate a signed session token."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if str(payload.get("type", "")).strip() != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")
    if not str(payload.get("sub", "")).strip():
        raise ValueError("Session token missing subject.")

    return payload


def profile_from_claims(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {key: payload[key] for key in PROFILE_CLAIMS if payload.get(key)}
