"""Bearer token helpers for identity-provider verified user scope."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings


def create_session_token(
    user_id: str,
    email: Optional[str] = None,
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    """Mint a token the way the identity provider would (local dev and tests)."""
    now = datetime.now(timezone.utc)
    ttl_hours = int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24)
    expires_at = now + timedelta(hours=max(ttl_hours, 1))
    claims: Dict[str, Any] = {
        "sub": user_id,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    if email:
        claims["email"] = email
    if settings.IDENTITY_ISSUER:
        claims["iss"] = settings.IDENTITY_ISSUER
    if settings.IDENTITY_AUDIENCE:
        claims["aud"] = settings.IDENTITY_AUDIENCE

    token = jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    return {
        "token": token,
        "expires_at": int(expires_at.timestamp()),
    }


def decode_session_token(token: str) -> Dict[str, Any]:
    """Decode and validate a signed bearer token."""
    options = {"verify_aud": bool(settings.IDENTITY_AUDIENCE)}
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            audience=settings.IDENTITY_AUDIENCE or None,
            issuer=settings.IDENTITY_ISSUER or None,
            options=options,
        )
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    subject = str(payload.get("sub", "")).strip()
    if not subject:
        raise ValueError("Session token missing subject.")

    return payload


def verified_user_id(token: str) -> str:
    """Return the user id carried by a verified token."""
    return str(decode_session_token(token)["sub"]).strip()
