"""Access tokens issued at signup/login and verified on every request.

This is the identity provider for the billing core: it turns a bearer
credential into an account id and a validity flag, nothing more.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import ExpiredSignatureError, JWTError, jwt

from config import settings


ACCESS_TOKEN_TYPE = "sandbox_access"


@dataclass
class VerifiedIdentity:
    account_id: str
    is_valid: bool
    email: Optional[str] = None
    reason: Optional[str] = None


def create_access_token(
    account_id: str,
    email: Optional[str] = None,
    *,
    expires_hours: Optional[int] = None,
    issued_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Sign an access token for ``account_id`` and return it with its expiry."""
    now = issued_at or datetime.now(timezone.utc)
    ttl_hours = max(int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24), 1)
    expires_at = now + timedelta(hours=ttl_hours)
    claims: Dict[str, Any] = {
        "sub": account_id,
        "type": ACCESS_TOKEN_TYPE,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    if email:
        claims["email"] = email
    return {
        "token": jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM),
        "expires_at": int(expires_at.timestamp()),
    }


def verify_access_token(token: str) -> VerifiedIdentity:
    """Resolve a bearer token into ``(account_id, is_valid)``."""
    try:
        claims = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except ExpiredSignatureError:
        return VerifiedIdentity(account_id="", is_valid=False, reason="Access token expired.")
    except JWTError:
        return VerifiedIdentity(account_id="", is_valid=False, reason="Invalid access token.")

    if str(claims.get("type", "")).strip() != ACCESS_TOKEN_TYPE:
        return VerifiedIdentity(account_id="", is_valid=False, reason="Invalid access token type.")

    account_id = str(claims.get("sub", "")).strip()
    if not account_id:
        return VerifiedIdentity(account_id="", is_valid=False, reason="Access token missing subject.")

    return VerifiedIdentity(
        account_id=account_id,
        is_valid=True,
        email=str(claims.get("email", "")) or None,
    )
