"""Authentication dependencies resolving the calling account."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.session_token import verify_access_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    account_id: str
    email: Optional[str] = None


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve the authenticated account from the Bearer access token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Authorization token required")

    identity = verify_access_token(credentials.credentials)
    if not identity.is_valid:
        raise HTTPException(status_code=401, detail=identity.reason or "Invalid or expired token")

    return AuthContext(account_id=identity.account_id, email=identity.email)
