from dataclasses import dataclass
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError

from consultpay.db.session import get_db  # noqa: F401
from consultpay.core.security import decode_token
from consultpay.providers.registry import get_providers  # noqa: F401

bearer = HTTPBearer(auto_error=False)


@dataclass
class Principal:
    subject: str
    role: str


def get_current_principal(
    creds: HTTPAuthorizationCredentials | None = Depends(bearer),
) -> Principal:
    # users live in the booking service; the token's claims are all we need here
    if not creds:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = decode_token(creds.credentials)
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
    if payload.get("type") != "access" or not payload.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid token")
    return Principal(subject=payload["sub"], role=payload.get("role") or "")


def require_roles(*roles: str):
    def _guard(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in roles:
            raise HTTPException(status_code=403, detail="Forbidden")
        return principal
    return _guard
