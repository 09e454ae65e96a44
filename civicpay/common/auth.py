"""Bearer access-token authentication for citizen-facing endpoints.

Tokens are issued by the account service; this process only verifies them.
"""

from dataclasses import dataclass

from fastapi import Header, HTTPException
from jose import JWTError, jwt

from civicpay.common.config import settings


ADMIN_ROLES = {"admin", "super_admin"}


@dataclass(frozen=True)
class CurrentUser:
    user_id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


def _extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1].strip()
    return None


def decode_access_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise HTTPException(status_code=401, detail="Invalid or expired token") from exc


def require_user(authorization: str | None = Header(default=None)) -> CurrentUser:
    """FastAPI dependency resolving the caller from an `Authorization: Bearer` header."""

    token = _extract_bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Access token required")
    payload = decode_access_token(token)
    user_id = payload.get("userId")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return CurrentUser(user_id=str(user_id), role=str(payload.get("role") or "citizen"))
