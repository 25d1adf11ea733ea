# deps/auth.py
from datetime import datetime, timezone

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from uuid import UUID

from security import decode_token

bearer = HTTPBearer(auto_error=False)


class CurrentUser:
    def __init__(
        self,
        user_id: UUID,
        role: str | None = None,
        session_id: str | None = None,
        expires_at: datetime | None = None,
    ):
        self.user_id = user_id
        self.role = role
        self.session_id = session_id
        self.expires_at = expires_at

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def get_current_user(
    creds: HTTPAuthorizationCredentials = Depends(bearer),
) -> CurrentUser:
    if not creds:
        raise HTTPException(status_code=401, detail="UNAUTHORIZED")

    # must be "Bearer"
    if (creds.scheme or "").lower() != "bearer":
        raise HTTPException(status_code=401, detail="UNAUTHORIZED")

    payload = decode_token(creds.credentials)
    sub = payload.get("sub")
    if not sub:
        raise HTTPException(status_code=401, detail="UNAUTHORIZED")
    try:
        user_id = UUID(str(sub))
    except ValueError:
        raise HTTPException(status_code=401, detail="UNAUTHORIZED")

    # one token per login session; polling is bound to it
    session_id = f"{user_id}:{payload.get('iat', '')}"
    exp = payload.get("exp")
    expires_at = datetime.fromtimestamp(int(exp), tz=timezone.utc) if exp else None
    return CurrentUser(user_id=user_id, role=payload.get("role"), session_id=session_id, expires_at=expires_at)

