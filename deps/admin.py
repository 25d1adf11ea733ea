# deps/admin.py
from fastapi import Depends, HTTPException, status

from deps.auth import get_current_user, CurrentUser


def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="ADMIN_REQUIRED",
        )
    return user
