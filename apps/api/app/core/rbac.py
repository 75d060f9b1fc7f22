from collections.abc import Awaitable, Callable

from fastapi import Depends

from app.core.auth import AuthUser, get_current_user
from app.core.errors import PermissionDeniedError


def require_roles(*roles: str) -> Callable[[AuthUser], Awaitable[AuthUser]]:
    async def checker(user: AuthUser = Depends(get_current_user)) -> AuthUser:
        if user.role not in roles:
            raise PermissionDeniedError(f"Requires one of roles: {', '.join(roles)}")
        return user

    return checker
