from collections.abc import Callable

from fastapi import Depends, HTTPException, status

from floorline.core.auth import AuthUser, get_current_user


def require_permissions(*permissions: str) -> Callable[[AuthUser], AuthUser]:
    async def checker(user: AuthUser = Depends(get_current_user)) -> AuthUser:
        missing_permissions = [permission for permission in permissions if permission not in user.roles]
        if missing_permissions:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permissions: {', '.join(missing_permissions)}",
            )
        return user

    return checker


def require_any_permission(*permissions: str) -> Callable[[AuthUser], AuthUser]:
    async def checker(user: AuthUser = Depends(get_current_user)) -> AuthUser:
        if not any(permission in user.roles for permission in permissions):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing any of permissions: {', '.join(permissions)}",
            )
        return user

    return checker
