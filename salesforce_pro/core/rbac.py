from collections.abc import Callable

from fastapi import Depends, HTTPException, status

from salesforce_pro.core.auth import AuthUser, get_current_user


def ensure_role(user: AuthUser, *roles: str) -> None:
    if user.role not in roles:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Role {user.role} is not allowed; requires one of: {', '.join(roles)}",
        )


def require_roles(*roles: str) -> Callable[[AuthUser], AuthUser]:
    def checker(user: AuthUser = Depends(get_current_user)) -> AuthUser:
        ensure_role(user, *roles)
        return user

    return checker
