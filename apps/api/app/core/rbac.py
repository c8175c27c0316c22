from collections.abc import Callable

from fastapi import Depends

from app.core.auth import get_current_user
from app.platform.security.context import AuthContext
from app.platform.security.errors import Forbidden
from app.platform.security.roles import UserRole


def require_roles(*roles: UserRole) -> Callable[[AuthContext], AuthContext]:
    allowed = frozenset(roles)

    async def checker(ctx: AuthContext = Depends(get_current_user)) -> AuthContext:
        if ctx.role not in allowed:
            raise Forbidden(f"Requires one of: {', '.join(sorted(role.value for role in allowed))}")
        return ctx

    return checker
