from app.platform.security.context import AuthContext
from app.platform.security.errors import (
    Conflict,
    Forbidden,
    IdentityError,
    InvalidOrExpiredToken,
    NotFound,
    PendingActivation,
    Unauthenticated,
    ValidationFailed,
)
from app.platform.security.roles import UserRole, can_create, can_manage, is_invitable
from app.platform.security.scope import (
    ScopeContext,
    UserScope,
    assert_company_scope,
    assert_manage_scope,
    assert_read_scope,
    can_read,
    resolve_company_scope,
    user_scope,
)

__all__ = [
    "AuthContext",
    "IdentityError",
    "Unauthenticated",
    "Forbidden",
    "PendingActivation",
    "ValidationFailed",
    "InvalidOrExpiredToken",
    "Conflict",
    "NotFound",
    "UserRole",
    "can_create",
    "can_manage",
    "is_invitable",
    "ScopeContext",
    "UserScope",
    "user_scope",
    "can_read",
    "assert_read_scope",
    "assert_manage_scope",
    "assert_company_scope",
    "resolve_company_scope",
]
