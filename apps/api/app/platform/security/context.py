from __future__ import annotations

import uuid
from dataclasses import dataclass

from app.platform.security.roles import UserRole


@dataclass(frozen=True, slots=True)
class AuthContext:
    """Authenticated actor used by scope resolution and hierarchy checks."""

    user_id: uuid.UUID
    role: UserRole
    company_id: uuid.UUID | None = None
    correlation_id: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role is UserRole.ADMIN
