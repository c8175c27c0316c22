from __future__ import annotations

from typing import Any


class IdentityError(Exception):
    """Base error for identity, scope and credential failures.

    Each subclass carries the HTTP status and machine-readable code the API
    renders, so services raise domain errors and never build responses.
    """

    status_code: int = 400
    code: str = "bad_request"
    default_message: str = "Bad request"

    def __init__(self, message: str | None = None, *, details: Any = None) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)


class Unauthenticated(IdentityError):
    status_code = 401
    code = "unauthorized"
    default_message = "Invalid credentials"


class Forbidden(IdentityError):
    status_code = 403
    code = "forbidden"
    default_message = "Forbidden"


class PendingActivation(IdentityError):
    status_code = 403
    code = "account_pending_password"
    default_message = "Account pending activation"


class ValidationFailed(IdentityError):
    status_code = 400
    code = "bad_request"
    default_message = "Invalid request"


class InvalidOrExpiredToken(ValidationFailed):
    code = "invalid_or_expired_token"
    default_message = "Invalid or expired token"


class Conflict(IdentityError):
    status_code = 409
    code = "conflict"
    default_message = "Conflict"


class NotFound(IdentityError):
    status_code = 404
    code = "not_found"
    default_message = "Not found"
