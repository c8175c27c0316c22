from __future__ import annotations

import hmac
import logging
import secrets
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from jose import JWTError, jwt
from sqlalchemy import update
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.identity.directory import UserDirectory, user_directory
from app.identity.models import AuthSession, User, ensure_utc, utcnow
from app.identity.tokens import hash_token
from app.metrics import observe_session_event
from app.platform.security.context import AuthContext
from app.platform.security.errors import Forbidden, Unauthenticated
from app.platform.security.roles import UserRole, has_dashboard_access, normalize_role


logger = logging.getLogger("app.identity.sessions")

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


@dataclass(frozen=True, slots=True)
class DeviceMeta:
    user_agent: str | None = None
    ip_address: str | None = None


@dataclass(frozen=True, slots=True)
class TokenPair:
    access_token: str
    refresh_token: str
    session_id: uuid.UUID
    access_expires_at: datetime
    refresh_expires_at: datetime
    expires_in: int
    token_type: str = "Bearer"


def _parse_uuid(raw: Any) -> uuid.UUID:
    try:
        return uuid.UUID(str(raw))
    except (TypeError, ValueError):
        raise Unauthenticated("Invalid token") from None


@dataclass(slots=True)
class SessionManager:
    """Issues, rotates and revokes refresh-token backed sessions.

    Access tokens are stateless JWTs. Refresh tokens are JWTs bound to one
    ``identity_session`` row through their ``sid`` claim; the row keeps only
    the SHA-256 of the current refresh token, so every rotation invalidates
    the previous token.
    """

    directory: UserDirectory = field(default_factory=lambda: user_directory)
    clock: Callable[[], datetime] = utcnow

    def issue(self, session: Session, user: User, device: DeviceMeta | None = None) -> TokenPair:
        device = device or DeviceMeta()
        settings = get_settings()
        now = self.clock()
        refresh_expires_at = now + settings.refresh_token_ttl

        record = AuthSession(
            user_id=user.id,
            refresh_token_hash=None,
            user_agent=_truncate(device.user_agent, 512),
            ip_address=_truncate(device.ip_address, 64),
            expires_at=refresh_expires_at,
            created_at=now,
            updated_at=now,
        )
        session.add(record)
        session.flush()

        refresh_token = self._encode(user, REFRESH_TOKEN_TYPE, now, refresh_expires_at, session_id=record.id)
        record.refresh_token_hash = hash_token(refresh_token)
        access_expires_at = now + settings.access_token_ttl
        access_token = self._encode(user, ACCESS_TOKEN_TYPE, now, access_expires_at)
        session_id = record.id
        session.commit()

        observe_session_event("issued")
        logger.info(
            "session.issued",
            extra={"user_id": str(user.id), "session_id": str(session_id), "client_ip": device.ip_address},
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            session_id=session_id,
            access_expires_at=access_expires_at,
            refresh_expires_at=refresh_expires_at,
            expires_in=int(settings.access_token_ttl.total_seconds()),
        )

    def refresh(self, session: Session, refresh_token: str, device: DeviceMeta | None = None) -> tuple[User, TokenPair]:
        device = device or DeviceMeta()
        claims = self.decode(refresh_token, REFRESH_TOKEN_TYPE)
        session_id = _parse_uuid(claims.get("sid"))
        presented_hash = hash_token(refresh_token)
        now = self.clock()

        record = session.get(AuthSession, session_id)
        if record is None or record.revoked_at is not None or ensure_utc(record.expires_at) <= now:
            observe_session_event("refresh_rejected")
            raise Unauthenticated("Session expired or revoked")
        if record.refresh_token_hash is None or not hmac.compare_digest(record.refresh_token_hash, presented_hash):
            observe_session_event("refresh_rejected")
            raise Unauthenticated("Session expired or revoked")

        user = self.require_eligible_owner(session, session.get(User, record.user_id))

        settings = get_settings()
        refresh_expires_at = now + settings.refresh_token_ttl
        next_refresh = self._encode(user, REFRESH_TOKEN_TYPE, now, refresh_expires_at, session_id=session_id)
        rotated = session.execute(
            update(AuthSession)
            .where(
                AuthSession.id == session_id,
                AuthSession.refresh_token_hash == presented_hash,
                AuthSession.revoked_at.is_(None),
            )
            .values(
                refresh_token_hash=hash_token(next_refresh),
                expires_at=refresh_expires_at,
                user_agent=_truncate(device.user_agent, 512) or record.user_agent,
                ip_address=_truncate(device.ip_address, 64) or record.ip_address,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if rotated.rowcount != 1:
            session.rollback()
            observe_session_event("refresh_rejected")
            raise Unauthenticated("Session expired or revoked")
        session.commit()

        access_expires_at = now + settings.access_token_ttl
        pair = TokenPair(
            access_token=self._encode(user, ACCESS_TOKEN_TYPE, now, access_expires_at),
            refresh_token=next_refresh,
            session_id=session_id,
            access_expires_at=access_expires_at,
            refresh_expires_at=refresh_expires_at,
            expires_in=int(settings.access_token_ttl.total_seconds()),
        )
        observe_session_event("refreshed")
        logger.info("session.refreshed", extra={"user_id": str(user.id), "session_id": str(session_id)})
        return user, pair

    def revoke(self, session: Session, session_id: uuid.UUID) -> bool:
        result = session.execute(
            update(AuthSession)
            .where(AuthSession.id == session_id, AuthSession.revoked_at.is_(None))
            .values(revoked_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        session.commit()
        revoked = result.rowcount == 1
        if revoked:
            observe_session_event("revoked")
            logger.info("session.revoked", extra={"session_id": str(session_id)})
        return revoked

    def revoke_all_for_owner(self, session: Session, owner_id: uuid.UUID) -> int:
        """Revoke every live session of ``owner_id`` inside the caller's transaction."""
        result = session.execute(
            update(AuthSession)
            .where(AuthSession.user_id == owner_id, AuthSession.revoked_at.is_(None))
            .values(revoked_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        observe_session_event("revoked", result.rowcount)
        return result.rowcount

    def logout(self, session: Session, refresh_token: str) -> bool:
        try:
            claims = self.decode(refresh_token, REFRESH_TOKEN_TYPE)
            session_id = _parse_uuid(claims.get("sid"))
        except Unauthenticated:
            logger.info("session.logout_ignored", extra={"outcome": "invalid_token"})
            return False

        record = session.get(AuthSession, session_id)
        if record is None or record.refresh_token_hash is None:
            return False
        if not hmac.compare_digest(record.refresh_token_hash, hash_token(refresh_token)):
            return False
        return self.revoke(session, session_id)

    def authenticate(self, access_token: str, correlation_id: str | None = None) -> AuthContext:
        claims = self.decode(access_token, ACCESS_TOKEN_TYPE)
        try:
            role = normalize_role(claims.get("role", ""))
        except ValueError:
            raise Unauthenticated("Invalid token") from None
        company_raw = claims.get("company_id")
        return AuthContext(
            user_id=_parse_uuid(claims.get("sub")),
            role=role,
            company_id=_parse_uuid(company_raw) if company_raw else None,
            correlation_id=correlation_id,
        )

    def require_eligible_owner(self, session: Session, user: User | None) -> User:
        if user is None or not user.is_active or user.deleted_at is not None or not user.has_password:
            raise Unauthenticated("Invalid credentials")
        if not self.directory.company_is_live(session, user.company_id):
            raise Unauthenticated("Invalid credentials")
        if not has_dashboard_access(user.role):
            raise Forbidden("This role has no dashboard access")
        return user

    def decode(self, token: str, expected_type: str) -> dict[str, Any]:
        settings = get_settings()
        try:
            claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
        except JWTError:
            raise Unauthenticated("Invalid or expired token") from None
        if claims.get("type") != expected_type:
            raise Unauthenticated("Invalid token type")
        return claims

    def _encode(
        self,
        user: User,
        token_type: str,
        issued_at: datetime,
        expires_at: datetime,
        *,
        session_id: uuid.UUID | None = None,
    ) -> str:
        settings = get_settings()
        claims: dict[str, Any] = {
            "sub": str(user.id),
            "role": UserRole(user.role).value,
            "company_id": str(user.company_id) if user.company_id else None,
            "type": token_type,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": secrets.token_hex(16),
        }
        if session_id is not None:
            claims["sid"] = str(session_id)
        return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def _truncate(value: str | None, limit: int) -> str | None:
    if value is None:
        return None
    return value[:limit]


session_manager = SessionManager()
