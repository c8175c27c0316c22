from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.identity.directory import UserDirectory, user_directory
from app.identity.models import Company, TokenPurpose, User, utcnow
from app.identity.normalizers import normalize_email, normalize_phone
from app.identity.notifier import Notifier, build_notifier
from app.identity.passwords import burn_verification, hash_password, verify_password
from app.identity.schemas import (
    ActivationInviteRead,
    AuthSessionRead,
    BootstrapAdminRequest,
    PublicUser,
    TokenPairRead,
    UpdateMeRequest,
)
from app.identity.sessions import DeviceMeta, SessionManager, TokenPair, session_manager
from app.identity.tokens import CredentialTokenLedger, IssuedToken
from app.metrics import observe_login_attempt, observe_notifier_failure
from app.platform.security.context import AuthContext
from app.platform.security.errors import (
    Conflict,
    Forbidden,
    IdentityError,
    NotFound,
    PendingActivation,
    Unauthenticated,
    ValidationFailed,
)
from app.platform.security.roles import UserRole, has_dashboard_access, is_invitable
from app.platform.security.scope import assert_manage_scope


logger = logging.getLogger("app.identity.auth")

_INVALID_CREDENTIALS = "Invalid credentials"


def _session_read(user: User, pair: TokenPair) -> AuthSessionRead:
    return AuthSessionRead(user=PublicUser.from_user(user), tokens=TokenPairRead.from_pair(pair))


@dataclass(slots=True)
class AuthService:
    """Credential use cases: login, activation, password reset and session refresh.

    Every token consumption shares one transaction with the mutation it
    authorizes; a failed guard rolls both back so the token stays usable.
    Notifications are sent only after the owning transaction committed.
    """

    activation_ledger: CredentialTokenLedger = field(
        default_factory=lambda: CredentialTokenLedger(TokenPurpose.ACTIVATION)
    )
    reset_ledger: CredentialTokenLedger = field(default_factory=lambda: CredentialTokenLedger(TokenPurpose.RESET))
    sessions: SessionManager = field(default_factory=lambda: session_manager)
    directory: UserDirectory = field(default_factory=lambda: user_directory)
    notifier: Notifier | None = None

    def login(self, session: Session, *, email: str, password: str, device: DeviceMeta | None = None) -> AuthSessionRead:
        user = self._find_loginable(session, normalize_email(email))
        if user is None:
            burn_verification(password)
            observe_login_attempt("invalid_credentials")
            raise Unauthenticated(_INVALID_CREDENTIALS)

        if not has_dashboard_access(user.role):
            observe_login_attempt("no_dashboard_access")
            raise Forbidden("This role has no dashboard access")

        if not user.credential_hash:
            observe_login_attempt("pending_activation")
            if is_invitable(user.role):
                raise PendingActivation()
            raise Unauthenticated(_INVALID_CREDENTIALS)

        if not verify_password(password, user.credential_hash):
            observe_login_attempt("invalid_credentials")
            logger.info("auth.login", extra={"user_id": str(user.id), "outcome": "invalid_credentials"})
            raise Unauthenticated(_INVALID_CREDENTIALS)

        pair = self.sessions.issue(session, user, device)
        observe_login_attempt("success")
        logger.info("auth.login", extra={"user_id": str(user.id), "role": user.role.value, "outcome": "success"})
        return _session_read(user, pair)

    def activate(self, session: Session, *, token: str, password: str, device: DeviceMeta | None = None) -> AuthSessionRead:
        credential_hash = hash_password(password)
        try:
            owner_id = self.activation_ledger.consume(session, token)
            user = session.get(User, owner_id, populate_existing=True)
            if user is None or not user.is_active or user.deleted_at is not None:
                raise Forbidden("Account is inactive")
            if not is_invitable(user.role):
                raise Forbidden("This role cannot be activated by invite")
            if not self.directory.company_is_live(session, user.company_id):
                raise Forbidden("Account is inactive")
            if user.credential_hash:
                raise ValidationFailed("Account is already active")

            updated = session.execute(
                update(User)
                .where(User.id == owner_id, User.credential_hash.is_(None))
                .values(credential_hash=credential_hash, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if updated.rowcount != 1:
                raise ValidationFailed("Account is already active")

            self.activation_ledger.invalidate_all(session, owner_id)
            session.commit()
        except IdentityError:
            session.rollback()
            raise

        logger.info("auth.activated", extra={"user_id": str(user.id), "role": user.role.value})
        pair = self.sessions.issue(session, user, device)
        return _session_read(user, pair)

    def forgot_password(self, session: Session, *, email: str) -> None:
        normalized = normalize_email(email)
        user = self._find_loginable(session, normalized)
        if user is None or not user.credential_hash or not has_dashboard_access(user.role):
            logger.info("auth.password_reset_requested", extra={"outcome": "ignored"})
            return

        issued = self.reset_ledger.issue(session, user.id)
        recipient, display_name = user.email, user.full_name
        session.commit()

        logger.info("auth.password_reset_requested", extra={"user_id": str(user.id), "outcome": "issued"})
        self._notify("reset_password", lambda notifier: notifier.send_password_reset(recipient, display_name, issued.token))

    def reset_password(self, session: Session, *, token: str, password: str) -> None:
        credential_hash = hash_password(password)
        try:
            owner_id = self.reset_ledger.consume(session, token)
            user = session.get(User, owner_id, populate_existing=True)
            if user is None or not user.is_active or user.deleted_at is not None:
                raise Forbidden("Account is inactive")
            if not has_dashboard_access(user.role):
                raise Forbidden("This role has no dashboard access")
            if not self.directory.company_is_live(session, user.company_id):
                raise Forbidden("Account is inactive")

            user.credential_hash = credential_hash
            self.reset_ledger.invalidate_all(session, owner_id)
            revoked = self.sessions.revoke_all_for_owner(session, owner_id)
            session.commit()
        except IdentityError:
            session.rollback()
            raise

        logger.info(
            "auth.password_reset",
            extra={"user_id": str(owner_id), "outcome": f"revoked_sessions={revoked}"},
        )

    def refresh(self, session: Session, *, refresh_token: str, device: DeviceMeta | None = None) -> AuthSessionRead:
        user, pair = self.sessions.refresh(session, refresh_token, device)
        return _session_read(user, pair)

    def logout(self, session: Session, *, refresh_token: str) -> None:
        self.sessions.logout(session, refresh_token)

    def bootstrap_admin(
        self,
        session: Session,
        dto: BootstrapAdminRequest,
        device: DeviceMeta | None = None,
    ) -> AuthSessionRead:
        if get_settings().is_production:
            raise Forbidden("Admin bootstrap is disabled in production")

        admins = session.scalar(
            select(func.count()).select_from(User).where(User.role == UserRole.ADMIN, User.deleted_at.is_(None))
        )
        if admins:
            raise ValidationFailed("An admin user already exists")

        user = User(
            role=UserRole.ADMIN,
            company_id=None,
            full_name=dto.full_name.strip(),
            email=normalize_email(dto.email),
            phone=normalize_phone(dto.phone),
            credential_hash=hash_password(dto.password),
            is_active=True,
        )
        session.add(user)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise Conflict("A user with this email or phone already exists")

        logger.info("auth.admin_bootstrapped", extra={"user_id": str(user.id)})
        pair = self.sessions.issue(session, user, device)
        return _session_read(user, pair)

    def prepare_activation_invite(self, session: Session, user: User) -> IssuedToken:
        """Issue an invite inside the caller's transaction. Deliver it after commit."""
        if not is_invitable(user.role):
            raise ValidationFailed("This role does not support activation by invite")
        if not user.email:
            raise ValidationFailed("An email is required to send an invite")
        if user.credential_hash:
            raise ValidationFailed("This user already has a password")
        return self.activation_ledger.issue(session, user.id)

    def deliver_activation_invite(self, email: str, display_name: str, issued: IssuedToken) -> ActivationInviteRead:
        self._notify(
            "activation",
            lambda notifier: notifier.send_activation_invite(email, display_name, issued.token),
        )
        return ActivationInviteRead(
            user_id=issued.owner_id,
            email=email,
            expires_at=issued.expires_at,
            activation_token=None if get_settings().is_production else issued.token,
        )

    def create_activation_invite(self, session: Session, user_id: uuid.UUID) -> ActivationInviteRead:
        user = session.scalar(select(User).where(User.id == user_id, User.deleted_at.is_(None)))
        if user is None:
            raise NotFound("User not found")
        try:
            issued = self.prepare_activation_invite(session, user)
        except IdentityError:
            session.rollback()
            raise
        email, display_name = user.email or "", user.full_name
        session.commit()
        return self.deliver_activation_invite(email, display_name, issued)

    def resend_activation(self, session: Session, ctx: AuthContext, user_id: uuid.UUID) -> ActivationInviteRead:
        entry = self.directory.get(session, user_id)
        if entry is None:
            raise NotFound("User not found")
        assert_manage_scope(ctx, entry)
        return self.create_activation_invite(session, user_id)

    def get_me(self, session: Session, ctx: AuthContext) -> PublicUser:
        user = session.scalar(select(User).where(User.id == ctx.user_id, User.deleted_at.is_(None)))
        if user is None:
            raise NotFound("User not found")
        return PublicUser.from_user(user)

    def update_me(self, session: Session, ctx: AuthContext, dto: UpdateMeRequest) -> PublicUser:
        user = session.scalar(select(User).where(User.id == ctx.user_id, User.deleted_at.is_(None)))
        if user is None:
            raise NotFound("User not found")
        if not has_dashboard_access(user.role):
            raise Forbidden("This role has no dashboard access")

        if dto.full_name is not None:
            user.full_name = dto.full_name.strip()
        if dto.email is not None:
            user.email = normalize_email(dto.email)
        if dto.new_password is not None:
            user.credential_hash = hash_password(dto.new_password)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise Conflict("This email is already in use")
        session.refresh(user)
        return PublicUser.from_user(user)

    def _find_loginable(self, session: Session, email: str | None) -> User | None:
        if not email:
            return None
        return session.scalar(
            select(User)
            .outerjoin(Company, Company.id == User.company_id)
            .where(
                User.email == email,
                User.is_active.is_(True),
                User.deleted_at.is_(None),
                or_(
                    User.role == UserRole.ADMIN,
                    and_(Company.id.is_not(None), Company.deleted_at.is_(None)),
                ),
            )
        )

    def _notify(self, notification: str, send: Callable[[Notifier], None]) -> None:
        notifier = self.notifier or build_notifier()
        try:
            send(notifier)
        except Exception as exc:
            observe_notifier_failure(notification)
            logger.exception("notifier.failed", extra={"notification": notification, "error": str(exc)})


auth_service = AuthService()
