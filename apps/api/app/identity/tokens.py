from __future__ import annotations

import hashlib
import logging
import secrets
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import Select, select, update
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.identity.models import CredentialToken, TokenPurpose, User, utcnow
from app.metrics import observe_token_consumption, observe_token_issued
from app.platform.security.errors import InvalidOrExpiredToken


logger = logging.getLogger("app.identity.tokens")


def generate_token() -> str:
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def owner_lock_statement(owner_id: uuid.UUID) -> Select[tuple[uuid.UUID]]:
    return select(User.id).where(User.id == owner_id).with_for_update()


@dataclass(frozen=True, slots=True)
class IssuedToken:
    token: str
    token_id: uuid.UUID
    owner_id: uuid.UUID
    expires_at: datetime


class CredentialTokenLedger:
    """Single-use, time-boxed tokens for one purpose (activation or reset).

    Only SHA-256 digests are stored. None of the methods commit: issuance and
    consumption always ride on the caller's transaction so the token state
    flips together with the mutation it authorizes.
    """

    def __init__(
        self,
        purpose: TokenPurpose,
        ttl: timedelta | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.purpose = purpose
        self._ttl = ttl
        self._clock = clock

    @property
    def ttl(self) -> timedelta:
        if self._ttl is not None:
            return self._ttl
        settings = get_settings()
        if self.purpose is TokenPurpose.ACTIVATION:
            return settings.activation_token_ttl
        return settings.reset_token_ttl

    def issue(self, session: Session, owner_id: uuid.UUID) -> IssuedToken:
        now = self._clock()
        # serializes concurrent issuers for the same owner
        session.execute(owner_lock_statement(owner_id))
        self.invalidate_all(session, owner_id, now=now)

        token = generate_token()
        record = CredentialToken(
            user_id=owner_id,
            purpose=self.purpose,
            token_hash=hash_token(token),
            expires_at=now + self.ttl,
            created_at=now,
        )
        session.add(record)
        session.flush()

        observe_token_issued(self.purpose.value)
        logger.info(
            "credential_token.issued",
            extra={"user_id": str(owner_id), "purpose": self.purpose.value},
        )
        return IssuedToken(token=token, token_id=record.id, owner_id=owner_id, expires_at=record.expires_at)

    def find_live(self, session: Session, token: str) -> CredentialToken | None:
        now = self._clock()
        return session.scalar(
            select(CredentialToken).where(
                CredentialToken.token_hash == hash_token(token),
                CredentialToken.purpose == self.purpose,
                CredentialToken.used_at.is_(None),
                CredentialToken.expires_at > now,
            )
        )

    def claim(self, session: Session, token_id: uuid.UUID) -> bool:
        """Flip one token to used. Returns False when another consumer got there first."""
        now = self._clock()
        result = session.execute(
            update(CredentialToken)
            .where(
                CredentialToken.id == token_id,
                CredentialToken.used_at.is_(None),
                CredentialToken.expires_at > now,
            )
            .values(used_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def consume(self, session: Session, token: str) -> uuid.UUID:
        record = self.find_live(session, token)
        if record is None or not self.claim(session, record.id):
            observe_token_consumption(self.purpose.value, "rejected")
            raise InvalidOrExpiredToken()

        observe_token_consumption(self.purpose.value, "consumed")
        logger.info(
            "credential_token.consumed",
            extra={"user_id": str(record.user_id), "purpose": self.purpose.value},
        )
        return record.user_id

    def invalidate_all(self, session: Session, owner_id: uuid.UUID, *, now: datetime | None = None) -> int:
        result = session.execute(
            update(CredentialToken)
            .where(
                CredentialToken.user_id == owner_id,
                CredentialToken.purpose == self.purpose,
                CredentialToken.used_at.is_(None),
            )
            .values(used_at=now or self._clock())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount
