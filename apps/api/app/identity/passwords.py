from __future__ import annotations

from functools import lru_cache

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError


_hasher = PasswordHasher(type=Type.ID)


def hash_password(password: str) -> str:
    return _hasher.hash(password)


def verify_password(password: str, credential_hash: str | None) -> bool:
    if not credential_hash:
        return False
    try:
        return _hasher.verify(credential_hash, password)
    except (InvalidHash, VerifyMismatchError, VerificationError):
        return False


@lru_cache
def _dummy_hash() -> str:
    return _hasher.hash("handsell-dummy-credential")


def burn_verification(password: str) -> None:
    """Spend the same hashing cost as a real check when no account matched."""
    verify_password(password, _dummy_hash())
