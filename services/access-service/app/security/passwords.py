"""Password hashing for accounts that sign in with a local credential."""

from __future__ import annotations

import logging

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

logger = logging.getLogger(__name__)

_hasher = PasswordHasher(type=Type.ID)


def hash_password(password: str) -> str:
    """Return an argon2id digest for ``password``."""
    return _hasher.hash(password)


def verify_password(password_hash: str, password: str) -> bool:
    """Return ``True`` when ``password`` matches the stored digest."""
    try:
        return _hasher.verify(password_hash, password)
    except VerificationError:
        return False
    except InvalidHash:
        logger.warning("stored password hash is not a valid argon2 digest")
        return False
