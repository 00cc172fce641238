import logging
import secrets

from passlib.context import CryptContext

from authcore.core.config import settings
from authcore.core.errors import InternalError, ValidationError

logger = logging.getLogger(__name__)

BCRYPT_MAX_BYTES = 72


def _too_long(password: str) -> bool:
    # bcrypt limit is 72 BYTES, not characters
    return len(password.encode("utf-8")) > BCRYPT_MAX_BYTES


class PasswordHasher:
    """bcrypt hashing with a tunable cost; hashes are self-describing ($2b$<cost>$...)."""

    def __init__(self, rounds: int | None = None):
        self.rounds = rounds or settings.BCRYPT_ROUNDS
        self._context = CryptContext(
            schemes=["bcrypt"],
            deprecated="auto",
            bcrypt__rounds=self.rounds,
            # hashes below the configured cost are flagged by needs_update
            bcrypt__min_rounds=self.rounds,
        )
        # hashed here, never on the first unknown-user login
        self.dummy_hash = self.random_hash()

    def hash(self, password: str) -> str:
        if _too_long(password):
            raise ValidationError(f"Password too long (max {BCRYPT_MAX_BYTES} bytes).")
        try:
            return self._context.hash(password)
        except (ValueError, TypeError) as exc:
            raise InternalError(detail=f"password hashing failed: {exc}") from exc

    def verify(self, password: str, password_hash: str) -> bool:
        if not password_hash or _too_long(password):
            return False
        try:
            return self._context.verify(password, password_hash)
        except (ValueError, TypeError):
            # Unidentifiable or malformed hash.
            return False

    def random_hash(self) -> str:
        """Hash of a random secret nobody knows; the account cannot log in locally."""
        return self.hash(secrets.token_urlsafe(32))

    def dummy_verify(self, password: str) -> bool:
        """Spend the same time as a real verify when there is no user to check against."""
        self.verify(password, self.dummy_hash)
        return False

    def needs_update(self, password_hash: str) -> bool:
        try:
            return self._context.needs_update(password_hash)
        except (ValueError, TypeError):
            return True


__all__ = ["BCRYPT_MAX_BYTES", "PasswordHasher"]
