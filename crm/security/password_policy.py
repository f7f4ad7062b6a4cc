# crm/security/password_policy.py
import re
import secrets
from typing import Optional

import bcrypt
from pydantic import BaseModel

# Minimum password length
PASSWORD_MIN_LENGTH = 12

SPECIAL_CHARACTERS = "!@#$%^&*()_+-=[]{};':\"\\|,.<>/?"
_SPECIAL_RE = re.compile("[" + re.escape(SPECIAL_CHARACTERS) + "]")

# bcrypt work factor, SOC 2 asks for 12+
DEFAULT_BCRYPT_ROUNDS = 12
_BCRYPT_MAX_BYTES = 72


class PasswordValidationResult(BaseModel):
    valid: bool
    error: Optional[str] = None


def validate_password_complexity(password) -> PasswordValidationResult:
    '''
    Validate before hashing on invite, reset and change-password flows.
    Only the first failing rule is reported: length, uppercase, lowercase, digit, special.
    '''
    if not isinstance(password, str):
        return PasswordValidationResult(valid=False, error="Password is required")
    if len(password) < PASSWORD_MIN_LENGTH:
        return PasswordValidationResult(
            valid=False, error=f"Password must be at least {PASSWORD_MIN_LENGTH} characters"
        )
    if not re.search(r"[A-Z]", password):
        return PasswordValidationResult(valid=False, error="Password must include at least one uppercase letter")
    if not re.search(r"[a-z]", password):
        return PasswordValidationResult(valid=False, error="Password must include at least one lowercase letter")
    if not re.search(r"\d", password):
        return PasswordValidationResult(valid=False, error="Password must include at least one number")
    if not _SPECIAL_RE.search(password):
        return PasswordValidationResult(
            valid=False, error="Password must include at least one special character (!@#$%^&* etc.)"
        )
    return PasswordValidationResult(valid=True)


class PasswordHasher:
    """bcrypt with a fixed work factor. checkpw compares in constant time."""

    def __init__(self, rounds: int = DEFAULT_BCRYPT_ROUNDS):
        self.rounds = rounds
        self._dummy_hash: Optional[str] = None

    def dummy_verify(self, password: str) -> None:
        """Burn one bcrypt comparison for unknown or inactive accounts so timing looks like a real miss."""
        if self._dummy_hash is None:
            self._dummy_hash = self.hash(secrets.token_hex(16))
        self.verify(password or "x", self._dummy_hash)

    @staticmethod
    def _to_bytes(password: str) -> bytes:
        # bcrypt 只使用前 72 字节
        return password.encode("utf-8")[:_BCRYPT_MAX_BYTES]

    def hash(self, password: str) -> str:
        '''Hash a password using bcrypt'''
        return bcrypt.hashpw(
            self._to_bytes(password),
            bcrypt.gensalt(rounds=self.rounds),
        ).decode("utf-8")

    def verify(self, password: str, password_hash: str) -> bool:
        '''verify a password against its hash'''
        if not password or not password_hash:
            return False
        try:
            return bcrypt.checkpw(
                self._to_bytes(password),
                password_hash.encode("utf-8"),
            )
        except ValueError:
            # malformed stored hash
            return False
