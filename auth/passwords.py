"""
auth/passwords.py -- Password hashing, strength policy, and reset tokens.

Security design decisions:
  Hashing: bcrypt directly (no passlib wrapper). passlib's wrap-bug detection
       builds a password longer than 72 bytes, which bcrypt 4.x rejects.
       Work factor comes from Settings.bcrypt_rounds (default 12). Tests drop
       it to 4, bcrypt's minimum.

  Verification: bcrypt.checkpw does the comparison. Raw hash strings are
       never compared with ==.

  Rehash: needs_rehash() reads the cost embedded in the stored hash so a
       successful login can upgrade hashes created under a weaker policy.

  Reset tokens: secrets.token_hex(32) -- 256 bits of entropy. Used only as a
       one-time lookup key, never as a signed token.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import re
import secrets
import string

import bcrypt

from auth.models import StrengthResult

_BCRYPT_PREFIXES = {"2a", "2b", "2y"}

# bcrypt ignores (4.x) or rejects (5.x) input past this many bytes.
_BCRYPT_MAX_BYTES = 72

_MIN_LENGTH = 8

_SYMBOLS = "!@#$%^&*"
_RANDOM_ALPHABET = string.ascii_letters + string.digits + _SYMBOLS


class PasswordManager:
    """Hashes and verifies passwords and enforces the strength policy.

    Usage:
        passwords = PasswordManager(rounds=12)
        stored = passwords.hash("Str0ng!Pass")
        passwords.verify("Str0ng!Pass", stored)  # True
    """

    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds
        # Timing equalization dummy hash [C1]. Computed once per manager so the
        # first login attempt is not measurably slower than later ones.
        self._dummy_hash = self.hash(secrets.token_urlsafe(16))

    def hash(self, password: str) -> str:
        """Return a salted bcrypt hash of the plaintext password."""
        return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, password: str, hashed: str) -> bool:
        """Return True if the plaintext password matches the bcrypt hash.

        Malformed hashes and over-long passwords return False instead of raising.
        """
        try:
            return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
        except ValueError:
            return False

    def burn(self, password: str) -> None:
        """Run a verification against the dummy hash and discard the result.

        Called when the account does not exist so response time does not
        reveal which emails are registered [C1].
        """
        self.verify(password, self._dummy_hash)

    def needs_rehash(self, hashed: str) -> bool:
        """Return True if the hash's embedded cost is below the current policy."""
        parts = hashed.split("$")
        # "$2b$12$<salt+digest>" splits into ["", "2b", "12", "<salt+digest>"]
        if len(parts) != 4 or parts[1] not in _BCRYPT_PREFIXES:
            return True
        try:
            cost = int(parts[2])
        except ValueError:
            return True
        return cost < self.rounds

    @staticmethod
    def validate_strength(password: str) -> StrengthResult:
        """Check every strength rule and report all violations at once."""
        errors: list[str] = []
        if len(password) < _MIN_LENGTH:
            errors.append(f"Password must be at least {_MIN_LENGTH} characters long")
        if len(password.encode("utf-8")) > _BCRYPT_MAX_BYTES:
            errors.append(f"Password must be at most {_BCRYPT_MAX_BYTES} bytes long")
        if not re.search(r"[A-Z]", password):
            errors.append("Password must contain at least one uppercase letter")
        if not re.search(r"[a-z]", password):
            errors.append("Password must contain at least one lowercase letter")
        if not re.search(r"[0-9]", password):
            errors.append("Password must contain at least one number")
        if not re.search(r"[^A-Za-z0-9]", password):
            errors.append("Password must contain at least one special character")
        return StrengthResult(valid=not errors, errors=errors)

    @staticmethod
    def generate_reset_token() -> str:
        """Return a 64-hex-char one-time reset token (256 bits of entropy)."""
        return secrets.token_hex(32)

    @staticmethod
    def generate_random(length: int = 12) -> str:
        """Generate a random password that satisfies validate_strength().

        One character from each required class is placed first, the rest is
        drawn from the full alphabet, then the whole thing is shuffled.
        """
        if length < _MIN_LENGTH:
            raise ValueError(f"length must be at least {_MIN_LENGTH}")
        chars = [
            secrets.choice(string.ascii_uppercase),
            secrets.choice(string.ascii_lowercase),
            secrets.choice(string.digits),
            secrets.choice(_SYMBOLS),
        ]
        chars.extend(secrets.choice(_RANDOM_ALPHABET) for _ in range(length - len(chars)))
        secrets.SystemRandom().shuffle(chars)
        return "".join(chars)
