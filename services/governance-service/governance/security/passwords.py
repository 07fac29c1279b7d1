"""Default credential policy: password encoding, validation and lockout thresholds."""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
import string
import time
from dataclasses import dataclass
from typing import Sequence

from ..config import Settings
from ..domain.account import Account

ENC_PLAIN = "plain"
ENC_SHA1 = "sha1"
ENC_MD5 = "md5"

# hashed passwords are always this long; plain passwords of any other length
HASH_LEN = 32
SHA1_SALT_LENGTH = 4
DEFAULT_SPECIAL_CHARACTERS = "!@#$%^&*()_+-:;.?/"


def _split_encoding(encoding: str) -> tuple[str, str | None]:
    """Split ``sha1plain`` style names into (save encoding, alternate encoding)."""
    encoding = (encoding or ENC_PLAIN).strip().lower()
    for name in (ENC_SHA1, ENC_MD5, ENC_PLAIN):
        if encoding.startswith(name):
            alternate = encoding[len(name):] or None
            if alternate is not None and alternate not in (ENC_SHA1, ENC_MD5, ENC_PLAIN):
                break
            return name, alternate
    raise ValueError(f"unsupported password encoding: {encoding!r}")


@dataclass(frozen=True, slots=True)
class PasswordRules:
    """Character and length requirements applied to newly chosen passwords."""

    minimum_length: int = 1
    maximum_length: int = 0
    special_characters: str = DEFAULT_SPECIAL_CHARACTERS
    minimum_lower: int = 0
    minimum_upper: int = 0
    minimum_alpha: int = 0
    minimum_digits: int = 0
    minimum_special: int = 0
    minimum_non_alpha: int = 0
    minimum_categories: int = 0


class GeneralPasswordPolicy:
    """Configurable ``CredentialPolicy`` supporting plain, salted SHA-1 and MD5 storage."""

    def __init__(
        self,
        *,
        encoding: str = ENC_PLAIN,
        hash_salt: str = "",
        required_unique_passwords: int = 1,
        failed_login_max_attempts: int = 5,
        failed_login_attempt_interval: int = 120,
        failed_login_suspend_interval: int = 180,
        maximum_password_age_seconds: int = 0,
        rules: PasswordRules | None = None,
    ) -> None:
        self._save_encoding, self._alt_encoding = _split_encoding(encoding)
        self._hash_salt = bytes.fromhex(hash_salt) if hash_salt else b""
        self._required_unique = required_unique_passwords
        self._max_attempts = failed_login_max_attempts
        self._attempt_interval = failed_login_attempt_interval
        self._suspend_interval = failed_login_suspend_interval
        self._max_age = maximum_password_age_seconds
        self._rules = rules or PasswordRules()

    @classmethod
    def from_settings(cls, settings: Settings) -> "GeneralPasswordPolicy":
        """Build the policy from the process settings."""
        return cls(
            encoding=settings.password_encoding,
            hash_salt=settings.password_hash_salt,
            required_unique_passwords=settings.required_unique_passwords,
            failed_login_max_attempts=settings.failed_login_max_attempts,
            failed_login_attempt_interval=settings.failed_login_attempt_interval,
            failed_login_suspend_interval=settings.failed_login_suspend_interval,
            maximum_password_age_seconds=settings.maximum_password_age_seconds,
            rules=PasswordRules(
                minimum_length=settings.minimum_password_length,
                maximum_length=settings.maximum_password_length,
            ),
        )

    @property
    def encoding(self) -> str:
        return self._save_encoding + (self._alt_encoding or "")

    def _uses(self, encoding: str) -> bool:
        return encoding in (self._save_encoding, self._alt_encoding)

    def _digest(self, algorithm: str, plaintext: str, salt: bytes = b"") -> bytes:
        digest = hashlib.new(algorithm)
        digest.update(self._hash_salt)
        digest.update(plaintext.encode("utf-8"))
        digest.update(salt)
        return digest.digest()

    def _sha1(self, plaintext: str, salt: bytes | None = None) -> str:
        if salt is None:
            salt = secrets.token_bytes(SHA1_SALT_LENGTH)
        hashed = self._digest("sha1", plaintext, salt)
        return base64.b64encode(hashed + salt).decode("ascii")

    def _md5(self, plaintext: str) -> str:
        return self._digest("md5", plaintext).hex()

    def encode(self, plaintext: str) -> str:
        """Encode ``plaintext`` for storage. Blank encodes to blank."""
        if not plaintext:
            return plaintext or ""
        if self._save_encoding == ENC_SHA1:
            return self._sha1(plaintext)
        if self._save_encoding == ENC_MD5:
            return self._md5(plaintext)
        return plaintext

    def decode(self, encoded: str) -> str | None:
        """Return the clear text, or ``None`` when the encoding is one-way."""
        if not encoded:
            return encoded or ""
        if self._save_encoding == ENC_PLAIN:
            return encoded
        return None

    def check(self, account: Account, entered: str) -> bool:
        if account is None:
            return False
        return self._matches(entered, account.encoded_password)

    def _matches(self, entered: str, stored: str) -> bool:
        # accounts without a stored password can never log in
        if not stored or not entered:
            return False

        if len(stored) != HASH_LEN:
            if not self._uses(ENC_PLAIN):
                return False
            return hmac.compare_digest(stored.encode("utf-8"), entered.encode("utf-8"))
        if self._save_encoding == ENC_PLAIN and self._alt_encoding in (None, ENC_PLAIN):
            return hmac.compare_digest(stored.encode("utf-8"), entered.encode("utf-8"))

        if self._uses(ENC_SHA1):
            try:
                raw = base64.b64decode(stored, validate=True)
            except (binascii.Error, ValueError):
                raw = b""
            if len(raw) > SHA1_SALT_LENGTH:
                salt = raw[-SHA1_SALT_LENGTH:]
                if hmac.compare_digest(self._digest("sha1", entered, salt), raw[:-SHA1_SALT_LENGTH]):
                    return True

        if self._uses(ENC_MD5):
            if hmac.compare_digest(self._md5(entered), stored.lower()):
                return True

        return False

    def required_unique_password_count(self) -> int:
        return self._required_unique

    def failed_login_suspend_enabled(self) -> bool:
        if self._max_attempts <= 0 or self._attempt_interval <= 0:
            return False
        return self._suspend_interval > 0

    def failed_login_attempt_interval(self) -> int:
        return self._attempt_interval

    def failed_login_attempt_suspend_time(self, fail_count: int, as_of_time: int) -> int:
        """Return the suspend-until epoch for ``fail_count`` failures, or 0 for no lockout."""
        if fail_count <= 0 or as_of_time <= 0:
            return 0
        if self._max_attempts <= 0 or self._attempt_interval <= 0:
            return 0
        if fail_count < self._max_attempts:
            return 0
        if self._suspend_interval <= 0:
            return 0
        return as_of_time + self._suspend_interval

    def has_password_expired(self, changed_time: int) -> bool:
        if self._max_age <= 0 or changed_time <= 0:
            return False
        age = int(time.time()) - changed_time
        return age > self._max_age

    def validate_new_password(
        self, plaintext: str, previous_encoded: Sequence[str] | None
    ) -> str | None:
        """Return a failure reason for ``plaintext``, or ``None`` when acceptable."""
        rules = self._rules
        if plaintext is None:
            return "Password not specified"
        if plaintext == "":
            return "Blank password not allowed"
        if rules.minimum_length > 0 and len(plaintext) < rules.minimum_length:
            return "Password is too short"
        if rules.maximum_length > 0 and len(plaintext) > rules.maximum_length:
            return "Password is too long"

        lower = upper = digits = special = 0
        for ch in plaintext:
            if ch in string.ascii_lowercase:
                lower += 1
            elif ch in string.ascii_uppercase:
                upper += 1
            elif ch in string.digits:
                digits += 1
            elif ch in rules.special_characters:
                special += 1
            else:
                return "Invalid character found in password"

        minimums = (
            (rules.minimum_lower, lower, "Requires additional lower-alpha characters"),
            (rules.minimum_upper, upper, "Requires additional upper-alpha characters"),
            (rules.minimum_alpha, lower + upper, "Requires additional alpha characters"),
            (rules.minimum_digits, digits, "Requires additional digit characters"),
            (rules.minimum_special, special, "Requires additional special characters"),
            (rules.minimum_non_alpha, digits + special, "Requires additional non-alpha characters"),
        )
        for minimum, count, reason in minimums:
            if minimum > 0 and count < minimum:
                return reason

        if rules.minimum_categories > 0:
            categories = sum(1 for count in (lower, upper, digits, special) if count > 0)
            if categories < min(rules.minimum_categories, 4):
                return "Requires additional character categories"

        if not self.encode(plaintext):
            return "Encoded password is blank"

        unique = self.required_unique_password_count()
        if previous_encoded and unique > 0:
            for encoded in list(previous_encoded)[:unique]:
                if self._matches(plaintext, encoded):
                    return "Must not match prior password"
        return None
