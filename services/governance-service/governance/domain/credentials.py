"""Password lifecycle: set/check/reset, rotation history and failed-login lockout."""

from __future__ import annotations

import base64
import binascii
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Iterable

from prometheus_client import Counter

from .account import Account
from .contracts import AccountStore, CredentialPolicy, LoginAuditSource, StoreError

logger = logging.getLogger(__name__)

# digits, consonants and a few symbols; vowels are left out so generated
# passwords cannot spell words
RANDOM_PASSWORD_ALPHABET = "0123456789bcdfghjkmnpqrstvwxyzBCDFGHJKLMNPQRSTVWXYZ#$%&*+=@"
TEMP_PASSWORD_LENGTH = 8

PASSWORD_FIELDS = ("encoded_password", "temp_password", "last_passwords", "passwd_change_time")

LOCKOUTS = Counter(
    "governance_login_lockouts_total",
    "Accounts suspended after repeated failed login attempts",
)


def _epoch_now() -> int:
    return int(time.time())


def create_random_password(length: int = TEMP_PASSWORD_LENGTH) -> str:
    return "".join(secrets.choice(RANDOM_PASSWORD_ALPHABET) for _ in range(length))


def encode_last_passwords(passwords: Iterable[str], max_length: int) -> str:
    """Serialise encoded passwords as comma separated, unpadded base64 tokens.

    Tokens are appended in order until the next one would push the blob past
    ``max_length``; that token and everything after it is dropped.
    """
    if max_length <= 0:
        raise ValueError("max_length must be positive")
    blob = ""
    for index, password in enumerate(passwords):
        token = base64.b64encode((password or "").encode("utf-8")).decode("ascii").rstrip("=")
        separator = "," if index > 0 else ""
        if len(blob) + len(separator) + len(token) > max_length:
            break
        blob += separator + token
    return blob


def decode_last_passwords(blob: str | None) -> list[str]:
    """Inverse of :func:`encode_last_passwords`; undecodable tokens are dropped."""
    passwords: list[str] = []
    if not blob:
        return passwords
    for token in blob.split(","):
        token = token.strip()
        if not token:
            continue
        padded = token + "=" * (-len(token) % 4)
        try:
            passwords.append(base64.b64decode(padded, validate=True).decode("utf-8"))
        except (binascii.Error, ValueError):
            continue
    return passwords


@dataclass(slots=True)
class PasswordChangeResult:
    ok: bool
    reason: str | None = None
    storage_error: bool = False


class CredentialManager:
    """Owns password state on an ``Account``.

    Methods that only mutate the account (``set_password``, ``reset_password``)
    leave persistence to the caller. The lockout path writes the new suspend
    time itself on a best-effort basis.
    """

    def __init__(
        self,
        policy: CredentialPolicy,
        audit: LoginAuditSource,
        store: AccountStore,
        *,
        max_stored_length: int = 300,
        clock: Callable[[], int] = _epoch_now,
    ) -> None:
        if max_stored_length <= 0:
            raise ValueError("max_stored_length must be positive")
        self._policy = policy
        self._audit = audit
        self._store = store
        self._max_stored_length = max_stored_length
        self._clock = clock

    @property
    def policy(self) -> CredentialPolicy:
        return self._policy

    # rotation history

    def add_last_password(self, account: Account, current: str) -> None:
        """Push ``current`` onto the account's rotation history."""
        required = self._policy.required_unique_password_count()
        if required <= 0:
            account.last_passwords = ""
            return
        history = [current]
        for previous in decode_last_passwords(account.last_passwords):
            if len(history) >= required:
                break
            history.append(previous)
        account.last_passwords = encode_last_passwords(history, self._max_stored_length)

    def get_last_encoded_passwords(self, account: Account) -> list[str] | None:
        """Return the current encoded password followed by prior ones, newest first."""
        required = self._policy.required_unique_password_count()
        if required <= 0:
            return None
        passwords = [account.encoded_password]
        if required == 1:
            return passwords
        for previous in decode_last_passwords(account.last_passwords):
            if len(passwords) >= required:
                break
            if not previous.strip():
                continue
            passwords.append(previous)
        return passwords

    # password state

    def set_password(self, account: Account, plaintext: str, is_temporary: bool) -> None:
        encoded = self._policy.encode(plaintext)
        self.add_last_password(account, account.encoded_password)
        account.encoded_password = encoded or ""
        account.passwd_change_time = self._clock()
        account.temp_password = plaintext if is_temporary else ""

    def check_password(self, account: Account, entered: str, suspend_on_failure: bool) -> bool:
        ok = self._policy.check(account, entered)
        if not ok and suspend_on_failure:
            self.suspend_on_login_failure_attempt(account, True)
        return ok

    def reset_password(self, account: Account) -> str:
        """Assign a random temporary password and return it. The account is not saved."""
        plaintext = create_random_password()
        self.set_password(account, plaintext, is_temporary=True)
        return plaintext

    def get_decoded_password(self, account: Account) -> str | None:
        """Return the clear-text password when the policy can decode it."""
        account.passwd_query_time = self._clock()
        return self._policy.decode(account.encoded_password)

    def has_password_expired(self, account: Account) -> bool:
        return self._policy.has_password_expired(account.passwd_change_time)

    def update_password_fields(self, account: Account) -> bool:
        try:
            self._store.save(account, *PASSWORD_FIELDS)
        except StoreError as exc:
            logger.error("unable to save password fields for account %s: %s", account.account_id, exc)
            return False
        return True

    def change_password(self, account: Account, plaintext: str) -> PasswordChangeResult:
        """Validate, set and persist a user-chosen password."""
        previous = self.get_last_encoded_passwords(account)
        reason = self._policy.validate_new_password(plaintext, previous)
        if reason is not None:
            return PasswordChangeResult(ok=False, reason=reason)
        self.set_password(account, plaintext, is_temporary=False)
        if not self.update_password_fields(account):
            return PasswordChangeResult(ok=False, reason="unable to save password", storage_error=True)
        return PasswordChangeResult(ok=True)

    # lockout

    def suspend_on_login_failure_attempt(self, account: Account, add_current_failure: bool) -> bool:
        """Suspend ``account`` when recent failures reach the policy threshold.

        Returns ``True`` when the account is (or already was) locked out by the
        current failure count. The suspend time only ever moves later.
        """
        if not self._policy.failed_login_suspend_enabled():
            return False

        as_of = self._clock()
        since = as_of - self._policy.failed_login_attempt_interval()
        fail_count = self._audit.count_failures(account.account_id, since)
        if add_current_failure:
            fail_count += 1

        suspend_time = self._policy.failed_login_attempt_suspend_time(fail_count, as_of)
        if suspend_time <= 0:
            return False

        if suspend_time > account.suspend_until_time:
            account.suspend_until_time = suspend_time
            LOCKOUTS.inc()
            logger.info(
                "account %s suspended until %s after %s failed logins",
                account.account_id,
                suspend_time,
                fail_count,
            )
            try:
                self._store.save(account, "suspend_until_time")
            except StoreError as exc:
                logger.error("unable to set suspend_until_time for account %s: %s", account.account_id, exc)
        return True
