"""Account service orchestrating status checks, credentials and maintenance jobs."""

from __future__ import annotations

import logging
import threading
from collections import ChainMap
from dataclasses import dataclass
from typing import Callable, Protocol, Sequence

from .account import Account, Status
from .contracts import AccountStore, UserSource
from .credentials import CredentialManager, PasswordChangeResult
from .delegation import DelegatedPropertiesResolver
from .status import StatusEngine
from ..jobs.address_backfill import BackfillCoordinator, BackfillSummary

logger = logging.getLogger(__name__)


class FailureRecorder(Protocol):
    def record_failure(self, account_id: str, at_time: int | None = None) -> None: ...


@dataclass(slots=True)
class LoginOutcome:
    """Result of a login attempt against an account password."""

    authenticated: bool
    status: Status
    locked_out: bool = False


class AccountService:
    """Account governance workflows used by the HTTP layer."""

    def __init__(
        self,
        store: AccountStore,
        status_engine: StatusEngine,
        credentials: CredentialManager,
        properties: DelegatedPropertiesResolver,
        failures: FailureRecorder,
        backfill_factory: Callable[[int], BackfillCoordinator] | None = None,
        users: UserSource | None = None,
    ) -> None:
        """Store dependencies used to evaluate and mutate accounts."""
        self._store = store
        self._status = status_engine
        self._credentials = credentials
        self._properties = properties
        self._failures = failures
        self._backfill_factory = backfill_factory
        self._users = users
        self._backfills: set[BackfillCoordinator] = set()
        self._backfill_cond = threading.Condition()

    def _require_account(self, account_id: str) -> Account:
        account = self._store.load(account_id)
        if account is None:
            raise ValueError("account not found")
        return account

    def get_status(self, account_id: str, user_id: str | None = None) -> Status:
        """Evaluate an account's status, optionally narrowed to one of its users.

        Backend failures are reported as ``ERROR``. The account's own status
        wins; an unknown user under a usable account is ``UNDEFINED``.
        """
        try:
            account = self._store.load(account_id)
        except Exception:
            logger.exception("unable to load account %s for status", account_id)
            return Status.ERROR
        account_status = self._status.evaluate(account)
        if not user_id or not account_status.is_active:
            return account_status

        if self._users is None:
            logger.error("user status requested for %s but no user source is configured", account_id)
            return Status.ERROR
        try:
            user = self._users.load_user(account.account_id, user_id)
        except Exception:
            logger.exception("unable to load user %s/%s for status", account_id, user_id)
            return Status.ERROR
        if user is None:
            return Status.UNDEFINED
        return self._status.evaluate(account, user)

    def login(self, account_id: str, password: str) -> LoginOutcome:
        """Check a password for an account that is currently usable.

        A failed attempt is recorded before the lockout check runs.
        """
        account = self._store.load(account_id)
        status = self._status.evaluate(account)
        if account is None or not status.is_active:
            return LoginOutcome(authenticated=False, status=status)

        if self._credentials.check_password(account, password, suspend_on_failure=False):
            return LoginOutcome(authenticated=True, status=status)

        self._failures.record_failure(account.account_id)
        locked = self._credentials.suspend_on_login_failure_attempt(account, add_current_failure=False)
        if locked:
            status = self._status.evaluate(account)
        logger.warning("login failed for account %s (locked=%s)", account.account_id, locked)
        return LoginOutcome(authenticated=False, status=status, locked_out=locked)

    def change_password(self, account_id: str, password: str) -> PasswordChangeResult:
        account = self._require_account(account_id)
        result = self._credentials.change_password(account, password)
        if result.ok:
            logger.info("password changed for account %s", account.account_id)
        return result

    def reset_password(self, account_id: str) -> str:
        """Assign and persist a temporary password, returning its clear text."""
        account = self._require_account(account_id)
        plaintext = self._credentials.reset_password(account)
        if not self._credentials.update_password_fields(account):
            raise RuntimeError("unable to save password")
        logger.info("temporary password issued for account %s", account.account_id)
        return plaintext

    def password_expired(self, account_id: str) -> bool:
        return self._credentials.has_password_expired(self._require_account(account_id))

    def resolved_properties(self, account_id: str, kind: str) -> ChainMap:
        account = self._require_account(account_id)
        return self._properties.resolve(account, kind)

    def run_address_backfill(
        self,
        start_time: int,
        end_time: int,
        pool_size: int,
        account_ids: Sequence[str] | None = None,
    ) -> BackfillSummary:
        if self._backfill_factory is None:
            raise ValueError("address backfill is not configured")
        coordinator = self._backfill_factory(pool_size)
        with self._backfill_cond:
            self._backfills.add(coordinator)
        try:
            return coordinator.run(start_time, end_time, account_ids)
        finally:
            with self._backfill_cond:
                self._backfills.discard(coordinator)
                self._backfill_cond.notify_all()

    def stop_backfills(self, timeout: float = 30.0) -> bool:
        """Stop every running backfill and wait for the runs to return.

        Returns ``False`` when a run is still going after ``timeout`` seconds.
        """
        with self._backfill_cond:
            running = list(self._backfills)
        if running:
            logger.info("stopping %s running address backfill(s)", len(running))
        for coordinator in running:
            coordinator.stop()
        with self._backfill_cond:
            finished = self._backfill_cond.wait_for(lambda: not self._backfills, timeout)
        for coordinator in running:
            coordinator.join(timeout)
        if not finished:
            logger.warning("address backfill still running after %ss", timeout)
        return finished
