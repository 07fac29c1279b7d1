"""Account status derivation, including manager delegation."""

from __future__ import annotations

import logging
import time
from typing import Callable

from .account import Account, Status, User
from .contracts import AccountStore, ManagerCycleError

logger = logging.getLogger(__name__)


def _epoch_now() -> int:
    return int(time.time())


class StatusEngine:
    """Evaluate an account (and optionally a user) to exactly one ``Status``.

    Checks run in a fixed precedence order and the first match wins:
    deleted, inactive, inactive via manager, expired, expired via manager,
    suspended, suspended via manager, then the user-level checks.

    A managed account is gated by every manager found for its ``manager_id``:
    any manager being inactive, expired or suspended is enough to flip the
    managed account. When no manager is found the activity gate fails closed
    while expiry and suspension fall back to the account's own state.
    """

    def __init__(
        self,
        store: AccountStore,
        *,
        hop_limit: int = 8,
        clock: Callable[[], int] = _epoch_now,
    ) -> None:
        self._store = store
        self._hop_limit = max(1, hop_limit)
        self._clock = clock

    def evaluate(self, account: Account | None, user: User | None = None) -> Status:
        """Return the status of ``account``; never raises."""
        if account is None:
            return Status.UNDEFINED
        try:
            return self._evaluate(account, user)
        except ManagerCycleError as exc:
            logger.warning("manager delegation cycle for account %s: %s", account.account_id, exc)
            return Status.ERROR
        except Exception:
            logger.exception("status evaluation failed for account %s", account.account_id)
            return Status.ERROR

    def _evaluate(self, account: Account, user: User | None) -> Status:
        now = self._clock()

        if account.is_deleted:
            return Status.DELETED
        if not account.is_active:
            return Status.INACTIVE

        managers: list[Account] = []
        if account.is_managed:
            managers = self._store.find_managers(account.manager_id)
            if not managers:
                return Status.INACTIVE_VIA_MANAGER
            visited = frozenset({account.account_id})
            if any(not self._manager_active(manager, visited, 1) for manager in managers):
                return Status.INACTIVE_VIA_MANAGER

        if account.is_expired(now):
            return Status.EXPIRED
        if any(manager.is_expired(now) for manager in managers):
            return Status.EXPIRED_VIA_MANAGER

        if account.is_suspended(now):
            return Status.SUSPENDED
        if any(manager.is_suspended(now) for manager in managers):
            return Status.SUSPENDED_VIA_MANAGER

        if user is not None:
            if user.is_deleted:
                return Status.DELETED
            if user.is_expired(now):
                return Status.EXPIRED
            if user.is_suspended(now):
                return Status.SUSPENDED

        return Status.ACTIVE

    def is_active(self, account: Account | None, user: User | None = None) -> bool:
        return self.evaluate(account, user).is_active

    def _manager_active(self, manager: Account, visited: frozenset[str], depth: int) -> bool:
        if manager.is_deleted or not manager.is_active:
            return False
        if not manager.is_managed:
            return True
        if manager.account_id in visited or depth >= self._hop_limit:
            raise ManagerCycleError(f"manager chain revisits {manager.account_id!r} at depth {depth}")
        parents = self._store.find_managers(manager.manager_id)
        if not parents:
            return False
        visited = visited | {manager.account_id}
        return all(self._manager_active(parent, visited, depth + 1) for parent in parents)
