from __future__ import annotations

from dataclasses import replace
from typing import Sequence

import pytest

from governance.domain.account import Account, User
from governance.domain.contracts import StoreError

NOW = 1_700_000_000


class FakeAccountStore:
    """In-memory account store mimicking the Postgres repository."""

    def __init__(self, *accounts: Account) -> None:
        self.accounts: dict[str, Account] = {}
        self.devices: dict[str, list[str]] = {}
        self.users: dict[tuple[str, str], User] = {}
        self.saved: list[tuple[str, tuple[str, ...]]] = []
        self.fail_saves = False
        self.fail_loads: set[str] = set()
        self.fail_managers = False
        for account in accounts:
            self.add(account)

    def add(self, account: Account) -> Account:
        self.accounts[account.account_id] = account
        return account

    def exists(self, account_id: str) -> bool:
        return account_id.strip().lower() in self.accounts

    def load(self, account_id: str) -> Account | None:
        key = account_id.strip().lower()
        if key in self.fail_loads:
            raise StoreError(f"load failed for {key}")
        stored = self.accounts.get(key)
        if stored is None:
            return None
        # hand out a fresh instance per load, like a database row
        return replace(stored)

    def save(self, account: Account, *fields: str) -> None:
        if self.fail_saves:
            raise StoreError("database unavailable")
        stored = self.accounts.get(account.account_id)
        if fields and stored is not None:
            for name in fields:
                setattr(stored, name, getattr(account, name))
        else:
            self.accounts[account.account_id] = replace(account)
        self.saved.append((account.account_id, fields))

    def find_managers(self, manager_id: str) -> list[Account]:
        if self.fail_managers:
            raise StoreError("manager lookup failed")
        return [
            account
            for account_id, account in sorted(self.accounts.items())
            if account.manager_id == manager_id and account.is_account_manager
        ]

    def list_account_ids(self, account_filter: Sequence[str] | None = None) -> list[str]:
        ids = sorted(self.accounts)
        if account_filter:
            wanted = {account_id.strip().lower() for account_id in account_filter}
            ids = [account_id for account_id in ids if account_id in wanted]
        return ids

    def list_device_ids(self, account_id: str) -> list[str]:
        return list(self.devices.get(account_id, []))

    def add_user(self, user: User) -> User:
        self.users[(user.account_id, user.user_id)] = user
        return user

    def load_user(self, account_id: str, user_id: str) -> User | None:
        return self.users.get((account_id.strip().lower(), user_id.strip().lower()))


class FakeLoginAudit:
    """Failed-login history with explicit timestamps."""

    def __init__(self) -> None:
        self.failures: dict[str, list[int]] = {}

    def record_failure(self, account_id: str, at_time: int | None = None) -> None:
        self.failures.setdefault(account_id, []).append(NOW if at_time is None else at_time)

    def count_failures(self, account_id: str, since_time: int) -> int:
        return sum(1 for at in self.failures.get(account_id, []) if at >= since_time)


@pytest.fixture()
def store() -> FakeAccountStore:
    return FakeAccountStore()


@pytest.fixture()
def audit() -> FakeLoginAudit:
    return FakeLoginAudit()


@pytest.fixture()
def clock():
    return lambda: NOW
