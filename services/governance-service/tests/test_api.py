from __future__ import annotations

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from conftest import NOW, FakeAccountStore, FakeLoginAudit
from governance.api import routes
from governance.domain.account import Account, User
from governance.domain.credentials import CredentialManager, decode_last_passwords
from governance.domain.delegation import DelegatedPropertiesResolver, SettingsPropertiesProvider
from governance.domain.service import AccountService
from governance.domain.status import StatusEngine
from governance.jobs.address_backfill import BackfillCoordinator
from governance.security.passwords import GeneralPasswordPolicy


class RecordingCoordinator(BackfillCoordinator):
    """Real coordinator that also records how it was invoked."""

    def __init__(self, store: FakeAccountStore, pool_size: int, calls: list) -> None:
        super().__init__(store, store, _NoRecords(), _NoRecords(), _NoGeocoder(), pool_size=pool_size, poll_interval=0.01)
        self._requested_pool_size = pool_size
        self.calls = calls

    def run(self, start_time, end_time, account_ids=None):
        self.calls.append((start_time, end_time, self._requested_pool_size, account_ids))
        return super().run(start_time, end_time, account_ids)


class _NoRecords:
    def scan_range(self, account_id, device_id, start_time, end_time, record_filter, handler) -> int:
        return 0

    def update_address(self, record, address) -> None:
        raise AssertionError("no updates expected")


class _NoGeocoder:
    def reverse_geocode(self, point, fast_only=False):
        return None


@pytest.fixture
def api_client(clock):
    """Provide a FastAPI test client with isolated state."""
    store = FakeAccountStore()
    audit = FakeLoginAudit()
    policy = GeneralPasswordPolicy(encoding="plain", required_unique_passwords=2)
    backfill_calls: list[tuple[int, int, int, list[str] | None]] = []
    service = AccountService(
        store,
        StatusEngine(store, clock=clock),
        CredentialManager(policy, audit, store, clock=clock),
        DelegatedPropertiesResolver(
            store,
            SettingsPropertiesProvider({"gateway": "default-gw"}, {"host": "mail.example.com"}),
        ),
        audit,
        backfill_factory=lambda pool_size: RecordingCoordinator(store, pool_size, backfill_calls),
        users=store,
    )

    app = FastAPI()
    app.include_router(routes.router)
    app.state.account_service = service

    with TestClient(app) as client:
        yield client, store, audit, backfill_calls


def test_status_of_unknown_account_is_undefined(api_client):
    client, *_ = api_client
    resp = client.get("/v1/accounts/nobody/status")
    assert resp.status_code == 200
    assert resp.json() == {"account_id": "nobody", "status": "undefined", "active": False}


def test_status_reflects_manager(api_client):
    client, store, *_ = api_client
    store.add(Account("boss", is_account_manager=True, manager_id="team", suspend_until_time=NOW + 60))
    store.add(Account("worker", manager_id="team"))
    body = client.get("/v1/accounts/Worker/status").json()
    assert body["account_id"] == "worker"
    assert body["status"] == "suspended_via_manager"
    assert body["active"] is False


def test_status_for_user(api_client):
    client, store, *_ = api_client
    store.add(Account("acme"))
    store.add_user(User("acme", "alice", expiration_time=NOW - 1))
    store.add_user(User("acme", "bob"))

    assert client.get("/v1/accounts/acme/status", params={"user_id": "alice"}).json()["status"] == "expired"
    assert client.get("/v1/accounts/acme/status", params={"user_id": "bob"}).json()["status"] == "active"
    assert client.get("/v1/accounts/acme/status", params={"user_id": "carol"}).json()["status"] == "undefined"


def test_account_status_masks_user_status(api_client):
    client, store, *_ = api_client
    store.add(Account("acme", is_active=False))
    store.add_user(User("acme", "alice"))
    body = client.get("/v1/accounts/acme/status", params={"user_id": "alice"}).json()
    assert body["status"] == "inactive"


def test_status_reports_storage_failure_as_error(api_client):
    client, store, *_ = api_client
    store.add(Account("acme"))
    store.fail_loads.add("acme")
    body = client.get("/v1/accounts/acme/status").json()
    assert body["status"] == "error"
    assert body["active"] is False


def test_login_success(api_client):
    client, store, *_ = api_client
    store.add(Account("acme", encoded_password="hunter2"))
    resp = client.post("/v1/accounts/acme/login", json={"password": "hunter2"})
    assert resp.status_code == 200
    assert resp.json() == {"account_id": "acme", "authenticated": True, "status": "active"}


def test_repeated_login_failures_lock_the_account(api_client):
    client, store, audit, _ = api_client
    store.add(Account("acme", encoded_password="hunter2"))

    for _ in range(4):
        resp = client.post("/v1/accounts/acme/login", json={"password": "wrong"})
        assert resp.status_code == 401

    locked = client.post("/v1/accounts/acme/login", json={"password": "wrong"})
    assert locked.status_code == 403
    assert locked.json()["detail"]["status"] == "suspended"
    assert store.accounts["acme"].suspend_until_time == NOW + 180
    assert len(audit.failures["acme"]) == 5

    # the right password no longer helps while suspended
    after = client.post("/v1/accounts/acme/login", json={"password": "hunter2"})
    assert after.status_code == 403


def test_login_to_inactive_account_is_forbidden(api_client):
    client, store, audit, _ = api_client
    store.add(Account("acme", encoded_password="hunter2", is_active=False))
    resp = client.post("/v1/accounts/acme/login", json={"password": "hunter2"})
    assert resp.status_code == 403
    assert resp.json()["detail"]["status"] == "inactive"
    assert audit.failures == {}


def test_change_password(api_client):
    client, store, *_ = api_client
    store.add(Account("acme", encoded_password="first1"))

    reused = client.post("/v1/accounts/acme/password", json={"password": "first1"})
    assert reused.status_code == 400
    assert reused.json()["detail"] == "Must not match prior password"

    changed = client.post("/v1/accounts/acme/password", json={"password": "second2"})
    assert changed.status_code == 204
    assert store.accounts["acme"].encoded_password == "second2"
    assert decode_last_passwords(store.accounts["acme"].last_passwords) == ["first1"]


def test_change_password_storage_failure(api_client):
    client, store, *_ = api_client
    store.add(Account("acme", encoded_password="first1"))
    store.fail_saves = True
    resp = client.post("/v1/accounts/acme/password", json={"password": "second2"})
    assert resp.status_code == 503


def test_change_password_unknown_account(api_client):
    client, *_ = api_client
    resp = client.post("/v1/accounts/ghost/password", json={"password": "second2"})
    assert resp.status_code == 404


def test_reset_password_issues_temporary_password(api_client):
    client, store, *_ = api_client
    store.add(Account("acme", encoded_password="first1"))
    resp = client.post("/v1/accounts/acme/password/reset")
    assert resp.status_code == 200
    temporary = resp.json()["temporary_password"]
    assert store.accounts["acme"].encoded_password == temporary
    assert store.accounts["acme"].temp_password == temporary


def test_reset_password_storage_failure(api_client):
    client, store, *_ = api_client
    store.add(Account("acme", encoded_password="first1"))
    store.fail_saves = True
    assert client.post("/v1/accounts/acme/password/reset").status_code == 503


def test_password_expired(api_client):
    client, store, *_ = api_client
    store.add(Account("acme", passwd_change_time=NOW))
    resp = client.get("/v1/accounts/acme/password/expired")
    assert resp.status_code == 200
    assert resp.json() == {"account_id": "acme", "expired": False}


def test_config_is_resolved_through_manager(api_client):
    client, store, *_ = api_client
    store.add(Account("boss", is_account_manager=True, manager_id="team", smtp_properties={"user": "boss"}))
    store.add(Account("worker", manager_id="team"))
    resp = client.get("/v1/accounts/worker/config/smtp")
    assert resp.status_code == 200
    assert resp.json()["properties"] == {"host": "mail.example.com", "user": "boss"}


def test_config_rejects_unknown_kind(api_client):
    client, store, *_ = api_client
    store.add(Account("acme"))
    assert client.get("/v1/accounts/acme/config/fax").status_code == 400


def test_address_backfill_is_accepted_and_run(api_client):
    client, store, _, backfill_calls = api_client
    store.add(Account("acme"))
    resp = client.post(
        "/v1/maintenance/address-backfill",
        json={"start_time": NOW, "end_time": NOW + 3600, "pool_size": 500, "account_ids": ["acme"]},
    )
    assert resp.status_code == 202
    pool_size = resp.json()["pool_size"]
    assert pool_size == routes.settings.backfill_max_pool_size
    assert backfill_calls == [(NOW, NOW + 3600, pool_size, ["acme"])]


def test_address_backfill_rejects_inverted_range(api_client):
    client, *_ = api_client
    resp = client.post(
        "/v1/maintenance/address-backfill",
        json={"start_time": NOW, "end_time": NOW - 1},
    )
    assert resp.status_code == 422
