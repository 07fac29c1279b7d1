from __future__ import annotations

from governance.domain.account import Account, GeocoderMode, Status


def test_account_ids_are_normalised():
    account = Account("  ACME ", manager_id=" team ", geocoder_mode="partial")
    assert account.account_id == "acme"
    assert account.manager_id == "team"
    assert account.geocoder_mode is GeocoderMode.partial


def test_manager_accounts_are_not_managed():
    assert Account("worker", manager_id="team").is_managed
    assert not Account("boss", manager_id="team", is_account_manager=True).is_managed
    assert not Account("solo").is_managed


def test_ping_counts_are_clamped():
    account = Account("acme", total_ping_count=-3, max_ping_count=70000)
    assert account.total_ping_count == 0
    assert account.max_ping_count == 0xFFFF
    account.set_total_ping_count(0xFFFF)
    assert account.has_exceeded_ping_count()
    account.set_max_ping_count(0)
    assert not account.has_exceeded_ping_count()


def test_device_limit():
    assert Account("acme").can_add_device(10_000)
    limited = Account("acme", maximum_devices=2)
    assert limited.can_add_device(1)
    assert not limited.can_add_device(2)


def test_only_active_status_is_active():
    assert Status.ACTIVE.is_active
    assert not any(status.is_active for status in Status if status is not Status.ACTIVE)
