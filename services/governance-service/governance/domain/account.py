from __future__ import annotations

from collections import ChainMap
from dataclasses import dataclass, field
from enum import Enum

UNLIMITED_DEVICES = -1
MAX_PING_COUNT = 0xFFFF


def _clamp_ping_count(value: int) -> int:
    return max(0, min(int(value), MAX_PING_COUNT))


class Status(str, Enum):
    """Derived usability state of an account. Never persisted."""

    ACTIVE = "active"
    UNDEFINED = "undefined"
    DELETED = "deleted"
    INACTIVE = "inactive"
    INACTIVE_VIA_MANAGER = "inactive_via_manager"
    EXPIRED = "expired"
    EXPIRED_VIA_MANAGER = "expired_via_manager"
    SUSPENDED = "suspended"
    SUSPENDED_VIA_MANAGER = "suspended_via_manager"
    ERROR = "error"

    @property
    def is_active(self) -> bool:
        return self is Status.ACTIVE


class GeocoderMode(str, Enum):
    none = "none"
    geozone = "geozone"
    partial = "partial"
    full = "full"


@dataclass(slots=True)
class Account:
    """Aggregate root for a tenant account and its credential state."""

    account_id: str
    is_active: bool = True
    deleted_time: int = 0
    expiration_time: int = 0
    suspend_until_time: int = 0
    is_account_manager: bool = False
    manager_id: str = ""
    encoded_password: str = ""
    temp_password: str = ""
    last_passwords: str = ""
    passwd_change_time: int = 0
    passwd_query_time: int = 0
    maximum_devices: int = UNLIMITED_DEVICES
    total_ping_count: int = 0
    max_ping_count: int = 0
    sms_properties: dict[str, str] | None = None
    smtp_properties: dict[str, str] | None = None
    geocoder_mode: GeocoderMode = GeocoderMode.full
    resolved_properties: dict[str, ChainMap] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        self.account_id = self.account_id.strip().lower()
        self.manager_id = (self.manager_id or "").strip()
        self.geocoder_mode = GeocoderMode(self.geocoder_mode)
        self.total_ping_count = _clamp_ping_count(self.total_ping_count)
        self.max_ping_count = _clamp_ping_count(self.max_ping_count)

    @property
    def is_managed(self) -> bool:
        """True when another account's state gates this one."""
        return bool(self.manager_id) and not self.is_account_manager

    @property
    def is_deleted(self) -> bool:
        return self.deleted_time > 0

    def is_expired(self, now: int) -> bool:
        return self.expiration_time > 0 and self.expiration_time < now

    def is_suspended(self, now: int) -> bool:
        return self.suspend_until_time > 0 and self.suspend_until_time >= now

    def set_total_ping_count(self, value: int) -> None:
        self.total_ping_count = _clamp_ping_count(value)

    def set_max_ping_count(self, value: int) -> None:
        self.max_ping_count = _clamp_ping_count(value)

    def has_exceeded_ping_count(self) -> bool:
        """Return ``True`` when a ping limit is set and has been reached."""
        return self.max_ping_count > 0 and self.total_ping_count >= self.max_ping_count

    @property
    def has_unlimited_devices(self) -> bool:
        return self.maximum_devices < 0

    def can_add_device(self, current_count: int) -> bool:
        if self.has_unlimited_devices:
            return True
        return current_count < self.maximum_devices


@dataclass(slots=True)
class User:
    """A login under an account, evaluated after the account itself passes."""

    account_id: str
    user_id: str
    is_active: bool = True
    deleted_time: int = 0
    expiration_time: int = 0
    suspend_until_time: int = 0

    def __post_init__(self) -> None:
        self.account_id = self.account_id.strip().lower()
        self.user_id = self.user_id.strip().lower()

    @property
    def is_deleted(self) -> bool:
        return self.deleted_time > 0

    def is_expired(self, now: int) -> bool:
        return self.expiration_time > 0 and self.expiration_time < now

    def is_suspended(self, now: int) -> bool:
        return self.suspend_until_time > 0 and self.suspend_until_time >= now
