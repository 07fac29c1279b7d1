"""Domain-level contracts for the collaborators the governance core consumes."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Mapping, Protocol, Sequence

from .account import Account, User


class StoreError(RuntimeError):
    """Raised by storage adapters when a backend read or write fails."""


class SlowGeocodeError(RuntimeError):
    """Raised when a fast-only reverse geocode would need a slow lookup."""


class ManagerCycleError(ValueError):
    """Raised when manager delegation revisits an account or exceeds the hop limit."""


@dataclass(frozen=True, slots=True)
class GeoPoint:
    latitude: float
    longitude: float

    @property
    def is_valid(self) -> bool:
        if not (-90.0 <= self.latitude <= 90.0 and -180.0 <= self.longitude <= 180.0):
            return False
        # (0, 0) is the "no fix" marker reported by most devices
        return abs(self.latitude) > 0.0001 or abs(self.longitude) > 0.0001


@dataclass(slots=True)
class EventRecord:
    """Row projection of a historical device event."""

    account_id: str
    device_id: str
    timestamp: int
    status_code: int
    latitude: float
    longitude: float
    address: str = ""

    @property
    def point(self) -> GeoPoint:
        return GeoPoint(self.latitude, self.longitude)

    @property
    def has_address(self) -> bool:
        return bool(self.address and self.address.strip())


@dataclass(frozen=True, slots=True)
class RecordFilter:
    """Selects records for a range scan."""

    missing_address: bool = False
    valid_position: bool = False

    def matches(self, record: EventRecord) -> bool:
        if self.missing_address and record.has_address:
            return False
        if self.valid_position and not record.point.is_valid:
            return False
        return True


class ScanAction(str, Enum):
    CONTINUE = "continue"
    SKIP = "skip"
    STOP = "stop"


RecordHandler = Callable[[EventRecord], ScanAction]


class AccountStore(Protocol):
    def exists(self, account_id: str) -> bool: ...

    def load(self, account_id: str) -> Account | None: ...

    def save(self, account: Account, *fields: str) -> None:
        """Persist ``account``; only ``fields`` when given. Raises StoreError."""
        ...

    def find_managers(self, manager_id: str) -> list[Account]: ...

    def list_account_ids(self, account_filter: Sequence[str] | None = None) -> list[str]: ...


class DeviceSource(Protocol):
    def list_device_ids(self, account_id: str) -> list[str]: ...


class UserSource(Protocol):
    def load_user(self, account_id: str, user_id: str) -> User | None: ...


class LoginAuditSource(Protocol):
    def count_failures(self, account_id: str, since_time: int) -> int: ...


class CredentialPolicy(Protocol):
    def encode(self, plaintext: str) -> str: ...

    def decode(self, encoded: str) -> str | None: ...

    def check(self, account: Account, entered: str) -> bool: ...

    def required_unique_password_count(self) -> int: ...

    def failed_login_suspend_enabled(self) -> bool: ...

    def failed_login_attempt_interval(self) -> int: ...

    def failed_login_attempt_suspend_time(self, fail_count: int, as_of_time: int) -> int: ...

    def validate_new_password(
        self, plaintext: str, previous_encoded: Sequence[str] | None
    ) -> str | None: ...

    def has_password_expired(self, changed_time: int) -> bool: ...


class GeocodeResolver(Protocol):
    def reverse_geocode(self, point: GeoPoint, fast_only: bool = False) -> str | None: ...


class RecordRangeSource(Protocol):
    def scan_range(
        self,
        account_id: str,
        device_id: str,
        start_time: int,
        end_time: int,
        record_filter: RecordFilter,
        handler: RecordHandler,
    ) -> int:
        """Invoke ``handler`` per matching record in ``[start_time, end_time)``; return the count visited."""
        ...


class RecordUpdater(Protocol):
    def update_address(self, record: EventRecord, address: str) -> None: ...


class DefaultPropertiesProvider(Protocol):
    def default_properties(self, kind: str) -> Mapping[str, str]: ...
