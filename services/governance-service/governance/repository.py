"""Database repositories for accounts, devices and historical event records."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator, Sequence

import psycopg
from psycopg.rows import tuple_row
from psycopg.types.json import Json
from psycopg_pool import ConnectionPool

from .domain.account import Account, GeocoderMode, User
from .domain.contracts import EventRecord, RecordFilter, RecordHandler, ScanAction, StoreError

ACCOUNT_COLUMNS = (
    "account_id",
    "is_active",
    "deleted_time",
    "expiration_time",
    "suspend_until_time",
    "is_account_manager",
    "manager_id",
    "encoded_password",
    "temp_password",
    "last_passwords",
    "passwd_change_time",
    "passwd_query_time",
    "maximum_devices",
    "total_ping_count",
    "max_ping_count",
    "sms_properties",
    "smtp_properties",
    "geocoder_mode",
)
_JSON_COLUMNS = {"sms_properties", "smtp_properties"}
_SELECT_ACCOUNT = f"SELECT {', '.join(ACCOUNT_COLUMNS)} FROM accounts"

USER_COLUMNS = ("account_id", "user_id", "is_active", "deleted_time", "expiration_time", "suspend_until_time")
EVENT_COLUMNS = ("account_id", "device_id", "timestamp", "status_code", "latitude", "longitude", "address")


@contextmanager
def _store_errors(action: str) -> Iterator[None]:
    try:
        yield
    except psycopg.Error as exc:
        raise StoreError(f"{action}: {exc}") from exc


class AccountRepository:
    """Postgres-backed account store; also serves the devices and users owned by an account."""

    def __init__(self, pool: ConnectionPool) -> None:
        """Store the connection pool used for all database interactions."""
        self._pool = pool

    def exists(self, account_id: str) -> bool:
        with _store_errors("checking account"):
            with self._pool.connection() as conn:
                with conn.cursor(row_factory=tuple_row) as cur:
                    cur.execute(
                        "SELECT 1 FROM accounts WHERE account_id = %s",
                        (account_id.strip().lower(),),
                    )
                    return cur.fetchone() is not None

    def load(self, account_id: str) -> Account | None:
        """Fetch an account by identifier or return ``None``."""
        with _store_errors("loading account"):
            with self._pool.connection() as conn:
                with conn.cursor(row_factory=tuple_row) as cur:
                    cur.execute(
                        f"{_SELECT_ACCOUNT} WHERE account_id = %s",
                        (account_id.strip().lower(),),
                    )
                    row = cur.fetchone()
        if not row:
            return None
        return self._map_record(row)

    def save(self, account: Account, *fields: str) -> None:
        """Insert or update ``account``; restrict the update to ``fields`` when given."""
        unknown = set(fields) - set(ACCOUNT_COLUMNS)
        if unknown:
            raise ValueError(f"unknown account fields: {sorted(unknown)}")

        if fields:
            columns = [name for name in fields if name != "account_id"]
            assignments = ", ".join(f"{name} = %s" for name in columns)
            query = f"UPDATE accounts SET {assignments} WHERE account_id = %s"
            params = [self._column_value(account, name) for name in columns]
            params.append(account.account_id)
        else:
            placeholders = ", ".join(["%s"] * len(ACCOUNT_COLUMNS))
            updates = ", ".join(
                f"{name} = EXCLUDED.{name}" for name in ACCOUNT_COLUMNS if name != "account_id"
            )
            query = f"""
                INSERT INTO accounts ({', '.join(ACCOUNT_COLUMNS)})
                VALUES ({placeholders})
                ON CONFLICT (account_id) DO UPDATE SET {updates}
            """
            params = [self._column_value(account, name) for name in ACCOUNT_COLUMNS]

        with _store_errors(f"saving account {account.account_id}"):
            with self._pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(query, params)
                    if fields and cur.rowcount == 0:
                        raise StoreError(f"account {account.account_id} does not exist")
                conn.commit()

    def find_managers(self, manager_id: str) -> list[Account]:
        """Return every manager account registered under ``manager_id``."""
        if not manager_id:
            return []
        with _store_errors("resolving managers"):
            with self._pool.connection() as conn:
                with conn.cursor(row_factory=tuple_row) as cur:
                    cur.execute(
                        f"{_SELECT_ACCOUNT} WHERE manager_id = %s AND is_account_manager ORDER BY account_id",
                        (manager_id,),
                    )
                    rows = cur.fetchall()
        return [self._map_record(row) for row in rows]

    def list_account_ids(self, account_filter: Sequence[str] | None = None) -> list[str]:
        query = "SELECT account_id FROM accounts"
        params: list[Any] = []
        if account_filter:
            query += " WHERE account_id = ANY(%s)"
            params.append([account_id.strip().lower() for account_id in account_filter])
        query += " ORDER BY account_id"
        with _store_errors("listing accounts"):
            with self._pool.connection() as conn:
                with conn.cursor(row_factory=tuple_row) as cur:
                    cur.execute(query, params)
                    return [row[0] for row in cur.fetchall()]

    def list_device_ids(self, account_id: str) -> list[str]:
        with _store_errors(f"listing devices for {account_id}"):
            with self._pool.connection() as conn:
                with conn.cursor(row_factory=tuple_row) as cur:
                    cur.execute(
                        "SELECT device_id FROM devices WHERE account_id = %s ORDER BY device_id",
                        (account_id,),
                    )
                    return [row[0] for row in cur.fetchall()]

    def load_user(self, account_id: str, user_id: str) -> User | None:
        with _store_errors(f"loading user {user_id}"):
            with self._pool.connection() as conn:
                with conn.cursor(row_factory=tuple_row) as cur:
                    cur.execute(
                        f"SELECT {', '.join(USER_COLUMNS)} FROM users WHERE account_id = %s AND user_id = %s",
                        (account_id.strip().lower(), user_id.strip().lower()),
                    )
                    row = cur.fetchone()
        if not row:
            return None
        return User(*row)

    def _column_value(self, account: Account, name: str) -> Any:
        value = getattr(account, name)
        if name in _JSON_COLUMNS:
            return Json(value) if value is not None else None
        if name == "geocoder_mode":
            return value.value
        return value

    def _map_record(self, row: tuple) -> Account:
        """Convert a raw database tuple into the domain ``Account`` dataclass."""
        values = dict(zip(ACCOUNT_COLUMNS, row))
        values["geocoder_mode"] = GeocoderMode(values["geocoder_mode"] or GeocoderMode.full.value)
        for name in ("manager_id", "encoded_password", "temp_password", "last_passwords"):
            values[name] = values[name] or ""
        return Account(**values)


class EventRecordRepository:
    """Range scans and address updates over the ``events`` table."""

    def __init__(self, pool: ConnectionPool) -> None:
        self._pool = pool

    def scan_range(
        self,
        account_id: str,
        device_id: str,
        start_time: int,
        end_time: int,
        record_filter: RecordFilter,
        handler: RecordHandler,
    ) -> int:
        """Invoke ``handler`` for each matching event in ``[start_time, end_time)``."""
        clauses = ["account_id = %s", "device_id = %s", "timestamp >= %s", "timestamp < %s"]
        params: list[Any] = [account_id, device_id, start_time, end_time]
        if record_filter.missing_address:
            clauses.append("(address IS NULL OR address = '')")
        if record_filter.valid_position:
            clauses.append("latitude BETWEEN -90 AND 90 AND longitude BETWEEN -180 AND 180")
            clauses.append("(abs(latitude) > 0.0001 OR abs(longitude) > 0.0001)")

        where_sql = " AND ".join(clauses)
        query = f"""
            SELECT {', '.join(EVENT_COLUMNS)}
            FROM events
            WHERE {where_sql}
            ORDER BY timestamp, status_code
        """
        with _store_errors(f"scanning events for {account_id}/{device_id}"):
            with self._pool.connection() as conn:
                with conn.cursor(row_factory=tuple_row) as cur:
                    cur.execute(query, params)
                    rows = cur.fetchall()

        visited = 0
        for row in rows:
            record = EventRecord(*row[:-1], address=row[-1] or "")
            if not record_filter.matches(record):
                continue
            visited += 1
            if handler(record) is ScanAction.STOP:
                break
        return visited

    def update_address(self, record: EventRecord, address: str) -> None:
        """Set the address on an event that still has none."""
        with _store_errors("updating event address"):
            with self._pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        UPDATE events
                        SET address = %s
                        WHERE account_id = %s AND device_id = %s AND timestamp = %s
                          AND status_code = %s AND (address IS NULL OR address = '')
                        """,
                        (address, record.account_id, record.device_id, record.timestamp, record.status_code),
                    )
                conn.commit()
