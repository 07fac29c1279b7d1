"""Address backfill job.

Walks accounts -> devices -> 12 hour slices of historical events and fills
in reverse-geocoded addresses for records that have a position but no
address. Work is spread over a fixed-size worker pool fed through a bounded
queue; the submitting thread backs off while the queue is full.
"""

from __future__ import annotations

import logging
import queue
import time
from dataclasses import dataclass
from functools import partial
from threading import Event, Lock, Thread
from typing import Callable, Sequence

from prometheus_client import Counter

from ..domain.account import GeocoderMode
from ..domain.contracts import (
    AccountStore,
    DeviceSource,
    EventRecord,
    GeocodeResolver,
    RecordFilter,
    RecordRangeSource,
    RecordUpdater,
    ScanAction,
    StoreError,
)

logger = logging.getLogger(__name__)

SLICE_SECONDS = 12 * 60 * 60
QUEUE_FACTOR = 5
SUBMIT_RETRY_SECONDS = 5.0
DRAIN_POLL_SECONDS = 1.0

BACKFILLED_RECORDS = Counter(
    "governance_backfill_records_updated_total",
    "Event records that received a reverse-geocoded address",
)
BACKFILL_FAILURES = Counter(
    "governance_backfill_failures_total",
    "Record or slice failures skipped by the address backfill",
)

Task = Callable[[], None]


class BoundedWorkerPool:
    """Fixed number of worker threads draining a bounded task queue."""

    def __init__(self, pool_size: int, queue_capacity: int | None = None, *, name: str = "backfill") -> None:
        self._size = max(1, pool_size)
        capacity = queue_capacity if queue_capacity and queue_capacity > 0 else self._size * QUEUE_FACTOR
        self._queue: queue.Queue[Task] = queue.Queue(maxsize=capacity)
        self._lock = Lock()
        self._active = 0
        self._closed = Event()
        self._stopping = Event()
        self._threads = [
            Thread(target=self._work, name=f"{name}-{index}", daemon=True) for index in range(self._size)
        ]
        for thread in self._threads:
            thread.start()

    @property
    def size(self) -> int:
        return self._size

    @property
    def capacity(self) -> int:
        return self._queue.maxsize

    @property
    def active_count(self) -> int:
        """Tasks queued or running."""
        with self._lock:
            return self._active

    @property
    def is_stopping(self) -> bool:
        return self._stopping.is_set()

    def try_submit(self, task: Task) -> bool:
        """Queue ``task`` without blocking; ``False`` when full or no longer accepting."""
        if self._closed.is_set():
            return False
        with self._lock:
            self._active += 1
        try:
            self._queue.put_nowait(task)
        except queue.Full:
            with self._lock:
                self._active -= 1
            return False
        return True

    def shutdown(self) -> None:
        """Accept no further tasks; queued tasks still run."""
        self._closed.set()

    def stop(self) -> None:
        """Begin the stop sequence: refuse submissions, let submitters bail out and drop queued tasks."""
        self._stopping.set()
        self._closed.set()

    def join(self, timeout: float | None = None) -> None:
        for thread in self._threads:
            thread.join(timeout)

    @property
    def is_alive(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def _work(self) -> None:
        while True:
            try:
                task = self._queue.get(timeout=0.25)
            except queue.Empty:
                if self._closed.is_set():
                    return
                continue
            try:
                if not self._stopping.is_set():
                    task()
            except Exception:
                logger.exception("backfill task raised")
            finally:
                with self._lock:
                    self._active -= 1
                self._queue.task_done()


@dataclass(slots=True)
class BackfillSummary:
    accounts: int = 0
    devices: int = 0
    records_updated: int = 0
    failures: int = 0
    aborted: bool = False


class BackfillCoordinator:
    """Repair missing event addresses over ``[start_time, end_time)``."""

    def __init__(
        self,
        store: AccountStore,
        devices: DeviceSource,
        records: RecordRangeSource,
        updater: RecordUpdater,
        geocoder: GeocodeResolver,
        *,
        pool_size: int = 1,
        slice_seconds: int = SLICE_SECONDS,
        retry_interval: float = SUBMIT_RETRY_SECONDS,
        poll_interval: float = DRAIN_POLL_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._devices = devices
        self._records = records
        self._updater = updater
        self._geocoder = geocoder
        self._pool_size = max(1, pool_size)
        self._slice_seconds = slice_seconds
        self._retry_interval = retry_interval
        self._poll_interval = poll_interval
        self._sleep = sleep
        self._pool: BoundedWorkerPool | None = None
        self._stopped = Event()
        self._tally_lock = Lock()

    @property
    def pool(self) -> BoundedWorkerPool | None:
        """Worker pool of the current or most recent run."""
        return self._pool

    def stop(self) -> None:
        """Stop this coordinator for good: refuse submissions, skip queued devices and return."""
        self._stopped.set()
        pool = self._pool
        if pool is not None:
            pool.stop()

    def join(self, timeout: float | None = None) -> None:
        """Wait for the worker threads of the most recent run to exit."""
        pool = self._pool
        if pool is not None:
            pool.join(timeout)

    def run(
        self,
        start_time: int,
        end_time: int,
        account_ids: Sequence[str] | None = None,
    ) -> BackfillSummary:
        if end_time <= start_time:
            raise ValueError("end_time must be after start_time")

        summary = BackfillSummary()
        pool = BoundedWorkerPool(self._pool_size)
        self._pool = pool
        if self._stopped.is_set():
            pool.stop()
        logger.info(
            "address backfill %s..%s started with %s workers (queue %s)",
            start_time,
            end_time,
            pool.size,
            pool.capacity,
        )

        for account_id in self._store.list_account_ids(account_ids):
            try:
                account = self._store.load(account_id)
            except StoreError as exc:
                logger.error("backfill: unable to load account %s: %s", account_id, exc)
                continue
            if account is None:
                continue
            if account.geocoder_mode is GeocoderMode.none:
                logger.debug("backfill: account %s has geocoding disabled", account_id)
                continue
            summary.accounts += 1

            try:
                device_ids = self._devices.list_device_ids(account.account_id)
            except StoreError as exc:
                logger.error("backfill: unable to list devices for %s: %s", account_id, exc)
                continue

            for device_id in device_ids:
                task = partial(self._backfill_device, account.account_id, device_id, start_time, end_time, summary)
                if not self._submit(pool, task):
                    summary.aborted = True
                    logger.warning("address backfill stopped while submitting %s/%s", account_id, device_id)
                    return summary
                summary.devices += 1

        pool.shutdown()
        while pool.active_count > 0:
            self._sleep(self._poll_interval)
        pool.join()
        summary.aborted = pool.is_stopping
        logger.info(
            "address backfill finished: %s accounts, %s devices, %s records updated, %s failures",
            summary.accounts,
            summary.devices,
            summary.records_updated,
            summary.failures,
        )
        return summary

    def _submit(self, pool: BoundedWorkerPool, task: Task) -> bool:
        while not pool.try_submit(task):
            if pool.is_stopping:
                return False
            logger.debug("backfill queue full, retrying in %ss", self._retry_interval)
            self._sleep(self._retry_interval)
        return True

    def _count(self, summary: BackfillSummary, *, updated: int = 0, failures: int = 0) -> None:
        with self._tally_lock:
            summary.records_updated += updated
            summary.failures += failures
        if updated:
            BACKFILLED_RECORDS.inc(updated)
        if failures:
            BACKFILL_FAILURES.inc(failures)

    def _backfill_device(
        self,
        account_id: str,
        device_id: str,
        start_time: int,
        end_time: int,
        summary: BackfillSummary,
    ) -> None:
        try:
            account = self._store.load(account_id)
        except StoreError as exc:
            logger.error("backfill: account %s unavailable for device %s: %s", account_id, device_id, exc)
            self._count(summary, failures=1)
            return
        if account is None:
            logger.error("backfill: account %s not found for device %s", account_id, device_id)
            self._count(summary, failures=1)
            return

        record_filter = RecordFilter(missing_address=True, valid_position=True)
        handler = partial(self._repair_record, summary)
        slice_start = start_time
        while slice_start < end_time and not self._stopped.is_set():
            slice_end = min(slice_start + self._slice_seconds, end_time)
            try:
                self._records.scan_range(account_id, device_id, slice_start, slice_end, record_filter, handler)
            except StoreError as exc:
                logger.error(
                    "backfill: scan %s/%s %s..%s failed: %s",
                    account_id,
                    device_id,
                    slice_start,
                    slice_end,
                    exc,
                )
                self._count(summary, failures=1)
            slice_start = slice_end

    def _repair_record(self, summary: BackfillSummary, record: EventRecord) -> ScanAction:
        if self._stopped.is_set():
            return ScanAction.STOP
        if record.has_address or not record.point.is_valid:
            return ScanAction.SKIP

        try:
            address = self._geocoder.reverse_geocode(record.point, fast_only=False)
        except Exception:
            logger.exception(
                "backfill: reverse geocode failed for %s/%s@%s",
                record.account_id,
                record.device_id,
                record.timestamp,
            )
            self._count(summary, failures=1)
            return ScanAction.CONTINUE
        if not address:
            return ScanAction.CONTINUE

        # another writer may have filled it in while we were geocoding
        if record.has_address:
            return ScanAction.SKIP
        try:
            self._updater.update_address(record, address)
        except StoreError as exc:
            logger.error(
                "backfill: unable to update %s/%s@%s: %s",
                record.account_id,
                record.device_id,
                record.timestamp,
                exc,
            )
            self._count(summary, failures=1)
            return ScanAction.CONTINUE
        record.address = address
        self._count(summary, updated=1)
        return ScanAction.CONTINUE
