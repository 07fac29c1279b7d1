"""In-memory failed login audit trail."""

from __future__ import annotations

import time
from bisect import bisect_left
from collections import deque
from threading import Lock
from typing import Deque, DefaultDict


class InMemoryLoginAudit:
    """Thread-safe record of failed login times per account."""

    def __init__(self, retention_seconds: int = 86400) -> None:
        """Initialise retention and per-account storage."""
        self._retention = retention_seconds
        self._failures: DefaultDict[str, Deque[int]] = DefaultDict(deque)
        self._lock = Lock()
        self._last_sweep: int | None = None

    def record_failure(self, account_id: str, at_time: int | None = None) -> None:
        """Append a failed attempt and drop entries older than the retention window."""
        now = int(time.time()) if at_time is None else at_time
        with self._lock:
            if self._last_sweep is None or now - self._last_sweep >= self._retention:
                self._purge(now)
            queue = self._failures[account_id]
            while queue and now - queue[0] > self._retention:
                queue.popleft()
            # keep ascending order when callers pass explicit times
            if queue and now < queue[-1]:
                items = sorted([*queue, now])
                queue.clear()
                queue.extend(items)
            else:
                queue.append(now)

    def purge_expired(self, now: int | None = None) -> int:
        """Forget accounts whose failures have all aged out; returns how many were dropped."""
        now = int(time.time()) if now is None else now
        with self._lock:
            return self._purge(now)

    def _purge(self, now: int) -> int:
        expired = [
            account_id
            for account_id, queue in self._failures.items()
            if not queue or now - queue[-1] > self._retention
        ]
        for account_id in expired:
            del self._failures[account_id]
        self._last_sweep = now
        return len(expired)

    def count_failures(self, account_id: str, since_time: int) -> int:
        """Return the number of failures recorded at or after ``since_time``."""
        with self._lock:
            queue = self._failures.get(account_id)
            if not queue:
                return 0
            return len(queue) - bisect_left(queue, since_time)

    def clear(self, account_id: str) -> None:
        with self._lock:
            self._failures.pop(account_id, None)
