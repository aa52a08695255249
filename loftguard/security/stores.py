"""Backing-store contracts and in-memory implementations.

The counter store owns the one hard concurrency invariant of the security
layer: a fetch-reset-or-increment on a key is a single atomic operation.
In memory that is a lock-guarded dict mutation with no await inside the
critical section; in PostgreSQL it is a single upsert statement
(see ``sql_stores``). Components never read-then-write counters themselves.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from threading import Lock
from typing import Any, Awaitable, Dict, List, Optional, Protocol, TypeVar

T = TypeVar("T")


def counter_key(endpoint: str, identifier: str) -> str:
    return f"{endpoint}:{identifier}"


@dataclass(frozen=True)
class CounterRecord:
    """State of one fixed window. Timestamps are unix seconds."""

    endpoint: str
    identifier: str
    hits: int
    window_start: float
    reset_time: float
    max_requests: int
    window_ms: int

    @property
    def key(self) -> str:
        return counter_key(self.endpoint, self.identifier)

    @property
    def exceeded(self) -> bool:
        return self.hits > self.max_requests


@dataclass(frozen=True)
class BlockEntry:
    identifier: str
    reason: str
    created_at: float
    expires_at: float
    blocked_by: Optional[str] = None

    def is_active(self, now: float) -> bool:
        return now < self.expires_at


class StoreUnavailable(Exception):
    """A backing store call failed or exceeded its time budget.

    Always recovered by the component that made the call.
    """

    def __init__(self, operation: str, detail: str):
        super().__init__(f"{operation}: {detail}")
        self.operation = operation
        self.detail = detail


class CounterStore(Protocol):
    async def increment(
        self,
        endpoint: str,
        identifier: str,
        window_ms: int,
        max_requests: int,
        now: float,
    ) -> CounterRecord:
        """Atomically reset the window if it elapsed, otherwise add one hit."""
        ...

    async def decrement(self, endpoint: str, identifier: str, now: float) -> None:
        """Atomically remove one hit from the current window, never below zero."""
        ...

    async def history_since(self, identifier: str, since: float) -> List[CounterRecord]:
        """Closed and current windows for the identifier that started at or after `since`."""
        ...

    async def sweep_expired(self, older_than: float) -> int:
        ...


class BlockStore(Protocol):
    async def insert(self, entry: BlockEntry) -> None:
        ...

    async def find_active(self, identifier: str, now: float) -> List[BlockEntry]:
        ...

    async def sweep_expired(self, now: float) -> int:
        ...


class AuditSink(Protocol):
    async def record(
        self,
        actor_id: Optional[str],
        action: str,
        resource_type: str,
        resource_id: Optional[str],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        ...


def _consume_result(task: "asyncio.Future[Any]") -> None:
    # Late failures of abandoned calls must not surface as "never retrieved"
    if not task.cancelled():
        task.exception()


async def call_store(awaitable: Awaitable[T], *, timeout: float, operation: str) -> T:
    """Await a store call under its own time budget.

    The call is shielded: if the budget expires or the request is cancelled,
    the store operation still runs to completion in the background rather
    than being torn down halfway.
    """
    task = asyncio.ensure_future(awaitable)
    task.add_done_callback(_consume_result)
    try:
        return await asyncio.wait_for(asyncio.shield(task), timeout)
    except asyncio.TimeoutError as e:
        raise StoreUnavailable(operation, f"timed out after {timeout * 1000:.0f}ms") from e
    except asyncio.CancelledError:
        raise
    except Exception as e:
        raise StoreUnavailable(operation, f"{type(e).__name__}: {e}") from e


class InMemoryCounterStore:
    """Single-process counter store.

    Every mutation happens under one lock with no suspension point inside,
    so increments on a key are linearizable across tasks and threads.
    Windows closed by a reset are kept for history until swept.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._records: Dict[str, CounterRecord] = {}
        self._closed: List[CounterRecord] = []

    async def increment(
        self,
        endpoint: str,
        identifier: str,
        window_ms: int,
        max_requests: int,
        now: float,
    ) -> CounterRecord:
        key = counter_key(endpoint, identifier)
        with self._lock:
            record = self._records.get(key)
            if record is None or now >= record.reset_time:
                if record is not None and record.hits > 0:
                    self._closed.append(record)
                record = CounterRecord(
                    endpoint=endpoint,
                    identifier=identifier,
                    hits=1,
                    window_start=now,
                    reset_time=now + window_ms / 1000.0,
                    max_requests=max_requests,
                    window_ms=window_ms,
                )
            else:
                record = replace(record, hits=record.hits + 1)
            self._records[key] = record
            return record

    async def decrement(self, endpoint: str, identifier: str, now: float) -> None:
        key = counter_key(endpoint, identifier)
        with self._lock:
            record = self._records.get(key)
            if record is not None and now < record.reset_time and record.hits > 0:
                self._records[key] = replace(record, hits=record.hits - 1)

    async def history_since(self, identifier: str, since: float) -> List[CounterRecord]:
        with self._lock:
            return [
                r for r in [*self._closed, *self._records.values()]
                if r.identifier == identifier and r.window_start >= since
            ]

    async def sweep_expired(self, older_than: float) -> int:
        with self._lock:
            stale = [k for k, r in self._records.items() if r.window_start < older_than]
            for k in stale:
                del self._records[k]
            closed = len(self._closed)
            self._closed = [r for r in self._closed if r.window_start >= older_than]
            return len(stale) + closed - len(self._closed)

    def get(self, endpoint: str, identifier: str) -> Optional[CounterRecord]:
        with self._lock:
            return self._records.get(counter_key(endpoint, identifier))


class InMemoryBlockStore:
    def __init__(self) -> None:
        self._lock = Lock()
        self._entries: List[BlockEntry] = []

    async def insert(self, entry: BlockEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    async def find_active(self, identifier: str, now: float) -> List[BlockEntry]:
        with self._lock:
            return [e for e in self._entries if e.identifier == identifier and e.is_active(now)]

    async def sweep_expired(self, now: float) -> int:
        with self._lock:
            before = len(self._entries)
            self._entries = [e for e in self._entries if e.is_active(now)]
            return before - len(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


__all__ = [
    "AuditSink",
    "BlockEntry",
    "BlockStore",
    "CounterRecord",
    "CounterStore",
    "InMemoryBlockStore",
    "InMemoryCounterStore",
    "StoreUnavailable",
    "call_store",
    "counter_key",
]
