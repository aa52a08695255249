"""Shared fixtures for the security tests."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from loftguard.security.audit import InMemoryAuditSink
from loftguard.security.stores import BlockEntry, CounterRecord, InMemoryBlockStore, InMemoryCounterStore


class FakeClock:
    """Controllable unix-seconds clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FailingCounterStore:
    """Counter store whose every call raises."""

    def __init__(self, exc: Optional[Exception] = None):
        self.exc = exc or ConnectionError("store down")

    async def increment(self, endpoint, identifier, window_ms, max_requests, now) -> CounterRecord:
        raise self.exc

    async def decrement(self, endpoint, identifier, now) -> None:
        raise self.exc

    async def history_since(self, identifier, since) -> List[CounterRecord]:
        raise self.exc

    async def sweep_expired(self, older_than) -> int:
        raise self.exc


class FailingBlockStore:
    def __init__(self, exc: Optional[Exception] = None):
        self.exc = exc or ConnectionError("store down")

    async def insert(self, entry: BlockEntry) -> None:
        raise self.exc

    async def find_active(self, identifier, now) -> List[BlockEntry]:
        raise self.exc

    async def sweep_expired(self, now) -> int:
        raise self.exc


class SlowBlockStore(InMemoryBlockStore):
    """Block store that answers after `delay` seconds."""

    def __init__(self, delay: float):
        super().__init__()
        self.delay = delay

    async def find_active(self, identifier, now) -> List[BlockEntry]:
        await asyncio.sleep(self.delay)
        return await super().find_active(identifier, now)


class FailingAuditSink:
    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []

    async def record(self, actor_id, action, resource_type, resource_id, metadata=None) -> None:
        self.calls.append({"action": action})
        raise ConnectionError("audit sink down")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def counter_store() -> InMemoryCounterStore:
    return InMemoryCounterStore()


@pytest.fixture
def block_store() -> InMemoryBlockStore:
    return InMemoryBlockStore()


@pytest.fixture
def audit_sink() -> InMemoryAuditSink:
    return InMemoryAuditSink()
