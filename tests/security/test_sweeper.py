"""Tests for the SecuritySweeper."""

from __future__ import annotations

import asyncio

import pytest

from conftest import FailingBlockStore, FailingCounterStore
from loftguard.security.stores import BlockEntry, InMemoryBlockStore
from loftguard.security.sweeper import SecuritySweeper


class TestSecuritySweeper:
    @pytest.mark.asyncio
    async def test_run_once_removes_stale_rows(self, counter_store, block_store, clock):
        await counter_store.increment("login", "old", 60_000, 5, clock())
        await block_store.insert(BlockEntry("old", "manual", clock(), clock() + 60))
        await block_store.insert(BlockEntry("new", "manual", clock(), clock() + 7200))

        clock.advance(3600)
        await counter_store.increment("login", "new", 60_000, 5, clock())

        sweeper = SecuritySweeper(counter_store, block_store, retention_ms=1_800_000, clock=clock)
        result = await sweeper.run_once()

        assert result.counters_removed == 1
        assert result.blocks_removed == 1
        assert result.errors == 0
        assert counter_store.get("login", "old") is None
        assert counter_store.get("login", "new") is not None
        assert len(block_store) == 1

    @pytest.mark.asyncio
    async def test_active_blocks_survive(self, counter_store, block_store, clock):
        await block_store.insert(BlockEntry("u1", "manual", clock(), clock() + 60))
        sweeper = SecuritySweeper(counter_store, block_store, clock=clock)

        result = await sweeper.run_once()

        assert result.blocks_removed == 0
        assert len(block_store) == 1

    @pytest.mark.asyncio
    async def test_closed_windows_are_swept(self, counter_store, block_store, clock):
        await counter_store.increment("login", "1.2.3.4", 60_000, 5, clock())
        clock.advance(3600)
        await counter_store.increment("login", "1.2.3.4", 60_000, 5, clock())
        assert len(await counter_store.history_since("1.2.3.4", 0)) == 2

        sweeper = SecuritySweeper(counter_store, block_store, retention_ms=1_800_000, clock=clock)
        result = await sweeper.run_once()

        assert result.counters_removed == 1
        remaining = await counter_store.history_since("1.2.3.4", 0)
        assert [r.window_start for r in remaining] == [clock()]

    @pytest.mark.asyncio
    async def test_store_errors_are_counted_not_raised(self, clock):
        sweeper = SecuritySweeper(FailingCounterStore(), FailingBlockStore(), clock=clock)

        result = await sweeper.run_once()

        assert result.errors == 2

    @pytest.mark.asyncio
    async def test_one_failing_store_does_not_stop_the_other(self, block_store, clock):
        await block_store.insert(BlockEntry("u1", "manual", clock() - 120, clock() - 60))
        sweeper = SecuritySweeper(FailingCounterStore(), block_store, clock=clock)

        result = await sweeper.run_once()

        assert result.errors == 1
        assert result.blocks_removed == 1

    @pytest.mark.asyncio
    async def test_start_and_stop(self, counter_store, clock):
        class CountingBlockStore(InMemoryBlockStore):
            sweeps = 0

            async def sweep_expired(self, now):
                CountingBlockStore.sweeps += 1
                return await super().sweep_expired(now)

        sweeper = SecuritySweeper(counter_store, CountingBlockStore(), interval_sec=0.01, clock=clock)

        sweeper.start()
        assert sweeper.running
        await asyncio.sleep(0.05)
        await sweeper.stop()

        assert not sweeper.running
        assert CountingBlockStore.sweeps >= 2

    @pytest.mark.asyncio
    async def test_stop_without_start(self, counter_store, block_store):
        sweeper = SecuritySweeper(counter_store, block_store)
        await sweeper.stop()
        assert not sweeper.running
