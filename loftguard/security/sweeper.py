"""Periodic removal of stale counters and expired blocks."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from loftguard.shared.log_colors import LogColors
from .stores import BlockStore, CounterStore, StoreUnavailable, call_store

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SweepResult:
    counters_removed: int = 0
    blocks_removed: int = 0
    errors: int = 0


class SecuritySweeper:
    """Deletes counter rows past retention and block entries past expiry.

    Expired rows never affect decisions (the stores and the blocklist check
    expiry on read); sweeping only keeps the tables small.
    """

    def __init__(
        self,
        counter_store: CounterStore,
        block_store: BlockStore,
        *,
        retention_ms: int = 24 * 60 * 60 * 1000,
        interval_sec: float = 300.0,
        timeout_sec: float = 5.0,
        clock: Callable[[], float] = time.time,
    ):
        self.counter_store = counter_store
        self.block_store = block_store
        self.retention_ms = retention_ms
        self.interval_sec = interval_sec
        self.timeout_sec = timeout_sec
        self.clock = clock
        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()

    async def run_once(self) -> SweepResult:
        now = self.clock()
        counters = blocks = errors = 0

        try:
            counters = await call_store(
                self.counter_store.sweep_expired(now - self.retention_ms / 1000.0),
                timeout=self.timeout_sec,
                operation="counter.sweep_expired",
            )
        except StoreUnavailable as e:
            errors += 1
            logger.warning(f"{LogColors.STORE_LABEL} counter_sweep_failed", error=str(e))

        try:
            blocks = await call_store(
                self.block_store.sweep_expired(now),
                timeout=self.timeout_sec,
                operation="block.sweep_expired",
            )
        except StoreUnavailable as e:
            errors += 1
            logger.warning(f"{LogColors.STORE_LABEL} block_sweep_failed", error=str(e))

        if counters or blocks:
            logger.info("security_sweep", counters_removed=counters, blocks_removed=blocks)
        return SweepResult(counters_removed=counters, blocks_removed=blocks, errors=errors)

    async def _run(self) -> None:
        while not self._stop.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_sec)
            except asyncio.TimeoutError:
                continue

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self._run())
        logger.info("security_sweeper_started", interval_sec=self.interval_sec)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop.set()
        try:
            await asyncio.wait_for(self._task, timeout=self.timeout_sec)
        except asyncio.TimeoutError:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None
        logger.info("security_sweeper_stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()


__all__ = ["SecuritySweeper", "SweepResult"]
