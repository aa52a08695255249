"""Temporary identifier blocklist."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, List, Optional

import structlog

from loftguard.shared.log_colors import LogColors, short_id
from .audit import IDENTIFIER_BLOCKED, AuditTrail
from .stores import BlockEntry, BlockStore, StoreUnavailable, call_store

logger = structlog.get_logger(__name__)

DEFAULT_BLOCK_DURATION_MS = 60 * 60 * 1000


@dataclass(frozen=True)
class BlockResult:
    ok: bool
    entry: Optional[BlockEntry] = None
    error: Optional[StoreUnavailable] = None


class Blocklist:
    """Store of temporarily banned identifiers.

    Blocks are never merged or extended in place; each call adds an entry and
    an identifier is blocked while any of its entries is unexpired.
    """

    def __init__(
        self,
        store: BlockStore,
        audit: Optional[AuditTrail] = None,
        *,
        timeout_sec: float = 0.1,
        default_duration_ms: int = DEFAULT_BLOCK_DURATION_MS,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.audit = audit
        self.timeout_sec = timeout_sec
        self.default_duration_ms = default_duration_ms
        self.clock = clock

    async def block(
        self,
        identifier: str,
        reason: str,
        duration_ms: Optional[int] = None,
        blocked_by: Optional[str] = None,
    ) -> BlockResult:
        """Block an identifier for `duration_ms` (default one hour).

        Emits an audit record when an actor is given. Store errors are
        returned, not raised.
        """
        now = self.clock()
        duration_ms = self.default_duration_ms if duration_ms is None else duration_ms
        entry = BlockEntry(
            identifier=identifier,
            reason=reason,
            created_at=now,
            expires_at=now + duration_ms / 1000.0,
            blocked_by=blocked_by,
        )

        try:
            await call_store(self.store.insert(entry), timeout=self.timeout_sec, operation="block.insert")
        except StoreUnavailable as e:
            logger.error(
                f"{LogColors.STORE_LABEL} block_insert_failed",
                identifier=short_id(identifier),
                reason=reason,
                error=str(e),
            )
            return BlockResult(ok=False, error=e)

        logger.warning(
            "identifier_blocked",
            identifier=short_id(identifier),
            reason=reason,
            duration_ms=duration_ms,
            blocked_by=blocked_by or "system",
        )

        if blocked_by and self.audit is not None:
            await self.audit.record(
                blocked_by,
                IDENTIFIER_BLOCKED,
                "security_block",
                identifier,
                {"reason": reason, "duration_ms": duration_ms, "expires_at": entry.expires_at},
            )

        return BlockResult(ok=True, entry=entry)

    async def is_blocked(self, identifier: str) -> bool:
        """True while any entry for the identifier is unexpired; False on store error."""
        return bool(await self.active_entries(identifier))

    async def active_entries(self, identifier: str) -> List[BlockEntry]:
        try:
            entries = await call_store(
                self.store.find_active(identifier, self.clock()),
                timeout=self.timeout_sec,
                operation="block.find_active",
            )
        except StoreUnavailable as e:
            logger.warning(
                f"{LogColors.STORE_LABEL} blocklist_fail_open",
                identifier=short_id(identifier),
                error=str(e),
            )
            return []
        # Stores may return expired rows; expiry is enforced here too
        now = self.clock()
        return [e for e in entries if e.is_active(now)]


__all__ = ["BlockResult", "Blocklist", "DEFAULT_BLOCK_DURATION_MS"]
