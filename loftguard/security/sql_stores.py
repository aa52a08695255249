"""PostgreSQL-backed stores.

Every counter mutation is one statement. The increment is an
``INSERT ... ON CONFLICT DO UPDATE`` whose CASE expressions decide between
"reset the window" and "add one hit" under the row lock Postgres takes for
the conflict, so concurrent requests for the same key serialize in the
database and none of them is lost. A window closed by the reset branch is
copied into ``rate_limit_window`` by the same statement; the leading
``FOR UPDATE`` makes a racing request re-check the row after the first one
commits, so each closed window is copied once.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import text

from loftguard.database import DBM
from .stores import BlockEntry, CounterRecord, counter_key


def to_datetime(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, timezone.utc)


def to_timestamp(value: datetime) -> float:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


_INCREMENT_COUNTER = text("""
    WITH closed AS (
        SELECT endpoint, identifier, hits, max_requests, window_ms, window_start, reset_time
        FROM rate_limit_counter
        WHERE key = :key AND reset_time <= CAST(:now AS timestamptz) AND hits > 0
        FOR UPDATE
    ), archived AS (
        INSERT INTO rate_limit_window (
            endpoint, identifier, hits, max_requests, window_ms, window_start, reset_time
        )
        SELECT endpoint, identifier, hits, max_requests, window_ms, window_start, reset_time
        FROM closed
    )
    INSERT INTO rate_limit_counter (
        key, endpoint, identifier, hits, max_requests, window_ms, window_start, reset_time
    )
    VALUES (
        :key, :endpoint, :identifier, 1, :max_requests, :window_ms,
        CAST(:now AS timestamptz), CAST(:reset_time AS timestamptz)
    )
    ON CONFLICT (key) DO UPDATE SET
        hits = CASE
            WHEN rate_limit_counter.reset_time <= EXCLUDED.window_start THEN 1
            ELSE rate_limit_counter.hits + 1
        END,
        window_start = CASE
            WHEN rate_limit_counter.reset_time <= EXCLUDED.window_start THEN EXCLUDED.window_start
            ELSE rate_limit_counter.window_start
        END,
        reset_time = CASE
            WHEN rate_limit_counter.reset_time <= EXCLUDED.window_start THEN EXCLUDED.reset_time
            ELSE rate_limit_counter.reset_time
        END,
        max_requests = CASE
            WHEN rate_limit_counter.reset_time <= EXCLUDED.window_start THEN EXCLUDED.max_requests
            ELSE rate_limit_counter.max_requests
        END,
        window_ms = CASE
            WHEN rate_limit_counter.reset_time <= EXCLUDED.window_start THEN EXCLUDED.window_ms
            ELSE rate_limit_counter.window_ms
        END
    RETURNING endpoint, identifier, hits, window_start, reset_time, max_requests, window_ms
""")

_DECREMENT_COUNTER = text("""
    UPDATE rate_limit_counter
    SET hits = GREATEST(hits - 1, 0)
    WHERE key = :key AND reset_time > CAST(:now AS timestamptz)
""")

_COUNTER_HISTORY = text("""
    SELECT endpoint, identifier, hits, window_start, reset_time, max_requests, window_ms
    FROM rate_limit_window
    WHERE identifier = :identifier AND window_start >= CAST(:since AS timestamptz)
    UNION ALL
    SELECT endpoint, identifier, hits, window_start, reset_time, max_requests, window_ms
    FROM rate_limit_counter
    WHERE identifier = :identifier AND window_start >= CAST(:since AS timestamptz)
""")

_SWEEP_COUNTERS = text("""
    DELETE FROM rate_limit_counter
    WHERE window_start < CAST(:older_than AS timestamptz)
""")

_SWEEP_WINDOWS = text("""
    DELETE FROM rate_limit_window
    WHERE window_start < CAST(:older_than AS timestamptz)
""")

_INSERT_BLOCK = text("""
    INSERT INTO security_block (identifier, reason, blocked_by, created_at, expires_at)
    VALUES (
        :identifier, :reason, :blocked_by,
        CAST(:created_at AS timestamptz), CAST(:expires_at AS timestamptz)
    )
""")

_ACTIVE_BLOCKS = text("""
    SELECT identifier, reason, blocked_by, created_at, expires_at
    FROM security_block
    WHERE identifier = :identifier AND expires_at > CAST(:now AS timestamptz)
    ORDER BY expires_at DESC
""")

_SWEEP_BLOCKS = text("""
    DELETE FROM security_block
    WHERE expires_at <= CAST(:now AS timestamptz)
""")

_INSERT_AUDIT = text("""
    INSERT INTO security_audit_log (actor_id, action, resource_type, resource_id, metadata_json)
    VALUES (:actor_id, :action, :resource_type, :resource_id, CAST(:metadata_json AS jsonb))
""")


def _counter_from_row(row: Mapping[str, Any]) -> CounterRecord:
    return CounterRecord(
        endpoint=row["endpoint"],
        identifier=row["identifier"],
        hits=int(row["hits"]),
        window_start=to_timestamp(row["window_start"]),
        reset_time=to_timestamp(row["reset_time"]),
        max_requests=int(row["max_requests"]),
        window_ms=int(row["window_ms"]),
    )


def _block_from_row(row: Mapping[str, Any]) -> BlockEntry:
    return BlockEntry(
        identifier=row["identifier"],
        reason=row["reason"],
        created_at=to_timestamp(row["created_at"]),
        expires_at=to_timestamp(row["expires_at"]),
        blocked_by=row["blocked_by"],
    )


class SqlCounterStore:
    def __init__(self, database: DBM):
        self.database = database

    async def increment(
        self,
        endpoint: str,
        identifier: str,
        window_ms: int,
        max_requests: int,
        now: float,
    ) -> CounterRecord:
        rows = await self.database.write(
            _INCREMENT_COUNTER,
            params={
                "key": counter_key(endpoint, identifier),
                "endpoint": endpoint,
                "identifier": identifier,
                "max_requests": max_requests,
                "window_ms": window_ms,
                "now": to_datetime(now),
                "reset_time": to_datetime(now + window_ms / 1000.0),
            },
            return_rows=True,
            mappings=True,
        )
        return _counter_from_row(rows[0])

    async def decrement(self, endpoint: str, identifier: str, now: float) -> None:
        await self.database.write(
            _DECREMENT_COUNTER,
            params={"key": counter_key(endpoint, identifier), "now": to_datetime(now)},
        )

    async def history_since(self, identifier: str, since: float) -> List[CounterRecord]:
        rows = await self.database.read(
            _COUNTER_HISTORY,
            params={"identifier": identifier, "since": to_datetime(since)},
            mappings=True,
        )
        return [_counter_from_row(row) for row in rows]

    async def sweep_expired(self, older_than: float) -> int:
        params = {"older_than": to_datetime(older_than)}
        counters = await self.database.write(_SWEEP_COUNTERS, params=params)
        windows = await self.database.write(_SWEEP_WINDOWS, params=params)
        return counters + windows


class SqlBlockStore:
    def __init__(self, database: DBM):
        self.database = database

    async def insert(self, entry: BlockEntry) -> None:
        await self.database.write(
            _INSERT_BLOCK,
            params={
                "identifier": entry.identifier,
                "reason": entry.reason,
                "blocked_by": entry.blocked_by,
                "created_at": to_datetime(entry.created_at),
                "expires_at": to_datetime(entry.expires_at),
            },
        )

    async def find_active(self, identifier: str, now: float) -> List[BlockEntry]:
        rows = await self.database.read(
            _ACTIVE_BLOCKS,
            params={"identifier": identifier, "now": to_datetime(now)},
            mappings=True,
        )
        return [_block_from_row(row) for row in rows]

    async def sweep_expired(self, now: float) -> int:
        return await self.database.write(_SWEEP_BLOCKS, params={"now": to_datetime(now)})


class SqlAuditSink:
    def __init__(self, database: DBM):
        self.database = database

    async def record(
        self,
        actor_id: Optional[str],
        action: str,
        resource_type: str,
        resource_id: Optional[str],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.database.write(
            _INSERT_AUDIT,
            params={
                "actor_id": actor_id,
                "action": action,
                "resource_type": resource_type,
                "resource_id": resource_id,
                "metadata_json": json.dumps(metadata or {}, default=str),
            },
        )


__all__ = [
    "SqlAuditSink",
    "SqlBlockStore",
    "SqlCounterStore",
    "to_datetime",
    "to_timestamp",
]
