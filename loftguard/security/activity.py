"""Suspicious-activity scoring over recent rate limit history.

The score is a sum of independent heuristics evaluated once each, so the
order of the rules does not matter. Callers get the score even when it is
below the "suspicious" threshold and may apply their own cut-off (the
pipeline escalates to a block at a higher score).
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import structlog

from loftguard.shared.log_colors import LogColors, short_id
from .audit import SECURITY_ALERT, AuditTrail
from .config import AUTHENTICATION_ACTIVITY
from .stores import CounterRecord, CounterStore, StoreUnavailable, call_store

logger = structlog.get_logger(__name__)

DEFAULT_LOOKBACK_MS = 24 * 60 * 60 * 1000
DEFAULT_AUTH_ENDPOINTS: Tuple[str, ...] = ("login", "register", "passwordReset")


@dataclass(frozen=True)
class ActivitySnapshot:
    """Read-side projection of an identifier's counters over the lookback window."""

    violation_count: int = 0
    distinct_endpoint_count: int = 0
    total_hits: int = 0
    auth_endpoint_hits: int = 0

    @classmethod
    def from_records(
        cls,
        records: Iterable[CounterRecord],
        auth_endpoints: Iterable[str] = DEFAULT_AUTH_ENDPOINTS,
    ) -> "ActivitySnapshot":
        auth = set(auth_endpoints)
        records = list(records)
        return cls(
            violation_count=sum(1 for r in records if r.exceeded),
            distinct_endpoint_count=len({r.endpoint for r in records}),
            total_hits=sum(r.hits for r in records),
            auth_endpoint_hits=sum(r.hits for r in records if r.endpoint in auth),
        )


@dataclass(frozen=True)
class RiskRule:
    name: str
    points: int
    reason: str
    applies: Callable[[ActivitySnapshot, str], bool]


RISK_RULES: Tuple[RiskRule, ...] = (
    RiskRule(
        "violations",
        30,
        "multiple rate limit violations",
        lambda s, _: s.violation_count > 3,
    ),
    RiskRule(
        "endpoint_switching",
        20,
        "rapid endpoint switching",
        lambda s, _: s.distinct_endpoint_count > 10,
    ),
    RiskRule(
        "volume",
        25,
        "high volume activity",
        lambda s, _: s.total_hits > 1000,
    ),
    RiskRule(
        "auth_attempts",
        40,
        "excessive authentication attempts",
        lambda s, activity_type: activity_type == AUTHENTICATION_ACTIVITY and s.auth_endpoint_hits > 20,
    ),
)


def score(snapshot: ActivitySnapshot, activity_type: str) -> Tuple[int, List[str]]:
    """Return (risk_score, reasons) for a snapshot."""
    matched = [rule for rule in RISK_RULES if rule.applies(snapshot, activity_type)]
    return sum(rule.points for rule in matched), [rule.reason for rule in matched]


@dataclass(frozen=True)
class SuspicionResult:
    suspicious: bool
    risk_score: int
    # Comma-joined reasons, only when suspicious
    reason: Optional[str] = None
    reasons: Tuple[str, ...] = ()
    snapshot: ActivitySnapshot = field(default_factory=ActivitySnapshot)
    error: Optional[StoreUnavailable] = None


class ActivityAggregator:
    def __init__(
        self,
        store: CounterStore,
        audit: Optional[AuditTrail] = None,
        *,
        lookback_ms: int = DEFAULT_LOOKBACK_MS,
        suspicious_threshold: int = 50,
        auth_endpoints: Iterable[str] = DEFAULT_AUTH_ENDPOINTS,
        timeout_sec: float = 0.1,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.audit = audit
        self.lookback_ms = lookback_ms
        self.suspicious_threshold = suspicious_threshold
        self.auth_endpoints = tuple(auth_endpoints)
        self.timeout_sec = timeout_sec
        self.clock = clock

    async def snapshot(self, identifier: str) -> ActivitySnapshot:
        """Aggregate the identifier's counters; raises StoreUnavailable."""
        since = self.clock() - self.lookback_ms / 1000.0
        records = await call_store(
            self.store.history_since(identifier, since),
            timeout=self.timeout_sec,
            operation="counter.history_since",
        )
        return ActivitySnapshot.from_records(records, self.auth_endpoints)

    async def detect_suspicious(
        self,
        identifier: str,
        activity_type: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SuspicionResult:
        try:
            snapshot = await self.snapshot(identifier)
        except StoreUnavailable as e:
            logger.warning(
                f"{LogColors.STORE_LABEL} activity_check_fail_open",
                identifier=short_id(identifier),
                error=str(e),
            )
            return SuspicionResult(suspicious=False, risk_score=0, error=e)

        return await self.evaluate(identifier, activity_type, snapshot, metadata)

    async def evaluate(
        self,
        identifier: str,
        activity_type: str,
        snapshot: ActivitySnapshot,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SuspicionResult:
        """Score a snapshot and raise the alert side effects."""
        risk_score, reasons = score(snapshot, activity_type)
        suspicious = risk_score >= self.suspicious_threshold

        if not suspicious:
            return SuspicionResult(
                suspicious=False,
                risk_score=risk_score,
                reasons=tuple(reasons),
                snapshot=snapshot,
            )

        reason = ", ".join(reasons)
        logger.warning(
            f"{LogColors.CLIENT_LABEL} suspicious_activity",
            identifier=short_id(identifier),
            activity_type=activity_type,
            risk_score=risk_score,
            reason=reason,
        )
        if self.audit is not None:
            await self.audit.record(
                identifier,
                SECURITY_ALERT,
                "suspicious_activity",
                identifier,
                {
                    **(metadata or {}),
                    "activity_type": activity_type,
                    "risk_score": risk_score,
                    "reason": reason,
                    "violation_count": snapshot.violation_count,
                    "distinct_endpoint_count": snapshot.distinct_endpoint_count,
                    "total_hits": snapshot.total_hits,
                    "auth_endpoint_hits": snapshot.auth_endpoint_hits,
                },
            )

        return SuspicionResult(
            suspicious=True,
            risk_score=risk_score,
            reason=reason,
            reasons=tuple(reasons),
            snapshot=snapshot,
        )


__all__ = [
    "ActivityAggregator",
    "ActivitySnapshot",
    "RISK_RULES",
    "RiskRule",
    "SuspicionResult",
    "score",
]
