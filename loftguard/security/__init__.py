"""Request security layer for the booking platform API.

Provides:
- RateLimiter: fixed-window counters per (endpoint, identifier)
- Blocklist: temporary identifier bans
- ActivityAggregator: risk scoring over recent counter history
- SecurityPipeline: per-request admission checks in a fixed order
- with_security / SecurityMiddleware: FastAPI integration
- In-memory and PostgreSQL stores, plus a periodic sweeper
"""

from .activity import ActivityAggregator, ActivitySnapshot, SuspicionResult
from .audit import AuditTrail, InMemoryAuditSink, LoggingAuditSink
from .auth import (
    BearerTokenSessionProvider,
    NoSessionProvider,
    RolePermissionValidator,
    Session,
    StaticTokenSessionProvider,
)
from .blocklist import Blocklist, BlockResult
from .config import (
    DEFAULT_POLICIES,
    DenialKind,
    Permission,
    RateLimitPolicy,
    SecurityConfig,
    SecurityPresets,
    Thresholds,
)
from .middleware import SecurityMiddleware, inject_security_middleware, with_security
from .pipeline import SecureContext, SecurityDecision, SecurityPipeline
from .rate_limiter import RateLimiter, RateLimitResult
from .stores import (
    BlockEntry,
    CounterRecord,
    InMemoryBlockStore,
    InMemoryCounterStore,
    StoreUnavailable,
)
from .sweeper import SecuritySweeper

__all__ = [
    # Components
    "ActivityAggregator",
    "Blocklist",
    "RateLimiter",
    "SecurityPipeline",
    "SecuritySweeper",
    "AuditTrail",
    # Integration
    "SecurityMiddleware",
    "inject_security_middleware",
    "with_security",
    # Results
    "ActivitySnapshot",
    "BlockResult",
    "RateLimitResult",
    "SecureContext",
    "SecurityDecision",
    "SuspicionResult",
    # Config
    "DEFAULT_POLICIES",
    "DenialKind",
    "Permission",
    "RateLimitPolicy",
    "SecurityConfig",
    "SecurityPresets",
    "Thresholds",
    # Auth
    "BearerTokenSessionProvider",
    "NoSessionProvider",
    "RolePermissionValidator",
    "Session",
    "StaticTokenSessionProvider",
    # Stores
    "BlockEntry",
    "CounterRecord",
    "InMemoryAuditSink",
    "InMemoryBlockStore",
    "InMemoryCounterStore",
    "LoggingAuditSink",
    "StoreUnavailable",
]
