"""Security configuration for rate limiting, blocking and request admission."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple

from loftguard.config import SecuritySettings


class DenialKind(str, Enum):
    """Reasons the pipeline can terminate a request before the handler runs."""

    # Transport (400 / 413)
    TRANSPORT_VIOLATION = "transport_violation"
    METHOD_NOT_ALLOWED = "method_not_allowed"
    ORIGIN_VIOLATION = "origin_violation"

    # Admission
    RATE_LIMITED = "rate_limited"
    UNAUTHENTICATED = "unauthenticated"
    UNAUTHORIZED = "unauthorized"
    BLOCKED = "blocked"

    # Unexpected failure inside the pipeline or the handler
    INTERNAL_ERROR = "internal_error"


# Activity types that make authentication-endpoint volume count toward the score
AUTHENTICATION_ACTIVITY = "authentication"
API_REQUEST_ACTIVITY = "api_request"


@dataclass(frozen=True)
class RateLimitPolicy:
    """Per-endpoint fixed-window limit."""

    window_ms: int
    max_requests: int
    # Refund the hit when the handler answers < 400
    skip_successful: bool = False
    # Refund the hit when the handler answers >= 400
    skip_failed: bool = False

    @property
    def window_sec(self) -> float:
        return self.window_ms / 1000.0


def policies_from_settings(settings: SecuritySettings) -> Dict[str, RateLimitPolicy]:
    """Freeze the configured policy table."""
    return {
        name: RateLimitPolicy(
            window_ms=p.window_ms,
            max_requests=p.max_requests,
            skip_successful=p.skip_successful,
            skip_failed=p.skip_failed,
        )
        for name, p in settings.policies.items()
    }


@dataclass(frozen=True)
class Permission:
    """Fine-grained permission required by an endpoint."""

    resource: str
    action: str
    scope: Optional[str] = None


@dataclass(frozen=True)
class SecurityConfig:
    """Checks applied to one endpoint.

    Every flag has an explicit default; an empty tuple means "no restriction".
    """

    require_auth: bool = False
    # Roles allowed through; empty allows any authenticated role
    allowed_roles: Tuple[str, ...] = ()
    required_permissions: Tuple[Permission, ...] = ()
    # Policy table key; None disables rate limiting
    rate_limit_endpoint: Optional[str] = None
    enable_suspicious_activity_detection: bool = False
    require_https: bool = False
    # "*" allows any origin; requests without an Origin header always pass
    allowed_origins: Tuple[str, ...] = ()
    # Bytes, compared against Content-Length
    max_request_size: Optional[int] = None
    allowed_methods: Tuple[str, ...] = ()
    # Passed to the activity aggregator
    activity_type: str = API_REQUEST_ACTIVITY
    # Resource type recorded in api_access / access_denied audit events
    audit_resource_type: str = "api"


@dataclass(frozen=True)
class Thresholds:
    """Score and duration knobs shared by the aggregator and the pipeline."""

    suspicious_risk_score: int = 50
    escalation_risk_score: int = 80
    escalation_block_ms: int = 60 * 60 * 1000
    block_duration_ms: int = 60 * 60 * 1000
    activity_lookback_ms: int = 24 * 60 * 60 * 1000
    counter_retention_ms: int = 24 * 60 * 60 * 1000
    store_timeout_ms: int = 100
    auth_endpoints: Tuple[str, ...] = ("login", "register", "passwordReset")

    @property
    def store_timeout_sec(self) -> float:
        return self.store_timeout_ms / 1000.0

    @classmethod
    def from_settings(cls, settings: SecuritySettings) -> "Thresholds":
        return cls(
            suspicious_risk_score=settings.suspicious_risk_score,
            escalation_risk_score=settings.escalation_risk_score,
            escalation_block_ms=settings.escalation_block_ms,
            block_duration_ms=settings.block_duration_ms,
            activity_lookback_ms=settings.activity_lookback_ms,
            counter_retention_ms=settings.counter_retention_ms,
            store_timeout_ms=settings.store_timeout_ms,
            auth_endpoints=tuple(settings.auth_endpoints),
        )


class SecurityPresets:
    """Ready-made configs for the platform's endpoint families."""

    @staticmethod
    def auth() -> SecurityConfig:
        return SecurityConfig(
            rate_limit_endpoint="login",
            enable_suspicious_activity_detection=True,
            allowed_methods=("POST",),
            max_request_size=1024 * 1024,
            activity_type=AUTHENTICATION_ACTIVITY,
            audit_resource_type="auth",
        )

    @staticmethod
    def booking() -> SecurityConfig:
        return SecurityConfig(
            require_auth=True,
            rate_limit_endpoint="bookingCreate",
            enable_suspicious_activity_detection=True,
            allowed_methods=("GET", "POST", "PUT", "DELETE"),
            max_request_size=2 * 1024 * 1024,
            audit_resource_type="reservation",
        )

    @staticmethod
    def payment() -> SecurityConfig:
        return SecurityConfig(
            require_auth=True,
            required_permissions=(Permission("payments", "create"),),
            rate_limit_endpoint="payment",
            enable_suspicious_activity_detection=True,
            require_https=True,
            allowed_methods=("POST",),
            max_request_size=512 * 1024,
            audit_resource_type="payment",
        )

    @staticmethod
    def partner_verification() -> SecurityConfig:
        return SecurityConfig(
            require_auth=True,
            allowed_roles=("partner",),
            rate_limit_endpoint="partnerVerification",
            enable_suspicious_activity_detection=True,
            allowed_methods=("POST",),
            max_request_size=1024 * 1024,
            audit_resource_type="partner",
        )

    @staticmethod
    def upload() -> SecurityConfig:
        return SecurityConfig(
            require_auth=True,
            rate_limit_endpoint="fileUpload",
            allowed_methods=("POST",),
            max_request_size=10 * 1024 * 1024,
            audit_resource_type="upload",
        )

    @staticmethod
    def api() -> SecurityConfig:
        return SecurityConfig(
            rate_limit_endpoint="apiGeneral",
            enable_suspicious_activity_detection=True,
            allowed_methods=("GET", "POST", "PUT", "DELETE"),
            max_request_size=1024 * 1024,
        )

    @staticmethod
    def public() -> SecurityConfig:
        return SecurityConfig(
            rate_limit_endpoint="apiGeneral",
            enable_suspicious_activity_detection=True,
            max_request_size=512 * 1024,
        )

    @staticmethod
    def admin(roles: Tuple[str, ...] = ("admin", "superuser")) -> SecurityConfig:
        return SecurityConfig(
            require_auth=True,
            allowed_roles=roles,
            rate_limit_endpoint="apiGeneral",
            audit_resource_type="security_admin",
        )


DEFAULT_POLICIES: Mapping[str, RateLimitPolicy] = policies_from_settings(SecuritySettings())


__all__ = [
    "API_REQUEST_ACTIVITY",
    "AUTHENTICATION_ACTIVITY",
    "DEFAULT_POLICIES",
    "DenialKind",
    "Permission",
    "RateLimitPolicy",
    "SecurityConfig",
    "SecurityPresets",
    "Thresholds",
    "policies_from_settings",
]
