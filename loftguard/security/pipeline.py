"""Per-request security pipeline.

Stages run strictly in order and the first one that returns a denial ends
the request:

    blocked -> transport -> rate limit -> auth -> permission -> activity

Only when every stage passes does the wrapped handler run. Security headers
(and rate limit headers, when a policy applied) are attached to every
response, whichever path produced it. Any unexpected exception, including
one raised by the handler, becomes a 500 carrying a request id; the
traceback is logged server-side only.
"""

from __future__ import annotations

import ipaddress
import math
import secrets
import string
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

import structlog
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from loftguard.config import Settings
from loftguard.shared.log_colors import LogColors, short_id
from .activity import ActivityAggregator
from .audit import ACCESS_DENIED, API_ACCESS, RATE_LIMIT_EXCEEDED, AuditSink, AuditTrail
from .auth import NoSessionProvider, PermissionValidator, RolePermissionValidator, Session, SessionProvider
from .blocklist import Blocklist
from .config import (
    DEFAULT_POLICIES,
    DenialKind,
    RateLimitPolicy,
    SecurityConfig,
    Thresholds,
    policies_from_settings,
)
from .rate_limiter import RateLimiter, RateLimitResult
from .stores import BlockStore, CounterStore

logger = structlog.get_logger(__name__)


SECURITY_HEADERS: Mapping[str, str] = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Content-Security-Policy": "default-src 'self'",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
    "Cache-Control": "no-store",
}

_BASE36 = string.digits + string.ascii_lowercase


def generate_request_id(now: Optional[float] = None) -> str:
    now = time.time() if now is None else now
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"req_{int(now * 1000)}_{suffix}"


def security_headers(request_id: str) -> Dict[str, str]:
    return {**SECURITY_HEADERS, "X-Request-ID": request_id}


def rate_limit_headers(result: RateLimitResult) -> Dict[str, str]:
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(math.ceil(result.reset_time)),
    }


@dataclass(frozen=True)
class SecureContext:
    """What the business handler learns about an admitted request."""

    user: Optional[Session]
    client_ip: str
    user_agent: str
    request_id: str


@dataclass
class SecurityDecision:
    allowed: bool
    status_code: int
    request_id: str
    headers: Dict[str, str] = field(default_factory=dict)
    risk_score: int = 0
    reasons: List[str] = field(default_factory=list)
    kind: Optional[DenialKind] = None
    error: Optional[str] = None
    message: Optional[str] = None
    retry_after: Optional[int] = None

    def body(self) -> Dict[str, Any]:
        content: Dict[str, Any] = {"error": self.error or "Request rejected"}
        if self.message:
            content["message"] = self.message
        if self.retry_after is not None:
            content["retryAfter"] = self.retry_after
        if self.kind is DenialKind.INTERNAL_ERROR:
            content["requestId"] = self.request_id
        return content

    def to_response(self) -> JSONResponse:
        return JSONResponse(status_code=self.status_code, content=self.body(), headers=dict(self.headers))


@dataclass
class RequestState:
    """Mutable working context threaded through the stages of one request."""

    request: Request
    config: SecurityConfig
    request_id: str
    client_ip: str
    user_agent: str
    started_at: float
    session: Optional[Session] = None
    policy: Optional[RateLimitPolicy] = None
    rate_limit: Optional[RateLimitResult] = None
    refunded: bool = False
    risk_score: int = 0
    reasons: List[str] = field(default_factory=list)

    def context(self) -> SecureContext:
        return SecureContext(
            user=self.session,
            client_ip=self.client_ip,
            user_agent=self.user_agent,
            request_id=self.request_id,
        )

    def response_headers(self) -> Dict[str, str]:
        headers = security_headers(self.request_id)
        if self.rate_limit is not None:
            headers.update(rate_limit_headers(self.rate_limit))
        return headers

    def deny(
        self,
        kind: DenialKind,
        status_code: int,
        error: str,
        message: Optional[str] = None,
        retry_after: Optional[int] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> SecurityDecision:
        return SecurityDecision(
            allowed=False,
            status_code=status_code,
            request_id=self.request_id,
            headers={**self.response_headers(), **(headers or {})},
            risk_score=self.risk_score,
            reasons=list(self.reasons),
            kind=kind,
            error=error,
            message=message,
            retry_after=retry_after,
        )


Handler = Callable[[Request, SecureContext], Awaitable[Response]]
Stage = Callable[[RequestState], Awaitable[Optional[SecurityDecision]]]


class SecurityPipeline:
    """Composes blocklist, transport, rate limit, auth and activity checks."""

    def __init__(
        self,
        rate_limiter: RateLimiter,
        blocklist: Blocklist,
        activity: ActivityAggregator,
        audit: AuditTrail,
        *,
        policies: Optional[Mapping[str, RateLimitPolicy]] = None,
        sessions: Optional[SessionProvider] = None,
        permissions: Optional[PermissionValidator] = None,
        thresholds: Optional[Thresholds] = None,
        trust_proxy_headers: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.rate_limiter = rate_limiter
        self.blocklist = blocklist
        self.activity = activity
        self.audit = audit
        self.policies: Mapping[str, RateLimitPolicy] = dict(policies or DEFAULT_POLICIES)
        self.sessions: SessionProvider = sessions or NoSessionProvider()
        self.permissions: PermissionValidator = permissions or RolePermissionValidator({})
        self.thresholds = thresholds or Thresholds()
        self.trust_proxy_headers = trust_proxy_headers
        self.clock = clock

        self.stages: Tuple[Tuple[str, Stage], ...] = (
            ("blocked", self._check_blocked),
            ("transport", self._check_transport),
            ("rate_limit", self._check_rate_limit),
            ("auth", self._check_auth),
            ("permission", self._check_permissions),
            ("activity", self._check_activity),
        )

    @classmethod
    def build(
        cls,
        counter_store: CounterStore,
        block_store: BlockStore,
        audit_sink: AuditSink,
        *,
        settings: Optional[Settings] = None,
        sessions: Optional[SessionProvider] = None,
        permissions: Optional[PermissionValidator] = None,
        clock: Callable[[], float] = time.time,
    ) -> "SecurityPipeline":
        """Wire the components from settings around the given stores."""
        settings = settings or Settings()
        thresholds = Thresholds.from_settings(settings.security)
        timeout = thresholds.store_timeout_sec
        audit = AuditTrail(audit_sink, timeout_sec=timeout)
        return cls(
            rate_limiter=RateLimiter(counter_store, timeout_sec=timeout, clock=clock),
            blocklist=Blocklist(
                block_store,
                audit,
                timeout_sec=timeout,
                default_duration_ms=thresholds.block_duration_ms,
                clock=clock,
            ),
            activity=ActivityAggregator(
                counter_store,
                audit,
                lookback_ms=thresholds.activity_lookback_ms,
                suspicious_threshold=thresholds.suspicious_risk_score,
                auth_endpoints=thresholds.auth_endpoints,
                timeout_sec=timeout,
                clock=clock,
            ),
            audit=audit,
            policies=policies_from_settings(settings.security),
            sessions=sessions,
            permissions=permissions,
            thresholds=thresholds,
            trust_proxy_headers=settings.security.trust_proxy_headers,
            clock=clock,
        )

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    def new_state(self, request: Request, config: SecurityConfig) -> RequestState:
        now = self.clock()
        return RequestState(
            request=request,
            config=config,
            request_id=generate_request_id(now),
            client_ip=self.client_ip(request),
            user_agent=request.headers.get("user-agent", "unknown"),
            started_at=now,
        )

    async def admit(self, state: RequestState) -> SecurityDecision:
        """Run the admission stages; returns the first denial or an allow decision."""
        for _, stage in self.stages:
            denial = await stage(state)
            if denial is not None:
                return denial
        return SecurityDecision(
            allowed=True,
            status_code=200,
            request_id=state.request_id,
            headers=state.response_headers(),
            risk_score=state.risk_score,
            reasons=list(state.reasons),
        )

    async def process(self, request: Request, config: SecurityConfig, handler: Handler) -> Response:
        state = self.new_state(request, config)
        try:
            decision = await self.admit(state)
            if not decision.allowed:
                return self._finalize(decision.to_response(), state)

            response = await handler(request, state.context())
            await self._after_handler(state, response)
            return self._finalize(response, state)
        except Exception:
            logger.exception(
                f"{LogColors.PLATFORM_LABEL} security_pipeline_error",
                request_id=state.request_id,
                client_ip=state.client_ip,
                method=request.method,
                path=request.url.path,
            )
            await self._refund(state, 500)
            decision = state.deny(DenialKind.INTERNAL_ERROR, 500, "Internal server error")
            return self._finalize(decision.to_response(), state)

    def wrap(self, handler: Handler, config: SecurityConfig) -> Callable[[Request], Awaitable[Response]]:
        async def secured(request: Request) -> Response:
            return await self.process(request, config, handler)

        secured.__name__ = getattr(handler, "__name__", "secured")
        secured.__doc__ = getattr(handler, "__doc__", None)
        return secured

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    async def _check_blocked(self, state: RequestState) -> Optional[SecurityDecision]:
        if await self.blocklist.is_blocked(state.client_ip):
            logger.warning(
                f"{LogColors.CLIENT_LABEL} blocked_identifier_rejected",
                client_ip=state.client_ip,
                request_id=state.request_id,
            )
            return state.deny(DenialKind.BLOCKED, 403, "Access denied")
        return None

    async def _check_transport(self, state: RequestState) -> Optional[SecurityDecision]:
        config = state.config
        request = state.request

        if config.allowed_methods and request.method.upper() not in config.allowed_methods:
            return state.deny(
                DenialKind.METHOD_NOT_ALLOWED,
                405,
                "Method not allowed",
                headers={"Allow": ", ".join(config.allowed_methods)},
            )

        if config.require_https and not self._is_https(request):
            return state.deny(DenialKind.TRANSPORT_VIOLATION, 400, "HTTPS required")

        if config.allowed_origins and "*" not in config.allowed_origins:
            origin = request.headers.get("origin")
            if origin and origin not in config.allowed_origins:
                logger.info("origin_rejected", origin=origin, request_id=state.request_id)
                return state.deny(DenialKind.ORIGIN_VIOLATION, 403, "Origin not allowed")

        if config.max_request_size is not None:
            content_length = request.headers.get("content-length")
            if content_length is not None:
                try:
                    size = int(content_length)
                except ValueError:
                    return state.deny(DenialKind.TRANSPORT_VIOLATION, 400, "Invalid Content-Length")
                if size > config.max_request_size:
                    return state.deny(DenialKind.TRANSPORT_VIOLATION, 413, "Request too large")

        return None

    async def _check_rate_limit(self, state: RequestState) -> Optional[SecurityDecision]:
        endpoint = state.config.rate_limit_endpoint
        if endpoint is None:
            return None

        policy = self.policies.get(endpoint)
        if policy is None:
            # Surfaces as a 500
            raise KeyError(f"no rate limit policy named {endpoint!r}")

        result = await self.rate_limiter.check_rate_limit(state.client_ip, policy, endpoint)
        state.policy = policy
        state.rate_limit = result
        if result.allowed:
            return None

        retry_after = result.retry_after(self.clock())
        await self.audit.record(
            state.client_ip,
            RATE_LIMIT_EXCEEDED,
            "rate_limit",
            endpoint,
            {"request_id": state.request_id, "hits": result.total_hits, "limit": result.limit},
        )
        return state.deny(
            DenialKind.RATE_LIMITED,
            429,
            "Too Many Requests",
            retry_after=retry_after,
            headers={"Retry-After": str(retry_after)},
        )

    async def _check_auth(self, state: RequestState) -> Optional[SecurityDecision]:
        config = state.config
        state.session = await self.sessions.get_session(state.request)
        needs_session = config.require_auth or bool(config.allowed_roles) or bool(config.required_permissions)
        if needs_session and state.session is None:
            return state.deny(DenialKind.UNAUTHENTICATED, 401, "Authentication required")
        return None

    async def _check_permissions(self, state: RequestState) -> Optional[SecurityDecision]:
        config = state.config
        session = state.session
        if session is None:
            return None

        missing: Optional[str] = None
        if config.allowed_roles and session.role not in config.allowed_roles:
            missing = f"role:{session.role}"
        else:
            for perm in config.required_permissions:
                if not self._has_permission(session, perm.resource, perm.action, perm.scope):
                    missing = f"{perm.resource}:{perm.action}" + (f":{perm.scope}" if perm.scope else "")
                    break

        if missing is None:
            return None

        await self.audit.record(
            session.user_id,
            ACCESS_DENIED,
            config.audit_resource_type,
            state.request.url.path,
            {
                "request_id": state.request_id,
                "client_ip": state.client_ip,
                "role": session.role,
                "missing": missing,
                "method": state.request.method,
            },
        )
        logger.warning(
            f"{LogColors.CLIENT_LABEL} access_denied",
            user_id=session.user_id,
            role=session.role,
            missing=missing,
            request_id=state.request_id,
        )
        return state.deny(DenialKind.UNAUTHORIZED, 403, "Insufficient permissions")

    async def _check_activity(self, state: RequestState) -> Optional[SecurityDecision]:
        config = state.config
        if not config.enable_suspicious_activity_detection:
            return None

        result = await self.activity.detect_suspicious(
            state.client_ip,
            config.activity_type,
            {
                "endpoint": state.request.url.path,
                "method": state.request.method,
                "user_agent": state.user_agent,
                "request_id": state.request_id,
            },
        )
        state.risk_score = result.risk_score
        state.reasons = list(result.reasons)

        if result.risk_score >= self.thresholds.escalation_risk_score:
            reason = f"risk score {result.risk_score}: {', '.join(result.reasons)}"
            await self.blocklist.block(
                state.client_ip,
                reason,
                duration_ms=self.thresholds.escalation_block_ms,
            )
            return state.deny(DenialKind.BLOCKED, 403, "Access denied due to suspicious activity")

        return None

    # -------------------------------------------------------------------------
    # Completion
    # -------------------------------------------------------------------------

    async def _after_handler(self, state: RequestState, response: Response) -> None:
        status = response.status_code
        await self._refund(state, status)

        if state.session is not None and status < 400:
            await self.audit.record(
                state.session.user_id,
                API_ACCESS,
                state.config.audit_resource_type,
                state.request.url.path,
                {
                    "request_id": state.request_id,
                    "client_ip": state.client_ip,
                    "method": state.request.method,
                    "status": status,
                },
            )

        logger.info(
            "api_request_processed",
            method=state.request.method,
            path=state.request.url.path,
            status=status,
            response_ms=round((self.clock() - state.started_at) * 1000, 1),
            client_ip=state.client_ip,
            user_id=short_id(state.session.user_id) if state.session else None,
            request_id=state.request_id,
        )

    async def _refund(self, state: RequestState, status: int) -> None:
        """Give back the request's hit when its policy skips this outcome."""
        policy = state.policy
        result = state.rate_limit
        if policy is None or result is None or not result.allowed or result.failed_open or state.refunded:
            return
        if (policy.skip_successful and status < 400) or (policy.skip_failed and status >= 400):
            state.refunded = True
            await self.rate_limiter.refund(state.client_ip, policy, state.config.rate_limit_endpoint or "default")

    def _finalize(self, response: Response, state: RequestState) -> Response:
        for name, value in state.response_headers().items():
            response.headers[name] = value
        return response

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _has_permission(self, session: Session, resource: str, action: str, scope: Optional[str]) -> bool:
        key = f"{resource}:{action}:{scope}" if scope else f"{resource}:{action}"
        if key in session.permissions:
            return True
        return self.permissions.has_permission(session.role, resource, action, scope)

    def _is_https(self, request: Request) -> bool:
        if request.url.scheme == "https":
            return True
        if self.trust_proxy_headers:
            proto = request.headers.get("x-forwarded-proto", "")
            return proto.split(",")[0].strip().lower() == "https"
        return False

    def client_ip(self, request: Request) -> str:
        """Extract the client IP, honouring reverse proxy headers when trusted.

        Forwarded values that do not parse as an IP address are skipped, so
        a client cannot pick an arbitrary identifier for itself.
        """
        if self.trust_proxy_headers:
            forwarded = request.headers.get("x-forwarded-for")
            candidates = (
                request.headers.get("cf-connecting-ip"),
                request.headers.get("x-real-ip"),
                # First hop is the original client
                forwarded.split(",")[0] if forwarded else None,
            )
            for candidate in candidates:
                ip = _parse_ip(candidate)
                if ip is not None:
                    return ip

        if request.client:
            return request.client.host

        return "unknown"


def _parse_ip(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    try:
        return str(ipaddress.ip_address(value.strip()))
    except ValueError:
        return None


__all__ = [
    "Handler",
    "RequestState",
    "SECURITY_HEADERS",
    "SecureContext",
    "SecurityDecision",
    "SecurityPipeline",
    "generate_request_id",
    "rate_limit_headers",
    "security_headers",
]
