"""Tests for the SecurityPipeline and with_security."""

from __future__ import annotations

import asyncio
import math
import re
from typing import List

import pytest
from fastapi import FastAPI
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.testclient import TestClient

from conftest import FailingAuditSink, FailingBlockStore, FailingCounterStore, FakeClock
from loftguard.config import Settings
from loftguard.security.audit import (
    ACCESS_DENIED,
    API_ACCESS,
    IDENTIFIER_BLOCKED,
    RATE_LIMIT_EXCEEDED,
    SECURITY_ALERT,
    InMemoryAuditSink,
)
from loftguard.security.auth import RolePermissionValidator, Session, StaticTokenSessionProvider
from loftguard.security.config import DenialKind, Permission, SecurityConfig, SecurityPresets
from loftguard.security.middleware import with_security
from loftguard.security.pipeline import (
    SECURITY_HEADERS,
    SecureContext,
    SecurityDecision,
    SecurityPipeline,
    generate_request_id,
)
from loftguard.security.stores import InMemoryBlockStore, InMemoryCounterStore


SESSIONS = {
    "cust-token": Session(user_id="user-1", role="customer", email="c@example.com"),
    "partner-token": Session(user_id="user-2", role="partner", partner_id="p-1"),
    "guest-token": Session(user_id="user-3", role="guest"),
    "grant-token": Session(user_id="user-4", role="guest", permissions=frozenset({"payments:create"})),
}

MATRIX = {
    "customer": ["payments:create", "reservations:*"],
    "admin": ["*"],
}


def _auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


class Harness:
    """A FastAPI app with one route per preset behind a shared pipeline."""

    def __init__(
        self,
        clock: FakeClock,
        counter_store=None,
        block_store=None,
        audit_sink=None,
        settings: Settings = None,
    ):
        self.clock = clock
        self.counter_store = counter_store if counter_store is not None else InMemoryCounterStore()
        self.block_store = block_store if block_store is not None else InMemoryBlockStore()
        self.audit_sink = audit_sink if audit_sink is not None else InMemoryAuditSink()
        self.pipeline = SecurityPipeline.build(
            self.counter_store,
            self.block_store,
            self.audit_sink,
            settings=settings or Settings(),
            sessions=StaticTokenSessionProvider(SESSIONS),
            permissions=RolePermissionValidator(MATRIX),
            clock=clock,
        )
        self.calls: List[SecureContext] = []
        self.app = FastAPI()
        self.app.state.security_pipeline = self.pipeline

        methods = ["GET", "POST", "PUT", "DELETE", "PATCH"]
        self.route("/login", SecurityPresets.auth(), methods)
        self.route("/bookings", SecurityPresets.booking(), methods)
        self.route("/payments", SecurityPresets.payment(), methods)
        self.route("/partner/verify", SecurityPresets.partner_verification(), methods)
        self.route("/search", SecurityPresets.api(), methods)
        self.route("/open", SecurityConfig(), methods)
        self.route("/small", SecurityConfig(max_request_size=10), methods)
        self.route("/cors", SecurityConfig(allowed_origins=("https://app.example.com",)), methods)
        self.route("/invoices", SecurityConfig(
            require_auth=True,
            required_permissions=(Permission("invoices", "read", "own"),),
        ), methods)
        self.route("/misconfigured", SecurityConfig(rate_limit_endpoint="nope"), methods)

        async def boom(request: Request, context: SecureContext):
            raise RuntimeError("database exploded")

        self.app.add_api_route("/boom", with_security(boom, SecurityPresets.api()), methods=methods)

        self.client = TestClient(self.app)

    def route(self, path: str, config: SecurityConfig, methods: List[str], status: int = 200) -> None:
        async def handler(request: Request, context: SecureContext):
            self.calls.append(context)
            return JSONResponse(
                status_code=status,
                content={"ok": True, "user": context.user.user_id if context.user else None},
            )

        self.app.add_api_route(path, with_security(handler, config), methods=methods)


def _assert_security_headers(response) -> None:
    for name, value in SECURITY_HEADERS.items():
        assert response.headers[name] == value
    assert re.match(r"^req_\d+_[0-9a-z]{9}$", response.headers["X-Request-ID"])


class TestRequestIds:
    def test_format(self):
        request_id = generate_request_id(1_700_000_000.123)
        assert re.match(r"^req_1700000000123_[0-9a-z]{9}$", request_id)

    def test_unique(self):
        assert len({generate_request_id(0.0) for _ in range(50)}) == 50


class TestSecurityDecision:
    def test_internal_error_body_carries_request_id(self):
        decision = SecurityDecision(
            allowed=False,
            status_code=500,
            request_id="req_1_abc",
            kind=DenialKind.INTERNAL_ERROR,
            error="Internal server error",
        )
        assert decision.body() == {"error": "Internal server error", "requestId": "req_1_abc"}

    def test_rate_limited_body(self):
        decision = SecurityDecision(
            allowed=False,
            status_code=429,
            request_id="req_1_abc",
            kind=DenialKind.RATE_LIMITED,
            error="Too Many Requests",
            retry_after=12,
        )
        assert decision.body() == {"error": "Too Many Requests", "retryAfter": 12}


class TestClientIp:
    def _request(self, headers=None, client=("10.0.0.1", 5000)) -> Request:
        scope = {
            "type": "http",
            "method": "GET",
            "path": "/",
            "scheme": "http",
            "server": ("testserver", 80),
            "query_string": b"",
            "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
            "client": client,
        }
        return Request(scope)

    def _pipeline(self, trust: bool = True) -> SecurityPipeline:
        pipeline = SecurityPipeline.build(InMemoryCounterStore(), InMemoryBlockStore(), InMemoryAuditSink())
        pipeline.trust_proxy_headers = trust
        return pipeline

    def test_header_precedence(self):
        pipeline = self._pipeline()
        headers = {
            "cf-connecting-ip": "1.1.1.1",
            "x-real-ip": "2.2.2.2",
            "x-forwarded-for": "3.3.3.3, 4.4.4.4",
        }
        assert pipeline.client_ip(self._request(headers)) == "1.1.1.1"
        del headers["cf-connecting-ip"]
        assert pipeline.client_ip(self._request(headers)) == "2.2.2.2"
        del headers["x-real-ip"]
        assert pipeline.client_ip(self._request(headers)) == "3.3.3.3"

    def test_socket_peer_fallback(self):
        assert self._pipeline().client_ip(self._request()) == "10.0.0.1"

    def test_unknown_without_peer(self):
        assert self._pipeline().client_ip(self._request(client=None)) == "unknown"

    def test_proxy_headers_ignored_when_untrusted(self):
        pipeline = self._pipeline(trust=False)
        assert pipeline.client_ip(self._request({"x-forwarded-for": "3.3.3.3"})) == "10.0.0.1"

    def test_values_that_are_not_ips_are_skipped(self):
        pipeline = self._pipeline()
        headers = {"cf-connecting-ip": "a" * 300, "x-real-ip": "2.2.2.2"}
        assert pipeline.client_ip(self._request(headers)) == "2.2.2.2"
        assert pipeline.client_ip(self._request({"x-forwarded-for": "not-an-ip, 4.4.4.4"})) == "10.0.0.1"

    def test_ipv6_is_normalized(self):
        pipeline = self._pipeline()
        request = self._request({"x-real-ip": " 2001:DB8:0:0:0:0:0:1 "})
        assert pipeline.client_ip(request) == "2001:db8::1"


class TestForgedForwardedHeaders:
    def test_oversized_header_cannot_escape_the_rate_limit(self, clock):
        harness = Harness(clock)
        for i in range(5):
            headers = {"x-forwarded-for": f"{i}" * 300}
            assert harness.client.post("/login", headers=headers).status_code == 200

        response = harness.client.post("/login", headers={"x-forwarded-for": "x" * 300})

        assert response.status_code == 429
        assert harness.counter_store.get("login", "testclient").hits == 6


class TestLoginScenario:
    def test_sixth_login_attempt_is_rate_limited(self, clock, audit_sink):
        harness = Harness(clock, audit_sink=audit_sink)
        headers = {"x-forwarded-for": "203.0.113.5"}

        for expected_remaining in [4, 3, 2, 1, 0]:
            response = harness.client.post("/login", headers=headers)
            assert response.status_code == 200
            assert response.headers["X-RateLimit-Limit"] == "5"
            assert response.headers["X-RateLimit-Remaining"] == str(expected_remaining)

        response = harness.client.post("/login", headers=headers)

        assert response.status_code == 429
        assert response.json() == {"error": "Too Many Requests", "retryAfter": 900}
        assert response.headers["Retry-After"] == "900"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert response.headers["X-RateLimit-Reset"] == str(math.ceil(clock() + 900))
        _assert_security_headers(response)
        assert len(harness.calls) == 5
        assert RATE_LIMIT_EXCEEDED in audit_sink.actions()

    def test_other_ip_is_unaffected(self, clock):
        harness = Harness(clock)
        for _ in range(6):
            harness.client.post("/login", headers={"x-forwarded-for": "203.0.113.5"})

        response = harness.client.post("/login", headers={"x-forwarded-for": "203.0.113.6"})

        assert response.status_code == 200

    def test_window_reset_admits_again(self, clock):
        harness = Harness(clock)
        headers = {"x-forwarded-for": "203.0.113.5"}
        for _ in range(6):
            harness.client.post("/login", headers=headers)

        clock.advance(900)

        assert harness.client.post("/login", headers=headers).status_code == 200


class TestStageOrder:
    def test_blocked_wins_over_transport(self, clock):
        harness = Harness(clock)
        ip = {"x-forwarded-for": "198.51.100.7"}
        client = harness.client

        assert client.get("/login", headers=ip).status_code == 405

        asyncio.run(harness.pipeline.blocklist.block("198.51.100.7", "manual"))

        response = client.get("/login", headers=ip)
        assert response.status_code == 403
        assert response.json() == {"error": "Access denied"}
        _assert_security_headers(response)
        assert harness.calls == []

    def test_transport_denial_does_not_consume_rate_limit(self, clock):
        harness = Harness(clock)

        response = harness.client.get("/login", headers={"x-forwarded-for": "1.2.3.4"})

        assert response.status_code == 405
        assert response.headers["Allow"] == "POST"
        assert harness.counter_store.get("login", "1.2.3.4") is None
        assert "X-RateLimit-Limit" not in response.headers

    def test_rate_limit_runs_before_auth(self, clock):
        harness = Harness(clock)
        ip = {"x-forwarded-for": "1.2.3.4"}

        statuses = [harness.client.post("/bookings", headers=ip).status_code for _ in range(3)]

        assert statuses == [401, 401, 429]

    def test_auth_runs_before_permissions(self, clock, audit_sink):
        harness = Harness(clock, audit_sink=audit_sink)

        response = harness.client.post("/partner/verify")

        assert response.status_code == 401
        assert ACCESS_DENIED not in audit_sink.actions()


class TestTransportChecks:
    def test_https_required(self, clock):
        harness = Harness(clock)

        response = harness.client.post("/payments", headers=_auth("cust-token"))

        assert response.status_code == 400
        assert response.json()["error"] == "HTTPS required"
        _assert_security_headers(response)

    def test_forwarded_https_is_accepted(self, clock):
        harness = Harness(clock)

        response = harness.client.post(
            "/payments",
            headers={**_auth("cust-token"), "x-forwarded-proto": "https"},
        )

        assert response.status_code == 200

    def test_https_scheme_is_accepted(self, clock):
        harness = Harness(clock)
        client = TestClient(harness.app, base_url="https://testserver")

        assert client.post("/payments", headers=_auth("cust-token")).status_code == 200

    def test_origin_not_allowed(self, clock):
        harness = Harness(clock)

        denied = harness.client.get("/cors", headers={"origin": "https://evil.example.com"})
        allowed = harness.client.get("/cors", headers={"origin": "https://app.example.com"})
        no_origin = harness.client.get("/cors")

        assert denied.status_code == 403
        assert denied.json()["error"] == "Origin not allowed"
        assert allowed.status_code == 200
        assert no_origin.status_code == 200

    def test_request_too_large(self, clock):
        harness = Harness(clock)

        too_big = harness.client.post("/small", content=b"x" * 11)
        fits = harness.client.post("/small", content=b"x" * 10)

        assert too_big.status_code == 413
        assert fits.status_code == 200


class TestAuthAndPermissions:
    def test_unauthenticated(self, clock):
        harness = Harness(clock)

        response = harness.client.get("/bookings")

        assert response.status_code == 401
        assert response.json() == {"error": "Authentication required"}
        assert harness.calls == []

    def test_invalid_token_is_unauthenticated(self, clock):
        harness = Harness(clock)

        assert harness.client.get("/bookings", headers=_auth("forged")).status_code == 401

    def test_authenticated_request_reaches_handler_with_context(self, clock, audit_sink):
        harness = Harness(clock, audit_sink=audit_sink)

        response = harness.client.get(
            "/bookings",
            headers={**_auth("cust-token"), "x-forwarded-for": "1.2.3.4", "user-agent": "pytest"},
        )

        assert response.status_code == 200
        assert response.json() == {"ok": True, "user": "user-1"}
        context = harness.calls[0]
        assert context.client_ip == "1.2.3.4"
        assert context.user_agent == "pytest"
        assert context.request_id == response.headers["X-Request-ID"]

        assert audit_sink.actions() == [API_ACCESS]
        event = audit_sink.events[0]
        assert event.actor_id == "user-1"
        assert event.resource_type == "reservation"
        assert event.resource_id == "/bookings"
        assert event.metadata["status"] == 200

    def test_anonymous_success_is_not_audited(self, clock, audit_sink):
        harness = Harness(clock, audit_sink=audit_sink)

        assert harness.client.get("/open").status_code == 200
        assert audit_sink.events == []

    def test_wrong_role_is_denied_and_audited(self, clock, audit_sink):
        harness = Harness(clock, audit_sink=audit_sink)

        response = harness.client.post("/partner/verify", headers=_auth("cust-token"))

        assert response.status_code == 403
        assert response.json() == {"error": "Insufficient permissions"}
        assert audit_sink.actions() == [ACCESS_DENIED]
        assert audit_sink.events[0].actor_id == "user-1"
        assert harness.calls == []

    def test_allowed_role_passes(self, clock):
        harness = Harness(clock)

        assert harness.client.post("/partner/verify", headers=_auth("partner-token")).status_code == 200

    def test_missing_permission_is_denied(self, clock, audit_sink):
        harness = Harness(clock, audit_sink=audit_sink)

        response = harness.client.post(
            "/payments",
            headers={**_auth("guest-token"), "x-forwarded-proto": "https"},
        )

        assert response.status_code == 403
        assert audit_sink.events[0].metadata["missing"] == "payments:create"

    def test_session_grant_satisfies_permission(self, clock):
        harness = Harness(clock)

        response = harness.client.post(
            "/payments",
            headers={**_auth("grant-token"), "x-forwarded-proto": "https"},
        )

        assert response.status_code == 200

    def test_scoped_permission(self, clock):
        harness = Harness(clock)

        assert harness.client.get("/invoices", headers=_auth("cust-token")).status_code == 403

        harness.pipeline.permissions = RolePermissionValidator({"customer": ["invoices:read:own"]})
        assert harness.client.get("/invoices", headers=_auth("cust-token")).status_code == 200


class TestActivityEscalation:
    async def _seed(self, store, identifier: str, now: float) -> None:
        # 11 endpoints over their limit plus 21 register attempts: score 90
        for i in range(11):
            for _ in range(2):
                await store.increment(f"endpoint{i}", identifier, 60_000, 1, now)
        for _ in range(21):
            await store.increment("register", identifier, 3_600_000, 3, now)

    def test_high_risk_blocks_identifier(self, clock, audit_sink):

        harness = Harness(clock, audit_sink=audit_sink)
        asyncio.run(self._seed(harness.counter_store, "6.6.6.6", clock()))
        ip = {"x-forwarded-for": "6.6.6.6"}

        response = harness.client.post("/login", headers=ip)

        assert response.status_code == 403
        assert response.json() == {"error": "Access denied due to suspicious activity"}
        assert harness.calls == []
        assert SECURITY_ALERT in audit_sink.actions()
        # Pipeline blocks have no actor and are not audited as admin blocks
        assert IDENTIFIER_BLOCKED not in audit_sink.actions()

        blocked = asyncio.run(harness.pipeline.blocklist.active_entries("6.6.6.6"))
        assert len(blocked) == 1
        assert blocked[0].expires_at == clock() + 3600
        assert blocked[0].reason.startswith("risk score 90")

        # The block applies to every secured route, not only the one that tripped it
        follow_up = harness.client.get("/open", headers=ip)
        assert follow_up.status_code == 403
        assert follow_up.json() == {"error": "Access denied"}

    def test_suspicious_below_escalation_continues(self, clock, audit_sink):

        async def seed():
            for i in range(11):
                for _ in range(2):
                    await harness.counter_store.increment(f"endpoint{i}", "7.7.7.7", 60_000, 1, clock())

        harness = Harness(clock, audit_sink=audit_sink)
        asyncio.run(seed())

        response = harness.client.get("/search", headers={"x-forwarded-for": "7.7.7.7"})

        assert response.status_code == 200
        assert SECURITY_ALERT in audit_sink.actions()
        assert asyncio.run(harness.pipeline.blocklist.is_blocked("7.7.7.7")) is False


class TestRefunds:
    def _settings(self) -> Settings:
        return Settings(
            security={
                "policies": {
                    "flaky": {"window_ms": 60_000, "max_requests": 2, "skip_failed": True},
                    "quiet": {"window_ms": 60_000, "max_requests": 2, "skip_successful": True},
                }
            }
        )

    def test_skip_failed_refunds_error_responses(self, clock):
        harness = Harness(clock, settings=self._settings())
        harness.route("/flaky", SecurityConfig(rate_limit_endpoint="flaky"), ["GET"], status=400)

        statuses = [harness.client.get("/flaky").status_code for _ in range(5)]

        assert statuses == [400] * 5
        assert harness.counter_store.get("flaky", "testclient").hits == 0

    def test_skip_successful_refunds_success(self, clock):
        harness = Harness(clock, settings=self._settings())
        harness.route("/quiet", SecurityConfig(rate_limit_endpoint="quiet"), ["GET"])

        statuses = [harness.client.get("/quiet").status_code for _ in range(5)]

        assert statuses == [200] * 5

    def test_skip_failed_refunds_handler_exceptions(self, clock):
        harness = Harness(clock, settings=self._settings())

        async def crash(request: Request, context: SecureContext):
            raise RuntimeError("upstream timeout")

        config = SecurityConfig(rate_limit_endpoint="flaky")
        harness.app.add_api_route("/crash", with_security(crash, config), methods=["GET"])

        statuses = [harness.client.get("/crash").status_code for _ in range(4)]

        assert statuses == [500] * 4
        assert harness.counter_store.get("flaky", "testclient").hits == 0

    def test_handler_exceptions_keep_the_hit_without_flag(self, clock):
        harness = Harness(clock)

        harness.client.get("/boom")

        assert harness.counter_store.get("apiGeneral", "testclient").hits == 1

    def test_no_refund_without_flag(self, clock):
        harness = Harness(clock)

        statuses = [harness.client.get("/open").status_code for _ in range(2)]
        statuses += [harness.client.post("/bookings", headers=_auth("cust-token")).status_code for _ in range(3)]

        assert statuses == [200, 200, 200, 200, 429]


class TestFailureHandling:
    def test_handler_exception_returns_500_with_request_id(self, clock):
        harness = Harness(clock)

        response = harness.client.get("/boom")

        assert response.status_code == 500
        body = response.json()
        assert body == {"error": "Internal server error", "requestId": response.headers["X-Request-ID"]}
        assert "exploded" not in response.text
        _assert_security_headers(response)
        assert response.headers["X-RateLimit-Limit"] == "100"

    def test_unknown_policy_is_internal_error(self, clock):
        harness = Harness(clock)

        assert harness.client.get("/misconfigured").status_code == 500

    def test_all_stores_down_fail_open(self, clock):
        harness = Harness(
            clock,
            counter_store=FailingCounterStore(),
            block_store=FailingBlockStore(),
            audit_sink=FailingAuditSink(),
        )

        for _ in range(10):
            response = harness.client.post("/login")
            assert response.status_code == 200
            _assert_security_headers(response)
        assert len(harness.calls) == 10


class TestWrap:
    @pytest.mark.asyncio
    async def test_wrap_binds_config(self, clock):
        pipeline = SecurityPipeline.build(
            InMemoryCounterStore(), InMemoryBlockStore(), InMemoryAuditSink(), clock=clock
        )

        async def handler(request: Request, context: SecureContext):
            """Say hello."""
            return JSONResponse({"hello": context.client_ip})

        secured = pipeline.wrap(handler, SecurityConfig(allowed_methods=("GET",)))
        scope = {
            "type": "http",
            "method": "POST",
            "path": "/",
            "scheme": "http",
            "server": ("testserver", 80),
            "query_string": b"",
            "headers": [],
            "client": ("10.0.0.1", 1234),
        }

        response = await secured(Request(scope))

        assert secured.__name__ == "handler"
        assert secured.__doc__ == "Say hello."
        assert response.status_code == 405
