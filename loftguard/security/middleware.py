"""FastAPI integration for the security pipeline.

Two ways to put an endpoint behind the pipeline:

- ``with_security(handler, config)`` wraps a single route handler. The
  handler receives the request and a ``SecureContext``.
- ``SecurityMiddleware`` applies configs by path prefix to every route of
  an app; the context is exposed as ``request.state.security``.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Mapping, Optional, Tuple

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from .config import SecurityConfig
from .pipeline import Handler, SecureContext, SecurityPipeline

logger = structlog.get_logger(__name__)

SKIP_PATHS = frozenset({"/health", "/healthz", "/ready", "/metrics", "/favicon.ico"})


def _resolve_pipeline(request: Request, pipeline: Optional[SecurityPipeline]) -> SecurityPipeline:
    if pipeline is not None:
        return pipeline
    resolved = getattr(request.app.state, "security_pipeline", None)
    if resolved is None:
        raise RuntimeError("app.state.security_pipeline is not configured")
    return resolved


def with_security(
    handler: Handler,
    config: SecurityConfig,
    pipeline: Optional[SecurityPipeline] = None,
) -> Callable[[Request], Awaitable[Response]]:
    """Wrap a route handler so it only runs after the security checks pass.

    Without an explicit pipeline the one stored on ``app.state`` is used,
    which lets routes be declared before the app wires its stores.
    """

    async def secured(request: Request) -> Response:
        return await _resolve_pipeline(request, pipeline).process(request, config, handler)

    secured.__name__ = getattr(handler, "__name__", "secured")
    secured.__doc__ = getattr(handler, "__doc__", None)
    return secured


class SecurityMiddleware(BaseHTTPMiddleware):
    """Runs the pipeline for every request whose path matches a configured prefix.

    The longest matching prefix wins. Paths with no match and utility paths
    (health checks, metrics) pass straight through.
    """

    def __init__(
        self,
        app: Any,
        routes: Mapping[str, SecurityConfig],
        pipeline: Optional[SecurityPipeline] = None,
    ):
        super().__init__(app)
        self.pipeline = pipeline
        # Longest prefix first
        self.routes: Tuple[Tuple[str, SecurityConfig], ...] = tuple(
            sorted(routes.items(), key=lambda item: len(item[0]), reverse=True)
        )

    def config_for(self, path: str) -> Optional[SecurityConfig]:
        if path in SKIP_PATHS:
            return None
        for prefix, config in self.routes:
            if path == prefix or path.startswith(prefix.rstrip("/") + "/"):
                return config
        return None

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        config = self.config_for(request.url.path)
        if config is None:
            return await call_next(request)

        async def forward(req: Request, context: SecureContext) -> Response:
            req.state.security = context
            return await call_next(req)

        return await _resolve_pipeline(request, self.pipeline).process(request, config, forward)


def inject_security_middleware(
    app: Any,
    routes: Mapping[str, SecurityConfig],
    pipeline: Optional[SecurityPipeline] = None,
) -> None:
    """Add SecurityMiddleware to an existing app.

    Must be called before the app starts serving. Middleware added later
    runs earlier, so call this last to make the checks run first.
    """
    app.add_middleware(SecurityMiddleware, routes=dict(routes), pipeline=pipeline)
    logger.info("security_middleware_injected", prefixes=sorted(routes))


__all__ = [
    "SKIP_PATHS",
    "SecurityMiddleware",
    "inject_security_middleware",
    "with_security",
]
