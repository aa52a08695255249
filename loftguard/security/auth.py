"""Session and permission collaborators consumed by the pipeline.

Session issuance and the platform's permission matrix live elsewhere; this
module only defines the contracts plus two small implementations that are
enough to run the API and its tests.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Awaitable, Callable, FrozenSet, Iterable, Mapping, Optional, Protocol

from starlette.requests import Request


@dataclass(frozen=True)
class Session:
    user_id: str
    role: str
    email: Optional[str] = None
    partner_id: Optional[str] = None
    # "resource:action" or "resource:action:scope"
    permissions: FrozenSet[str] = field(default_factory=frozenset)


class SessionProvider(Protocol):
    async def get_session(self, request: Request) -> Optional[Session]:
        ...


class PermissionValidator(Protocol):
    def has_permission(
        self,
        role: str,
        resource: str,
        action: str,
        scope: Optional[str] = None,
    ) -> bool:
        ...


class NoSessionProvider:
    """Every request is anonymous."""

    async def get_session(self, request: Request) -> Optional[Session]:
        return None


class BearerTokenSessionProvider:
    """Resolves `Authorization: Bearer <token>` through an async lookup."""

    def __init__(self, resolve: Callable[[str], Awaitable[Optional[Session]]]):
        self.resolve = resolve

    async def get_session(self, request: Request) -> Optional[Session]:
        header = request.headers.get("authorization", "")
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return await self.resolve(token.strip())


class StaticTokenSessionProvider(BearerTokenSessionProvider):
    """Bearer tokens mapped to fixed sessions (development and tests)."""

    def __init__(self, sessions: Mapping[str, Session]):
        self.sessions = dict(sessions)
        super().__init__(self._lookup)

    async def _lookup(self, token: str) -> Optional[Session]:
        return self.sessions.get(token)


def _permission_key(resource: str, action: str, scope: Optional[str] = None) -> str:
    return f"{resource}:{action}:{scope}" if scope else f"{resource}:{action}"


class RolePermissionValidator:
    """Role -> granted permissions lookup.

    A grant of "resource:action" covers every scope of that action; a grant
    of "resource:*" covers every action on the resource.
    """

    def __init__(self, matrix: Mapping[str, Iterable[str]]):
        self.matrix = {role: frozenset(grants) for role, grants in matrix.items()}

    def has_permission(
        self,
        role: str,
        resource: str,
        action: str,
        scope: Optional[str] = None,
    ) -> bool:
        grants = self.matrix.get(role, frozenset())
        candidates = {
            _permission_key(resource, action),
            _permission_key(resource, "*"),
            "*",
        }
        if scope:
            candidates.add(_permission_key(resource, action, scope))
        return bool(grants & candidates)


__all__ = [
    "BearerTokenSessionProvider",
    "NoSessionProvider",
    "PermissionValidator",
    "RolePermissionValidator",
    "Session",
    "SessionProvider",
    "StaticTokenSessionProvider",
]
