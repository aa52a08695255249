"""Admin endpoints for inspecting and managing blocks.

Every route sits behind the admin preset, so callers need an authenticated
session with one of the configured admin roles.
"""

from __future__ import annotations

from dataclasses import asdict
from typing import Optional, Tuple

from fastapi import APIRouter
from pydantic import BaseModel, Field
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from loftguard.security.activity import score
from loftguard.security.config import SecurityPresets
from loftguard.security.middleware import with_security
from loftguard.security.pipeline import SecureContext, SecurityPipeline
from loftguard.security.stores import BlockEntry, StoreUnavailable


class BlockRequest(BaseModel):
    identifier: str = Field(min_length=1, max_length=255)
    reason: str = Field(min_length=1, max_length=255)
    duration_ms: Optional[int] = Field(default=None, gt=0)


def _pipeline(request: Request) -> SecurityPipeline:
    return request.app.state.security_pipeline


def _entry_json(entry: BlockEntry) -> dict:
    return asdict(entry)


async def create_block(request: Request, context: SecureContext) -> Response:
    try:
        payload = BlockRequest.model_validate(await request.json())
    except ValueError:
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid request", "message": "identifier and reason are required"},
        )

    result = await _pipeline(request).blocklist.block(
        payload.identifier,
        payload.reason,
        duration_ms=payload.duration_ms,
        blocked_by=context.user.user_id if context.user else None,
    )
    if not result.ok or result.entry is None:
        return JSONResponse(status_code=503, content={"error": "Block store unavailable"})
    return JSONResponse(status_code=201, content=_entry_json(result.entry))


async def get_blocks(request: Request, context: SecureContext) -> Response:
    identifier = request.path_params["identifier"]
    entries = await _pipeline(request).blocklist.active_entries(identifier)
    return JSONResponse(
        content={
            "identifier": identifier,
            "blocked": bool(entries),
            "blocks": [_entry_json(e) for e in entries],
        }
    )


async def get_activity(request: Request, context: SecureContext) -> Response:
    identifier = request.path_params["identifier"]
    activity_type = request.query_params.get("activity_type", "api_request")
    aggregator = _pipeline(request).activity
    try:
        snapshot = await aggregator.snapshot(identifier)
    except StoreUnavailable:
        return JSONResponse(status_code=503, content={"error": "Counter store unavailable"})

    risk_score, reasons = score(snapshot, activity_type)
    return JSONResponse(
        content={
            "identifier": identifier,
            "activity_type": activity_type,
            "risk_score": risk_score,
            "suspicious": risk_score >= aggregator.suspicious_threshold,
            "reasons": reasons,
            "snapshot": asdict(snapshot),
        }
    )


def build_admin_router(admin_roles: Tuple[str, ...] = ("admin", "superuser")) -> APIRouter:
    config = SecurityPresets.admin(admin_roles)
    router = APIRouter(prefix="/admin/security", tags=["security-admin"])
    router.add_api_route("/blocks", with_security(create_block, config), methods=["POST"])
    router.add_api_route("/blocks/{identifier}", with_security(get_blocks, config), methods=["GET"])
    router.add_api_route("/activity/{identifier}", with_security(get_activity, config), methods=["GET"])
    return router


__all__ = ["BlockRequest", "build_admin_router"]
