"""FastAPI application factory.

Stores are chosen from settings: PostgreSQL when a database URL is
configured, in-process otherwise. The pipeline is built eagerly and placed on
``app.state`` so ``with_security`` routes resolve it at request time; the
sweeper runs for the lifetime of the app.
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

import structlog
from fastapi import FastAPI

from loftguard import __version__
from loftguard.config import Settings, sanitize_dict
from loftguard.database import DBM
from loftguard.security.audit import LoggingAuditSink
from loftguard.security.auth import PermissionValidator, SessionProvider
from loftguard.security.pipeline import SecurityPipeline
from loftguard.security.sql_stores import SqlAuditSink, SqlBlockStore, SqlCounterStore
from loftguard.security.stores import (
    AuditSink,
    BlockStore,
    CounterStore,
    InMemoryBlockStore,
    InMemoryCounterStore,
)
from loftguard.security.sweeper import SecuritySweeper
from .admin import build_admin_router

logger = structlog.get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    *,
    counter_store: Optional[CounterStore] = None,
    block_store: Optional[BlockStore] = None,
    audit_sink: Optional[AuditSink] = None,
    session_provider: Optional[SessionProvider] = None,
    permission_validator: Optional[PermissionValidator] = None,
    clock: Callable[[], float] = time.time,
) -> FastAPI:
    settings = settings or Settings()

    database: Optional[DBM] = None
    if settings.database_url and (counter_store is None or block_store is None or audit_sink is None):
        database = DBM(settings.database)

    if counter_store is None:
        counter_store = SqlCounterStore(database) if database else InMemoryCounterStore()
    if block_store is None:
        block_store = SqlBlockStore(database) if database else InMemoryBlockStore()
    if audit_sink is None:
        audit_sink = SqlAuditSink(database) if database else LoggingAuditSink()

    pipeline = SecurityPipeline.build(
        counter_store,
        block_store,
        audit_sink,
        settings=settings,
        sessions=session_provider,
        permissions=permission_validator,
        clock=clock,
    )
    sweeper = SecuritySweeper(
        counter_store,
        block_store,
        retention_ms=settings.security.counter_retention_ms,
        interval_sec=settings.security.sweep_interval_sec,
        clock=clock,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info(
            "api_starting",
            store="postgres" if database is not None else "memory",
            settings=sanitize_dict(settings.model_dump()),
        )
        sweeper.start()
        try:
            yield
        finally:
            await sweeper.stop()
            if database is not None:
                await database.dispose()
            logger.info("api_stopped")

    app = FastAPI(title=settings.api.title, version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.security_pipeline = pipeline
    app.state.security_sweeper = sweeper

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok", "version": __version__}

    app.include_router(build_admin_router(tuple(settings.api.admin_roles)))
    return app


__all__ = ["create_app"]
