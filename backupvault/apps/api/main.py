from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from backupvault.apps.api.errors import (
    backupvault_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from backupvault.apps.api.response import API_VERSION
from backupvault.apps.api.routes.ops import router as ops_router
from backupvault.core.errors import BackupVaultError
from backupvault.core.logging import configure_logging
from backupvault.services.engine import BackupVault, build_vault
from backupvault.services.telemetry import increment_counter, record_duration


logger = logging.getLogger(__name__)


def create_app(vault: BackupVault | None = None) -> FastAPI:
    """Build the ops API; without an injected vault one is wired from settings at startup."""
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = None
        if getattr(app.state, "vault", None) is None:
            owned = build_vault()
            await owned.initialize()
            app.state.vault = owned
        try:
            yield
        finally:
            if owned is not None:
                await owned.close()
                app.state.vault = None

    app = FastAPI(title="BackupVault Ops API", lifespan=lifespan)
    app.state.vault = vault

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        record_duration("ops_request_ms", (time.monotonic() - start) * 1000.0)
        increment_counter(f"ops_requests_total.{response.status_code}")
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(BackupVaultError, backupvault_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(ops_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
