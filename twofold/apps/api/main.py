from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
import json
import logging
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from twofold.apps.api.errors import (
    domain_exception_handler,
    http_exception_handler,
    tenant_predicate_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from twofold.apps.api.response import API_VERSION, envelope, is_enveloped, is_versioned_request
from twofold.apps.api.routes.collections import router as collections_router
from twofold.apps.api.routes.health import router as health_router
from twofold.apps.api.routes.invites import router as invites_router
from twofold.apps.api.routes.media import router as media_router
from twofold.apps.api.routes.tenants import legacy_router as lockets_router
from twofold.apps.api.routes.tenants import router as tenants_router
from twofold.core.config import get_settings
from twofold.core.errors import TwofoldError
from twofold.core.logging import configure_logging
from twofold.persistence.db import engine
from twofold.persistence.guards import TenantPredicateError
from twofold.persistence.migrations import SchemaRunner
from twofold.persistence.schema_steps import STEPS


logger = logging.getLogger(__name__)

_LEGACY_SUNSET_DAYS = 90
_LEGACY_EXEMPT_PREFIXES = (
    f"/{API_VERSION}",
    "/docs",
    "/openapi.json",
    "/redoc",
)
_ENVELOPE_EXEMPT_PREFIXES = (
    f"/{API_VERSION}/openapi.json",
    f"/{API_VERSION}/docs",
    f"/{API_VERSION}/redoc",
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    # The single startup call site for schema evolution; MigrationFailure aborts startup.
    if get_settings().migrate_on_startup:
        runner = SchemaRunner(engine, STEPS)
        applied = await runner.run()
        app.state.schema_steps_applied = applied
    yield
    await engine.dispose()


async def _wrap_in_envelope(request: Request, response: Response, request_id: str) -> Response:
    # Middleware responses are streamed; buffer the JSON body, then wrap it once.
    body = b"".join([chunk async for chunk in response.body_iterator])
    headers = {
        key: value
        for key, value in response.headers.items()
        if key.lower() not in {"content-length", "content-type"}
    }
    try:
        payload = json.loads(body) if body else None
    except (TypeError, ValueError):
        payload = None
    if payload is None or is_enveloped(payload):
        return Response(
            content=body,
            status_code=response.status_code,
            headers=headers,
            media_type=response.headers.get("content-type"),
        )
    request.state.request_id = request_id
    return JSONResponse(
        content=envelope(request=request, data=payload),
        status_code=response.status_code,
        headers=headers,
    )


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title="Twofold API", lifespan=lifespan)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        if (
            is_versioned_request(request)
            and not request.url.path.startswith(_ENVELOPE_EXEMPT_PREFIXES)
            and response.status_code < 400
            and response.headers.get("content-type", "").startswith("application/json")
        ):
            response = await _wrap_in_envelope(request, response, request_id)
        response.headers.setdefault("X-Request-Id", request_id)
        # Unversioned aliases stay available but advertise their successor.
        if not request.url.path.startswith(_LEGACY_EXEMPT_PREFIXES):
            sunset_at = datetime.now(timezone.utc) + timedelta(days=_LEGACY_SUNSET_DAYS)
            response.headers["Deprecation"] = "true"
            response.headers["Sunset"] = format_datetime(sunset_at)
            response.headers["Link"] = f'</{API_VERSION}/docs>; rel="successor-version"'
        logger.debug(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f",
            request.method,
            request.url.path,
            response.status_code,
            (time.monotonic() - start) * 1000.0,
        )
        return response

    app.add_exception_handler(TwofoldError, domain_exception_handler)
    app.add_exception_handler(TenantPredicateError, tenant_predicate_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    routers = (health_router, tenants_router, invites_router, collections_router, media_router)
    for router in routers:
        app.include_router(router, prefix=f"/{API_VERSION}")
    # Retain unversioned routes as deprecated compatibility aliases.
    for router in routers:
        app.include_router(router, include_in_schema=False)
    app.include_router(lockets_router, include_in_schema=False)

    logger.info("api_app_created name=%s auth_enabled=%s", settings.app_name, settings.auth_enabled)
    return app


app = create_app()
