"""keyrelay FastAPI application factory + lifespan lifecycle.

This module implements:
  - create_app() — testable application factory
  - lifespan — @asynccontextmanager startup/shutdown sequence
  - app = create_app() — module-level instance for uvicorn

Startup sequence:
  1. load_config()              → app.state.config
  2. configuration report       → secret set?, key count, masked key prefixes
  3. KeyPool / ClientAuthenticator / RequestTranslator
  4. create_http_client()       → app.state.http_client
  5. UpstreamInvoker + ProxyHandler → app.state.proxy_handler
  6. app.state.ready = True

A missing proxy secret or empty key list does not stop startup. It is logged
at ERROR and every proxied request is answered 500 until the config is fixed.

Shutdown: app.state.ready = False → close the shared HTTP client.
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from keyrelay import __version__
from keyrelay.auth.authenticator import ClientAuthenticator
from keyrelay.config import Config, load_config
from keyrelay.keys.pool import KeyPool
from keyrelay.models.responses import build_status_response
from keyrelay.proxy.engine import ProxyHandler, router as engine_router
from keyrelay.proxy.headers import cors_origin
from keyrelay.proxy.invoker import UpstreamInvoker, create_http_client
from keyrelay.proxy.translator import RequestTranslator
from keyrelay.utils.logger import configure_logging, get_logger

# ─── Logging Setup ────────────────────────────────────────────────────────────
# Configure logging at module import time (before any other imports that may log).
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO" if not DEBUG else "DEBUG")
JSON_LOGS = os.getenv("JSON_LOGS", "true").lower() == "true"

configure_logging(log_level=LOG_LEVEL, json_output=JSON_LOGS)
logger = get_logger(__name__)


# ─── Startup report ───────────────────────────────────────────────────────────


def _report_config(config: Config, key_pool: KeyPool) -> None:
    """Log what the proxy is running with, without logging any secret."""
    logger.info(
        "Configuration check",
        proxy_secret_set=bool(config.proxy.secret),
        upstream_key_count=len(key_pool),
        upstream_key_prefixes=key_pool.describe(),
        upstream_base_url=config.upstream.base_url,
        upstream_timeout_s=config.upstream.timeout_s,
    )
    missing = config.missing_fields()
    if missing:
        logger.error(
            "Required configuration missing — every proxied request will fail "
            "with HTTP 500 until this is corrected",
            missing_fields=missing,
        )


# ─── Lifespan ─────────────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan — startup and shutdown sequence."""
    logger.info("keyrelay starting up...", version=__version__)

    # ── Step 1: Load configuration ────────────────────────────────────────────
    # load_config() raises SystemExit on a malformed file; a merely incomplete
    # config is reported below and surfaces per request as config_invalid.
    config: Config = load_config()
    app.state.config = config

    # LOG_LEVEL / JSON_LOGS still win over the file's logging section.
    configure_logging(
        log_level=os.getenv("LOG_LEVEL", config.logging.level),
        json_output=os.getenv("JSON_LOGS", str(config.logging.json)).lower() == "true",
    )

    # ── Step 2-3: Immutable collaborators ─────────────────────────────────────
    key_pool = KeyPool(config.upstream.keys)
    app.state.key_pool = key_pool
    _report_config(config, key_pool)

    authenticator = ClientAuthenticator(config)
    translator = RequestTranslator(config.upstream.base_url)

    # ── Step 4: Shared HTTP client ────────────────────────────────────────────
    # NEVER instantiated per request.
    http_client: httpx.AsyncClient = create_http_client(config.upstream.timeout_s)
    app.state.http_client = http_client
    logger.info("HTTP proxy client created", upstream_base_url=translator.base_url)

    # ── Step 5: Handler ───────────────────────────────────────────────────────
    app.state.proxy_handler = ProxyHandler(
        config=config,
        key_pool=key_pool,
        authenticator=authenticator,
        translator=translator,
        invoker=UpstreamInvoker(http_client),
    )

    # ── Step 6: Mark as ready ─────────────────────────────────────────────────
    app.state.ready = True
    logger.info("keyrelay ready")

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────────
    logger.info("keyrelay shutting down...")
    app.state.ready = False

    try:
        await http_client.aclose()
        logger.info("HTTP proxy client closed")
    except Exception as exc:
        logger.warning("HTTP proxy client close error (non-fatal)", error=str(exc))

    logger.info("keyrelay shutdown complete")


# ─── Application Factory ──────────────────────────────────────────────────────


def create_app() -> FastAPI:
    """Create and configure the keyrelay FastAPI application.

    Call this function directly in tests to get an isolated app instance:
        app = create_app()

    The module-level `app` is created at import time for uvicorn:
        uvicorn keyrelay.main:app --host 127.0.0.1 --port 8787

    Every path is proxied, so the interactive docs are only mounted when
    DEBUG=true (they would otherwise shadow /docs and /openapi.json upstream).
    """
    _debug = os.getenv("DEBUG", "false").lower() == "true"

    application = FastAPI(
        title="keyrelay",
        description="Credential-rotating reverse proxy for a single upstream API",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if _debug else None,
        redoc_url="/redoc" if _debug else None,
        openapi_url="/openapi.json" if _debug else None,
    )

    # Initialize ready flag before lifespan so early requests get 503.
    application.state.ready = False

    # engine_router: catch-all /{path:path} for every method; answers 503
    # not_ready itself until app.state.ready is set.
    application.include_router(engine_router)

    # Global exception handlers
    @application.exception_handler(HTTPException)
    async def http_exception_handler(
        request: Request, exc: HTTPException
    ) -> JSONResponse:
        logger.warning(
            "HTTP exception",
            status_code=exc.status_code,
            detail=exc.detail,
            path=str(request.url.path),
        )
        return build_status_response(
            exc.status_code,
            code=f"http_{exc.status_code}",
            message=str(exc.detail),
            origin=cors_origin(request.headers),
        )

    @application.exception_handler(Exception)
    async def unhandled_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.error(
            "Unhandled exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
        )
        return build_status_response(
            500,
            code="internal_error",
            message="Internal server error",
            origin=cors_origin(request.headers),
        )

    return application


# ─── Module-Level App (for uvicorn) ───────────────────────────────────────────

app = create_app()
