"""
MiSub - FastAPI Application
============================
Creates and configures the FastAPI application that emulates the MiSub
worker API locally.

Responsibilities:
    - Load configuration and secrets, build the key-value store
    - Initialize the auth and node group managers
    - Wrap every response in the fixed CORS header set
    - Answer CORS pre-flight (OPTIONS) requests with 204 on any path
    - Catch any failure that escapes a handler and turn it into a 500
    - Register API routes, /health and the endpoint listing at /

Request flow:
    request -> cors_envelope (OPTIONS short-circuit, catch-all)
            -> router (path/method match)
            -> require_auth (where needed)
            -> handler (reads/writes the store)
            -> JSON response + CORS headers
"""

import logging
import os
from typing import Any, Mapping

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from misub import __version__
from misub.auth import AuthManager
from misub.config import ConfigManager
from misub.errors import error_response, setup_exception_handlers, unexpected_error_response
from misub.groups import NodeGroupManager
from misub.routes import ENDPOINTS, create_router
from misub.store import KeyValueStore, create_store


logger = logging.getLogger(__name__)

# Sentinel: build the store from config
_FROM_CONFIG: Any = object()


def cors_headers(origin: str) -> dict[str, str]:
    """The CORS header set attached to every response."""
    return {
        "Access-Control-Allow-Origin": origin,
        "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type",
        "Access-Control-Allow-Credentials": "true",
    }


def info_payload() -> dict:
    return {"message": "MiSub local server", "endpoints": ENDPOINTS}


def create_app(
    project_dir: str | None = None,
    config: dict | None = None,
    store: KeyValueStore | None = _FROM_CONFIG,
    environ: Mapping[str, str] | None = None,
) -> FastAPI:
    """
    Application factory: create and configure the FastAPI instance.

    Args:
        project_dir: Project root (config.yaml, data/). Auto-detected if None.
        config:      Full configuration dict. Loaded from config.yaml if None.
        store:       Key-value store to use. Built from config when omitted;
                     pass None explicitly to run without a KV binding.
        environ:     Mapping to read secrets from. Defaults to os.environ.

    Returns:
        Configured FastAPI application ready to run with uvicorn.
    """
    # -- Resolve configuration -------------------------------------------------
    if project_dir is None:
        project_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

    config_manager = ConfigManager(project_dir)
    if config is None:
        config = config_manager.load()
    secrets = config_manager.secrets(environ)

    server_cfg = config["server"]
    expose_errors = bool(server_cfg.get("expose_errors"))
    legacy_fallback = bool(server_cfg.get("legacy_fallback"))

    # -- Initialize managers ---------------------------------------------------
    if store is _FROM_CONFIG:
        store = create_store(config, project_dir)

    auth_manager = AuthManager(
        secrets["admin_password"],
        secrets["cookie_secret"],
        session_days=int(config["auth"].get("session_days", 7)),
    )
    group_manager = None
    if store is not None:
        group_manager = NodeGroupManager(
            store, attempts=int(server_cfg.get("write_attempts", 5)),
        )

    # -- Create FastAPI app ----------------------------------------------------
    app = FastAPI(
        title="MiSub Local",
        description="Local emulation server for the MiSub admin API",
        version=__version__,
        docs_url="/docs",
        redoc_url=None,
    )

    app.state.config = config
    app.state.store = store
    app.state.auth_manager = auth_manager
    app.state.group_manager = group_manager

    # -- CORS envelope and catch-all -------------------------------------------
    headers = cors_headers(config["cors"]["origin"])

    @app.middleware("http")
    async def cors_envelope(request: Request, call_next):
        if request.method == "OPTIONS":
            return Response(status_code=204, headers=headers)
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.exception("Unhandled error on %s %s", request.method, request.url.path)
            response = unexpected_error_response(exc, expose_errors)
        response.headers.update(headers)
        return response

    # -- Unmatched routes ------------------------------------------------------
    def fallback(request: Request, status_code: int):
        if legacy_fallback:
            return JSONResponse(info_payload())
        if status_code == 405:
            return error_response(
                405, "METHOD_NOT_ALLOWED",
                f"{request.method} is not allowed on {request.url.path}",
            )
        return error_response(
            404, "NOT_FOUND", f"No endpoint for {request.method} {request.url.path}",
        )

    def rejects_anonymous(request: Request) -> bool:
        # Route-level dependencies are only ever require_auth here
        route = request.scope.get("route")
        if not getattr(route, "dependencies", None):
            return False
        return not auth_manager.is_authenticated(request.headers.get("cookie"))

    setup_exception_handlers(
        app,
        expose_errors=expose_errors,
        fallback=fallback,
        rejects_anonymous=rejects_anonymous,
    )

    # -- Routes ----------------------------------------------------------------
    app.include_router(create_router(
        auth_manager=auth_manager,
        store=store,
        group_manager=group_manager,
    ))

    @app.get("/health")
    async def health():
        return PlainTextResponse("OK")

    @app.get("/")
    async def index():
        """Endpoint listing."""
        return info_payload()

    if config.get("_config_error"):
        logger.warning("Running with default settings: %s", config["_config_error"])

    return app
