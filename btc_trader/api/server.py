"""API Server — aiohttp app with bearer auth and read-only REST routes."""

from __future__ import annotations

import hmac
import os
from datetime import datetime, timezone

import structlog
from aiohttp import web

from btc_trader.api.routes import VERSION, api_key_key, ctx_key, setup_routes

log = structlog.get_logger()


@web.middleware
async def auth_middleware(request: web.Request, handler):
    """Bearer token authentication against the API_KEY environment variable."""
    api_key = request.app.get(api_key_key, "")
    if not api_key:
        return web.json_response(
            {"error": {"code": "unauthorized", "message": "API key not configured"}},
            status=401,
        )
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer ") or not hmac.compare_digest(auth[7:], api_key):
        return web.json_response(
            {"error": {"code": "unauthorized", "message": "Invalid or missing API key"}},
            status=401,
        )
    return await handler(request)


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Catch unhandled exceptions and return generic error (no tracebacks to clients)."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception as e:
        log.error("api.unhandled_error", path=request.path, error=str(e),
                  error_type=type(e).__name__)
        return web.json_response(
            {
                "error": {"code": "internal_error", "message": "An unexpected error occurred"},
                "meta": {
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                    "version": VERSION,
                },
            },
            status=500,
        )


def create_app(
    config,
    orchestrator,
    ledger,
    profit,
    history,
    gate,
    api_key: str | None = None,
) -> web.Application:
    """Create and configure the aiohttp application."""
    app = web.Application(middlewares=[error_middleware, auth_middleware])
    app[api_key_key] = api_key if api_key is not None else os.getenv("API_KEY", "")
    app[ctx_key] = {
        "config": config,
        "orchestrator": orchestrator,
        "ledger": ledger,
        "profit": profit,
        "history": history,
        "gate": gate,
        "started_at": datetime.now(timezone.utc),
    }
    setup_routes(app)
    return app
