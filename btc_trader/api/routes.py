"""REST API endpoint handlers — read-only views of trader state."""

from __future__ import annotations

from dataclasses import asdict
from datetime import datetime, timezone

import structlog
from aiohttp import web

log = structlog.get_logger()

ctx_key = web.AppKey("ctx", dict)
api_key_key = web.AppKey("api_key", str)

VERSION = "1.0.0"


def _safe_int(value: str, default: int) -> int:
    """Parse int from query param, returning default on failure."""
    try:
        return int(value)
    except (ValueError, TypeError):
        return default


def _envelope(data, mode: str) -> dict:
    return {
        "data": data,
        "meta": {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "mode": mode,
            "version": VERSION,
        },
    }


def _current_price(ctx: dict) -> float | None:
    price = ctx["orchestrator"].last_cycle.get("price")
    if price:
        return price
    latest = ctx["profit"].latest
    return latest.unit_price if latest else None


async def status_handler(request: web.Request) -> web.Response:
    ctx = request.app[ctx_key]
    config = ctx["config"]
    orchestrator = ctx["orchestrator"]
    pending = orchestrator.pending_approval
    data = {
        "status": "paused" if orchestrator.is_paused else "running",
        "mode": config.mode,
        "uptime_seconds": (datetime.now(timezone.utc) - ctx["started_at"]).total_seconds(),
        "started_at": ctx["started_at"].isoformat(),
        "last_cycle": orchestrator.last_cycle or None,
        "pending_approval": {
            "action": pending.action.value,
            "amount": pending.amount,
            "price": pending.price,
            "expires_at": pending.expires_at.isoformat(),
        } if pending else None,
    }
    return web.json_response(_envelope(data, config.mode))


async def profit_handler(request: web.Request) -> web.Response:
    ctx = request.app[ctx_key]
    stats = asdict(ctx["profit"].stats())
    stats["trades"] = ctx["history"].stats()
    return web.json_response(_envelope(stats, ctx["config"].mode))


async def snapshots_handler(request: web.Request) -> web.Response:
    ctx = request.app[ctx_key]
    limit = min(_safe_int(request.query.get("limit", "100"), 100), 1000)
    snapshots = ctx["profit"].snapshots[-limit:]
    data = [s.to_record() for s in snapshots]
    return web.json_response(_envelope(data, ctx["config"].mode))


async def lots_handler(request: web.Request) -> web.Response:
    ctx = request.app[ctx_key]
    config = ctx["config"]
    ledger = ctx["ledger"]
    price = _current_price(ctx)
    if request.query.get("all") == "1":
        return web.json_response(_envelope([lot.to_record() for lot in ledger.lots], config.mode))

    data: dict = {"price": price, "lots": [], "summary": None}
    if price:
        data["lots"] = [asdict(v) for v in ledger.profit_snapshot(
            price, profit_target=config.profit.lot_profit_target)]
        data["summary"] = asdict(ledger.summary(price))
    return web.json_response(_envelope(data, config.mode))


async def trades_handler(request: web.Request) -> web.Response:
    ctx = request.app[ctx_key]
    limit = min(_safe_int(request.query.get("limit", "50"), 50), 500)
    data = [t.to_record() for t in reversed(ctx["history"].recent(limit))]
    return web.json_response(_envelope(data, ctx["config"].mode))


async def timing_handler(request: web.Request) -> web.Response:
    ctx = request.app[ctx_key]
    data = ctx["gate"].status()
    data["hesitation_history"] = ctx["gate"].hesitation_history[-20:]
    return web.json_response(_envelope(data, ctx["config"].mode))


def setup_routes(app: web.Application) -> None:
    app.router.add_get("/v1/status", status_handler)
    app.router.add_get("/v1/profit", profit_handler)
    app.router.add_get("/v1/profit/snapshots", snapshots_handler)
    app.router.add_get("/v1/lots", lots_handler)
    app.router.add_get("/v1/trades", trades_handler)
    app.router.add_get("/v1/timing", timing_handler)
