"""REST API tests: auth, envelopes and the read-only views."""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from aiohttp import test_utils

HEADERS = {"Authorization": "Bearer secret"}


async def _components():
    from btc_trader.shell.config import Config
    from btc_trader.shell.contract import ActionType
    from btc_trader.shell.history import TradeHistory, TradeRecord
    from btc_trader.trading.ledger import LotLedger
    from btc_trader.trading.profit import ProfitAccount
    from btc_trader.trading.timing import TimingGate

    config = Config()
    ledger = LotLedger()
    await ledger.record_lot(200.0, 0.0025, 80000.0, tag="initial")
    profit = ProfitAccount(config.profit)
    await profit.record_balance(50.0, 0.0025, 80000.0)
    await profit.record_balance(50.0, 0.0025, 84000.0)
    history = TradeHistory()
    await history.record(TradeRecord(
        timestamp=datetime(2025, 3, 3, 12, 0, tzinfo=timezone.utc), side=ActionType.BUY,
        fiat_amount=50.0, asset_amount=0.000625, unit_price=80000.0, fees=0.375, simulated=True,
    ))
    gate = TimingGate(config.timing, config.polling, config.timezone)

    orchestrator = MagicMock()
    orchestrator.is_paused = False
    orchestrator.pending_approval = None
    orchestrator.last_cycle = {"price": 84000.0}
    return config, orchestrator, ledger, profit, history, gate


async def _client():
    from btc_trader.api.server import create_app

    app = create_app(*(await _components()), api_key="secret")
    client = test_utils.TestClient(test_utils.TestServer(app))
    await client.start_server()
    return client


@pytest.mark.asyncio
async def test_requests_without_key_are_rejected():
    client = await _client()
    try:
        resp = await client.get("/v1/status")
        assert resp.status == 401
        resp = await client.get("/v1/status", headers={"Authorization": "Bearer wrong"})
        assert resp.status == 401
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_unconfigured_key_rejects_everything():
    from btc_trader.api.server import create_app

    app = create_app(*(await _components()), api_key="")
    client = test_utils.TestClient(test_utils.TestServer(app))
    await client.start_server()
    try:
        resp = await client.get("/v1/status", headers=HEADERS)
        assert resp.status == 401
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_status_envelope():
    client = await _client()
    try:
        resp = await client.get("/v1/status", headers=HEADERS)
        assert resp.status == 200
        body = await resp.json()
        assert body["data"]["status"] == "running"
        assert body["data"]["pending_approval"] is None
        assert body["meta"]["mode"] == "dry_run"
        assert body["meta"]["version"] == "1.0.0"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_profit_and_snapshots():
    client = await _client()
    try:
        body = await (await client.get("/v1/profit", headers=HEADERS)).json()
        assert body["data"]["current_profit"] == pytest.approx(10.0)
        assert body["data"]["trades"]["buys"] == 1

        body = await (await client.get("/v1/profit/snapshots?limit=1", headers=HEADERS)).json()
        assert len(body["data"]) == 1
        assert body["data"][0]["unit_price"] == 84000.0
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_lots_views():
    client = await _client()
    try:
        body = await (await client.get("/v1/lots", headers=HEADERS)).json()
        assert body["data"]["price"] == 84000.0
        assert len(body["data"]["lots"]) == 1
        assert body["data"]["summary"]["lot_count"] == 1

        body = await (await client.get("/v1/lots?all=1", headers=HEADERS)).json()
        assert body["data"][0]["tag"] == "initial"
        assert body["data"][0]["status"] == "active"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_trades_and_timing():
    client = await _client()
    try:
        body = await (await client.get("/v1/trades?limit=bad", headers=HEADERS)).json()
        assert [t["side"] for t in body["data"]] == ["buy"]

        body = await (await client.get("/v1/timing", headers=HEADERS)).json()
        assert "window_open" in body["data"]
        assert body["data"]["pending_actions"] == []
    finally:
        await client.close()
