"""BTC Trader — main entry point. Wires all components and manages lifecycle.

Startup: load config -> open storage -> load ledgers -> connect exchange -> start Telegram -> API -> scheduler -> poll loop
Shutdown: stop poll loop (cancel pending actions) -> scheduler -> API -> Telegram -> exchange -> storage
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys
from datetime import timedelta
from pathlib import Path

import structlog
from aiohttp import web
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from btc_trader.api.server import create_app as create_api_app
from btc_trader.orchestrator.orchestrator import Orchestrator
from btc_trader.shell.coinbase import CoinbaseREST
from btc_trader.shell.config import Config, load_config
from btc_trader.shell.database import Database
from btc_trader.shell.fees import FeeModel
from btc_trader.shell.history import TradeHistory
from btc_trader.shell.paper import PaperExchange
from btc_trader.shell.store import build_stores
from btc_trader.telegram.bot import TelegramBot
from btc_trader.telegram.commands import BotCommands
from btc_trader.telegram.notifications import Notifier
from btc_trader.trading.alerts import PriceAlertMonitor
from btc_trader.trading.decision import DecisionEngine
from btc_trader.trading.ledger import LotLedger
from btc_trader.trading.profit import ProfitAccount
from btc_trader.trading.timing import TimingGate
from btc_trader.utils.logging import setup_logging

log = structlog.get_logger()


class BTCTrader:
    """Main application — owns every component instance."""

    def __init__(self) -> None:
        self._config: Config | None = None
        self._db: Database | None = None
        self._coinbase: CoinbaseREST | None = None
        self._exchange: CoinbaseREST | PaperExchange | None = None
        self._ledger: LotLedger | None = None
        self._profit: ProfitAccount | None = None
        self._history: TradeHistory | None = None
        self._gate: TimingGate | None = None
        self._notifier: Notifier | None = None
        self._orchestrator: Orchestrator | None = None
        self._telegram: TelegramBot | None = None
        self._scheduler: AsyncIOScheduler | None = None
        self._api_runner: web.AppRunner | None = None
        self._loop_task: asyncio.Task | None = None
        self._running = False

    async def start(self) -> None:
        """Full startup sequence. Returns when the polling loop ends."""
        log.info("trader.starting")

        # 1. Config
        self._config = config = load_config()
        setup_logging(config.log_level)
        log.info("config.loaded", mode=config.mode, product=config.exchange.product_id,
                 storage=config.storage, thresholds_loaded=config.thresholds.loaded)

        if not config.is_dry_run():
            ex = config.exchange
            if not (ex.api_key and ex.api_secret and ex.passphrase):
                raise RuntimeError(
                    "Live mode requires COINBASE_API_KEY, COINBASE_API_SECRET and COINBASE_PASSPHRASE in .env"
                )

        # 2. Storage
        if config.storage == "sqlite":
            self._db = Database(config.db_path)
            await self._db.connect()
        stores = build_stores(config.storage, config.data_dir, self._db)

        # 3. Exchange
        fee_model = FeeModel.from_config(config.fees)
        self._coinbase = CoinbaseREST(config.exchange)
        if config.is_dry_run():
            self._exchange = PaperExchange(self._coinbase, fee_model, config.paper.fiat_balance)
        else:
            self._exchange = self._coinbase

        # 4. Trading core
        self._ledger = LotLedger(
            stores["lots"], fee_model, timedelta(minutes=config.profit.lot_alert_cooldown_minutes),
        )
        self._profit = ProfitAccount(
            config.profit, stores["snapshots"], stores["profit_events"], stores["profit_state"],
        )
        self._history = TradeHistory(stores["trades"], config.timezone)
        await self._ledger.load()
        await self._profit.load()
        await self._history.load()

        self._gate = TimingGate(config.timing, config.polling, config.timezone)
        engine = DecisionEngine(config.buying, config.selling, config.safety, fee_model)
        alerts = PriceAlertMonitor.from_config(
            config.thresholds, config.buying.price_threshold, config.selling.price_threshold,
        )
        self._notifier = Notifier(config.telegram.chat_id, config.telegram.notifications)
        self._orchestrator = Orchestrator(
            config, self._coinbase, self._exchange, self._ledger, self._profit,
            self._gate, engine, alerts, self._history, self._notifier,
        )

        # 5. Simulated balances continue from the last snapshot, or start from the seed
        if config.is_dry_run():
            latest = self._profit.latest
            if latest:
                self._exchange.set_balances(latest.fiat_balance, latest.asset_balance)
            else:
                await self._orchestrator.reset_account(
                    config.paper.fiat_balance, config.paper.seed_asset_value,
                )

        # 6. Telegram
        commands = BotCommands(
            config, self._orchestrator, self._ledger, self._profit, self._history, self._gate,
        )
        self._telegram = TelegramBot(config.telegram, commands)
        await self._telegram.start()
        self._notifier.set_app(self._telegram.app)

        # 7. API server
        if config.api.enabled:
            api_app = create_api_app(
                config, self._orchestrator, self._ledger, self._profit, self._history, self._gate,
            )
            self._api_runner = web.AppRunner(api_app)
            await self._api_runner.setup()
            site = web.TCPSite(self._api_runner, config.api.host, config.api.port)
            await site.start()
            log.info("api.started", host=config.api.host, port=config.api.port)

        # 8. Scheduler (housekeeping only; polling has its own randomized loop)
        self._scheduler = AsyncIOScheduler(timezone=config.timezone)
        self._scheduler.add_job(
            self._orchestrator.send_daily_summary, CronTrigger(hour=0, minute=0),
            id="daily_summary", name="Daily Summary",
        )
        self._scheduler.add_job(
            self._orchestrator.check_ready_lots, IntervalTrigger(hours=1),
            id="lot_check", name="Lot Readiness Check",
        )
        self._scheduler.start()

        # 9. Notify
        await self._notifier.system_online(
            config.mode, self._profit.current_value(), len(self._ledger.open_lots()),
        )
        self._running = True
        log.info("trader.started", mode=config.mode, open_lots=len(self._ledger.open_lots()),
                 baseline=self._profit.baseline)

        self._loop_task = asyncio.create_task(self._orchestrator.run_forever())
        await self._loop_task

    async def stop(self) -> None:
        """Graceful shutdown sequence."""
        if not self._running:
            return
        log.info("trader.stopping")
        self._running = False

        if self._notifier:
            await self._notifier.system_shutdown()

        # 1. Poll loop and pending trade timers
        if self._orchestrator:
            cancelled = self._orchestrator.stop()
            log.info("trader.pending_cancelled", count=cancelled)
        if self._loop_task:
            await self._loop_task

        # 2. Scheduler
        if self._scheduler:
            self._scheduler.shutdown(wait=False)

        # 3. API server
        if self._api_runner:
            await self._api_runner.cleanup()

        # 4. Telegram
        if self._telegram:
            await self._telegram.stop()

        # 5. Exchange and storage
        if self._coinbase:
            await self._coinbase.close()
        if self._db:
            await self._db.close()

        log.info("trader.stopped")


LOCK_FILE = Path(__file__).resolve().parent.parent / "data" / "trader.pid"


def _acquire_lock() -> None:
    """Ensure only one instance runs. Write PID to lockfile."""
    current_pid = os.getpid()
    if LOCK_FILE.exists():
        try:
            old_pid = int(LOCK_FILE.read_text().strip())
        except (ValueError, OSError):
            log.warning("lockfile.corrupt")
            LOCK_FILE.unlink(missing_ok=True)
            old_pid = None

        if old_pid is not None and old_pid != current_pid:
            try:
                os.kill(old_pid, 0)
                print(f"ERROR: Another instance is running (PID {old_pid}). Exiting.", file=sys.stderr)
                sys.exit(1)
            except (ProcessLookupError, PermissionError):
                log.warning("lockfile.stale", old_pid=old_pid)

    LOCK_FILE.parent.mkdir(parents=True, exist_ok=True)
    LOCK_FILE.write_text(str(current_pid))


def _release_lock() -> None:
    """Remove PID lockfile on exit."""
    try:
        if LOCK_FILE.exists() and LOCK_FILE.read_text().strip() == str(os.getpid()):
            LOCK_FILE.unlink()
    except OSError as e:
        log.warning("lockfile.release_failed", error=str(e))


async def main() -> None:
    _acquire_lock()

    trader = BTCTrader()
    loop = asyncio.get_running_loop()
    stop_task = None

    def signal_handler():
        nonlocal stop_task
        if stop_task is None:
            stop_task = asyncio.create_task(trader.stop())

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await trader.start()
    finally:
        if stop_task is not None:
            await stop_task
        await trader.stop()
        _release_lock()


def run() -> None:
    """Entry point for the btc-trader console script."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
