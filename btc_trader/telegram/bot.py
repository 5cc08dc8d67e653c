"""Telegram Bot — setup and lifecycle management."""

from __future__ import annotations

import structlog
from telegram.ext import Application, CommandHandler

from btc_trader.shell.config import TelegramConfig
from btc_trader.telegram.commands import BotCommands

log = structlog.get_logger()


class TelegramBot:
    """Manages the Telegram bot application lifecycle."""

    def __init__(self, config: TelegramConfig, commands: BotCommands) -> None:
        self._config = config
        self._commands = commands
        self._app: Application | None = None

    async def start(self) -> None:
        """Initialize and start the Telegram bot."""
        if not self._config.enabled or not self._config.bot_token:
            log.info("telegram.disabled")
            return

        self._app = Application.builder().token(self._config.bot_token).build()

        handlers = {
            "start": self._commands.cmd_help,
            "help": self._commands.cmd_help,
            "status": self._commands.cmd_status,
            "profit": self._commands.cmd_profit,
            "lots": self._commands.cmd_lots,
            "trades": self._commands.cmd_trades,
            "timing": self._commands.cmd_timing,
            "selllot": self._commands.cmd_selllot,
            "buy_yes": self._commands.cmd_buy_yes,
            "sell_yes": self._commands.cmd_sell_yes,
            "no": self._commands.cmd_no,
            "pause": self._commands.cmd_pause,
            "resume": self._commands.cmd_resume,
        }
        for name, handler in handlers.items():
            self._app.add_handler(CommandHandler(name, handler))

        await self._app.initialize()
        await self._app.start()
        await self._app.updater.start_polling(drop_pending_updates=True)
        log.info("telegram.started")

    async def stop(self) -> None:
        """Gracefully stop the bot."""
        if self._app:
            await self._app.updater.stop()
            await self._app.stop()
            await self._app.shutdown()
            log.info("telegram.stopped")

    @property
    def app(self) -> Application | None:
        return self._app
