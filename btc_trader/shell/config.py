"""Configuration loading — merges settings.toml, thresholds.toml, and .env."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import structlog
from dotenv import load_dotenv

from btc_trader.shell.contract import Priority

log = structlog.get_logger()

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
CONFIG_DIR = PROJECT_ROOT / "config"


@dataclass
class ExchangeConfig:
    rest_url: str = "https://api.exchange.coinbase.com"
    product_id: str = "BTC-GBP"
    api_key: str = ""
    api_secret: str = ""
    passphrase: str = ""
    fill_timeout_seconds: float = 30.0


@dataclass
class FeeConfig:
    trading_fee: float = 0.005      # taker fee as decimal
    spread: float = 0.0025          # estimated bid/ask cost as decimal
    withdrawal_fee: float = 0.15    # fixed fiat amount per sale


@dataclass
class PaperConfig:
    fiat_balance: float = 50.0
    seed_asset_value: float = 200.0  # fiat worth of BTC held at reset


@dataclass
class BuyingConfig:
    enabled: bool = True
    price_threshold: float = 70000.0
    percentage_drop: float = 5.0
    max_buy_amount: float = 50.0
    min_buy_amount: float = 10.0
    randomize_amount: bool = True
    max_daily_buying: float = 100.0
    max_daily_buy_trades: int = 5
    min_account_balance: float = 10.0
    min_gap_between_buys_minutes: float = 60.0
    max_btc_holding: float = 0.05
    post_sell_drop_threshold: float = 10.0
    support_level_buying: bool = False
    support_levels: list[float] = field(default_factory=list)
    support_tolerance_pct: float = 1.0


@dataclass
class SellingConfig:
    enabled: bool = True
    price_threshold: float = 90000.0
    profit_target: float = 10.0       # net fiat profit after estimated fees
    percentage_gain: float = 5.0
    stop_loss_enabled: bool = False
    stop_loss_percent: float = 10.0
    min_sell_amount: float = 0.001
    max_sell_amount: float = 0.01
    randomize_amount: bool = True
    max_daily_sell_trades: int = 5


@dataclass
class SafetyConfig:
    require_manual_approval: bool = False
    require_buy_approval: bool = True     # per side, only when manual approval is on
    require_sell_approval: bool = True
    approval_timeout_minutes: float = 15.0
    cooldown_between_trades_minutes: float = 5.0
    max_daily_trades: int = 10
    max_trade_amount: float = 0.01    # hard BTC cap per sell order


@dataclass
class PollingConfig:
    interval_seconds: float = 300.0
    random_enabled: bool = False
    min_interval_seconds: float = 180.0
    max_interval_seconds: float = 900.0
    min_gap_seconds: float = 120.0


@dataclass
class EmergencyConfig:
    enabled: bool = True
    price_jump_threshold: float = 0.15
    allow_sell_only: bool = True


@dataclass
class HesitationConfig:
    enabled: bool = True
    chance: float = 0.15
    min_seconds: float = 600.0
    max_seconds: float = 3600.0


@dataclass
class TimingConfig:
    enabled: bool = True
    min_delay_seconds: float = 300.0
    max_delay_seconds: float = 1800.0
    trading_hours_enabled: bool = True
    start_hour: int = 7
    end_hour: int = 23
    avoid_weekends: bool = True
    reschedule_backoff_seconds: float = 3600.0
    emergency: EmergencyConfig = field(default_factory=EmergencyConfig)
    hesitation: HesitationConfig = field(default_factory=HesitationConfig)


@dataclass
class ProfitConfig:
    alert_threshold: float = 10.0
    milestone_mode: str = "progressive"    # progressive | fixed | static
    milestones: list[float] = field(default_factory=lambda: [10, 25, 50, 100, 250, 500, 1000])
    fixed_increment: float = 10.0
    static_amount: float = 10.0
    lot_profit_target: float = 10.0
    lot_alert_cooldown_minutes: float = 60.0


@dataclass
class ThresholdRuleConfig:
    price: float
    message: str = ""
    priority: Priority = Priority.MEDIUM
    cooldown_minutes: float = 60.0


@dataclass
class PercentageAlertConfig:
    enabled: bool = False
    significant_drop: float = 5.0
    significant_rise: float = 5.0
    cooldown_minutes: float = 60.0


@dataclass
class ThresholdsConfig:
    """Multi-threshold price alerts. `loaded` is False when the defaults were used."""
    loaded: bool = False
    drop: list[ThresholdRuleConfig] = field(default_factory=list)
    rise: list[ThresholdRuleConfig] = field(default_factory=list)
    percentage: PercentageAlertConfig = field(default_factory=PercentageAlertConfig)


@dataclass
class NotificationConfig:
    """Which events send Telegram messages. Everything is still logged."""
    trade_executed: bool = True
    approval_required: bool = True
    price_alert: bool = True
    milestone_reached: bool = True
    profit_alert: bool = True
    lots_ready: bool = True
    system_online: bool = True
    system_shutdown: bool = True
    system_error: bool = True
    daily_summary: bool = True
    # High-frequency, default off for Telegram
    trade_deferred: bool = False
    cycle_complete: bool = False


@dataclass
class TelegramConfig:
    enabled: bool = True
    bot_token: str = ""
    chat_id: str = ""
    allowed_user_ids: list[int] = field(default_factory=list)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)


@dataclass
class ApiConfig:
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 8080


@dataclass
class Config:
    mode: str = "dry_run"
    timezone: str = "Europe/London"
    log_level: str = "INFO"
    storage: str = "sqlite"            # sqlite | json
    data_dir: str = ""
    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    fees: FeeConfig = field(default_factory=FeeConfig)
    paper: PaperConfig = field(default_factory=PaperConfig)
    buying: BuyingConfig = field(default_factory=BuyingConfig)
    selling: SellingConfig = field(default_factory=SellingConfig)
    safety: SafetyConfig = field(default_factory=SafetyConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    timing: TimingConfig = field(default_factory=TimingConfig)
    profit: ProfitConfig = field(default_factory=ProfitConfig)
    thresholds: ThresholdsConfig = field(default_factory=ThresholdsConfig)
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    api: ApiConfig = field(default_factory=ApiConfig)

    def is_dry_run(self) -> bool:
        return self.mode == "dry_run"

    @property
    def db_path(self) -> str:
        return str(Path(self.data_dir) / "trader.db")


def _merge(target, section: dict) -> None:
    """Copy known keys from a TOML table onto a dataclass, leaving defaults for the rest."""
    for key in vars(target):
        if key in section and not isinstance(section[key], dict):
            setattr(target, key, section[key])


def load_config(config_dir: Path | None = None) -> Config:
    """Load configuration from TOML files and environment variables."""
    config_dir = config_dir or CONFIG_DIR
    load_dotenv(PROJECT_ROOT / ".env")

    config = Config()
    config.data_dir = str(PROJECT_ROOT / "data")

    settings_path = config_dir / "settings.toml"
    if settings_path.exists():
        with open(settings_path, "rb") as f:
            settings = tomllib.load(f)

        general = settings.get("general", {})
        config.mode = general.get("mode", config.mode)
        config.timezone = general.get("timezone", config.timezone)
        config.log_level = general.get("log_level", config.log_level)
        config.storage = general.get("storage", config.storage)
        config.data_dir = general.get("data_dir", config.data_dir)

        _merge(config.exchange, settings.get("exchange", {}))
        _merge(config.fees, settings.get("fees", {}))
        _merge(config.paper, settings.get("paper", {}))
        _merge(config.buying, settings.get("buying", {}))
        _merge(config.selling, settings.get("selling", {}))
        _merge(config.safety, settings.get("safety", {}))
        _merge(config.polling, settings.get("polling", {}))
        _merge(config.profit, settings.get("profit", {}))

        timing = settings.get("timing", {})
        _merge(config.timing, timing)
        _merge(config.timing.emergency, timing.get("emergency", {}))
        _merge(config.timing.hesitation, timing.get("hesitation", {}))

        tg = settings.get("telegram", {})
        config.telegram.enabled = tg.get("enabled", config.telegram.enabled)
        config.telegram.allowed_user_ids = tg.get("allowed_user_ids", config.telegram.allowed_user_ids)
        _merge(config.telegram.notifications, tg.get("notifications", {}))

        _merge(config.api, settings.get("api", {}))

    config.thresholds = load_thresholds(config_dir / "thresholds.toml")

    # Environment variables (secrets)
    config.exchange.api_key = os.getenv("COINBASE_API_KEY", "")
    config.exchange.api_secret = os.getenv("COINBASE_API_SECRET", "")
    config.exchange.passphrase = os.getenv("COINBASE_PASSPHRASE", "")
    config.telegram.bot_token = os.getenv("TELEGRAM_BOT_TOKEN", "")
    config.telegram.chat_id = os.getenv("TELEGRAM_CHAT_ID", "")

    _validate_config(config)

    return config


def _parse_rule(raw: dict) -> ThresholdRuleConfig:
    return ThresholdRuleConfig(
        price=float(raw["price"]),
        message=str(raw.get("message", "")),
        priority=Priority(raw.get("priority", "medium")),
        cooldown_minutes=float(raw.get("cooldown_minutes", 60.0)),
    )


def load_thresholds(path: Path) -> ThresholdsConfig:
    """Load multi-threshold alert rules.

    A missing or malformed file never fails startup: the monitor falls back
    to single-threshold alerts derived from the buy/sell thresholds.
    """
    if not path.exists():
        log.warning("config.thresholds_missing", path=str(path))
        return ThresholdsConfig()

    try:
        with open(path, "rb") as f:
            raw = tomllib.load(f)
        thresholds = ThresholdsConfig(
            loaded=True,
            drop=sorted((_parse_rule(r) for r in raw.get("drop", [])), key=lambda r: -r.price),
            rise=sorted((_parse_rule(r) for r in raw.get("rise", [])), key=lambda r: r.price),
        )
        _merge(thresholds.percentage, raw.get("percentage", {}))
    except (tomllib.TOMLDecodeError, KeyError, ValueError, TypeError) as e:
        log.warning("config.thresholds_malformed", path=str(path), error=str(e))
        return ThresholdsConfig()

    return thresholds


def _validate_config(config: Config) -> None:
    """Validate config values are within sane ranges."""
    from zoneinfo import ZoneInfo

    errors = []

    if config.mode not in ("dry_run", "live"):
        errors.append(f"mode must be 'dry_run' or 'live', got '{config.mode}'")
    if config.storage not in ("sqlite", "json"):
        errors.append(f"storage must be 'sqlite' or 'json', got '{config.storage}'")

    fees = config.fees
    if not (0 <= fees.trading_fee < 1):
        errors.append(f"fees.trading_fee must be 0-1, got {fees.trading_fee}")
    if not (0 <= fees.spread < 1):
        errors.append(f"fees.spread must be 0-1, got {fees.spread}")
    if fees.withdrawal_fee < 0:
        errors.append(f"fees.withdrawal_fee must be >= 0, got {fees.withdrawal_fee}")

    buying = config.buying
    if buying.max_buy_amount <= 0:
        errors.append(f"buying.max_buy_amount must be > 0, got {buying.max_buy_amount}")
    if buying.min_buy_amount > buying.max_buy_amount:
        errors.append(f"buying.min_buy_amount ({buying.min_buy_amount}) > max_buy_amount ({buying.max_buy_amount})")
    if buying.max_daily_buy_trades < 1:
        errors.append(f"buying.max_daily_buy_trades must be >= 1, got {buying.max_daily_buy_trades}")
    if buying.support_tolerance_pct < 0:
        errors.append(f"buying.support_tolerance_pct must be >= 0, got {buying.support_tolerance_pct}")

    selling = config.selling
    if selling.min_sell_amount <= 0:
        errors.append(f"selling.min_sell_amount must be > 0, got {selling.min_sell_amount}")
    if selling.min_sell_amount > selling.max_sell_amount:
        errors.append(f"selling.min_sell_amount ({selling.min_sell_amount}) > max_sell_amount ({selling.max_sell_amount})")
    if selling.max_sell_amount > config.safety.max_trade_amount:
        errors.append(f"selling.max_sell_amount ({selling.max_sell_amount}) > safety.max_trade_amount ({config.safety.max_trade_amount})")

    if config.safety.max_daily_trades < 1:
        errors.append(f"safety.max_daily_trades must be >= 1, got {config.safety.max_daily_trades}")
    if config.safety.approval_timeout_minutes <= 0:
        errors.append(f"safety.approval_timeout_minutes must be > 0, got {config.safety.approval_timeout_minutes}")

    polling = config.polling
    if polling.interval_seconds <= 0:
        errors.append(f"polling.interval_seconds must be > 0, got {polling.interval_seconds}")
    if polling.min_interval_seconds > polling.max_interval_seconds:
        errors.append("polling.min_interval_seconds > polling.max_interval_seconds")

    timing = config.timing
    if not (0 <= timing.start_hour <= 23 and 0 <= timing.end_hour <= 24):
        errors.append(f"timing hours out of range: {timing.start_hour}-{timing.end_hour}")
    if timing.min_delay_seconds > timing.max_delay_seconds:
        errors.append("timing.min_delay_seconds > timing.max_delay_seconds")
    if not (0 <= timing.hesitation.chance <= 1):
        errors.append(f"timing.hesitation.chance must be 0-1, got {timing.hesitation.chance}")
    if timing.hesitation.min_seconds > timing.hesitation.max_seconds:
        errors.append("timing.hesitation.min_seconds > timing.hesitation.max_seconds")
    if timing.emergency.price_jump_threshold <= 0:
        errors.append(f"timing.emergency.price_jump_threshold must be > 0, got {timing.emergency.price_jump_threshold}")

    profit = config.profit
    if profit.milestone_mode not in ("progressive", "fixed", "static"):
        errors.append(f"profit.milestone_mode must be progressive/fixed/static, got '{profit.milestone_mode}'")
    if profit.fixed_increment <= 0:
        errors.append(f"profit.fixed_increment must be > 0, got {profit.fixed_increment}")

    if config.api.enabled and not (1 <= config.api.port <= 65535):
        errors.append(f"api.port must be 1-65535, got {config.api.port}")

    try:
        ZoneInfo(config.timezone)
    except (KeyError, Exception):
        errors.append(f"Invalid timezone: '{config.timezone}'")

    if "-" not in config.exchange.product_id:
        errors.append(f"exchange.product_id must look like 'BTC-GBP', got '{config.exchange.product_id}'")

    if errors:
        raise ValueError("Config validation failed:\n  " + "\n  ".join(errors))
