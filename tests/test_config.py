"""Config loading tests: defaults, TOML overrides, secrets and validation."""

import tempfile
from pathlib import Path

import pytest


def _write(directory: Path, name: str, body: str) -> None:
    (directory / name).write_text(body)


def test_defaults_without_files(monkeypatch):
    from btc_trader.shell.config import load_config

    monkeypatch.setenv("COINBASE_API_KEY", "key")
    monkeypatch.setenv("TELEGRAM_CHAT_ID", "42")
    with tempfile.TemporaryDirectory() as tmp:
        config = load_config(Path(tmp))

    assert config.mode == "dry_run"
    assert config.is_dry_run()
    assert config.exchange.product_id == "BTC-GBP"
    assert config.fees.withdrawal_fee == 0.15
    assert config.paper.fiat_balance == 50.0
    assert config.timing.emergency.price_jump_threshold == 0.15
    assert config.thresholds.loaded is False
    assert config.exchange.api_key == "key"
    assert config.telegram.chat_id == "42"
    assert config.db_path.endswith("trader.db")


def test_settings_override_nested_sections():
    from btc_trader.shell.config import load_config

    with tempfile.TemporaryDirectory() as tmp:
        _write(Path(tmp), "settings.toml", """
[general]
mode = "live"
storage = "json"
data_dir = "/tmp/btc-trader-test"

[buying]
price_threshold = 65000.0
support_levels = [60000.0, 55000.0]

[timing]
start_hour = 9

[timing.hesitation]
chance = 0.5

[telegram]
allowed_user_ids = [1, 2]

[telegram.notifications]
cycle_complete = true

[api]
enabled = true
port = 9000
""")
        config = load_config(Path(tmp))

    assert config.mode == "live"
    assert config.storage == "json"
    assert config.data_dir == "/tmp/btc-trader-test"
    assert config.buying.price_threshold == 65000.0
    assert config.buying.support_levels == [60000.0, 55000.0]
    assert config.buying.max_buy_amount == 50.0
    assert config.timing.start_hour == 9
    assert config.timing.hesitation.chance == 0.5
    assert config.timing.emergency.enabled is True
    assert config.telegram.allowed_user_ids == [1, 2]
    assert config.telegram.notifications.cycle_complete is True
    assert config.telegram.notifications.trade_executed is True
    assert config.api.port == 9000


def test_thresholds_loaded_and_sorted():
    from btc_trader.shell.config import load_thresholds
    from btc_trader.shell.contract import Priority

    with tempfile.TemporaryDirectory() as tmp:
        _write(Path(tmp), "thresholds.toml", """
[[drop]]
price = 60000
priority = "critical"

[[drop]]
price = 70000
message = "Buy zone"

[[rise]]
price = 95000

[[rise]]
price = 90000

[percentage]
enabled = true
significant_drop = 4.0
""")
        thresholds = load_thresholds(Path(tmp) / "thresholds.toml")

    assert thresholds.loaded
    assert [r.price for r in thresholds.drop] == [70000.0, 60000.0]
    assert [r.price for r in thresholds.rise] == [90000.0, 95000.0]
    assert thresholds.drop[1].priority == Priority.CRITICAL
    assert thresholds.drop[0].message == "Buy zone"
    assert thresholds.percentage.enabled
    assert thresholds.percentage.significant_drop == 4.0
    assert thresholds.percentage.significant_rise == 5.0


def test_malformed_thresholds_fall_back():
    from btc_trader.shell.config import load_thresholds

    with tempfile.TemporaryDirectory() as tmp:
        _write(Path(tmp), "thresholds.toml", "[[drop]]\nmessage = 'no price'\n")
        assert load_thresholds(Path(tmp) / "thresholds.toml").loaded is False

        _write(Path(tmp), "thresholds.toml", "this is = = not toml")
        assert load_thresholds(Path(tmp) / "thresholds.toml").loaded is False

        assert load_thresholds(Path(tmp) / "missing.toml").loaded is False


@pytest.mark.parametrize("section,body,message", [
    ("general", 'mode = "paper"', "mode must be"),
    ("buying", "min_buy_amount = 100.0", "min_buy_amount"),
    ("selling", "max_sell_amount = 0.5", "safety.max_trade_amount"),
    ("timing", "start_hour = 30", "timing hours"),
    ("profit", 'milestone_mode = "weekly"', "milestone_mode"),
    ("general", 'timezone = "Mars/Olympus"', "Invalid timezone"),
    ("exchange", 'product_id = "BTCGBP"', "product_id"),
    ("safety", "approval_timeout_minutes = 0", "approval_timeout_minutes"),
])
def test_validation_rejects_bad_values(section, body, message):
    from btc_trader.shell.config import load_config

    with tempfile.TemporaryDirectory() as tmp:
        _write(Path(tmp), "settings.toml", f"[{section}]\n{body}\n")
        with pytest.raises(ValueError, match=message):
            load_config(Path(tmp))
