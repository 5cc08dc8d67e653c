"""Price alert tests: threshold rules, percentage moves and cooldowns."""

from datetime import datetime, timedelta, timezone

NOW = datetime(2025, 3, 3, 12, 0, tzinfo=timezone.utc)


def _thresholds():
    from btc_trader.shell.config import (
        PercentageAlertConfig,
        ThresholdRuleConfig,
        ThresholdsConfig,
    )
    from btc_trader.shell.contract import Priority

    return ThresholdsConfig(
        loaded=True,
        drop=[ThresholdRuleConfig(70000.0, "Buy zone", Priority.HIGH, 60.0),
              ThresholdRuleConfig(60000.0, "Crash", Priority.CRITICAL, 30.0)],
        rise=[ThresholdRuleConfig(90000.0, "Sell zone", Priority.HIGH, 60.0)],
        percentage=PercentageAlertConfig(enabled=True, significant_drop=5.0,
                                         significant_rise=5.0, cooldown_minutes=60.0),
    )


def test_defaults_when_thresholds_not_loaded():
    from btc_trader.shell.config import ThresholdsConfig
    from btc_trader.trading.alerts import AlertKind, PriceAlertMonitor

    monitor = PriceAlertMonitor.from_config(ThresholdsConfig(), 70000.0, 90000.0)
    kinds = [(r.kind, r.trigger) for r in monitor.rules]

    assert kinds == [(AlertKind.DROP, 70000.0), (AlertKind.RISE, 90000.0)]


def test_drop_rules_fire_for_every_crossed_level():
    from btc_trader.trading.alerts import PriceAlertMonitor

    monitor = PriceAlertMonitor.from_config(_thresholds(), 0, 0)
    alerts = monitor.evaluate(59000.0, 59500.0, NOW)

    assert sorted(a.rule.trigger for a in alerts) == [60000.0, 70000.0]
    assert "Crash" in next(a for a in alerts if a.rule.trigger == 60000.0).text()


def test_rule_cooldown_suppresses_repeats():
    from btc_trader.trading.alerts import PriceAlertMonitor

    monitor = PriceAlertMonitor.from_config(_thresholds(), 0, 0)

    assert len(monitor.evaluate(91000.0, 90900.0, NOW)) == 1
    assert monitor.evaluate(91500.0, 91000.0, NOW + timedelta(minutes=10)) == []
    assert len(monitor.evaluate(91500.0, 91000.0, NOW + timedelta(minutes=61))) == 1


def test_percentage_moves():
    from btc_trader.trading.alerts import AlertKind, PriceAlertMonitor

    monitor = PriceAlertMonitor.from_config(_thresholds(), 0, 0)

    rise = monitor.evaluate(84400.0, 80000.0, NOW)
    assert [a.rule.kind for a in rise] == [AlertKind.PERCENT_RISE]
    assert "+5.50%" in rise[0].text()

    drop = monitor.evaluate(79000.0, 84400.0, NOW)
    assert [a.rule.kind for a in drop] == [AlertKind.PERCENT_DROP]

    # No previous price: percentage rules cannot fire
    assert monitor.evaluate(80000.0, None, NOW + timedelta(hours=2)) == []
