"""
Tests for YAML config loading and environment overrides.
"""

from pathlib import Path

import pytest

from dataflow.feeds import BinanceFeed, PipelineFeed, build_feed
from engine.config import ConfigLoader, SyncConfig

SHIPPED_CONFIG = Path(__file__).resolve().parent.parent / "config" / "market_sync.yaml"

ENV_VARS = [
    "MARKET_FEED",
    "BINANCE_REST_URL",
    "BINANCE_WS_URL",
    "DATABASE_URL",
    "CHART_CAPACITY",
    "TICKER_SYMBOLS",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_missing_file_gives_defaults(tmp_path):
    config = ConfigLoader(tmp_path / "nope.yaml").load()

    assert config.feed == "binance"
    assert config.chart.symbol == "BTCUSDT"
    assert config.chart.interval == "15m"
    assert config.chart.capacity == 100
    assert config.snapshot.limit == 100
    assert config.tickers.symbols[:2] == ["BTCUSDT", "ETHUSDT"]
    assert len(config.tickers.symbols) == 8


def test_shipped_config_loads():
    config = ConfigLoader(SHIPPED_CONFIG).load()

    assert config == SyncConfig()


def test_partial_file_keeps_other_defaults(tmp_path):
    path = tmp_path / "sync.yaml"
    path.write_text(
        "feed: nats\n"
        "chart:\n"
        "  symbol: ethusdt\n"
        "  interval: 1h\n"
        "  fallback_poll_interval: null\n"
        "tickers:\n"
        "  symbols: [btcusdt, ' solusdt ']\n"
    )

    config = ConfigLoader(path).load()

    assert config.feed == "nats"
    assert config.chart.symbol == "ETHUSDT"
    assert config.chart.fallback_poll_interval is None
    assert config.tickers.symbols == ["BTCUSDT", "SOLUSDT"]
    assert config.backoff.max_delay == 30.0


@pytest.mark.parametrize(
    "content",
    [
        "chart:\n  interval: 2m\n",
        "chart:\n  capacity: 0\n",
        "feed: kraken\n",
        "- just\n- a list\n",
        "chart: [unclosed\n",
    ],
)
def test_invalid_files_raise_value_error(tmp_path, content):
    path = tmp_path / "bad.yaml"
    path.write_text(content)

    with pytest.raises(ValueError):
        ConfigLoader(path).load()


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("MARKET_FEED", "NATS")
    monkeypatch.setenv("DATABASE_URL", "postgresql://db/market")
    monkeypatch.setenv("CHART_CAPACITY", "250")
    monkeypatch.setenv("TICKER_SYMBOLS", "btcusdt,ethusdt")

    config = SyncConfig.from_env()

    assert config.feed == "nats"
    assert config.timescale.database_url == "postgresql://db/market"
    assert config.chart.capacity == 250
    assert config.tickers.symbols == ["BTCUSDT", "ETHUSDT"]


def test_invalid_env_override(monkeypatch):
    monkeypatch.setenv("CHART_CAPACITY", "lots")

    with pytest.raises(ValueError):
        SyncConfig.from_env()


def test_backoff_settings_build_policy():
    policy = SyncConfig().backoff.to_policy()

    assert policy.nominal_delay(0) == 1.0
    assert policy.nominal_delay(10) == 30.0
    assert policy.degraded_after == 5


def test_build_feed_picks_upstream():
    assert isinstance(build_feed(SyncConfig()), BinanceFeed)
    assert isinstance(build_feed(SyncConfig(feed="nats")), PipelineFeed)
