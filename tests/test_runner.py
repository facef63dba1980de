"""Tests for settings parsing and the streaming runner lifecycle."""

import asyncio
from unittest.mock import patch

import pytest

from pricefeed.config import Settings
from pricefeed.providers.finnhub_ws import ConnectionState
from pricefeed.streaming.broadcast import BroadcastHub
from pricefeed.streaming.runner import StreamingRunner


def make_settings(tmp_path, **overrides):
    values = dict(
        sqlite_path=str(tmp_path / "prices.db"),
        finnhub_api_key=None,
        monitor_interval_seconds=0.01,
        stale_threshold_seconds=30,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


class TestSettings:
    def test_placeholder_key_is_invalid(self, tmp_path):
        assert not make_settings(tmp_path).has_valid_api_key()
        assert not make_settings(tmp_path, finnhub_api_key="  ").has_valid_api_key()
        assert not make_settings(tmp_path, finnhub_api_key="your_finnhub_api_key_here").has_valid_api_key()
        assert make_settings(tmp_path, finnhub_api_key="abc123").has_valid_api_key()

    def test_defaults(self, tmp_path):
        settings = make_settings(tmp_path)
        assert settings.backoff_floor_ms == 1000
        assert settings.backoff_ceiling_ms == 15000
        assert settings.broadcast_send_timeout_seconds == 2.0

    def test_cors_origins(self, tmp_path):
        settings = make_settings(tmp_path, cors_origins="http://a.test, ,http://b.test")
        assert settings.get_cors_origins() == ["http://a.test", "http://b.test"]

    def test_env_override(self, tmp_path, monkeypatch):
        monkeypatch.setenv("FINNHUB_API_KEY", "from-env")
        monkeypatch.setenv("STALE_THRESHOLD_SECONDS", "45")
        settings = Settings(_env_file=None)
        assert settings.finnhub_api_key == "from-env"
        assert settings.stale_threshold_seconds == 45.0


@pytest.mark.asyncio
async def test_runner_without_key_keeps_feed_idle(tmp_path, store):
    runner = StreamingRunner(make_settings(tmp_path), store, BroadcastHub())

    with patch("pricefeed.providers.finnhub_ws.websockets.connect") as connect:
        await runner.start()
        await asyncio.sleep(0.05)
        await runner.stop()

    connect.assert_not_called()
    assert runner.feed.config_error is not None
    # Snapshot queries need the same token, so the monitor runs without a source
    assert runner.monitor.snapshots is None
    assert runner.feed.state == ConnectionState.TERMINATED


@pytest.mark.asyncio
async def test_runner_stop_cancels_everything(tmp_path, store):
    settings = make_settings(
        tmp_path,
        finnhub_api_key="abc123",
        backoff_floor_ms=5,
        backoff_ceiling_ms=20,
        monitor_interval_seconds=60,  # keep candle queries off the network
    )
    runner = StreamingRunner(settings, store, BroadcastHub())

    with patch(
        "pricefeed.providers.finnhub_ws.websockets.connect",
        side_effect=ConnectionRefusedError("refused"),
    ) as connect:
        await runner.start()
        await asyncio.sleep(0.05)
        await runner.stop()
        attempts = connect.call_count
        await asyncio.sleep(0.05)

    assert attempts >= 2  # transient errors were retried
    assert connect.call_count == attempts
    assert runner.feed.reconnect_pending is False
    assert runner.monitor._task is None


def test_runner_status_shape(tmp_path):
    from pricefeed.storage.sqlite import HourlyAverageStore

    runner = StreamingRunner(make_settings(tmp_path), HourlyAverageStore(str(tmp_path / "x.db")), BroadcastHub())
    status = runner.status()
    assert status["feed"]["state"] == "idle"
    assert set(status["pairs"]) == {"ETH/USDC", "ETH/USDT", "ETH/BTC"}
    assert status["subscribers"] == 0
