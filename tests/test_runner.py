"""Tests for CLI parsing, runtime wiring and the run/shutdown sequence."""
from __future__ import annotations

import asyncio
import json
from decimal import Decimal

import pytest

from perp_market_maker import runner
from perp_market_maker.config_env import ExchangeName, PriceSource
from perp_market_maker.orchestrator import LifecycleState
from perp_market_maker.price_feed import VenueMidPriceFeed


class TestCli:
    def test_overrides_only_for_given_flags(self):
        args = runner._parser().parse_args(
            ["-e", "extended", "-s", "ETH", "--order-size", "250", "--warmup", "5"]
        )

        assert runner.cli_overrides(args) == {
            "exchange": "extended",
            "symbol": "ETH",
            "order_size_usd": "250",
            "warmup_seconds": "5",
        }

    def test_load_settings_applies_flags_over_env(self, monkeypatch):
        monkeypatch.setenv("MM_SPREAD_BPS", "30")
        monkeypatch.setenv("MM_SYMBOL", "SOL")

        settings = runner.load_settings(["-p", "binance", "--spread-bps", "20"])

        assert settings.price_source == PriceSource.ORACLE
        assert settings.spread_bps == Decimal("20")
        assert settings.symbol == "SOL"
        assert settings.exchange == ExchangeName.HYPERLIQUID

    def test_main_invalid_config_exits_2(self):
        assert runner.main(["--spread-bps", "4", "--take-profit-bps", "5"]) == 2

    def test_main_disabled_exits_0(self, monkeypatch):
        monkeypatch.setenv("MM_ENABLED", "false")
        assert runner.main([]) == 0

    def test_main_missing_credentials_exits_1(self, monkeypatch):
        monkeypatch.setenv("MM_JOURNAL_DIR", "")
        assert runner.main(["-e", "extended"]) == 1


class TestBuildRuntime:
    def test_wires_components(self, make_settings, fake_exchange, fake_feed):
        ctx = runner.build_runtime(make_settings(), exchange=fake_exchange, price_feed=fake_feed)

        assert ctx.exchange is fake_exchange
        assert ctx.price_feed is fake_feed
        assert ctx.journal is None
        assert ctx.market_maker.state == LifecycleState.STOPPED

    def test_venue_mid_feed_uses_exchange(self, make_settings, fake_exchange):
        ctx = runner.build_runtime(make_settings(price_source="venue_mid"), exchange=fake_exchange)
        assert isinstance(ctx.price_feed, VenueMidPriceFeed)

    def test_journal_created_when_dir_set(self, make_settings, fake_exchange, fake_feed, tmp_path):
        ctx = runner.build_runtime(
            make_settings(journal_dir=str(tmp_path)), exchange=fake_exchange, price_feed=fake_feed
        )
        assert ctx.journal is not None
        assert ctx.journal.path.parent == tmp_path
        ctx.journal.close()


def _events(path):
    return [json.loads(line) for line in path.read_text().splitlines() if line.strip()]


class TestRun:
    @pytest.mark.asyncio
    async def test_clean_run_and_shutdown(self, make_settings, fake_exchange, fake_feed, tmp_path):
        settings = make_settings(journal_dir=str(tmp_path))
        fake_feed.price_on_connect = Decimal("50000")
        ctx = runner.build_runtime(settings, exchange=fake_exchange, price_feed=fake_feed)
        shutdown = asyncio.Event()
        shutdown.set()

        code = await runner.run(settings, ctx=ctx, shutdown_event=shutdown, install_signals=False)

        assert code == 0
        assert ctx.market_maker.state == LifecycleState.STOPPED
        assert fake_exchange.disconnect_calls == 1
        events = _events(ctx.journal.path)
        assert events[0]["type"] == "run_start"
        assert "hl_private_key" not in events[0]["config"]
        assert events[-1]["type"] == "run_end"
        assert events[-1]["reason"] == "shutdown"

    @pytest.mark.asyncio
    async def test_setup_failure_exits_1(self, make_settings, fake_exchange, fake_feed, tmp_path):
        settings = make_settings(journal_dir=str(tmp_path))
        fake_exchange.markets = []
        ctx = runner.build_runtime(settings, exchange=fake_exchange, price_feed=fake_feed)

        code = await runner.run(settings, ctx=ctx, shutdown_event=asyncio.Event(), install_signals=False)

        assert code == 1
        assert fake_exchange.disconnect_calls == 1
        assert _events(ctx.journal.path)[-1]["reason"] == "setup_failure"

    @pytest.mark.asyncio
    async def test_shutdown_timeout_exits_1(self, make_settings, fake_exchange, fake_feed):
        settings = make_settings(shutdown_timeout_s=0.05)
        fake_feed.price_on_connect = Decimal("50000")

        async def _hang() -> None:
            await asyncio.sleep(10)

        fake_exchange.disconnect = _hang
        ctx = runner.build_runtime(settings, exchange=fake_exchange, price_feed=fake_feed)
        shutdown = asyncio.Event()
        shutdown.set()

        code = await runner.run(settings, ctx=ctx, shutdown_event=shutdown, install_signals=False)

        assert code == 1

    @pytest.mark.asyncio
    async def test_shutdown_signal_while_running(self, make_settings, fake_exchange, fake_feed):
        settings = make_settings()
        fake_feed.price_on_connect = Decimal("50000")
        ctx = runner.build_runtime(settings, exchange=fake_exchange, price_feed=fake_feed)
        shutdown = asyncio.Event()

        run_task = asyncio.create_task(
            runner.run(settings, ctx=ctx, shutdown_event=shutdown, install_signals=False)
        )
        for _ in range(20):
            await asyncio.sleep(0)
            if ctx.market_maker.state == LifecycleState.RUNNING:
                break
        assert ctx.market_maker.state == LifecycleState.RUNNING

        shutdown.set()
        assert await run_task == 0
        assert fake_exchange.cancel_all_calls >= 2
