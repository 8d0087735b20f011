"""
Process entry point.

Resolves settings (env + CLI overrides), wires the adapter, price feed,
orchestrator, status reporter and journal together, then runs until
SIGINT/SIGTERM.  Exit codes: 0 clean, 1 setup failure or shutdown timeout,
2 invalid configuration.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from .clock import Clock, SystemClock
from .config import MarketMakerSettings
from .errors import SetupFailure
from .exchange_factory import create_exchange, create_price_feed
from .journal import EventJournal
from .metrics import StatusReporter
from .orchestrator import MarketMaker
from .types import ExchangeAdapter, PriceFeed

logger = logging.getLogger(__name__)

# CLI flag -> settings field
_CLI_FIELDS = {
    "exchange": "exchange",
    "symbol": "symbol",
    "price_source": "price_source",
    "environment": "environment",
    "spread_bps": "spread_bps",
    "take_profit_bps": "take_profit_bps",
    "order_size": "order_size_usd",
    "close_threshold": "close_threshold_usd",
    "max_position": "max_position_usd",
    "warmup": "warmup_seconds",
    "log_level": "log_level",
}


@dataclass
class RuntimeContext:
    settings: MarketMakerSettings
    exchange: ExchangeAdapter
    price_feed: PriceFeed
    market_maker: MarketMaker
    reporter: StatusReporter
    journal: Optional[EventJournal] = None


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="perp-mm",
        description="Perpetual futures market maker. Flags override MM_* environment settings.",
    )
    parser.add_argument("-e", "--exchange", help="Venue to trade on (extended, hyperliquid)")
    parser.add_argument("-s", "--symbol", help="Trading symbol (e.g. BTC, ETH)")
    parser.add_argument(
        "-p",
        "--price-source",
        dest="price_source",
        help="Fair price source (oracle/binance, venue_mid)",
    )
    parser.add_argument("--environment", help="testnet or mainnet")
    parser.add_argument("--spread-bps", dest="spread_bps", help="Quoted spread in basis points")
    parser.add_argument(
        "--take-profit-bps", dest="take_profit_bps", help="Close-mode distance from fair in bps"
    )
    parser.add_argument("--order-size", dest="order_size", help="Order size in USD")
    parser.add_argument(
        "--close-threshold", dest="close_threshold", help="Close mode threshold in USD"
    )
    parser.add_argument("--max-position", dest="max_position", help="Maximum position in USD")
    parser.add_argument("--warmup", help="Warmup period in seconds")
    parser.add_argument("--log-level", dest="log_level", help="Log level (default INFO)")
    return parser


def cli_overrides(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for flag, field_name in _CLI_FIELDS.items():
        value = getattr(args, flag, None)
        if value is not None:
            overrides[field_name] = value
    return overrides


def load_settings(argv: Optional[list[str]] = None) -> MarketMakerSettings:
    args = _parser().parse_args(argv)
    return MarketMakerSettings(**cli_overrides(args))


def _configure_logging(settings: MarketMakerSettings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stdout,
    )


def _log_startup(settings: MarketMakerSettings) -> None:
    logger.info(
        "Market maker starting: exchange=%s symbol=%s env=%s source=%s",
        settings.exchange.value,
        settings.symbol,
        settings.environment.value,
        settings.price_source.value,
    )
    logger.info(
        "  spread=%sbps take_profit=%sbps size=$%s close=$%s max=$%s warmup=%ss min_margin=%s",
        settings.spread_bps,
        settings.take_profit_bps,
        settings.order_size_usd,
        settings.close_threshold_usd,
        settings.max_position_usd,
        settings.warmup_seconds,
        settings.min_margin_ratio,
    )


def build_runtime(
    settings: MarketMakerSettings,
    *,
    clock: Optional[Clock] = None,
    exchange: Optional[ExchangeAdapter] = None,
    price_feed: Optional[PriceFeed] = None,
) -> RuntimeContext:
    clock = clock or SystemClock()
    exchange = exchange or create_exchange(settings)
    price_feed = price_feed or create_price_feed(settings, exchange, clock=clock)
    journal = None
    if settings.journal_dir:
        journal = EventJournal(
            settings.symbol,
            Path(settings.journal_dir),
            max_size_mb=settings.journal_max_size_mb,
        )
    market_maker = MarketMaker(settings, exchange, price_feed, clock=clock, journal=journal)
    reporter = StatusReporter(
        market_maker,
        interval_s=settings.status_log_interval_s,
        journal=journal,
        clock=clock,
    )
    return RuntimeContext(
        settings=settings,
        exchange=exchange,
        price_feed=price_feed,
        market_maker=market_maker,
        reporter=reporter,
        journal=journal,
    )


def _install_signal_handlers(shutdown_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def _on_signal(sig: signal.Signals) -> None:
        if shutdown_event.is_set():
            logger.warning("Received %s again; shutdown already in progress", sig.name)
            return
        logger.info("Received %s, shutting down...", sig.name)
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _on_signal, sig)


async def _shutdown(ctx: RuntimeContext) -> None:
    await ctx.reporter.stop()
    await ctx.market_maker.stop()


async def run(
    settings: MarketMakerSettings,
    *,
    ctx: Optional[RuntimeContext] = None,
    shutdown_event: Optional[asyncio.Event] = None,
    install_signals: bool = True,
) -> int:
    """Run until shutdown is requested. Returns the process exit code."""
    _log_startup(settings)
    if ctx is None:
        try:
            ctx = build_runtime(settings)
        except SetupFailure as exc:
            logger.error("%s. Exiting.", exc)
            return 1

    shutdown_event = shutdown_event or asyncio.Event()
    if install_signals:
        _install_signal_handlers(shutdown_event)
    if ctx.journal is not None:
        ctx.journal.record_run_start(exchange=settings.exchange.value, config=settings.sanitized())

    exit_code = 0
    reason = "shutdown"
    start_task = asyncio.create_task(ctx.market_maker.start(), name="mm-start")
    shutdown_wait = asyncio.create_task(shutdown_event.wait(), name="mm-shutdown-wait")
    try:
        done, _ = await asyncio.wait(
            {start_task, shutdown_wait}, return_when=asyncio.FIRST_COMPLETED
        )
        if start_task in done:
            exc = start_task.exception()
            if exc is not None:
                logger.error("Failed to start market maker: %s", exc)
                exit_code = 1
                reason = "setup_failure"
            else:
                logger.info("Market maker started successfully")
                await ctx.reporter.start()
                await shutdown_event.wait()
    finally:
        shutdown_wait.cancel()
        try:
            await asyncio.wait_for(_shutdown(ctx), timeout=settings.shutdown_timeout_s)
        except asyncio.TimeoutError:
            logger.critical(
                "SHUTDOWN TIMEOUT: stop sequence exceeded %ss for %s",
                settings.shutdown_timeout_s,
                settings.symbol,
            )
            exit_code = 1
            reason = "shutdown_timeout"
        if not start_task.done():
            start_task.cancel()
        await asyncio.gather(start_task, shutdown_wait, return_exceptions=True)
        if ctx.journal is not None:
            ctx.journal.record_run_end(
                reason=reason, stats={"status": ctx.market_maker.get_status().as_dict()}
            )
            ctx.journal.close()
    logger.info("Shutdown complete")
    return exit_code


def main(argv: Optional[list[str]] = None) -> int:
    try:
        settings = load_settings(argv)
    except ValidationError as exc:
        logging.basicConfig(stream=sys.stderr)
        logger.error("Invalid configuration:\n%s", exc)
        return 2

    _configure_logging(settings)
    if not settings.enabled:
        logger.warning("MM_ENABLED is false; exiting")
        return 0
    try:
        return asyncio.run(run(settings))
    except KeyboardInterrupt:
        return 130
