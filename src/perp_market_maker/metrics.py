"""
Market Maker Status Reporting

Periodically logs a compact STATUS line built from the orchestrator's
status snapshot and mirrors it into the event journal.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .clock import Clock, SystemClock
from .journal import EventJournal
from .orchestrator import MarketMaker, MarketMakerStatus

logger = logging.getLogger(__name__)

_STATUS_LOG_INTERVAL_S = 10.0


def format_status(status: MarketMakerStatus) -> str:
    fair = f"${status.fair_price:.2f}" if status.fair_price is not None else "N/A"
    exp = status.exposure
    bid = f"{status.bid_size}@{status.bid_price}" if status.bid_price is not None else "-"
    ask = f"{status.ask_size}@{status.ask_price}" if status.ask_price is not None else "-"
    line = (
        f"STATUS | {status.state.value} | {status.exchange}:{status.symbol} "
        f"src={status.price_source} | fair={fair} | "
        f"pos={exp.side.value} ${exp.notional_usd:.2f} pnl=${exp.unrealized_pnl_usd:.2f} | "
        f"bid={bid} ask={ask} | margin={status.margin_ratio * 100:.1f}% | "
        f"close_mode={status.is_close_mode} | uptime={status.uptime_ms / 1000:.0f}s"
    )
    if status.pause_reason:
        line += f" | paused={status.pause_reason}"
    if status.error_count:
        line += f" | errors={status.error_count}"
    return line


class StatusReporter:
    def __init__(
        self,
        market_maker: MarketMaker,
        *,
        interval_s: float = _STATUS_LOG_INTERVAL_S,
        journal: Optional[EventJournal] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._mm = market_maker
        self._interval_s = interval_s
        self._journal = journal
        self._clock = clock or SystemClock()
        self._task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._log_loop(), name="mm-status")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    # ------------------------------------------------------------------
    # Periodic logger
    # ------------------------------------------------------------------

    def report(self) -> MarketMakerStatus:
        status = self._mm.get_status()
        logger.info(format_status(status))
        if self._journal is not None:
            self._journal.record_status(status.as_dict())
        return status

    async def _log_loop(self) -> None:
        while True:
            try:
                await self._clock.sleep(self._interval_s)
                self.report()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("Status log error: %s", exc)
