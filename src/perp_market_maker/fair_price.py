"""
Fair Price Estimator

Smooths a stream of reference prices with a time-weighted EMA:

    alpha = 1 - exp(-dt / window_ms)
    ema   = ema + alpha * (price - ema)

so irregularly spaced samples carry weight proportional to the time they
cover.  The first sample seeds the EMA.  Nothing is published until the
warm-up period since ``connect()`` has elapsed and at least one sample has
arrived.
"""
from __future__ import annotations

import logging
import math
from decimal import Decimal
from typing import Optional

from .clock import Clock, SystemClock
from .types import FairPriceState, PriceFeed

logger = logging.getLogger(__name__)


class FairPriceEstimator:
    def __init__(
        self,
        feed: PriceFeed,
        *,
        window_ms: float,
        warmup_ms: float,
        max_age_ms: float = 0,
        clock: Optional[Clock] = None,
    ) -> None:
        if window_ms <= 0:
            raise ValueError("window_ms must be positive")
        self._feed = feed
        self._window_ms = float(window_ms)
        self._warmup_ms = max(0.0, float(warmup_ms))
        self._max_age_ms = max(0.0, float(max_age_ms))
        self._clock = clock or SystemClock()

        self._ema: Optional[float] = None
        self._last_sample_ts: Optional[float] = None
        self._last_arrival_ms: Optional[float] = None
        self._count = 0
        self._connect_time_ms: Optional[float] = None
        self._connected = False
        self._registered = False
        self._stale_logged = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        self._connect_time_ms = self._clock.now_ms()
        if not self._registered:
            self._feed.on_sample(self.on_sample)
            self._registered = True
        await self._feed.connect()
        self._connected = True
        logger.info(
            "Fair price feed connected (window=%.0fms warmup=%.0fms)",
            self._window_ms,
            self._warmup_ms,
        )

    async def disconnect(self) -> None:
        if not self._connected:
            return
        self._connected = False
        await self._feed.disconnect()

    # ------------------------------------------------------------------
    # Sample ingestion
    # ------------------------------------------------------------------

    def on_sample(self, price, timestamp_ms: float) -> None:
        try:
            p = float(price)
        except (TypeError, ValueError):
            logger.debug("Ignoring unparseable price sample: %r", price)
            return
        if not math.isfinite(p) or p <= 0:
            logger.debug("Ignoring invalid price sample: %r", price)
            return

        ts = float(timestamp_ms)
        if self._ema is None or self._last_sample_ts is None:
            self._ema = p
        else:
            dt = max(0.0, ts - self._last_sample_ts)
            alpha = 1.0 - math.exp(-dt / self._window_ms)
            self._ema += alpha * (p - self._ema)

        if self._last_sample_ts is None or ts > self._last_sample_ts:
            self._last_sample_ts = ts
        self._last_arrival_ms = self._clock.now_ms()
        self._count += 1
        self._stale_logged = False

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_ready(self) -> bool:
        if self._connect_time_ms is None or self._count == 0:
            return False
        return self._clock.now_ms() - self._connect_time_ms >= self._warmup_ms

    def is_stale(self) -> bool:
        if self._max_age_ms <= 0 or self._last_arrival_ms is None:
            return False
        return self._clock.now_ms() - self._last_arrival_ms > self._max_age_ms

    def get_fair_price(self) -> Optional[Decimal]:
        if not self.is_ready() or self._ema is None:
            return None
        if self.is_stale():
            if not self._stale_logged:
                logger.warning(
                    "Fair price stale: no sample for %.0fms",
                    self._clock.now_ms() - (self._last_arrival_ms or 0.0),
                )
                self._stale_logged = True
            return None
        return Decimal(str(self._ema))

    def get_warmup_remaining_ms(self) -> float:
        if self._connect_time_ms is None:
            return self._warmup_ms
        elapsed = self._clock.now_ms() - self._connect_time_ms
        return max(0.0, self._warmup_ms - elapsed)

    def get_price_count(self) -> int:
        return self._count

    def state(self) -> FairPriceState:
        return FairPriceState(
            ema_value=Decimal(str(self._ema)) if self._ema is not None else None,
            sample_count=self._count,
            warmup_deadline_ms=(
                self._connect_time_ms + self._warmup_ms
                if self._connect_time_ms is not None
                else None
            ),
            last_sample_ms=self._last_arrival_ms,
        )
