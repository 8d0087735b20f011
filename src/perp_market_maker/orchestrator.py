"""
Market Maker Orchestrator

Lifecycle state machine plus the three periodic activities that run once
the fair price is warm:

    stopped -> connecting -> warming_up -> running <-> paused
                   |              |
                   +---> error <--+

- quoting tick (``update_throttle_ms``): fair price -> exposure -> quote ->
  cancel/replace when a resting order has gone stale;
- sync tick (``order_sync_interval_ms``): resting orders and position are
  re-read from the venue;
- margin tick (10s, plus one immediate check): pauses on a low
  available-margin / equity ratio and resumes once it recovers past
  ``min_margin_ratio * 1.2``.

Ticks share no locks; each one recomputes from freshly fetched venue
state, and cancel-all is idempotent, so overlapping ticks are harmless.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from .clock import Clock, Scheduler, SystemClock
from .config import MARGIN_CHECK_INTERVAL_MS
from .errors import MarketNotFound, SetupFailure
from .exchange_base import match_market
from .exposure import ExposureState, ExposureTracker
from .fair_price import FairPriceEstimator
from .journal import EventJournal
from .quoter import QuoteGenerator
from .types import (
    ExchangeAdapter,
    Market,
    Order,
    Orderbook,
    OrderSide,
    Position,
    PriceFeed,
)

logger = logging.getLogger(__name__)

_MARGIN_RESUME_FACTOR = Decimal("1.2")
_WARMUP_POLL_S = 1.0


class LifecycleState(str, Enum):
    STOPPED = "stopped"
    CONNECTING = "connecting"
    WARMING_UP = "warming_up"
    RUNNING = "running"
    PAUSED = "paused"
    ERROR = "error"


@dataclass(frozen=True)
class MarketMakerStatus:
    """Point-in-time snapshot for logging and monitoring."""

    state: LifecycleState
    exchange: str
    symbol: str
    price_source: str
    fair_price: Optional[Decimal]
    exposure: ExposureState
    bid_price: Optional[Decimal]
    bid_size: Optional[Decimal]
    ask_price: Optional[Decimal]
    ask_size: Optional[Decimal]
    margin_ratio: float
    is_close_mode: bool
    uptime_ms: float
    pause_reason: Optional[str] = None
    error_count: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "exchange": self.exchange,
            "symbol": self.symbol,
            "price_source": self.price_source,
            "fair_price": self.fair_price,
            "exposure": {
                "side": self.exposure.side.value,
                "size": self.exposure.size,
                "notional_usd": self.exposure.notional_usd,
                "pnl": self.exposure.unrealized_pnl_usd,
            },
            "orders": {
                "bid_price": self.bid_price,
                "bid_size": self.bid_size,
                "ask_price": self.ask_price,
                "ask_size": self.ask_size,
            },
            "margin_ratio": self.margin_ratio,
            "is_close_mode": self.is_close_mode,
            "uptime_ms": self.uptime_ms,
            "pause_reason": self.pause_reason,
            "error_count": self.error_count,
        }


def _enum_value(value: Any) -> str:
    return str(getattr(value, "value", value))


class MarketMaker:
    """Quotes one symbol on one venue around a smoothed fair price."""

    def __init__(
        self,
        settings: Any,
        exchange: ExchangeAdapter,
        price_feed: PriceFeed,
        *,
        clock: Optional[Clock] = None,
        journal: Optional[EventJournal] = None,
        margin_check_interval_ms: float = MARGIN_CHECK_INTERVAL_MS,
        warmup_poll_s: float = _WARMUP_POLL_S,
    ) -> None:
        self._settings = settings
        self._exchange = exchange
        self._clock = clock or SystemClock()
        self._journal = journal
        self._margin_interval_s = margin_check_interval_ms / 1000.0
        self._warmup_poll_s = warmup_poll_s

        self._fair_price = FairPriceEstimator(
            price_feed,
            window_ms=settings.fair_price_window_ms,
            warmup_ms=settings.warmup_seconds * 1000,
            max_age_ms=getattr(settings, "fair_price_max_age_ms", 0),
            clock=self._clock,
        )
        self._quoter = QuoteGenerator(settings)
        self._exposure = ExposureTracker(
            close_threshold_usd=settings.close_threshold_usd,
            max_position_usd=settings.max_position_usd,
        )
        self._scheduler = Scheduler(self._clock)

        self._throttle_ms = float(settings.update_throttle_ms)
        self._min_margin_ratio = Decimal(str(settings.min_margin_ratio))
        self._max_errors = int(getattr(settings, "max_consecutive_errors", 10))

        self._state = LifecycleState.STOPPED
        self._pause_reason: Optional[str] = None
        self._market: Optional[Market] = None
        self._position: Optional[Position] = None
        self._current_orders: list[Order] = []
        self._start_ms: Optional[float] = None
        self._last_update_ms = 0.0
        self._error_count = 0
        self._tick_completed = False
        self._margin_ratio = Decimal("1")
        self._last_book: Optional[Orderbook] = None
        self._subscribed_symbol: Optional[str] = None

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def market(self) -> Optional[Market]:
        return self._market

    @property
    def fair_price(self) -> FairPriceEstimator:
        return self._fair_price

    @property
    def quoter(self) -> QuoteGenerator:
        return self._quoter

    @property
    def exposure(self) -> ExposureTracker:
        return self._exposure

    @property
    def current_orders(self) -> list[Order]:
        return list(self._current_orders)

    @property
    def error_count(self) -> int:
        return self._error_count

    @property
    def margin_ratio(self) -> float:
        return float(self._margin_ratio)

    @property
    def last_orderbook(self) -> Optional[Orderbook]:
        return self._last_book

    def _set_state(self, new: LifecycleState, reason: str) -> None:
        old = self._state
        if old == new:
            return
        self._state = new
        logger.info("State %s -> %s (%s)", old.value, new.value, reason)
        if self._journal is not None:
            self._journal.record_state_change(old=old.value, new=new.value, reason=reason)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Connect, warm up and start quoting.

        Raises ``SetupFailure`` (state ``error``) when the venue, market or
        price feed cannot be brought up.  Returns early without error when
        ``stop()`` interrupts it; connections opened after the stop are
        released again.
        """
        if self._state != LifecycleState.STOPPED:
            logger.warning("Market maker already started (state=%s)", self._state.value)
            return

        self._start_ms = self._clock.now_ms()
        self._error_count = 0
        self._pause_reason = None
        self._set_state(LifecycleState.CONNECTING, "start")
        logger.info(
            "Starting market maker for %s on %s",
            self._settings.symbol,
            _enum_value(self._settings.exchange),
        )
        try:
            await self._exchange.connect()
            if self._stopped_during_start():
                await self._release_after_stop()
                return
            self._market = await self._resolve_market()
            if self._stopped_during_start():
                await self._release_after_stop()
                return
            self._quoter.set_market(self._market)
            await self._subscribe_market_data()
            if self._stopped_during_start():
                await self._release_after_stop()
                return
            await self._fair_price.connect()
            if self._stopped_during_start():
                await self._release_after_stop()
                return

            self._set_state(LifecycleState.WARMING_UP, "connected")
            logger.info("Warming up for %ss...", self._settings.warmup_seconds)
            if not await self.wait_for_warmup():
                return
        except Exception as exc:
            if self._state == LifecycleState.STOPPED:
                logger.info("Start interrupted by stop: %s", exc)
                return
            self._set_state(LifecycleState.ERROR, "setup failure")
            if isinstance(exc, SetupFailure):
                raise
            raise SetupFailure(f"Failed to start market maker: {exc}") from exc

        # Venue hiccups here are recoverable: the first quote tick cancels
        # before placing and the sync job refreshes the position.
        try:
            await self.sync_position()
        except Exception as exc:
            logger.error("Initial position sync failed: %s", exc)
        try:
            await self.cancel_all_orders()
        except Exception as exc:
            logger.error("Initial order cancel failed: %s", exc)

        if self._state != LifecycleState.WARMING_UP:
            return
        self._set_state(LifecycleState.RUNNING, "warm-up complete")
        self._start_periodic_tasks()

    def _stopped_during_start(self) -> bool:
        return self._state != LifecycleState.CONNECTING

    async def _release_after_stop(self) -> None:
        """Undo what start() acquired after a concurrent stop() already ran."""
        logger.info("Start interrupted by stop, releasing connections")
        if self._subscribed_symbol is not None:
            try:
                await self._exchange.unsubscribe_orderbook(self._subscribed_symbol)
            except Exception as exc:
                logger.error("Failed to unsubscribe orderbook: %s", exc)
            self._subscribed_symbol = None
        try:
            await self._fair_price.disconnect()
        except Exception as exc:
            logger.error("Failed to disconnect price feed: %s", exc)
        try:
            await self._exchange.disconnect()
        except Exception as exc:
            logger.error("Failed to disconnect exchange: %s", exc)

    async def _resolve_market(self) -> Market:
        markets = await self._exchange.get_markets()
        market = match_market(markets, self._settings.symbol)
        if market is None:
            raise MarketNotFound(self._settings.symbol)
        logger.info("Market found: %s (%s)", market.symbol, market.id)
        return market

    async def _subscribe_market_data(self) -> None:
        try:
            await self._exchange.subscribe_orderbook(self._market.symbol, self._on_orderbook)
            self._subscribed_symbol = self._market.symbol
        except Exception as exc:
            logger.warning("Orderbook subscription failed for %s: %s", self._market.symbol, exc)

    def _on_orderbook(self, book: Orderbook) -> None:
        self._last_book = book

    async def wait_for_warmup(self) -> bool:
        """Poll readiness every ~1s. False when the state moved on meanwhile."""
        while not self._fair_price.is_ready():
            if self._state != LifecycleState.WARMING_UP:
                return False
            logger.debug(
                "Warmup: %.1fs remaining, %d prices",
                self._fair_price.get_warmup_remaining_ms() / 1000.0,
                self._fair_price.get_price_count(),
            )
            await self._clock.sleep(self._warmup_poll_s)
        return self._state == LifecycleState.WARMING_UP

    def _start_periodic_tasks(self) -> None:
        self._scheduler.every(
            "mm-quote",
            self._throttle_ms / 1000.0,
            self._quote_job,
        )
        self._scheduler.every(
            "mm-order-sync",
            self._settings.order_sync_interval_ms / 1000.0,
            self._sync_job,
        )
        self._scheduler.every(
            "mm-margin-check",
            self._margin_interval_s,
            self.check_margin_ratio,
            run_immediately=True,
        )
        logger.info("Market maker running!")

    async def stop(self) -> None:
        """Tear everything down. Idempotent; each step is isolated."""
        if self._state == LifecycleState.STOPPED:
            return
        logger.info("Stopping market maker...")
        # Flip first so an in-flight warm-up or tick stops on its next check.
        self._set_state(LifecycleState.STOPPED, "stop")

        await self._scheduler.cancel_all()

        if self._market is not None:
            try:
                await self.cancel_all_orders()
            except Exception as exc:
                logger.error("Failed to cancel orders on stop: %s", exc)

        if self._subscribed_symbol is not None:
            try:
                await self._exchange.unsubscribe_orderbook(self._subscribed_symbol)
            except Exception as exc:
                logger.error("Failed to unsubscribe orderbook: %s", exc)
            self._subscribed_symbol = None

        try:
            await self._fair_price.disconnect()
        except Exception as exc:
            logger.error("Failed to disconnect price feed: %s", exc)

        try:
            await self._exchange.disconnect()
        except Exception as exc:
            logger.error("Failed to disconnect exchange: %s", exc)

        logger.info("Market maker stopped")

    # ------------------------------------------------------------------
    # Quoting tick
    # ------------------------------------------------------------------

    async def _quote_job(self) -> None:
        if self._state != LifecycleState.RUNNING:
            return
        try:
            await self.quote_tick()
        except Exception as exc:
            self._handle_loop_error(exc)
            return
        # Skipped ticks (throttle, no fair price, at max) leave the count alone.
        if self._tick_completed:
            self._error_count = 0

    def _handle_loop_error(self, exc: Exception) -> None:
        self._error_count += 1
        logger.error("Main loop error (%d/%d): %s", self._error_count, self._max_errors, exc)
        if self._journal is not None:
            self._journal.record_error(
                where="quote_tick", error=str(exc), error_count=self._error_count
            )
        if self._error_count >= self._max_errors and self._state == LifecycleState.RUNNING:
            logger.error("Too many errors (%d), pausing market maker", self._error_count)
            self._enter_pause("errors")

    async def quote_tick(self) -> bool:
        """One quoting iteration. Returns True when orders were replaced.

        ``_tick_completed`` is set only when the iteration ran to the end
        without being skipped or interrupted.
        """
        self._tick_completed = False
        if self._state != LifecycleState.RUNNING or self._market is None:
            return False

        now = self._clock.now_ms()
        if now - self._last_update_ms < self._throttle_ms:
            return False
        self._last_update_ms = now

        fair = self._fair_price.get_fair_price()
        if fair is None:
            logger.debug("No fair price available")
            return False

        self._exposure.update_position(self._position, fair)
        if self._exposure.is_at_max():
            logger.warning(
                "Position at max (%s), not placing new orders",
                self._exposure.format_position(),
            )
            return False

        notional = self._exposure.get_signed_notional()
        quote = self._quoter.generate_quotes(fair, notional)
        if not self._needs_update(fair, notional):
            self._tick_completed = True
            return False

        await self.cancel_all_orders()

        placed: list[Order] = []
        for intent in self._quoter.quote_to_orders(quote, self._market.symbol):
            if self._state != LifecycleState.RUNNING:
                break
            try:
                result = await self._exchange.place_order(intent)
            except Exception as exc:
                logger.error(
                    "Failed to place %s order %s @ %s: %s",
                    intent.side.value,
                    intent.size,
                    intent.price,
                    exc,
                )
                if self._journal is not None:
                    self._journal.record_order_failed(
                        side=intent.side.value, price=intent.price, size=intent.size, error=str(exc)
                    )
                continue
            logger.info(
                "Order placed: %s %s @ %s%s -> %s",
                intent.side.value,
                intent.size,
                intent.price,
                " (reduce-only)" if intent.reduce_only else "",
                result.order_id,
            )
            if self._journal is not None:
                self._journal.record_order_placed(
                    order_id=result.order_id,
                    side=intent.side.value,
                    price=intent.price,
                    size=intent.size,
                    reduce_only=intent.reduce_only,
                )
            placed.append(
                Order(
                    order_id=result.order_id,
                    symbol=intent.symbol,
                    side=intent.side,
                    price=intent.price,
                    size=intent.size,
                    reduce_only=intent.reduce_only,
                )
            )

        if self._state != LifecycleState.RUNNING:
            # Paused or stopped mid-tick: the pause already cancelled, so
            # anything placed since then must not stay on the book.
            await self._cancel_placed(placed)
            return False

        # Provisional until the next sync replaces it with venue truth.
        self._current_orders = placed
        if self._journal is not None:
            self._journal.record_quote(
                fair_price=fair,
                mode=quote.mode.value,
                bid_price=quote.bid_price,
                bid_size=quote.bid_size,
                ask_price=quote.ask_price,
                ask_size=quote.ask_size,
                signed_notional=notional,
            )
        self._tick_completed = True
        return True

    async def _cancel_placed(self, placed: list[Order]) -> None:
        if not placed:
            return
        logger.warning(
            "Quoting interrupted (state=%s), cancelling %d order(s) placed this tick",
            self._state.value,
            len(placed),
        )
        for order in placed:
            try:
                await self._exchange.cancel_order(order.order_id, order.symbol)
            except Exception as exc:
                logger.error("Failed to cancel order %s: %s", order.order_id, exc)
        if self._journal is not None:
            self._journal.record_orders_cancelled(count=len(placed), reason="interrupted")

    def _needs_update(self, fair: Decimal, notional: Decimal) -> bool:
        if not self._current_orders:
            return True
        return any(
            self._quoter.is_order_stale(order.price, order.side, fair, notional)
            for order in self._current_orders
        )

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def _sync_job(self) -> None:
        if self._state not in (LifecycleState.RUNNING, LifecycleState.PAUSED):
            return
        try:
            await self.sync_orders()
        except Exception as exc:
            logger.error("Failed to sync orders: %s", exc)
        try:
            await self.sync_position()
        except Exception as exc:
            logger.error("Failed to sync position: %s", exc)

    async def sync_orders(self) -> list[Order]:
        self._current_orders = await self._exchange.get_open_orders(self._market.symbol)
        return list(self._current_orders)

    async def sync_position(self) -> ExposureState:
        positions = await self._exchange.get_positions()
        self._position = next(
            (p for p in positions if p.symbol == self._market.symbol), None
        )
        state = self._exposure.update_position(self._position, self._fair_price.get_fair_price())
        logger.debug("Position: %s", self._exposure.format_position())
        return state

    async def cancel_all_orders(self) -> None:
        count = len(self._current_orders)
        await self._exchange.cancel_all_orders(self._market.symbol)
        self._current_orders = []
        if count and self._journal is not None:
            self._journal.record_orders_cancelled(count=count, reason="cancel_all")

    # ------------------------------------------------------------------
    # Margin circuit breaker
    # ------------------------------------------------------------------

    async def check_margin_ratio(self) -> float:
        """Refresh the margin ratio and apply the pause/resume hysteresis."""
        account = await self._exchange.get_account()
        if account.equity > 0:
            self._margin_ratio = account.available_margin / account.equity
        if self._journal is not None:
            self._journal.record_margin_check(
                equity=account.equity,
                available_margin=account.available_margin,
                margin_ratio=float(self._margin_ratio),
            )

        ratio = self._margin_ratio
        resume_at = self._min_margin_ratio * _MARGIN_RESUME_FACTOR
        if ratio < self._min_margin_ratio:
            if self._state == LifecycleState.RUNNING:
                logger.warning(
                    "Margin ratio %.1f%% below minimum %.1f%%, pausing...",
                    ratio * 100,
                    self._min_margin_ratio * 100,
                )
                self._enter_pause("margin")
                try:
                    await self.cancel_all_orders()
                except Exception as exc:
                    logger.error("Failed to cancel orders after margin pause: %s", exc)
        elif self._state == LifecycleState.PAUSED and ratio >= resume_at:
            logger.info("Margin ratio %.1f%% recovered, resuming...", ratio * 100)
            self._error_count = 0
            self._pause_reason = None
            self._set_state(LifecycleState.RUNNING, "margin recovered")
        return float(ratio)

    def _enter_pause(self, reason: str) -> None:
        self._pause_reason = reason
        self._set_state(LifecycleState.PAUSED, reason)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self) -> MarketMakerStatus:
        bid = next((o for o in self._current_orders if o.side == OrderSide.BUY), None)
        ask = next((o for o in self._current_orders if o.side == OrderSide.SELL), None)
        uptime = self._clock.now_ms() - self._start_ms if self._start_ms is not None else 0.0
        return MarketMakerStatus(
            state=self._state,
            exchange=_enum_value(self._settings.exchange),
            symbol=self._settings.symbol,
            price_source=_enum_value(self._settings.price_source),
            fair_price=self._fair_price.get_fair_price(),
            exposure=self._exposure.state,
            bid_price=bid.price if bid else None,
            bid_size=bid.size if bid else None,
            ask_price=ask.price if ask else None,
            ask_size=ask.size if ask else None,
            margin_ratio=float(self._margin_ratio),
            is_close_mode=self._exposure.is_close_mode(),
            uptime_ms=uptime,
            pause_reason=self._pause_reason,
            error_count=self._error_count,
        )
