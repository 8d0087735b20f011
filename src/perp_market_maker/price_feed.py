"""
Price feeds

``BinancePriceFeed`` streams the Binance USD-M futures ``bookTicker`` over
an aiohttp WebSocket and emits the top-of-book mid.  The initial
connection is bounded by ``connect_retries``; once live, a dropped socket is
reconnected in the background until ``disconnect()``.

``VenueMidPriceFeed`` derives the mid from the trading venue's own
orderbook subscription.
"""
from __future__ import annotations

import asyncio
import json
import logging
from decimal import Decimal
from typing import Optional

import aiohttp

from .clock import Clock, SystemClock
from .errors import MarketNotFound, PriceFeedConnectError
from .exchange_base import match_market, safe_decimal
from .types import ExchangeAdapter, Orderbook, SampleCallback, SampleListeners

logger = logging.getLogger(__name__)

_HEARTBEAT_S = 20.0


class BinancePriceFeed:
    def __init__(
        self,
        symbol: str,
        *,
        ws_url: str = "wss://fstream.binance.com/ws",
        connect_retries: int = 3,
        retry_delay_s: float = 2.0,
        session: Optional[aiohttp.ClientSession] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._symbol = symbol.lower()
        self._url = f"{ws_url.rstrip('/')}/{self._symbol}@bookTicker"
        self._connect_retries = max(1, connect_retries)
        self._retry_delay_s = retry_delay_s
        self._session = session
        self._owns_session = session is None
        self._clock = clock or SystemClock()
        self._listeners = SampleListeners()
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.messages_received = 0

    @property
    def url(self) -> str:
        return self._url

    def on_sample(self, callback: SampleCallback) -> None:
        self._listeners.add(callback)

    async def connect(self) -> None:
        if self._running:
            return
        if self._session is None:
            self._session = aiohttp.ClientSession()
        last_exc: Optional[Exception] = None
        for attempt in range(1, self._connect_retries + 1):
            try:
                self._ws = await self._session.ws_connect(self._url, heartbeat=_HEARTBEAT_S)
                break
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
                last_exc = exc
                logger.warning(
                    "Price feed connect attempt %d/%d failed for %s: %s",
                    attempt,
                    self._connect_retries,
                    self._url,
                    exc,
                )
                if attempt < self._connect_retries:
                    await self._clock.sleep(self._retry_delay_s)
        else:
            await self._close_session()
            raise PriceFeedConnectError(
                f"Could not connect to {self._url} after {self._connect_retries} attempts: {last_exc}"
            )
        self._running = True
        self._task = asyncio.create_task(self._run_forever(), name=f"price-feed-{self._symbol}")
        logger.info("Price feed connected: %s", self._url)

    async def _run_forever(self) -> None:
        while self._running:
            try:
                if self._ws is None or self._ws.closed:
                    self._ws = await self._session.ws_connect(self._url, heartbeat=_HEARTBEAT_S)
                    logger.info("Price feed reconnected: %s", self._url)
                await self._read(self._ws)
            except asyncio.CancelledError:
                return
            except Exception as exc:
                logger.error("Price feed error: %s", exc)
            if self._running:
                await self._clock.sleep(self._retry_delay_s)

    async def _read(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                self.handle_message(msg.data)
            elif msg.type in (aiohttp.WSMsgType.ERROR, aiohttp.WSMsgType.CLOSED):
                break
        logger.warning("Price feed socket closed: %s", self._url)

    def handle_message(self, raw: str) -> None:
        """Parse one bookTicker payload and emit its mid."""
        try:
            data = json.loads(raw)
        except ValueError:
            logger.debug("Ignoring non-JSON price message: %r", raw)
            return
        if not isinstance(data, dict):
            return
        bid = safe_decimal(data.get("b"))
        ask = safe_decimal(data.get("a"))
        if bid <= 0 or ask <= 0:
            return
        self.messages_received += 1
        self._listeners.emit((bid + ask) / 2, self._clock.now_ms())

    async def disconnect(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        self._ws = None
        await self._close_session()

    async def _close_session(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None


class VenueMidPriceFeed:
    def __init__(
        self,
        exchange: ExchangeAdapter,
        symbol: str,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self._exchange = exchange
        self._symbol = symbol
        self._market_symbol: Optional[str] = None
        self._clock = clock or SystemClock()
        self._listeners = SampleListeners()
        self._last_mid: Optional[Decimal] = None

    @property
    def last_mid(self) -> Optional[Decimal]:
        return self._last_mid

    def on_sample(self, callback: SampleCallback) -> None:
        self._listeners.add(callback)

    async def connect(self) -> None:
        if self._market_symbol is not None:
            return
        market = match_market(await self._exchange.get_markets(), self._symbol)
        if market is None:
            raise MarketNotFound(self._symbol)
        try:
            await self._exchange.subscribe_orderbook(market.symbol, self._on_book)
        except Exception as exc:
            raise PriceFeedConnectError(
                f"Orderbook subscription failed for {market.symbol}: {exc}"
            ) from exc
        self._market_symbol = market.symbol
        logger.info("Venue mid price feed subscribed to %s", market.symbol)

    def _on_book(self, book: Orderbook) -> None:
        mid = book.mid
        if mid is None:
            return
        self._last_mid = mid
        self._listeners.emit(mid, self._clock.now_ms())

    async def disconnect(self) -> None:
        if self._market_symbol is None:
            return
        symbol = self._market_symbol
        self._market_symbol = None
        await self._exchange.unsubscribe_orderbook(symbol)
