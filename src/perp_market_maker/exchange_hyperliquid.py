"""
Hyperliquid exchange adapter

The Hyperliquid SDK is blocking; every call runs on a small shared thread
pool and is awaited through ``run_in_executor``.  Read calls are retried
with jittered backoff, order mutations are not.  Orderbook pushes arrive on
the SDK's websocket thread and are handed to the event loop with
``call_soon_threadsafe``.
"""
from __future__ import annotations

import asyncio
import logging
import math
import random
from concurrent.futures import ThreadPoolExecutor
from decimal import ROUND_DOWN, ROUND_UP, Decimal
from typing import Any, Callable, Optional

from eth_account import Account as EthAccount
from hyperliquid.exchange import Exchange
from hyperliquid.info import Info

from .errors import VenueRequestError
from .exchange_base import SubscriptionTable, field_of, safe_decimal
from .types import (
    Account,
    Market,
    Order,
    Orderbook,
    OrderbookCallback,
    OrderIntent,
    OrderResult,
    OrderSide,
    Position,
    PositionSide,
    PriceLevel,
)

logger = logging.getLogger(__name__)

# Perp prices carry at most this many decimals minus the asset's szDecimals.
_MAX_PERP_DECIMALS = 6
_MAX_SIG_FIGS = 5


def normalize_price(price: Decimal, sz_decimals: int, side: OrderSide) -> Decimal:
    """Fit a price to Hyperliquid's 5 significant figure / decimal limits.

    Bids round down and asks round up so the edge is never given away.
    Integer prices are always accepted.
    """
    if price <= 0:
        return price
    rounding = ROUND_UP if side == OrderSide.SELL else ROUND_DOWN
    if price == price.to_integral_value():
        return price.quantize(Decimal("1"))
    magnitude = math.floor(math.log10(price))
    sig_decimals = max(0, _MAX_SIG_FIGS - 1 - magnitude)
    decimals = min(sig_decimals, max(0, _MAX_PERP_DECIMALS - sz_decimals))
    return price.quantize(Decimal(1).scaleb(-decimals), rounding=rounding)


def _parse_levels(raw_levels: Any) -> tuple[tuple[PriceLevel, ...], tuple[PriceLevel, ...]]:
    if not isinstance(raw_levels, (list, tuple)) or len(raw_levels) < 2:
        return (), ()

    def _side(levels) -> tuple[PriceLevel, ...]:
        out = []
        for lvl in levels or []:
            px = safe_decimal(field_of(lvl, "px"))
            if px > 0:
                out.append(PriceLevel(price=px, size=safe_decimal(field_of(lvl, "sz"))))
        return tuple(out)

    return _side(raw_levels[0]), _side(raw_levels[1])


class HyperliquidExchange:
    name = "hyperliquid"

    def __init__(
        self,
        base_url: str,
        *,
        private_key: str = "",
        account_address: str = "",
        info: Optional[Info] = None,
        exchange: Optional[Exchange] = None,
        timeout_s: float = 5.0,
        retries: int = 2,
        max_workers: int = 4,
    ) -> None:
        self._base_url = base_url
        self._private_key = private_key
        self._account_address = account_address
        self._info = info
        self._exchange = exchange
        self._timeout_s = timeout_s
        self._retries = retries
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="hl-exec")
        self._subs = SubscriptionTable()
        self._sz_decimals: dict[str, int] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connected = False
        self._closed = False

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def address(self) -> str:
        return self._account_address

    async def _call(self, fn: Callable[[], Any], retries: Optional[int] = None) -> Any:
        loop = asyncio.get_running_loop()
        attempts = self._retries if retries is None else retries
        backoff = 0.2
        for attempt in range(attempts + 1):
            try:
                return await asyncio.wait_for(
                    loop.run_in_executor(self._executor, fn), timeout=self._timeout_s
                )
            except Exception:
                if attempt >= attempts:
                    raise
                await asyncio.sleep(backoff + random.uniform(0, backoff * 0.5))
                backoff *= 2

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        self._loop = asyncio.get_running_loop()
        logger.info("Connecting to Hyperliquid (%s)...", self._base_url)
        if self._info is None or self._exchange is None:
            wallet = EthAccount.from_key(self._private_key)
            if not self._account_address:
                self._account_address = wallet.address
            if self._info is None:
                self._info = await self._call(lambda: Info(self._base_url, skip_ws=False))
            if self._exchange is None:
                self._exchange = await self._call(
                    lambda: Exchange(
                        wallet, self._base_url, account_address=self._account_address
                    )
                )
        account = await self.get_account()
        self._connected = True
        logger.info(
            "Connected to Hyperliquid as %s (equity=%s)", self._account_address, account.equity
        )

    async def disconnect(self) -> None:
        if self._closed:
            return
        for symbol in self._subs.symbols():
            await self.unsubscribe_orderbook(symbol)
        if self._info is not None:
            try:
                await self._call(self._info.disconnect_websocket, retries=0)
            except Exception as exc:
                logger.warning("Error closing Hyperliquid websocket: %s", exc)
        self._executor.shutdown(wait=False)
        self._connected = False
        self._closed = True
        logger.info("Disconnected from Hyperliquid")

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    async def get_markets(self) -> list[Market]:
        meta = await self._call(self._info.meta)
        markets: list[Market] = []
        for asset in meta.get("universe", []):
            if asset.get("isDelisted"):
                continue
            coin = asset["name"]
            sz_decimals = int(asset.get("szDecimals", 0))
            self._sz_decimals[coin] = sz_decimals
            markets.append(
                Market(
                    id=coin,
                    symbol=coin,
                    base=coin,
                    quote="USD",
                    tick_size=Decimal(1).scaleb(-max(0, _MAX_PERP_DECIMALS - sz_decimals)),
                    lot_size=Decimal(1).scaleb(-sz_decimals),
                )
            )
        return markets

    async def subscribe_orderbook(self, symbol: str, callback: OrderbookCallback) -> None:
        if not self._subs.add(symbol, callback):
            return
        loop = self._loop or asyncio.get_running_loop()

        def _on_book(msg: Any) -> None:
            data = msg.get("data", {}) if isinstance(msg, dict) else {}
            if data.get("coin") != symbol:
                return
            bids, asks = _parse_levels(data.get("levels"))
            book = Orderbook(
                symbol=symbol,
                bids=bids,
                asks=asks,
                timestamp_ms=float(data.get("time", 0) or 0),
            )
            loop.call_soon_threadsafe(self._subs.dispatch, symbol, book)

        try:
            sub_id = await self._call(
                lambda: self._info.subscribe({"type": "l2Book", "coin": symbol}, _on_book),
                retries=0,
            )
        except Exception:
            self._subs.remove(symbol)
            raise
        self._subs.set_handle(symbol, sub_id)
        logger.info("Subscribed to Hyperliquid l2Book for %s (id=%s)", symbol, sub_id)

    async def unsubscribe_orderbook(self, symbol: str) -> None:
        if symbol not in self._subs:
            return
        sub_id = self._subs.remove(symbol)
        if sub_id is None:
            return
        try:
            await self._call(
                lambda: self._info.unsubscribe({"type": "l2Book", "coin": symbol}, sub_id),
                retries=0,
            )
        except Exception as exc:
            logger.warning("Error unsubscribing l2Book for %s: %s", symbol, exc)

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------

    async def _user_state(self) -> dict:
        return await self._call(lambda: self._info.user_state(self._account_address))

    async def get_account(self) -> Account:
        state = await self._user_state()
        summary = state.get("marginSummary", {})
        return Account(
            equity=safe_decimal(summary.get("accountValue")),
            available_margin=safe_decimal(state.get("withdrawable")),
        )

    async def get_positions(self) -> list[Position]:
        state = await self._user_state()
        positions: list[Position] = []
        for entry in state.get("assetPositions", []):
            pos = entry.get("position", {})
            signed = safe_decimal(pos.get("szi"))
            if signed == 0:
                continue
            pnl = pos.get("unrealizedPnl")
            positions.append(
                Position(
                    symbol=pos.get("coin", ""),
                    side=PositionSide.LONG if signed > 0 else PositionSide.SHORT,
                    size=abs(signed),
                    entry_price=safe_decimal(pos.get("entryPx")),
                    unrealized_pnl=safe_decimal(pnl) if pnl is not None else None,
                )
            )
        return positions

    async def get_open_orders(self, symbol: Optional[str] = None) -> list[Order]:
        raw_orders = await self._call(lambda: self._info.open_orders(self._account_address))
        orders: list[Order] = []
        for raw in raw_orders or []:
            coin = raw.get("coin", "")
            if symbol and coin != symbol:
                continue
            orders.append(
                Order(
                    order_id=str(raw.get("oid")),
                    symbol=coin,
                    side=OrderSide.BUY if raw.get("side") == "B" else OrderSide.SELL,
                    price=safe_decimal(raw.get("limitPx")),
                    size=safe_decimal(raw.get("sz")),
                    reduce_only=bool(raw.get("reduceOnly", False)),
                )
            )
        return orders

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def place_order(self, intent: OrderIntent) -> OrderResult:
        sz_decimals = self._sz_decimals.get(intent.symbol, 0)
        price = normalize_price(intent.price, sz_decimals, intent.side)
        size = intent.size.quantize(Decimal(1).scaleb(-sz_decimals), rounding=ROUND_DOWN)
        if size <= 0:
            raise VenueRequestError("place_order", f"size {intent.size} rounds to zero")
        order_type = {"limit": {"tif": "Alo" if intent.post_only else "Gtc"}}
        result = await self._call(
            lambda: self._exchange.order(
                intent.symbol,
                intent.side == OrderSide.BUY,
                float(size),
                float(price),
                order_type,
                reduce_only=intent.reduce_only,
            ),
            retries=0,
        )
        status = self._first_status(result, "place_order")
        if "error" in status:
            raise VenueRequestError("place_order", str(status["error"]))
        for key in ("resting", "filled"):
            if key in status:
                return OrderResult(order_id=str(status[key]["oid"]))
        raise VenueRequestError("place_order", f"unexpected status {status}")

    async def cancel_order(self, order_id: str, symbol: Optional[str] = None) -> None:
        coin = symbol
        if coin is None:
            for order in await self.get_open_orders():
                if order.order_id == str(order_id):
                    coin = order.symbol
                    break
        if coin is None:
            logger.debug("Cancel skipped: order %s not open", order_id)
            return
        result = await self._call(lambda: self._exchange.cancel(coin, int(order_id)), retries=0)
        status = self._first_status(result, "cancel_order")
        if isinstance(status, dict) and "error" in status:
            raise VenueRequestError("cancel_order", str(status["error"]))

    async def cancel_all_orders(self, symbol: Optional[str] = None) -> None:
        orders = await self.get_open_orders(symbol)
        if not orders:
            return
        requests = [{"coin": o.symbol, "oid": int(o.order_id)} for o in orders]
        result = await self._call(lambda: self._exchange.bulk_cancel(requests), retries=0)
        if result.get("status") != "ok":
            raise VenueRequestError("cancel_all_orders", str(result.get("response")))
        logger.info("Cancelled %d Hyperliquid orders", len(requests))

    @staticmethod
    def _first_status(result: Any, label: str) -> Any:
        if not isinstance(result, dict) or result.get("status") != "ok":
            reason = result.get("response") if isinstance(result, dict) else result
            raise VenueRequestError(label, str(reason))
        statuses = result.get("response", {}).get("data", {}).get("statuses", [])
        if not statuses:
            raise VenueRequestError(label, "empty status list")
        return statuses[0]
