"""
Extended exchange adapter

Wraps the x10 ``PerpetualTradingClient`` behind the ``ExchangeAdapter``
contract.  Orderbook data comes from the SDK's ``OrderBook`` stream with
native best-bid / best-ask change callbacks.
"""
from __future__ import annotations

import logging
import time
import uuid
from decimal import Decimal
from typing import Any, Optional

from x10.perpetual.accounts import StarkPerpetualAccount
from x10.perpetual.orderbook import OrderBook
from x10.perpetual.orders import OrderSide as X10OrderSide
from x10.perpetual.trading_client import PerpetualTradingClient

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


def _ensure_ok(resp: Any, label: str) -> Any:
    status = getattr(resp, "status", "OK")
    error = getattr(resp, "error", None)
    if str(getattr(status, "value", status)).upper() != "OK" or error is not None:
        raise VenueRequestError(label, f"status={status} error={error}")
    return resp.data if hasattr(resp, "data") else resp


def _to_price_level(raw) -> Optional[PriceLevel]:
    """Convert whatever the SDK returns into our PriceLevel."""
    if raw is None:
        return None
    if isinstance(raw, (int, float, Decimal)):
        return PriceLevel(price=Decimal(str(raw)), size=Decimal("0"))
    price = getattr(raw, "price", None)
    size = getattr(raw, "size", getattr(raw, "amount", Decimal("0")))
    if price is None:
        return None
    return PriceLevel(price=Decimal(str(price)), size=Decimal(str(size)))


class _BookState:
    def __init__(self) -> None:
        self.bid: Optional[PriceLevel] = None
        self.ask: Optional[PriceLevel] = None


class ExtendedExchange:
    name = "extended"

    def __init__(
        self,
        endpoint_config: Any,
        *,
        vault_id: str = "",
        stark_private_key: str = "",
        stark_public_key: str = "",
        api_key: str = "",
        trading_client: Optional[PerpetualTradingClient] = None,
        orderbook_depth: int = 1,
    ) -> None:
        self._config = endpoint_config
        self._vault_id = vault_id
        self._stark_private_key = stark_private_key
        self._stark_public_key = stark_public_key
        self._api_key = api_key
        self._client = trading_client
        self._depth = orderbook_depth
        self._subs = SubscriptionTable()
        self._books: dict[str, _BookState] = {}
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        if self._client is None:
            account = StarkPerpetualAccount(
                vault=int(self._vault_id),
                private_key=self._stark_private_key,
                public_key=self._stark_public_key,
                api_key=self._api_key,
            )
            self._client = PerpetualTradingClient(self._config, account)
        logger.info("Connecting to Extended...")
        account = await self.get_account()
        self._connected = True
        logger.info("Connected to Extended (equity=%s)", account.equity)

    async def disconnect(self) -> None:
        for symbol in self._subs.symbols():
            await self.unsubscribe_orderbook(symbol)
        if self._client is not None and self._connected:
            await self._client.close()
        self._connected = False
        logger.info("Disconnected from Extended")

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    async def get_markets(self) -> list[Market]:
        markets = await self._client.markets_info.get_markets_dict()
        result: list[Market] = []
        for name, info in markets.items():
            base = getattr(info, "asset_name", None) or name.split("-")[0]
            quote = getattr(info, "collateral_asset_name", None) or (
                name.split("-")[1] if "-" in name else "USD"
            )
            cfg = info.trading_config
            result.append(
                Market(
                    id=name,
                    symbol=name,
                    base=base,
                    quote=quote,
                    tick_size=safe_decimal(cfg.min_price_change),
                    lot_size=safe_decimal(cfg.min_order_size_change),
                    min_order_size=safe_decimal(cfg.min_order_size),
                )
            )
        return result

    async def subscribe_orderbook(self, symbol: str, callback: OrderbookCallback) -> None:
        if not self._subs.add(symbol, callback):
            return
        state = _BookState()
        self._books[symbol] = state

        async def _on_bid(raw_bid) -> None:
            level = _to_price_level(raw_bid)
            if level is not None:
                state.bid = level
                self._emit(symbol, state)

        async def _on_ask(raw_ask) -> None:
            level = _to_price_level(raw_ask)
            if level is not None:
                state.ask = level
                self._emit(symbol, state)

        try:
            orderbook = await OrderBook.create(
                endpoint_config=self._config,
                market_name=symbol,
                best_bid_change_callback=_on_bid,
                best_ask_change_callback=_on_ask,
                start=True,
                depth=self._depth,
            )
        except Exception:
            self._subs.remove(symbol)
            self._books.pop(symbol, None)
            raise
        self._subs.set_handle(symbol, orderbook)
        logger.info("Subscribed to Extended orderbook for %s", symbol)

    def _emit(self, symbol: str, state: _BookState) -> None:
        book = Orderbook(
            symbol=symbol,
            bids=(state.bid,) if state.bid is not None else (),
            asks=(state.ask,) if state.ask is not None else (),
            timestamp_ms=time.time() * 1000.0,
        )
        self._subs.dispatch(symbol, book)

    async def unsubscribe_orderbook(self, symbol: str) -> None:
        orderbook = self._subs.remove(symbol)
        self._books.pop(symbol, None)
        if orderbook is None:
            return
        try:
            await orderbook.close()
        except Exception as exc:
            logger.warning("Error closing orderbook for %s: %s", symbol, exc)

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------

    async def get_account(self) -> Account:
        data = _ensure_ok(await self._client.account.get_balance(), "get_balance")
        return Account(
            equity=safe_decimal(field_of(data, "equity")),
            available_margin=safe_decimal(field_of(data, "available_for_trade")),
        )

    async def get_positions(self) -> list[Position]:
        data = _ensure_ok(await self._client.account.get_positions(), "get_positions")
        positions: list[Position] = []
        for pos in data or []:
            size = abs(safe_decimal(field_of(pos, "size")))
            if size == 0:
                continue
            side_raw = str(field_of(pos, "side", "")).upper()
            side = PositionSide.SHORT if "SHORT" in side_raw else PositionSide.LONG
            pnl = field_of(pos, "unrealised_pnl")
            mark = field_of(pos, "mark_price")
            positions.append(
                Position(
                    symbol=str(field_of(pos, "market", "")),
                    side=side,
                    size=size,
                    entry_price=safe_decimal(field_of(pos, "open_price")),
                    unrealized_pnl=safe_decimal(pnl) if pnl is not None else None,
                    mark_price=safe_decimal(mark) if mark is not None else None,
                )
            )
        return positions

    async def get_open_orders(self, symbol: Optional[str] = None) -> list[Order]:
        market_names = [symbol] if symbol else None
        data = _ensure_ok(
            await self._client.account.get_open_orders(market_names=market_names),
            "get_open_orders",
        )
        orders: list[Order] = []
        for raw in data or []:
            side_raw = str(field_of(raw, "side", "")).upper()
            orders.append(
                Order(
                    order_id=str(field_of(raw, "id")),
                    symbol=str(field_of(raw, "market", symbol or "")),
                    side=OrderSide.SELL if "SELL" in side_raw else OrderSide.BUY,
                    price=safe_decimal(field_of(raw, "price")),
                    size=safe_decimal(field_of(raw, "qty")),
                    reduce_only=bool(field_of(raw, "reduce_only", False)),
                )
            )
        return orders

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def place_order(self, intent: OrderIntent) -> OrderResult:
        side = X10OrderSide.BUY if intent.side == OrderSide.BUY else X10OrderSide.SELL
        resp = await self._client.place_order(
            market_name=intent.symbol,
            amount_of_synthetic=intent.size,
            price=intent.price,
            side=side,
            post_only=intent.post_only,
            reduce_only=intent.reduce_only,
            external_id=uuid.uuid4().hex,
        )
        data = _ensure_ok(resp, "place_order")
        order_id = self._extract_exchange_id(data)
        if order_id is None:
            raise VenueRequestError("place_order", "response carried no order id")
        return OrderResult(order_id=order_id)

    async def cancel_order(self, order_id: str, symbol: Optional[str] = None) -> None:
        _ensure_ok(
            await self._client.orders.cancel_order(order_id=int(order_id)),
            "cancel_order",
        )

    async def cancel_all_orders(self, symbol: Optional[str] = None) -> None:
        if symbol:
            markets = [symbol]
        else:
            markets = sorted({o.symbol for o in await self.get_open_orders()})
        if not markets:
            return
        _ensure_ok(await self._client.orders.mass_cancel(markets=markets), "mass_cancel")
        logger.info("Mass cancel issued for %s", ",".join(markets))

    @staticmethod
    def _extract_exchange_id(data) -> Optional[str]:
        if hasattr(data, "id") and data.id is not None:
            return str(data.id)
        if isinstance(data, dict):
            for key in ("id", "order_id", "orderId"):
                if data.get(key) is not None:
                    return str(data[key])
        return None
