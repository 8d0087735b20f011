from __future__ import annotations

import asyncio
import os
import sys
from decimal import Decimal
from typing import Optional

import pytest

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
SRC_PATH = os.path.join(PROJECT_ROOT, "src")

if SRC_PATH not in sys.path:
    sys.path.insert(0, SRC_PATH)

# Keep tests deterministic: do not load developer-local MM_* values.
os.environ["ENV"] = "env.test"
for key in list(os.environ.keys()):
    if key.startswith("MM_"):
        os.environ.pop(key, None)

from perp_market_maker.config import MarketMakerSettings  # noqa: E402
from perp_market_maker.errors import VenueRequestError  # noqa: E402
from perp_market_maker.types import (  # noqa: E402
    Account,
    Market,
    Order,
    OrderIntent,
    OrderResult,
    OrderSide,
    Position,
)


@pytest.fixture(autouse=True)
def _restore_environment() -> None:
    """Prevent environment mutations from leaking across tests."""
    snapshot = os.environ.copy()
    try:
        yield
    finally:
        os.environ.clear()
        os.environ.update(snapshot)


# ---------------------------------------------------------------------------
# Fakes shared by the orchestrator, price feed and runner tests
# ---------------------------------------------------------------------------

class FakeClock:
    """Manual clock. ``sleep`` advances time and yields once."""

    def __init__(self, start_ms: float = 1_700_000_000_000.0) -> None:
        self.now = start_ms
        self.sleeps: list[float] = []

    def now_ms(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds * 1000.0
        await asyncio.sleep(0)


BTC_MARKET = Market(
    id="BTC-USD",
    symbol="BTC-USD",
    base="BTC",
    quote="USD",
    tick_size=Decimal("1"),
    lot_size=Decimal("0.00001"),
)


class FakeExchange:
    name = "fake"

    def __init__(self) -> None:
        self.markets: list[Market] = [BTC_MARKET]
        self.account = Account(equity=Decimal("10000"), available_margin=Decimal("5000"))
        self.positions: list[Position] = []
        self.open_orders: list[Order] = []
        self.placed: list[OrderIntent] = []
        self.fail_sides: set[OrderSide] = set()
        self.connect_error: Optional[Exception] = None
        self.cancel_all_error: Optional[Exception] = None
        self.subscribe_error: Optional[Exception] = None
        self.cancel_all_calls = 0
        self.subscriptions: dict[str, list] = {}
        self.unsubscribed: list[str] = []
        self.connect_calls = 0
        self.disconnect_calls = 0
        self._connected = False
        self._next_id = 0

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.connect_error is not None:
            raise self.connect_error
        self._connected = True

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self._connected = False

    async def get_markets(self) -> list[Market]:
        return list(self.markets)

    async def subscribe_orderbook(self, symbol, callback) -> None:
        if self.subscribe_error is not None:
            raise self.subscribe_error
        self.subscriptions.setdefault(symbol, []).append(callback)

    async def unsubscribe_orderbook(self, symbol) -> None:
        self.unsubscribed.append(symbol)
        self.subscriptions.pop(symbol, None)

    async def get_account(self) -> Account:
        return self.account

    async def get_positions(self) -> list[Position]:
        return list(self.positions)

    async def get_open_orders(self, symbol=None) -> list[Order]:
        return [o for o in self.open_orders if symbol is None or o.symbol == symbol]

    async def place_order(self, intent: OrderIntent) -> OrderResult:
        if intent.side in self.fail_sides:
            raise VenueRequestError("place_order", "rejected")
        self._next_id += 1
        order_id = str(self._next_id)
        self.placed.append(intent)
        self.open_orders.append(
            Order(
                order_id=order_id,
                symbol=intent.symbol,
                side=intent.side,
                price=intent.price,
                size=intent.size,
                reduce_only=intent.reduce_only,
            )
        )
        return OrderResult(order_id=order_id)

    async def cancel_order(self, order_id, symbol=None) -> None:
        self.open_orders = [o for o in self.open_orders if o.order_id != order_id]

    async def cancel_all_orders(self, symbol=None) -> None:
        self.cancel_all_calls += 1
        if self.cancel_all_error is not None:
            raise self.cancel_all_error
        self.open_orders = [
            o for o in self.open_orders if symbol is not None and o.symbol != symbol
        ]


class FakePriceFeed:
    def __init__(self) -> None:
        self.callbacks: list = []
        self.connect_error: Optional[Exception] = None
        self.connect_calls = 0
        self.disconnect_calls = 0
        # Emitted from connect() so warm-up can complete without a live stream.
        self.price_on_connect: Optional[Decimal] = None

    def on_sample(self, callback) -> None:
        self.callbacks.append(callback)

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.connect_error is not None:
            raise self.connect_error
        if self.price_on_connect is not None:
            self.push(self.price_on_connect, 0.0)

    async def disconnect(self) -> None:
        self.disconnect_calls += 1

    def push(self, price, timestamp_ms: float) -> None:
        for cb in list(self.callbacks):
            cb(Decimal(str(price)), timestamp_ms)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_exchange() -> FakeExchange:
    return FakeExchange()


@pytest.fixture
def fake_feed() -> FakePriceFeed:
    return FakePriceFeed()


@pytest.fixture
def make_settings():
    def _make(**overrides) -> MarketMakerSettings:
        values = {
            "exchange": "hyperliquid",
            "symbol": "BTC",
            "spread_bps": Decimal("10"),
            "take_profit_bps": Decimal("5"),
            "order_size_usd": Decimal("100"),
            "close_threshold_usd": Decimal("500"),
            "max_position_usd": Decimal("2000"),
            "warmup_seconds": 0,
            "fair_price_window_ms": 5000,
            "update_throttle_ms": 1000,
            "order_sync_interval_ms": 5000,
            "min_margin_ratio": Decimal("0.1"),
            "journal_dir": "",
        }
        values.update(overrides)
        return MarketMakerSettings(**values)

    return _make
