from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Callable, Optional, Protocol, runtime_checkable


class OrderSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


class PositionSide(str, Enum):
    FLAT = "flat"
    LONG = "long"
    SHORT = "short"


# ---------------------------------------------------------------------------
# Venue records (normalised by the exchange adapters)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Market:
    id: str
    symbol: str
    base: str
    quote: str
    tick_size: Decimal
    lot_size: Decimal
    min_order_size: Decimal = Decimal("0")


@dataclass(frozen=True)
class PriceLevel:
    price: Decimal
    size: Decimal


@dataclass(frozen=True)
class Orderbook:
    symbol: str
    bids: tuple[PriceLevel, ...] = ()
    asks: tuple[PriceLevel, ...] = ()
    timestamp_ms: float = 0.0

    @property
    def best_bid(self) -> Optional[PriceLevel]:
        return self.bids[0] if self.bids else None

    @property
    def best_ask(self) -> Optional[PriceLevel]:
        return self.asks[0] if self.asks else None

    @property
    def mid(self) -> Optional[Decimal]:
        bid = self.best_bid
        ask = self.best_ask
        if bid is None or ask is None or bid.price <= 0 or ask.price <= 0:
            return None
        return (bid.price + ask.price) / 2


@dataclass(frozen=True)
class Account:
    equity: Decimal
    available_margin: Decimal


@dataclass(frozen=True)
class Position:
    """Venue position snapshot. ``size`` is always non-negative."""

    symbol: str
    side: PositionSide
    size: Decimal
    entry_price: Decimal
    unrealized_pnl: Optional[Decimal] = None
    mark_price: Optional[Decimal] = None

    @property
    def signed_size(self) -> Decimal:
        if self.side == PositionSide.SHORT:
            return -self.size
        if self.side == PositionSide.LONG:
            return self.size
        return Decimal("0")


@dataclass(frozen=True)
class Order:
    order_id: str
    symbol: str
    side: OrderSide
    price: Decimal
    size: Decimal
    reduce_only: bool = False


@dataclass(frozen=True)
class OrderIntent:
    symbol: str
    side: OrderSide
    price: Decimal
    size: Decimal
    reduce_only: bool = False
    post_only: bool = True


@dataclass(frozen=True)
class OrderResult:
    order_id: str


@dataclass(frozen=True)
class PriceSample:
    timestamp_ms: float
    price: Decimal


@dataclass
class FairPriceState:
    ema_value: Optional[Decimal] = None
    sample_count: int = 0
    warmup_deadline_ms: Optional[float] = None
    last_sample_ms: Optional[float] = None


OrderbookCallback = Callable[[Orderbook], None]
SampleCallback = Callable[[Decimal, float], None]


# ---------------------------------------------------------------------------
# Collaborator contracts
# ---------------------------------------------------------------------------

@runtime_checkable
class ExchangeAdapter(Protocol):
    name: str

    @property
    def connected(self) -> bool: ...
    async def connect(self) -> None: ...
    async def disconnect(self) -> None: ...
    async def get_markets(self) -> list[Market]: ...
    async def subscribe_orderbook(self, symbol: str, callback: OrderbookCallback) -> None: ...
    async def unsubscribe_orderbook(self, symbol: str) -> None: ...
    async def get_account(self) -> Account: ...
    async def get_positions(self) -> list[Position]: ...
    async def get_open_orders(self, symbol: Optional[str] = None) -> list[Order]: ...
    async def place_order(self, intent: OrderIntent) -> OrderResult: ...
    async def cancel_order(self, order_id: str, symbol: Optional[str] = None) -> None: ...
    async def cancel_all_orders(self, symbol: Optional[str] = None) -> None: ...


@runtime_checkable
class PriceFeed(Protocol):
    async def connect(self) -> None: ...
    def on_sample(self, callback: SampleCallback) -> None: ...
    async def disconnect(self) -> None: ...


@dataclass
class SampleListeners:
    """Callback fan-out shared by price feed implementations."""

    callbacks: list[SampleCallback] = field(default_factory=list)

    def add(self, callback: SampleCallback) -> None:
        self.callbacks.append(callback)

    def emit(self, price: Decimal, timestamp_ms: float) -> None:
        for cb in list(self.callbacks):
            cb(price, timestamp_ms)
