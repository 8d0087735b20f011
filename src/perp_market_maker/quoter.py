"""
Quote Generator

Turns (fair price, signed exposure notional) into a two-sided ``Quote``:

- normal mode: each side sits ``spread_bps / 2`` from fair, so the quoted
  spread equals ``spread_bps``;
- close mode (|notional| >= close threshold): only the side that reduces
  the position is quoted, ``take_profit_bps`` from fair, reduce-only, and
  sized so it can never flip the position;
- at max position: the side that would grow the position is suppressed.

Bids round down and asks round up to the tick so rounding never moves a
quote inside the intended edge.  Sizes round down to the lot.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_DOWN, ROUND_UP, Decimal
from enum import Enum
from typing import Optional

from .exposure import close_mode_active, position_at_max
from .types import Market, OrderIntent, OrderSide

logger = logging.getLogger(__name__)

_BPS = Decimal("10000")
_ZERO = Decimal("0")


class QuoteMode(str, Enum):
    NORMAL = "normal"
    CLOSE = "close"


@dataclass(frozen=True)
class Quote:
    bid_price: Optional[Decimal]
    bid_size: Optional[Decimal]
    ask_price: Optional[Decimal]
    ask_size: Optional[Decimal]
    bid_reduce_only: bool = False
    ask_reduce_only: bool = False
    mode: QuoteMode = QuoteMode.NORMAL
    fair_price: Optional[Decimal] = None

    @property
    def has_bid(self) -> bool:
        return self.bid_price is not None and self.bid_size is not None

    @property
    def has_ask(self) -> bool:
        return self.ask_price is not None and self.ask_size is not None


def round_to_tick(price: Decimal, tick_size: Decimal, side: OrderSide) -> Decimal:
    """Round to the tick: down for bids, up for asks."""
    if tick_size <= 0:
        return price
    rounding = ROUND_UP if side == OrderSide.SELL else ROUND_DOWN
    return (price / tick_size).to_integral_value(rounding=rounding) * tick_size


def round_to_lot(size: Decimal, lot_size: Decimal) -> Decimal:
    if lot_size <= 0:
        return size
    return (size / lot_size).to_integral_value(rounding=ROUND_DOWN) * lot_size


class QuoteGenerator:
    """Stateless apart from the bound market's tick/lot metadata."""

    def __init__(self, settings: object) -> None:
        self._spread_bps = Decimal(str(settings.spread_bps))
        self._take_profit_bps = Decimal(str(settings.take_profit_bps))
        self._order_size_usd = Decimal(str(settings.order_size_usd))
        self._close_threshold = Decimal(str(settings.close_threshold_usd))
        self._max_position = Decimal(str(settings.max_position_usd))
        stale = getattr(settings, "stale_tolerance_bps", None)
        self._stale_tolerance_bps = (
            Decimal(str(stale)) if stale is not None else self._spread_bps / 2
        )
        self._tick_size = _ZERO
        self._lot_size = _ZERO
        self._min_order_size = _ZERO

    def set_market(self, market: Market) -> None:
        self._tick_size = market.tick_size
        self._lot_size = market.lot_size
        self._min_order_size = market.min_order_size
        logger.info(
            "Quoter bound to %s: tick=%s lot=%s min_size=%s",
            market.symbol,
            market.tick_size,
            market.lot_size,
            market.min_order_size,
        )

    @property
    def stale_tolerance_bps(self) -> Decimal:
        return self._stale_tolerance_bps

    # ------------------------------------------------------------------
    # Quote construction
    # ------------------------------------------------------------------

    def _offset_bps(self, mode: QuoteMode) -> Decimal:
        if mode == QuoteMode.CLOSE:
            return self._take_profit_bps
        return self._spread_bps / 2

    def _size_for(self, notional_usd: Decimal, price: Decimal) -> Optional[Decimal]:
        if price <= 0 or notional_usd <= 0:
            return None
        size = round_to_lot(notional_usd / price, self._lot_size)
        if size <= 0 or size < self._min_order_size:
            return None
        return size

    def generate_quotes(self, fair_price: Decimal, signed_notional: Decimal) -> Quote:
        fair = Decimal(str(fair_price))
        notional = Decimal(str(signed_notional))
        mode = (
            QuoteMode.CLOSE
            if close_mode_active(notional, self._close_threshold)
            else QuoteMode.NORMAL
        )
        offset = self._offset_bps(mode) / _BPS
        bid_px = round_to_tick(fair * (1 - offset), self._tick_size, OrderSide.BUY)
        ask_px = round_to_tick(fair * (1 + offset), self._tick_size, OrderSide.SELL)
        if bid_px >= ask_px and self._tick_size > 0:
            # Degenerate tick relative to offset: force one tick of width.
            ask_px = bid_px + self._tick_size

        quote_bid = True
        quote_ask = True
        bid_reduce_only = False
        ask_reduce_only = False
        bid_usd = self._order_size_usd
        ask_usd = self._order_size_usd

        if mode == QuoteMode.CLOSE:
            close_usd = min(self._order_size_usd, abs(notional))
            if notional > 0:
                quote_bid = False
                ask_usd = close_usd
            else:
                quote_ask = False
                bid_usd = close_usd
            bid_reduce_only = True
            ask_reduce_only = True
        elif position_at_max(notional, self._max_position):
            if notional > 0:
                quote_bid = False
                bid_reduce_only = True
            elif notional < 0:
                quote_ask = False
                ask_reduce_only = True

        bid_size = self._size_for(bid_usd, bid_px) if quote_bid else None
        ask_size = self._size_for(ask_usd, ask_px) if quote_ask else None

        return Quote(
            bid_price=bid_px if bid_size is not None else None,
            bid_size=bid_size,
            ask_price=ask_px if ask_size is not None else None,
            ask_size=ask_size,
            bid_reduce_only=bid_reduce_only,
            ask_reduce_only=ask_reduce_only,
            mode=mode,
            fair_price=fair,
        )

    def target_price(
        self,
        side: OrderSide,
        fair_price: Decimal,
        signed_notional: Decimal = _ZERO,
    ) -> Optional[Decimal]:
        quote = self.generate_quotes(fair_price, signed_notional)
        return quote.bid_price if side == OrderSide.BUY else quote.ask_price

    def is_order_stale(
        self,
        order_price: Decimal,
        side: OrderSide,
        fair_price: Decimal,
        signed_notional: Decimal = _ZERO,
    ) -> bool:
        """True when the order no longer matches what would be quoted now.

        A side that would not be quoted at all is always stale.
        """
        target = self.target_price(side, fair_price, signed_notional)
        if target is None or target <= 0:
            return True
        deviation_bps = abs(Decimal(str(order_price)) - target) / target * _BPS
        return deviation_bps > self._stale_tolerance_bps

    @staticmethod
    def quote_to_orders(quote: Quote, symbol: str) -> list[OrderIntent]:
        orders: list[OrderIntent] = []
        if quote.has_bid:
            orders.append(
                OrderIntent(
                    symbol=symbol,
                    side=OrderSide.BUY,
                    price=quote.bid_price,
                    size=quote.bid_size,
                    reduce_only=quote.bid_reduce_only,
                )
            )
        if quote.has_ask:
            orders.append(
                OrderIntent(
                    symbol=symbol,
                    side=OrderSide.SELL,
                    price=quote.ask_price,
                    size=quote.ask_size,
                    reduce_only=quote.ask_reduce_only,
                )
            )
        return orders
