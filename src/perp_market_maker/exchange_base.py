"""Shared helpers for the venue adapters."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from .types import Market, Orderbook, OrderbookCallback

logger = logging.getLogger(__name__)


def safe_decimal(value, default: str = "0") -> Decimal:
    """Convert *value* to Decimal, returning *default* on failure."""
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError, ArithmeticError):
        return Decimal(default)


def field_of(obj: Any, name: str, default: Any = None) -> Any:
    """Read ``name`` from an SDK model or a plain dict."""
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


@dataclass
class _Subscription:
    callbacks: list[OrderbookCallback] = field(default_factory=list)
    handle: Any = None


class SubscriptionTable:
    """Orderbook subscriptions owned by one adapter, keyed by symbol.

    ``handle`` holds whatever the venue needs to tear the stream down
    (a subscription id, an SDK orderbook object).
    """

    def __init__(self) -> None:
        self._subs: dict[str, _Subscription] = {}

    def add(self, symbol: str, callback: OrderbookCallback) -> bool:
        """Register a callback. Returns True when this is a new symbol."""
        sub = self._subs.get(symbol)
        if sub is None:
            self._subs[symbol] = _Subscription(callbacks=[callback])
            return True
        sub.callbacks.append(callback)
        return False

    def set_handle(self, symbol: str, handle: Any) -> None:
        sub = self._subs.get(symbol)
        if sub is not None:
            sub.handle = handle

    def remove(self, symbol: str) -> Optional[Any]:
        """Drop all callbacks for *symbol* and return its venue handle."""
        sub = self._subs.pop(symbol, None)
        return sub.handle if sub is not None else None

    def __contains__(self, symbol: str) -> bool:
        return symbol in self._subs

    def symbols(self) -> list[str]:
        return list(self._subs)

    def dispatch(self, symbol: str, book: Orderbook) -> None:
        sub = self._subs.get(symbol)
        if sub is None:
            return
        for cb in list(sub.callbacks):
            try:
                cb(book)
            except Exception as exc:
                logger.error("Orderbook callback error for %s: %s", symbol, exc, exc_info=True)


def match_market(markets: list[Market], symbol: str) -> Optional[Market]:
    """Find a market by base asset (case-insensitive) or exact symbol."""
    wanted = symbol.strip()
    for market in markets:
        if market.base.lower() == wanted.lower() or market.symbol == wanted:
            return market
    return None
