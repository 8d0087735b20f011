"""Exception hierarchy for the perp market maker."""
from __future__ import annotations


class MarketMakerError(Exception):
    """Base class for all market maker errors."""


class SetupFailure(MarketMakerError):
    """Fatal failure while connecting or warming up."""


class MarketNotFound(SetupFailure, LookupError):
    def __init__(self, symbol: str) -> None:
        super().__init__(f"Market not found for symbol: {symbol}")
        self.symbol = symbol


class MissingCredentials(SetupFailure):
    def __init__(self, exchange: str, missing: list[str]) -> None:
        super().__init__(
            f"Missing credentials for {exchange}: {', '.join(missing)}"
        )
        self.exchange = exchange
        self.missing = missing


class PriceFeedConnectError(SetupFailure):
    """Price feed could not be connected within its retry budget."""


class VenueRequestError(MarketMakerError):
    """A venue call failed or was rejected. Recoverable."""

    def __init__(self, operation: str, reason: str) -> None:
        super().__init__(f"{operation} failed: {reason}")
        self.operation = operation
        self.reason = reason
