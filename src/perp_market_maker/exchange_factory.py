"""Builds the venue adapter and price feed selected by the settings."""
from __future__ import annotations

import logging
from typing import Optional

from .clock import Clock
from .config import MarketMakerSettings
from .config_env import ExchangeName, MMEnvironment, PriceSource
from .errors import MissingCredentials
from .types import ExchangeAdapter, PriceFeed

logger = logging.getLogger(__name__)


def _hyperliquid_base_url(environment: MMEnvironment) -> str:
    from hyperliquid.utils import constants

    if environment == MMEnvironment.MAINNET:
        return constants.MAINNET_API_URL
    return constants.TESTNET_API_URL


def create_exchange(settings: MarketMakerSettings) -> ExchangeAdapter:
    missing = settings.missing_credentials()
    if missing:
        raise MissingCredentials(settings.exchange.value, missing)
    logger.info("Using %s adapter (%s)", settings.exchange.value, settings.environment.value)

    if settings.exchange == ExchangeName.EXTENDED:
        from .exchange_extended import ExtendedExchange

        return ExtendedExchange(
            settings.endpoint_config,
            vault_id=settings.vault_id,
            stark_private_key=settings.stark_private_key,
            stark_public_key=settings.stark_public_key,
            api_key=settings.api_key,
        )

    from .exchange_hyperliquid import HyperliquidExchange

    return HyperliquidExchange(
        _hyperliquid_base_url(settings.environment),
        private_key=settings.hl_private_key,
        account_address=settings.hl_account_address,
    )


def create_price_feed(
    settings: MarketMakerSettings,
    exchange: ExchangeAdapter,
    *,
    clock: Optional[Clock] = None,
) -> PriceFeed:
    from .price_feed import BinancePriceFeed, VenueMidPriceFeed

    if settings.price_source == PriceSource.VENUE_MID:
        return VenueMidPriceFeed(exchange, settings.symbol, clock=clock)
    return BinancePriceFeed(
        settings.effective_oracle_symbol,
        ws_url=settings.oracle_ws_url,
        connect_retries=settings.price_feed_connect_retries,
        retry_delay_s=settings.price_feed_retry_delay_s,
        clock=clock,
    )
