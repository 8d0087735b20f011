from __future__ import annotations

from decimal import Decimal

import pytest
from pydantic import ValidationError

from perp_market_maker.config import MarketMakerSettings
from perp_market_maker.config_env import ExchangeName, MMEnvironment, PriceSource


class TestDefaults:
    def test_defaults(self):
        settings = MarketMakerSettings()
        assert settings.exchange == ExchangeName.HYPERLIQUID
        assert settings.environment == MMEnvironment.TESTNET
        assert settings.price_source == PriceSource.ORACLE
        assert settings.spread_bps == Decimal("10")
        assert settings.warmup_seconds == 10
        assert settings.max_consecutive_errors == 10

    def test_reads_prefixed_environment(self, monkeypatch):
        monkeypatch.setenv("MM_SYMBOL", "ETH")
        monkeypatch.setenv("MM_SPREAD_BPS", "20")
        monkeypatch.setenv("MM_EXCHANGE", "Extended")

        settings = MarketMakerSettings()

        assert settings.symbol == "ETH"
        assert settings.spread_bps == Decimal("20")
        assert settings.exchange == ExchangeName.EXTENDED

    def test_frozen(self):
        settings = MarketMakerSettings()
        with pytest.raises(ValidationError):
            settings.symbol = "ETH"


class TestValidation:
    def test_take_profit_cannot_exceed_spread(self):
        with pytest.raises(ValidationError, match="take_profit_bps"):
            MarketMakerSettings(spread_bps=Decimal("4"), take_profit_bps=Decimal("5"))

    def test_max_position_below_close_threshold_rejected(self):
        with pytest.raises(ValidationError, match="max_position_usd"):
            MarketMakerSettings(
                close_threshold_usd=Decimal("1000"),
                max_position_usd=Decimal("500"),
            )

    @pytest.mark.parametrize("field", ["spread_bps", "order_size_usd", "fair_price_window_ms"])
    def test_non_positive_rejected(self, field):
        with pytest.raises(ValidationError):
            MarketMakerSettings(**{field: 0})

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("oracle", PriceSource.ORACLE),
            ("BINANCE", PriceSource.ORACLE),
            ("primary-oracle", PriceSource.ORACLE),
            ("venue-mid", PriceSource.VENUE_MID),
            ("mid", PriceSource.VENUE_MID),
        ],
    )
    def test_price_source_aliases(self, raw, expected):
        assert MarketMakerSettings(price_source=raw).price_source == expected

    def test_unknown_price_source_rejected(self):
        with pytest.raises(ValidationError):
            MarketMakerSettings(price_source="coinbase")


class TestHelpers:
    def test_stale_tolerance_defaults_to_half_spread(self):
        assert MarketMakerSettings(spread_bps=Decimal("12")).effective_stale_tolerance_bps == Decimal("6")
        explicit = MarketMakerSettings(stale_tolerance_bps=Decimal("2"))
        assert explicit.effective_stale_tolerance_bps == Decimal("2")

    def test_oracle_symbol_derived_from_base(self):
        assert MarketMakerSettings(symbol="ETH-USD").effective_oracle_symbol == "ethusdt"
        assert MarketMakerSettings(oracle_symbol="SOLUSDT").effective_oracle_symbol == "solusdt"

    def test_missing_credentials_hyperliquid(self):
        settings = MarketMakerSettings(exchange="hyperliquid")
        assert settings.missing_credentials() == ["MM_HL_PRIVATE_KEY"]
        assert not settings.is_configured

        assert MarketMakerSettings(hl_private_key="0xabc").is_configured

    def test_missing_credentials_extended(self):
        settings = MarketMakerSettings(exchange="extended", vault_id="1", api_key="k")
        assert settings.missing_credentials() == ["MM_STARK_PRIVATE_KEY", "MM_STARK_PUBLIC_KEY"]

    def test_sanitized_drops_secrets(self):
        data = MarketMakerSettings(
            hl_private_key="0xsecret",
            stark_private_key="0xstark",
            api_key="key",
        ).sanitized()

        assert "hl_private_key" not in data
        assert "stark_private_key" not in data
        assert "api_key" not in data
        assert data["exchange"] == "hyperliquid"
        assert data["spread_bps"] == "10"
