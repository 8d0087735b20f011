"""
Market Maker Configuration

Loads MM_ prefixed environment variables using pydantic-settings.
Defaults to testnet; requires explicit MM_ENVIRONMENT=mainnet for production.
Settings are frozen once resolved; CLI overrides are passed as init kwargs.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .config_env import ENV_FILE, ExchangeName, MMEnvironment, PriceSource

_PRICE_SOURCE_ALIASES = {
    "binance": PriceSource.ORACLE.value,
    "primary_oracle": PriceSource.ORACLE.value,
    "mid": PriceSource.VENUE_MID.value,
}

# Minimum time between margin checks while running.
MARGIN_CHECK_INTERVAL_MS = 10_000


class MarketMakerSettings(BaseSettings):
    """Configuration for the perp market maker."""

    model_config = SettingsConfigDict(
        env_prefix="MM_",
        env_file=ENV_FILE,
        extra="ignore",
        frozen=True,
    )

    # --- Venue selection ---
    exchange: ExchangeName = Field(
        default=ExchangeName.HYPERLIQUID,
        description="Venue to quote on (extended or hyperliquid)",
    )
    environment: MMEnvironment = Field(
        default=MMEnvironment.TESTNET,
        description="Network environment (testnet or mainnet)",
    )
    symbol: str = Field(
        default="BTC",
        min_length=1,
        description="Base asset or full market symbol (e.g. BTC or BTC-USD)",
    )
    price_source: PriceSource = Field(
        default=PriceSource.ORACLE,
        description="Fair price source: 'oracle' (Binance mid) or 'venue_mid'",
    )

    # --- Quoting ---
    spread_bps: Decimal = Field(
        default=Decimal("10"),
        gt=0,
        description=(
            "Quoted bid/ask spread in basis points. "
            "Each side sits half of this away from fair."
        ),
    )
    take_profit_bps: Decimal = Field(
        default=Decimal("5"),
        gt=0,
        description="Distance from fair for the reducing quote in close mode (bps)",
    )
    order_size_usd: Decimal = Field(
        default=Decimal("100"),
        gt=0,
        description="Notional (USD) per quoted side",
    )
    stale_tolerance_bps: Optional[Decimal] = Field(
        default=None,
        ge=0,
        description=(
            "Max deviation of a resting order from its target before it is "
            "replaced. Defaults to half of spread_bps."
        ),
    )

    # --- Exposure ---
    close_threshold_usd: Decimal = Field(
        default=Decimal("500"),
        gt=0,
        description="Absolute position notional that switches quoting to close mode",
    )
    max_position_usd: Decimal = Field(
        default=Decimal("2000"),
        gt=0,
        description="Absolute position notional above which no exposure-increasing quote is placed",
    )

    # --- Fair price ---
    warmup_seconds: int = Field(
        default=10,
        ge=0,
        description="Seconds of price samples required before quoting",
    )
    fair_price_window_ms: int = Field(
        default=5_000,
        gt=0,
        description="EMA time constant in milliseconds",
    )
    fair_price_max_age_ms: int = Field(
        default=30_000,
        ge=0,
        description=(
            "Fair price is withheld when the last sample is older than this. "
            "0 disables the check."
        ),
    )
    oracle_ws_url: str = Field(
        default="wss://fstream.binance.com/ws",
        description="Base WebSocket URL of the oracle bookTicker stream",
    )
    oracle_symbol: str = Field(
        default="",
        description="Oracle stream symbol; derived as <symbol>usdt when empty",
    )
    price_feed_connect_retries: int = Field(
        default=3,
        ge=1,
        description="Connection attempts for the price feed before startup fails",
    )
    price_feed_retry_delay_s: float = Field(
        default=2.0,
        ge=0,
        description="Delay between price feed (re)connection attempts",
    )

    # --- Loop timing ---
    update_throttle_ms: int = Field(
        default=1_000,
        gt=0,
        description="Minimum period between quoting iterations",
    )
    order_sync_interval_ms: int = Field(
        default=5_000,
        gt=0,
        description="Period of resting-order and position re-sync",
    )

    # --- Risk ---
    min_margin_ratio: Decimal = Field(
        default=Decimal("0.1"),
        ge=0,
        le=1,
        description="Pause quoting when available margin / equity drops below this",
    )
    max_consecutive_errors: int = Field(
        default=10,
        ge=1,
        description="Quoting iterations that may fail in a row before pausing",
    )

    # --- Runtime ---
    enabled: bool = Field(default=True, description="Kill switch; false exits immediately")
    log_level: str = Field(default="INFO", description="Root log level")
    status_log_interval_s: float = Field(
        default=10.0,
        gt=0,
        description="Period of the STATUS log line",
    )
    shutdown_timeout_s: float = Field(
        default=30.0,
        gt=0,
        description="Upper bound for the graceful stop sequence",
    )
    journal_dir: str = Field(
        default="data/mm_journal",
        description="Directory for JSONL event journals; empty disables the journal",
    )
    journal_max_size_mb: float = Field(
        default=50.0,
        ge=0,
        description="Journal rotation size (0 disables rotation)",
    )

    # --- Extended credentials ---
    vault_id: str = Field(default="", description="Extended vault ID")
    stark_private_key: str = Field(default="", description="Extended Stark private key")
    stark_public_key: str = Field(default="", description="Extended Stark public key")
    api_key: str = Field(default="", description="Extended API key")

    # --- Hyperliquid credentials ---
    hl_private_key: str = Field(default="", description="Hyperliquid signer private key")
    hl_account_address: str = Field(
        default="",
        description="Hyperliquid account address (defaults to the signer address)",
    )

    # --- Helpers ---

    @property
    def effective_stale_tolerance_bps(self) -> Decimal:
        if self.stale_tolerance_bps is not None:
            return self.stale_tolerance_bps
        return self.spread_bps / 2

    @property
    def effective_oracle_symbol(self) -> str:
        if self.oracle_symbol:
            return self.oracle_symbol.lower()
        base = self.symbol.split("-")[0].split("/")[0]
        return f"{base.lower()}usdt"

    def missing_credentials(self) -> list[str]:
        """Names of the env vars the selected exchange still needs."""
        if self.exchange == ExchangeName.EXTENDED:
            required = {
                "MM_VAULT_ID": self.vault_id,
                "MM_STARK_PRIVATE_KEY": self.stark_private_key,
                "MM_STARK_PUBLIC_KEY": self.stark_public_key,
                "MM_API_KEY": self.api_key,
            }
        else:
            required = {"MM_HL_PRIVATE_KEY": self.hl_private_key}
        return [name for name, value in required.items() if not value]

    @property
    def is_configured(self) -> bool:
        return not self.missing_credentials()

    @property
    def endpoint_config(self) -> Any:
        from x10.perpetual.configuration import MAINNET_CONFIG, TESTNET_CONFIG

        if self.environment == MMEnvironment.MAINNET:
            return MAINNET_CONFIG
        return TESTNET_CONFIG

    def sanitized(self) -> dict[str, Any]:
        """Settings without secrets, for logs and the journal."""
        return self.model_dump(
            mode="json",
            exclude={
                "vault_id",
                "stark_private_key",
                "stark_public_key",
                "api_key",
                "hl_private_key",
            },
        )

    @field_validator("environment", "exchange", mode="before")
    @classmethod
    def _normalise_enum(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("price_source", mode="before")
    @classmethod
    def _normalise_price_source(cls, v):
        if isinstance(v, str):
            v = v.strip().lower().replace("-", "_")
            return _PRICE_SOURCE_ALIASES.get(v, v)
        return v

    @model_validator(mode="after")
    def _check_invariants(self) -> "MarketMakerSettings":
        if self.take_profit_bps > self.spread_bps:
            raise ValueError(
                f"take_profit_bps ({self.take_profit_bps}) must not exceed "
                f"spread_bps ({self.spread_bps})"
            )
        if self.max_position_usd < self.close_threshold_usd:
            raise ValueError(
                f"max_position_usd ({self.max_position_usd}) must be >= "
                f"close_threshold_usd ({self.close_threshold_usd})"
            )
        return self
