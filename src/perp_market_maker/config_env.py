"""Environment resolution and enums for market maker configuration."""
from __future__ import annotations

import os
from enum import Enum
from pathlib import Path

# ---------------------------------------------------------------------------
# Env file resolution
# ---------------------------------------------------------------------------

def _find_project_root() -> Path:
    current = Path(__file__).resolve()
    for parent in [current] + list(current.parents):
        if (parent / "pyproject.toml").exists() or (parent / ".git").exists():
            return parent
    return current.parents[2]


PROJECT_ROOT = _find_project_root()


def _resolve_env_file() -> Path:
    env_file = os.getenv("ENV", ".env")
    candidates = []
    if env_file:
        if not env_file.startswith("."):
            candidates.append(f".{env_file}")
        candidates.append(env_file)
    else:
        candidates.append(".env")

    for candidate in candidates:
        path = Path(candidate)
        if not path.is_absolute():
            path = PROJECT_ROOT / candidate
        if path.exists():
            return path

    return PROJECT_ROOT / ".env"


ENV_FILE = _resolve_env_file()


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class MMEnvironment(str, Enum):
    TESTNET = "testnet"
    MAINNET = "mainnet"


class ExchangeName(str, Enum):
    EXTENDED = "extended"
    HYPERLIQUID = "hyperliquid"


class PriceSource(str, Enum):
    """Where fair-price samples come from.

    ORACLE:    external reference venue (Binance bookTicker mid).
    VENUE_MID: mid of the trading venue's own orderbook.
    """

    ORACLE = "oracle"
    VENUE_MID = "venue_mid"
