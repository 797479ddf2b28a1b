"""
settings.py - Collector configuration

Endpoints, tunables and credentials for the ETHval data collector.
Every tunable can be overridden from the environment (or a .env file).
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# ==============================================================================
# API Configuration
# ==============================================================================
BINANCE_SPOT_API = "https://api.binance.com/api/v3"
BINANCE_FUTURES_API = "https://fapi.binance.com/fapi/v1"
DEFILLAMA_API = "https://api.llama.fi"
DEFILLAMA_STABLECOINS_API = "https://stablecoins.llama.fi"
DEFILLAMA_YIELDS_API = "https://yields.llama.fi"
BEACONCHAIN_API = "https://beaconcha.in/api/v1"
LIDO_API = "https://eth-api.lido.fi/v1"
ETHERSCAN_API = "https://api.etherscan.io/api"
ULTRASOUND_API = "https://ultrasound.money/api/v2"
ALTERNATIVE_ME_API = "https://api.alternative.me"
COINGECKO_BASE = "https://api.coingecko.com/api/v3"
GROWTHEPIE_API = "https://api.growthepie.xyz/v1"

# Lido stETH pool on DefiLlama yields
LIDO_STETH_POOL = "747c1d2a-c668-4682-b9f9-296708a3dd90"

HEADERS = {
    "User-Agent": "ETHval/6.0",
    "Accept": "application/json",
}

# Secondary-key dimensions (fetched one at a time)
L2_TVL_CHAINS = ["Arbitrum", "Optimism", "Base", "zkSync Era", "Linea", "Scroll", "Blast"]
L2_TX_CHAINS = [
    "arbitrum", "optimism", "base", "zksync_era", "linea", "scroll", "blast",
    "manta", "mode", "zora", "polygon_zkevm", "starknet",
]
TVL_PROTOCOLS = ["lido", "aave", "makerdao", "uniswap", "eigenlayer"]
DEX_PROTOCOLS = ["uniswap", "curve-dex", "balancer"]


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


@dataclass(frozen=True)
class CollectorSettings:
    """Run-wide tunables. Built once at startup."""
    request_timeout: int = 30
    max_retries: int = 3
    backoff_sec: float = 2.0
    chunk_size: int = 500
    window_days: int = 1095
    task_pause: float = 0.5
    slow_pause: float = 2.0
    dimension_pause: float = 0.3

    @classmethod
    def from_env(cls) -> "CollectorSettings":
        return cls(
            request_timeout=_env_int("COLLECTOR_TIMEOUT_SEC", 30),
            max_retries=_env_int("COLLECTOR_MAX_RETRIES", 3),
            backoff_sec=_env_float("COLLECTOR_BACKOFF_SEC", 2.0),
            chunk_size=_env_int("COLLECTOR_CHUNK_SIZE", 500),
            window_days=_env_int("COLLECTOR_WINDOW_DAYS", 1095),
            task_pause=_env_float("COLLECTOR_TASK_PAUSE_SEC", 0.5),
            slow_pause=_env_float("COLLECTOR_SLOW_PAUSE_SEC", 2.0),
            dimension_pause=_env_float("COLLECTOR_DIMENSION_PAUSE_SEC", 0.3),
        )


@dataclass(frozen=True)
class Credentials:
    database_url: str
    database_password: str
    etherscan_api_key: Optional[str] = None


def load_credentials() -> Credentials:
    """Read store credentials from the environment; missing ones abort the run."""
    db_url = os.getenv("DATABASE_URL", "").strip()
    db_password = os.getenv("DATABASE_PASSWORD", "").strip()

    missing = [name for name, val in (("DATABASE_URL", db_url), ("DATABASE_PASSWORD", db_password)) if not val]
    if missing:
        raise SystemExit(
            f"[ERROR] Missing {' or '.join(missing)} environment variable.\n"
            "Set them in the environment or in a .env file next to the collector."
        )

    return Credentials(
        database_url=db_url,
        database_password=db_password,
        etherscan_api_key=os.getenv("ETHERSCAN_API_KEY") or None,
    )
