"""
fallbacks.py - Derived and estimated datasets

Used when a primary source fails, returns nothing usable, or does not exist
for free. Derivations compute a dataset from other stored datasets; trend
estimates generate a deterministic piecewise trend with a small periodic
perturbation. Output is always tagged with a provenance distinct from the
real sources ("calculated", "estimated", ...) and goes through the same
quality rules as observed data.
"""

import math
from datetime import date, timedelta
from typing import Dict, NamedTuple, Optional, Tuple, Union

import numpy as np
import pandas as pd

from normalizers import records_frame

CALCULATED = "calculated"
ESTIMATED = "estimated"

# Realized volatility: population std of daily log returns over the 30 closes
# preceding each day, annualized by sqrt(365), in percent.
VOLATILITY_WINDOW = 30
ANNUALIZATION_DAYS = 365

# NVT: market cap over on-exchange USD volume, with a fixed circulating supply
NVT_SUPPLY = 120_400_000

# Share of protocol fees burnt (EIP-1559 base fee)
BURN_SHARE = 0.80

ACTIVE_ADDRESS_PER_TX = 0.4
L2_ACTIVE_ADDRESS_PER_TX = 0.3

# Fraction of Ethereum TVL denominated in ETH, and the price used when a day has none
ETH_SHARE_OF_TVL = 0.3
DEFAULT_ETH_PRICE = 3000.0

FEAR_GREED_LOOKBACK = 30


def _numeric(df: pd.DataFrame, *columns: str) -> pd.DataFrame:
    df = df.copy()
    for col in columns:
        df[col] = pd.to_numeric(df[col], errors="coerce")
    return df


def _sorted_prices(prices: pd.DataFrame, *columns: str) -> pd.DataFrame:
    df = _numeric(prices, *columns).dropna(subset=list(columns))
    return df.sort_values("date", kind="stable").reset_index(drop=True)


# ==============================================================================
# Derivations from stored datasets
# ==============================================================================
def derive_volatility(prices: pd.DataFrame, window: int = VOLATILITY_WINDOW) -> pd.DataFrame:
    """prices(date, close) -> date, volatility_30d."""
    columns = ["date", "volatility_30d", "source"]
    if prices.empty:
        return records_frame([], columns)
    df = _sorted_prices(prices, "close")
    if len(df) <= window:
        return records_frame([], columns)

    log_returns = np.log(df["close"] / df["close"].shift(1))
    # Returns inside the window that ends the day before
    std = log_returns.shift(1).rolling(window - 1).std(ddof=0)
    df["volatility_30d"] = (std * np.sqrt(ANNUALIZATION_DAYS) * 100).round(2)
    df["source"] = CALCULATED
    return df.iloc[window:].dropna(subset=["volatility_30d"])[columns].reset_index(drop=True)


def derive_nvt(prices: pd.DataFrame, supply: float = NVT_SUPPLY) -> pd.DataFrame:
    """prices(date, close, volume) -> date, nvt_ratio, market_cap, tx_volume."""
    columns = ["date", "nvt_ratio", "market_cap", "tx_volume", "source"]
    if prices.empty:
        return records_frame([], columns)
    df = _sorted_prices(prices, "close", "volume")
    df = df[df["volume"] > 0].copy()
    if df.empty:
        return records_frame([], columns)

    df["market_cap"] = df["close"] * supply
    df["tx_volume"] = df["volume"] * df["close"]
    df["nvt_ratio"] = (df["market_cap"] / df["tx_volume"]).round(2)
    df["source"] = CALCULATED
    return df[columns].reset_index(drop=True)


def derive_gas_burn(fees: pd.DataFrame, prices: pd.DataFrame, utilization: Dict[str, float],
                    start: str, end: str) -> pd.DataFrame:
    """ETH burnt per day = fees * BURN_SHARE / close, for start <= date <= end."""
    columns = ["date", "eth_burnt", "avg_gas_price_gwei", "gas_utilization", "transaction_count", "source"]
    if fees.empty or prices.empty:
        return records_frame([], columns)

    price_map = _numeric(prices, "close").set_index("date")["close"].to_dict()
    rows = []
    for _, f in _numeric(fees, "fees").iterrows():
        day = f["date"]
        if day < start or day > end:
            continue
        price = price_map.get(day)
        if not price or pd.isna(price) or pd.isna(f["fees"]) or not f["fees"]:
            continue
        rows.append({
            "date": day,
            "eth_burnt": round(f["fees"] * BURN_SHARE / price, 2),
            "avg_gas_price_gwei": None,
            "gas_utilization": utilization.get(day),
            "transaction_count": None,
            "source": "etherscan" if day in utilization else CALCULATED,
        })
    return records_frame(rows, columns)


def derive_active_addresses(txs: pd.DataFrame, per_tx: float = ACTIVE_ADDRESS_PER_TX) -> pd.DataFrame:
    """transactions(date, tx_count) -> date, active_addresses (estimated)."""
    columns = ["date", "active_addresses", "source"]
    if txs.empty:
        return records_frame([], columns)
    df = _numeric(txs, "tx_count").dropna(subset=["tx_count"])
    df["active_addresses"] = np.floor(df["tx_count"] * per_tx).astype("int64")
    df["source"] = ESTIMATED
    return df[columns].reset_index(drop=True)


def derive_l2_addresses(l2_txs: pd.DataFrame, per_tx: float = L2_ACTIVE_ADDRESS_PER_TX) -> pd.DataFrame:
    """l2_transactions(date, chain, tx_count) -> date, chain, active_addresses."""
    columns = ["date", "chain", "active_addresses", "source"]
    if l2_txs.empty:
        return records_frame([], columns)
    df = _numeric(l2_txs, "tx_count").dropna(subset=["tx_count"])
    df["active_addresses"] = np.floor(df["tx_count"] * per_tx).astype("int64")
    df["source"] = ESTIMATED
    return df[columns].reset_index(drop=True)


def derive_eth_in_defi(tvl: pd.DataFrame, prices: pd.DataFrame,
                       eth_share: float = ETH_SHARE_OF_TVL,
                       default_price: float = DEFAULT_ETH_PRICE) -> pd.DataFrame:
    """ETH locked = TVL * eth_share / close (default_price when the day has no close)."""
    columns = ["date", "eth_locked", "source"]
    if tvl.empty:
        return records_frame([], columns)
    price_map = {}
    if not prices.empty:
        price_map = _numeric(prices, "close").dropna(subset=["close"]).set_index("date")["close"].to_dict()

    df = _numeric(tvl, "tvl").dropna(subset=["tvl"])
    close = df["date"].map(price_map).fillna(default_price)
    df["eth_locked"] = (df["tvl"] * eth_share / close).round(2)
    df["source"] = ESTIMATED
    return df[columns].reset_index(drop=True)


def classify_fear_greed(value: int) -> str:
    if value < 25:
        return "Extreme Fear"
    if value < 40:
        return "Fear"
    if value < 60:
        return "Neutral"
    if value < 75:
        return "Greed"
    return "Extreme Greed"


def fear_greed_from_change(change_pct: float) -> int:
    """Map a 30-day price change (%) onto the 5..95 index scale."""
    c = change_pct
    if c < -30:
        value = max(10.0, 20 + (c + 30) / 3)
    elif c < -15:
        value = 20 + (c + 30) / 15 * 20
    elif c < -5:
        value = 40 + (c + 15) / 10 * 10
    elif c < 5:
        value = 45 + (c + 5) / 10 * 10
    elif c < 15:
        value = 55 + (c - 5) / 10 * 10
    elif c < 30:
        value = 65 + (c - 15) / 15 * 15
    else:
        value = 80 + min(15, (c - 30) / 20 * 15)
    return int(max(5, min(95, round(value))))


def derive_fear_greed(prices: pd.DataFrame, lookback: int = FEAR_GREED_LOOKBACK) -> pd.DataFrame:
    """Estimate the Fear & Greed index from the trailing price change."""
    columns = ["date", "value", "classification", "source"]
    if prices.empty:
        return records_frame([], columns)
    df = _sorted_prices(prices, "close")
    if len(df) < lookback:
        print("  [Fallback] Not enough price data for Fear & Greed estimate")
        return records_frame([], columns)

    rows = []
    closes = df["close"].tolist()
    for i in range(lookback, len(df)):
        change = (closes[i] - closes[i - lookback]) / closes[i - lookback] * 100
        value = fear_greed_from_change(change)
        rows.append({
            "date": df.at[i, "date"],
            "value": value,
            "classification": classify_fear_greed(value),
            "source": ESTIMATED,
        })
    return records_frame(rows, columns)


# ==============================================================================
# Trend estimates
# ==============================================================================
class Breakpoint(NamedTuple):
    """Anchor of a piecewise trend; `when` is a date or days before the run date."""
    when: Union[date, int]
    value: float


class TrendProfile(NamedTuple):
    breakpoints: Tuple[Breakpoint, ...]
    floor: float = 0.0
    # (frequency per day index, amplitude as a fraction of the trend)
    noise: Tuple[Tuple[float, float], ...] = ()


# Exchange balances: ~24M ETH before the FTX collapse (Nov 2022), a sharp
# drain to ~18M by mid-2023, then a slow slide to ~15M today.
EXCHANGE_RESERVE_PROFILE = TrendProfile(
    breakpoints=(
        Breakpoint(date(2022, 11, 1), 24_000_000),
        Breakpoint(date(2023, 6, 1), 18_000_000),
        Breakpoint(0, 15_000_000),
    ),
    floor=14_000_000,
    noise=((0.3, 0.005), (0.07, 0.005)),
)

# Post-merge supply drifts ~100 ETH/day; anchored on 120.4M today.
ETH_SUPPLY_PROFILE = TrendProfile(
    breakpoints=(
        Breakpoint(1095, 120_400_000 + 1095 * 100),
        Breakpoint(0, 120_400_000),
    ),
)


def _anchor(bp: Breakpoint, run_date: date) -> date:
    return bp.when if isinstance(bp.when, date) else run_date - timedelta(days=bp.when)


def trend_value(profile: TrendProfile, day: date, run_date: date) -> float:
    """Linear interpolation between breakpoints, flat outside them."""
    points = sorted((_anchor(bp, run_date), bp.value) for bp in profile.breakpoints)
    if day <= points[0][0]:
        return points[0][1]
    for (d0, v0), (d1, v1) in zip(points, points[1:]):
        if day <= d1:
            span = (d1 - d0).days
            progress = (day - d0).days / span if span else 1.0
            return v0 + (v1 - v0) * progress
    return points[-1][1]


def estimate_trend(profile: TrendProfile, column: str, run_date: date, days: int,
                   places: Optional[int] = None) -> pd.DataFrame:
    """One estimated record per day for the `days` days ending at run_date."""
    rows = []
    for i in range(days):
        day = run_date - timedelta(days=i)
        base = trend_value(profile, day, run_date)
        noise = sum(math.sin(i * freq) * amp for freq, amp in profile.noise) * base
        value = max(profile.floor, base + noise)
        rows.append({
            "date": day.isoformat(),
            column: int(round(value)) if places is None else round(value, places),
            "source": ESTIMATED,
        })
    return records_frame(rows, ["date", column, "source"])
