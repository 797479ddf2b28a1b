"""
normalizers.py - Raw payload -> canonical daily records

Every normalizer returns a DataFrame with a `date` column (YYYY-MM-DD, UTC),
the dataset's value columns, an optional secondary key (chain / protocol)
and a `source` provenance column. Malformed entries are skipped; missing
optional fields fall back to their declared default.
"""

import math
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

UTC = timezone.utc

# Epoch values at or above this are milliseconds (1e11 s is the year 5138)
MS_THRESHOLD = 100_000_000_000

USD_PLACES = 2
RATIO_PLACES = 6
RATE_PLACES = 8

Path = Tuple[Union[str, int], ...]


# ==============================================================================
# Coercion
# ==============================================================================
def _epoch_to_day(number: float) -> Optional[str]:
    if not math.isfinite(number):
        return None
    secs = number / 1000 if abs(number) >= MS_THRESHOLD else number
    try:
        return datetime.fromtimestamp(secs, tz=UTC).strftime("%Y-%m-%d")
    except (OverflowError, OSError, ValueError):
        return None


def to_day(value: Any) -> Optional[str]:
    """
    Coerce a timestamp to a UTC calendar day.

    Accepts epoch seconds or milliseconds (numbers or numeric strings),
    ISO date / datetime strings, and date / datetime objects. Time of day
    is dropped. Returns None for anything unparseable.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        value = value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)
        return value.strftime("%Y-%m-%d")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (int, float)):
        return _epoch_to_day(float(value))
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return _epoch_to_day(float(text))
        except ValueError:
            pass
        try:
            return to_day(datetime.fromisoformat(text.replace("Z", "+00:00")))
        except ValueError:
            pass
        try:
            return date.fromisoformat(text[:10]).isoformat()
        except ValueError:
            return None
    return None


def to_float(value: Any) -> Optional[float]:
    """Parse a number (textual or not); None when absent or non-finite."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def round_to(value: Optional[float], places: int) -> Optional[float]:
    return None if value is None else round(value, places)


def day_column(values: pd.Series, unit: str) -> pd.Series:
    """Vectorized epoch -> YYYY-MM-DD; unparseable values become NaN."""
    stamps = pd.to_datetime(pd.to_numeric(values, errors="coerce"), unit=unit, utc=True, errors="coerce")
    return stamps.dt.strftime("%Y-%m-%d")


# ==============================================================================
# Declarative field extraction
# ==============================================================================
class FieldSpec(NamedTuple):
    """Ordered candidate key-paths for one logical field, plus its default."""
    paths: Tuple[Path, ...]
    default: Any = None


class Extracted(NamedTuple):
    value: Any
    present: bool


def field(*paths: Union[str, Path], default: Any = None) -> FieldSpec:
    """field("tvl") or field(("a", "b"), ("c", "b"), default=0)"""
    return FieldSpec(tuple(p if isinstance(p, tuple) else (p,) for p in paths), default)


def _dig(item: Any, path: Path) -> Tuple[bool, Any]:
    node = item
    for key in path:
        if isinstance(key, int):
            if not isinstance(node, (list, tuple)) or not -len(node) <= key < len(node):
                return False, None
            node = node[key]
        else:
            if not isinstance(node, dict) or key not in node:
                return False, None
            node = node[key]
    if node is None:
        return False, None
    return True, node


def extract(item: Any, spec: FieldSpec) -> Extracted:
    """Return the first present candidate, or the default flagged as absent."""
    for path in spec.paths:
        found, value = _dig(item, path)
        if found:
            return Extracted(value, True)
    return Extracted(spec.default, False)


def extract_number(item: Any, spec: FieldSpec) -> Extracted:
    raw = extract(item, spec)
    if not raw.present:
        return raw
    number = to_float(raw.value)
    if number is None:
        return Extracted(spec.default, False)
    return Extracted(number, True)


def records_frame(rows: List[Dict[str, Any]], columns: Sequence[str]) -> pd.DataFrame:
    """DataFrame with a stable column set even when there are no rows."""
    if not rows:
        return pd.DataFrame(columns=list(columns))
    return pd.DataFrame(rows)[list(columns)]


def _series_rows(items: Iterable[Any], date_spec: FieldSpec, value_spec: FieldSpec,
                 column: str, places: Optional[int], source: str, scale: float = 1.0,
                 extra: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    rows = []
    for item in items:
        day = to_day(extract(item, date_spec).value)
        value = extract_number(item, value_spec)
        if day is None or not value.present:
            continue
        number = value.value * scale
        row = {"date": day, column: number if places is None else round(number, places), "source": source}
        if extra:
            row.update(extra)
        rows.append(row)
    return rows


# ==============================================================================
# Payload shapes
# ==============================================================================
KLINE_COLUMNS = ["timestamp", "open", "high", "low", "close", "volume"]

LLAMA_DATE = field("date")
LLAMA_TVL = field("tvl")
LLAMA_PROTOCOL_TVL = field("totalLiquidityUSD", "tvl")
CHART_DATE = field(0)
CHART_VALUE = field(1)
STABLECOIN_MCAP = field(("totalCirculatingUSD", "peggedUSD"), ("totalCirculating", "peggedUSD"))


def normalize_klines(payload: Any, source: str = "binance") -> pd.DataFrame:
    """Binance daily klines -> date, open, high, low, close, volume."""
    columns = ["date", "open", "high", "low", "close", "volume", "source"]
    if not isinstance(payload, list):
        return records_frame([], columns)
    rows = [k[:6] for k in payload if isinstance(k, (list, tuple)) and len(k) >= 6]
    if not rows:
        return records_frame([], columns)

    df = pd.DataFrame(rows, columns=KLINE_COLUMNS)
    df["date"] = day_column(df["timestamp"], unit="ms")
    prices = ["open", "high", "low", "close", "volume"]
    for col in prices:
        df[col] = pd.to_numeric(df[col], errors="coerce")
    # "inf" parses as a number; treat it like any other unparseable value
    df[prices] = df[prices].where(np.isfinite(df[prices]))
    df["source"] = source
    return df.dropna(subset=["date", "close"])[columns].reset_index(drop=True)


def normalize_kline_ratio(payload: Any, source: str = "binance") -> pd.DataFrame:
    """Pair klines -> daily close ratio (6dp)."""
    df = normalize_klines(payload, source)
    if df.empty:
        return records_frame([], ["date", "ratio", "source"])
    df["ratio"] = df["close"].round(RATIO_PLACES)
    return df[["date", "ratio", "source"]]


def normalize_chain_tvl(payload: Any, column: str = "tvl", scale: float = 1.0,
                        source: str = "defillama", chain: Optional[str] = None) -> pd.DataFrame:
    """DefiLlama historicalChainTvl: [{date: <sec>, tvl}, ...]."""
    columns = ["date", column, "source"] + (["chain"] if chain else [])
    if not isinstance(payload, list):
        return records_frame([], columns)
    extra = {"chain": chain} if chain else None
    rows = _series_rows(payload, LLAMA_DATE, LLAMA_TVL, column, USD_PLACES, source, scale, extra)
    return records_frame(rows, columns)


def normalize_chart(payload: Any, column: str, source: str = "defillama",
                    protocol: Optional[str] = None) -> pd.DataFrame:
    """DefiLlama summary/overview: {totalDataChart: [[<sec>, value], ...]}."""
    columns = ["date", column, "source"] + (["protocol"] if protocol else [])
    chart = extract(payload, field("totalDataChart")).value
    if not isinstance(chart, list):
        return records_frame([], columns)
    extra = {"protocol": protocol} if protocol else None
    rows = _series_rows(chart, CHART_DATE, CHART_VALUE, column, USD_PLACES, source, extra=extra)
    return records_frame(rows, columns)


def normalize_stablecoin_chart(payload: Any, source: str = "defillama") -> pd.DataFrame:
    """DefiLlama stablecoincharts; pegged USD sits under one of two keys."""
    columns = ["date", "total_mcap", "source"]
    if not isinstance(payload, list):
        return records_frame([], columns)
    rows = _series_rows(payload, LLAMA_DATE, STABLECOIN_MCAP, "total_mcap", USD_PLACES, source)
    return records_frame(rows, columns)


def normalize_protocol_tvl(payload: Any, protocol: str, source: str = "defillama") -> pd.DataFrame:
    """DefiLlama /protocol/<slug>: {tvl: [{date, totalLiquidityUSD}, ...]}."""
    columns = ["date", "protocol", "tvl", "source"]
    series = extract(payload, field("tvl")).value
    if not isinstance(series, list):
        return records_frame([], columns)
    rows = _series_rows(series, LLAMA_DATE, LLAMA_PROTOCOL_TVL, "tvl", USD_PLACES, source,
                        extra={"protocol": protocol})
    return records_frame(rows, columns)


def normalize_staked_ether(payload: Any) -> pd.DataFrame:
    """beaconcha.in chart/staked_ether: {status: OK, data: [[<ms>, eth], ...]}."""
    columns = ["date", "total_staked_eth", "total_validators", "avg_apr", "source"]
    if extract(payload, field("status")).value != "OK":
        return records_frame([], columns)
    points = extract(payload, field("data")).value
    if not isinstance(points, list):
        return records_frame([], columns)

    rows = []
    for item in points:
        day = to_day(extract(item, CHART_DATE).value)
        staked = extract_number(item, CHART_VALUE)
        if day is None or not staked.present:
            continue
        rows.append({
            "date": day,
            "total_staked_eth": staked.value,
            "total_validators": math.floor(staked.value / 32),
            "avg_apr": None,
            "source": "beaconchain",
        })
    print(f"  [Staking] Beaconcha.in chart: {len(rows)} points")
    return records_frame(rows, columns)


def attach_lido_apr(df: pd.DataFrame, payload: Any, today: str) -> pd.DataFrame:
    """Set today's avg_apr from Lido's stETH SMA APR when today is present."""
    apr = extract_number(payload, field(("data", "smaApr")))
    if not apr.present or df.empty:
        return df
    df = df.copy()
    df["avg_apr"] = df["avg_apr"].astype(object)
    df.loc[df["date"] == today, "avg_apr"] = round(apr.value, USD_PLACES)
    return df


def normalize_gas_utilization(payload: Any) -> Dict[str, float]:
    """Etherscan dailynetutilization -> {day: utilization %}."""
    if extract(payload, field("status")).value != "1":
        return {}
    result = extract(payload, field("result")).value
    if not isinstance(result, list):
        return {}
    out = {}
    for item in result:
        day = to_day(extract(item, field("UTCDate")).value)
        util = extract_number(item, field("networkUtilization"))
        if day and util.present:
            out[day] = round(util.value * 100, RATIO_PLACES)
    return out


def normalize_ultrasound_supply(payload: Any, limit: int = 1095) -> pd.DataFrame:
    """ultrasound.money supply-over-time: [{timestamp: <sec>, supply: <wei>}, ...]."""
    columns = ["date", "eth_supply", "source"]
    if not isinstance(payload, list):
        return records_frame([], columns)
    rows = _series_rows(payload[-limit:], field("timestamp"), field("supply"), "eth_supply",
                        USD_PLACES, "ultrasound", scale=1e-18)
    return records_frame(rows, columns)


def normalize_fear_greed(payload: Any, min_points: int = 10) -> pd.DataFrame:
    """alternative.me fng: {data: [{timestamp, value, value_classification}, ...]}."""
    columns = ["date", "value", "classification", "source"]
    data = extract(payload, field("data")).value
    if not isinstance(data, list) or len(data) <= min_points:
        return records_frame([], columns)

    rows = []
    for item in data:
        day = to_day(extract(item, field("timestamp")).value)
        value = extract_number(item, field("value"))
        if day is None or not value.present:
            continue
        rows.append({
            "date": day,
            "value": int(value.value),
            "classification": extract(item, field("value_classification")).value,
            "source": "alternative_me",
        })
    return records_frame(rows, columns)


def normalize_funding_rates(payload: Any) -> pd.DataFrame:
    """Binance fundingRate history, averaged per UTC day (8dp)."""
    columns = ["date", "funding_rate", "source"]
    if not isinstance(payload, list):
        return records_frame([], columns)
    rows = _series_rows(payload, field("fundingTime"), field("fundingRate"), "funding_rate",
                        None, "binance")
    if not rows:
        return records_frame([], columns)

    df = pd.DataFrame(rows)
    daily = df.groupby("date", as_index=False, sort=True)["funding_rate"].mean()
    daily["funding_rate"] = daily["funding_rate"].round(RATE_PLACES)
    daily["source"] = "binance"
    return daily[columns]


def normalize_growthepie_txcount(payload: Any, origins: Sequence[str],
                                 with_chain: bool = False) -> pd.DataFrame:
    """growthepie export: [{origin_key, metric_key, date, value}, ...]."""
    columns = ["date"] + (["chain"] if with_chain else []) + ["tx_count", "source"]
    if not isinstance(payload, list):
        return records_frame([], columns)

    wanted = set(origins)
    rows = []
    for item in payload:
        origin = extract(item, field("origin_key")).value
        if not isinstance(origin, str) or origin not in wanted:
            continue
        if extract(item, field("metric_key")).value != "txcount":
            continue
        day = to_day(extract(item, field("date")).value)
        value = extract_number(item, field("value"))
        if day is None or not value.present:
            continue
        row = {"date": day, "tx_count": math.floor(value.value), "source": "growthepie"}
        if with_chain:
            row["chain"] = origin
        rows.append(row)
    return records_frame(rows, columns)


def normalize_yield_chart(payload: Any, column: str = "lido_apr") -> pd.DataFrame:
    """DefiLlama yields chart: {data: [{timestamp: ISO, apy}, ...]}."""
    columns = ["date", column, "source"]
    data = extract(payload, field("data")).value
    if not isinstance(data, list):
        return records_frame([], columns)
    rows = _series_rows(data, field("timestamp"), field("apy"), column, USD_PLACES, "defillama")
    return records_frame(rows, columns)


def normalize_dominance_snapshot(payload: Any, today: str) -> pd.DataFrame:
    """CoinGecko /global -> one row of dominance for today."""
    columns = ["date", "eth_dominance", "btc_dominance", "total_mcap", "source"]
    eth = extract_number(payload, field(("data", "market_cap_percentage", "eth")))
    if not eth.present:
        print("  [SKIP] CoinGecko payload has no ETH dominance (rate limited?)")
        return records_frame([], columns)
    btc = extract_number(payload, field(("data", "market_cap_percentage", "btc")))
    mcap = extract_number(payload, field(("data", "total_market_cap", "usd")))
    return records_frame([{
        "date": today,
        "eth_dominance": round(eth.value, USD_PLACES),
        "btc_dominance": round_to(btc.value, USD_PLACES),
        "total_mcap": mcap.value,
        "source": "coingecko",
    }], columns)


def normalize_global_mcap_snapshot(payload: Any, today: str) -> pd.DataFrame:
    """CoinGecko /global -> one row of total market cap for today."""
    columns = ["date", "total_mcap", "btc_mcap", "source"]
    usd = extract_number(payload, field(("data", "total_market_cap", "usd")))
    if not usd.present:
        return records_frame([], columns)
    btc = extract_number(payload, field(("data", "total_market_cap", "btc")))
    return records_frame([{
        "date": today,
        "total_mcap": usd.value,
        "btc_mcap": btc.value,
        "source": "coingecko",
    }], columns)


# Mainnet constants for the daily network snapshot
BLOCKS_PER_DAY = 7200
BLOCK_TIME_SEC = 12


def normalize_epoch_snapshot(payload: Any, today: str) -> pd.DataFrame:
    """beaconcha.in epoch/latest -> one network-stats row for today."""
    columns = ["date", "epoch", "block_count", "avg_block_time", "source"]
    epoch = extract_number(payload, field(("data", "epoch")))
    if not epoch.present:
        return records_frame([], columns)
    return records_frame([{
        "date": today,
        "epoch": int(epoch.value),
        "block_count": BLOCKS_PER_DAY,
        "avg_block_time": BLOCK_TIME_SEC,
        "source": "beaconchain",
    }], columns)
