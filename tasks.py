"""
tasks.py - Dataset catalogue

One CollectionTask per dataset, in run order. A task names its target
table and conflict key, how to fetch and normalize the primary source,
which quality rules apply, and what to fall back to when the primary
path yields nothing (or when no free source exists).
"""

import time
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import quote

import pandas as pd

import fallbacks
import normalizers as norm
from http_fetcher import ResilientFetcher
from quality import MaxDailyChangeRule, PositiveRule, RangeRule
from settings import (
    ALTERNATIVE_ME_API, BEACONCHAIN_API, BINANCE_FUTURES_API, BINANCE_SPOT_API, COINGECKO_BASE,
    DEFILLAMA_API, DEFILLAMA_STABLECOINS_API, DEFILLAMA_YIELDS_API, DEX_PROTOCOLS, ETHERSCAN_API,
    GROWTHEPIE_API, L2_TVL_CHAINS, L2_TX_CHAINS, LIDO_API, LIDO_STETH_POOL, TVL_PROTOCOLS,
    ULTRASOUND_API, CollectorSettings,
)

GAS_BURN_DEFAULT_START = "2022-01-01"


@dataclass(frozen=True)
class DatasetDescriptor:
    """Target table, conflict key and value columns of one dataset."""
    table: str
    value_columns: Tuple[str, ...]
    secondary_key: Optional[str] = None

    @property
    def conflict_key(self) -> Tuple[str, ...]:
        return ("date", self.secondary_key) if self.secondary_key else ("date",)

    @property
    def columns(self) -> List[str]:
        return list(self.conflict_key) + list(self.value_columns) + ["source"]


@dataclass
class CollectionContext:
    """Collaborators and run-wide values handed to every task."""
    fetcher: ResilientFetcher
    store: Any
    settings: CollectorSettings
    run_date: date
    etherscan_api_key: Optional[str] = None

    @property
    def today(self) -> str:
        return self.run_date.isoformat()

    def read(self, dataset: DatasetDescriptor, columns: Sequence[str], limit: Optional[int] = None) -> pd.DataFrame:
        """Stored rows of another dataset, oldest first."""
        return self.store.select(dataset.table, list(columns), order_by="date", limit=limit)


FetchFn = Callable[[CollectionContext], Any]
NormalizeFn = Callable[[Any, CollectionContext], pd.DataFrame]
FallbackFn = Callable[[CollectionContext], pd.DataFrame]


@dataclass(frozen=True)
class CollectionTask:
    name: str
    title: str
    dataset: DatasetDescriptor
    fetch: Optional[FetchFn] = None
    normalize: Optional[NormalizeFn] = None
    rules: Tuple = ()
    fallback: Optional[FallbackFn] = None
    # Rate-limited provider: the orchestrator waits longer afterwards
    slow: bool = False


# ==============================================================================
# Datasets
# ==============================================================================
ETH_PRICE = DatasetDescriptor("historical_eth_price", ("open", "high", "low", "close", "volume"))
ETHEREUM_TVL = DatasetDescriptor("historical_ethereum_tvl", ("tvl",))
L2_TVL = DatasetDescriptor("historical_l2_tvl", ("tvl",), secondary_key="chain")
PROTOCOL_FEES = DatasetDescriptor("historical_protocol_fees", ("fees",))
STAKING = DatasetDescriptor("historical_staking", ("total_staked_eth", "total_validators", "avg_apr"))
GAS_BURN = DatasetDescriptor("historical_gas_burn", (
    "eth_burnt", "avg_gas_price_gwei", "gas_utilization", "transaction_count"))
ACTIVE_ADDRESSES = DatasetDescriptor("historical_active_addresses", ("active_addresses",))
ETH_SUPPLY = DatasetDescriptor("historical_eth_supply", ("eth_supply",))
FEAR_GREED = DatasetDescriptor("historical_fear_greed", ("value", "classification"))
DEX_VOLUME = DatasetDescriptor("historical_dex_volume", ("volume",))
STABLECOINS = DatasetDescriptor("historical_stablecoins", ("total_mcap",))
STABLECOINS_ETH = DatasetDescriptor("historical_stablecoins_eth", ("total_mcap",))
ETH_BTC = DatasetDescriptor("historical_eth_btc", ("ratio",))
FUNDING_RATE = DatasetDescriptor("historical_funding_rate", ("funding_rate",))
EXCHANGE_RESERVE = DatasetDescriptor("historical_exchange_reserve", ("reserve_eth",))
ETH_DOMINANCE = DatasetDescriptor("historical_eth_dominance", ("eth_dominance", "btc_dominance", "total_mcap"))
BLOB_DATA = DatasetDescriptor("historical_blob_data", ())
LENDING_TVL = DatasetDescriptor("historical_lending_tvl", ("total_tvl",))
VOLATILITY = DatasetDescriptor("historical_volatility", ("volatility_30d",))
NVT = DatasetDescriptor("historical_nvt", ("nvt_ratio", "market_cap", "tx_volume"))
TRANSACTIONS = DatasetDescriptor("historical_transactions", ("tx_count",))
L2_TRANSACTIONS = DatasetDescriptor("historical_l2_transactions", ("tx_count",), secondary_key="chain")
L2_ADDRESSES = DatasetDescriptor("historical_l2_addresses", ("active_addresses",), secondary_key="chain")
PROTOCOL_TVL = DatasetDescriptor("historical_protocol_tvl", ("tvl",), secondary_key="protocol")
STAKING_APR = DatasetDescriptor("historical_staking_apr", ("lido_apr",))
ETH_IN_DEFI = DatasetDescriptor("historical_eth_in_defi", ("eth_locked",))
GLOBAL_MCAP = DatasetDescriptor("historical_global_mcap", ("total_mcap", "btc_mcap"))
DEX_BY_PROTOCOL = DatasetDescriptor("historical_dex_by_protocol", ("volume",), secondary_key="protocol")
NETWORK_STATS = DatasetDescriptor("historical_network_stats", ("epoch", "block_count", "avg_block_time"))


# ==============================================================================
# Fetch helpers
# ==============================================================================
def fetch_url(url: str, params: Optional[Dict[str, Any]] = None) -> FetchFn:
    def _fetch(ctx: CollectionContext) -> Any:
        return ctx.fetcher.fetch(url, params=params)
    return _fetch


def fetch_each(url_template: str, dimensions: Sequence[str]) -> FetchFn:
    """Fetch one payload per dimension value, one at a time, with a pause in between."""
    def _fetch(ctx: CollectionContext) -> Optional[Dict[str, Any]]:
        payloads = {}
        for dim in dimensions:
            time.sleep(ctx.settings.dimension_pause)
            payload = ctx.fetcher.fetch(url_template.format(quote(dim)))
            if payload is not None:
                payloads[dim] = payload
            else:
                print(f"  {dim}: unavailable")
        return payloads or None
    return _fetch


def per_dimension(normalize_one: Callable[[Any, str], pd.DataFrame]) -> NormalizeFn:
    """Normalize each dimension's payload and stack the results."""
    def _normalize(payloads: Dict[str, Any], ctx: CollectionContext) -> pd.DataFrame:
        frames = []
        for dim, payload in payloads.items():
            df = normalize_one(payload, dim)
            print(f"  {dim}: {len(df)}")
            if not df.empty:
                frames.append(df)
        if not frames:
            return pd.DataFrame()
        return pd.concat(frames, ignore_index=True)
    return _normalize


def klines_url(symbol: str, limit: int = 1100) -> str:
    return f"{BINANCE_SPOT_API}/klines?symbol={symbol}&interval=1d&limit={limit}"


# ==============================================================================
# Dataset-specific steps
# ==============================================================================
def fetch_staking(ctx: CollectionContext) -> Optional[Dict[str, Any]]:
    chart = ctx.fetcher.fetch(f"{BEACONCHAIN_API}/chart/staked_ether")
    if chart is None:
        return None
    return {"chart": chart, "lido": ctx.fetcher.fetch(f"{LIDO_API}/protocol/steth/apr/sma")}


def normalize_staking(payload: Dict[str, Any], ctx: CollectionContext) -> pd.DataFrame:
    df = norm.normalize_staked_ether(payload["chart"])
    return norm.attach_lido_apr(df, payload.get("lido"), ctx.today)


def collect_gas_burn(ctx: CollectionContext) -> pd.DataFrame:
    """Incremental burn estimate from the day after the last stored row to yesterday."""
    last = ctx.store.select(GAS_BURN.table, ["date"], order_by="date", limit=1, descending=True)
    last_date = last["date"].iloc[0] if not last.empty else GAS_BURN_DEFAULT_START
    start = date.fromisoformat(str(last_date)[:10]) + timedelta(days=1)
    end = ctx.run_date - timedelta(days=1)
    if start >= end:
        print("  [Task] Already up to date")
        return pd.DataFrame()

    start_str, end_str = start.isoformat(), end.isoformat()
    print(f"  [Task] Fetching {start_str} to {end_str}")

    utilization = {}
    if ctx.etherscan_api_key:
        payload = ctx.fetcher.fetch(ETHERSCAN_API, params={
            "module": "stats", "action": "dailynetutilization",
            "startdate": start_str, "enddate": end_str, "sort": "asc",
            "apikey": ctx.etherscan_api_key,
        })
        utilization = norm.normalize_gas_utilization(payload)
        print(f"  [Task] Got {len(utilization)} days of gas utilization from Etherscan")
    else:
        print("  [SKIP] ETHERSCAN_API_KEY not set, skipping gas utilization")

    fees = ctx.read(PROTOCOL_FEES, ["date", "fees"])
    prices = ctx.read(ETH_PRICE, ["date", "close"])
    return fallbacks.derive_gas_burn(fees, prices, utilization, start_str, end_str)


def report_blob_data(ctx: CollectionContext) -> pd.DataFrame:
    """No public blob API; leave stored rows untouched."""
    existing = ctx.store.select(BLOB_DATA.table, ["date"], order_by="date", limit=1, descending=True)
    if existing.empty:
        print("  [SKIP] No public API available")
    else:
        print(f"  [SKIP] No public API available; latest stored row {existing['date'].iloc[0]}")
    return pd.DataFrame()


def fear_greed_from_prices(ctx: CollectionContext) -> pd.DataFrame:
    print("  [Fallback] API failed, generating price-based estimates...")
    return fallbacks.derive_fear_greed(ctx.read(ETH_PRICE, ["date", "close"], limit=1100))


def eth_supply_estimate(ctx: CollectionContext) -> pd.DataFrame:
    return fallbacks.estimate_trend(fallbacks.ETH_SUPPLY_PROFILE, "eth_supply",
                                    ctx.run_date, ctx.settings.window_days)


def exchange_reserve_estimate(ctx: CollectionContext) -> pd.DataFrame:
    df = fallbacks.estimate_trend(fallbacks.EXCHANGE_RESERVE_PROFILE, "reserve_eth",
                                  ctx.run_date, ctx.settings.window_days)
    print(f"  [Fallback] Generated {len(df)} estimated records (24M->15M trend)")
    return df


def volatility_from_prices(ctx: CollectionContext) -> pd.DataFrame:
    return fallbacks.derive_volatility(ctx.read(ETH_PRICE, ["date", "close"]))


def nvt_from_prices(ctx: CollectionContext) -> pd.DataFrame:
    return fallbacks.derive_nvt(ctx.read(ETH_PRICE, ["date", "close", "volume"]))


def active_addresses_from_txs(ctx: CollectionContext) -> pd.DataFrame:
    txs = ctx.read(TRANSACTIONS, ["date", "tx_count"])
    if txs.empty:
        print("  [SKIP] No transaction data")
    return fallbacks.derive_active_addresses(txs)


def l2_addresses_from_txs(ctx: CollectionContext) -> pd.DataFrame:
    return fallbacks.derive_l2_addresses(ctx.read(L2_TRANSACTIONS, ["date", "chain", "tx_count"]))


def eth_in_defi_from_tvl(ctx: CollectionContext) -> pd.DataFrame:
    tvl = ctx.read(ETHEREUM_TVL, ["date", "tvl"])
    prices = ctx.read(ETH_PRICE, ["date", "close"])
    return fallbacks.derive_eth_in_defi(tvl, prices)


# ==============================================================================
# Run order
# ==============================================================================
TASKS: List[CollectionTask] = [
    CollectionTask(
        "eth_price", "ETH Price", ETH_PRICE,
        fetch=fetch_url(klines_url("ETHUSDT")),
        normalize=lambda p, ctx: norm.normalize_klines(p),
        rules=(PositiveRule("close"),),
    ),
    CollectionTask(
        "ethereum_tvl", "Ethereum TVL", ETHEREUM_TVL,
        fetch=fetch_url(f"{DEFILLAMA_API}/v2/historicalChainTvl/Ethereum"),
        normalize=lambda p, ctx: norm.normalize_chain_tvl(p),
        rules=(PositiveRule("tvl"),),
    ),
    CollectionTask(
        "l2_tvl", "L2 TVL", L2_TVL,
        fetch=fetch_each(f"{DEFILLAMA_API}/v2/historicalChainTvl/{{}}", L2_TVL_CHAINS),
        normalize=per_dimension(lambda p, chain: norm.normalize_chain_tvl(p, chain=chain)),
        rules=(PositiveRule("tvl"),),
    ),
    CollectionTask(
        "protocol_fees", "Protocol Fees", PROTOCOL_FEES,
        fetch=fetch_url(f"{DEFILLAMA_API}/summary/fees/ethereum", {"dataType": "dailyFees"}),
        normalize=lambda p, ctx: norm.normalize_chart(p, "fees"),
        rules=(PositiveRule("fees"),),
    ),
    CollectionTask(
        "staking", "Staking Data", STAKING,
        fetch=fetch_staking,
        normalize=normalize_staking,
        rules=(
            RangeRule("total_staked_eth", 15_000_000, 40_000_000),
            MaxDailyChangeRule("total_staked_eth", 2.0),
        ),
    ),
    CollectionTask(
        "gas_burn", "Gas & Burn", GAS_BURN,
        rules=(RangeRule("eth_burnt", 50, 50_000),),
        fallback=collect_gas_burn,
    ),
    CollectionTask(
        "active_addresses", "Active Addresses", ACTIVE_ADDRESSES,
        fallback=active_addresses_from_txs,
    ),
    CollectionTask(
        "eth_supply", "ETH Supply", ETH_SUPPLY,
        fetch=fetch_url(f"{ULTRASOUND_API}/fees/supply-over-time"),
        normalize=lambda p, ctx: norm.normalize_ultrasound_supply(p, ctx.settings.window_days),
        rules=(PositiveRule("eth_supply"),),
        fallback=eth_supply_estimate,
    ),
    CollectionTask(
        "fear_greed", "Fear & Greed", FEAR_GREED,
        fetch=fetch_url(f"{ALTERNATIVE_ME_API}/fng/", {"limit": 1095, "format": "json"}),
        normalize=lambda p, ctx: norm.normalize_fear_greed(p),
        rules=(RangeRule("value", 0, 100),),
        fallback=fear_greed_from_prices,
    ),
    CollectionTask(
        "dex_volume", "DEX Volume", DEX_VOLUME,
        fetch=fetch_url(f"{DEFILLAMA_API}/overview/dexs/ethereum", {
            "excludeTotalDataChart": "false",
            "excludeTotalDataChartBreakdown": "true",
            "dataType": "dailyVolume",
        }),
        normalize=lambda p, ctx: norm.normalize_chart(p, "volume"),
        rules=(PositiveRule("volume"),),
    ),
    CollectionTask(
        "stablecoins", "Stablecoins (All)", STABLECOINS,
        fetch=fetch_url(f"{DEFILLAMA_STABLECOINS_API}/stablecoincharts/all"),
        normalize=lambda p, ctx: norm.normalize_stablecoin_chart(p),
        rules=(PositiveRule("total_mcap"),),
    ),
    CollectionTask(
        "stablecoins_eth", "Stablecoins (ETH)", STABLECOINS_ETH,
        fetch=fetch_url(f"{DEFILLAMA_STABLECOINS_API}/stablecoincharts/Ethereum"),
        normalize=lambda p, ctx: norm.normalize_stablecoin_chart(p),
        rules=(PositiveRule("total_mcap"),),
    ),
    CollectionTask(
        "eth_btc", "ETH/BTC", ETH_BTC,
        fetch=fetch_url(klines_url("ETHBTC")),
        normalize=lambda p, ctx: norm.normalize_kline_ratio(p),
        rules=(PositiveRule("ratio"),),
    ),
    CollectionTask(
        "funding_rate", "Funding Rate", FUNDING_RATE,
        fetch=fetch_url(f"{BINANCE_FUTURES_API}/fundingRate", {"symbol": "ETHUSDT", "limit": 1000}),
        normalize=lambda p, ctx: norm.normalize_funding_rates(p),
    ),
    CollectionTask(
        "exchange_reserve", "Exchange Reserve", EXCHANGE_RESERVE,
        rules=(PositiveRule("reserve_eth"),),
        fallback=exchange_reserve_estimate,
    ),
    CollectionTask(
        "eth_dominance", "ETH Dominance", ETH_DOMINANCE,
        fetch=fetch_url(f"{COINGECKO_BASE}/global"),
        normalize=lambda p, ctx: norm.normalize_dominance_snapshot(p, ctx.today),
        rules=(RangeRule("eth_dominance", 0, 100),),
        slow=True,
    ),
    CollectionTask(
        "blob_data", "Blob Data", BLOB_DATA,
        fallback=report_blob_data,
    ),
    CollectionTask(
        "lending_tvl", "Lending TVL", LENDING_TVL,
        fetch=fetch_url(f"{DEFILLAMA_API}/v2/historicalChainTvl/Ethereum"),
        # Lending is roughly half of Ethereum TVL
        normalize=lambda p, ctx: norm.normalize_chain_tvl(p, column="total_tvl", scale=0.5,
                                                          source="defillama_estimated"),
        rules=(PositiveRule("total_tvl"),),
    ),
    CollectionTask(
        "volatility", "Volatility", VOLATILITY,
        fallback=volatility_from_prices,
    ),
    CollectionTask(
        "nvt", "NVT Ratio", NVT,
        rules=(RangeRule("nvt_ratio", 0, 1000, inclusive="neither"),),
        fallback=nvt_from_prices,
    ),
    CollectionTask(
        "transactions", "Transactions (growthepie)", TRANSACTIONS,
        fetch=fetch_url(f"{GROWTHEPIE_API}/export/txcount.json"),
        normalize=lambda p, ctx: norm.normalize_growthepie_txcount(p, ["ethereum"]),
    ),
    CollectionTask(
        "l2_transactions", "L2 Transactions (growthepie)", L2_TRANSACTIONS,
        fetch=fetch_url(f"{GROWTHEPIE_API}/export/txcount.json"),
        normalize=lambda p, ctx: norm.normalize_growthepie_txcount(p, L2_TX_CHAINS, with_chain=True),
    ),
    CollectionTask(
        "l2_addresses", "L2 Addresses", L2_ADDRESSES,
        fallback=l2_addresses_from_txs,
    ),
    CollectionTask(
        "protocol_tvl", "Protocol TVL", PROTOCOL_TVL,
        fetch=fetch_each(f"{DEFILLAMA_API}/protocol/{{}}", TVL_PROTOCOLS),
        normalize=per_dimension(lambda p, protocol: norm.normalize_protocol_tvl(p, protocol)),
    ),
    CollectionTask(
        "staking_apr", "Staking APR", STAKING_APR,
        fetch=fetch_url(f"{DEFILLAMA_YIELDS_API}/chart/{LIDO_STETH_POOL}"),
        normalize=lambda p, ctx: norm.normalize_yield_chart(p),
        rules=(PositiveRule("lido_apr"),),
    ),
    CollectionTask(
        "eth_in_defi", "ETH in DeFi", ETH_IN_DEFI,
        rules=(PositiveRule("eth_locked"),),
        fallback=eth_in_defi_from_tvl,
    ),
    CollectionTask(
        "global_mcap", "Global Market Cap", GLOBAL_MCAP,
        fetch=fetch_url(f"{COINGECKO_BASE}/global"),
        normalize=lambda p, ctx: norm.normalize_global_mcap_snapshot(p, ctx.today),
        slow=True,
    ),
    CollectionTask(
        "dex_by_protocol", "DEX by Protocol", DEX_BY_PROTOCOL,
        fetch=fetch_each(f"{DEFILLAMA_API}/summary/dexs/{{}}?dataType=dailyVolume", DEX_PROTOCOLS),
        normalize=per_dimension(lambda p, protocol: norm.normalize_chart(p, "volume", protocol=protocol)),
        rules=(PositiveRule("volume"),),
    ),
    CollectionTask(
        "network_stats", "Network Stats", NETWORK_STATS,
        fetch=fetch_url(f"{BEACONCHAIN_API}/epoch/latest"),
        normalize=lambda p, ctx: norm.normalize_epoch_snapshot(p, ctx.today),
    ),
]

TASKS_BY_NAME: Dict[str, CollectionTask] = {t.name: t for t in TASKS}
