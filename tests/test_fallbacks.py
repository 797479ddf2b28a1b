"""Tests for derived and estimated datasets."""

from datetime import date

import numpy as np
import pandas as pd
import pytest

import fallbacks
from conftest import days_before


def _prices(closes, run_date=date(2024, 6, 15), volume=None):
    days = days_before(run_date, len(closes))
    df = pd.DataFrame({"date": days, "close": closes})
    if volume is not None:
        df["volume"] = volume
    return df


class TestVolatility:
    def test_needs_more_than_window(self):
        assert fallbacks.derive_volatility(_prices([100.0] * 30)).empty

    def test_flat_prices_have_zero_volatility(self):
        df = fallbacks.derive_volatility(_prices([100.0] * 31))
        assert len(df) == 1
        assert df.iloc[0]["volatility_30d"] == 0.0
        assert df.iloc[0]["source"] == fallbacks.CALCULATED

    def test_population_std_annualized(self):
        closes = [100.0 * (1.02 if i % 2 else 0.99) ** (i % 5) for i in range(40)]
        df = fallbacks.derive_volatility(_prices(closes))

        returns = np.log(np.array(closes[1:]) / np.array(closes[:-1]))
        # Day 30 looks at the returns ending the day before
        expected = np.std(returns[0:29]) * np.sqrt(365) * 100
        assert len(df) == 10
        assert df.iloc[0]["volatility_30d"] == pytest.approx(expected, abs=0.01)


class TestNvt:
    def test_ratio(self):
        df = fallbacks.derive_nvt(_prices([2000.0, 2000.0], volume=[1000.0, 0.0]))
        assert len(df) == 1
        row = df.iloc[0]
        assert row["market_cap"] == pytest.approx(2000.0 * 120_400_000)
        assert row["tx_volume"] == pytest.approx(2_000_000.0)
        assert row["nvt_ratio"] == pytest.approx(120_400.0)


class TestGasBurn:
    def setup_method(self):
        self.fees = pd.DataFrame({"date": ["2024-06-10", "2024-06-11", "2024-06-12", "2024-06-13"],
                                  "fees": [10_000_000.0, 8_000_000.0, 5_000_000.0, 1_000_000.0]})
        self.prices = pd.DataFrame({"date": ["2024-06-10", "2024-06-11", "2024-06-12"],
                                    "close": [2000.0, 4000.0, 2500.0]})

    def test_burn_from_fees_and_price(self):
        df = fallbacks.derive_gas_burn(self.fees, self.prices, {"2024-06-12": 51.2}, "2024-06-11", "2024-06-13")
        # 06-10 is before the window, 06-13 has no price
        assert df["date"].tolist() == ["2024-06-11", "2024-06-12"]
        assert df["eth_burnt"].tolist() == [1600.0, 1600.0]
        assert df["source"].tolist() == [fallbacks.CALCULATED, "etherscan"]
        assert df.iloc[1]["gas_utilization"] == 51.2

    def test_no_inputs(self):
        assert fallbacks.derive_gas_burn(pd.DataFrame(), self.prices, {}, "2024-06-01", "2024-06-30").empty


class TestAddressEstimates:
    def test_active_addresses_floor(self):
        txs = pd.DataFrame({"date": ["2024-06-10"], "tx_count": [1_000_001]})
        df = fallbacks.derive_active_addresses(txs)
        assert df.iloc[0]["active_addresses"] == 400_000
        assert df.iloc[0]["source"] == fallbacks.ESTIMATED

    def test_l2_addresses_keep_chain(self):
        txs = pd.DataFrame({"date": ["2024-06-10", "2024-06-10"], "chain": ["base", "linea"],
                            "tx_count": [3_000_000, 10]})
        df = fallbacks.derive_l2_addresses(txs)
        assert df[["chain", "active_addresses"]].values.tolist() == [["base", 900_000], ["linea", 3]]


class TestEthInDefi:
    def test_default_price_when_missing(self):
        tvl = pd.DataFrame({"date": ["2024-06-10", "2024-06-11"], "tvl": [60e9, 60e9]})
        prices = pd.DataFrame({"date": ["2024-06-10"], "close": [2000.0]})
        df = fallbacks.derive_eth_in_defi(tvl, prices)
        assert df["eth_locked"].tolist() == [9_000_000.0, 6_000_000.0]


class TestFearGreed:
    @pytest.mark.parametrize("value,label", [
        (0, "Extreme Fear"), (24, "Extreme Fear"), (25, "Fear"), (40, "Neutral"),
        (59, "Neutral"), (60, "Greed"), (75, "Extreme Greed"), (100, "Extreme Greed"),
    ])
    def test_classification(self, value, label):
        assert fallbacks.classify_fear_greed(value) == label

    def test_mapping(self):
        assert fallbacks.fear_greed_from_change(0) == 50
        assert fallbacks.fear_greed_from_change(-20) == 33
        assert fallbacks.fear_greed_from_change(-100) == 10
        assert fallbacks.fear_greed_from_change(500) == 95

    def test_mapping_is_bounded(self):
        for change in range(-100, 301, 7):
            assert 5 <= fallbacks.fear_greed_from_change(change) <= 95

    def test_not_enough_prices(self):
        assert fallbacks.derive_fear_greed(_prices([100.0] * 29)).empty

    def test_estimate_from_prices(self):
        df = fallbacks.derive_fear_greed(_prices([100.0] * 35))
        assert len(df) == 5
        assert set(df["value"]) == {50}
        assert set(df["classification"]) == {"Neutral"}
        assert set(df["source"]) == {fallbacks.ESTIMATED}


class TestTrendEstimates:
    RUN = date(2024, 6, 15)

    def test_trend_value_at_breakpoints(self):
        profile = fallbacks.EXCHANGE_RESERVE_PROFILE
        assert fallbacks.trend_value(profile, date(2022, 1, 1), self.RUN) == 24_000_000
        assert fallbacks.trend_value(profile, date(2022, 11, 1), self.RUN) == 24_000_000
        assert fallbacks.trend_value(profile, date(2023, 6, 1), self.RUN) == 18_000_000
        assert fallbacks.trend_value(profile, self.RUN, self.RUN) == 15_000_000

    def test_trend_value_interpolates(self):
        profile = fallbacks.TrendProfile((fallbacks.Breakpoint(10, 100.0), fallbacks.Breakpoint(0, 200.0)))
        assert fallbacks.trend_value(profile, date(2024, 6, 10), self.RUN) == pytest.approx(150.0)

    def test_exchange_reserve_estimate(self):
        df = fallbacks.estimate_trend(fallbacks.EXCHANGE_RESERVE_PROFILE, "reserve_eth", self.RUN, 1095)
        assert len(df) == 1095
        assert df["date"].is_unique
        assert df.iloc[0]["date"] == "2024-06-15"
        assert df["reserve_eth"].min() >= 14_000_000
        assert df["reserve_eth"].max() <= 24_000_000 * 1.01
        assert set(df["source"]) == {fallbacks.ESTIMATED}

    def test_supply_estimate_anchored_today(self):
        df = fallbacks.estimate_trend(fallbacks.ETH_SUPPLY_PROFILE, "eth_supply", self.RUN, 3)
        assert df["eth_supply"].tolist() == [120_400_000, 120_400_100, 120_400_200]
