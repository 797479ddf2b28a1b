"""Tests for the task driver and the collector entry point."""

import pandas as pd
import pytest

import data_collector
from conftest import days_before, epoch_ms
from data_collector import CollectionReport, TaskResult, run_task, run_tasks, select_tasks
from fallbacks import ESTIMATED
from quality import PositiveRule
from settings import BEACONCHAIN_API, GROWTHEPIE_API, ULTRASOUND_API, CollectorSettings
from tasks import ETH_PRICE, FEAR_GREED, STAKING, TASKS, TASKS_BY_NAME, CollectionTask, DatasetDescriptor, klines_url

DUMMY = DatasetDescriptor("historical_dummy", ("value",))


def _kline(day, close):
    return [epoch_ms(day), close, close, close, close, 100.0, epoch_ms(day) + 86_399_999]


def _static(df):
    return CollectionTask("dummy", "Dummy", DUMMY, fallback=lambda ctx: df)


def _raising(exc):
    def _fallback(ctx):
        raise exc
    return CollectionTask("broken", "Broken", DUMMY, fallback=_fallback)


class TestRunTask:
    """Fetch -> normalize -> fallback -> quality -> upsert."""

    def test_primary_source(self, ctx, fetcher, store):
        fetcher.payloads[klines_url("ETHUSDT")] = [_kline("2024-06-13", "3500.5"), _kline("2024-06-14", "3600")]
        count = run_task(TASKS_BY_NAME["eth_price"], ctx)

        assert count == 2
        stored = store.rows(ETH_PRICE.table)
        assert stored["date"].tolist() == ["2024-06-13", "2024-06-14"]
        assert stored["close"].tolist() == [3500.5, 3600.0]
        assert set(stored["source"]) == {"binance"}

    def test_fallback_when_source_unavailable(self, ctx, store, run_date):
        closes = [100.0] * 40
        store.seed(ETH_PRICE.table, [{"date": d, "close": c} for d, c in zip(days_before(run_date, 40), closes)])

        count = run_task(TASKS_BY_NAME["fear_greed"], ctx)

        assert count == 10
        stored = store.rows(FEAR_GREED.table)
        assert set(stored["source"]) == {ESTIMATED}
        assert set(stored["value"]) == {50}

    def test_fallback_when_source_returns_nothing_usable(self, ctx, fetcher, store):
        fetcher.payloads[f"{ULTRASOUND_API}/fees/supply-over-time"] = []
        count = run_task(TASKS_BY_NAME["eth_supply"], ctx)
        assert count == ctx.settings.window_days
        assert set(store.rows("historical_eth_supply")["source"]) == {ESTIMATED}

    def test_quality_rules_filter_before_write(self, ctx, fetcher, store):
        fetcher.payloads[f"{BEACONCHAIN_API}/chart/staked_ether"] = {"status": "OK", "data": [
            [epoch_ms("2024-06-11"), 30_000_000],
            [epoch_ms("2024-06-12"), 33_000_000],
            [epoch_ms("2024-06-13"), 30_050_000],
            [epoch_ms("2024-06-14"), 41_000_000],
        ]}
        assert run_task(TASKS_BY_NAME["staking"], ctx) == 2
        assert store.rows(STAKING.table)["date"].tolist() == ["2024-06-11", "2024-06-13"]

    def test_records_outside_window_are_dropped(self, ctx, store):
        df = pd.DataFrame({"date": ["2020-01-01", "2024-06-14"], "value": [1.0, 2.0], "source": "x"})
        assert run_task(_static(df), ctx) == 1
        assert store.rows(DUMMY.table)["date"].tolist() == ["2024-06-14"]

    def test_undeclared_columns_are_not_written(self, ctx, store):
        df = pd.DataFrame({"date": ["2024-06-14"], "value": [1.0], "scratch": ["x"], "source": "x"})
        run_task(_static(df), ctx)
        assert "scratch" not in store.rows(DUMMY.table).columns

    def test_nothing_to_write(self, ctx, store):
        assert run_task(TASKS_BY_NAME["blob_data"], ctx) == 0
        assert store.calls == []

    def test_everything_filtered(self, ctx, store):
        task = CollectionTask("dummy", "Dummy", DUMMY, rules=(PositiveRule("value"),),
                              fallback=lambda ctx: pd.DataFrame({"date": ["2024-06-14"], "value": [-1.0],
                                                                 "source": "x"}))
        assert run_task(task, ctx) == 0
        assert store.calls == []


class TestRunTasks:
    """Sequential driver with per-task failure isolation."""

    def test_failing_task_reports_zero_and_run_continues(self, ctx):
        ok = _static(pd.DataFrame({"date": ["2024-06-14"], "value": [1.0], "source": "x"}))
        report = run_tasks([_raising(KeyError("totalDataChart")), ok], ctx)

        assert report.counts() == {"broken": 0, "dummy": 1}
        assert report.results[0].error == "'totalDataChart'"
        assert (report.succeeded, report.failed) == (1, 1)

    def test_malformed_entries_do_not_sink_the_dataset(self, ctx, fetcher, store):
        fetcher.payloads[f"{GROWTHEPIE_API}/export/txcount.json"] = [
            {"origin_key": ["x"], "metric_key": "txcount", "date": "2024-06-14", "value": 3},
            {"origin_key": "ethereum", "metric_key": "txcount", "date": "2024-06-14", "value": "12.7"},
        ]
        report = run_tasks([TASKS_BY_NAME["transactions"]], ctx)

        assert report.counts() == {"transactions": 1}
        assert store.rows("historical_transactions")["tx_count"].tolist() == [12]

    def test_unexpected_error_is_fatal(self, ctx):
        with pytest.raises(RuntimeError):
            run_tasks([_raising(RuntimeError("bug"))], ctx)

    def test_pauses_between_tasks(self, ctx, monkeypatch):
        sleeps = []
        monkeypatch.setattr(data_collector.time, "sleep", sleeps.append)
        ctx.settings = CollectorSettings(task_pause=0.5, slow_pause=2.0, dimension_pause=0.0)
        empty = pd.DataFrame()
        slow = CollectionTask("slow", "Slow", DUMMY, fallback=lambda ctx: empty, slow=True)
        fast = CollectionTask("fast", "Fast", DUMMY, fallback=lambda ctx: empty)

        run_tasks([slow, fast, fast], ctx)
        assert sleeps == [2.0, 0.5]

    def test_summary_lines(self):
        report = CollectionReport().with_result(TaskResult("eth_price", 1095)).with_result(TaskResult("nvt", 0))
        lines = report.summary_lines()
        assert any(line.startswith("[OK]") and "eth_price" in line and line.endswith(": 1095") for line in lines)
        assert any(line.startswith("[FAIL]") and "nvt" in line for line in lines)
        assert "Success: 1/2  |  Failed: 1/2" in lines

    def test_summary_shows_failure_reason(self):
        report = CollectionReport().with_result(TaskResult("nvt", 0, "unhashable type: 'list'"))
        fail = [line for line in report.summary_lines() if line.startswith("[FAIL]")]
        assert fail == [f"[FAIL] {'nvt':<20} : 0  (unhashable type: 'list')"]


class TestSelectTasks:
    def test_only_keeps_run_order(self):
        assert [t.name for t in select_tasks(only="eth_btc,eth_price")] == ["eth_price", "eth_btc"]

    def test_skip(self):
        names = [t.name for t in select_tasks(skip="eth_dominance,global_mcap")]
        assert len(names) == 27
        assert "global_mcap" not in names

    def test_default_is_full_catalogue(self):
        assert select_tasks() == TASKS

    def test_unknown_name(self):
        with pytest.raises(SystemExit):
            select_tasks(only="eth_price,moon_index")


class TestMain:
    def test_missing_credentials(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        monkeypatch.delenv("DATABASE_PASSWORD", raising=False)
        with pytest.raises(SystemExit) as exc:
            data_collector.main([])
        assert "DATABASE_URL" in str(exc.value)

    def test_list(self, capsys):
        assert data_collector.main(["--list"]) is None
        out = capsys.readouterr().out
        assert "eth_price" in out
        assert "29. network_stats" in out

    def test_cli_exits_nonzero_on_fatal_error(self, monkeypatch):
        def _boom(argv=None):
            raise RuntimeError("connection pool exhausted")
        monkeypatch.setattr(data_collector, "main", _boom)
        with pytest.raises(SystemExit) as exc:
            data_collector.cli()
        assert exc.value.code == 1
