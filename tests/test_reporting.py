"""
Tests for per-round statistics.
Run: pytest tests/test_reporting.py -q
"""
import pandas as pd

from reporting import RoundReporter
from session import Session


def run_one(config, readings, **kwargs):
    reporter = RoundReporter(tags={"nodes": 4})
    session = Session(config, seed=1, reporter=reporter, **kwargs)
    session.run_round(readings)
    return reporter


def test_round_row(config4, readings4):
    df = run_one(config4, readings4).to_dataframe()
    assert len(df) == 1
    row = df.iloc[0]
    assert row["nodes"] == 4
    assert row["tx_aggregator->aggregator"] == 2
    assert row["tx_aggregator->member"] == 4
    assert row["tx_member->aggregator"] == 4
    assert row["tx_packets"] == 10
    assert row["dropped_packets"] == 0
    assert row["pdf"] == 100.0
    assert row["completeness"] == 1.0
    assert row["group_sum"] == sum(readings4)
    assert row["sum_error"] == 0


def test_dropped_offsets_are_counted(config4, readings4):
    reporter = run_one(config4, readings4, drop_filter=lambda s, d, p: s == "lead0" and d == 2)
    row = reporter.to_dataframe().iloc[0]
    assert row["dropped_packets"] == 1
    assert row["tx_member->aggregator"] == 3
    assert row["missed"] == 1
    assert row["completeness"] == 0.75


def test_counter_rows(config4, readings4):
    counters = run_one(config4, readings4).counters_dataframe()
    assert len(counters) == 6
    assert set(counters["role"]) == {"aggregator", "member"}
    assert counters["format_errors"].sum() == 0


def test_to_csv_appends(tmp_path, config4, readings4):
    path = tmp_path / "results.csv"
    run_one(config4, readings4).to_csv(path)
    run_one(config4, readings4).to_csv(path)
    assert len(pd.read_csv(path)) == 2
    run_one(config4, readings4).to_csv(path, append=False)
    assert len(pd.read_csv(path)) == 1
