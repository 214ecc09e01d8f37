#!/usr/bin/env python3
"""
reporting.py

Per-round statistics for the obfuscation protocol, kept apart from the
protocol itself. The transport reports every packet event ('tx', 'rx',
'drop'); the session reports round start and round completion. Rows are kept
in memory and exported as a pandas DataFrame or CSV.
"""

import os
from collections import Counter

import pandas as pd

from utils import get_logger

logger = get_logger(__name__)

LINK_KINDS = ("aggregator->aggregator", "aggregator->member", "member->aggregator")


class RoundReporter:
    """
    Accumulates per-message events into one row per round.
    """

    def __init__(self, tags=None):
        """
        Parameters:
          tags: optional dict of constant columns added to every row
                (e.g. the sweep configuration).
        """
        self.tags = dict(tags or {})
        self.roles = {}
        self.rows = []
        self.counter_rows = []
        self._events = Counter()
        self._round_id = None

    def register_roles(self, roles):
        self.roles.update(roles)

    def _link_kind(self, source, destination):
        return f"{self.roles.get(source, 'unknown')}->{self.roles.get(destination, 'unknown')}"

    def on_transport_event(self, event, source, destination, size):
        kind = self._link_kind(source, destination)
        self._events[(event, kind)] += 1
        self._events[(event, "bytes")] += size

    def round_started(self, round_id, session_type, time):
        self._round_id = round_id
        self._events = Counter()
        logger.debug("Round %s (%s) started at t=%.3f", round_id, session_type, time)

    def round_completed(self, result):
        tx = sum(v for (e, k), v in self._events.items() if e == "tx" and k != "bytes")
        rx = sum(v for (e, k), v in self._events.items() if e == "rx" and k != "bytes")
        row = dict(self.tags)
        row.update({
            "round_id": result.round_id,
            "session_type": result.session_type,
            "start_time": result.start_time,
            "end_time": result.end_time,
            "expected": result.expected,
            "collected": result.collected,
            "completeness": result.completeness,
            "missed": len(result.missed),
            "failed": len(result.failed),
            "tx_packets": tx,
            "rx_packets": rx,
            "dropped_packets": sum(v for (e, k), v in self._events.items() if e == "drop" and k != "bytes"),
            "tx_bytes": self._events[("tx", "bytes")],
            "rx_bytes": self._events[("rx", "bytes")],
            "pdf": 100.0 * rx / tx if tx else 0.0,
        })
        for kind in LINK_KINDS:
            row[f"tx_{kind}"] = self._events[("tx", kind)]
            row[f"rx_{kind}"] = self._events[("rx", kind)]
        if result.group_sums:
            row["group_sum"] = sum(result.group_sums.values())
            row["true_sum"] = sum(result.true_sums.values())
            row["sum_error"] = row["group_sum"] - row["true_sum"]
        else:
            row["group_sum"] = row["true_sum"] = row["sum_error"] = None
        self.rows.append(row)

        for counters in result.counters:
            c = dict(self.tags)
            c.update(counters)
            c["round_id"] = result.round_id
            self.counter_rows.append(c)

        logger.info("Round %s: %d/%d contributions (%.1f%%), PDF %.1f%%", result.round_id,
                    result.collected, result.expected, 100.0 * result.completeness, row["pdf"])
        self._events = Counter()

    def to_dataframe(self):
        return pd.DataFrame(self.rows)

    def counters_dataframe(self):
        return pd.DataFrame(self.counter_rows)

    def to_csv(self, filename, append=True):
        """
        Write the round rows to `filename`. With append, rows already in the
        file are kept and the new rows added after them.
        """
        df = self.to_dataframe()
        if append and os.path.exists(filename):
            df = pd.concat([pd.read_csv(filename), df], ignore_index=True)
        df.to_csv(filename, index=False)
        return df
