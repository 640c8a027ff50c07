"""Tests for metric_push.latest."""

from __future__ import annotations

import datetime

from metric_push.latest import Snapshot, fetch_latest


class FakeMetricsClient:
    def __init__(self, results):
        self.results = results
        self.queries: list[str] = []

    def query(self, query, at=None):
        self.queries.append(query)
        return self.results


RESULTS = [
    {"metric": {"pod": "b"}, "value": [1700000100, "2048"]},
    {"metric": {"pod": "a"}, "value": [1700000000, "1024"]},
    {"metric": {"pod": "a"}, "value": [1700000050, "4096"]},
    {"metric": {"pod": "c"}, "value": [1700000000]},
    {"metric": {"pod": "d"}, "value": [1700000000, "NaN"]},
    {"metric": {"pod": "e"}, "value": [1700000000, "n/a"]},
]


class TestFetchLatest:
    def test_one_value_per_label(self):
        client = FakeMetricsClient(RESULTS)
        snapshots = fetch_latest(
            client, "mem", default_label="pod", initial_unit="B", target_unit="KiB"
        )

        assert client.queries == ["mem"]
        assert [s.label for s in snapshots] == ["a", "b"]
        assert snapshots[0].value == 4.0
        assert snapshots[0].timestamp == 1700000050
        assert snapshots[1].value == 2.0

    def test_newer_value_wins_regardless_of_order(self):
        results = [
            {"metric": {"pod": "a"}, "value": [200, "2"]},
            {"metric": {"pod": "a"}, "value": [100, "1"]},
        ]
        snapshots = fetch_latest(FakeMetricsClient(results), "up", default_label="pod")
        assert snapshots == [Snapshot(label="a", value=2.0, timestamp=200)]

    def test_custom_label_drops_unlabelled(self):
        snapshots = fetch_latest(FakeMetricsClient(RESULTS), "up", custom_label="zone")
        assert snapshots == []

    def test_fallback_label(self):
        results = [{"metric": {}, "value": [100, "0.5"]}]
        snapshots = fetch_latest(FakeMetricsClient(results), "node_cpu_seconds_total")
        assert snapshots[0].label == "指标"

    def test_empty(self):
        assert fetch_latest(FakeMetricsClient([]), "up") == []


class TestSnapshot:
    def test_time(self):
        when = datetime.datetime(2024, 3, 5, 12, 0)
        snap = Snapshot(label="a", value=1.0, timestamp=int(when.timestamp()))
        assert snap.time == when
