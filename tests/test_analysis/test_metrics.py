# Tests for per-iteration metrics

import csv
import json
import pytest
from gigalearn.analysis.logger import MetricsLogger
from gigalearn.analysis.metrics import AvgTracker, Report, check_policy_health


class TestAvgTracker:

    def test_mean(self):
        tracker = AvgTracker()
        tracker.add(1.0)
        tracker.add(3.0)
        assert tracker.get() == 2.0

    def test_empty_is_zero(self):
        tracker = AvgTracker()
        assert tracker.get() == 0.0
        assert not tracker

    def test_nan_ignored(self):
        tracker = AvgTracker()
        tracker.add(float("nan"))
        tracker.add(4.0)
        assert tracker.get() == 4.0
        assert tracker.count == 1

    def test_merge(self):
        a, b = AvgTracker(), AvgTracker()
        a.add(2.0)
        b.add(6.0, count=2)
        a.merge(b)
        assert a.get() == pytest.approx(8.0 / 3)


class TestReport:

    def test_set_and_get(self):
        report = Report()
        report["Policy Loss"] = 0.5
        assert report["Policy Loss"] == 0.5
        assert "Policy Loss" in report
        assert report.get("Critic Loss") is None

    def test_averaged_keys(self):
        report = Report()
        report.add_avg("Episode Length", 10)
        report.add_avg("Episode Length", 20)
        assert report["Episode Length"] == 15

        report.finish()
        assert report.to_dict() == {"Episode Length": 15.0}

    def test_format(self):
        report = Report()
        report["Collection Time"] = 1.5
        report["Inference Time"] = 0.25
        report["Total Timesteps"] = 150000

        text = report.format(["Collection Time", "-Inference Time", "Missing", "", "Total Timesteps"])

        assert text.splitlines() == [
            "Collection Time: 1.5",
            "  Inference Time: 0.25",
            "",
            "Total Timesteps: 150,000",
        ]


class TestCheckPolicyHealth:

    def test_healthy(self):
        report = Report()
        report["Policy Entropy"] = 0.8
        report["Mean KL Divergence"] = 0.01
        assert check_policy_health(report) == []

    def test_warnings(self):
        report = Report()
        report["Policy Entropy"] = 0.01
        report["Mean KL Divergence"] = 0.5
        report["Clipped Reward Portion"] = 0.5

        warnings = check_policy_health(report)

        assert len(warnings) == 3
        assert any("ENTROPY" in w for w in warnings)


class TestMetricsLogger:

    def test_csv_widens_for_new_keys(self, temp_dir):
        """Keys first seen on a later iteration still get a column."""
        metrics = MetricsLogger(temp_dir)
        metrics.log(1, {"Policy Entropy": 0.9})
        metrics.log(2, {"Policy Entropy": 0.8, "Policy Loss": 0.3})
        metrics.log(3, {"Policy Entropy": 0.7, "Policy Loss": 0.2})

        with open(temp_dir / "metrics.csv", newline="") as f:
            rows = list(csv.DictReader(f))

        assert len(rows) == 3
        assert rows[0]["Policy Loss"] == ""
        assert float(rows[2]["Policy Loss"]) == 0.2

    def test_summary_json(self, temp_dir):
        metrics = MetricsLogger(temp_dir)
        metrics.log(1, {"Policy Loss": 0.5})
        metrics.log(2, {"Policy Loss": 0.3, "Episode Length": 12.0})
        metrics.save_summary()

        data = json.loads((temp_dir / "metrics.json").read_text())
        assert data["history"][1]["Episode Length"] == 12.0
        assert data["summary"]["Policy Loss"]["last"] == 0.3
        assert data["summary"]["Episode Length"]["mean"] == 12.0

    def test_series_and_stats(self, temp_dir):
        metrics = MetricsLogger(temp_dir)
        for i, value in enumerate([1.0, 2.0, 3.0]):
            metrics.log(i, {"Policy Loss": value})

        assert metrics.get_metric_series("Policy Loss") == [1.0, 2.0, 3.0]
        assert metrics.get_latest("Policy Loss") == 3.0
        assert metrics.get_latest("Critic Loss") is None
        assert metrics.get_summary_stats("Policy Loss")["mean"] == pytest.approx(2.0)
        assert metrics.get_summary_stats("Critic Loss") == {}
