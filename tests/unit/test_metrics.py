"""Unit tests for the matchmaker metrics collector."""

import pytest

from matchmaker.metrics import Histogram, MetricsCollector


def test_histogram_quantiles() -> None:
    histogram = Histogram(name="wait", help="wait")
    for value in (0.2, 0.3, 0.4, 3.0):
        histogram.observe(value)

    assert histogram.count == 4
    assert histogram.sum == pytest.approx(3.9)
    p50 = histogram.quantile(0.5)
    assert p50 is not None
    assert p50 <= 0.5


def test_histogram_empty_quantile_is_none() -> None:
    assert Histogram(name="wait", help="wait").quantile(0.95) is None


def test_histogram_overflow_reports_last_finite_bound() -> None:
    histogram = Histogram(name="wait", help="wait")
    histogram.observe(10_000.0)

    value = histogram.quantile(0.99)

    assert value is not None
    assert value != float("inf")


def test_search_and_match_counters() -> None:
    collector = MetricsCollector()

    collector.record_search(waiting=True)
    assert collector.get_summary()["waiting_participants"] == 1

    collector.record_search(waiting=False)
    collector.record_match(2.0)

    summary = collector.get_summary()
    assert summary["searches_total"] == 2
    assert summary["matches_total"] == 1
    assert summary["waiting_participants"] == 0
    assert summary["match_wait_p50_s"] is not None


def test_connection_gauge() -> None:
    collector = MetricsCollector()

    collector.record_connection_open()
    collector.record_connection_open()
    collector.record_connection_closed()

    summary = collector.get_summary()
    assert summary["connections_active"] == 1
    assert summary["connections_total"] == 2


def test_relay_counters_by_kind() -> None:
    collector = MetricsCollector()

    collector.record_relay("offer", delivered=True)
    collector.record_relay("ice-candidate", delivered=True)
    collector.record_relay("ice-candidate", delivered=False)

    summary = collector.get_summary()
    assert summary["relayed_offer"] == 1
    assert summary["relayed_ice_candidate"] == 1
    assert summary["dropped_ice_candidate"] == 1
    assert summary["dropped_answer"] == 0


def test_prometheus_export_format() -> None:
    collector = MetricsCollector()
    collector.record_relay("answer", delivered=True)
    collector.record_match(0.3)

    text = collector.export_prometheus()

    assert "# TYPE searches_total counter" in text
    assert "# TYPE connections_active gauge" in text
    assert "# TYPE match_wait_seconds histogram" in text
    assert 'relayed_messages_total{kind="answer"} 1.0' in text
    assert 'match_wait_seconds_bucket{le="+Inf"} 1' in text
    assert "match_wait_seconds_count 1" in text
    # Labelled series share a single header
    assert text.count("# TYPE relayed_messages_total counter") == 1
    assert text.endswith("\n")
