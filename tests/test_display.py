from __future__ import annotations

from cdnlat.display import ProgressTracker, _color_for_ms, _fmt_ms, build_detail_table
from cdnlat.models import EndpointResult
from conftest import make_sample


def test_colour_thresholds_per_metric() -> None:
    assert _color_for_ms(40.0) == "green"
    assert _color_for_ms(120.0) == "yellow"
    assert _color_for_ms(400.0) == "red"
    assert _color_for_ms(40.0, "cdn") == "yellow"


def test_absent_value_renders_as_dash() -> None:
    assert _fmt_ms(None).plain == "-"
    assert _fmt_ms(12.346).plain == "12.35"


def test_progress_tracker_counts_failures(endpoints) -> None:
    tracker = ProgressTracker(endpoints, total_rounds=3)
    a, b, _ = endpoints

    tracker.update(1, 3, [(a, make_sample(1)), (b, make_sample(1, error="Request timed out"))])
    tracker.update(2, 3, [(a, make_sample(2)), (b, make_sample(2, error="Request timed out"))])

    assert tracker.completed == 2
    assert tracker.failures[a.label] == 0
    assert tracker.failures[b.label] == 2
    assert tracker.last[a.label].index == 2
    assert tracker._build_table().row_count == len(endpoints)


def test_detail_table_has_one_row_per_sample(endpoints) -> None:
    samples = [make_sample(1, 90.0, origin_time_ms=30.0), make_sample(2, error="boom"), make_sample(3)]
    table = build_detail_table(EndpointResult(endpoints[0], samples))

    assert table.row_count == 3
    assert list(table.columns[0].cells) == ["1", "2", "3"]
