from openloop.config import RunConfig
from openloop.histogram import Histogram
from openloop.metrics import compute_report, percentile_table
from openloop.models import ScheduleStats, WorkerState
from openloop.recorder import Recorder
from openloop.rendering import (
    render_latency_histogram,
    render_percentile_table,
    render_report,
    render_summary,
)


def _histogram(values_ms):
    h = Histogram()
    for v in values_ms:
        h.record(v * 1000)
    return h


def test_histogram_empty():
    assert "No latency data" in render_latency_histogram(Histogram())
    assert "No latency data" in render_latency_histogram(None)


def test_histogram_single_value():
    assert "single value" in render_latency_histogram(_histogram([5, 5, 5]))


def test_histogram_bins():
    text = render_latency_histogram(_histogram([1, 2, 3, 10, 10, 10]), bins=4)
    lines = text.splitlines()
    assert lines[0] == "Latency Histogram"
    assert len(lines) == 5
    assert lines[-1].endswith("(3)")
    assert sum(int(line.rsplit("(", 1)[1].rstrip(")")) for line in lines[1:]) == 6


def test_percentile_table_raw_only():
    text = render_percentile_table(percentile_table(_histogram([1, 2, 3])))
    assert "raw ms" in text
    assert "corrected" not in text
    assert "p99.99" in text


def test_percentile_table_side_by_side():
    raw = percentile_table(_histogram([10] * 99 + [1000]))
    corrected = percentile_table(_histogram([10] * 99 + [1000] + list(range(20, 1000, 10))))
    text = render_percentile_table(raw, corrected)
    assert "corrected ms" in text
    assert "ratio" in text
    p99 = next(line for line in text.splitlines() if line.strip().startswith("p99 "))
    assert p99.rstrip().endswith("x")


def _report(**overrides):
    cfg = RunConfig(target_rate=100, duration=1, correction_mode=overrides.pop("mode", "none"))
    recorder = Recorder(0)
    recorder.raw.record(10_000)
    schedule = ScheduleStats(issued=4, start_time=0.0, end_time=1.0)
    return compute_report(cfg, schedule, WorkerState(), [recorder], dropped=overrides.pop("dropped", 0))


def test_summary_reports_every_counter():
    text = render_summary(_report(dropped=3))
    for label in ("issued", "completed", "timeouts", "errors", "dropped", "rate", "drift"):
        assert label in text
    assert "dropped    3" in text
    assert "did not complete successfully" in text


def test_report_mentions_correction():
    text = render_report(_report(mode="post_hoc"))
    assert "correction post_hoc" in text
    assert "corrected ms" in text
    assert "Latency Histogram" in text or "single value" in text
