from .histogram import Histogram
from .metrics import US_PER_MS
from .models import PercentileTable, RunReport

ROWS = (
    ("p50", "p50"),
    ("p75", "p75"),
    ("p90", "p90"),
    ("p99", "p99"),
    ("p99.9", "p99_9"),
    ("p99.99", "p99_99"),
    ("max", "max"),
    ("mean", "mean"),
    ("stddev", "stddev"),
)


def _fmt(value: float | None) -> str:
    return "-" if value is None else f"{value:.3f}"


def render_latency_histogram(histogram: Histogram | None, bins: int = 20) -> str:
    if histogram is None or not histogram.total_count:
        return "No latency data."
    lo = histogram.min_value / US_PER_MS
    hi = histogram.max_value / US_PER_MS
    if hi <= lo:
        return f"Histogram: single value {lo:.3f}ms ({histogram.total_count})"

    width = 40
    counts = [0] * bins
    for value, count in histogram.recorded_values():
        x = min(max(histogram.median_equivalent_value(value) / US_PER_MS, lo), hi)
        j = int((x - lo) / (hi - lo) * bins)
        if j == bins:
            j -= 1
        counts[j] += count

    peak = max(counts)
    lines = []
    for i, c in enumerate(counts):
        left = lo + (hi - lo) * (i / bins)
        right = lo + (hi - lo) * ((i + 1) / bins)
        bar = "#" * max(1, int((c / peak) * width)) if c else ""
        lines.append(f"{left:10.3f}ms - {right:10.3f}ms | {bar} ({c})")
    return "Latency Histogram\n" + "\n".join(lines)


def render_percentile_table(
    raw: PercentileTable, corrected: PercentileTable | None = None
) -> str:
    """Raw and corrected percentiles side by side, in milliseconds."""
    header = f"{'':>8} | {'raw ms':>12}"
    if corrected is not None:
        header += f" | {'corrected ms':>12} | {'ratio':>7}"
    lines = ["Latency Percentiles", header, "-" * len(header)]
    for label, attr in ROWS:
        r = getattr(raw, attr)
        line = f"{label:>8} | {_fmt(r):>12}"
        if corrected is not None:
            c = getattr(corrected, attr)
            ratio = f"{c / r:.2f}x" if r and c is not None else "-"
            line += f" | {_fmt(c):>12} | {ratio:>7}"
        lines.append(line)
    count_line = f"{'count':>8} | {raw.count:>12}"
    if corrected is not None:
        count_line += f" | {corrected.count:>12} | {'':>7}"
    lines.append(count_line)
    return "\n".join(lines)


def render_summary(report: RunReport) -> str:
    lines = [
        "Run Summary",
        f"  issued     {report.total_issued}",
        f"  completed  {report.total_completed}",
        f"  timeouts   {report.total_timeout}",
        f"  errors     {report.total_error}",
        f"  dropped    {report.total_dropped}",
        f"  rate       {report.achieved_rate:.2f}/s achieved, "
        f"{report.issued_rate:.2f}/s issued, {report.target_rate:.2f}/s target",
        f"  queue      max depth {report.max_queue_depth_observed}, "
        f"max in flight {report.max_in_flight_observed}",
        f"  drift      max {report.schedule_max_lag_ms:.3f}ms, "
        f"mean {report.schedule_mean_lag_ms:.3f}ms, overruns {report.schedule_overruns}",
    ]
    if report.error_reasons:
        reasons = ", ".join(f"{k}={v}" for k, v in sorted(report.error_reasons.items()))
        lines.append(f"  reasons    {reasons}")
    if report.correction_mode != "none":
        lines.append(
            f"  correction {report.correction_mode} "
            f"(expected interval {report.expected_interval_ms:.3f}ms)"
        )
    if report.total_issued and report.total_completed < report.total_issued:
        lines.append(
            f"  NOTE: {report.total_issued - report.total_completed} of "
            f"{report.total_issued} requests did not complete successfully"
        )
    return "\n".join(lines)


def render_report(report: RunReport, bins: int = 20) -> str:
    parts = [
        render_summary(report),
        render_percentile_table(report.percentiles_raw, report.percentiles_corrected),
        render_latency_histogram(report.raw_histogram, bins),
    ]
    return "\n\n".join(parts)
