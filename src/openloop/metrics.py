import logging
from collections import Counter
from collections.abc import Sequence

from .config import CorrectionMode, RunConfig
from .histogram import Histogram, merge_histograms
from .models import MetricsCallback, PercentileTable, RunReport, ScheduleStats, WorkerState
from .recorder import Recorder, to_micros

logger = logging.getLogger(__name__)

PERCENTILES = (
    ("p50", 50.0),
    ("p75", 75.0),
    ("p90", 90.0),
    ("p99", 99.0),
    ("p99_9", 99.9),
    ("p99_99", 99.99),
)

# histogram unit (µs) → reported unit (ms)
US_PER_MS = 1000.0


def percentile_table(histogram: Histogram, unit_divisor: float = US_PER_MS) -> PercentileTable:
    n = histogram.total_count
    if not n:
        return PercentileTable(
            count=0,
            p50=None,
            p75=None,
            p90=None,
            p99=None,
            p99_9=None,
            p99_99=None,
            max=None,
            min=None,
            mean=None,
            stddev=None,
        )

    values = {
        name: histogram.value_at_percentile(p) / unit_divisor for name, p in PERCENTILES
    }
    return PercentileTable(
        count=n,
        max=histogram.max_value / unit_divisor,
        min=histogram.min_value / unit_divisor,
        mean=histogram.mean() / unit_divisor,
        stddev=histogram.stddev() / unit_divisor,
        **values,
    )


def compute_report(
    config: RunConfig,
    schedule: ScheduleStats,
    worker_state: WorkerState,
    recorders: Sequence[Recorder],
    *,
    dropped: int,
    metrics_callback: MetricsCallback | None = None,
) -> RunReport:
    """Merge per-shard histograms once and build the run's output record."""
    raw = merge_histograms(r.raw for r in recorders)
    expected_interval = config.resolved_expected_interval

    corrected: Histogram | None = None
    if config.correction_mode is CorrectionMode.AT_RECORDING:
        corrected = merge_histograms(r.corrected for r in recorders if r.corrected is not None)
    elif config.correction_mode is CorrectionMode.POST_HOC:
        corrected = raw.copy_corrected(to_micros(expected_interval))

    completed = sum(r.completed for r in recorders)
    timeouts = sum(r.timeouts for r in recorders)
    errors = sum(r.errors for r in recorders)
    reasons: Counter[str] = Counter()
    for r in recorders:
        reasons.update(r.error_reasons)

    last_completion = max(
        (r.last_completion_time for r in recorders if r.last_completion_time is not None),
        default=None,
    )
    start = schedule.start_time or 0.0
    active_window = (last_completion - start) if last_completion is not None else 0.0
    if active_window <= 0:
        active_window = schedule.window
    achieved_rate = completed / active_window if active_window > 0 else 0.0
    issued_rate = schedule.issued / schedule.window if schedule.window > 0 else 0.0
    elapsed = max(schedule.window, active_window)

    report = RunReport(
        percentiles_raw=percentile_table(raw),
        percentiles_corrected=percentile_table(corrected) if corrected is not None else None,
        total_issued=schedule.issued,
        total_completed=completed,
        total_timeout=timeouts,
        total_error=errors,
        total_dropped=dropped,
        achieved_rate=achieved_rate,
        issued_rate=issued_rate,
        target_rate=config.rate,
        max_queue_depth_observed=worker_state.max_queue_depth_observed,
        max_in_flight_observed=worker_state.max_in_flight_observed,
        schedule_max_lag_ms=schedule.max_lag * 1000.0,
        schedule_mean_lag_ms=schedule.mean_lag * 1000.0,
        schedule_overruns=schedule.overrun_count,
        correction_mode=config.correction_mode.value,
        expected_interval_ms=(
            expected_interval * 1000.0 if config.correction_mode is not CorrectionMode.NONE else None
        ),
        elapsed_s=elapsed,
        error_reasons=dict(reasons),
        raw_histogram=raw,
        corrected_histogram=corrected,
    )

    if report.accounted != report.total_issued:
        logger.error(
            f"Request accounting mismatch: issued={report.total_issued}, "
            f"completed+timeout+error+dropped={report.accounted}"
        )

    if raw.saturated_count:
        logger.warning(
            f"{raw.saturated_count} samples exceeded the trackable maximum and were saturated"
        )

    if metrics_callback:
        metrics_callback(report.to_dict())

    p99 = report.percentiles_raw.p99
    logger.info(
        f"Report: issued={report.total_issued}, completed={completed}, timeouts={timeouts}, "
        f"errors={errors}, dropped={dropped}, achieved={achieved_rate:.1f}/s "
        f"(target {config.rate:.1f}/s), raw p99="
        + (f"{p99:.3f}ms" if p99 is not None else "n/a")
    )
    return report
