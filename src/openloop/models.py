from dataclasses import dataclass, field, fields, asdict
from enum import Enum
from typing import Any
from collections.abc import Awaitable, Callable

from .histogram import Histogram


@dataclass(frozen=True)
class ScheduledTick:
    index: int
    intended_time: float


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    TIMEOUT = "timeout"
    ERROR = "error"


@dataclass(frozen=True)
class Outcome:
    """What a target returns for one invocation."""

    kind: OutcomeKind
    completion_time: float | None = None
    reason: str | None = None

    @classmethod
    def success(cls, completion_time: float | None = None) -> "Outcome":
        return cls(OutcomeKind.SUCCESS, completion_time=completion_time)

    @classmethod
    def error(cls, reason: str) -> "Outcome":
        return cls(OutcomeKind.ERROR, reason=reason)

    @classmethod
    def timeout(cls) -> "Outcome":
        return cls(OutcomeKind.TIMEOUT, reason="timeout")


@dataclass(frozen=True)
class RequestAttempt:
    tick_index: int
    intended_time: float
    sent_time: float | None
    completion_time: float
    outcome: OutcomeKind
    reason: str | None = None
    # Tick deadline; differs from intended_time only for closed-loop dispatch.
    scheduled_time: float | None = None

    @property
    def latency(self) -> float:
        return self.completion_time - self.intended_time

    @property
    def queue_delay(self) -> float | None:
        if self.sent_time is None or self.scheduled_time is None:
            return None
        return self.sent_time - self.scheduled_time


@dataclass
class WorkerState:
    in_flight: int = 0
    queue_depth: int = 0
    max_in_flight_observed: int = 0
    max_queue_depth_observed: int = 0

    def snapshot(self) -> "WorkerState":
        return WorkerState(
            in_flight=self.in_flight,
            queue_depth=self.queue_depth,
            max_in_flight_observed=self.max_in_flight_observed,
            max_queue_depth_observed=self.max_queue_depth_observed,
        )


@dataclass
class ScheduleStats:
    issued: int = 0
    start_time: float | None = None
    end_time: float | None = None
    max_lag: float = 0.0
    total_lag: float = 0.0
    overrun_count: int = 0

    @property
    def mean_lag(self) -> float:
        return self.total_lag / self.issued if self.issued else 0.0

    @property
    def window(self) -> float:
        if self.start_time is None or self.end_time is None:
            return 0.0
        return max(0.0, self.end_time - self.start_time)


@dataclass
class PercentileTable:
    count: int
    p50: float | None
    p75: float | None
    p90: float | None
    p99: float | None
    p99_9: float | None
    p99_99: float | None
    max: float | None
    min: float | None
    mean: float | None
    stddev: float | None


@dataclass
class RunReport:
    percentiles_raw: PercentileTable
    percentiles_corrected: PercentileTable | None
    total_issued: int
    total_completed: int
    total_timeout: int
    total_error: int
    total_dropped: int
    achieved_rate: float
    issued_rate: float
    target_rate: float
    max_queue_depth_observed: int
    max_in_flight_observed: int
    schedule_max_lag_ms: float
    schedule_mean_lag_ms: float
    schedule_overruns: int
    correction_mode: str
    expected_interval_ms: float | None
    elapsed_s: float
    error_reasons: dict[str, int] = field(default_factory=dict)
    raw_histogram: Histogram | None = field(default=None, repr=False, compare=False)
    corrected_histogram: Histogram | None = field(default=None, repr=False, compare=False)

    @property
    def accounted(self) -> int:
        return self.total_completed + self.total_timeout + self.total_error + self.total_dropped

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {}
        for f in fields(self):
            if f.name in ("raw_histogram", "corrected_histogram"):
                continue
            value = getattr(self, f.name)
            if isinstance(value, PercentileTable):
                value = asdict(value)
            elif isinstance(value, dict):
                value = dict(value)
            d[f.name] = value
        return d


# The system under test: invoke(deadline) -> Outcome
Target = Callable[[float], Awaitable[Outcome]]

# Clock: monotonic seconds
Clock = Callable[[], float]

# Metrics callback: callable accepting the output record
MetricsCallback = Callable[[dict[str, Any]], None]
