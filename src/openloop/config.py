import logging
from dataclasses import dataclass, asdict, fields
from enum import Enum
from typing import Any

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class ArrivalDistribution(str, Enum):
    CONSTANT = "constant"
    POISSON = "poisson"


class CorrectionMode(str, Enum):
    """
    Where coordinated-omission correction happens. One mode per run.

    | mode         | recorder                       | aggregator                  |
    |--------------|--------------------------------|-----------------------------|
    | none         | raw only                       | raw table                   |
    | at_recording | raw + corrected per sample     | merges both, two tables     |
    | post_hoc     | raw only                       | copy_corrected after merge  |
    """

    NONE = "none"
    AT_RECORDING = "at_recording"
    POST_HOC = "post_hoc"


class LoadShedding(str, Enum):
    QUEUE = "queue"
    SHED = "shed"


class DispatchModel(str, Enum):
    OPEN_LOOP = "open_loop"
    # max_in_flight request-at-a-time connections, measured from send time
    CLOSED_LOOP = "closed_loop"


def _coerce_enum(enum_cls: type[Enum], value: Any, name: str) -> Enum:
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, (list, tuple, set)) or (isinstance(value, str) and "," in value):
        raise ConfigurationError(f"{name} takes exactly one value, got {value!r}")
    try:
        return enum_cls(str(value).strip().lower().replace("-", "_"))
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ConfigurationError(f"unknown {name} {value!r} (expected one of: {allowed})") from None


@dataclass
class RunConfig:
    target_rate: float | None = None  # requests per second
    interval: float | None = None  # seconds between ticks, alternative to target_rate
    duration: float | None = None  # seconds
    total_count: int | None = None
    max_in_flight: int = 64
    timeout: float = 10.0
    drain_timeout: float | None = None
    arrival_distribution: ArrivalDistribution = ArrivalDistribution.CONSTANT
    precision_digits: int = 3
    lowest_trackable_us: int = 1
    highest_trackable_us: int = 3_600_000_000
    strict_range: bool = False
    correction_mode: CorrectionMode = CorrectionMode.NONE
    expected_interval: float | None = None  # seconds
    load_shedding: LoadShedding = LoadShedding.QUEUE
    dispatch_model: DispatchModel = DispatchModel.OPEN_LOOP
    recorder_shards: int = 4
    drift_tolerance: float = 0.010
    seed: int | None = None

    def __post_init__(self) -> None:
        self.arrival_distribution = _coerce_enum(
            ArrivalDistribution, self.arrival_distribution, "arrival_distribution"
        )
        self.correction_mode = _coerce_enum(CorrectionMode, self.correction_mode, "correction_mode")
        self.load_shedding = _coerce_enum(LoadShedding, self.load_shedding, "load_shedding")
        self.dispatch_model = _coerce_enum(DispatchModel, self.dispatch_model, "dispatch_model")

    @property
    def rate(self) -> float:
        if self.target_rate is not None:
            return float(self.target_rate)
        if self.interval is not None and self.interval > 0:
            return 1.0 / self.interval
        raise ConfigurationError("one of target_rate or interval is required")

    @property
    def resolved_drain_timeout(self) -> float:
        if self.drain_timeout is not None:
            return self.drain_timeout
        return max(5.0, float(self.timeout))

    @property
    def resolved_expected_interval(self) -> float:
        """Seconds between requests a single sender was supposed to issue."""
        if self.expected_interval is not None:
            return self.expected_interval
        if self.dispatch_model is DispatchModel.CLOSED_LOOP:
            return self.max_in_flight / self.rate
        return 1.0 / self.rate

    def validate(self) -> "RunConfig":
        if self.target_rate is not None and self.interval is not None:
            raise ConfigurationError("target_rate and interval are mutually exclusive")
        if self.target_rate is None and self.interval is None:
            raise ConfigurationError("one of target_rate or interval is required")
        if self.target_rate is not None and not self.target_rate > 0:
            raise ConfigurationError(f"target_rate must be > 0, got {self.target_rate}")
        if self.interval is not None and not self.interval > 0:
            raise ConfigurationError(f"interval must be > 0, got {self.interval}")
        if self.duration is None and self.total_count is None:
            raise ConfigurationError("one of duration or total_count is required")
        if self.duration is not None and self.duration < 0:
            raise ConfigurationError(f"duration must be >= 0, got {self.duration}")
        if self.total_count is not None and self.total_count < 0:
            raise ConfigurationError(f"total_count must be >= 0, got {self.total_count}")
        if self.max_in_flight < 1:
            raise ConfigurationError(f"max_in_flight must be >= 1, got {self.max_in_flight}")
        if not self.timeout > 0:
            raise ConfigurationError(f"timeout must be > 0, got {self.timeout}")
        if self.drain_timeout is not None and self.drain_timeout < 0:
            raise ConfigurationError(f"drain_timeout must be >= 0, got {self.drain_timeout}")
        if not 1 <= self.precision_digits <= 5:
            raise ConfigurationError(
                f"precision_digits must be between 1 and 5, got {self.precision_digits}"
            )
        if self.lowest_trackable_us < 1:
            raise ConfigurationError(
                f"lowest_trackable_us must be >= 1, got {self.lowest_trackable_us}"
            )
        if self.highest_trackable_us < 2 * self.lowest_trackable_us:
            raise ConfigurationError("highest_trackable_us must be >= 2 * lowest_trackable_us")
        if self.expected_interval is not None and not self.expected_interval > 0:
            raise ConfigurationError(
                f"expected_interval must be > 0, got {self.expected_interval}"
            )
        if self.recorder_shards < 1:
            raise ConfigurationError(f"recorder_shards must be >= 1, got {self.recorder_shards}")
        if self.drift_tolerance < 0:
            raise ConfigurationError(f"drift_tolerance must be >= 0, got {self.drift_tolerance}")
        if (
            self.correction_mode is not CorrectionMode.NONE
            and int(round(self.resolved_expected_interval * 1_000_000)) < 1
        ):
            raise ConfigurationError(
                f"expected interval {self.resolved_expected_interval!r}s is below 1us, "
                "the histogram resolution; correction cannot be applied at this rate"
            )

        if (
            self.correction_mode is not CorrectionMode.NONE
            and self.dispatch_model is DispatchModel.OPEN_LOOP
        ):
            logger.warning(
                f"correction_mode={self.correction_mode.value} with open-loop dispatch: "
                "latencies already include queueing delay, corrected tables will overstate the tail"
            )
        return self

    def histogram_settings(self) -> dict[str, Any]:
        return {
            "lowest_trackable_value": self.lowest_trackable_us,
            "highest_trackable_value": self.highest_trackable_us,
            "precision_digits": self.precision_digits,
            "strict": self.strict_range,
        }

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        for key, value in d.items():
            if isinstance(value, Enum):
                d[key] = value.value
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"unknown configuration options: {', '.join(unknown)}")
        return cls(**{k: v for k, v in data.items() if v is not None})
