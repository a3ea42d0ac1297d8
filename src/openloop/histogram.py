"""
Log-linear latency histogram with fixed memory and bounded relative error.

The layout follows HdrHistogram: values are integers (openloop records
microseconds), grouped into power-of-two buckets, each split into linear
sub-buckets. With ``precision_digits = d`` every sub-bucket is narrower than
``10**-d`` of the values it holds, so any recorded value is reported back
within that relative error. The counts array is sized once from the
trackable range and precision and never grows, which is what lets every
recorder shard own a private instance and merge it at run end.
"""

import bisect
import itertools
import logging
import math
from collections.abc import Iterable, Iterator
from typing import Any

from .errors import ConfigurationError, ValueOutOfRangeError

logger = logging.getLogger(__name__)


def corrected_values(value: int, expected_interval: int) -> Iterator[int]:
    """
    Synthetic samples for one stalled request.

    Given a latency ``value`` observed by a sender that could not issue while
    waiting, yield the latencies the requests it should have sent every
    ``expected_interval`` would have seen: ``value - I, value - 2I, ...``
    down to (and including) ``I``. That is ``floor(value / I) - 1`` values.
    """
    if expected_interval <= 0 or value <= expected_interval:
        return
    missing = value - expected_interval
    while missing >= expected_interval:
        yield max(missing, expected_interval)
        missing -= expected_interval


def _interval_units(expected_interval: float) -> int:
    interval = int(expected_interval)
    if interval < 1:
        raise ConfigurationError(
            f"expected_interval must be at least one histogram unit, got {expected_interval}; "
            "express latencies in integer units such as microseconds"
        )
    return interval


class Histogram:
    def __init__(
        self,
        lowest_trackable_value: int = 1,
        highest_trackable_value: int = 3_600_000_000,
        precision_digits: int = 3,
        strict: bool = False,
    ) -> None:
        if lowest_trackable_value < 1:
            raise ConfigurationError(
                f"lowest_trackable_value must be >= 1, got {lowest_trackable_value}"
            )
        if highest_trackable_value < 2 * lowest_trackable_value:
            raise ConfigurationError(
                "highest_trackable_value must be >= 2 * lowest_trackable_value, "
                f"got {highest_trackable_value} < 2 * {lowest_trackable_value}"
            )
        if not 1 <= precision_digits <= 5:
            raise ConfigurationError(
                f"precision_digits must be between 1 and 5, got {precision_digits}"
            )

        self.lowest_trackable_value = int(lowest_trackable_value)
        self.highest_trackable_value = int(highest_trackable_value)
        self.precision_digits = int(precision_digits)
        self.strict = strict

        largest_single_unit = 2 * 10**self.precision_digits
        # ceil(log2(x)) for integers
        sub_bucket_count_magnitude = (largest_single_unit - 1).bit_length()
        self._half_count_magnitude = max(sub_bucket_count_magnitude, 1) - 1
        self._sub_bucket_count = 1 << (self._half_count_magnitude + 1)
        self._sub_bucket_half_count = self._sub_bucket_count // 2
        self._unit_magnitude = self.lowest_trackable_value.bit_length() - 1
        self._sub_bucket_mask = (self._sub_bucket_count - 1) << self._unit_magnitude

        self.bucket_count = self._buckets_needed(self.highest_trackable_value)
        self.counts_len = (self.bucket_count + 1) * self._sub_bucket_half_count

        self._counts: list[int] = [0] * self.counts_len
        self._cumulative: list[int] | None = None
        self.total_count = 0
        self.saturated_count = 0
        self.corrected = False
        self._min: int | None = None
        self._max: int | None = None

    def _buckets_needed(self, highest: int) -> int:
        smallest_untrackable = self._sub_bucket_count << self._unit_magnitude
        buckets = 1
        while smallest_untrackable <= highest:
            smallest_untrackable <<= 1
            buckets += 1
        return buckets

    # ────────────────────────────────
    # Index arithmetic
    # ────────────────────────────────

    def _bucket_index(self, value: int) -> int:
        pow2ceiling = (value | self._sub_bucket_mask).bit_length()
        return pow2ceiling - self._unit_magnitude - (self._half_count_magnitude + 1)

    def _sub_bucket_index(self, value: int, bucket_index: int) -> int:
        return value >> (bucket_index + self._unit_magnitude)

    def _counts_index(self, bucket_index: int, sub_bucket_index: int) -> int:
        base = (bucket_index + 1) << self._half_count_magnitude
        return base + (sub_bucket_index - self._sub_bucket_half_count)

    def _counts_index_for(self, value: int) -> int:
        bucket_index = self._bucket_index(value)
        return self._counts_index(bucket_index, self._sub_bucket_index(value, bucket_index))

    def _value_from_index(self, bucket_index: int, sub_bucket_index: int) -> int:
        return sub_bucket_index << (bucket_index + self._unit_magnitude)

    def _value_at_index(self, index: int) -> int:
        bucket_index = (index >> self._half_count_magnitude) - 1
        sub_bucket_index = (index & (self._sub_bucket_half_count - 1)) + self._sub_bucket_half_count
        if bucket_index < 0:
            sub_bucket_index -= self._sub_bucket_half_count
            bucket_index = 0
        return self._value_from_index(bucket_index, sub_bucket_index)

    def size_of_equivalent_value_range(self, value: int) -> int:
        bucket_index = self._bucket_index(value)
        sub_bucket_index = self._sub_bucket_index(value, bucket_index)
        if sub_bucket_index >= self._sub_bucket_count:
            bucket_index += 1
        return 1 << (self._unit_magnitude + bucket_index)

    def lowest_equivalent_value(self, value: int) -> int:
        bucket_index = self._bucket_index(value)
        return self._value_from_index(bucket_index, self._sub_bucket_index(value, bucket_index))

    def highest_equivalent_value(self, value: int) -> int:
        return self.lowest_equivalent_value(value) + self.size_of_equivalent_value_range(value) - 1

    def median_equivalent_value(self, value: int) -> int:
        return self.lowest_equivalent_value(value) + (self.size_of_equivalent_value_range(value) >> 1)

    # ────────────────────────────────
    # Recording
    # ────────────────────────────────

    def _normalize(self, value: float, count: int) -> int:
        v = int(value)
        if v < self.lowest_trackable_value:
            return self.lowest_trackable_value
        if v > self.highest_trackable_value:
            if self.strict:
                raise ValueOutOfRangeError(v, self.highest_trackable_value)
            self.saturated_count += count
            return self.highest_trackable_value
        return v

    def record(self, value: float, count: int = 1) -> None:
        """Record ``value`` ``count`` times. Out-of-range values are clamped or rejected."""
        v = self._normalize(value, count)
        self._counts[self._counts_index_for(v)] += count
        self.total_count += count
        if self._min is None or v < self._min:
            self._min = v
        if self._max is None or v > self._max:
            self._max = v
        self._cumulative = None

    def record_corrected_value(self, value: float, expected_interval: float, count: int = 1) -> None:
        """Record ``value`` plus the synthetic samples a stalled sender omitted."""
        interval = _interval_units(expected_interval)
        self.corrected = True
        self.record(value, count)
        v = min(max(int(value), self.lowest_trackable_value), self.highest_trackable_value)
        for missing in corrected_values(v, interval):
            self.record(missing, count)

    # ────────────────────────────────
    # Queries
    # ────────────────────────────────

    @property
    def min_value(self) -> int | None:
        return self._min

    @property
    def max_value(self) -> int | None:
        return self._max

    def _cumulative_counts(self) -> list[int]:
        if self._cumulative is None:
            self._cumulative = list(itertools.accumulate(self._counts))
        return self._cumulative

    def value_at_percentile(self, percentile: float) -> int:
        if self.total_count == 0:
            return 0
        requested = min(max(float(percentile), 0.0), 100.0)
        count_at_percentile = max(int(requested / 100.0 * self.total_count + 0.5), 1)
        index = bisect.bisect_left(self._cumulative_counts(), count_at_percentile)
        value = self._value_at_index(index)
        if requested == 0.0:
            return self.lowest_equivalent_value(value)
        return self.highest_equivalent_value(value)

    def recorded_values(self) -> Iterator[tuple[int, int]]:
        """Yield ``(bucket_value, count)`` for every non-empty bucket, ascending."""
        for index, count in enumerate(self._counts):
            if count:
                yield self._value_at_index(index), count

    def mean(self) -> float:
        if self.total_count == 0:
            return 0.0
        total = sum(self.median_equivalent_value(v) * c for v, c in self.recorded_values())
        return total / self.total_count

    def stddev(self) -> float:
        if self.total_count == 0:
            return 0.0
        mean = self.mean()
        sq = sum(
            ((self.median_equivalent_value(v) - mean) ** 2) * c
            for v, c in self.recorded_values()
        )
        return math.sqrt(sq / self.total_count)

    def bucket_counts(self) -> list[int]:
        return list(self._counts)

    # ────────────────────────────────
    # Merge / copy
    # ────────────────────────────────

    def layout(self) -> tuple[int, int, int]:
        return (self.lowest_trackable_value, self.highest_trackable_value, self.precision_digits)

    def _empty_like(self) -> "Histogram":
        return Histogram(
            self.lowest_trackable_value,
            self.highest_trackable_value,
            self.precision_digits,
            strict=self.strict,
        )

    def merge(self, other: "Histogram") -> "Histogram":
        """Add ``other`` into this histogram bucket-for-bucket and return self."""
        if other.layout() != self.layout():
            raise ConfigurationError(
                f"cannot merge histograms with different layouts: {self.layout()} vs {other.layout()}"
            )
        counts = self._counts
        for index, count in enumerate(other._counts):
            if count:
                counts[index] += count
        self.total_count += other.total_count
        self.saturated_count += other.saturated_count
        self.corrected = self.corrected or other.corrected
        if other._min is not None and (self._min is None or other._min < self._min):
            self._min = other._min
        if other._max is not None and (self._max is None or other._max > self._max):
            self._max = other._max
        self._cumulative = None
        return self

    def copy(self) -> "Histogram":
        return self._empty_like().merge(self)

    def reset(self) -> None:
        self._counts = [0] * self.counts_len
        self._cumulative = None
        self.total_count = 0
        self.saturated_count = 0
        self.corrected = False
        self._min = None
        self._max = None

    def copy_corrected(self, expected_interval: float) -> "Histogram":
        """
        Post-hoc coordinated-omission correction of everything recorded so far.

        Refuses a histogram that already carries corrected samples: applying
        the correction twice would add phantom samples for phantom samples.
        """
        if self.corrected:
            raise ConfigurationError(
                "histogram is already corrected for coordinated omission"
            )
        _interval_units(expected_interval)
        target = self._empty_like()
        target.corrected = True
        for value, count in self.recorded_values():
            v = min(self.highest_equivalent_value(value), self.highest_trackable_value)
            target.record_corrected_value(v, expected_interval, count)
        logger.debug(
            f"Post-hoc correction: {self.total_count} → {target.total_count} samples "
            f"(interval={expected_interval})"
        )
        return target

    # ────────────────────────────────
    # Serialization
    # ────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        return {
            "lowest_trackable_value": self.lowest_trackable_value,
            "highest_trackable_value": self.highest_trackable_value,
            "precision_digits": self.precision_digits,
            "strict": self.strict,
            "corrected": self.corrected,
            "total_count": self.total_count,
            "saturated_count": self.saturated_count,
            "min": self._min,
            "max": self._max,
            "counts": {str(i): c for i, c in enumerate(self._counts) if c},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Histogram":
        obj = cls(
            data["lowest_trackable_value"],
            data["highest_trackable_value"],
            data["precision_digits"],
            strict=data.get("strict", False),
        )
        for key, count in data.get("counts", {}).items():
            index = int(key)
            if not 0 <= index < obj.counts_len:
                raise ConfigurationError(f"bucket index {index} out of range for layout {obj.layout()}")
            obj._counts[index] = int(count)
        obj.total_count = sum(obj._counts)
        obj.saturated_count = data.get("saturated_count", 0)
        obj.corrected = data.get("corrected", False)
        obj._min = data.get("min")
        obj._max = data.get("max")
        return obj

    def __repr__(self) -> str:
        return (
            f"Histogram(range=[{self.lowest_trackable_value}, {self.highest_trackable_value}], "
            f"digits={self.precision_digits}, count={self.total_count})"
        )


def merge_histograms(histograms: Iterable[Histogram]) -> Histogram:
    """Merge into a fresh histogram. All inputs must share one layout."""
    merged: Histogram | None = None
    for h in histograms:
        if merged is None:
            merged = h._empty_like()
        merged.merge(h)
    if merged is None:
        raise ConfigurationError("merge_histograms needs at least one histogram")
    return merged
