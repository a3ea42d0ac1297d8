import random

import pytest

from openloop.errors import ConfigurationError, ValueOutOfRangeError
from openloop.histogram import Histogram, merge_histograms

HOUR_US = 3_600_000_000


def _filled(values, **settings):
    h = Histogram(**settings)
    for v in values:
        h.record(v)
    return h


@pytest.mark.parametrize("digits", [1, 2, 3, 4])
def test_value_is_reported_within_relative_error(digits):
    rng = random.Random(digits)
    values = [1, 7, 999, 2047, 2048, 4095, 10_000, 123_457, 9_999_999, HOUR_US]
    values += [rng.randint(1, HOUR_US) for _ in range(200)]
    for v in values:
        h = Histogram(precision_digits=digits)
        h.record(v)
        reported = h.value_at_percentile(50)
        assert abs(reported - v) / v <= 10**-digits
        assert h.lowest_equivalent_value(v) <= v <= h.highest_equivalent_value(v)


def test_percentiles_of_exact_values():
    h = _filled(range(1, 101))
    assert h.total_count == 100
    assert h.value_at_percentile(50) == 50
    assert h.value_at_percentile(99) == 99
    assert h.value_at_percentile(100) == 100
    assert h.value_at_percentile(0) == 1
    assert h.min_value == 1
    assert h.max_value == 100


def test_mean_and_stddev():
    h = _filled([1000, 2000])
    assert h.mean() == pytest.approx(1500)
    assert h.stddev() == pytest.approx(500)


def test_empty_histogram():
    h = Histogram()
    assert h.total_count == 0
    assert h.value_at_percentile(99) == 0
    assert h.mean() == 0.0
    assert h.stddev() == 0.0
    assert h.min_value is None
    assert list(h.recorded_values()) == []


def test_highest_trackable_value_does_not_overflow():
    h = Histogram(1, HOUR_US, 3)
    h.record(HOUR_US)
    assert h.total_count == 1
    assert h.max_value == HOUR_US
    assert h.saturated_count == 0
    assert sum(h.bucket_counts()) == 1
    assert abs(h.value_at_percentile(100) - HOUR_US) / HOUR_US <= 1e-3


def test_zero_is_clamped_to_lowest_trackable_value():
    h = Histogram(lowest_trackable_value=1)
    h.record(0)
    h.record(-5)
    assert h.total_count == 2
    assert h.min_value == 1
    assert h.value_at_percentile(100) == 1


def test_values_above_range_saturate_by_default():
    h = Histogram(1, 1_000_000, 3)
    h.record(5_000_000_000)
    assert h.total_count == 1
    assert h.saturated_count == 1
    assert h.max_value == 1_000_000


def test_strict_histogram_rejects_values_above_range():
    h = Histogram(1, 1_000_000, 3, strict=True)
    with pytest.raises(ValueOutOfRangeError) as exc:
        h.record(1_000_001)
    assert isinstance(exc.value, ConfigurationError)
    assert h.total_count == 0
    h.record(1_000_000)
    assert h.total_count == 1


def test_memory_is_fixed_at_construction():
    h = Histogram(precision_digits=2)
    size = len(h.bucket_counts())
    rng = random.Random(7)
    for _ in range(10_000):
        h.record(rng.randint(1, HOUR_US))
    assert len(h.bucket_counts()) == size == h.counts_len


@pytest.mark.parametrize(
    "kwargs",
    [
        {"lowest_trackable_value": 0},
        {"lowest_trackable_value": 100, "highest_trackable_value": 150},
        {"precision_digits": 0},
        {"precision_digits": 6},
    ],
)
def test_invalid_layout(kwargs):
    with pytest.raises(ConfigurationError):
        Histogram(**kwargs)


def _random_histogram(seed):
    rng = random.Random(seed)
    return _filled(int(rng.lognormvariate(9, 2)) + 1 for _ in range(2_000))


def test_merge_is_associative_and_commutative():
    h1, h2, h3 = (_random_histogram(s) for s in (1, 2, 3))

    left = h1.copy().merge(h2.copy().merge(h3))
    right = h1.copy().merge(h2).merge(h3)
    swapped = h3.copy().merge(h1).merge(h2)

    assert left.bucket_counts() == right.bucket_counts() == swapped.bucket_counts()
    assert left.total_count == h1.total_count + h2.total_count + h3.total_count
    assert left.min_value == min(h.min_value for h in (h1, h2, h3))
    assert left.max_value == max(h.max_value for h in (h1, h2, h3))


def test_merge_equals_recording_the_union():
    rng = random.Random(11)
    a = [rng.randint(1, 10_000_000) for _ in range(500)]
    b = [rng.randint(1, 10_000_000) for _ in range(500)]
    merged = merge_histograms([_filled(a), _filled(b)])
    assert merged.bucket_counts() == _filled(a + b).bucket_counts()
    assert merged.value_at_percentile(99) == _filled(a + b).value_at_percentile(99)


def test_merge_leaves_inputs_untouched():
    h1 = _filled([10, 20])
    h2 = _filled([30])
    merged = merge_histograms([h1, h2])
    assert merged.total_count == 3
    assert h1.total_count == 2
    assert h2.total_count == 1


def test_merge_rejects_different_layouts():
    with pytest.raises(ConfigurationError):
        Histogram(precision_digits=2).merge(Histogram(precision_digits=3))
    with pytest.raises(ConfigurationError):
        merge_histograms([])


def test_to_dict_round_trip():
    h = _random_histogram(5)
    h.record(10**12)
    restored = Histogram.from_dict(h.to_dict())
    assert restored.layout() == h.layout()
    assert restored.bucket_counts() == h.bucket_counts()
    assert restored.total_count == h.total_count
    assert restored.saturated_count == 1
    assert restored.min_value == h.min_value
    assert restored.max_value == h.max_value
    assert restored.value_at_percentile(99.9) == h.value_at_percentile(99.9)


def test_reset():
    h = _filled([1, 2, 3])
    h.reset()
    assert h.total_count == 0
    assert sum(h.bucket_counts()) == 0
    assert h.max_value is None
