class OpenLoopError(Exception):
    """Base class for errors raised by openloop."""


class ConfigurationError(OpenLoopError, ValueError):
    """Invalid run or histogram configuration. Fatal before any tick is issued."""


class ValueOutOfRangeError(ConfigurationError):
    """A value above the trackable maximum was recorded into a strict histogram."""

    def __init__(self, value: int, highest_trackable_value: int):
        self.value = value
        self.highest_trackable_value = highest_trackable_value
        super().__init__(
            f"value {value} exceeds highest trackable value {highest_trackable_value}"
        )


class SaturationError(OpenLoopError):
    """A tick was shed because max_in_flight was reached."""

    def __init__(self, tick_index: int, max_in_flight: int):
        self.tick_index = tick_index
        self.max_in_flight = max_in_flight
        super().__init__(
            f"tick {tick_index} shed: {max_in_flight} requests already in flight"
        )


class SchedulerOverrunError(OpenLoopError):
    """The clock fell behind its absolute deadlines. Reported, never raised."""

    def __init__(self, tick_index: int, lag: float, tolerance: float):
        self.tick_index = tick_index
        self.lag = lag
        self.tolerance = tolerance
        super().__init__(
            f"tick {tick_index} issued {lag * 1000:.2f}ms late "
            f"(tolerance {tolerance * 1000:.2f}ms)"
        )
