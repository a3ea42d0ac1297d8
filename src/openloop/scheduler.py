"""
Open-loop tick clock.

Deadlines are always ``start + offset(i)`` with offsets computed from the
fixed origin, so a late wake-up delays one tick but never shifts the rest of
the schedule. The scheduler hands each tick to ``dispatch`` and moves on; it
never waits for the request behind a tick.
"""

import asyncio
import logging
import math
import random
from collections.abc import Callable, Iterator

from .config import ArrivalDistribution
from .errors import ConfigurationError, SaturationError, SchedulerOverrunError
from .models import Clock, ScheduledTick, ScheduleStats

logger = logging.getLogger(__name__)


class Scheduler:
    def __init__(
        self,
        rate: float,
        *,
        duration: float | None = None,
        total_count: int | None = None,
        distribution: ArrivalDistribution = ArrivalDistribution.CONSTANT,
        clock: Clock | None = None,
        rng: random.Random | None = None,
        drift_tolerance: float = 0.010,
    ) -> None:
        if not rate > 0:
            raise ConfigurationError(f"rate must be > 0, got {rate}")
        if duration is None and total_count is None:
            raise ConfigurationError("scheduler needs a duration or a total_count")
        self.rate = float(rate)
        self.interval = 1.0 / self.rate
        self.duration = duration
        self.total_count = total_count
        self.distribution = distribution
        self.drift_tolerance = drift_tolerance
        self._clock = clock
        self._rng = rng or random.Random()
        self.stats = ScheduleStats()
        self.last_overrun: SchedulerOverrunError | None = None
        self.saturation_events = 0

    def offsets(self) -> Iterator[float]:
        """Absolute offsets from the origin, one per tick, until the run boundary."""
        i = 0
        offset = 0.0
        while self.total_count is None or i < self.total_count:
            if self.distribution is ArrivalDistribution.CONSTANT:
                offset = i / self.rate
            elif i > 0:
                offset += self._rng.expovariate(self.rate)
            if self.duration is not None and offset >= self.duration:
                return
            yield offset
            i += 1

    def expected_ticks(self) -> int | None:
        """Approximate tick count, for progress display."""
        if self.duration is None:
            return self.total_count
        by_duration = math.ceil(self.duration * self.rate)
        if self.total_count is None:
            return by_duration
        return min(by_duration, self.total_count)

    async def _wait_until(self, deadline: float, stop: asyncio.Event) -> None:
        delay = deadline - self._clock()
        if delay <= 0:
            # Behind schedule: issue immediately, but let dispatch tasks run.
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(stop.wait(), timeout=delay)
        except TimeoutError:
            pass

    def _note_lag(self, index: int, lag: float) -> None:
        self.stats.total_lag += lag
        if lag > self.stats.max_lag:
            self.stats.max_lag = lag
        if lag > self.drift_tolerance:
            self.stats.overrun_count += 1
            overrun = SchedulerOverrunError(index, lag, self.drift_tolerance)
            if self.last_overrun is None:
                logger.warning(f"Schedule drift: {overrun}")
            else:
                logger.debug(f"Schedule drift: {overrun}")
            self.last_overrun = overrun

    async def run(
        self,
        dispatch: Callable[[ScheduledTick], None],
        stop: asyncio.Event | None = None,
    ) -> ScheduleStats:
        if self._clock is None:
            self._clock = asyncio.get_running_loop().time
        stop = stop or asyncio.Event()

        start = self._clock()
        self.stats = ScheduleStats(start_time=start)
        logger.info(
            f"Scheduler started: rate={self.rate:.2f}/s, distribution={self.distribution.value}, "
            f"duration={self.duration}, total_count={self.total_count}"
        )

        for index, offset in enumerate(self.offsets()):
            deadline = start + offset
            await self._wait_until(deadline, stop)
            if stop.is_set():
                logger.info(f"Stop requested; halting issuance after {self.stats.issued} ticks")
                break

            self._note_lag(index, max(0.0, self._clock() - deadline))
            self.stats.issued += 1
            try:
                dispatch(ScheduledTick(index=index, intended_time=deadline))
            except SaturationError as e:
                self.saturation_events += 1
                if self.saturation_events == 1:
                    logger.warning(f"Load shedding engaged: {e}")
                else:
                    logger.debug(str(e))

        # The schedule window ends at the boundary, not at the last tick.
        end = self._clock()
        if self.duration is not None and not stop.is_set():
            end = max(end, start + self.duration)
        self.stats.end_time = end
        logger.info(
            f"Scheduler finished: issued={self.stats.issued}, "
            f"max_lag={self.stats.max_lag * 1000:.2f}ms, overruns={self.stats.overrun_count}"
        )
        return self.stats
