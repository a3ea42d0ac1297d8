import asyncio
import logging
from collections import Counter
from collections.abc import Iterable
from typing import Any

from .config import CorrectionMode
from .errors import ConfigurationError
from .histogram import Histogram, corrected_values
from .models import OutcomeKind, RequestAttempt

logger = logging.getLogger(__name__)

US_PER_SECOND = 1_000_000

__all__ = ["US_PER_SECOND", "Recorder", "correct_latencies", "corrected_values", "to_micros"]


def to_micros(seconds: float) -> int:
    return int(round(seconds * US_PER_SECOND))


class Recorder:
    """
    One single-writer histogram shard.

    Producers (dispatch tasks) only ever ``submit`` into the shard's queue;
    the shard's own task is the sole writer of its histograms and counters.
    """

    def __init__(
        self,
        shard_id: int,
        histogram_settings: dict[str, Any] | None = None,
        correction_mode: CorrectionMode = CorrectionMode.NONE,
        expected_interval_us: int | None = None,
    ) -> None:
        settings = histogram_settings or {}
        if correction_mode is CorrectionMode.AT_RECORDING and not expected_interval_us:
            raise ConfigurationError("at_recording correction needs an expected interval")
        self.shard_id = shard_id
        self.correction_mode = correction_mode
        self.expected_interval_us = expected_interval_us
        self.raw = Histogram(**settings)
        self.corrected: Histogram | None = (
            Histogram(**settings) if correction_mode is CorrectionMode.AT_RECORDING else None
        )

        self.completed = 0
        self.timeouts = 0
        self.errors = 0
        self.error_reasons: Counter[str] = Counter()
        self.last_completion_time: float | None = None

        self._queue: asyncio.Queue[RequestAttempt | None] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        logger.debug(
            f"Created recorder shard {shard_id}: mode={correction_mode.value}, "
            f"interval_us={expected_interval_us}"
        )

    @property
    def recorded(self) -> int:
        return self.completed + self.timeouts + self.errors

    def record(self, attempt: RequestAttempt) -> None:
        if self.last_completion_time is None or attempt.completion_time > self.last_completion_time:
            self.last_completion_time = attempt.completion_time

        if attempt.outcome is OutcomeKind.ERROR:
            # No completion exists for a failed request, so no latency either.
            self.errors += 1
            self.error_reasons[attempt.reason or "error"] += 1
            return

        if attempt.outcome is OutcomeKind.TIMEOUT:
            self.timeouts += 1
        else:
            self.completed += 1

        latency_us = to_micros(attempt.latency)
        self.raw.record(latency_us)
        if self.corrected is not None:
            self.corrected.record_corrected_value(latency_us, self.expected_interval_us)

    def submit(self, attempt: RequestAttempt) -> None:
        self._queue.put_nowait(attempt)

    async def _run(self) -> None:
        while True:
            attempt = await self._queue.get()
            try:
                if attempt is None:
                    return
                self.record(attempt)
            finally:
                self._queue.task_done()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def close(self) -> None:
        """Flush everything submitted so far and stop the shard task."""
        if self._task is None:
            while not self._queue.empty():
                attempt = self._queue.get_nowait()
                if attempt is not None:
                    self.record(attempt)
            return
        self._queue.put_nowait(None)
        await self._task
        self._task = None
        logger.debug(
            f"Recorder shard {self.shard_id} closed: completed={self.completed}, "
            f"timeouts={self.timeouts}, errors={self.errors}"
        )


def correct_latencies(
    values: Iterable[float],
    expected_interval: float,
    scale: float = 1,
    **histogram_settings: Any,
) -> Histogram:
    """
    Post-hoc correction for latencies collected by some other (closed-loop) tool.

    ``values`` and ``expected_interval`` share a unit. Multiplied by ``scale``
    they must be integer histogram units: pass ``scale=US_PER_SECOND`` for
    latencies in seconds. Order does not matter.
    """

    def to_units(v: float) -> float:
        return v if scale == 1 else round(v * scale)

    interval = to_units(expected_interval)
    if int(interval) < 1:
        raise ConfigurationError(
            "expected_interval must be at least one histogram unit after scaling, "
            f"got {expected_interval} (scale={scale})"
        )
    histogram = Histogram(**histogram_settings)
    n = 0
    for value in values:
        histogram.record_corrected_value(to_units(value), interval)
        n += 1
    histogram.corrected = True
    logger.info(
        f"Corrected {n} raw latencies into {histogram.total_count} samples "
        f"(expected_interval={expected_interval})"
    )
    return histogram
