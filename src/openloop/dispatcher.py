import asyncio
import logging
from collections import deque
from collections.abc import Callable, Sequence

from .config import DispatchModel, LoadShedding
from .errors import SaturationError
from .models import (
    Clock,
    Outcome,
    OutcomeKind,
    RequestAttempt,
    ScheduledTick,
    Target,
    WorkerState,
)
from .recorder import Recorder

logger = logging.getLogger(__name__)


class Dispatcher:
    """
    Bounded pool of in-flight target invocations.

    ``submit`` is synchronous and never waits for a request: it either starts
    one, queues the tick, or sheds it. Every attempt is forwarded exactly once
    to the recorder shard owning its tick index.
    """

    def __init__(
        self,
        target: Target,
        recorders: Sequence[Recorder],
        *,
        max_in_flight: int,
        timeout: float,
        load_shedding: LoadShedding = LoadShedding.QUEUE,
        dispatch_model: DispatchModel = DispatchModel.OPEN_LOOP,
        clock: Clock | None = None,
        on_attempt: Callable[[RequestAttempt], None] | None = None,
    ) -> None:
        assert recorders, "at least one recorder shard is required"
        self.target = target
        self.recorders = list(recorders)
        self.max_in_flight = max_in_flight
        self.timeout = timeout
        self.load_shedding = load_shedding
        self.dispatch_model = dispatch_model
        self._clock = clock or asyncio.get_running_loop().time
        self._on_attempt = on_attempt

        self.state = WorkerState()
        self.submitted = 0
        self.dropped = 0
        self.forwarded = 0

        self._pending: deque[ScheduledTick] = deque()
        self._tasks: set[asyncio.Task] = set()
        self._idle = asyncio.Event()
        self._idle.set()
        logger.debug(
            f"Dispatcher ready: max_in_flight={max_in_flight}, timeout={timeout}s, "
            f"shedding={load_shedding.value}, model={dispatch_model.value}"
        )

    # ────────────────────────────────
    # Admission
    # ────────────────────────────────

    def submit(self, tick: ScheduledTick) -> None:
        self.submitted += 1
        if self.state.in_flight < self.max_in_flight:
            self._launch(tick)
            return

        if self.load_shedding is LoadShedding.SHED:
            self.dropped += 1
            raise SaturationError(tick.index, self.max_in_flight)

        self._pending.append(tick)
        self.state.queue_depth = len(self._pending)
        if self.state.queue_depth > self.state.max_queue_depth_observed:
            self.state.max_queue_depth_observed = self.state.queue_depth
        self._idle.clear()

    def _launch(self, tick: ScheduledTick) -> None:
        self.state.in_flight += 1
        if self.state.in_flight > self.state.max_in_flight_observed:
            self.state.max_in_flight_observed = self.state.in_flight
        self._idle.clear()
        task = asyncio.create_task(self._execute(tick))
        self._tasks.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        self.state.in_flight -= 1
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Dispatch task failed unexpectedly: {task.exception()!r}")
        if self._pending and self.state.in_flight < self.max_in_flight:
            self._launch(self._pending.popleft())
            self.state.queue_depth = len(self._pending)
        if self.state.in_flight == 0 and not self._pending:
            self._idle.set()

    # ────────────────────────────────
    # Execution
    # ────────────────────────────────

    async def _invoke(self, deadline: float) -> Outcome:
        try:
            return await asyncio.wait_for(self.target(deadline), timeout=self.timeout)
        except TimeoutError:
            # Covers asyncio's timeout and targets raising TimeoutError themselves.
            return Outcome.timeout()
        except ConnectionError as e:
            return Outcome.error(f"connection: {e.__class__.__name__}")
        except OSError as e:
            return Outcome.error(f"os: {e.__class__.__name__}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Target raised {e!r}")
            return Outcome.error(f"exception: {e.__class__.__name__}")

    async def _execute(self, tick: ScheduledTick) -> None:
        sent = self._clock()
        if self.dispatch_model is DispatchModel.CLOSED_LOOP:
            # A closed-loop connection has no schedule of its own.
            intended = sent
        else:
            intended = tick.intended_time

        try:
            outcome = await self._invoke(sent + self.timeout)
        except asyncio.CancelledError:
            self._forward(
                RequestAttempt(
                    tick_index=tick.index,
                    intended_time=intended,
                    sent_time=sent,
                    completion_time=self._clock(),
                    outcome=OutcomeKind.TIMEOUT,
                    reason="cancelled",
                    scheduled_time=tick.intended_time,
                )
            )
            raise

        if outcome.kind is OutcomeKind.TIMEOUT:
            completion = sent + self.timeout
        elif outcome.completion_time is not None:
            completion = outcome.completion_time
        else:
            completion = self._clock()

        self._forward(
            RequestAttempt(
                tick_index=tick.index,
                intended_time=intended,
                sent_time=sent,
                completion_time=completion,
                outcome=outcome.kind,
                reason=outcome.reason,
                scheduled_time=tick.intended_time,
            )
        )

    def _forward(self, attempt: RequestAttempt) -> None:
        self.forwarded += 1
        self.recorders[attempt.tick_index % len(self.recorders)].submit(attempt)
        if self._on_attempt is not None:
            self._on_attempt(attempt)

    # ────────────────────────────────
    # Shutdown
    # ────────────────────────────────

    async def drain(self, grace: float) -> None:
        """
        Let queued and in-flight requests finish for up to ``grace`` seconds.

        Whatever is left at the deadline is still recorded as a timeout:
        in-flight tasks are cancelled (and record themselves), queued ticks
        that were never sent are recorded as completing at the deadline.
        In closed-loop mode those carry the full timeout as their latency.
        """
        if not self._idle.is_set():
            logger.info(
                f"Draining {self.state.in_flight} in-flight and {len(self._pending)} queued requests "
                f"(grace={grace:.1f}s)"
            )
            try:
                await asyncio.wait_for(self._idle.wait(), timeout=grace)
            except TimeoutError:
                pass

        deadline = self._clock()
        abandoned = 0
        while self._pending:
            tick = self._pending.popleft()
            abandoned += 1
            if self.dispatch_model is DispatchModel.CLOSED_LOOP:
                # never got a connection: charge the full timeout ceiling
                intended = deadline - self.timeout
            else:
                intended = tick.intended_time
            self._forward(
                RequestAttempt(
                    tick_index=tick.index,
                    intended_time=intended,
                    sent_time=None,
                    completion_time=deadline,
                    outcome=OutcomeKind.TIMEOUT,
                    reason="not_sent",
                    scheduled_time=tick.intended_time,
                )
            )
        self.state.queue_depth = 0

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if abandoned or tasks:
            logger.warning(
                f"Drain deadline reached: {len(tasks)} in-flight cancelled, "
                f"{abandoned} queued never sent (all recorded as timeouts)"
            )
        self._idle.set()
