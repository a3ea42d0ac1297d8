import asyncio

import pytest

from openloop.config import DispatchModel, LoadShedding
from openloop.dispatcher import Dispatcher
from openloop.errors import SaturationError
from openloop.models import Outcome, OutcomeKind, ScheduledTick
from openloop.recorder import Recorder


class SleepyTarget:
    def __init__(self, delay, outcome=None):
        self.delay = delay
        self.outcome = outcome
        self.deadlines = []

    async def __call__(self, deadline):
        self.deadlines.append(deadline)
        await asyncio.sleep(self.delay)
        return self.outcome or Outcome.success(asyncio.get_running_loop().time())


class RaisingTarget:
    def __init__(self, exc):
        self.exc = exc

    async def __call__(self, deadline):
        raise self.exc


class CapturingRecorder(Recorder):
    def __init__(self, shard_id=0):
        super().__init__(shard_id)
        self.attempts = []

    def submit(self, attempt):
        self.attempts.append(attempt)
        super().submit(attempt)


def _dispatcher(target, recorders=None, **kwargs):
    kwargs.setdefault("max_in_flight", 4)
    kwargs.setdefault("timeout", 10.0)
    return Dispatcher(target, recorders or [CapturingRecorder()], **kwargs)


async def _settle(dispatcher, grace=60.0):
    await dispatcher.drain(grace)
    for r in dispatcher.recorders:
        await r.close()


@pytest.mark.asyncio
async def test_submit_never_waits_for_the_request(virtual_clock):
    virtual_clock.install()
    loop = asyncio.get_running_loop()
    d = _dispatcher(SleepyTarget(5.0), max_in_flight=10)

    start = loop.time()
    for i in range(5):
        d.submit(ScheduledTick(i, start))
    assert loop.time() == start
    assert d.state.in_flight == 5

    await _settle(d)
    attempts = d.recorders[0].attempts
    assert len(attempts) == 5
    assert all(a.outcome is OutcomeKind.SUCCESS for a in attempts)
    assert all(a.latency == pytest.approx(5.0) for a in attempts)


@pytest.mark.asyncio
async def test_saturated_pool_queues_ticks(virtual_clock):
    virtual_clock.install()
    loop = asyncio.get_running_loop()
    d = _dispatcher(SleepyTarget(1.0), max_in_flight=2)

    start = loop.time()
    for i in range(6):
        d.submit(ScheduledTick(i, start))
    assert d.state.in_flight == 2
    assert d.state.queue_depth == 4
    assert d.dropped == 0

    await _settle(d)
    attempts = sorted(d.recorders[0].attempts, key=lambda a: a.tick_index)
    assert [a.outcome for a in attempts] == [OutcomeKind.SUCCESS] * 6
    # Queue delay counts toward latency: ticks 4 and 5 waited two full service times.
    assert [round(a.latency, 6) for a in attempts] == [1.0, 1.0, 2.0, 2.0, 3.0, 3.0]
    assert attempts[5].queue_delay == pytest.approx(2.0)
    assert d.state.max_queue_depth_observed == 4
    assert d.state.max_in_flight_observed == 2


@pytest.mark.asyncio
async def test_shedding_raises_and_counts(virtual_clock):
    virtual_clock.install()
    loop = asyncio.get_running_loop()
    d = _dispatcher(SleepyTarget(1.0), max_in_flight=2, load_shedding=LoadShedding.SHED)

    start = loop.time()
    d.submit(ScheduledTick(0, start))
    d.submit(ScheduledTick(1, start))
    with pytest.raises(SaturationError) as exc:
        d.submit(ScheduledTick(2, start))
    assert exc.value.tick_index == 2
    assert exc.value.max_in_flight == 2
    assert d.dropped == 1
    assert d.state.queue_depth == 0

    await _settle(d)
    assert len(d.recorders[0].attempts) == 2


@pytest.mark.asyncio
async def test_timeout_is_pinned_at_sent_plus_timeout(virtual_clock):
    virtual_clock.install()
    loop = asyncio.get_running_loop()
    d = _dispatcher(SleepyTarget(30.0), timeout=2.0)

    start = loop.time()
    d.submit(ScheduledTick(0, start))
    await _settle(d)

    (attempt,) = d.recorders[0].attempts
    assert attempt.outcome is OutcomeKind.TIMEOUT
    assert attempt.reason == "timeout"
    assert attempt.completion_time == pytest.approx(attempt.sent_time + 2.0)
    assert d.recorders[0].timeouts == 1
    assert d.recorders[0].raw.total_count == 1


@pytest.mark.asyncio
async def test_target_receives_its_deadline(virtual_clock):
    virtual_clock.install()
    loop = asyncio.get_running_loop()
    target = SleepyTarget(0.1)
    d = _dispatcher(target, timeout=3.0)
    start = loop.time()
    d.submit(ScheduledTick(0, start))
    await _settle(d)
    assert target.deadlines == [pytest.approx(start + 3.0)]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "exc, reason",
    [
        (ConnectionRefusedError(), "connection: ConnectionRefusedError"),
        (ConnectionResetError(), "connection: ConnectionResetError"),
        (OSError("no route"), "os: OSError"),
        (RuntimeError("bug"), "exception: RuntimeError"),
    ],
)
async def test_target_failures_become_errors(exc, reason):
    d = _dispatcher(RaisingTarget(exc))
    d.submit(ScheduledTick(0, 0.0))
    await _settle(d)

    (attempt,) = d.recorders[0].attempts
    assert attempt.outcome is OutcomeKind.ERROR
    assert attempt.reason == reason
    assert d.recorders[0].errors == 1
    assert d.recorders[0].raw.total_count == 0


@pytest.mark.asyncio
async def test_target_raising_timeout_is_a_timeout(virtual_clock):
    virtual_clock.install()
    d = _dispatcher(RaisingTarget(TimeoutError()), timeout=4.0)
    d.submit(ScheduledTick(0, asyncio.get_running_loop().time()))
    await _settle(d)
    (attempt,) = d.recorders[0].attempts
    assert attempt.outcome is OutcomeKind.TIMEOUT
    assert attempt.completion_time == pytest.approx(attempt.sent_time + 4.0)


@pytest.mark.asyncio
async def test_error_outcome_from_target(virtual_clock):
    virtual_clock.install()
    d = _dispatcher(SleepyTarget(0.01, Outcome.error("http_500")))
    d.submit(ScheduledTick(0, asyncio.get_running_loop().time()))
    await _settle(d)
    assert d.recorders[0].error_reasons == {"http_500": 1}


@pytest.mark.asyncio
async def test_attempts_are_routed_to_their_shard(virtual_clock):
    virtual_clock.install()
    recorders = [CapturingRecorder(i) for i in range(3)]
    d = _dispatcher(SleepyTarget(0.01), recorders, max_in_flight=100)
    start = asyncio.get_running_loop().time()
    for i in range(30):
        d.submit(ScheduledTick(i, start + i * 0.001))
    await _settle(d)

    for shard, r in enumerate(recorders):
        assert len(r.attempts) == 10
        assert {a.tick_index % 3 for a in r.attempts} == {shard}
    assert d.forwarded == 30


@pytest.mark.asyncio
async def test_drain_records_everything_left_as_timeout(virtual_clock):
    virtual_clock.install()
    loop = asyncio.get_running_loop()
    d = _dispatcher(SleepyTarget(100.0), max_in_flight=2, timeout=1000.0)

    start = loop.time()
    for i in range(5):
        d.submit(ScheduledTick(i, start))
    await d.drain(1.0)
    await d.recorders[0].close()

    assert loop.time() == pytest.approx(start + 1.0)
    attempts = d.recorders[0].attempts
    assert len(attempts) == 5
    reasons = sorted(a.reason for a in attempts)
    assert reasons == ["cancelled", "cancelled", "not_sent", "not_sent", "not_sent"]
    assert all(a.outcome is OutcomeKind.TIMEOUT for a in attempts)
    assert d.recorders[0].timeouts == 5
    assert d.state.in_flight == 0
    assert d.state.queue_depth == 0


@pytest.mark.asyncio
async def test_drain_returns_once_idle(virtual_clock):
    virtual_clock.install()
    loop = asyncio.get_running_loop()
    d = _dispatcher(SleepyTarget(0.5))
    start = loop.time()
    d.submit(ScheduledTick(0, start))
    await d.drain(30.0)
    assert loop.time() == pytest.approx(start + 0.5)


@pytest.mark.asyncio
async def test_closed_loop_measures_from_send_time(virtual_clock):
    virtual_clock.install()
    loop = asyncio.get_running_loop()
    d = _dispatcher(SleepyTarget(1.0), max_in_flight=1, dispatch_model=DispatchModel.CLOSED_LOOP)

    start = loop.time()
    d.submit(ScheduledTick(0, start))
    d.submit(ScheduledTick(1, start))
    await _settle(d)

    attempts = sorted(d.recorders[0].attempts, key=lambda a: a.tick_index)
    assert [round(a.latency, 6) for a in attempts] == [1.0, 1.0]
    assert attempts[1].scheduled_time == start
    assert attempts[1].queue_delay == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_closed_loop_unsent_ticks_are_charged_the_timeout(virtual_clock):
    virtual_clock.install()
    loop = asyncio.get_running_loop()
    d = _dispatcher(
        SleepyTarget(2.0), max_in_flight=1, timeout=5.0, dispatch_model=DispatchModel.CLOSED_LOOP
    )

    start = loop.time()
    for i in range(10):
        d.submit(ScheduledTick(i, start + i * 0.1))
    await d.drain(0.5)
    await d.recorders[0].close()

    attempts = d.recorders[0].attempts
    unsent = [a for a in attempts if a.reason == "not_sent"]
    assert len(unsent) == 9
    assert all(a.latency == pytest.approx(5.0) for a in unsent)
    assert all(a.scheduled_time == start + a.tick_index * 0.1 for a in unsent)

    raw = d.recorders[0].raw
    assert raw.total_count == 10
    assert raw.min_value > 1000
    assert raw.value_at_percentile(50) == pytest.approx(5_000_000, rel=1e-2)
