import asyncio
import logging
import random
from collections import defaultdict
from collections.abc import Sequence

import aiohttp

from .models import Clock, Outcome

logger = logging.getLogger(__name__)


class HttpTarget:
    """One HTTP request per invocation, bounded by the dispatcher's deadline."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        url: str,
        method: str = "GET",
        headers: dict[str, str] | None = None,
    ) -> None:
        self.session = session
        self.url = url
        self.method = method.upper()
        self.headers = headers
        self.status_counts: dict[int, int] = defaultdict(int)

    async def __call__(self, deadline: float) -> Outcome:
        loop = asyncio.get_running_loop()
        remaining = max(0.001, deadline - loop.time())
        try:
            async with self.session.request(
                self.method,
                self.url,
                headers=self.headers,
                timeout=aiohttp.ClientTimeout(total=remaining),
            ) as resp:
                await resp.read()
                status = resp.status
        except aiohttp.ClientConnectorError as e:
            logger.debug(f"Connection error for {self.url}: {e}")
            return Outcome.error(f"connection: {e.__class__.__name__}")
        except asyncio.TimeoutError:
            return Outcome.timeout()
        except aiohttp.ClientError as e:
            logger.debug(f"Client error for {self.url}: {e}")
            return Outcome.error(f"client: {e.__class__.__name__}")

        completed = loop.time()
        self.status_counts[status] += 1
        if status < 400:
            return Outcome.success(completed)
        return Outcome.error(f"http_{status}")


class SimulatedTarget:
    """
    In-process target with a fixed service time and optional stalls.

    ``stalls`` are ``(start_offset, duration)`` pairs relative to the first
    invocation. A stall pauses the whole target: any request overlapping it
    finishes late by the overlap, like a stop-the-world pause.
    """

    def __init__(
        self,
        service_time: float,
        *,
        stalls: Sequence[tuple[float, float]] = (),
        error_rate: float = 0.0,
        clock: Clock | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.service_time = service_time
        self.stalls = sorted(stalls)
        self.error_rate = error_rate
        self._clock = clock
        self._rng = rng or random.Random(0)
        self._origin: float | None = None
        self.calls = 0

    def _finish_offset(self, t: float) -> float:
        finish = t + self.service_time
        for start, duration in self.stalls:
            end = start + duration
            if t < end and finish > start:
                finish += end - max(t, start)
        return finish

    async def __call__(self, deadline: float) -> Outcome:
        clock = self._clock or asyncio.get_running_loop().time
        now = clock()
        if self._origin is None:
            self._origin = now
        self.calls += 1

        t = now - self._origin
        await asyncio.sleep(self._finish_offset(t) - t)
        if self.error_rate and self._rng.random() < self.error_rate:
            raise ConnectionResetError("simulated connection reset")
        return Outcome.success(clock())
