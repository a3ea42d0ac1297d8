import asyncio
from unittest import mock

import pytest


class VirtualClock:
    """
    Virtual time for the running event loop.

    Whenever the loop would block waiting for its next timer, the clock jumps
    straight to that timer instead. Code under test keeps using
    ``loop.time()``, ``asyncio.sleep`` and ``wait_for`` unchanged.
    """

    def __init__(self):
        self.now = 0.0
        self._patches = []

    def time(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def install(self) -> "VirtualClock":
        loop = asyncio.get_running_loop()
        self.now = loop.time()
        real_select = loop._selector.select

        def select(timeout=None):
            if timeout is not None and timeout > 0:
                self.now += timeout
                timeout = 0
            return real_select(timeout)

        self._patches = [
            mock.patch.object(loop, "time", self.time),
            mock.patch.object(loop._selector, "select", select),
        ]
        for p in self._patches:
            p.start()
        return self

    def uninstall(self) -> None:
        for p in reversed(self._patches):
            p.stop()
        self._patches = []


@pytest.fixture
def virtual_clock():
    clock = VirtualClock()
    yield clock
    clock.uninstall()
