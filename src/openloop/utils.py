import asyncio
import logging
import signal
import time
from collections.abc import Callable

logger = logging.getLogger(__name__)

# ────────────────────────────────
# Time Helpers
# ────────────────────────────────


def now() -> float:
    return time.perf_counter()


def parse_stall(spec: str) -> tuple[float, float]:
    """``"5:2"`` → stall starting 5 s into the run, lasting 2 s."""
    try:
        start, duration = (float(x) for x in spec.split(":", 1))
    except ValueError:
        raise ValueError(f"invalid stall {spec!r}, expected START_S:DURATION_S") from None
    if start < 0 or duration <= 0:
        raise ValueError(f"invalid stall {spec!r}, start must be >= 0 and duration > 0")
    return start, duration


# ────────────────────────────────
# Signal Handling
# ────────────────────────────────


class GracefulKiller:
    """Turns SIGINT/SIGTERM into a stop request on the running loop."""

    SIGNALS = (signal.SIGINT, signal.SIGTERM)

    def __init__(self, on_stop: Callable[[], None] | None = None):
        self.kill_now = False
        self._on_stop = on_stop
        self._loop: asyncio.AbstractEventLoop | None = None

    def install(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop or asyncio.get_running_loop()
        for sig in self.SIGNALS:
            try:
                self._loop.add_signal_handler(sig, self.exit_gracefully, sig)
            except NotImplementedError:
                # Windows event loops have no add_signal_handler.
                signal.signal(
                    sig, lambda s, _f: self._loop.call_soon_threadsafe(self.exit_gracefully, s)
                )

    def uninstall(self) -> None:
        if self._loop is None:
            return
        for sig in self.SIGNALS:
            try:
                self._loop.remove_signal_handler(sig)
            except NotImplementedError:
                signal.signal(sig, signal.SIG_DFL)
        self._loop = None

    def exit_gracefully(self, signum: int) -> None:
        logger.warning(
            f"Received {signal.Signals(signum).name}. Stopping issuance and draining in-flight requests..."
        )
        self.kill_now = True
        if self._on_stop:
            self._on_stop()
