import asyncio
import logging
import random

from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)

from .config import RunConfig
from .dispatcher import Dispatcher
from .metrics import compute_report
from .models import Clock, MetricsCallback, RequestAttempt, RunReport, Target
from .recorder import Recorder, to_micros
from .scheduler import Scheduler
from .utils import GracefulKiller, now

logger = logging.getLogger(__name__)


class LoadRunner:
    def __init__(
        self,
        target: Target,
        config: RunConfig,
        *,
        clock: Clock | None = None,
        rng: random.Random | None = None,
        metrics_callback: MetricsCallback | None = None,
        use_progress_bar: bool = False,
        handle_signals: bool = False,
    ) -> None:
        self.target = target
        self.config = config.validate()
        self.metrics_callback = metrics_callback
        self.use_progress_bar = use_progress_bar
        self.handle_signals = handle_signals
        self._clock = clock
        self._rng = rng

        # Runtime state, populated by run()
        self.recorders: list[Recorder] = []
        self.scheduler: Scheduler | None = None
        self.dispatcher: Dispatcher | None = None
        self._stop: asyncio.Event | None = None
        self._stop_requested = False

        logger.info(
            f"Initialized LoadRunner: rate={self.config.rate:.2f}/s, "
            f"duration={self.config.duration}, total_count={self.config.total_count}, "
            f"max_in_flight={self.config.max_in_flight}, "
            f"correction={self.config.correction_mode.value}"
        )

    def stop(self) -> None:
        """Halt tick issuance now; in-flight requests still drain."""
        self._stop_requested = True
        if self._stop is not None:
            self._stop.set()

    def _build_progress(self, total: int | None) -> tuple[Progress, int]:
        progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TimeElapsedColumn(),
        )
        progress.start()
        task_id = progress.add_task("[cyan]Issuing...", total=total)
        return progress, task_id

    async def run(self) -> RunReport:
        cfg = self.config
        loop = asyncio.get_running_loop()
        clock = self._clock or loop.time
        self._stop = asyncio.Event()
        if self._stop_requested:
            self._stop.set()

        self.recorders = [
            Recorder(
                shard_id=i,
                histogram_settings=cfg.histogram_settings(),
                correction_mode=cfg.correction_mode,
                expected_interval_us=to_micros(cfg.resolved_expected_interval),
            )
            for i in range(cfg.recorder_shards)
        ]
        for r in self.recorders:
            r.start()

        self.scheduler = Scheduler(
            cfg.rate,
            duration=cfg.duration,
            total_count=cfg.total_count,
            distribution=cfg.arrival_distribution,
            clock=clock,
            rng=self._rng or random.Random(cfg.seed),
            drift_tolerance=cfg.drift_tolerance,
        )

        progress = None
        task_id = None
        if self.use_progress_bar:
            progress, task_id = self._build_progress(self.scheduler.expected_ticks())

        def on_attempt(_attempt: RequestAttempt) -> None:
            if progress is not None and task_id is not None:
                progress.advance(task_id)

        self.dispatcher = Dispatcher(
            self.target,
            self.recorders,
            max_in_flight=cfg.max_in_flight,
            timeout=cfg.timeout,
            load_shedding=cfg.load_shedding,
            dispatch_model=cfg.dispatch_model,
            clock=clock,
            on_attempt=on_attempt if progress is not None else None,
        )

        killer = None
        if self.handle_signals:
            killer = GracefulKiller(self.stop)
            killer.install(loop)

        wall_start = now()
        logger.info("Starting open-loop run...")
        try:
            schedule = await self.scheduler.run(self.dispatcher.submit, self._stop)
            await self.dispatcher.drain(cfg.resolved_drain_timeout)
        finally:
            if progress is not None:
                progress.stop()
            if killer is not None:
                killer.uninstall()
            await asyncio.gather(*(r.close() for r in self.recorders))

        report = compute_report(
            cfg,
            schedule,
            self.dispatcher.state.snapshot(),
            self.recorders,
            dropped=self.dispatcher.dropped,
            metrics_callback=self.metrics_callback,
        )
        logger.info(
            f"Run completed in {now() - wall_start:.2f}s wall time: "
            f"{report.total_completed} completed, {report.total_timeout} timeouts, "
            f"{report.total_error} errors, {report.total_dropped} dropped"
        )
        return report
