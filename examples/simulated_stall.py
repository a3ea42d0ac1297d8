"""
Coordinated omission in one run: a closed-loop sender against a target that
freezes for 2s. The raw table looks healthy, the corrected one does not.
Run: uv run examples/simulated_stall.py
"""
import asyncio
import os

from openloop import LoadRunner, RunConfig, SimulatedTarget
from openloop.logging_config import setup_logging
from openloop.rendering import render_report


async def main():
    setup_logging(os.getenv("OPENLOOP_LOG_LEVEL", "INFO"))

    config = RunConfig(
        target_rate=100,
        duration=float(os.getenv("RUN_DURATION_S", "10")),
        max_in_flight=1,
        dispatch_model="closed_loop",
        correction_mode="at_recording",
    )
    target = SimulatedTarget(0.010, stalls=[(5.0, 2.0)])

    report = await LoadRunner(target, config, use_progress_bar=True).run()
    print()
    print(render_report(report, bins=24))

if __name__ == "__main__":
    asyncio.run(main())
