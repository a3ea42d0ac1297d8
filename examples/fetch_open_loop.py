"""
Open-loop GETs against a URL at a fixed rate, queueing when saturated.
Run: uv run examples/fetch_open_loop.py
"""
import asyncio
import os

import aiohttp

from openloop import HttpTarget, LoadRunner, RunConfig
from openloop.rendering import render_report

URL = os.getenv("TARGET_URL", "https://example.com/")

async def main():
    config = RunConfig(
        target_rate=float(os.getenv("TARGET_RATE", "5")),
        duration=10.0,
        max_in_flight=20,
        timeout=float(os.getenv("HTTP_REQUEST_TIMEOUT_S", "10")),
        arrival_distribution="poisson",
    )
    async with aiohttp.ClientSession() as session:
        target = HttpTarget(session, URL)
        report = await LoadRunner(target, config, use_progress_bar=True).run()
        print("\nStatus codes:", dict(target.status_counts))
    print(render_report(report))

if __name__ == "__main__":
    asyncio.run(main())
