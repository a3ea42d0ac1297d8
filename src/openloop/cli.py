#!/usr/bin/env python3
# cli.py - command line front end for openloop

import argparse
import asyncio
import json
import logging
from typing import Any

import aiohttp

from openloop.config import RunConfig
from openloop.core import LoadRunner
from openloop.errors import ConfigurationError
from openloop.histogram import Histogram
from openloop.logging_config import setup_logging
from openloop.metrics import percentile_table
from openloop.persistence import ReportStore
from openloop.recorder import correct_latencies, to_micros
from openloop.rendering import render_latency_histogram, render_percentile_table, render_report
from openloop.targets import HttpTarget, SimulatedTarget
from openloop.utils import parse_stall


def _add_logging_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug-level logging",
    )
    parser.add_argument(
        "--log-file",
        type=str,
        default=None,
        help="Optional file to write logs to (e.g., openloop.log)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="openloop",
        description="Open-loop load generator with coordinated-omission aware latency reporting",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    sub = parser.add_subparsers(dest="cmd", required=True)

    run = sub.add_parser(
        "run",
        help="Issue load against a URL or a simulated target",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    run.add_argument("url", nargs="?", default=None, help="HTTP endpoint to load")
    run.add_argument("--method", default="GET", help="HTTP method")
    run.add_argument(
        "--simulate",
        type=float,
        default=None,
        metavar="SERVICE_MS",
        help="Use an in-process target with this service time instead of a URL",
    )
    run.add_argument(
        "--stall",
        action="append",
        default=[],
        metavar="START_S:DURATION_S",
        help="Inject a stall into the simulated target (repeatable)",
    )

    # Schedule
    rate = run.add_mutually_exclusive_group(required=True)
    rate.add_argument("--rate", type=float, help="Target rate (requests per second)")
    rate.add_argument("--interval-ms", type=float, help="Fixed interval between requests")
    run.add_argument("--duration", type=float, default=None, help="Run length in seconds")
    run.add_argument("--count", type=int, default=None, help="Total number of requests")
    run.add_argument(
        "--arrival",
        choices=["constant", "poisson"],
        default="constant",
        help="Inter-arrival distribution",
    )
    run.add_argument("--seed", type=int, default=None, help="Seed for poisson arrivals")

    # Dispatch
    run.add_argument("--max-in-flight", type=int, default=64, help="Concurrency bound")
    run.add_argument("--timeout", type=float, default=10.0, help="Per-request timeout (s)")
    run.add_argument(
        "--drain-timeout",
        type=float,
        default=None,
        help="Grace period for in-flight requests after issuance stops (s)",
    )
    run.add_argument(
        "--shed",
        action="store_true",
        help="Shed ticks when max-in-flight is reached instead of queueing them",
    )
    run.add_argument(
        "--closed-loop",
        action="store_true",
        help="Emulate max-in-flight request-at-a-time connections",
    )

    # Measurement
    run.add_argument("--precision", type=int, default=3, help="Histogram significant digits")
    run.add_argument(
        "--correction",
        choices=["none", "at_recording", "post_hoc"],
        default="none",
        help="Coordinated-omission correction mode",
    )
    run.add_argument(
        "--expected-interval-ms",
        type=float,
        default=None,
        help="Expected interval for correction (defaults from rate)",
    )
    run.add_argument("--shards", type=int, default=4, help="Recorder shards")

    # Output
    run.add_argument("--bins", type=int, default=20, help="Histogram bins to print")
    run.add_argument("--save", default=None, help="Write the report JSON to this path")
    run.add_argument("--json", action="store_true", help="Print the output record as JSON")
    run.add_argument("--no-progress", action="store_true", help="Disable the progress bar")
    _add_logging_args(run)

    correct = sub.add_parser(
        "correct",
        help="Post-hoc correction of latencies collected by another tool",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    correct.add_argument("file", help="Text file with one latency in milliseconds per line")
    correct.add_argument(
        "--interval-ms",
        type=float,
        required=True,
        help="Interval at which the tool meant to send requests",
    )
    correct.add_argument("--precision", type=int, default=3, help="Histogram significant digits")
    correct.add_argument("--bins", type=int, default=20, help="Histogram bins to print")
    _add_logging_args(correct)

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def config_from_args(args: argparse.Namespace) -> RunConfig:
    options: dict[str, Any] = {
        "target_rate": args.rate,
        "interval": args.interval_ms / 1000.0 if args.interval_ms is not None else None,
        "duration": args.duration,
        "total_count": args.count,
        "max_in_flight": args.max_in_flight,
        "timeout": args.timeout,
        "drain_timeout": args.drain_timeout,
        "arrival_distribution": args.arrival,
        "precision_digits": args.precision,
        "correction_mode": args.correction,
        "expected_interval": (
            args.expected_interval_ms / 1000.0 if args.expected_interval_ms is not None else None
        ),
        "load_shedding": "shed" if args.shed else "queue",
        "dispatch_model": "closed_loop" if args.closed_loop else "open_loop",
        "recorder_shards": args.shards,
        "seed": args.seed,
    }
    return RunConfig.from_dict(options).validate()


def read_latencies(path: str) -> list[float]:
    values: list[float] = []
    with open(path, encoding="utf-8") as f:
        for line_number, line in enumerate(f, start=1):
            value = line.strip()
            if not value or value.startswith("#"):
                continue
            try:
                values.append(float(value))
            except ValueError:
                raise ConfigurationError(
                    f"{path}:{line_number}: not a latency value: {value!r}"
                ) from None
    return values


async def run_load(args: argparse.Namespace) -> int:
    config = config_from_args(args)

    if args.simulate is None and not args.url:
        raise ConfigurationError("either a URL or --simulate SERVICE_MS is required")

    logging.info(
        f"Starting openloop | Target: {args.url or 'simulated'} | "
        f"Rate: {config.rate:.2f}/s | Max in flight: {config.max_in_flight} | "
        f"Correction: {config.correction_mode.value}"
    )

    if args.simulate is not None:
        target = SimulatedTarget(
            args.simulate / 1000.0,
            stalls=[parse_stall(s) for s in args.stall],
        )
        runner = LoadRunner(
            target, config, use_progress_bar=not args.no_progress, handle_signals=True
        )
        report = await runner.run()
    else:
        connector = aiohttp.TCPConnector(limit=0)
        async with aiohttp.ClientSession(connector=connector) as session:
            target = HttpTarget(session, args.url, method=args.method)
            runner = LoadRunner(
                target, config, use_progress_bar=not args.no_progress, handle_signals=True
            )
            report = await runner.run()

    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        print("\n" + "=" * 60)
        print(render_report(report, args.bins))
        print("=" * 60)

    if args.save:
        ReportStore(args.save).save_report(report, config)
    return 0


def run_correct(args: argparse.Namespace) -> int:
    values_ms = read_latencies(args.file)
    values_us = [to_micros(v / 1000.0) for v in values_ms]
    settings = {"precision_digits": args.precision}

    raw = Histogram(**settings)
    for v in values_us:
        raw.record(v)
    corrected = correct_latencies(values_us, to_micros(args.interval_ms / 1000.0), **settings)

    print(render_percentile_table(percentile_table(raw), percentile_table(corrected)))
    print()
    print(render_latency_histogram(corrected, args.bins))
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    log_level = "DEBUG" if args.debug else "INFO"
    setup_logging(level=log_level, log_file=args.log_file)

    try:
        if args.cmd == "correct":
            return run_correct(args)
        return asyncio.run(run_load(args))
    except ConfigurationError as e:
        logging.error(f"Configuration error: {e}")
        return 2
    except ValueError as e:
        logging.error(f"Invalid argument: {e}")
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
