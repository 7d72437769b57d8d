"""Application entrypoint: run the worker or one-off maintenance commands."""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from typing import Any

import structlog

from cgm_agent.config import get_settings
from cgm_agent.logger import setup_logging
from cgm_agent.models import FoodPattern
from cgm_agent.runtime import Runtime
from cgm_agent.storage.database import close_db, init_db

logger = structlog.get_logger(__name__)


async def _run() -> None:
    await init_db()
    runtime = Runtime()
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C still works.
            pass

    await runtime.start()
    try:
        await stop.wait()
    finally:
        await runtime.stop()
        await close_db()


async def _recompute(wait: bool) -> int:
    await init_db()
    runtime = Runtime()
    await runtime.start(with_scheduler=False)
    try:
        jobs = await runtime.coordinator.recompute_all()
        if wait:
            await runtime.wait_idle()
    finally:
        await runtime.stop()
        await close_db()
    return len(jobs)


async def _daily_summary(include_today: bool, wait: bool) -> int:
    await init_db()
    runtime = Runtime()
    await runtime.start(with_scheduler=False)
    try:
        if include_today:
            jobs = await runtime.daily_summary_workflow.summarize_now()
        else:
            jobs = await runtime.daily_summary_workflow.schedule()
        if wait:
            await runtime.wait_idle()
    finally:
        await runtime.stop()
        await close_db()
    return len(jobs)


async def _status() -> dict[str, Any]:
    await init_db()
    try:
        return await Runtime().status()
    finally:
        await close_db()


async def _food_patterns() -> list[FoodPattern]:
    await init_db()
    try:
        return await Runtime().food_patterns()
    finally:
        await close_db()


def _print_food_patterns(patterns: list[FoodPattern]) -> None:
    if not patterns:
        print("No food tags yet.")
        return
    print(f"{'Food':<28} {'Seen':>4} {'Avg spike':>9} {'Worst':>6} {'Recovery':>8}  G/Y/R")
    for p in patterns:
        avg = "-" if p.avg_spike is None else f"{p.avg_spike:.1f}"
        worst = "-" if p.worst_spike is None else f"{p.worst_spike:.1f}"
        recovery = "-" if p.avg_recovery_minutes is None else f"{p.avg_recovery_minutes:.0f}m"
        print(
            f"{p.name[:28]:<28} {p.occurrences:>4} {avg:>9} {worst:>6} {recovery:>8}  "
            f"{p.green_count}/{p.yellow_count}/{p.red_count}"
        )


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="cgm-agent",
        description="Marker-anchored glucose window analysis worker.",
    )
    sub = parser.add_subparsers(dest="command")

    # ── run ───────────────────────────────────────────────────
    sub.add_parser("run", help="Start the queue workers and periodic loops.")

    # ── init-db ───────────────────────────────────────────────
    sub.add_parser("init-db", help="Create database tables.")

    # ── recompute ─────────────────────────────────────────────
    recompute_parser = sub.add_parser(
        "recompute", help="Rebuild every window from the marker stream and queue changed ones."
    )
    recompute_parser.add_argument(
        "--no-wait", action="store_true", help="Exit once jobs are queued instead of draining them."
    )

    # ── daily-summary ─────────────────────────────────────────
    daily_parser = sub.add_parser("daily-summary", help="Summarise every finished day that has no summary yet.")
    daily_parser.add_argument(
        "--today", action="store_true", help="Also summarise the current day with the data so far."
    )
    daily_parser.add_argument(
        "--no-wait", action="store_true", help="Exit once jobs are queued instead of draining them."
    )

    # ── status ────────────────────────────────────────────────
    sub.add_parser("status", help="Print stored data counts and analyzer spend.")

    # ── food-patterns ─────────────────────────────────────────
    sub.add_parser("food-patterns", help="Print how each tagged food affects glucose.")

    args = parser.parse_args(argv)
    settings = get_settings()
    setup_logging(settings.agent_log_level)

    if args.command == "run":
        try:
            asyncio.run(_run())
        except KeyboardInterrupt:
            logger.info("main.interrupted")
    elif args.command == "init-db":
        asyncio.run(init_db())
        print("Database tables created.")
    elif args.command == "recompute":
        queued = asyncio.run(_recompute(wait=not args.no_wait))
        print(f"Windows queued for analysis: {queued}")
    elif args.command == "daily-summary":
        queued = asyncio.run(_daily_summary(include_today=args.today, wait=not args.no_wait))
        print(f"Days queued for summary: {queued}")
    elif args.command == "status":
        print(json.dumps(asyncio.run(_status()), indent=2))
    elif args.command == "food-patterns":
        _print_food_patterns(asyncio.run(_food_patterns()))
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
