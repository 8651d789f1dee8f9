"""
Retention sweeper background worker.

Runs the outbox retention sweep daily at sweeper_hour_utc (default 02:00 UTC).

Usage:
    python -m payment_relay.workers.retention_sweeper [--once] [--hour 2]
"""
import argparse
import asyncio
import signal
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog

from payment_relay.config import get_settings
from payment_relay.core.retention import RetentionSweeper, SweepResult
from payment_relay.database.connection import close_db
from payment_relay.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_daily_sweep(sweeper: RetentionSweeper) -> SweepResult:
    """Run one bounded sweep."""
    logger.info("daily_sweep_started")

    try:
        result = await sweeper.run_once()
    except Exception as e:
        logger.error("daily_sweep_failed", error=str(e))
        raise

    if result.stuck:
        logger.warning("stuck_outbox_events_detected", stuck=result.stuck)

    return result


def calculate_next_run_time(target_hour: int = 2, now: Optional[datetime] = None) -> float:
    """
    Calculate seconds until the next scheduled run.

    Args:
        target_hour: Hour of day to run (24-hour format, UTC)
        now: Current time, defaults to now in UTC

    Returns:
        float: Seconds until next run
    """
    now = now or datetime.now(timezone.utc)
    next_run = now.replace(hour=target_hour, minute=0, second=0, microsecond=0)

    # Passed today's slot; schedule for tomorrow
    if now >= next_run:
        next_run += timedelta(days=1)

    seconds_until = (next_run - now).total_seconds()

    logger.info(
        "sweep_next_run_scheduled",
        next_run=next_run.isoformat(),
        seconds_until=seconds_until,
    )

    return seconds_until


async def start_retention_sweeper(target_hour: Optional[int] = None, once: bool = False) -> None:
    """
    Start the retention sweeper worker.

    Args:
        target_hour: Hour of day to run (defaults to sweeper_hour_utc)
        once: Run a single sweep and exit instead of scheduling
    """
    setup_logging(component="retention-sweeper")
    settings = get_settings()
    target_hour = settings.sweeper_hour_utc if target_hour is None else target_hour

    logger.info("retention_sweeper_starting", target_hour=target_hour, once=once)

    sweeper = RetentionSweeper(settings=settings)

    try:
        if once:
            await run_daily_sweep(sweeper)
            return

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()

        def signal_handler(sig: signal.Signals) -> None:
            logger.info("retention_sweeper_shutdown_signal_received", signal=sig.name)
            stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler, sig)

        while not stop_event.is_set():
            seconds_until = calculate_next_run_time(target_hour)

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=seconds_until)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await run_daily_sweep(sweeper)
            except Exception as e:
                # Keep the schedule; the next day's sweep retries
                logger.error("sweep_execution_error", error=str(e))

    finally:
        await close_db()
        logger.info("retention_sweeper_stopped")


def main() -> None:
    parser = argparse.ArgumentParser(description="Outbox retention sweeper")
    parser.add_argument(
        "--hour", type=int, default=None, help="Hour of day to run the sweep (0-23, UTC)"
    )
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    args = parser.parse_args()

    asyncio.run(start_retention_sweeper(target_hour=args.hour, once=args.once))


if __name__ == "__main__":
    main()
