"""
Outbox relay background worker.

Runs a relay pass every relay_interval_seconds and publishes pending outbox
events to Kafka. Run a single instance; overlapping passes only cause
duplicate deliveries, never lost ones.

Usage:
    python -m payment_relay.workers.outbox_relay [--once]
"""
import argparse
import asyncio
import signal

import structlog

from payment_relay.core.outbox import OutboxRelay, RelayResult
from payment_relay.database.connection import close_db
from payment_relay.integrations.kafka_producer import close_event_publisher
from payment_relay.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_relay_pass(relay: OutboxRelay) -> RelayResult:
    """Run one bounded relay pass and log its summary."""
    result = await relay.run_once()
    logger.info(
        "outbox_relay_pass_completed",
        selected=result.selected,
        published=result.published,
        failed=result.failed,
    )
    return result


async def start_outbox_relay(once: bool = False) -> None:
    """
    Start the outbox relay worker.

    Args:
        once: Run a single pass and exit instead of looping
    """
    setup_logging(component="outbox-relay")

    logger.info("outbox_relay_worker_starting", once=once)

    relay = OutboxRelay()

    try:
        if once:
            await run_relay_pass(relay)
            return

        loop = asyncio.get_running_loop()

        def signal_handler(sig: signal.Signals) -> None:
            logger.info("outbox_relay_worker_shutdown_signal_received", signal=sig.name)
            relay.stop()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler, sig)

        await relay.start()

    except Exception as e:
        logger.error("outbox_relay_worker_error", error=str(e))
        raise
    finally:
        close_event_publisher()
        await close_db()
        logger.info("outbox_relay_worker_stopped")


def main() -> None:
    parser = argparse.ArgumentParser(description="Outbox relay worker")
    parser.add_argument("--once", action="store_true", help="Run a single relay pass and exit")
    args = parser.parse_args()

    asyncio.run(start_outbox_relay(once=args.once))


if __name__ == "__main__":
    main()
