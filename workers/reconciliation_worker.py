"""
Pending purchase sweeper background worker.

Runs the sweeper every ``pending_sweep_interval_seconds``.
"""
import asyncio
import signal
from typing import Any, Optional

import structlog

from config import get_settings
from core.reconciliation import PendingPurchaseSweeper, SweepResult
from integrations.mercadopago_client import MercadoPagoClient
from monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_sweep(sweeper: PendingPurchaseSweeper) -> Optional[SweepResult]:
    """Run one sweep; failures are logged and the worker keeps going."""
    try:
        result = await sweeper.run()
    except Exception as e:
        logger.error("pending_sweep_failed", error=str(e))
        return None

    if result.failed:
        logger.warning(
            "pending_sweep_failures_detected",
            failed=result.failed,
            total=result.total,
        )
    return result


async def start_reconciliation_worker(interval_seconds: Optional[int] = None) -> None:
    """
    Start the sweeper worker.

    Args:
        interval_seconds: Seconds between sweeps (defaults to the configured interval)
    """
    setup_logging()
    settings = get_settings()
    interval = interval_seconds or settings.pending_sweep_interval_seconds

    if not settings.is_payment_configured:
        logger.error("reconciliation_worker_not_started", reason="payment gateway not configured")
        return

    logger.info("reconciliation_worker_starting", interval_seconds=interval)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("reconciliation_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    gateway = MercadoPagoClient(settings)
    sweeper = PendingPurchaseSweeper(gateway, settings)

    try:
        while running:
            await run_sweep(sweeper)

            # Sleep in short steps so a shutdown signal is honored promptly
            remaining = interval
            while remaining > 0 and running:
                step = min(remaining, 5)
                await asyncio.sleep(step)
                remaining -= step
    finally:
        await gateway.close()
        logger.info("reconciliation_worker_stopped")


def main() -> None:
    """Console entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Pending purchase sweeper worker")
    parser.add_argument(
        "--interval", type=int, default=None, help="Seconds between sweeps"
    )
    args = parser.parse_args()

    asyncio.run(start_reconciliation_worker(interval_seconds=args.interval))


if __name__ == "__main__":
    main()
