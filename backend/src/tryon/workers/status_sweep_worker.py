"""Status sweep worker.

Polls providers for processing jobs whose webhook has not arrived within the
grace window and feeds the answers through the same reconciliation as the
webhook receivers.
"""

import asyncio
from typing import Callable

import structlog

from tryon.core.config import Settings
from tryon.services.lifecycle import JobLifecycleManager
from tryon.services.providers.registry import ProviderRegistry
from tryon.uow import create_uow_factory

logger = structlog.get_logger()


async def run_status_sweep_worker(
    session_factory: Callable,
    settings: Settings,
) -> None:
    """Main entry point for the status sweep worker.

    Worker lifecycle:
    - Starts automatically with FastAPI app (registered in lifespan)
    - Runs until asyncio.CancelledError (app shutdown)

    Error handling:
    - Per-job provider errors are logged by the sweep and the job stays processing
    - Unexpected errors in the loop are logged and retried after a short back-off

    Args:
        session_factory: Factory function to create new database sessions
        settings: Application settings (interval, grace window, batch size, provider keys)
    """
    interval = settings.sweep_interval_seconds
    grace = settings.sweep_grace_seconds
    batch_size = settings.sweep_batch_size

    lifecycle = JobLifecycleManager.from_settings(
        settings, create_uow_factory(session_factory), ProviderRegistry.from_settings(settings)
    )

    logger.info(
        "worker.started",
        worker="status_sweep",
        interval=interval,
        grace_seconds=grace,
        batch_size=batch_size,
    )

    try:
        while True:
            try:
                await lifecycle.sweep(grace_seconds=grace, limit=batch_size)

            except asyncio.CancelledError:
                raise

            except Exception as e:
                logger.error(
                    "worker.error",
                    worker_type="status_sweep",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                await asyncio.sleep(5)

            await asyncio.sleep(interval)

    except asyncio.CancelledError:
        logger.info(
            "worker.stopped",
            worker="status_sweep",
            message="Graceful shutdown requested",
        )
        raise
