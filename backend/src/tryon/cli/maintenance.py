"""Maintenance commands for the external cron trigger.

Usage:
    python -m tryon.cli <command> [OPTIONS]

Examples:
    # Poll processing jobs whose webhook has not arrived
    python -m tryon.cli sweep-jobs

    # Poll jobs quiet for 5 minutes, at most 100 of them
    python -m tryon.cli sweep-jobs --grace-seconds 300 --limit 100

    # Offset credit grants past their expiry
    python -m tryon.cli expire-credits

    # Verbose logging
    python -m tryon.cli expire-credits -v
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace

import structlog

from tryon.core import timezone  # noqa: F401
from tryon.core.config import Settings, configure_logging
from tryon.core.database import setup_db_session
from tryon.services.exceptions import ServiceError
from tryon.services.ledger import CreditLedger
from tryon.services.lifecycle import JobLifecycleManager
from tryon.services.providers.registry import ProviderRegistry
from tryon.uow import create_uow_factory

logger = structlog.get_logger()


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(description="Try-on backend maintenance commands")
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    sweep = subparsers.add_parser(
        "sweep-jobs", help="Poll providers for processing jobs and reconcile them"
    )
    sweep.add_argument(
        "--grace-seconds",
        type=int,
        help="Only jobs quiet for at least this long (default: SWEEP_GRACE_SECONDS)",
    )
    sweep.add_argument(
        "--limit",
        type=int,
        help="Maximum number of jobs to poll (default: SWEEP_BATCH_SIZE)",
    )

    subparsers.add_parser("expire-credits", help="Offset credit grants past their expiry")

    return parser.parse_args(argv)


async def async_main(argv: list[str] | None = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    logger.info("cli.started", command=args.command)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)

    try:
        if args.command == "sweep-jobs":
            lifecycle = JobLifecycleManager.from_settings(
                settings, uow_factory, ProviderRegistry.from_settings(settings)
            )
            grace = args.grace_seconds
            if grace is None:
                grace = settings.sweep_grace_seconds
            changed = await lifecycle.sweep(
                grace_seconds=grace, limit=args.limit or settings.sweep_batch_size
            )
            print(f"Jobs moved to a terminal state or fallback: {changed}")
        else:
            ledger = CreditLedger.from_settings(settings)
            async with await uow_factory() as uow:
                expired = await ledger.expire_stale(uow)
            print(f"Credit grants expired: {expired}")

    except ServiceError as e:
        logger.error("cli.service_error", error=str(e), error_type=type(e).__name__)
        print(f"\nError: {e}", file=sys.stderr)
        return 1

    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        print("\nInterrupted by user", file=sys.stderr)
        return 130  # Standard exit code for SIGINT

    except Exception as e:
        logger.error("cli.unexpected_error", error=str(e), error_type=type(e).__name__)
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        return 1

    logger.info("cli.completed", command=args.command)
    return 0


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
