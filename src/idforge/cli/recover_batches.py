"""CLI command for closing generation batches left open by a dead process.

Usage:
    python -m idforge.cli.recover_batches [OPTIONS]

Examples:
    # Close every batch still marked 'gen'
    python -m idforge.cli.recover_batches

    # Only batches older than 30 minutes (safe while the API is running)
    python -m idforge.cli.recover_batches --older-than-minutes 30

    # Dry run (no database writes)
    python -m idforge.cli.recover_batches --dry-run
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace
from datetime import timedelta

import structlog

from idforge.core import timezone  # noqa: F401
from idforge.core.config import Settings, configure_logging
from idforge.core.database import setup_db_session
from idforge.services.generation.recovery import recover_orphaned_batches
from idforge.uow import create_uow_factory

logger = structlog.get_logger()


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(description="Close identity batches orphaned by a crashed process")

    parser.add_argument(
        "--older-than-minutes",
        type=float,
        default=None,
        help="Only close batches created at least this many minutes ago",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List orphaned batches without database writes",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    return parser.parse_args(argv)


async def async_main(argv: list[str] | None = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error), 2 (interrupted)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    older_than = (
        timedelta(minutes=args.older_than_minutes) if args.older_than_minutes is not None else None
    )
    logger.info("recover_batches.start", dry_run=args.dry_run, older_than=str(older_than))

    try:
        session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
        uow_factory = create_uow_factory(session_factory)

        result = await recover_orphaned_batches(
            uow_factory, older_than=older_than, dry_run=args.dry_run
        )

        if args.dry_run:
            for gen_id in result.generation_ids:
                logger.info("recover_batches.dry_run_batch", generation_id=str(gen_id))
            logger.info(
                "recover_batches.dry_run_complete",
                batches=len(result.generation_ids),
                message="DRY RUN COMPLETE - no batches were closed",
            )
            return 0

        logger.info(
            "recover_batches.complete",
            batches_closed=result.batches_closed,
            records_failed=result.records_failed,
        )
        return 0

    except KeyboardInterrupt:
        logger.warning("recover_batches.interrupted", message="Recovery interrupted by user")
        return 2

    except Exception as e:
        logger.error("recover_batches.fatal_error", error=str(e), exc_info=True)
        return 1


def main(argv: list[str] | None = None) -> int:
    """Synchronous wrapper for async main."""
    return asyncio.run(async_main(argv))


if __name__ == "__main__":
    sys.exit(main())
