"""CLI command for cleaning up generations interrupted by a crash or restart.

Generations left in 'processing' cannot be resumed and are failed (never
charged). Generations still 'pending' are only reported here; the API process
re-submits them to its worker pool on startup.

Usage:
    python -m pixcraft.cli.recover_generations [OPTIONS]

Examples:
    # Fail orphaned processing generations
    python -m pixcraft.cli.recover_generations

    # Report only (no database writes)
    python -m pixcraft.cli.recover_generations --dry-run

    # Verbose logging
    python -m pixcraft.cli.recover_generations -v
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace

import structlog

from pixcraft.core.config import Settings, configure_logging
from pixcraft.core.database import setup_db_session
from pixcraft.models.generation import GenerationStatus
from pixcraft.uow import create_uow_factory
from pixcraft.workers.dispatcher import recover_interrupted_generations

logger = structlog.get_logger()


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        description="Fail generations orphaned in 'processing' by a crashed server",
        epilog="Pending generations are re-queued by the API server on startup",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Count interrupted generations without database writes",
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
        Exit code: 0 (success), 1 (error), 130 (interrupted)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    logger.info("cli.started", dry_run=args.dry_run)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)

    try:
        if args.dry_run:
            async with await uow_factory() as uow:
                processing = await uow.generations.count_by_status(GenerationStatus.PROCESSING)
                pending = await uow.generations.count_by_status(GenerationStatus.PENDING)
            failed = 0
        else:
            failed, _ = await recover_interrupted_generations(uow_factory)
            async with await uow_factory() as uow:
                pending = await uow.generations.count_by_status(GenerationStatus.PENDING)
            processing = failed

        print("\n" + "=" * 60)
        print("Generation Recovery Summary")
        print("=" * 60)
        print(f"Orphaned processing generations: {processing}")
        print(f"Generations failed: {failed}")
        print(f"Pending generations awaiting a worker: {pending}")

        if args.dry_run:
            print("\n[DRY RUN] No changes were persisted to database")

        print("=" * 60 + "\n")

        logger.info("cli.completed", failed=failed, pending=pending)
        return 0

    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        print("\nRecovery interrupted by user", file=sys.stderr)
        return 130

    except Exception as e:
        logger.error(
            "cli.unexpected_error",
            error=str(e),
            error_type=type(e).__name__,
        )
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        return 1

    finally:
        await session_factory.kw["bind"].dispose()


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
