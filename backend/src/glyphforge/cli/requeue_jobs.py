"""CLI command for re-enqueueing QUEUED generation jobs the queue has lost.

Usage:
    python -m glyphforge.cli [OPTIONS]

Examples:
    # Requeue jobs stuck in QUEUED for longer than REQUEUE_STALE_AFTER_SECONDS
    python -m glyphforge.cli

    # Only look at 50 jobs, treating anything older than 10 minutes as stale
    python -m glyphforge.cli --limit 50 --older-than 600

    # Dry run (no queue writes)
    python -m glyphforge.cli --dry-run

    # Verbose logging
    python -m glyphforge.cli -v
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace

import structlog
from redis.exceptions import RedisError

from glyphforge.core import timezone  # noqa: F401
from glyphforge.core.config import Settings, configure_logging
from glyphforge.core.database import setup_db_session
from glyphforge.core.redis import create_redis_client, ping_redis
from glyphforge.services.requeue import requeue_stale_jobs
from glyphforge.uow import create_uow_factory
from glyphforge.workers.generation_worker import build_generation_queue

logger = structlog.get_logger()


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        description="Re-enqueue QUEUED generation jobs missing from the work queue",
        epilog="Safe to run repeatedly: queue entries are keyed by job id",
    )

    parser.add_argument(
        "--limit",
        type=int,
        default=100,
        help="Maximum number of jobs to scan (default: 100)",
    )

    parser.add_argument(
        "--older-than",
        type=int,
        default=None,
        help="Only jobs queued at least this many seconds ago "
        "(default: REQUEUE_STALE_AFTER_SECONDS)",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List candidate jobs without writing to the queue",
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
        Exit code: 0 (success), 1 (error), 2 (partial success)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]

    if args.verbose:
        settings.log_level = "DEBUG"

    configure_logging(settings)

    older_than = (
        args.older_than if args.older_than is not None else settings.requeue_stale_after_seconds
    )
    logger.info("cli.started", limit=args.limit, older_than=older_than, dry_run=args.dry_run)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)
    redis_client = create_redis_client(settings.redis_url, context="requeue-cli")

    try:
        await ping_redis(redis_client, context="requeue-cli")
        queue = build_generation_queue(redis_client, settings)

        result = await requeue_stale_jobs(
            uow_factory,
            queue,
            older_than_seconds=older_than,
            limit=args.limit,
            dry_run=args.dry_run,
        )
        counts = await queue.counts()

        print("\n" + "=" * 60)
        print("Generation Job Requeue Summary")
        print("=" * 60)
        print(f"Stale QUEUED jobs found: {result.scanned_count}")
        print(f"Jobs requeued: {result.requeued_count}")
        print(f"Jobs still in queue: {result.skipped_count}")
        print("Queue: " + ", ".join(f"{state}={count}" for state, count in counts.items()))

        if result.errors:
            print(f"\nErrors encountered: {len(result.errors)}")
            for error in result.errors[:5]:  # Show first 5 errors
                print(f"  - {error}")
            if len(result.errors) > 5:
                print(f"  ... and {len(result.errors) - 5} more errors")

        if args.dry_run:
            print("\n[DRY RUN] No changes were written to the queue")

        print("=" * 60 + "\n")

        if not result.errors:
            logger.info("cli.success", requeued=result.requeued_count)
            return 0
        elif result.requeued_count > 0:
            logger.warning("cli.partial_success")
            return 2
        else:
            logger.error("cli.failure")
            return 1

    except RedisError as e:
        logger.error("cli.redis_error", error=str(e), error_type=type(e).__name__)
        print(f"\nError: Redis unavailable: {e}", file=sys.stderr)
        return 1

    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        print("\nRequeue interrupted by user", file=sys.stderr)
        return 130  # Standard exit code for SIGINT

    except Exception as e:
        logger.error(
            "cli.unexpected_error",
            error=str(e),
            error_type=type(e).__name__,
        )
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        return 1

    finally:
        await redis_client.aclose()


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
