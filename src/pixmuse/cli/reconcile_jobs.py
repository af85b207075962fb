"""CLI command for settling jobs flagged for manual reconciliation.

A job is flagged when the provider finished but its results (or refund)
could not be persisted. It stays running with its credits reserved until an
operator settles it here.

Usage:
    python -m pixmuse.cli.reconcile_jobs [OPTIONS]

Examples:
    # List flagged jobs
    python -m pixmuse.cli.reconcile_jobs

    # Persist recorded results and keep the charge
    python -m pixmuse.cli.reconcile_jobs --resolve <JOB_ID> --succeeded

    # Mark failed and refund the reservation
    python -m pixmuse.cli.reconcile_jobs --resolve <JOB_ID> --refund
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace
from uuid import UUID

import structlog

from pixmuse.core import timezone  # noqa: F401
from pixmuse.core.config import Settings, configure_logging
from pixmuse.core.database import setup_db_session
from pixmuse.services.broadcaster import ProgressBroadcaster
from pixmuse.services.exceptions import JobNotFoundError
from pixmuse.services.job_runner import JobRunner
from pixmuse.services.providers.factory import create_job_client
from pixmuse.uow import create_uow_factory

logger = structlog.get_logger()


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        description="List or settle jobs flagged for manual reconciliation",
    )

    parser.add_argument(
        "--resolve",
        type=UUID,
        metavar="JOB_ID",
        help="Job to settle (requires --succeeded or --refund)",
    )

    resolution = parser.add_mutually_exclusive_group()
    resolution.add_argument(
        "--succeeded",
        action="store_true",
        help="Persist recorded results and mark succeeded; credits stay debited",
    )
    resolution.add_argument(
        "--refund",
        action="store_true",
        help="Mark failed and return the reserved credits",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    args = parser.parse_args(argv)
    if args.resolve and not (args.succeeded or args.refund):
        parser.error("--resolve requires --succeeded or --refund")
    if (args.succeeded or args.refund) and not args.resolve:
        parser.error("--succeeded/--refund require --resolve JOB_ID")
    return args


async def list_flagged(uow_factory) -> int:
    async with await uow_factory() as uow:
        jobs = await uow.jobs.list_needing_reconciliation()

    print("\n" + "=" * 60)
    print("Jobs awaiting reconciliation")
    print("=" * 60)
    if not jobs:
        print("None")
    for job in jobs:
        error = (job.error_data or {}).get("error", "")
        has_artifacts = "artifacts" in (job.error_data or {})
        print(
            f"{job.id}  {job.kind.value:<10}  account={job.account_id}  "
            f"cost={job.cost}  artifacts={'yes' if has_artifacts else 'no'}"
        )
        if error:
            print(f"    error: {error}")
    print("=" * 60 + "\n")

    logger.info("cli.listed", flagged=len(jobs))
    return 0


async def resolve(job_runner: JobRunner, job_id: UUID, succeeded: bool) -> int:
    try:
        if succeeded:
            job = await job_runner.resolve_succeeded(job_id)
        else:
            job = await job_runner.resolve_refund(job_id)
    except (JobNotFoundError, ValueError) as e:
        logger.error("cli.resolve_rejected", job_id=str(job_id), error=str(e))
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Job {job.id} settled as {job.status.value}")
    return 0


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

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)

    try:
        if not args.resolve:
            return await list_flagged(uow_factory)

        job_runner = JobRunner(
            uow_factory=uow_factory,
            job_client=create_job_client(settings),
            broadcaster=ProgressBroadcaster(),
            settings=settings,
        )
        return await resolve(job_runner, args.resolve, succeeded=args.succeeded)

    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        print("\nInterrupted by user", file=sys.stderr)
        return 130

    except Exception as e:
        logger.error(
            "cli.unexpected_error",
            error=str(e),
            error_type=type(e).__name__,
        )
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        return 1


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
