"""Maintenance CLI for the creation pipeline.

Usage:
    python -m parascene.cli <command> [OPTIONS]

Examples:
    # Grant 50 credits to a user (by id or email)
    python -m parascene.cli add-credits user@example.com 50

    # Remove 25 credits (balance never drops below zero)
    python -m parascene.cli add-credits 123 -25

    # Mark timed-out creations as failed
    python -m parascene.cli recover-stale --limit 100

    # Report stale creations without writing
    python -m parascene.cli recover-stale --dry-run -v
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace

import structlog

from parascene.core.config import Settings, configure_logging
from parascene.core.database import setup_db_session
from parascene.services.credits import CreditLedger
from parascene.services.recovery import recover_stale_creations
from parascene.uow import UnitOfWorkFactory, create_uow_factory

logger = structlog.get_logger()


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(description="parascene creation pipeline maintenance")
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    add_credits = subparsers.add_parser("add-credits", help="Adjust a user's credit balance")
    add_credits.add_argument("user", help="User id or email")
    add_credits.add_argument("amount", type=float, help="Amount to add (negative to remove)")

    recover = subparsers.add_parser(
        "recover-stale", help="Mark creations past their timeout as failed"
    )
    recover.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Maximum number of creating rows to inspect (default: RECOVERY_BATCH_SIZE)",
    )
    recover.add_argument(
        "--dry-run",
        action="store_true",
        help="Report stale creations without database writes",
    )

    return parser.parse_args(argv)


async def add_credits(uow_factory: UnitOfWorkFactory, identifier: str, amount: float) -> int:
    async with await uow_factory() as uow:
        if identifier.isdigit():
            user = await uow.users.get_by_id(int(identifier))
        else:
            user = await uow.users.get_by_email(identifier)

        if user is None:
            logger.error("cli.user_not_found", user=identifier)
            print(f"Error: User not found ({identifier})", file=sys.stderr)
            return 1

        ledger = CreditLedger(uow)
        old_balance = await ledger.balance(user.id)
        new_balance = await ledger.credit(user.id, amount)

    print(f"Found user: {user.email} (ID: {user.id})")
    print(f"  Old balance: {old_balance:.1f}")
    print(f"  Amount: {amount:+.1f}")
    print(f"  New balance: {new_balance:.1f}")
    return 0


async def recover_stale(
    uow_factory: UnitOfWorkFactory, limit: int, dry_run: bool
) -> int:
    stale_ids = await recover_stale_creations(uow_factory, limit=limit, dry_run=dry_run)

    print("\n" + "=" * 60)
    print("Stale Creation Recovery Summary")
    print("=" * 60)
    print(f"Stale creations: {len(stale_ids)}")
    if stale_ids:
        shown = ", ".join(str(i) for i in stale_ids[:20])
        more = f" ... and {len(stale_ids) - 20} more" if len(stale_ids) > 20 else ""
        print(f"Ids: {shown}{more}")
    if dry_run:
        print("\n[DRY RUN] No changes were persisted to database")
    print("=" * 60 + "\n")
    return 0


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

    logger.info("cli.started", command=args.command)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)

    try:
        if args.command == "add-credits":
            return await add_credits(uow_factory, args.user, args.amount)
        return await recover_stale(
            uow_factory, args.limit or settings.recovery_batch_size, args.dry_run
        )

    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        print("\nInterrupted by user", file=sys.stderr)
        return 130

    except Exception as e:
        logger.error(
            "cli.unexpected_error",
            command=args.command,
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
