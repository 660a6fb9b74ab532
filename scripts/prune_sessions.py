"""Delete idle sessions and the abandoned incomplete accounts they leave behind."""

from __future__ import annotations

import argparse
import asyncio
from datetime import timedelta

from app.config import get_settings
from app.core.database import Database
from app.core.field_encryption import configure_token_cipher
from app.core.logging import setup_logging
from app.repositories.account_repository import AccountRepository
from app.services.reconciliation import PruneResult, ReconciliationService


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    settings = get_settings()
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--max-age-days",
        type=int,
        default=settings.session_max_age_days,
        help="Sessions not seen for this many days are deleted (default: %(default)s).",
    )
    args = parser.parse_args(argv)
    if args.max_age_days < 1:
        parser.error("--max-age-days must be at least 1")
    return args


async def _prune(max_age_days: int) -> PruneResult:
    settings = get_settings()
    configure_token_cipher(settings.get_token_encryption_key())
    database = Database(settings)
    try:
        service = ReconciliationService(
            AccountRepository(database),
            deletion_phrase=settings.account_deletion_phrase,
        )
        return await service.prune_stale_sessions(timedelta(days=max_age_days))
    finally:
        await database.dispose()


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    setup_logging(get_settings().log_level)
    result = asyncio.run(_prune(args.max_age_days))
    print(
        f"Deleted {result.sessions_deleted} idle session(s); "
        f"removed {len(result.accounts_deleted)} abandoned account(s)"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
