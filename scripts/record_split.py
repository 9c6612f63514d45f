"""Record a stock split so replays restate earlier lots."""

from __future__ import annotations

import argparse
import asyncio
from datetime import date
from decimal import Decimal

from eod_portfolio.config import get_settings
from eod_portfolio.core.logging import setup_logging
from eod_portfolio.db import Database
from eod_portfolio.services.ledger import LedgerRepository


async def _run(symbol: str, effective_date: date, ratio: Decimal) -> None:
    database = Database(get_settings().database_url)
    try:
        action, created = await LedgerRepository(database).add_corporate_action(symbol, effective_date, ratio)
        print(f"{action.key}: {'recorded' if created else 'already recorded'}")
    finally:
        await database.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Record a stock split")
    parser.add_argument("--symbol", required=True)
    parser.add_argument("--effective-date", type=date.fromisoformat, required=True)
    parser.add_argument("--ratio", type=Decimal, required=True, help="New shares per old share, e.g. 10")
    args = parser.parse_args()
    setup_logging(get_settings().log_level)
    asyncio.run(_run(args.symbol, args.effective_date, args.ratio))


if __name__ == "__main__":
    main()
