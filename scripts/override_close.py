"""Manually set an official close, bypassing provider trust."""

from __future__ import annotations

import argparse
import asyncio
from datetime import date
from decimal import Decimal

from eod_portfolio.config import get_settings
from eod_portfolio.core.logging import setup_logging
from eod_portfolio.db import Database
from eod_portfolio.services.eod_store import EodStore


async def _run(symbol: str, trading_date: date, close: Decimal, note: str | None) -> None:
    settings = get_settings()
    database = Database(settings.database_url)
    try:
        result = await EodStore(database, settings).override_close(symbol, trading_date, close, note)
        print(f"{result.key}: accepted={result.accepted} ({result.reason}) revision={result.revision}")
    finally:
        await database.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Override an official close")
    parser.add_argument("--symbol", required=True)
    parser.add_argument("--date", type=date.fromisoformat, required=True)
    parser.add_argument("--close", type=Decimal, required=True)
    parser.add_argument("--note", default=None)
    args = parser.parse_args()
    setup_logging(get_settings().log_level)
    asyncio.run(_run(args.symbol, args.date, args.close, args.note))


if __name__ == "__main__":
    main()
