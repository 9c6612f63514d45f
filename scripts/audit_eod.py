"""Audit official closes for a date range and optionally repair the gaps."""

from __future__ import annotations

import argparse
import asyncio
from datetime import date

from eod_portfolio.config import get_settings
from eod_portfolio.core.logging import setup_logging
from eod_portfolio.db import Database
from eod_portfolio.services.backfill_queue import BackfillQueue
from eod_portfolio.services.eod_store import EodStore
from eod_portfolio.services.ledger import LedgerRepository
from eod_portfolio.services.repair import RepairEngine


async def _run(
    symbols: list[str],
    user_id: str | None,
    start: date,
    end: date,
    forward_fill: bool,
    requeue: bool,
) -> None:
    settings = get_settings()
    database = Database(settings.database_url)
    try:
        if user_id:
            symbols = sorted(set(symbols) | set(await LedgerRepository(database).list_symbols(user_id)))
        store = EodStore(database, settings)
        engine = RepairEngine(store, BackfillQueue(database, store, settings), settings)
        report = await engine.audit_range(symbols, start, end)

        print(f"Audited {len(symbols)} symbols from {start} to {end}")
        for gap in report.gaps:
            print(f"  gap        {gap.key}")
        for estimate in report.estimated:
            print(f"  estimated  {estimate.key}")
        for jump in report.suspicious_jumps:
            print(
                f"  jump       {jump.symbol} {jump.previous_date}->{jump.trading_date} "
                f"{jump.previous_close}->{jump.close} ({jump.change_pct}%, {jump.provider})"
            )
        for key in report.partial_requests:
            print(f"  reopened   {key}")
        for symbol, error in report.errors.items():
            print(f"  error      {symbol}: {error}")

        if forward_fill:
            for outcome in await engine.repair_gaps(report):
                print(f"  fill       {outcome.symbol} {outcome.trading_date}: {outcome.status}")
        elif requeue:
            for outcome in await engine.requeue_gaps(report):
                print(f"  requeue    {outcome.key}: {outcome.reason}")
    finally:
        await database.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Audit EOD closes for gaps and suspicious jumps")
    parser.add_argument("--symbol", action="append", default=[], dest="symbols")
    parser.add_argument("--user", help="Audit every symbol in this user's ledger")
    parser.add_argument("--start", type=date.fromisoformat, required=True)
    parser.add_argument("--end", type=date.fromisoformat, required=True)
    action = parser.add_mutually_exclusive_group()
    action.add_argument("--forward-fill", action="store_true", help="Fill gaps from the prior close")
    action.add_argument(
        "--requeue", action="store_true", help="Re-enqueue gaps and estimated closes for provider fetching"
    )
    args = parser.parse_args()
    if not args.symbols and not args.user:
        parser.error("pass --symbol or --user")
    setup_logging(get_settings().log_level)
    asyncio.run(_run(args.symbols, args.user, args.start, args.end, args.forward_fill, args.requeue))


if __name__ == "__main__":
    main()
