"""Replay a user's ledger into FIFO lots and mark them to market."""

from __future__ import annotations

import argparse
import asyncio
from datetime import date

from eod_portfolio.config import get_settings
from eod_portfolio.core.logging import setup_logging
from eod_portfolio.db import Database
from eod_portfolio.market_calendar import ny_today
from eod_portfolio.services.eod_store import EodStore
from eod_portfolio.services.ledger import LedgerRepository, PortfolioSnapshotRepository
from eod_portfolio.services.portfolio_engine import PortfolioEngine
from eod_portfolio.services.valuation import PortfolioValuator


async def _run(user_id: str, as_of: date, full: bool) -> None:
    settings = get_settings()
    database = Database(settings.database_url)
    try:
        ledger = LedgerRepository(database)
        snapshots = PortfolioSnapshotRepository(database)
        transactions = await ledger.list_transactions(user_id)
        actions = await ledger.list_corporate_actions()
        previous = None if full else await snapshots.load(user_id)

        result = PortfolioEngine().replay(transactions, actions, previous)
        await snapshots.save(user_id, result.snapshot)

        for entry in result.malformed:
            print(f"excluded  {entry}")
        for noop in result.noop_actions:
            print(f"no-op     {noop}")
        for symbol, notes in sorted(result.anomalies.items()):
            print(f"anomaly   {symbol}: {', '.join(notes)}")

        valuation = await PortfolioValuator(EodStore(database, settings)).mark(result.snapshot, as_of)
        for item in valuation.lots:
            lot = item.lot
            print(
                f"{lot.symbol:<22} qty={lot.quantity} cost={lot.cost_basis_per_unit} "
                f"{item.status} price={item.price} unrealized={item.unrealized_pnl}"
            )
        print(f"Realized P&L: {result.total_realized_pnl}")
        print(f"Unrealized P&L (priced lots): {valuation.unrealized_pnl}")
        if valuation.pending_symbols:
            print(f"Pending closes: {', '.join(valuation.pending_symbols)}")
    finally:
        await database.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Replay a portfolio with FIFO lots")
    parser.add_argument("--user", required=True)
    parser.add_argument("--as-of", type=date.fromisoformat, default=None)
    parser.add_argument("--full", action="store_true", help="Ignore the saved snapshot and replay everything")
    args = parser.parse_args()
    setup_logging(get_settings().log_level)
    asyncio.run(_run(args.user, args.as_of or ny_today(), args.full))


if __name__ == "__main__":
    main()
