"""Plan missing closes from a user's ledger and sweep the backfill queue."""

from __future__ import annotations

import argparse
import asyncio
import signal
from datetime import date

import httpx

from eod_portfolio.config import get_settings
from eod_portfolio.core.logging import setup_logging
from eod_portfolio.core.telemetry import setup_telemetry, shutdown_telemetry
from eod_portfolio.db import Database
from eod_portfolio.market_calendar import ny_today
from eod_portfolio.providers import build_fetcher
from eod_portfolio.services.backfill_queue import BackfillQueue
from eod_portfolio.services.backfill_worker import BackfillWorker
from eod_portfolio.services.coverage import plan_required_closes
from eod_portfolio.services.eod_store import EodStore
from eod_portfolio.services.ledger import LedgerRepository


async def _run(user_id: str | None, end: date, limit: int | None) -> None:
    settings = get_settings()
    database = Database(settings.database_url)
    setup_telemetry(settings, database.engine)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    store = EodStore(database, settings)
    queue = BackfillQueue(database, store, settings)
    fallback_prices = {}
    async with httpx.AsyncClient(timeout=settings.provider_timeout_seconds) as client:
        fetcher = build_fetcher(settings, client)
        try:
            if user_id:
                ledger = LedgerRepository(database)
                transactions = await ledger.list_transactions(user_id)
                actions = await ledger.list_corporate_actions()
                plan = plan_required_closes(transactions, end, actions)
                summary = await queue.enqueue_plan(plan)
                fallback_prices = plan.fallback_prices()
                print(f"Planned {len(plan.required)} closes for {user_id}: {dict(summary)}")
                for entry in plan.malformed:
                    print(f"  excluded: {entry}")

            worker = BackfillWorker(queue, fetcher, batch_size=settings.backfill_sweep_batch_size)
            result = await worker.run_sweep(limit, stop_event=stop_event, fallback_prices=fallback_prices)
            print(f"Sweep by {worker.worker_id}: {result.as_dict()}")
            print(f"Queue status: {await queue.counts()}")
        finally:
            await database.dispose()
            shutdown_telemetry()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run a backfill sweep for official closes")
    parser.add_argument("--user", help="Plan and enqueue required closes for this user's ledger first")
    parser.add_argument("--end", type=date.fromisoformat, default=None, help="Last trading day to plan (YYYY-MM-DD)")
    parser.add_argument("--limit", type=int, default=None, help="Maximum requests to process")
    args = parser.parse_args()
    settings = get_settings()
    setup_logging(settings.log_level)
    asyncio.run(_run(args.user, args.end or ny_today(), args.limit))


if __name__ == "__main__":
    main()
