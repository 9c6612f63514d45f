"""Sweep queued backfill requests through the fetch layer."""

from __future__ import annotations

import asyncio
import logging
import socket
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Mapping, Optional

from opentelemetry import trace

from eod_portfolio.errors import CoverageWindowExcluded
from eod_portfolio.models.eod import BackfillStatus
from eod_portfolio.providers.fetch import CloseFetcher
from eod_portfolio.services.backfill_queue import BackfillQueue

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"


@dataclass
class SweepSummary:
    examined: int = 0
    claimed: int = 0
    lost_claims: int = 0
    done: int = 0
    errors: int = 0
    skipped: int = 0
    stopped: bool = False

    def as_dict(self) -> dict[str, object]:
        return {
            "examined": self.examined,
            "claimed": self.claimed,
            "lost_claims": self.lost_claims,
            "done": self.done,
            "errors": self.errors,
            "skipped": self.skipped,
            "stopped": self.stopped,
        }


class BackfillWorker:
    """Claim, fetch and complete requests one (date, symbol) unit at a time."""

    def __init__(
        self,
        queue: BackfillQueue,
        fetcher: CloseFetcher,
        *,
        worker_id: Optional[str] = None,
        batch_size: int = 50,
    ) -> None:
        self._queue = queue
        self._fetcher = fetcher
        self.worker_id = worker_id or default_worker_id()
        self._batch_size = batch_size

    async def run_sweep(
        self,
        limit: int | None = None,
        *,
        stop_event: asyncio.Event | None = None,
        fallback_prices: Mapping[str, Decimal] | None = None,
    ) -> SweepSummary:
        """Process queued requests until the queue drains, ``limit`` is hit or ``stop_event`` is set."""

        summary = SweepSummary()
        fallback_prices = fallback_prices or {}
        remaining = limit

        while remaining is None or remaining > 0:
            batch_size = self._batch_size if remaining is None else min(self._batch_size, remaining)
            batch = await self._queue.pending(batch_size)
            if not batch:
                break
            progressed = False
            for request in batch:
                if stop_event is not None and stop_event.is_set():
                    summary.stopped = True
                    logger.info("Sweep stopped by request after %d units", summary.claimed)
                    return summary
                summary.examined += 1
                if not await self._queue.claim(request.key, self.worker_id):
                    summary.lost_claims += 1
                    continue
                progressed = True
                summary.claimed += 1
                if remaining is not None:
                    remaining -= 1
                status = await self._process(request.key, request.symbol, request.trading_date, fallback_prices)
                if status is None:
                    summary.lost_claims += 1
                elif status == BackfillStatus.DONE:
                    summary.done += 1
                elif status == BackfillStatus.SKIPPED:
                    summary.skipped += 1
                else:
                    summary.errors += 1
                if remaining is not None and remaining <= 0:
                    break
            if not progressed:
                break

        logger.info("Sweep finished: %s", summary.as_dict())
        return summary

    async def _process(self, key, symbol, trading_date, fallback_prices) -> Optional[BackfillStatus]:
        try:
            self._queue.ensure_in_window(symbol, trading_date)
        except CoverageWindowExcluded as exc:
            logger.info("Skipping %s: %s", key, exc.reason)
            await self._queue.skip(key, exc.reason)
            return BackfillStatus.SKIPPED

        try:
            with tracer.start_as_current_span("eod.backfill_unit") as span:
                span.set_attribute("eod.request_key", key)
                result = await self._fetcher.fetch_close(
                    symbol,
                    trading_date,
                    fallback_price=fallback_prices.get(key),
                )
                outcome = await self._queue.complete(key, result, worker_id=self.worker_id)
                if outcome.stale:
                    return None
                span.set_attribute("eod.request_status", outcome.status.value)
                return outcome.status
        except asyncio.CancelledError:
            logger.warning("Sweep cancelled during %s; releasing claim", key)
            await asyncio.shield(self._queue.release(key))
            raise
        except Exception as exc:
            # Any failure after the claim still settles the request; none stays in_progress.
            logger.exception("Backfill unit %s failed", key)
            await self._queue.fail(key, f"{exc.__class__.__name__}: {exc}")
            return BackfillStatus.ERROR


__all__ = ["BackfillWorker", "SweepSummary", "default_worker_id"]
