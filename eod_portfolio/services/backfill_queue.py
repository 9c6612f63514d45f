"""Durable queue of (trading day, symbol) pairs that still need a close."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from eod_portfolio.config import AppSettings, get_settings
from eod_portfolio.db import Database
from eod_portfolio.errors import CoverageWindowExcluded, MalformedSymbol
from eod_portfolio.market_calendar import is_trading_day, ny_today
from eod_portfolio.models.eod import BackfillRequest, BackfillStatus, CloseStatus, OfficialClose
from eod_portfolio.providers.base import ProviderTrust, provider_trust
from eod_portfolio.providers.fetch import FetchResult
from eod_portfolio.services.eod_store import EodStore, UpsertResult
from eod_portfolio.symbols import CanonicalSymbol, canonicalize, close_key

if TYPE_CHECKING:
    from eod_portfolio.services.coverage import CoveragePlan

logger = logging.getLogger(__name__)

_DONE_STATUSES = {CloseStatus.OK, CloseStatus.NO_LIQUIDITY}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RequestStatus:
    key: str
    symbol: str
    trading_date: date
    asset_type: str
    status: BackfillStatus
    attempts: int
    last_error: str | None
    claimed_by: str | None
    updated_at: datetime

    @classmethod
    def from_row(cls, row: BackfillRequest) -> "RequestStatus":
        return cls(
            key=row.key,
            symbol=row.symbol,
            trading_date=row.trading_date,
            asset_type=row.asset_type,
            status=BackfillStatus(row.status),
            attempts=row.attempts,
            last_error=row.last_error,
            claimed_by=row.claimed_by,
            updated_at=row.updated_at,
        )


@dataclass
class EnqueueOutcome:
    key: str
    status: BackfillStatus | None
    created: bool
    reason: str


@dataclass
class CompletionOutcome:
    key: str
    status: BackfillStatus
    upsert: UpsertResult | None = None
    stale: bool = False


class BackfillQueue:
    """Idempotent request rows plus an atomic claim for concurrent workers."""

    def __init__(
        self,
        database: Database,
        store: EodStore,
        settings: AppSettings | None = None,
        *,
        today_fn: Callable[[], date] = ny_today,
    ) -> None:
        self._database = database
        self._store = store
        self._settings = settings or get_settings()
        self._today = today_fn

    # Enqueue

    def coverage_exclusion(
        self,
        symbol: CanonicalSymbol,
        trading_date: date,
        first_trade_date: date | None = None,
    ) -> str | None:
        """Why a pair must never be fetched, or ``None`` when it is in range."""

        if not is_trading_day(trading_date):
            return "not a trading day"
        if symbol.is_option:
            if symbol.expiry is not None and trading_date > symbol.expiry:
                return f"after contract expiry {symbol.expiry}"
            retention = timedelta(days=self._settings.option_retention_days)
            if self._today() - trading_date > retention:
                return f"older than {self._settings.option_retention_days} day option retention"
        elif first_trade_date is not None and trading_date < first_trade_date:
            return f"before first trade {first_trade_date}"
        return None

    def ensure_in_window(self, symbol: str | CanonicalSymbol, trading_date: date) -> None:
        """Raise ``CoverageWindowExcluded`` for a queued pair that aged out of its window."""

        canonical = canonicalize(symbol)
        exclusion = self.coverage_exclusion(canonical, trading_date)
        if exclusion:
            raise CoverageWindowExcluded(close_key(trading_date, canonical), exclusion)

    async def enqueue_if_needed(
        self,
        symbol: str | CanonicalSymbol,
        trading_date: date,
        *,
        first_trade_date: date | None = None,
    ) -> EnqueueOutcome:
        canonical = canonicalize(symbol)
        if canonical.malformed:
            raise MalformedSymbol(canonical.raw, canonical.reason or "malformed")
        if trading_date > self._today():
            raise ValueError(f"Cannot enqueue {canonical.key} for future date {trading_date}")

        key = close_key(trading_date, canonical)
        try:
            async with self._database.transaction() as session:
                close = await session.get(OfficialClose, key)
                estimated = False
                if close is not None and close.status == CloseStatus.OK.value:
                    if provider_trust(close.provider) > ProviderTrust.DERIVED_FROM_TX:
                        return EnqueueOutcome(key, None, False, "close already ok")
                    # Derived from a fill price; a vendor close may still replace it.
                    estimated = True

                existing = await session.get(BackfillRequest, key)
                if existing is not None:
                    if existing.status == BackfillStatus.ERROR or (
                        estimated and existing.status == BackfillStatus.DONE
                    ):
                        reason = (
                            "requeued after error"
                            if existing.status == BackfillStatus.ERROR
                            else "requeued estimated close"
                        )
                        existing.status = BackfillStatus.QUEUED
                        existing.claimed_by = None
                        existing.updated_at = _utcnow()
                        logger.info("Re-queued backfill request %s: %s", key, reason)
                        return EnqueueOutcome(key, BackfillStatus.QUEUED, False, reason)
                    return EnqueueOutcome(key, BackfillStatus(existing.status), False, "already requested")

                exclusion = self.coverage_exclusion(canonical, trading_date, first_trade_date)
                status = BackfillStatus.SKIPPED if exclusion else BackfillStatus.QUEUED
                now = _utcnow()
                session.add(
                    BackfillRequest(
                        key=key,
                        symbol=canonical.key,
                        trading_date=trading_date,
                        asset_type=canonical.asset_type,
                        status=status,
                        attempts=0,
                        last_error=exclusion,
                        created_at=now,
                        updated_at=now,
                    )
                )
                await session.flush()
        except IntegrityError:
            # Lost the insert race; the other writer's row stands.
            async with self._database.session() as session:
                existing = await session.get(BackfillRequest, key)
            status = BackfillStatus(existing.status) if existing is not None else None
            return EnqueueOutcome(key, status, False, "already requested")

        if exclusion:
            logger.info("Backfill request %s skipped: %s", key, exclusion)
        return EnqueueOutcome(key, status, True, exclusion or "queued")

    async def enqueue_plan(self, plan: "CoveragePlan") -> Counter[str]:
        """Enqueue every pair of a coverage plan; returns counts by reason."""

        summary: Counter[str] = Counter()
        for required in plan.required:
            if required.trading_date > self._today():
                continue
            outcome = await self.enqueue_if_needed(
                required.symbol,
                required.trading_date,
                first_trade_date=plan.first_trade.get(required.symbol),
            )
            if outcome.created:
                summary[outcome.status.value if outcome.status else "created"] += 1
            else:
                summary[outcome.reason] += 1
        logger.info("Enqueued coverage plan: %s", dict(summary))
        return summary

    # Claim and completion

    async def claim(self, key: str, worker_id: str) -> bool:
        """Atomically move a queued request to ``in_progress``; ``False`` if someone else won."""

        statement = (
            update(BackfillRequest)
            .where(BackfillRequest.key == key, BackfillRequest.status == BackfillStatus.QUEUED)
            .values(
                status=BackfillStatus.IN_PROGRESS,
                attempts=BackfillRequest.attempts + 1,
                claimed_by=worker_id,
                updated_at=_utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        async with self._database.transaction() as session:
            result = await session.execute(statement)
            claimed = result.rowcount == 1
        if not claimed:
            logger.debug("Worker %s lost claim on %s", worker_id, key)
        return claimed

    async def complete(self, key: str, result: FetchResult, *, worker_id: str | None = None) -> CompletionOutcome:
        """Record a fetch result; close write, revision bump and status share one transaction.

        Only an ``in_progress`` request (held by ``worker_id`` when given) is
        settled. A completion that arrives after the claim was released, failed
        or taken over writes nothing and comes back ``stale``.
        """

        async with self._database.transaction() as session:
            request = await session.get(BackfillRequest, key, with_for_update=True)
            if request is None:
                raise LookupError(f"No backfill request {key}")
            if request.status != BackfillStatus.IN_PROGRESS or (
                worker_id is not None and request.claimed_by != worker_id
            ):
                logger.warning(
                    "Dropping stale completion of %s from %s (status %s, claimed by %s)",
                    key,
                    worker_id or "unknown worker",
                    request.status,
                    request.claimed_by,
                )
                return CompletionOutcome(key=key, status=BackfillStatus(request.status), stale=True)

            upsert: UpsertResult | None = None
            record = result.record
            if record is None:
                status = BackfillStatus.ERROR
                last_error = result.error
            else:
                upsert = await self._store.apply_close(session, record)
                close = await session.get(OfficialClose, key)
                if record.status in _DONE_STATUSES or (
                    close is not None and close.status == CloseStatus.OK.value
                ):
                    status = BackfillStatus.DONE
                    last_error = None
                else:
                    status = BackfillStatus.ERROR
                    last_error = record.note or record.status.value

            request.status = status
            request.last_error = last_error[:512] if last_error else None
            request.claimed_by = None
            request.updated_at = _utcnow()

        logger.info("Backfill request %s completed as %s", key, status.value)
        return CompletionOutcome(key=key, status=status, upsert=upsert)

    async def _transition(
        self,
        key: str,
        from_statuses: tuple[BackfillStatus, ...],
        to_status: BackfillStatus,
        reason: Optional[str] = None,
    ) -> bool:
        values: dict[str, object] = {"status": to_status, "claimed_by": None, "updated_at": _utcnow()}
        if reason is not None:
            values["last_error"] = reason[:512]
        statement = (
            update(BackfillRequest)
            .where(BackfillRequest.key == key, BackfillRequest.status.in_(from_statuses))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with self._database.transaction() as session:
            result = await session.execute(statement)
            return result.rowcount == 1

    async def release(self, key: str) -> bool:
        """Return an in-flight claim to the queue (cancelled worker)."""

        return await self._transition(key, (BackfillStatus.IN_PROGRESS,), BackfillStatus.QUEUED)

    async def fail(self, key: str, error: str) -> bool:
        return await self._transition(key, (BackfillStatus.IN_PROGRESS,), BackfillStatus.ERROR, error)

    async def reopen(self, key: str, reason: str) -> bool:
        """Send a ``done`` request back to the queue when its close turned out incomplete."""

        reopened = await self._transition(key, (BackfillStatus.DONE,), BackfillStatus.QUEUED, reason)
        if reopened:
            logger.info("Re-opened backfill request %s: %s", key, reason)
        return reopened

    async def skip(self, key: str, reason: str) -> bool:
        return await self._transition(
            key,
            (BackfillStatus.QUEUED, BackfillStatus.IN_PROGRESS, BackfillStatus.ERROR),
            BackfillStatus.SKIPPED,
            reason,
        )

    # Visibility

    async def get(self, key: str) -> RequestStatus | None:
        async with self._database.session() as session:
            row = await session.get(BackfillRequest, key)
        return RequestStatus.from_row(row) if row is not None else None

    async def status_feed(
        self,
        status: BackfillStatus | None = None,
        symbol: str | None = None,
        limit: int = 100,
    ) -> list[RequestStatus]:
        statement = select(BackfillRequest).order_by(BackfillRequest.updated_at.desc(), BackfillRequest.key)
        if status is not None:
            statement = statement.where(BackfillRequest.status == status)
        if symbol is not None:
            statement = statement.where(BackfillRequest.symbol == canonicalize(symbol).key)
        async with self._database.session() as session:
            rows = (await session.scalars(statement.limit(limit))).all()
        return [RequestStatus.from_row(row) for row in rows]

    async def pending(self, limit: int | None = None) -> list[RequestStatus]:
        statement = (
            select(BackfillRequest)
            .where(BackfillRequest.status == BackfillStatus.QUEUED)
            .order_by(BackfillRequest.trading_date, BackfillRequest.key)
        )
        if limit is not None:
            statement = statement.limit(limit)
        async with self._database.session() as session:
            rows = (await session.scalars(statement)).all()
        return [RequestStatus.from_row(row) for row in rows]

    async def counts(self) -> dict[str, int]:
        statement = select(BackfillRequest.status, func.count()).group_by(BackfillRequest.status)
        async with self._database.session() as session:
            rows = (await session.execute(statement)).all()
        counts = {status.value: 0 for status in BackfillStatus}
        for status, total in rows:
            counts[BackfillStatus(status).value] = int(total)
        return counts


__all__ = [
    "BackfillQueue",
    "CompletionOutcome",
    "EnqueueOutcome",
    "RequestStatus",
]
