"""Audit stored closes for gaps and outliers, and repair what can be repaired."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Callable, Iterable

import pandas as pd
from sqlalchemy.exc import SQLAlchemyError

from eod_portfolio.config import AppSettings, get_settings
from eod_portfolio.errors import EodPipelineError
from eod_portfolio.market_calendar import ny_today, trading_days
from eod_portfolio.models.eod import BackfillStatus, CloseStatus
from eod_portfolio.providers.base import LOW_TRUST_PROVIDERS, PriceRecord, ProviderTrust
from eod_portfolio.services.backfill_queue import BackfillQueue, EnqueueOutcome
from eod_portfolio.services.eod_store import EodStore, UpsertResult
from eod_portfolio.symbols import canonicalize, close_key

logger = logging.getLogger(__name__)

REPAIR_PROVIDER = "repair"
MISSING = "MISSING"
FILLED = "filled"
PRESENT = "present"
REJECTED = "rejected"


@dataclass
class Gap:
    symbol: str
    trading_date: date

    @property
    def key(self) -> str:
        return close_key(self.trading_date, self.symbol)


@dataclass
class SuspiciousJump:
    symbol: str
    trading_date: date
    previous_date: date
    previous_close: Decimal
    close: Decimal
    change_pct: Decimal
    provider: str


@dataclass
class AuditReport:
    start: date
    end: date
    gaps: list[Gap] = field(default_factory=list)
    suspicious_jumps: list[SuspiciousJump] = field(default_factory=list)
    partial_requests: list[str] = field(default_factory=list)
    # ok closes derived from a fill price, still waiting for a vendor close
    estimated: list[Gap] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def clean(self) -> bool:
        return not (
            self.gaps or self.suspicious_jumps or self.partial_requests or self.estimated or self.errors
        )


@dataclass
class FillOutcome:
    symbol: str
    trading_date: date
    status: str
    source_date: date | None = None
    close: Decimal | None = None
    upsert: UpsertResult | None = None


class RepairEngine:
    """Find missing or implausible closes; fill or re-queue them on request."""

    def __init__(
        self,
        store: EodStore,
        queue: BackfillQueue,
        settings: AppSettings | None = None,
        *,
        today_fn: Callable[[], date] = ny_today,
    ) -> None:
        self._store = store
        self._queue = queue
        self._settings = settings or get_settings()
        self._today = today_fn

    async def audit_range(self, symbols: Iterable[str], start: date, end: date) -> AuditReport:
        report = AuditReport(start=start, end=end)
        days = trading_days(start, min(end, self._today()))

        for raw_symbol in symbols:
            canonical = canonicalize(raw_symbol)
            if canonical.malformed:
                report.errors[canonical.raw] = f"malformed symbol: {canonical.reason}"
                continue
            try:
                await self._audit_symbol(report, canonical.key, days, canonical.expiry)
            except (EodPipelineError, SQLAlchemyError) as exc:
                logger.exception("Audit of %s failed", canonical.key)
                report.errors[canonical.key] = f"{exc.__class__.__name__}: {exc}"

        logger.info(
            "Audit %s..%s: %d gaps, %d estimated, %d suspicious jumps, %d partial requests, %d errors",
            start,
            end,
            len(report.gaps),
            len(report.estimated),
            len(report.suspicious_jumps),
            len(report.partial_requests),
            len(report.errors),
        )
        return report

    async def _audit_symbol(
        self,
        report: AuditReport,
        symbol: str,
        days: list[date],
        expiry: date | None,
    ) -> None:
        records = await self._store.read_range(symbol, report.start, report.end)
        by_day = {record.trading_date: record for record in records}
        ok_records = [record for record in records if record.is_ok]
        ok_days = {record.trading_date for record in ok_records}

        for day in days:
            if expiry is not None and day > expiry:
                break
            if day not in ok_days:
                report.gaps.append(Gap(symbol=symbol, trading_date=day))

        report.estimated.extend(
            Gap(symbol=symbol, trading_date=record.trading_date)
            for record in ok_records
            if record.trust == ProviderTrust.DERIVED_FROM_TX
        )
        report.suspicious_jumps.extend(self._suspicious_jumps(symbol, ok_records))

        done = await self._queue.status_feed(status=BackfillStatus.DONE, symbol=symbol, limit=10_000)
        for request in done:
            if not report.start <= request.trading_date <= report.end:
                continue
            record = by_day.get(request.trading_date)
            if record is not None and (record.is_ok or record.status == CloseStatus.NO_LIQUIDITY):
                continue
            report.partial_requests.append(request.key)
            await self._queue.reopen(request.key, "done without a stored close")

    def _suspicious_jumps(self, symbol: str, ok_records: list[PriceRecord]) -> list[SuspiciousJump]:
        if len(ok_records) < 2:
            return []
        threshold = float(self._settings.jump_threshold_pct)
        ordered = sorted(ok_records, key=lambda record: record.trading_date)
        closes = pd.Series(
            [float(record.close) for record in ordered],
            index=[record.trading_date for record in ordered],
        )
        changes = closes.pct_change().abs() * 100

        jumps: list[SuspiciousJump] = []
        for position in range(1, len(ordered)):
            record = ordered[position]
            change = changes.iloc[position]
            if pd.isna(change) or change <= threshold:
                continue
            if record.provider not in LOW_TRUST_PROVIDERS:
                continue
            previous = ordered[position - 1]
            jumps.append(
                SuspiciousJump(
                    symbol=symbol,
                    trading_date=record.trading_date,
                    previous_date=previous.trading_date,
                    previous_close=previous.close,
                    close=record.close,
                    change_pct=Decimal(str(round(change, 4))),
                    provider=record.provider,
                )
            )
        return jumps

    async def forward_fill(
        self,
        symbol: str,
        gap_date: date,
        *,
        max_lookback_days: int | None = None,
    ) -> FillOutcome:
        """Copy the nearest earlier ``ok`` close into ``gap_date`` as an estimate."""

        bound = max_lookback_days if max_lookback_days is not None else self._settings.forward_fill_max_days
        key = canonicalize(symbol).key
        current = await self._store.read_close(key, gap_date)
        if current is not None and current.is_ok:
            return FillOutcome(key, gap_date, PRESENT, gap_date, current.close)

        reference = None
        if bound > 0:
            reference = await self._store.latest_close(
                key,
                gap_date - timedelta(days=1),
                max_lookback_days=bound - 1,
            )
        if reference is None:
            logger.info("No close within %d days before %s for %s; leaving gap", bound, gap_date, key)
            return FillOutcome(key, gap_date, MISSING)

        record = PriceRecord(
            symbol=key,
            trading_date=gap_date,
            close=reference.close,
            status=CloseStatus.OK,
            provider=REPAIR_PROVIDER,
            is_estimated=True,
            note=f"forward-filled from {reference.trading_date.isoformat()}",
        )
        upsert = await self._store.upsert_close(record)
        status = FILLED if upsert.accepted else REJECTED
        return FillOutcome(key, gap_date, status, reference.trading_date, reference.close, upsert)

    async def repair_gaps(self, report: AuditReport, *, max_lookback_days: int | None = None) -> list[FillOutcome]:
        outcomes: list[FillOutcome] = []
        for gap in report.gaps:
            try:
                outcomes.append(
                    await self.forward_fill(gap.symbol, gap.trading_date, max_lookback_days=max_lookback_days)
                )
            except (EodPipelineError, SQLAlchemyError) as exc:
                logger.exception("Forward fill of %s failed", gap.key)
                report.errors[gap.key] = f"{exc.__class__.__name__}: {exc}"
        return outcomes

    async def requeue_gaps(self, report: AuditReport) -> list[EnqueueOutcome]:
        """Queue vendor fetches for every gap and every estimated close in ``report``."""

        outcomes: list[EnqueueOutcome] = []
        for gap in [*report.gaps, *report.estimated]:
            try:
                outcomes.append(await self._queue.enqueue_if_needed(gap.symbol, gap.trading_date))
            except (EodPipelineError, SQLAlchemyError, ValueError) as exc:
                report.errors[gap.key] = f"{exc.__class__.__name__}: {exc}"
        return outcomes


__all__ = [
    "AuditReport",
    "FillOutcome",
    "Gap",
    "RepairEngine",
    "SuspiciousJump",
    "FILLED",
    "MISSING",
    "PRESENT",
    "REJECTED",
    "REPAIR_PROVIDER",
]
