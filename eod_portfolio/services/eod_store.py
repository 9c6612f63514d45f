"""Official close persistence, provider-trust rules, and revision counters."""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Iterable, Mapping

from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from eod_portfolio.config import AppSettings
from eod_portfolio.db import Database
from eod_portfolio.errors import MalformedSymbol, TrustConflict
from eod_portfolio.models.eod import CloseStatus, OfficialClose, StockDetail
from eod_portfolio.providers.base import PriceRecord, ProviderAttempt, ProviderTrust, provider_trust
from eod_portfolio.schemas.eod import OfficialCloseDocument
from eod_portfolio.symbols import CanonicalSymbol, canonicalize, close_key

logger = logging.getLogger(__name__)

MANUAL_PROVIDER = "manual"
DEFAULT_TOLERANCE = Decimal("0.0001")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class UpsertResult:
    key: str
    accepted: bool
    reason: str
    revision: int | None = None
    record_rev: int | None = None
    conflict: TrustConflict | None = None


def eod_fingerprint(revisions: Mapping[str, int]) -> str:
    """Hash a set of symbol revisions into one cache token."""

    parts = sorted(f"{symbol}:{revision}" for symbol, revision in revisions.items())
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def _canonical(symbol: str | CanonicalSymbol) -> CanonicalSymbol:
    canonical = canonicalize(symbol)
    if canonical.malformed:
        raise MalformedSymbol(canonical.raw, canonical.reason or "malformed")
    return canonical


class EodStore:
    """Read and write official closes through the canonical close key."""

    def __init__(self, database: Database, settings: AppSettings | None = None) -> None:
        self._database = database
        self._tolerance = settings.price_tolerance if settings else DEFAULT_TOLERANCE

    @property
    def database(self) -> Database:
        return self._database

    async def upsert_close(self, record: PriceRecord, *, override: bool = False) -> UpsertResult:
        async with self._database.transaction() as session:
            return await self.apply_close(session, record, override=override)

    async def override_close(
        self,
        symbol: str,
        trading_date: date,
        close: Decimal,
        note: str | None = None,
    ) -> UpsertResult:
        """Manual repair path; the only writer allowed to replace equal-or-higher trust."""

        close = Decimal(close)
        if close <= 0:
            raise ValueError("Override close must be positive")
        record = PriceRecord(
            symbol=_canonical(symbol).key,
            trading_date=trading_date,
            close=close,
            status=CloseStatus.OK,
            provider=MANUAL_PROVIDER,
            note=note or "manual override",
        )
        return await self.upsert_close(record, override=True)

    async def apply_close(
        self,
        session: AsyncSession,
        record: PriceRecord,
        *,
        override: bool = False,
    ) -> UpsertResult:
        """Apply the trust rules and write ``record`` inside ``session``'s transaction."""

        canonical = _canonical(record.symbol)
        key = close_key(record.trading_date, canonical)
        existing = await session.get(OfficialClose, key)
        accepted, reason, conflict = self._decide(key, existing, record, override)

        if not accepted:
            if conflict is not None:
                logger.warning("%s", conflict)
            else:
                logger.debug("Close %s unchanged: %s", key, reason)
            return UpsertResult(
                key=key,
                accepted=False,
                reason=reason,
                record_rev=existing.rev if existing is not None else None,
                conflict=conflict,
            )

        now = _utcnow()
        attempts = [attempt.to_dict() for attempt in record.attempts] or None
        if existing is None:
            row = OfficialClose(
                key=key,
                symbol=canonical.key,
                trading_date=record.trading_date,
                close=record.close if record.status == CloseStatus.OK else None,
                status=record.status.value,
                provider=record.provider,
                rev=1,
                is_estimated=record.is_estimated,
                note=record.note,
                attempts=attempts,
                updated_at=now,
            )
            session.add(row)
        else:
            row = existing
            row.close = record.close if record.status == CloseStatus.OK else None
            row.status = record.status.value
            row.provider = record.provider
            row.rev = (row.rev or 0) + 1
            row.is_estimated = record.is_estimated
            row.note = record.note
            row.attempts = attempts
            row.updated_at = now
        await session.flush()

        revision = await self._bump_revision(session, canonical.key, now)
        if canonical.is_option and canonical.underlying:
            await self._bump_revision(session, canonical.underlying, now)

        logger.info(
            "Wrote close %s status=%s provider=%s rev=%s (%s)",
            key,
            row.status,
            row.provider,
            row.rev,
            reason,
        )
        return UpsertResult(key=key, accepted=True, reason=reason, revision=revision, record_rev=row.rev)

    def _decide(
        self,
        key: str,
        existing: OfficialClose | None,
        record: PriceRecord,
        override: bool,
    ) -> tuple[bool, str, TrustConflict | None]:
        if record.status == CloseStatus.OK and not record.is_ok:
            return False, "ok status without a positive close", None
        if existing is None:
            return True, "created", None

        existing_ok = existing.status == CloseStatus.OK.value and existing.close is not None
        if not existing_ok:
            if record.status.value == existing.status and not record.is_ok:
                return False, "status unchanged", None
            return True, "replaced non-ok close", None

        if not record.is_ok:
            return False, "non-ok result never replaces an ok close", None

        incoming_trust = provider_trust(record.provider)
        existing_trust = provider_trust(existing.provider)
        if abs(Decimal(existing.close) - record.close) <= self._tolerance:
            # A vendor matching an estimate still takes ownership of the close.
            if incoming_trust > existing_trust and (existing.is_estimated or existing_trust <= ProviderTrust.REPAIR):
                return True, f"confirmed estimate from {existing.provider}", None
            return False, "price unchanged", None

        if override:
            return True, "manual override", None

        if incoming_trust > existing_trust:
            return True, f"upgraded from {existing.provider}", None

        conflict = TrustConflict(
            key,
            existing_provider=existing.provider,
            incoming_provider=record.provider,
            reason=f"existing close {existing.close} differs from {record.close}",
        )
        return False, "trust conflict", conflict

    async def _bump_revision(self, session: AsyncSession, symbol: str, now: datetime) -> int:
        statement = (
            update(StockDetail)
            .where(StockDetail.symbol == symbol)
            .values(eod_revision=StockDetail.eod_revision + 1, updated_at=now)
        )
        result = await session.execute(statement)
        if result.rowcount == 0:
            # A concurrent first insert fails the whole transaction with IntegrityError;
            # callers retry the write.
            session.add(StockDetail(symbol=symbol, eod_revision=1, updated_at=now))
            await session.flush()
        revision = await session.scalar(select(StockDetail.eod_revision).where(StockDetail.symbol == symbol))
        return int(revision or 0)

    # Reads

    def _to_record(self, row: OfficialClose) -> PriceRecord | None:
        try:
            document = OfficialCloseDocument.model_validate(row)
        except ValidationError as exc:
            logger.warning("Quarantined official close %s: %s", row.key, exc.errors())
            return None
        return PriceRecord(
            symbol=document.symbol,
            trading_date=document.trading_date,
            close=document.close,
            status=document.status,
            provider=document.provider,
            is_estimated=document.is_estimated,
            note=document.note,
            attempts=[
                ProviderAttempt(a.provider, a.outcome, a.error, a.http_status) for a in document.attempts or []
            ],
            rev=document.rev,
        )

    async def read_close(self, symbol: str | CanonicalSymbol, trading_date: date) -> PriceRecord | None:
        key = close_key(trading_date, _canonical(symbol))
        async with self._database.session() as session:
            row = await session.get(OfficialClose, key)
        if row is None:
            return None
        return self._to_record(row)

    async def read_range(self, symbol: str | CanonicalSymbol, start: date, end: date) -> list[PriceRecord]:
        canonical = _canonical(symbol)
        statement = (
            select(OfficialClose)
            .where(
                OfficialClose.symbol == canonical.key,
                OfficialClose.trading_date >= start,
                OfficialClose.trading_date <= end,
            )
            .order_by(OfficialClose.trading_date)
        )
        async with self._database.session() as session:
            rows = (await session.scalars(statement)).all()
        records = [self._to_record(row) for row in rows]
        return [record for record in records if record is not None]

    async def latest_close(
        self,
        symbol: str | CanonicalSymbol,
        on_or_before: date,
        *,
        max_lookback_days: int | None = None,
    ) -> PriceRecord | None:
        """Most recent ``ok`` close dated on or before ``on_or_before``."""

        canonical = _canonical(symbol)
        statement = (
            select(OfficialClose)
            .where(
                OfficialClose.symbol == canonical.key,
                OfficialClose.trading_date <= on_or_before,
                OfficialClose.status == CloseStatus.OK.value,
            )
            .order_by(OfficialClose.trading_date.desc())
        )
        if max_lookback_days is not None:
            statement = statement.where(
                OfficialClose.trading_date >= on_or_before - timedelta(days=max_lookback_days)
            )
        async with self._database.session() as session:
            rows = (await session.scalars(statement)).all()
        for row in rows:
            record = self._to_record(row)
            if record is not None and record.is_ok:
                return record
        return None

    async def get_revision(self, symbol: str | CanonicalSymbol) -> int:
        revisions = await self.get_revisions([symbol])
        return next(iter(revisions.values()), 0)

    async def get_revisions(self, symbols: Iterable[str | CanonicalSymbol]) -> dict[str, int]:
        keys = sorted({_canonical(symbol).key for symbol in symbols})
        if not keys:
            return {}
        async with self._database.session() as session:
            rows = (
                await session.execute(
                    select(StockDetail.symbol, StockDetail.eod_revision).where(StockDetail.symbol.in_(keys))
                )
            ).all()
        found = {symbol: int(revision) for symbol, revision in rows}
        return {key: found.get(key, 0) for key in keys}


class RevisionTracker:
    """Remember the last seen revision per symbol and report changes."""

    def __init__(self, store: EodStore) -> None:
        self._store = store
        self._seen: dict[str, int] = {}

    @property
    def seen(self) -> dict[str, int]:
        return dict(self._seen)

    async def poll(self, symbols: Iterable[str | CanonicalSymbol]) -> list[str]:
        revisions = await self._store.get_revisions(symbols)
        changed = [symbol for symbol, revision in revisions.items() if self._seen.get(symbol, 0) != revision]
        self._seen.update(revisions)
        return changed

    def fingerprint(self) -> str:
        return eod_fingerprint(self._seen)


__all__ = [
    "EodStore",
    "RevisionTracker",
    "UpsertResult",
    "MANUAL_PROVIDER",
    "eod_fingerprint",
]
