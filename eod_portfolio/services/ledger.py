"""Ledger, corporate-action and portfolio snapshot persistence."""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional

from sqlalchemy import select

from eod_portfolio.db import Database
from eod_portfolio.models.ledger import CorporateAction, LedgerTransaction, PortfolioSnapshotRow
from eod_portfolio.services.portfolio_engine import PortfolioSnapshot, SplitAction
from eod_portfolio.symbols import canonicalize

logger = logging.getLogger(__name__)

_LEDGER_FIELDS = (
    "id",
    "user_id",
    "symbol",
    "asset_type",
    "side",
    "quantity",
    "price",
    "multiplier",
    "timestamp_utc",
    "trading_day_ny",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LedgerRepository:
    """Read access to the append-only ledger plus the split table."""

    def __init__(self, database: Database) -> None:
        self._database = database

    async def add_transactions(self, rows: Iterable[Mapping[str, Any]]) -> int:
        """Append raw ledger rows as given; validation happens on read."""

        count = 0
        async with self._database.transaction() as session:
            for row in rows:
                session.add(LedgerTransaction(**{name: row.get(name) for name in _LEDGER_FIELDS}))
                count += 1
        return count

    async def list_transactions(self, user_id: str) -> list[LedgerTransaction]:
        statement = (
            select(LedgerTransaction)
            .where(LedgerTransaction.user_id == user_id)
            .order_by(LedgerTransaction.trading_day_ny, LedgerTransaction.timestamp_utc, LedgerTransaction.id)
        )
        async with self._database.session() as session:
            return list((await session.scalars(statement)).all())

    async def list_symbols(self, user_id: Optional[str] = None) -> list[str]:
        statement = select(LedgerTransaction.symbol).distinct()
        if user_id is not None:
            statement = statement.where(LedgerTransaction.user_id == user_id)
        async with self._database.session() as session:
            raw_symbols = (await session.scalars(statement)).all()
        keys = {canonicalize(raw).key for raw in raw_symbols if raw and not canonicalize(raw).malformed}
        return sorted(keys)

    async def normalize_symbols(self, user_id: Optional[str] = None) -> int:
        """Rewrite stored symbols to their canonical key; the only ledger mutation allowed."""

        statement = select(LedgerTransaction)
        if user_id is not None:
            statement = statement.where(LedgerTransaction.user_id == user_id)
        changed = 0
        async with self._database.transaction() as session:
            for row in (await session.scalars(statement)).all():
                canonical = canonicalize(row.symbol)
                if canonical.malformed or canonical.key == row.symbol:
                    continue
                logger.info("Normalizing ledger symbol %r -> %s on %s", row.symbol, canonical.key, row.id)
                row.symbol = canonical.key
                changed += 1
        return changed

    async def add_corporate_action(self, symbol: str, effective_date: date, ratio: Decimal) -> tuple[SplitAction, bool]:
        """Record a split once; a second call with the same key is a no-op."""

        action = SplitAction(symbol=symbol, effective_date=effective_date, ratio=Decimal(ratio))
        async with self._database.transaction() as session:
            existing = await session.get(CorporateAction, action.key)
            if existing is not None:
                return action, False
            session.add(
                CorporateAction(
                    key=action.key,
                    symbol=action.symbol,
                    effective_date=action.effective_date,
                    ratio=action.ratio,
                    created_at=_utcnow(),
                )
            )
        logger.info("Recorded split %s ratio %s", action.key, action.ratio)
        return action, True

    async def list_corporate_actions(self, symbols: Optional[Iterable[str]] = None) -> list[SplitAction]:
        statement = select(CorporateAction).order_by(CorporateAction.effective_date, CorporateAction.key)
        if symbols is not None:
            keys = [canonicalize(symbol).key for symbol in symbols]
            statement = statement.where(CorporateAction.symbol.in_(keys))
        async with self._database.session() as session:
            rows = (await session.scalars(statement)).all()
        return [
            SplitAction(symbol=row.symbol, effective_date=row.effective_date, ratio=Decimal(row.ratio))
            for row in rows
        ]


class PortfolioSnapshotRepository:
    def __init__(self, database: Database) -> None:
        self._database = database

    async def load(self, user_id: str) -> PortfolioSnapshot | None:
        async with self._database.session() as session:
            row = await session.get(PortfolioSnapshotRow, user_id)
        if row is None:
            return None
        return PortfolioSnapshot.from_dict(row.payload)

    async def save(self, user_id: str, snapshot: PortfolioSnapshot) -> None:
        payload = snapshot.to_dict()
        async with self._database.transaction() as session:
            row = await session.get(PortfolioSnapshotRow, user_id)
            if row is None:
                session.add(PortfolioSnapshotRow(user_id=user_id, payload=payload, updated_at=_utcnow()))
            else:
                row.payload = payload
                row.updated_at = _utcnow()


__all__ = ["LedgerRepository", "PortfolioSnapshotRepository"]
