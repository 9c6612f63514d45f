"""Transaction ledger, corporate action, and portfolio snapshot models."""

from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import JSON, Date, DateTime, Index, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from eod_portfolio.db.base import Base

ASSET_TYPES = ("stock", "option")
TRANSACTION_SIDES = ("buy", "sell", "short", "cover")


class LedgerTransaction(Base):
    """Raw ledger row; nullable columns are validated when the ledger is read."""

    __tablename__ = "ledger_transaction"
    __table_args__ = (
        Index("ix_ledger_transaction_user_ts", "user_id", "timestamp_utc"),
        Index("ix_ledger_transaction_symbol", "symbol"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64))
    symbol: Mapped[str | None] = mapped_column(String(40), nullable=True)
    asset_type: Mapped[str | None] = mapped_column(String(8), nullable=True)
    side: Mapped[str | None] = mapped_column(String(8), nullable=True)
    quantity: Mapped[float | None] = mapped_column(Numeric(18, 6), nullable=True)
    price: Mapped[float | None] = mapped_column(Numeric(18, 6), nullable=True)
    multiplier: Mapped[int | None] = mapped_column(Integer, nullable=True)
    timestamp_utc: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    trading_day_ny: Mapped[date | None] = mapped_column(Date, nullable=True)


class CorporateAction(Base):
    __tablename__ = "corporate_action"
    __table_args__ = (Index("ix_corporate_action_symbol", "symbol", "effective_date"),)

    key: Mapped[str] = mapped_column(String(80), primary_key=True)
    symbol: Mapped[str] = mapped_column(String(40))
    effective_date: Mapped[date] = mapped_column(Date)
    ratio: Mapped[float] = mapped_column(Numeric(18, 8))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class PortfolioSnapshotRow(Base):
    __tablename__ = "portfolio_snapshot"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    payload: Mapped[dict] = mapped_column(JSON)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


__all__ = [
    "ASSET_TYPES",
    "TRANSACTION_SIDES",
    "LedgerTransaction",
    "CorporateAction",
    "PortfolioSnapshotRow",
]
