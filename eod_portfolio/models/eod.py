"""Official close, revision counter, and backfill request models."""

from __future__ import annotations

import enum
from datetime import date, datetime

from sqlalchemy import JSON, Boolean, Date, DateTime, Enum, Index, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from eod_portfolio.db.base import Base


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class CloseStatus(str, enum.Enum):
    OK = "ok"
    NO_LIQUIDITY = "no_liquidity"
    MISSING_VENDOR = "missing_vendor"
    ERROR = "error"


class BackfillStatus(str, enum.Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    ERROR = "error"
    SKIPPED = "skipped"


class OfficialClose(Base):
    __tablename__ = "official_close"
    __table_args__ = (
        Index("ix_official_close_symbol_date", "symbol", "trading_date"),
    )

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    symbol: Mapped[str] = mapped_column(String(40))
    trading_date: Mapped[date] = mapped_column(Date)
    close: Mapped[float | None] = mapped_column(Numeric(18, 6), nullable=True)
    # Plain string: rows are validated into CloseStatus when read.
    status: Mapped[str] = mapped_column(String(16))
    provider: Mapped[str] = mapped_column(String(32))
    rev: Mapped[int] = mapped_column(Integer, default=1)
    is_estimated: Mapped[bool] = mapped_column(Boolean, default=False)
    note: Mapped[str | None] = mapped_column(String(255), nullable=True)
    attempts: Mapped[list | None] = mapped_column(JSON, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class StockDetail(Base):
    __tablename__ = "stock_detail"

    symbol: Mapped[str] = mapped_column(String(40), primary_key=True)
    eod_revision: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class BackfillRequest(Base):
    __tablename__ = "backfill_request"
    __table_args__ = (
        Index("ix_backfill_request_status", "status", "trading_date"),
        Index("ix_backfill_request_symbol", "symbol"),
    )

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    symbol: Mapped[str] = mapped_column(String(40))
    trading_date: Mapped[date] = mapped_column(Date)
    asset_type: Mapped[str] = mapped_column(String(8), default="stock")
    status: Mapped[BackfillStatus] = mapped_column(
        Enum(BackfillStatus, name="backfill_status", native_enum=False, values_callable=_enum_values)
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(String(512), nullable=True)
    claimed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


__all__ = [
    "CloseStatus",
    "BackfillStatus",
    "OfficialClose",
    "StockDetail",
    "BackfillRequest",
]
