"""Pydantic documents for persisted official closes."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from eod_portfolio.models.eod import CloseStatus


class ProviderAttemptDocument(BaseModel):
    provider: str
    outcome: str
    error: Optional[str] = None
    http_status: Optional[int] = None


class OfficialCloseDocument(BaseModel):
    """Shape an ``official_close`` row must have before it is trusted."""

    symbol: str = Field(..., min_length=1, examples=["NIO260618P00003500"])
    trading_date: date
    close: Optional[Decimal] = None
    status: CloseStatus
    provider: str = Field(..., min_length=1)
    rev: int = Field(default=1, ge=1)
    is_estimated: bool = False
    note: Optional[str] = None
    attempts: Optional[list[ProviderAttemptDocument]] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @model_validator(mode="after")
    def _ok_requires_positive_close(self) -> "OfficialCloseDocument":
        if self.status == CloseStatus.OK and (self.close is None or self.close <= 0):
            raise ValueError("status ok requires a positive close")
        return self


__all__ = ["OfficialCloseDocument", "ProviderAttemptDocument"]
