"""Pydantic documents for raw ledger transactions."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class TransactionDocument(BaseModel):
    """A ledger row as read from storage.

    Only structural checks live here. Side inference and sign normalization
    happen during replay so that they can be reported as anomalies.
    """

    id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    symbol: str = Field(..., min_length=1, examples=["AAPL", "NIO260618P3.5"])
    asset_type: Optional[Literal["stock", "option"]] = None
    side: Optional[Literal["buy", "sell", "short", "cover"]] = None
    quantity: Decimal
    price: Decimal = Field(..., ge=0)
    multiplier: Optional[int] = Field(default=None, gt=0)
    timestamp_utc: Optional[datetime] = None
    trading_day_ny: Optional[date] = None

    class Config:
        from_attributes = True

    @field_validator("side", "asset_type", mode="before")
    @classmethod
    def _lower(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip().lower()
            return value or None
        return value

    @field_validator("quantity")
    @classmethod
    def _non_zero(cls, value: Decimal) -> Decimal:
        if value == 0:
            raise ValueError("quantity must be non-zero")
        return value

    @model_validator(mode="after")
    def _requires_date(self) -> "TransactionDocument":
        if self.trading_day_ny is None and self.timestamp_utc is None:
            raise ValueError("either trading_day_ny or timestamp_utc is required")
        return self


__all__ = ["TransactionDocument"]
