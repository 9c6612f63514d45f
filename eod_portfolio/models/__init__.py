"""Database model exports."""

from .eod import BackfillRequest, BackfillStatus, CloseStatus, OfficialClose, StockDetail
from .ledger import (
    ASSET_TYPES,
    TRANSACTION_SIDES,
    CorporateAction,
    LedgerTransaction,
    PortfolioSnapshotRow,
)

__all__ = [
    "OfficialClose",
    "StockDetail",
    "BackfillRequest",
    "CloseStatus",
    "BackfillStatus",
    "LedgerTransaction",
    "CorporateAction",
    "PortfolioSnapshotRow",
    "ASSET_TYPES",
    "TRANSACTION_SIDES",
]
