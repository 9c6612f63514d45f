"""Mark open lots against official closes."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Iterable

from eod_portfolio.services.eod_store import EodStore, eod_fingerprint
from eod_portfolio.services.portfolio_engine import Lot, PortfolioSnapshot

logger = logging.getLogger(__name__)

VALUED = "valued"
STALE = "stale"
PENDING = "pending"


@dataclass
class LotValuation:
    lot: Lot
    status: str
    price: Decimal | None = None
    price_date: date | None = None
    is_estimated: bool = False
    market_value: Decimal | None = None
    unrealized_pnl: Decimal | None = None


@dataclass
class PortfolioValuation:
    as_of: date
    lots: list[LotValuation] = field(default_factory=list)
    revisions: dict[str, int] = field(default_factory=dict)
    fingerprint: str = ""

    @property
    def unrealized_pnl(self) -> Decimal:
        """Sum over lots that have a price; pending lots contribute nothing."""

        return sum(
            (item.unrealized_pnl for item in self.lots if item.unrealized_pnl is not None),
            Decimal("0"),
        )

    @property
    def pending_symbols(self) -> list[str]:
        return sorted({item.lot.symbol for item in self.lots if item.status == PENDING})


class PortfolioValuator:
    """Value lots at the as-of close; older closes are stale, none is pending."""

    def __init__(self, store: EodStore) -> None:
        self._store = store

    async def mark(self, lots: PortfolioSnapshot | Iterable[Lot], as_of: date) -> PortfolioValuation:
        open_lots = lots.open_lots() if isinstance(lots, PortfolioSnapshot) else list(lots)
        symbols = sorted({lot.symbol for lot in open_lots})
        revisions = await self._store.get_revisions(symbols)
        valuation = PortfolioValuation(as_of=as_of, revisions=revisions, fingerprint=eod_fingerprint(revisions))

        closes = {symbol: await self._store.latest_close(symbol, as_of) for symbol in symbols}
        for lot in open_lots:
            record = closes.get(lot.symbol)
            if record is None:
                valuation.lots.append(LotValuation(lot=lot, status=PENDING))
                continue
            status = VALUED if record.trading_date == as_of else STALE
            market_value = record.close * lot.quantity * lot.multiplier
            valuation.lots.append(
                LotValuation(
                    lot=lot,
                    status=status,
                    price=record.close,
                    price_date=record.trading_date,
                    is_estimated=record.is_estimated,
                    market_value=market_value,
                    unrealized_pnl=(record.close - lot.cost_basis_per_unit) * lot.quantity * lot.multiplier,
                )
            )

        if valuation.pending_symbols:
            logger.info("Valuation as of %s pending for %s", as_of, valuation.pending_symbols)
        return valuation

    async def needs_remark(self, valuation: PortfolioValuation) -> bool:
        revisions = await self._store.get_revisions(valuation.revisions.keys())
        return eod_fingerprint(revisions) != valuation.fingerprint

    async def remark(
        self,
        valuation: PortfolioValuation,
        lots: PortfolioSnapshot | Iterable[Lot],
    ) -> PortfolioValuation:
        """Re-mark only when a revision counter moved since ``valuation`` was taken."""

        if not await self.needs_remark(valuation):
            return valuation
        logger.info("EOD revisions changed since %s valuation; re-marking", valuation.as_of)
        return await self.mark(lots, valuation.as_of)


__all__ = [
    "LotValuation",
    "PortfolioValuation",
    "PortfolioValuator",
    "PENDING",
    "STALE",
    "VALUED",
]
