"""Financial Modeling Prep end-of-day closes (primary vendor)."""

from __future__ import annotations

from datetime import date
from typing import Any

from eod_portfolio.errors import ProviderNoData, ProviderTransportError
from eod_portfolio.providers.base import HttpCloseProvider, ProviderQuote
from eod_portfolio.symbols import CanonicalSymbol

BASE_URL = "https://financialmodelingprep.com/api/v3/historical-price-full"


class FmpCloseProvider(HttpCloseProvider):
    name = "fmp"
    coverage_days = 2000

    def _request(self, symbol: CanonicalSymbol, trading_date: date) -> tuple[str, dict[str, Any]]:
        day = trading_date.isoformat()
        return f"{BASE_URL}/{symbol.key.replace('.', '-')}", {"from": day, "to": day, "apikey": self._api_key}

    def _parse(self, payload: Any, symbol: CanonicalSymbol, trading_date: date) -> ProviderQuote:
        if isinstance(payload, dict) and "Error Message" in payload:
            raise ProviderTransportError(f"fmp error: {payload['Error Message']}", provider=self.name)
        if isinstance(payload, list) and not payload:
            raise ProviderNoData(f"fmp has no history for {symbol.key}", provider=self.name)
        if not isinstance(payload, dict):
            raise ProviderTransportError("fmp returned an unexpected payload", provider=self.name)

        day = trading_date.isoformat()
        historical: list[dict[str, Any]] = payload.get("historical") or []
        for bar in historical:
            if bar.get("date") == day:
                return self._quote(bar.get("close"), symbol, trading_date)
        raise ProviderNoData(f"fmp has no bar for {symbol.key} on {day}", provider=self.name)


__all__ = ["FmpCloseProvider"]
