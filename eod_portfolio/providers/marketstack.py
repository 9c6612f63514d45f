"""Marketstack end-of-day closes."""

from __future__ import annotations

from datetime import date
from typing import Any

from eod_portfolio.errors import ProviderNoData, ProviderTransportError
from eod_portfolio.providers.base import HttpCloseProvider, ProviderQuote
from eod_portfolio.symbols import CanonicalSymbol

BASE_URL = "https://api.marketstack.com/v1/eod"

# Marketstack reports these codes for symbols or dates it simply does not carry.
_NO_DATA_CODES = {"no_valid_symbols_provided", "invalid_symbols", "not_found"}


class MarketstackCloseProvider(HttpCloseProvider):
    name = "marketstack"
    coverage_days = 365

    def _request(self, symbol: CanonicalSymbol, trading_date: date) -> tuple[str, dict[str, Any]]:
        return f"{BASE_URL}/{trading_date.isoformat()}", {"access_key": self._api_key, "symbols": symbol.key}

    def _parse(self, payload: Any, symbol: CanonicalSymbol, trading_date: date) -> ProviderQuote:
        if not isinstance(payload, dict):
            raise ProviderTransportError("marketstack returned an unexpected payload", provider=self.name)

        error = payload.get("error")
        if error:
            code = error.get("code") if isinstance(error, dict) else str(error)
            if code in _NO_DATA_CODES:
                raise ProviderNoData(f"marketstack: {code}", provider=self.name)
            raise ProviderTransportError(f"marketstack error: {code}", provider=self.name)

        day = trading_date.isoformat()
        for bar in payload.get("data") or []:
            if str(bar.get("date", "")).startswith(day) and bar.get("symbol", symbol.key) == symbol.key:
                return self._quote(bar.get("close"), symbol, trading_date)
        raise ProviderNoData(f"marketstack has no bar for {symbol.key} on {day}", provider=self.name)


__all__ = ["MarketstackCloseProvider"]
