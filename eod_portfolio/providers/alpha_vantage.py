"""Alpha Vantage daily closes."""

from __future__ import annotations

from datetime import date
from typing import Any, Callable

from eod_portfolio.errors import ProviderNoData, ProviderTransportError
from eod_portfolio.market_calendar import ny_today
from eod_portfolio.providers.base import HttpCloseProvider, ProviderQuote
from eod_portfolio.symbols import CanonicalSymbol

BASE_URL = "https://www.alphavantage.co/query"
# The compact series holds the latest 100 trading days.
_COMPACT_WINDOW_DAYS = 100


class AlphaVantageCloseProvider(HttpCloseProvider):
    name = "alpha_vantage"
    coverage_days = 7300

    def __init__(self, api_key: str | None = None, *, today_fn: Callable[[], date] = ny_today, **kwargs: Any) -> None:
        super().__init__(api_key, **kwargs)
        self._today = today_fn

    def _request(self, symbol: CanonicalSymbol, trading_date: date) -> tuple[str, dict[str, Any]]:
        outputsize = "compact" if (self._today() - trading_date).days < _COMPACT_WINDOW_DAYS else "full"
        return BASE_URL, {
            "function": "TIME_SERIES_DAILY",
            "symbol": symbol.key,
            "outputsize": outputsize,
            "apikey": self._api_key,
        }

    def _parse(self, payload: Any, symbol: CanonicalSymbol, trading_date: date) -> ProviderQuote:
        if not isinstance(payload, dict):
            raise ProviderTransportError("alpha_vantage returned an unexpected payload", provider=self.name)
        # Rate-limit and quota notices arrive with HTTP 200.
        if "Note" in payload or "Information" in payload:
            message = payload.get("Note") or payload.get("Information")
            raise ProviderTransportError(f"alpha_vantage throttled: {message}", provider=self.name)
        if "Error Message" in payload:
            raise ProviderNoData(f"alpha_vantage: {payload['Error Message']}", provider=self.name)

        series = payload.get("Time Series (Daily)")
        if not isinstance(series, dict):
            raise ProviderTransportError("alpha_vantage payload missing daily series", provider=self.name)
        bar = series.get(trading_date.isoformat())
        if not bar:
            raise ProviderNoData(f"alpha_vantage has no bar for {symbol.key} on {trading_date}", provider=self.name)
        return self._quote(bar.get("4. close"), symbol, trading_date)


__all__ = ["AlphaVantageCloseProvider"]
