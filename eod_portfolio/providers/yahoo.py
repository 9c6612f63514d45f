"""Yahoo Finance chart API; the only provider that carries option contracts."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Any

from eod_portfolio.errors import ProviderNoData, ProviderTransportError
from eod_portfolio.market_calendar import NY_TZ
from eod_portfolio.models.eod import CloseStatus
from eod_portfolio.providers.base import HttpCloseProvider, ProviderQuote, to_decimal
from eod_portfolio.symbols import OPTION, STOCK, CanonicalSymbol

BASE_URL = "https://query1.finance.yahoo.com/v8/finance/chart"


def _vendor_symbol(symbol: CanonicalSymbol) -> str:
    if symbol.is_option:
        return symbol.occ
    return symbol.key.replace(".", "-")


class YahooCloseProvider(HttpCloseProvider):
    name = "yahoo"
    coverage_days = 7300
    asset_types = frozenset({STOCK, OPTION})

    def _request(self, symbol: CanonicalSymbol, trading_date: date) -> tuple[str, dict[str, Any]]:
        start = datetime.combine(trading_date, time.min, tzinfo=NY_TZ)
        end = start + timedelta(days=1)
        return f"{BASE_URL}/{_vendor_symbol(symbol)}", {
            "period1": int(start.timestamp()),
            "period2": int(end.timestamp()),
            "interval": "1d",
            "includePrePost": "false",
        }

    def _parse(self, payload: Any, symbol: CanonicalSymbol, trading_date: date) -> ProviderQuote:
        chart = payload.get("chart") if isinstance(payload, dict) else None
        if not isinstance(chart, dict):
            raise ProviderTransportError("yahoo returned an unexpected payload", provider=self.name)
        if chart.get("error"):
            raise ProviderNoData(f"yahoo: {chart['error']}", provider=self.name)

        results: list[dict[str, Any]] = chart.get("result") or []
        if not results:
            raise ProviderNoData(f"yahoo has no chart for {symbol.key}", provider=self.name)
        result = results[0]
        timestamps = result.get("timestamp") or []
        quotes = (result.get("indicators") or {}).get("quote") or [{}]
        closes = quotes[0].get("close") or []

        for index, stamp in enumerate(timestamps):
            bar_day = datetime.fromtimestamp(stamp, tz=timezone.utc).astimezone(NY_TZ).date()
            if bar_day != trading_date:
                continue
            close = to_decimal(closes[index] if index < len(closes) else None)
            if close is None or close <= 0:
                # A bar with no print: the contract did not trade that day.
                return ProviderQuote(close=None, status=CloseStatus.NO_LIQUIDITY, note="bar without close")
            return ProviderQuote(close=close)
        raise ProviderNoData(f"yahoo has no bar for {symbol.key} on {trading_date}", provider=self.name)


__all__ = ["YahooCloseProvider"]
