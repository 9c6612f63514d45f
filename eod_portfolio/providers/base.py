"""Shared provider types and the httpx-backed provider base class."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, ClassVar, Dict, Optional

import httpx

from eod_portfolio.errors import ProviderNoData, ProviderTransportError
from eod_portfolio.models.eod import CloseStatus
from eod_portfolio.symbols import STOCK, CanonicalSymbol

logger = logging.getLogger(__name__)

# What walking a payload of the wrong shape raises (a list where a dict was
# expected, a null bar, an out-of-range timestamp).
_MALFORMED_PAYLOAD_ERRORS = (
    AttributeError,
    TypeError,
    KeyError,
    IndexError,
    ValueError,
    ArithmeticError,
    OSError,
)


class ProviderTrust(enum.IntEnum):
    """Fixed precedence used when two writers disagree about a close."""

    DERIVED_FROM_TX = 0
    REPAIR = 1
    SECONDARY = 2
    PRIMARY = 3


PROVIDER_TRUST: dict[str, ProviderTrust] = {
    "fmp": ProviderTrust.PRIMARY,
    "marketstack": ProviderTrust.SECONDARY,
    "alpha_vantage": ProviderTrust.SECONDARY,
    "yahoo": ProviderTrust.SECONDARY,
    "repair": ProviderTrust.REPAIR,
    "manual": ProviderTrust.REPAIR,
    "via_tx": ProviderTrust.DERIVED_FROM_TX,
}

LOW_TRUST_PROVIDERS = frozenset(
    name for name, trust in PROVIDER_TRUST.items() if trust <= ProviderTrust.REPAIR
)


def provider_trust(name: str | None) -> ProviderTrust:
    """Trust level of a provider name; unknown writers rank lowest."""

    return PROVIDER_TRUST.get((name or "").lower(), ProviderTrust.DERIVED_FROM_TX)


@dataclass
class ProviderAttempt:
    provider: str
    outcome: str
    error: str | None = None
    http_status: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "outcome": self.outcome,
            "error": self.error,
            "http_status": self.http_status,
        }


@dataclass
class ProviderQuote:
    """What a single provider answered for one symbol/date."""

    close: Decimal | None
    status: CloseStatus = CloseStatus.OK
    note: str | None = None


@dataclass
class PriceRecord:
    """A close as fetched or as read back from the store."""

    symbol: str
    trading_date: date
    close: Decimal | None
    status: CloseStatus
    provider: str
    is_estimated: bool = False
    note: str | None = None
    attempts: list[ProviderAttempt] = field(default_factory=list)
    rev: int = 0

    @property
    def is_ok(self) -> bool:
        return self.status == CloseStatus.OK and self.close is not None and self.close > 0

    @property
    def trust(self) -> ProviderTrust:
        return provider_trust(self.provider)


def to_decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return number if number.is_finite() else None


class CloseProvider:
    """Interface every close-price provider implements."""

    name: ClassVar[str] = "provider"
    coverage_days: ClassVar[int] = 365
    asset_types: ClassVar[frozenset[str]] = frozenset({STOCK})

    def supports(self, symbol: CanonicalSymbol, trading_date: date, today: date) -> bool:
        if symbol.asset_type not in self.asset_types:
            return False
        return trading_date >= today - timedelta(days=self.coverage_days)

    async def fetch_close(self, symbol: CanonicalSymbol, trading_date: date) -> ProviderQuote:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class HttpCloseProvider(CloseProvider):
    """Provider backed by an ``httpx.AsyncClient``.

    Subclasses describe the request in ``_request`` and read the payload in
    ``_parse``. Timeouts, HTTP 429/5xx, undecodable payloads and payloads of
    an unexpected shape become :class:`ProviderTransportError`; 404 becomes
    :class:`ProviderNoData`.
    """

    def __init__(
        self,
        api_key: str | None = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
    ) -> None:
        self._api_key = api_key
        self._timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def fetch_close(self, symbol: CanonicalSymbol, trading_date: date) -> ProviderQuote:
        url, params = self._request(symbol, trading_date)
        payload = await self._get_json(url, params)
        try:
            return self._parse(payload, symbol, trading_date)
        except _MALFORMED_PAYLOAD_ERRORS as exc:
            raise ProviderTransportError(
                f"{self.name} returned a malformed payload ({exc.__class__.__name__}: {exc})",
                provider=self.name,
            ) from exc

    def _request(self, symbol: CanonicalSymbol, trading_date: date) -> tuple[str, Dict[str, Any]]:
        raise NotImplementedError

    def _parse(self, payload: Any, symbol: CanonicalSymbol, trading_date: date) -> ProviderQuote:
        raise NotImplementedError

    async def _get_json(self, url: str, params: Dict[str, Any]) -> Any:
        try:
            response = await self._client.get(url, params=params, timeout=self._timeout)
        except httpx.HTTPError as exc:
            raise ProviderTransportError(
                f"{self.name} request failed: {exc.__class__.__name__}", provider=self.name
            ) from exc

        status = response.status_code
        if status == 404:
            raise ProviderNoData(f"{self.name} has no data (404)", provider=self.name, http_status=status)
        if status == 429 or status >= 500:
            raise ProviderTransportError(
                f"{self.name} returned HTTP {status}", provider=self.name, http_status=status
            )
        if status >= 400:
            raise ProviderNoData(f"{self.name} rejected request (HTTP {status})", provider=self.name, http_status=status)

        try:
            return response.json()
        except ValueError as exc:
            raise ProviderTransportError(
                f"{self.name} returned an undecodable payload", provider=self.name, http_status=status
            ) from exc

    def _quote(self, raw_close: Any, symbol: CanonicalSymbol, trading_date: date) -> ProviderQuote:
        close = to_decimal(raw_close)
        if close is None or close <= 0:
            raise ProviderNoData(
                f"{self.name} returned no usable close for {symbol.key} on {trading_date}",
                provider=self.name,
            )
        return ProviderQuote(close=close)


__all__ = [
    "ProviderTrust",
    "PROVIDER_TRUST",
    "LOW_TRUST_PROVIDERS",
    "provider_trust",
    "ProviderAttempt",
    "ProviderQuote",
    "PriceRecord",
    "CloseProvider",
    "HttpCloseProvider",
    "to_decimal",
]
