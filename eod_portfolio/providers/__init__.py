"""Close-price providers and the fetch layer built on them."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from eod_portfolio.config import AppSettings

from .alpha_vantage import AlphaVantageCloseProvider
from .base import (
    LOW_TRUST_PROVIDERS,
    PROVIDER_TRUST,
    CloseProvider,
    HttpCloseProvider,
    PriceRecord,
    ProviderAttempt,
    ProviderQuote,
    ProviderTrust,
    provider_trust,
)
from .fetch import DERIVED_PROVIDER, CloseFetcher, FetchResult
from .fmp import FmpCloseProvider
from .marketstack import MarketstackCloseProvider
from .throttle import RequestThrottle
from .yahoo import YahooCloseProvider

logger = logging.getLogger(__name__)


def build_default_providers(
    settings: AppSettings,
    client: Optional[httpx.AsyncClient] = None,
) -> list[CloseProvider]:
    """Instantiate configured providers, highest trust first."""

    timeout = settings.provider_timeout_seconds
    available: dict[str, CloseProvider] = {}
    if settings.fmp_api_key:
        available["fmp"] = FmpCloseProvider(settings.fmp_api_key, client=client, timeout=timeout)
    if settings.marketstack_api_key:
        available["marketstack"] = MarketstackCloseProvider(
            settings.marketstack_api_key, client=client, timeout=timeout
        )
    if settings.alphavantage_api_key:
        available["alpha_vantage"] = AlphaVantageCloseProvider(
            settings.alphavantage_api_key, client=client, timeout=timeout
        )
    if settings.yahoo_enabled:
        available["yahoo"] = YahooCloseProvider(client=client, timeout=timeout)

    ordered = [available[name] for name in settings.provider_order if name in available]
    ordered.sort(key=lambda provider: provider_trust(provider.name), reverse=True)
    logger.info("Close providers enabled: %s", [provider.name for provider in ordered])
    return ordered


def build_fetcher(settings: AppSettings, client: Optional[httpx.AsyncClient] = None) -> CloseFetcher:
    throttle = RequestThrottle(settings.provider_min_interval_seconds)
    return CloseFetcher(
        build_default_providers(settings, client),
        throttle,
        max_retries=settings.provider_max_retries,
        backoff_seconds=settings.provider_backoff_seconds,
        allow_transaction_fallback=settings.allow_transaction_price_fallback,
    )


__all__ = [
    "AlphaVantageCloseProvider",
    "CloseFetcher",
    "CloseProvider",
    "DERIVED_PROVIDER",
    "FetchResult",
    "FmpCloseProvider",
    "HttpCloseProvider",
    "LOW_TRUST_PROVIDERS",
    "MarketstackCloseProvider",
    "PROVIDER_TRUST",
    "PriceRecord",
    "ProviderAttempt",
    "ProviderQuote",
    "ProviderTrust",
    "RequestThrottle",
    "YahooCloseProvider",
    "build_default_providers",
    "build_fetcher",
    "provider_trust",
]
