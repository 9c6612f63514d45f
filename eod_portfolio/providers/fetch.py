"""Close fetching across the provider chain with retries and failover."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Awaitable, Callable, Sequence

from opentelemetry import metrics, trace

from eod_portfolio.errors import ProviderNoData, ProviderTransportError
from eod_portfolio.market_calendar import ny_today
from eod_portfolio.models.eod import CloseStatus
from eod_portfolio.providers.base import CloseProvider, PriceRecord, ProviderAttempt
from eod_portfolio.providers.throttle import RequestThrottle
from eod_portfolio.symbols import CanonicalSymbol, canonicalize

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)
meter = metrics.get_meter(__name__)
_attempt_counter = meter.create_counter(
    "eod.provider.attempts",
    description="Provider requests by provider and outcome",
)

DERIVED_PROVIDER = "via_tx"


@dataclass
class FetchResult:
    """Outcome of one symbol/date fetch.

    ``record`` is ``None`` only when the request itself was rejected (future
    date or malformed symbol); ``error`` then says why.
    """

    symbol: str
    trading_date: date
    record: PriceRecord | None = None
    error: str | None = None
    attempts: list[ProviderAttempt] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None and self.record is not None and self.record.is_ok


class CloseFetcher:
    """Walk providers in trust order until one answers definitively."""

    def __init__(
        self,
        providers: Sequence[CloseProvider],
        throttle: RequestThrottle,
        *,
        max_retries: int = 2,
        backoff_seconds: float = 0.5,
        allow_transaction_fallback: bool = True,
        today_fn: Callable[[], date] = ny_today,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._providers = list(providers)
        self._throttle = throttle
        self._max_retries = max_retries
        self._backoff = backoff_seconds
        self._allow_fallback = allow_transaction_fallback
        self._today = today_fn
        self._sleep = sleep
        self._inflight: dict[tuple[str, date], asyncio.Task[FetchResult]] = {}
        self._fallbacks: dict[tuple[str, date], Decimal] = {}

    @property
    def providers(self) -> list[CloseProvider]:
        return list(self._providers)

    async def aclose(self) -> None:
        for provider in self._providers:
            await provider.aclose()

    async def fetch_close(
        self,
        symbol: str | CanonicalSymbol,
        trading_date: date,
        *,
        fallback_price: Decimal | None = None,
    ) -> FetchResult:
        canonical = canonicalize(symbol)
        if canonical.malformed:
            return FetchResult(
                symbol=canonical.key,
                trading_date=trading_date,
                error=f"malformed symbol: {canonical.reason}",
            )
        if trading_date > self._today():
            return FetchResult(
                symbol=canonical.key,
                trading_date=trading_date,
                error=f"{trading_date} is in the future for New York",
            )

        flight_key = (canonical.key, trading_date)
        if fallback_price is not None and fallback_price > 0:
            # The first usable price offered for a flight wins, joiners included.
            self._fallbacks.setdefault(flight_key, fallback_price)
        running = self._inflight.get(flight_key)
        if running is not None:
            logger.debug("Joining in-flight fetch for %s %s", canonical.key, trading_date)
            return await asyncio.shield(running)

        task = asyncio.ensure_future(self._fetch_chain(canonical, trading_date))
        self._inflight[flight_key] = task
        task.add_done_callback(lambda _task: self._land(flight_key))
        return await task

    def _land(self, flight_key: tuple[str, date]) -> None:
        self._inflight.pop(flight_key, None)
        self._fallbacks.pop(flight_key, None)

    async def _fetch_chain(self, symbol: CanonicalSymbol, trading_date: date) -> FetchResult:
        today = self._today()
        chain = [provider for provider in self._providers if provider.supports(symbol, trading_date, today)]
        attempts: list[ProviderAttempt] = []
        responded = False

        with tracer.start_as_current_span("eod.fetch_close") as span:
            span.set_attribute("eod.symbol", symbol.key)
            span.set_attribute("eod.trading_date", trading_date.isoformat())

            if not chain:
                logger.info("No provider covers %s on %s", symbol.key, trading_date)
                record = PriceRecord(
                    symbol=symbol.key,
                    trading_date=trading_date,
                    close=None,
                    status=CloseStatus.MISSING_VENDOR,
                    provider="none",
                    note="no provider covers this symbol/date",
                )
                return FetchResult(symbol.key, trading_date, record=record, attempts=attempts)

            for provider in chain:
                for attempt in range(self._max_retries + 1):
                    await self._throttle.wait()
                    try:
                        quote = await provider.fetch_close(symbol, trading_date)
                    except ProviderNoData as exc:
                        responded = True
                        attempts.append(ProviderAttempt(provider.name, "no_data", str(exc), exc.http_status))
                        _attempt_counter.add(1, {"provider": provider.name, "outcome": "no_data"})
                        break
                    except ProviderTransportError as exc:
                        attempts.append(ProviderAttempt(provider.name, "transport_error", str(exc), exc.http_status))
                        _attempt_counter.add(1, {"provider": provider.name, "outcome": "transport_error"})
                        logger.warning(
                            "%s attempt %d for %s %s failed: %s",
                            provider.name,
                            attempt + 1,
                            symbol.key,
                            trading_date,
                            exc,
                        )
                        if attempt < self._max_retries:
                            await self._sleep(self._backoff * (2**attempt))
                        continue

                    attempts.append(ProviderAttempt(provider.name, quote.status.value))
                    _attempt_counter.add(1, {"provider": provider.name, "outcome": quote.status.value})
                    span.set_attribute("eod.provider", provider.name)
                    record = PriceRecord(
                        symbol=symbol.key,
                        trading_date=trading_date,
                        close=quote.close,
                        status=quote.status,
                        provider=provider.name,
                        note=quote.note,
                        attempts=attempts,
                    )
                    return FetchResult(symbol.key, trading_date, record=record, attempts=attempts)

            fallback_price = self._fallbacks.get((symbol.key, trading_date))
            if not responded and fallback_price is not None and self._allow_fallback:
                logger.warning(
                    "All providers unreachable for %s %s; using transaction price %s",
                    symbol.key,
                    trading_date,
                    fallback_price,
                )
                record = PriceRecord(
                    symbol=symbol.key,
                    trading_date=trading_date,
                    close=Decimal(fallback_price),
                    status=CloseStatus.OK,
                    provider=DERIVED_PROVIDER,
                    is_estimated=True,
                    note="derived from transaction price",
                    attempts=attempts,
                )
                return FetchResult(symbol.key, trading_date, record=record, attempts=attempts)

            status = CloseStatus.MISSING_VENDOR if responded else CloseStatus.ERROR
            note = "providers have no data" if responded else "all providers failed"
            span.set_attribute("eod.status", status.value)
            record = PriceRecord(
                symbol=symbol.key,
                trading_date=trading_date,
                close=None,
                status=status,
                provider=chain[-1].name,
                note=note,
                attempts=attempts,
            )
            return FetchResult(symbol.key, trading_date, record=record, attempts=attempts)


__all__ = ["CloseFetcher", "FetchResult", "DERIVED_PROVIDER"]
