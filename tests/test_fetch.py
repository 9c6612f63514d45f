"""Provider chain, retry, throttle and fallback tests."""

from __future__ import annotations

import asyncio
from datetime import date, timedelta
from decimal import Decimal

import pytest

from eod_portfolio.errors import ProviderNoData, ProviderTransportError
from eod_portfolio.models.eod import CloseStatus
from eod_portfolio.providers import CloseFetcher, CloseProvider, ProviderQuote, RequestThrottle
from eod_portfolio.symbols import OPTION, STOCK

TODAY = date(2025, 6, 13)
DAY = date(2025, 6, 12)


class ScriptedProvider(CloseProvider):
    """Answers from a list of quotes or exceptions, one per call."""

    def __init__(self, name: str, *answers: object, coverage_days: int = 7300, options: bool = False) -> None:
        self.name = name
        self.coverage_days = coverage_days
        self.asset_types = frozenset({STOCK, OPTION}) if options else frozenset({STOCK})
        self._answers = list(answers)
        self.calls = 0

    async def fetch_close(self, symbol, trading_date):
        self.calls += 1
        answer = self._answers.pop(0) if len(self._answers) > 1 else self._answers[0]
        if isinstance(answer, Exception):
            raise answer
        return answer


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _fetcher(*providers, max_retries=2, sleep=None, allow_fallback=True):
    return CloseFetcher(
        providers,
        RequestThrottle(0),
        max_retries=max_retries,
        backoff_seconds=0.5,
        allow_transaction_fallback=allow_fallback,
        today_fn=lambda: TODAY,
        sleep=sleep or RecordingSleep(),
    )


@pytest.mark.asyncio
async def test_first_success_stops_the_chain():
    primary = ScriptedProvider("fmp", ProviderQuote(close=Decimal("101.5")))
    secondary = ScriptedProvider("yahoo", ProviderQuote(close=Decimal("99")))
    result = await _fetcher(primary, secondary).fetch_close("aapl", DAY)
    assert result.ok
    assert result.record.provider == "fmp"
    assert result.record.close == Decimal("101.5")
    assert secondary.calls == 0
    assert [attempt.outcome for attempt in result.attempts] == ["ok"]


@pytest.mark.asyncio
async def test_no_data_fails_over_without_retry():
    primary = ScriptedProvider("fmp", ProviderNoData("none"))
    secondary = ScriptedProvider("yahoo", ProviderQuote(close=Decimal("99")))
    result = await _fetcher(primary, secondary).fetch_close("AAPL", DAY)
    assert result.record.provider == "yahoo"
    assert primary.calls == 1
    assert [(a.provider, a.outcome) for a in result.attempts] == [("fmp", "no_data"), ("yahoo", "ok")]


@pytest.mark.asyncio
async def test_transport_errors_retry_with_exponential_backoff():
    sleep = RecordingSleep()
    flaky = ScriptedProvider(
        "fmp",
        ProviderTransportError("timeout"),
        ProviderTransportError("429", http_status=429),
        ProviderQuote(close=Decimal("10")),
    )
    result = await _fetcher(flaky, sleep=sleep).fetch_close("AAPL", DAY)
    assert result.ok
    assert flaky.calls == 3
    assert sleep.delays == [0.5, 1.0]
    assert result.attempts[1].http_status == 429


@pytest.mark.asyncio
async def test_no_liquidity_is_definitive():
    yahoo = ScriptedProvider("yahoo", ProviderQuote(close=None, status=CloseStatus.NO_LIQUIDITY), options=True)
    result = await _fetcher(yahoo).fetch_close("NIO260618P3.5", DAY)
    assert not result.ok
    assert result.record.status == CloseStatus.NO_LIQUIDITY


@pytest.mark.asyncio
async def test_options_only_go_to_option_capable_providers():
    fmp = ScriptedProvider("fmp", ProviderQuote(close=Decimal("1")))
    yahoo = ScriptedProvider("yahoo", ProviderQuote(close=Decimal("0.35")), options=True)
    result = await _fetcher(fmp, yahoo).fetch_close("NIO 260618 P 3.5", DAY)
    assert result.record.provider == "yahoo"
    assert result.symbol == "NIO260618P00003500"
    assert fmp.calls == 0


@pytest.mark.asyncio
async def test_coverage_horizon_filters_providers():
    short = ScriptedProvider("marketstack", ProviderQuote(close=Decimal("1")), coverage_days=365)
    long = ScriptedProvider("alpha_vantage", ProviderQuote(close=Decimal("2")))
    result = await _fetcher(short, long).fetch_close("AAPL", TODAY - timedelta(days=800))
    assert result.record.provider == "alpha_vantage"
    assert short.calls == 0


@pytest.mark.asyncio
async def test_future_dates_are_rejected_without_calls():
    provider = ScriptedProvider("fmp", ProviderQuote(close=Decimal("1")))
    result = await _fetcher(provider).fetch_close("AAPL", TODAY + timedelta(days=1))
    assert result.record is None
    assert "future" in result.error
    assert provider.calls == 0


@pytest.mark.asyncio
async def test_all_no_data_is_missing_vendor_even_with_fallback():
    provider = ScriptedProvider("fmp", ProviderNoData("none"))
    result = await _fetcher(provider).fetch_close("AAPL", DAY, fallback_price=Decimal("12"))
    assert result.record.status == CloseStatus.MISSING_VENDOR
    assert result.record.close is None


@pytest.mark.asyncio
async def test_unreachable_providers_use_transaction_price():
    provider = ScriptedProvider("fmp", ProviderTransportError("down"))
    result = await _fetcher(provider, max_retries=1).fetch_close("AAPL", DAY, fallback_price=Decimal("12.5"))
    assert result.ok
    assert result.record.provider == "via_tx"
    assert result.record.is_estimated
    assert result.record.close == Decimal("12.5")
    assert provider.calls == 2


@pytest.mark.asyncio
async def test_unreachable_providers_without_fallback_is_error():
    provider = ScriptedProvider("fmp", ProviderTransportError("down"))
    result = await _fetcher(provider, max_retries=0).fetch_close("AAPL", DAY)
    assert result.record.status == CloseStatus.ERROR
    assert not result.ok


@pytest.mark.asyncio
async def test_identical_concurrent_requests_are_coalesced():
    release = asyncio.Event()

    class SlowProvider(ScriptedProvider):
        async def fetch_close(self, symbol, trading_date):
            await release.wait()
            return await super().fetch_close(symbol, trading_date)

    provider = SlowProvider("fmp", ProviderQuote(close=Decimal("5")))
    fetcher = _fetcher(provider)
    first = asyncio.ensure_future(fetcher.fetch_close("AAPL", DAY))
    second = asyncio.ensure_future(fetcher.fetch_close(" aapl", DAY))
    await asyncio.sleep(0)
    release.set()
    results = await asyncio.gather(first, second)
    assert provider.calls == 1
    assert results[0].record.close == results[1].record.close == Decimal("5")


@pytest.mark.asyncio
async def test_joined_request_contributes_its_fallback_price():
    release = asyncio.Event()

    class SlowFailingProvider(ScriptedProvider):
        async def fetch_close(self, symbol, trading_date):
            await release.wait()
            return await super().fetch_close(symbol, trading_date)

    provider = SlowFailingProvider("fmp", ProviderTransportError("down"))
    fetcher = _fetcher(provider, max_retries=0)
    first = asyncio.ensure_future(fetcher.fetch_close("AAPL", DAY))
    second = asyncio.ensure_future(fetcher.fetch_close("AAPL", DAY, fallback_price=Decimal("7.25")))
    await asyncio.sleep(0)
    release.set()
    results = await asyncio.gather(first, second)
    assert provider.calls == 1
    for result in results:
        assert result.ok
        assert result.record.provider == "via_tx"
        assert result.record.close == Decimal("7.25")

    again = await fetcher.fetch_close("AAPL", DAY)
    assert again.record.status == CloseStatus.ERROR


@pytest.mark.asyncio
async def test_throttle_spaces_requests():
    now = [100.0]
    delays: list[float] = []

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)
        now[0] += delay

    throttle = RequestThrottle(1.0, clock=lambda: now[0], sleep=fake_sleep)
    await throttle.wait()
    now[0] += 0.25
    await throttle.wait()
    await throttle.wait()
    assert delays == [0.75, 1.0]
