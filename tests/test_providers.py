"""Provider payload parsing and error mapping tests."""

from __future__ import annotations

from datetime import date, datetime, time, timezone
from decimal import Decimal

import httpx
import pytest

from eod_portfolio.config import AppSettings
from eod_portfolio.errors import ProviderNoData, ProviderTransportError
from eod_portfolio.market_calendar import NY_TZ
from eod_portfolio.models.eod import CloseStatus
from eod_portfolio.providers import (
    AlphaVantageCloseProvider,
    FmpCloseProvider,
    MarketstackCloseProvider,
    YahooCloseProvider,
    build_default_providers,
)
from eod_portfolio.symbols import canonicalize

DAY = date(2025, 6, 12)


class StubResponse:
    def __init__(self, payload: object, status_code: int = 200) -> None:
        self._payload = payload
        self.status_code = status_code

    def json(self) -> object:
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class StubClient:
    def __init__(self, *responses: object) -> None:
        self._responses = list(responses)
        self.calls: list[tuple[str, dict[str, object]]] = []

    async def get(self, url: str, params: dict[str, object], timeout: float) -> StubResponse:
        self.calls.append((url, params))
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def aclose(self) -> None:  # pragma: no cover - included for interface completeness
        return None


def _yahoo_stamp(day: date) -> int:
    return int(datetime.combine(day, time(9, 30), tzinfo=NY_TZ).timestamp())


@pytest.mark.asyncio
async def test_fmp_reads_matching_bar_and_injects_api_key():
    client = StubClient(StubResponse({"symbol": "BRK-B", "historical": [{"date": "2025-06-12", "close": 490.12}]}))
    provider = FmpCloseProvider("key", client=client)
    quote = await provider.fetch_close(canonicalize("BRK.B"), DAY)
    assert quote.close == Decimal("490.12")
    assert quote.status == CloseStatus.OK
    url, params = client.calls[0]
    assert url.endswith("/BRK-B")
    assert params["apikey"] == "key"
    assert params["from"] == params["to"] == "2025-06-12"


@pytest.mark.asyncio
async def test_fmp_empty_history_is_no_data():
    provider = FmpCloseProvider("key", client=StubClient(StubResponse({})))
    with pytest.raises(ProviderNoData):
        await provider.fetch_close(canonicalize("ZZZZ"), DAY)


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [429, 500, 503])
async def test_throttling_and_server_errors_are_transport_errors(status_code):
    provider = FmpCloseProvider("key", client=StubClient(StubResponse({}, status_code=status_code)))
    with pytest.raises(ProviderTransportError) as excinfo:
        await provider.fetch_close(canonicalize("AAPL"), DAY)
    assert excinfo.value.http_status == status_code


@pytest.mark.asyncio
async def test_timeouts_and_bad_json_are_transport_errors():
    provider = FmpCloseProvider("key", client=StubClient(httpx.ReadTimeout("slow"), StubResponse(ValueError("x"))))
    with pytest.raises(ProviderTransportError):
        await provider.fetch_close(canonicalize("AAPL"), DAY)
    with pytest.raises(ProviderTransportError):
        await provider.fetch_close(canonicalize("AAPL"), DAY)


@pytest.mark.asyncio
async def test_not_found_is_no_data():
    provider = MarketstackCloseProvider("key", client=StubClient(StubResponse({}, status_code=404)))
    with pytest.raises(ProviderNoData):
        await provider.fetch_close(canonicalize("AAPL"), DAY)


@pytest.mark.asyncio
async def test_marketstack_parses_eod_payload():
    payload = {"data": [{"symbol": "AAPL", "date": "2025-06-12T00:00:00+0000", "close": 199.2}]}
    client = StubClient(StubResponse(payload))
    quote = await MarketstackCloseProvider("key", client=client).fetch_close(canonicalize("AAPL"), DAY)
    assert quote.close == Decimal("199.2")
    assert client.calls[0][1]["access_key"] == "key"


@pytest.mark.asyncio
async def test_alpha_vantage_note_is_transport_error_and_error_message_is_no_data():
    note = AlphaVantageCloseProvider(
        "key", client=StubClient(StubResponse({"Note": "limit"})), today_fn=lambda: DAY
    )
    with pytest.raises(ProviderTransportError):
        await note.fetch_close(canonicalize("AAPL"), DAY)

    missing = AlphaVantageCloseProvider(
        "key", client=StubClient(StubResponse({"Error Message": "Invalid API call"})), today_fn=lambda: DAY
    )
    with pytest.raises(ProviderNoData):
        await missing.fetch_close(canonicalize("AAPL"), DAY)


@pytest.mark.asyncio
async def test_alpha_vantage_reads_daily_series():
    payload = {"Time Series (Daily)": {"2025-06-12": {"4. close": "198.7800"}}}
    client = StubClient(StubResponse(payload))
    provider = AlphaVantageCloseProvider("key", client=client, today_fn=lambda: DAY)
    quote = await provider.fetch_close(canonicalize("AAPL"), DAY)
    assert quote.close == Decimal("198.7800")
    assert client.calls[0][1]["outputsize"] == "compact"


@pytest.mark.asyncio
async def test_yahoo_option_uses_occ_symbol():
    payload = {
        "chart": {
            "result": [
                {
                    "timestamp": [_yahoo_stamp(DAY)],
                    "indicators": {"quote": [{"close": [0.42]}]},
                }
            ],
            "error": None,
        }
    }
    client = StubClient(StubResponse(payload))
    quote = await YahooCloseProvider(client=client).fetch_close(canonicalize("NIO 260618 P 3.5"), DAY)
    assert quote.close == Decimal("0.42")
    assert client.calls[0][0].endswith("/NIO260618P00003500")


@pytest.mark.asyncio
async def test_yahoo_bar_without_close_is_no_liquidity():
    payload = {
        "chart": {
            "result": [{"timestamp": [_yahoo_stamp(DAY)], "indicators": {"quote": [{"close": [None]}]}}],
            "error": None,
        }
    }
    quote = await YahooCloseProvider(client=StubClient(StubResponse(payload))).fetch_close(
        canonicalize("NIO260618P3.5"), DAY
    )
    assert quote.status == CloseStatus.NO_LIQUIDITY
    assert quote.close is None


@pytest.mark.asyncio
async def test_yahoo_chart_error_is_no_data():
    payload = {"chart": {"result": None, "error": {"code": "Not Found"}}}
    with pytest.raises(ProviderNoData):
        await YahooCloseProvider(client=StubClient(StubResponse(payload))).fetch_close(canonicalize("ZZZZ"), DAY)


def test_only_yahoo_supports_options_and_coverage_is_bounded():
    option = canonicalize("NIO260618P3.5")
    stock = canonicalize("AAPL")
    client = StubClient()
    assert YahooCloseProvider(client=client).supports(option, DAY, DAY)
    assert not FmpCloseProvider("key", client=client).supports(option, DAY, DAY)
    assert MarketstackCloseProvider("key", client=client).supports(stock, date(2024, 7, 1), DAY)
    assert not MarketstackCloseProvider("key", client=client).supports(stock, date(2024, 1, 2), DAY)


def test_default_providers_follow_trust_order_and_configured_keys():
    settings = AppSettings(
        fmp_api_key="f",
        alphavantage_api_key="a",
        provider_order=["yahoo", "alpha_vantage", "fmp", "marketstack"],
    )
    providers = build_default_providers(settings, client=StubClient())
    assert [provider.name for provider in providers] == ["fmp", "yahoo", "alpha_vantage"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        {"historical": ["garbage"]},
        {"historical": [None]},
        {"historical": "not a list"},
    ],
)
async def test_fmp_payload_of_the_wrong_shape_is_transport_error(payload):
    provider = FmpCloseProvider("key", client=StubClient(StubResponse(payload)))
    with pytest.raises(ProviderTransportError, match="malformed payload"):
        await provider.fetch_close(canonicalize("AAPL"), DAY)


@pytest.mark.asyncio
async def test_yahoo_and_marketstack_payloads_of_the_wrong_shape_are_transport_errors():
    yahoo_payload = {"chart": {"result": [{"timestamp": [_yahoo_stamp(DAY)], "indicators": {"quote": [None]}}]}}
    with pytest.raises(ProviderTransportError):
        await YahooCloseProvider(client=StubClient(StubResponse(yahoo_payload))).fetch_close(
            canonicalize("AAPL"), DAY
        )

    with pytest.raises(ProviderTransportError):
        await MarketstackCloseProvider("key", client=StubClient(StubResponse({"data": [7]}))).fetch_close(
            canonicalize("AAPL"), DAY
        )
