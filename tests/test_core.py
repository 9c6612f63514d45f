import asyncio
import logging

from eod_portfolio.config import AppSettings
from eod_portfolio.core.logging import setup_logging
from eod_portfolio.core.telemetry import _vendor_request_hook, setup_telemetry


class RecordingSpan:
    def __init__(self) -> None:
        self.attributes = {}

    def is_recording(self) -> bool:
        return True

    def set_attribute(self, key, value) -> None:
        self.attributes[key] = value


class FakeRequest:
    url = "https://financialmodelingprep.com/api/v3/historical-price-full/AAPL?apikey=x"


def test_telemetry_disabled_returns_none():
    assert setup_telemetry(AppSettings(telemetry_enabled=False)) is None


def test_vendor_hook_tags_host():
    span = RecordingSpan()
    asyncio.run(_vendor_request_hook(span, FakeRequest()))
    assert span.attributes == {"eod.vendor_host": "financialmodelingprep.com"}


def test_setup_logging_installs_one_handler():
    root = logging.getLogger()
    before = list(root.handlers)
    level = root.level
    try:
        setup_logging("debug")
        setup_logging("warning")
        added = [handler for handler in root.handlers if handler not in before]
        assert len(added) == 1
        assert root.level == logging.WARNING
        assert logging.getLogger("httpx").level == logging.WARNING
    finally:
        root.setLevel(level)
        for handler in root.handlers[:]:
            if handler not in before:
                root.removeHandler(handler)
