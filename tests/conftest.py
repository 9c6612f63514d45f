import asyncio
import inspect
import pathlib
import sys
from contextlib import asynccontextmanager
from datetime import date

import pytest

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from eod_portfolio.config import AppSettings  # noqa: E402
from eod_portfolio.db import Database  # noqa: E402

# A Friday with no holiday around it.
TODAY = date(2025, 6, 13)


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers used in the suite."""

    config.addinivalue_line("markers", "asyncio: mark test as running in an asyncio event loop")


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem: pytest.Function) -> bool | None:
    """Execute async test functions without requiring pytest-asyncio."""

    test_function = pyfuncitem.obj
    if inspect.iscoroutinefunction(test_function):
        loop = asyncio.new_event_loop()
        try:
            asyncio.set_event_loop(loop)
            arguments = {name: pyfuncitem.funcargs[name] for name in pyfuncitem._fixtureinfo.argnames}
            loop.run_until_complete(test_function(**arguments))
        finally:
            asyncio.set_event_loop(None)
            loop.close()
        return True
    return None


@pytest.fixture
def settings(tmp_path) -> AppSettings:
    return AppSettings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'eod.db'}",
        provider_requests_per_minute=6000,
        provider_backoff_seconds=0.0,
    )


@pytest.fixture
def make_database(settings):
    """Return an async context manager yielding a migrated SQLite database."""

    @asynccontextmanager
    async def _factory():
        database = Database(settings.database_url)
        await database.create_all()
        try:
            yield database
        finally:
            await database.dispose()

    return _factory


@pytest.fixture
def today() -> date:
    return TODAY
