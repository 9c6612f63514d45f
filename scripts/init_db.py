"""Create the pipeline tables."""

from __future__ import annotations

import asyncio

from eod_portfolio.config import get_settings
from eod_portfolio.core.logging import setup_logging
from eod_portfolio.db import Database


async def _run() -> None:
    settings = get_settings()
    database = Database(settings.database_url)
    try:
        await database.create_all()
        print(f"Schema ready on {database.engine.url.render_as_string(hide_password=True)}")
    finally:
        await database.dispose()


def main() -> None:
    setup_logging()
    asyncio.run(_run())


if __name__ == "__main__":
    main()
