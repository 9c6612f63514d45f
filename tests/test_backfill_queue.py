"""Backfill request queue tests."""

from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal

import pytest

from eod_portfolio.models.eod import BackfillStatus, CloseStatus
from eod_portfolio.providers import FetchResult, PriceRecord
from eod_portfolio.services.backfill_queue import BackfillQueue
from eod_portfolio.services.coverage import plan_required_closes
from eod_portfolio.services.eod_store import EodStore

TODAY = date(2025, 6, 13)
DAY = date(2025, 6, 12)


def _queue(database, settings):
    store = EodStore(database, settings)
    return BackfillQueue(database, store, settings, today_fn=lambda: TODAY), store


def _result(close, status=CloseStatus.OK, provider="fmp", day=DAY, symbol="AAPL"):
    record = PriceRecord(
        symbol=symbol,
        trading_date=day,
        close=Decimal(close) if close is not None else None,
        status=status,
        provider=provider,
    )
    return FetchResult(symbol=symbol, trading_date=day, record=record)


@pytest.mark.asyncio
async def test_enqueue_is_idempotent(make_database, settings):
    async with make_database() as database:
        queue, _ = _queue(database, settings)
        first = await queue.enqueue_if_needed("aapl", DAY)
        second = await queue.enqueue_if_needed("AAPL", DAY)
        assert first.created and first.status == BackfillStatus.QUEUED
        assert not second.created and second.reason == "already requested"
        assert (await queue.counts())["queued"] == 1


@pytest.mark.asyncio
async def test_enqueue_rejects_future_dates(make_database, settings):
    async with make_database() as database:
        queue, _ = _queue(database, settings)
        with pytest.raises(ValueError):
            await queue.enqueue_if_needed("AAPL", TODAY + timedelta(days=3))


@pytest.mark.asyncio
async def test_existing_ok_close_needs_no_request(make_database, settings):
    async with make_database() as database:
        queue, store = _queue(database, settings)
        await store.upsert_close(_result("10").record)
        outcome = await queue.enqueue_if_needed("AAPL", DAY)
        assert outcome.status is None
        assert outcome.reason == "close already ok"
        assert await queue.get("2025-06-12_AAPL") is None


@pytest.mark.asyncio
async def test_coverage_exclusions_are_skipped(make_database, settings):
    async with make_database() as database:
        queue, _ = _queue(database, settings)
        expired = await queue.enqueue_if_needed("NIO250117P3.5", date(2025, 1, 21))
        assert expired.status == BackfillStatus.SKIPPED
        assert "expiry" in expired.reason

        ancient = await queue.enqueue_if_needed("NIO250117P3.5", date(2023, 1, 3))
        assert ancient.status == BackfillStatus.SKIPPED
        assert "retention" in ancient.reason

        early = await queue.enqueue_if_needed("AAPL", date(2025, 6, 2), first_trade_date=date(2025, 6, 5))
        assert early.status == BackfillStatus.SKIPPED

        weekend = await queue.enqueue_if_needed("AAPL", date(2025, 6, 7))
        assert weekend.status == BackfillStatus.SKIPPED
        assert (await queue.counts())["skipped"] == 4


@pytest.mark.asyncio
async def test_claim_is_exclusive_and_counts_attempts(make_database, settings):
    async with make_database() as database:
        queue, _ = _queue(database, settings)
        outcome = await queue.enqueue_if_needed("AAPL", DAY)
        assert await queue.claim(outcome.key, "worker-a")
        assert not await queue.claim(outcome.key, "worker-b")
        request = await queue.get(outcome.key)
        assert request.status == BackfillStatus.IN_PROGRESS
        assert request.claimed_by == "worker-a"
        assert request.attempts == 1


@pytest.mark.asyncio
async def test_complete_writes_close_and_marks_done(make_database, settings):
    async with make_database() as database:
        queue, store = _queue(database, settings)
        outcome = await queue.enqueue_if_needed("AAPL", DAY)
        await queue.claim(outcome.key, "w")
        completion = await queue.complete(outcome.key, _result("101.1"))
        assert completion.status == BackfillStatus.DONE
        assert completion.upsert.accepted
        assert (await store.read_close("AAPL", DAY)).close == Decimal("101.1")
        assert await store.get_revision("AAPL") == 1
        assert (await queue.get(outcome.key)).claimed_by is None


@pytest.mark.asyncio
async def test_missing_vendor_marks_error_and_reenqueue_resets(make_database, settings):
    async with make_database() as database:
        queue, store = _queue(database, settings)
        outcome = await queue.enqueue_if_needed("AAPL", DAY)
        await queue.claim(outcome.key, "w")
        completion = await queue.complete(outcome.key, _result(None, status=CloseStatus.MISSING_VENDOR))
        assert completion.status == BackfillStatus.ERROR
        assert (await store.read_close("AAPL", DAY)).status == CloseStatus.MISSING_VENDOR

        again = await queue.enqueue_if_needed("AAPL", DAY)
        assert again.status == BackfillStatus.QUEUED
        assert again.reason == "requeued after error"


@pytest.mark.asyncio
async def test_no_liquidity_is_done(make_database, settings):
    async with make_database() as database:
        queue, _ = _queue(database, settings)
        outcome = await queue.enqueue_if_needed("NIO260618P3.5", DAY)
        await queue.claim(outcome.key, "w")
        result = _result(None, status=CloseStatus.NO_LIQUIDITY, provider="yahoo", symbol="NIO260618P3.5")
        assert (await queue.complete(outcome.key, result)).status == BackfillStatus.DONE


@pytest.mark.asyncio
async def test_release_reopen_and_skip_transitions(make_database, settings):
    async with make_database() as database:
        queue, _ = _queue(database, settings)
        key = (await queue.enqueue_if_needed("AAPL", DAY)).key
        await queue.claim(key, "w")
        assert await queue.release(key)
        assert (await queue.get(key)).status == BackfillStatus.QUEUED
        assert not await queue.reopen(key, "not done yet")

        await queue.claim(key, "w")
        await queue.complete(key, _result("5"))
        assert await queue.reopen(key, "close disappeared")
        assert (await queue.get(key)).last_error == "close disappeared"

        assert await queue.skip(key, "delisted")
        assert (await queue.get(key)).status == BackfillStatus.SKIPPED


@pytest.mark.asyncio
async def test_status_feed_and_pending(make_database, settings):
    async with make_database() as database:
        queue, _ = _queue(database, settings)
        await queue.enqueue_if_needed("MSFT", date(2025, 6, 11))
        await queue.enqueue_if_needed("AAPL", DAY)
        await queue.enqueue_if_needed("AAPL", date(2025, 6, 11))
        pending = await queue.pending()
        assert [item.key for item in pending] == ["2025-06-11_AAPL", "2025-06-11_MSFT", "2025-06-12_AAPL"]
        feed = await queue.status_feed(symbol="aapl")
        assert {item.symbol for item in feed} == {"AAPL"}
        assert len(await queue.status_feed(status=BackfillStatus.DONE)) == 0


@pytest.mark.asyncio
async def test_enqueue_plan_covers_held_days(make_database, settings):
    transactions = [
        {"id": "t1", "user_id": "u", "symbol": "AAPL", "side": "buy", "quantity": "10", "price": "100",
         "trading_day_ny": "2025-06-10"},
        {"id": "t2", "user_id": "u", "symbol": "AAPL", "side": "sell", "quantity": "10", "price": "105",
         "trading_day_ny": "2025-06-12"},
    ]
    plan = plan_required_closes(transactions, TODAY)
    async with make_database() as database:
        queue, _ = _queue(database, settings)
        summary = await queue.enqueue_plan(plan)
        assert summary["queued"] == 3
        assert [item.key for item in await queue.pending()] == [
            "2025-06-10_AAPL",
            "2025-06-11_AAPL",
            "2025-06-12_AAPL",
        ]


@pytest.mark.asyncio
async def test_stale_completion_does_not_overwrite_the_current_claim(make_database, settings):
    async with make_database() as database:
        queue, store = _queue(database, settings)
        key = (await queue.enqueue_if_needed("AAPL", DAY)).key
        await queue.claim(key, "worker-a")
        assert await queue.release(key)
        await queue.claim(key, "worker-b")

        stale = await queue.complete(key, _result(None, status=CloseStatus.ERROR), worker_id="worker-a")
        assert stale.stale
        assert stale.upsert is None
        request = await queue.get(key)
        assert request.status == BackfillStatus.IN_PROGRESS
        assert request.claimed_by == "worker-b"
        assert await store.read_close("AAPL", DAY) is None

        current = await queue.complete(key, _result("101"), worker_id="worker-b")
        assert not current.stale
        assert current.status == BackfillStatus.DONE

        late = await queue.complete(key, _result(None, status=CloseStatus.ERROR))
        assert late.stale
        assert late.status == BackfillStatus.DONE
        assert (await queue.get(key)).status == BackfillStatus.DONE


@pytest.mark.asyncio
async def test_close_estimated_from_a_fill_is_requeued(make_database, settings):
    async with make_database() as database:
        queue, store = _queue(database, settings)
        key = (await queue.enqueue_if_needed("AAPL", DAY)).key
        await queue.claim(key, "w")
        await queue.complete(key, _result("99.5", provider="via_tx"))
        assert (await queue.get(key)).status == BackfillStatus.DONE

        again = await queue.enqueue_if_needed("AAPL", DAY)
        assert again.status == BackfillStatus.QUEUED
        assert again.reason == "requeued estimated close"

        await queue.claim(key, "w")
        completion = await queue.complete(key, _result("99.5", provider="fmp"))
        assert completion.upsert.accepted
        assert (await store.read_close("AAPL", DAY)).provider == "fmp"
        assert (await queue.enqueue_if_needed("AAPL", DAY)).reason == "close already ok"


@pytest.mark.asyncio
async def test_estimated_close_without_a_request_gets_one(make_database, settings):
    async with make_database() as database:
        queue, store = _queue(database, settings)
        await store.upsert_close(_result("99.5", provider="via_tx").record)
        outcome = await queue.enqueue_if_needed("AAPL", DAY)
        assert outcome.created
        assert outcome.status == BackfillStatus.QUEUED
