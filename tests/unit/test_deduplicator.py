"""Tests for in-flight request coalescing."""

import asyncio

import pytest

from outbound.services.deduplicator import RequestDeduplicator
from tests.conftest import BlockingLoader, CountingLoader


async def settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.fixture
def dedup():
    return RequestDeduplicator(debug=True)


@pytest.mark.asyncio
async def test_concurrent_requests_share_one_call(dedup):
    loader = BlockingLoader(value=[1, 2])

    tasks = [asyncio.create_task(dedup.dedupe("search:rust", loader)) for _ in range(3)]
    await settle()
    assert dedup.get_in_flight_keys() == ["search:rust"]

    loader.release()
    results = await asyncio.gather(*tasks)

    assert results == [[1, 2]] * 3
    assert loader.calls == 1
    assert dedup.get_in_flight_count() == 0
    stats = dedup.get_stats()
    assert stats.total == 1
    assert stats.deduplicated == 2
    assert stats.dedup_rate == pytest.approx(2 / 3)


@pytest.mark.asyncio
async def test_different_keys_run_separately(dedup):
    loader = CountingLoader(value="v")

    await asyncio.gather(dedup.dedupe("a", loader), dedup.dedupe("b", loader))

    assert loader.calls == 2


@pytest.mark.asyncio
async def test_errors_reach_every_waiter(dedup):
    gate = asyncio.Event()

    async def failing():
        await gate.wait()
        raise RuntimeError("boom")

    tasks = [asyncio.create_task(dedup.dedupe("k", failing)) for _ in range(2)]
    await settle()
    gate.set()

    results = await asyncio.gather(*tasks, return_exceptions=True)
    assert all(isinstance(r, RuntimeError) for r in results)
    assert dedup.get_in_flight_count() == 0


@pytest.mark.asyncio
async def test_sequential_requests_are_not_coalesced(dedup):
    loader = CountingLoader(value="v")

    await dedup.dedupe("k", loader)
    await dedup.dedupe("k", loader)

    assert loader.calls == 2


@pytest.mark.asyncio
async def test_cancelling_one_waiter_keeps_shared_request(dedup):
    loader = BlockingLoader()
    first = asyncio.create_task(dedup.dedupe("k", loader))
    second = asyncio.create_task(dedup.dedupe("k", loader))
    await settle()

    first.cancel()
    await settle()
    loader.release()

    assert await second == "done"
    assert first.cancelled()


@pytest.mark.asyncio
async def test_cancelling_last_waiter_cancels_request(dedup):
    started = asyncio.Event()
    cancelled = asyncio.Event()

    async def slow():
        started.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            cancelled.set()
            raise

    task = asyncio.create_task(dedup.dedupe("k", slow))
    await started.wait()

    task.cancel()
    await settle()

    assert cancelled.is_set()
    assert dedup.get_in_flight_count() == 0


@pytest.mark.asyncio
async def test_stats_are_a_snapshot(dedup):
    loader = BlockingLoader(value="v")
    task = asyncio.create_task(dedup.dedupe("search:rust", loader))
    await settle()

    during = dedup.get_stats()
    loader.release()
    await task

    assert during.in_flight == 1
    assert during.total == 1
    assert dedup.get_stats().in_flight == 0
