import asyncio
import gc
from datetime import datetime, timedelta, timezone

import pytest

from labstatus.cache import REFRESH_WINDOW, RefreshCache
from labstatus.models import NormalizedState
from labstatus.upstream import UpstreamTimestampInvalid, UpstreamUnavailable

T0 = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


def _state(value: str = "on", updated: str = "2024-06-01T12:00:00Z") -> NormalizedState:
    return NormalizedState(
        state=value,
        last_changed_utc="2024-01-01T00:00:00Z",
        last_updated_utc=updated,
    )


class FakeFetcher:
    """Returns queued results in order; the last one repeats."""

    def __init__(self, *results):
        self._results = list(results)
        self.calls = 0

    async def fetch(self):
        self.calls += 1
        result = self._results.pop(0) if len(self._results) > 1 else self._results[0]
        if isinstance(result, Exception):
            raise result
        return result


class GatedFetcher:
    def __init__(self, result):
        self.result = result
        self.calls = 0
        self.release = asyncio.Event()

    async def fetch(self):
        self.calls += 1
        await self.release.wait()
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


def test_empty_cache_fetches_regardless_of_now():
    fetcher = FakeFetcher(_state())
    cache = RefreshCache(fetcher)

    result = asyncio.run(cache.get(datetime(1970, 1, 1, tzinfo=timezone.utc)))

    assert fetcher.calls == 1
    assert result == _state()
    assert cache.fetched_at == datetime(1970, 1, 1, tzinfo=timezone.utc)


def test_refresh_window_boundary_is_inclusive():
    fetcher = FakeFetcher(_state("on"), _state("off"))
    cache = RefreshCache(fetcher)

    async def scenario():
        first = await cache.get(T0)
        at_boundary = await cache.get(T0 + REFRESH_WINDOW)
        calls_at_boundary = fetcher.calls
        past_boundary = await cache.get(T0 + REFRESH_WINDOW + timedelta(microseconds=1))
        return first, at_boundary, calls_at_boundary, past_boundary

    first, at_boundary, calls_at_boundary, past_boundary = asyncio.run(scenario())

    assert REFRESH_WINDOW == timedelta(seconds=30)
    assert first.state == "on"
    assert at_boundary.state == "on"
    assert calls_at_boundary == 1
    assert past_boundary.state == "off"
    assert fetcher.calls == 2
    assert cache.fetched_at == T0 + REFRESH_WINDOW + timedelta(microseconds=1)


def test_failed_refresh_propagates_and_keeps_entry_stale():
    fetcher = FakeFetcher(
        _state("on"),
        UpstreamUnavailable("connection refused"),
        _state("off", updated="2024-06-01T12:00:32Z"),
    )
    cache = RefreshCache(fetcher)

    async def scenario():
        await cache.get(T0)
        entry_before = cache._entry
        with pytest.raises(UpstreamUnavailable):
            await cache.get(T0 + timedelta(seconds=31))
        entry_after_error = cache._entry
        recovered = await cache.get(T0 + timedelta(seconds=32))
        return entry_before, entry_after_error, recovered

    entry_before, entry_after_error, recovered = asyncio.run(scenario())

    assert entry_after_error is entry_before
    assert recovered.state == "off"
    assert fetcher.calls == 3
    assert cache.fetched_at == T0 + timedelta(seconds=32)


def test_invalid_timestamp_leaves_prior_entry_untouched():
    fetcher = FakeFetcher(_state("on"), UpstreamTimestampInvalid("Invalid last_changed 'not-a-date'"))
    cache = RefreshCache(fetcher)

    async def scenario():
        await cache.get(T0)
        before = cache._entry.value.model_dump_json()
        with pytest.raises(UpstreamTimestampInvalid):
            await cache.get(T0 + timedelta(minutes=5))
        return before, cache._entry.value.model_dump_json()

    before, after = asyncio.run(scenario())

    assert after == before
    assert cache.fetched_at == T0


def test_failed_first_fetch_keeps_cache_empty():
    fetcher = FakeFetcher(UpstreamUnavailable("down"), _state())
    cache = RefreshCache(fetcher)

    async def scenario():
        with pytest.raises(UpstreamUnavailable):
            await cache.get(T0)
        assert cache.fetched_at is None
        return await cache.get(T0)

    assert asyncio.run(scenario()) == _state()
    assert fetcher.calls == 2


def test_returned_values_are_copies():
    fetcher = FakeFetcher(_state("on"))
    cache = RefreshCache(fetcher)

    async def scenario():
        first = await cache.get(T0)
        first.state = "tampered"
        return await cache.get(T0 + timedelta(seconds=1))

    assert asyncio.run(scenario()).state == "on"


def test_earlier_now_is_served_from_cache():
    fetcher = FakeFetcher(_state())
    cache = RefreshCache(fetcher)

    async def scenario():
        await cache.get(T0)
        return await cache.get(T0 - timedelta(hours=1))

    assert asyncio.run(scenario()) == _state()
    assert fetcher.calls == 1


def test_concurrent_misses_share_one_fetch():
    async def scenario():
        fetcher = GatedFetcher(_state())
        cache = RefreshCache(fetcher)
        tasks = [asyncio.create_task(cache.get(T0)) for _ in range(10)]
        await _settle()
        fetcher.release.set()
        results = await asyncio.gather(*tasks)
        return fetcher, cache, results

    fetcher, cache, results = asyncio.run(scenario())

    assert fetcher.calls == 1
    assert cache.fetch_count == 1
    assert all(result == _state() for result in results)
    assert len({id(result) for result in results}) == len(results)


def test_concurrent_stale_reads_share_one_refresh():
    async def scenario():
        fetcher = GatedFetcher(_state("off", updated="2024-06-01T12:01:00Z"))
        cache = RefreshCache(fetcher)
        fetcher.release.set()
        await cache.get(T0)
        fetcher.release.clear()
        fetcher.result = _state("on", updated="2024-06-01T12:02:00Z")

        later = T0 + timedelta(minutes=2)
        tasks = [asyncio.create_task(cache.get(later)) for _ in range(8)]
        await _settle()
        fetcher.release.set()
        results = await asyncio.gather(*tasks)
        return fetcher, cache, results, later

    fetcher, cache, results, later = asyncio.run(scenario())

    assert fetcher.calls == 2
    assert {result.state for result in results} == {"on"}
    assert cache.fetched_at == later


def test_concurrent_misses_share_one_error():
    error = UpstreamUnavailable("connection refused")

    async def scenario():
        fetcher = GatedFetcher(error)
        cache = RefreshCache(fetcher)
        tasks = [asyncio.create_task(cache.get(T0)) for _ in range(6)]
        await _settle()
        fetcher.release.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        return fetcher, cache, results

    fetcher, cache, results = asyncio.run(scenario())

    assert fetcher.calls == 1
    assert all(result is error for result in results)
    assert cache.fetched_at is None


def test_cancelled_waiter_does_not_abort_shared_fetch():
    async def scenario():
        fetcher = GatedFetcher(_state())
        cache = RefreshCache(fetcher)
        cancelled = asyncio.create_task(cache.get(T0))
        survivor = asyncio.create_task(cache.get(T0))
        await _settle()
        cancelled.cancel()
        await _settle()
        fetcher.release.set()
        return fetcher, cancelled, await survivor

    fetcher, cancelled, result = asyncio.run(scenario())

    assert cancelled.cancelled()
    assert fetcher.calls == 1
    assert result == _state()


def test_store_ignores_older_fetch():
    cache = RefreshCache(FakeFetcher(_state()))
    cache._store(_state("on"), T0)
    cache._store(_state("off"), T0 - timedelta(seconds=1))

    assert cache.fetched_at == T0
    assert cache._entry.value.state == "on"


def test_failed_fetch_with_no_remaining_waiters_is_not_reported_to_loop():
    reported = []

    async def scenario():
        asyncio.get_running_loop().set_exception_handler(
            lambda loop, context: reported.append(context["message"])
        )
        fetcher = GatedFetcher(UpstreamUnavailable("connection refused"))
        cache = RefreshCache(fetcher)
        waiter = asyncio.create_task(cache.get(T0))
        await _settle()
        inflight = cache._inflight
        waiter.cancel()
        await _settle()
        fetcher.release.set()
        await _settle()
        assert inflight.done()
        del inflight, waiter
        gc.collect()
        await _settle()
        return fetcher, cache

    fetcher, cache = asyncio.run(scenario())
    gc.collect()

    assert reported == []
    assert fetcher.calls == 1
    assert cache.fetched_at is None
