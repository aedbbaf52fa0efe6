import asyncio
from datetime import timedelta

import pytest

from immortal_leaderboard.errors import PersistenceError, ValidationError
from immortal_leaderboard.leaderboard_service import LeaderboardService, RefreshCoordinator, RegionCache
from immortal_leaderboard.models import Region
from immortal_leaderboard.store import PersistenceStore

from fakes import FakeClock, FakeSource, leaderboard_markup, numbered_names, open_database


def _service(source, store=None, clock=None, wait_timeout=30):
    return LeaderboardService(
        source,
        store,
        cache=RegionCache(ttl=timedelta(hours=24), clock=clock),
        coordinator=RefreshCoordinator(wait_timeout=wait_timeout),
    )


def test_concurrent_gets_share_one_fetch():
    source = FakeSource(leaderboard_markup(["Alpha", "Beta"]), delay=0.05)
    service = _service(source)

    async def scenario():
        return await asyncio.gather(*(service.get_leaderboard(Region.EUROPE) for _ in range(10)))

    results = asyncio.run(scenario())

    assert source.calls == [Region.EUROPE]
    assert all(r is results[0] for r in results)
    assert results[0].success
    assert results[0].source == "live"
    assert [e.display_name for e in results[0].entries] == ["Alpha", "Beta"]


def test_fresh_cache_is_served_without_fetching():
    clock = FakeClock()
    source = FakeSource(leaderboard_markup(["Alpha"]))
    service = _service(source, clock=clock)

    async def scenario():
        first = await service.get_leaderboard(Region.EUROPE)
        clock.advance(hours=23, minutes=59)
        second = await service.get_leaderboard(Region.EUROPE)
        return first, second

    first, second = asyncio.run(scenario())

    assert len(source.calls) == 1
    assert second.fetched_at == first.fetched_at
    assert second.source == "live"


def test_stale_cache_triggers_exactly_one_fetch():
    clock = FakeClock()
    source = FakeSource(leaderboard_markup(["Alpha"]))
    service = _service(source, clock=clock)

    async def scenario():
        await service.get_leaderboard(Region.EUROPE)
        clock.advance(hours=24, seconds=1)
        await asyncio.gather(service.get_leaderboard(Region.EUROPE), service.get_leaderboard(Region.EUROPE))

    asyncio.run(scenario())

    assert len(source.calls) == 2


def test_regions_are_cached_independently():
    source = FakeSource(leaderboard_markup(["Alpha"]))
    service = _service(source)

    async def scenario():
        await service.get_leaderboard(Region.EUROPE)
        await service.get_leaderboard(Region.CHINA)
        await service.get_leaderboard(Region.EUROPE)

    asyncio.run(scenario())

    assert source.calls == [Region.EUROPE, Region.CHINA]


def test_force_refresh_always_fetches():
    source = FakeSource(leaderboard_markup(["Alpha"]))
    service = _service(source)

    async def scenario():
        await service.get_leaderboard(Region.EUROPE)
        return await service.force_refresh(Region.EUROPE)

    result = asyncio.run(scenario())

    assert len(source.calls) == 2
    assert result.source == "live"


def test_cold_region_without_history_returns_explicit_empty_result(db_url):
    source = FakeSource(fail_regions=[Region.SE_ASIA])

    async def scenario():
        database = await open_database(db_url)
        try:
            service = _service(source, PersistenceStore(database))
            return await service.get_leaderboard(Region.SE_ASIA)
        finally:
            await database.close()

    result = asyncio.run(scenario())

    assert result.success is False
    assert result.entries == []
    assert result.total_count == 0
    assert result.error


def test_failed_scrape_degrades_to_persisted_snapshot(db_url):
    names = numbered_names(50)

    async def scenario():
        database = await open_database(db_url)
        try:
            store = PersistenceStore(database)
            await _service(FakeSource(leaderboard_markup(names)), store).get_leaderboard(Region.EUROPE)

            # New process: empty cache, upstream down
            failing = FakeSource(fail_regions=[Region.EUROPE])
            service = _service(failing, store)
            result = await service.get_leaderboard(Region.EUROPE)
            return result, service
        finally:
            await database.close()

    result, service = asyncio.run(scenario())

    assert result.success is True
    assert result.source == "database"
    assert result.total_count == 50
    assert [e.display_name for e in result.entries] == names
    assert service.cache.peek(Region.EUROPE) is None


def test_empty_extraction_counts_as_failure():
    source = FakeSource("<html><body></body></html>")
    service = _service(source)

    result = asyncio.run(service.get_leaderboard(Region.EUROPE))

    assert result.success is False
    assert service.cache.peek(Region.EUROPE) is None
    assert not service.coordinator.is_refreshing(Region.EUROPE)


def test_failure_clears_in_flight_state_for_next_caller():
    source = FakeSource(leaderboard_markup(["Alpha"]), fail_regions=[Region.EUROPE])
    service = _service(source)

    async def scenario():
        first = await service.get_leaderboard(Region.EUROPE)
        source.fail_regions.clear()
        second = await service.get_leaderboard(Region.EUROPE)
        return first, second

    first, second = asyncio.run(scenario())

    assert first.success is False
    assert second.success is True
    assert len(source.calls) == 2


class _BrokenStore:
    async def replace_snapshot(self, snapshot):
        raise PersistenceError("replace_snapshot", "disk full")

    async def load_snapshot(self, region):
        return None


def test_persistence_failure_does_not_block_live_result():
    service = _service(FakeSource(leaderboard_markup(["Alpha"])), _BrokenStore())

    result = asyncio.run(service.get_leaderboard(Region.EUROPE))

    assert result.success is True
    assert result.source == "live"
    assert service.cache.peek(Region.EUROPE) is not None


def test_waiters_give_up_after_bounded_wait():
    source = FakeSource(leaderboard_markup(["Alpha"]), delay=0.3)
    service = _service(source, wait_timeout=0.01)

    async def scenario():
        leader = asyncio.ensure_future(service.get_leaderboard(Region.EUROPE))
        await asyncio.sleep(0)
        waiter = await service.get_leaderboard(Region.EUROPE)
        return await leader, waiter

    leader, waiter = asyncio.run(scenario())

    assert len(source.calls) == 1
    assert leader.success is True
    assert waiter.success is False
    assert waiter.entries == []


def test_clear_cache_drops_memory_only(db_url):
    async def scenario():
        database = await open_database(db_url)
        try:
            store = PersistenceStore(database)
            service = _service(FakeSource(leaderboard_markup(["Alpha"])), store)
            await service.get_leaderboard(Region.EUROPE)
            service.clear_cache()
            return service.cache_status(), await store.load_snapshot(Region.EUROPE)
        finally:
            await database.close()

    status, persisted = asyncio.run(scenario())

    assert status["europe"]["cached"] is False
    assert len(persisted) == 1


def test_find_player_exact_then_approximate():
    markup = {
        Region.EUROPE: leaderboard_markup(["Miracle-", "Topson"]),
        Region.AMERICAS: leaderboard_markup(["Arteezy", "miracle"]),
        Region.CHINA: leaderboard_markup(["Ame"]),
    }
    service = _service(FakeSource(markup, fail_regions=[Region.SE_ASIA]))

    matches = asyncio.run(service.find_player_across_regions("Miracle-"))

    by_region = {m["region"]: m for m in matches}
    assert set(by_region) == {Region.EUROPE, Region.AMERICAS}
    assert by_region[Region.EUROPE]["match_type"] == "exact"
    assert by_region[Region.AMERICAS]["match_type"] == "approximate"
    assert by_region[Region.AMERICAS]["entry"].rank == 2


def test_find_player_rejects_short_names():
    service = _service(FakeSource(leaderboard_markup(["Alpha"])))

    with pytest.raises(ValidationError):
        asyncio.run(service.find_player_across_regions("a"))


def test_unknown_region_is_a_validation_error():
    service = _service(FakeSource())

    with pytest.raises(ValidationError):
        asyncio.run(service.get_leaderboard("antarctica"))


def test_result_dict_shape():
    clock = FakeClock()
    service = _service(FakeSource(leaderboard_markup(["Alpha"])), clock=clock)

    data = asyncio.run(service.get_leaderboard(Region.SE_ASIA)).to_dict()

    assert set(data) == {"success", "region", "entries", "fetched_at", "source", "total_count"}
    assert data["success"] is True
    assert data["region"] == "se_asia"
    assert data["source"] == "live"
    assert data["total_count"] == 1
    assert data["entries"][0]["display_name"] == "Alpha"
    assert data["entries"][0]["region"] == "se_asia"
    assert data["fetched_at"] == clock.now.isoformat()

    empty = asyncio.run(_service(FakeSource(fail_regions=[Region.CHINA])).get_leaderboard(Region.CHINA)).to_dict()
    assert empty["success"] is False
    assert empty["total_count"] == 0
    assert "error" in empty
