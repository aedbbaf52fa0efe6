import asyncio
from datetime import datetime, timezone

from immortal_leaderboard.identity import SteamIdentityResolver
from immortal_leaderboard.known_players import KnownPlayersService
from immortal_leaderboard.leaderboard_service import LeaderboardService
from immortal_leaderboard.models import Region
from immortal_leaderboard.scheduler import LeaderboardScheduler
from immortal_leaderboard.store import LinkCandidate, PersistenceStore

from fakes import FakeClock, FakeSource, leaderboard_markup, open_database

ALL_REGIONS = list(Region)


def test_partial_failure_isolated_per_region():
    source = FakeSource(leaderboard_markup(["Alpha", "Beta"]), fail_regions=[Region.EUROPE])
    service = LeaderboardService(source)
    scheduler = LeaderboardScheduler(service, regions=ALL_REGIONS)

    async def scenario():
        first = await scheduler.run_manual()
        source.fail_regions.clear()
        second = await scheduler.run_manual()
        return first, second

    first, second = asyncio.run(scenario())

    assert first["europe"]["success"] is False
    assert all(first[r]["success"] for r in ("americas", "se_asia", "china"))
    assert second["europe"] == {"success": True, "count": 2}

    stats = scheduler.get_stats()
    assert stats["total_runs"] == 2
    assert stats["failed_runs"] == 1
    assert stats["successful_runs"] == 1
    assert stats["last_success"] is not None
    assert stats["last_error"] is not None
    assert stats["is_running"] is False


def test_failed_region_keeps_its_own_cache_state():
    source = FakeSource(leaderboard_markup(["Alpha"]), fail_regions=[Region.CHINA])
    service = LeaderboardService(source)
    scheduler = LeaderboardScheduler(service, regions=ALL_REGIONS)

    asyncio.run(scheduler.run_manual())

    status = service.cache_status()
    assert status["china"]["cached"] is False
    assert all(status[r]["cached"] for r in ("americas", "europe", "se_asia"))
    assert scheduler.get_stats()["successful_runs"] == 0


def test_trigger_while_running_is_skipped():
    service = LeaderboardService(FakeSource(leaderboard_markup(["Alpha"])))
    scheduler = LeaderboardScheduler(service, regions=[Region.EUROPE])
    scheduler.is_running = True

    assert asyncio.run(scheduler.run_scheduled_update()) is None
    assert scheduler.get_stats()["total_runs"] == 0


def test_overlapping_manual_runs_fetch_once():
    source = FakeSource(leaderboard_markup(["Alpha"]), delay=0.05)
    scheduler = LeaderboardScheduler(LeaderboardService(source), regions=[Region.EUROPE])

    async def scenario():
        return await asyncio.gather(scheduler.run_manual(), scheduler.run_manual())

    first, second = asyncio.run(scenario())

    assert first["europe"]["success"] is True
    assert second is None
    assert len(source.calls) == 1


def test_next_run_is_at_configured_minute():
    clock = FakeClock(datetime(2026, 3, 1, 10, 30, tzinfo=timezone.utc))
    scheduler = LeaderboardScheduler(LeaderboardService(FakeSource()), regions=[Region.EUROPE],
                                     minute=18, clock=clock)

    assert scheduler.get_next_run_time() == datetime(2026, 3, 1, 11, 18, tzinfo=timezone.utc)

    clock.now = datetime(2026, 3, 1, 10, 5, tzinfo=timezone.utc)
    assert scheduler.get_next_run_time() == datetime(2026, 3, 1, 10, 18, tzinfo=timezone.utc)

    clock.now = datetime(2026, 3, 1, 23, 18, tzinfo=timezone.utc)
    assert scheduler.get_stats()["next_run"] == datetime(2026, 3, 2, 0, 18, tzinfo=timezone.utc)


def test_run_on_start_then_stop():
    source = FakeSource(leaderboard_markup(["Alpha"]))
    scheduler = LeaderboardScheduler(LeaderboardService(source), regions=[Region.EUROPE],
                                     run_on_start=True)

    async def scenario():
        scheduler.start()
        for _ in range(50):
            if scheduler.stats["total_runs"]:
                break
            await asyncio.sleep(0.01)
        await scheduler.stop()

    asyncio.run(scenario())

    assert scheduler.stats["total_runs"] == 1
    assert source.calls == [Region.EUROPE]


def test_successful_cycle_links_identities_and_syncs_registry(db_url):
    ame = "76561198000000001"

    async def scenario():
        database = await open_database(db_url)
        try:
            store = PersistenceStore(database)
            registry = KnownPlayersService(database, store, resolver=SteamIdentityResolver(api_key=""))
            await registry.add_known_player(ame, "Ame", "europe")

            source = FakeSource(leaderboard_markup(["Miracle-", "AME", "Topson"]))
            service = LeaderboardService(source, store)
            scheduler = LeaderboardScheduler(service, registry, regions=[Region.EUROPE])
            await scheduler.run_manual()

            cached = await service.get_leaderboard(Region.EUROPE)
            players = await registry.list_known_players(Region.EUROPE)
            return cached, players
        finally:
            await database.close()

    cached, players = asyncio.run(scenario())

    assert {e.display_name: e.stable_id for e in cached.entries}["AME"] == ame
    assert players[0]["last_known_rank"] == 2
    assert players[0]["observed_display_name"] == "AME"
    assert players[0]["status"] == "active"


def test_identity_provider_overrides_registry(db_url):
    async def provider():
        return [LinkCandidate("42", ("topson",))]

    async def scenario():
        database = await open_database(db_url)
        try:
            store = PersistenceStore(database)
            service = LeaderboardService(FakeSource(leaderboard_markup(["Topson"])), store)
            scheduler = LeaderboardScheduler(service, regions=[Region.EUROPE], identity_provider=provider)
            await scheduler.run_manual()
            return await store.load_snapshot(Region.EUROPE)
        finally:
            await database.close()

    snapshot = asyncio.run(scenario())

    assert snapshot.entries[0].stable_id == "42"


class ExplodingRegistry:
    """Registry whose link and sync steps fail with non-domain errors"""

    def __init__(self):
        self.synced = []

    async def link_candidates(self):
        raise RuntimeError("identity backend down")

    async def sync_with_leaderboard(self, region):
        self.synced.append(region)
        raise ValueError("'bogus' is not a valid ConfidenceLevel")


def test_link_and_sync_crashes_do_not_abort_cycle(db_url):
    registry = ExplodingRegistry()

    async def scenario():
        database = await open_database(db_url)
        try:
            service = LeaderboardService(FakeSource(leaderboard_markup(["Alpha"])), PersistenceStore(database))
            scheduler = LeaderboardScheduler(service, registry, regions=[Region.EUROPE, Region.CHINA])
            first = await scheduler.run_manual()
            second = await scheduler.run_manual()
            return scheduler, first, second
        finally:
            await database.close()

    scheduler, first, second = asyncio.run(scenario())

    assert first == second == {"europe": {"success": True, "count": 1}, "china": {"success": True, "count": 1}}
    assert registry.synced == [Region.EUROPE, Region.CHINA] * 2
    stats = scheduler.get_stats()
    assert stats["total_runs"] == 2
    assert stats["successful_runs"] == 2
    assert stats["is_running"] is False
    assert scheduler.last_results == second


def test_loop_keeps_running_after_a_crashed_cycle():
    source = FakeSource(leaderboard_markup(["Alpha"]))
    scheduler = LeaderboardScheduler(LeaderboardService(source), regions=[Region.EUROPE], run_on_start=True)
    scheduler.get_next_run_time = scheduler.clock
    real_update = scheduler.run_scheduled_update
    attempts = []

    async def flaky_update():
        attempts.append(1)
        if len(attempts) == 1:
            raise RuntimeError("unexpected")
        return await real_update()

    scheduler.run_scheduled_update = flaky_update

    async def scenario():
        scheduler.start()
        for _ in range(100):
            if scheduler.stats["total_runs"] >= 2:
                break
            await asyncio.sleep(0.01)
        alive = not scheduler._task.done()
        await scheduler.stop()
        return alive

    assert asyncio.run(scenario()) is True
    assert len(attempts) >= 3
    assert scheduler.stats["total_runs"] >= 2
