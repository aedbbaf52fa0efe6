#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Leaderboard read path: per-region cache, single-flight refresh and fallback.

A region is served from memory while its snapshot is younger than the TTL.
Otherwise one refresh runs (fetch, extract, persist, cache) and every
concurrent caller for that region shares its outcome. Failed refreshes never
touch the cache; callers get the last persisted snapshot instead, or an
explicit empty result when nothing was ever stored.
"""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from .config import Config
from .errors import ExtractionEmpty, FetchError, PersistenceError, ValidationError
from .extractor import extract
from .models import LeaderboardEntry, LeaderboardResult, Region, Snapshot
from .sources import LeaderboardSource
from .store import PersistenceStore

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ============== Region cache ==============


class RegionCache:
    """In-memory latest snapshot per region with a freshness TTL"""

    def __init__(self, ttl: Optional[timedelta] = None, clock: Optional[Clock] = None):
        self.ttl = ttl or timedelta(hours=Config.CACHE_TTL_HOURS)
        self.clock = clock or utc_now
        self._snapshots: Dict[Region, Snapshot] = {}

    def is_fresh(self, region: Region) -> bool:
        snapshot = self._snapshots.get(region)
        return snapshot is not None and self.clock() - snapshot.fetched_at < self.ttl

    def get(self, region: Region) -> Optional[Snapshot]:
        """Fresh snapshot or None"""
        return self._snapshots[region] if self.is_fresh(region) else None

    def peek(self, region: Region) -> Optional[Snapshot]:
        """Cached snapshot regardless of age"""
        return self._snapshots.get(region)

    def set(self, snapshot: Snapshot):
        self._snapshots[snapshot.region] = snapshot

    def invalidate(self, region: Region):
        self._snapshots.pop(region, None)

    def clear(self):
        self._snapshots.clear()


# ============== Refresh coordination ==============


class RefreshCoordinator:
    """At most one refresh task per region; late callers share it"""

    def __init__(self, wait_timeout: Optional[float] = None):
        self.wait_timeout = Config.INFLIGHT_WAIT_SECONDS if wait_timeout is None else wait_timeout
        self._inflight: Dict[Region, asyncio.Task] = {}

    def is_refreshing(self, region: Region) -> bool:
        task = self._inflight.get(region)
        return task is not None and not task.done()

    async def run(self, region: Region,
                  refresh: Callable[[], Awaitable[LeaderboardResult]]) -> Optional[LeaderboardResult]:
        """Start or join the region's refresh.

        The caller that starts the refresh waits for it to finish. Callers that
        join an in-flight refresh wait at most ``wait_timeout`` seconds and get
        None if it has not finished by then.
        """
        task = self._inflight.get(region)
        if task is not None and not task.done():
            logger.debug(f"{region.value}: refresh in flight, waiting up to {self.wait_timeout}s")
            try:
                return await asyncio.wait_for(asyncio.shield(task), self.wait_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"{region.value}: gave up waiting for in-flight refresh")
                return None

        task = asyncio.ensure_future(refresh())
        self._inflight[region] = task
        task.add_done_callback(lambda t: self._clear(region, t))
        return await asyncio.shield(task)

    def _clear(self, region: Region, task: asyncio.Task):
        if self._inflight.get(region) is task:
            del self._inflight[region]


# ============== Service ==============


class LeaderboardService:
    """Regional leaderboard reads backed by cache, live scrape and the store"""

    def __init__(self, source: LeaderboardSource, store: Optional[PersistenceStore] = None,
                 cache: Optional[RegionCache] = None,
                 coordinator: Optional[RefreshCoordinator] = None,
                 max_entries: Optional[int] = None, heuristic_limit: Optional[int] = None):
        self.source = source
        self.store = store
        self.cache = cache or RegionCache()
        self.coordinator = coordinator or RefreshCoordinator()
        self.max_entries = max_entries
        self.heuristic_limit = heuristic_limit

    async def get_leaderboard(self, region: Region) -> LeaderboardResult:
        region = Region.parse(region)
        snapshot = self.cache.get(region)
        if snapshot is not None:
            return LeaderboardResult.from_snapshot(snapshot)

        result = await self.coordinator.run(region, lambda: self._refresh(region))
        if result is not None:
            return result

        # Waited out the in-flight refresh: serve whatever is cached
        snapshot = self.cache.peek(region)
        if snapshot is not None:
            return LeaderboardResult.from_snapshot(snapshot)
        return LeaderboardResult.empty(region, "Leaderboard refresh still in progress")

    async def force_refresh(self, region: Region) -> LeaderboardResult:
        region = Region.parse(region)
        self.cache.invalidate(region)
        return await self.get_leaderboard(region)

    def clear_cache(self):
        self.cache.clear()
        logger.info("Leaderboard cache cleared")

    async def reload_from_store(self, region: Region) -> bool:
        """Re-read a region's persisted rows into the cache (picks up linked identities)"""
        region = Region.parse(region)
        if self.store is None or self.cache.peek(region) is None:
            return False
        snapshot = await self.store.load_snapshot(region)
        if snapshot is None:
            return False
        self.cache.set(snapshot)
        return True

    async def _refresh(self, region: Region) -> LeaderboardResult:
        logger.info(f"Refreshing leaderboard for {region.value}")
        try:
            markup = await self.source.fetch(region)
            entries = extract(markup, region, self.max_entries, self.heuristic_limit)
            if not entries:
                raise ExtractionEmpty(region.value)
        except (FetchError, ExtractionEmpty) as e:
            logger.warning(f"Refresh failed for {region.value}: {e}")
            return await self._fallback(region, str(e))
        except Exception as e:
            logger.exception(f"Unexpected error refreshing {region.value}: {e}")
            return await self._fallback(region, str(e))

        snapshot = Snapshot(region=region, entries=tuple(entries), fetched_at=self.cache.clock())
        if self.store is not None:
            try:
                stored = await self.store.replace_snapshot(snapshot)
                snapshot = Snapshot(region=region, entries=tuple(stored), fetched_at=snapshot.fetched_at)
            except PersistenceError as e:
                logger.error(f"Could not persist {region.value} snapshot: {e}")

        self.cache.set(snapshot)
        logger.info(f"{region.value}: {len(snapshot)} entries cached")
        return LeaderboardResult.from_snapshot(snapshot)

    async def _fallback(self, region: Region, error: str) -> LeaderboardResult:
        if self.store is not None:
            try:
                snapshot = await self.store.load_snapshot(region)
            except PersistenceError as e:
                logger.error(f"Fallback load failed for {region.value}: {e}")
                snapshot = None
            if snapshot is not None:
                logger.info(f"{region.value}: serving {len(snapshot)} persisted entries")
                return LeaderboardResult.from_snapshot(snapshot, source="database")
        return LeaderboardResult.empty(region, error)

    # ============== Lookups ==============

    async def find_player_across_regions(self, name: str,
                                         regions: Optional[Iterable[Region]] = None) -> List[Dict[str, Any]]:
        """Search every region for a display name, exact match first then punctuation-insensitive"""
        name = (name or "").strip()
        if len(name) < 2:
            raise ValidationError("Player name too short", "Player name must be at least 2 characters.")

        needle = name.lower()
        loose = _loose(name)
        matches = []
        for region in regions or Config.get_regions():
            try:
                result = await self.get_leaderboard(region)
            except Exception as e:
                logger.warning(f"Search skipped {Region.parse(region).value}: {e}")
                continue

            match = _find(result.entries, lambda e: e.display_name.lower() == needle)
            match_type = "exact"
            if match is None and loose:
                match = _find(result.entries, lambda e: _loose(e.display_name) == loose)
                match_type = "approximate"
            if match is not None:
                matches.append({"entry": match, "region": result.region, "match_type": match_type})
        return matches

    def cache_status(self) -> Dict[str, Dict[str, Any]]:
        status = {}
        for region in Region:
            snapshot = self.cache.peek(region)
            status[region.value] = {
                "cached": snapshot is not None,
                "fresh": self.cache.is_fresh(region),
                "refreshing": self.coordinator.is_refreshing(region),
                "fetched_at": snapshot.fetched_at if snapshot else None,
                "count": len(snapshot) if snapshot else 0,
            }
        return status

    async def close(self):
        await self.source.close()


def _loose(name: str) -> str:
    return re.sub(r"[^\w]", "", name).lower()


def _find(entries: Iterable[LeaderboardEntry], predicate) -> Optional[LeaderboardEntry]:
    for entry in entries:
        if predicate(entry):
            return entry
    return None
