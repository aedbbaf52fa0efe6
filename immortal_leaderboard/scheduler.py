#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Hourly leaderboard refresh cycle.

Every hour at a fixed minute all configured regions are force-refreshed in
parallel. Regions that came back with live data then go through identity
linking and known player reconciliation.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from .config import Config
from .errors import LeaderboardError
from .known_players import KnownPlayersService
from .leaderboard_service import Clock, LeaderboardService, utc_now
from .models import Region
from .store import LinkCandidate

logger = logging.getLogger(__name__)

IdentityProvider = Callable[[], Awaitable[Iterable[LinkCandidate]]]


class LeaderboardScheduler:
    """Periodic refresh of every region plus post-refresh reconciliation"""

    def __init__(self, service: LeaderboardService, registry: Optional[KnownPlayersService] = None,
                 regions: Optional[Iterable[Region]] = None, minute: Optional[int] = None,
                 identity_provider: Optional[IdentityProvider] = None,
                 run_on_start: Optional[bool] = None, clock: Optional[Clock] = None):
        self.service = service
        self.registry = registry
        self.regions: List[Region] = [Region.parse(r) for r in (regions or Config.get_regions())]
        self.minute = Config.SCHEDULE_MINUTE if minute is None else minute
        if not 0 <= self.minute <= 59:
            raise ValueError("minute must be between 0 and 59")
        self.identity_provider = identity_provider
        self.run_on_start = Config.RUN_ON_START if run_on_start is None else run_on_start
        self.clock = clock or utc_now

        self.is_running = False
        self.last_run: Optional[datetime] = None
        self.last_results: Dict[str, Dict[str, Any]] = {}
        self.stats = {
            "total_runs": 0,
            "successful_runs": 0,
            "failed_runs": 0,
            "last_success": None,
            "last_error": None,
        }
        self._task: Optional[asyncio.Task] = None

    # ============== Lifecycle ==============

    def start(self):
        if self._task and not self._task.done():
            logger.warning("Scheduler already started")
            return
        logger.info(f"Leaderboard scheduler started: every hour at minute {self.minute:02d}")
        self._task = asyncio.create_task(self._loop())

    async def stop(self):
        if not self._task:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Leaderboard scheduler stopped")

    async def _loop(self):
        if self.run_on_start:
            logger.info("Running initial refresh on start")
            await self._run_cycle()
        while True:
            delay = (self.get_next_run_time() - self.clock()).total_seconds()
            await asyncio.sleep(max(delay, 0))
            await self._run_cycle()

    async def _run_cycle(self):
        try:
            await self.run_scheduled_update()
        except Exception:
            logger.exception("Scheduled refresh cycle crashed")

    def get_next_run_time(self) -> datetime:
        now = self.clock()
        next_run = now.replace(minute=self.minute, second=0, microsecond=0)
        if next_run <= now:
            next_run += timedelta(hours=1)
        return next_run

    # ============== Cycle ==============

    async def run_manual(self) -> Optional[Dict[str, Dict[str, Any]]]:
        logger.info("Manual leaderboard refresh requested")
        return await self.run_scheduled_update()

    async def run_scheduled_update(self) -> Optional[Dict[str, Dict[str, Any]]]:
        """One full cycle; returns per-region outcomes, or None if a cycle was already running"""
        if self.is_running:
            logger.warning("Leaderboard refresh already running, skipping this trigger")
            return None

        self.is_running = True
        self.last_run = self.clock()
        self.stats["total_runs"] += 1
        started = time.monotonic()
        logger.info(f"Scheduled refresh started for {len(self.regions)} regions")

        try:
            outcomes = await asyncio.gather(
                *(self.service.force_refresh(region) for region in self.regions),
                return_exceptions=True,
            )

            results: Dict[str, Dict[str, Any]] = {}
            succeeded: List[Region] = []
            for region, outcome in zip(self.regions, outcomes):
                if isinstance(outcome, BaseException):
                    logger.error(f"{region.value}: refresh raised {outcome!r}")
                    results[region.value] = {"success": False, "error": str(outcome)}
                elif outcome.success and outcome.source == "live":
                    results[region.value] = {"success": True, "count": outcome.total_count}
                    succeeded.append(region)
                else:
                    results[region.value] = {
                        "success": False,
                        "error": outcome.error or f"served from {outcome.source}",
                    }

            elapsed = time.monotonic() - started
            if len(succeeded) == len(self.regions):
                self.stats["successful_runs"] += 1
                self.stats["last_success"] = self.clock()
                logger.info(f"Scheduled refresh complete: {len(succeeded)}/{len(self.regions)} regions in {elapsed:.1f}s")
            else:
                self.stats["failed_runs"] += 1
                self.stats["last_error"] = self.clock()
                logger.warning(f"Scheduled refresh partially failed: {len(succeeded)}/{len(self.regions)} regions in {elapsed:.1f}s")

            if succeeded:
                await self._reconcile(succeeded)

            self.last_results = results
            return results
        finally:
            self.is_running = False
            logger.info(f"Scheduler stats: {self.stats['successful_runs']} succeeded, {self.stats['failed_runs']} failed")

    async def _reconcile(self, regions: List[Region]):
        try:
            await self.link_stable_ids(regions)
        except LeaderboardError as e:
            logger.error(f"Identity linking failed: {e}")
        except Exception:
            logger.exception("Identity linking crashed")

        if self.registry is None:
            return
        for region in regions:
            try:
                await self.registry.sync_with_leaderboard(region)
            except LeaderboardError as e:
                logger.error(f"Known player sync failed for {region.value}: {e}")
            except Exception:
                logger.exception(f"Known player sync crashed for {region.value}")

    async def link_stable_ids(self, regions: Optional[List[Region]] = None) -> int:
        """Attach known identities to freshly scraped rows"""
        store = self.service.store
        if store is None:
            return 0

        if self.identity_provider is not None:
            candidates = list(await self.identity_provider())
        elif self.registry is not None:
            candidates = await self.registry.link_candidates()
        else:
            candidates = []

        if not candidates:
            logger.info("No identities to link")
            return 0

        logger.info(f"Linking {len(candidates)} known identities")
        linked = await store.link_stable_ids(candidates, regions)
        if linked:
            for region in regions or self.regions:
                await self.service.reload_from_store(region)
        return linked

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "is_running": self.is_running,
            "last_run": self.last_run,
            "next_run": self.get_next_run_time(),
            "regions": [r.value for r in self.regions],
            "last_results": self.last_results,
        }
