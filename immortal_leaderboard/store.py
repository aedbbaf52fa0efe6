#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Durable copy of the latest snapshot per region.

Every successful scrape replaces the region's rows wholesale. Rank history
(previous_rank / rank_change) is derived here by matching each new entry to
the row it replaces, and stable identities linked on old rows carry forward.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from rapidfuzz import fuzz
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from .config import Config
from .database import BaseService, Database, LeaderboardRow
from .errors import PersistenceError
from .models import LeaderboardEntry, Region, Snapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LinkCandidate:
    """A stable identity plus the names it is known to play under"""

    stable_id: str
    names: Tuple[str, ...]


def clean_name(name: str) -> str:
    return re.sub(r"[^a-z0-9]", "", (name or "").lower())


def to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def from_utc_naive(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class PersistenceStore(BaseService):
    """Leaderboard snapshot persistence and identity linking"""

    def __init__(self, database: Database, link_threshold: Optional[int] = None):
        super().__init__(database)
        self.link_threshold = link_threshold or Config.LINK_MATCH_THRESHOLD

    # ============== Snapshots ==============

    async def replace_snapshot(self, snapshot: Snapshot) -> List[LeaderboardEntry]:
        """Delete-then-insert the region's rows; returns entries with rank history attached"""
        region = snapshot.region.value
        try:
            async with self.get_session() as session:
                result = await session.execute(
                    select(LeaderboardRow).where(LeaderboardRow.region == region)
                )
                old_rows = result.scalars().all()
                matcher = _PreviousRowMatcher(old_rows)

                await session.execute(delete(LeaderboardRow).where(LeaderboardRow.region == region))

                updated_at = to_utc_naive(snapshot.fetched_at)
                stored: List[LeaderboardEntry] = []
                for entry in snapshot.entries:
                    old = matcher.match(entry)
                    enriched = entry.with_history(
                        old.rank if old else None,
                        old.steam_id if old else None,
                    )
                    session.add(LeaderboardRow(
                        region=region,
                        rank=enriched.rank,
                        name=enriched.display_name,
                        team_tag=enriched.team_tag,
                        country=enriched.country,
                        steam_id=enriched.stable_id,
                        previous_rank=enriched.previous_rank,
                        rank_change=enriched.rank_change,
                        updated_at=updated_at,
                    ))
                    stored.append(enriched)
        except SQLAlchemyError as e:
            raise PersistenceError(f"replace_snapshot({region})", str(e)) from e

        logger.info(f"Saved {len(stored)} leaderboard rows for {region}")
        return stored

    async def load_snapshot(self, region: Region) -> Optional[Snapshot]:
        """Most recently persisted snapshot for the region, or None"""
        region = Region.parse(region)

        async def _load():
            async with self.get_session() as session:
                result = await session.execute(
                    select(LeaderboardRow)
                    .where(LeaderboardRow.region == region.value)
                    .order_by(LeaderboardRow.rank.asc(), LeaderboardRow.id.asc())
                )
                return result.scalars().all()

        try:
            rows = await self.execute_with_retry(_load)
        except SQLAlchemyError as e:
            raise PersistenceError(f"load_snapshot({region.value})", str(e)) from e

        if not rows:
            return None

        fetched_at = max((r.updated_at for r in rows if r.updated_at), default=None)
        return Snapshot(
            region=region,
            entries=tuple(_row_to_entry(row, region) for row in rows),
            fetched_at=from_utc_naive(fetched_at) or datetime.now(timezone.utc),
        )

    # ============== Identity linking ==============

    async def link_stable_ids(self, candidates: Iterable[LinkCandidate],
                              regions: Optional[Sequence[Region]] = None) -> int:
        """Attach stable ids to unlinked rows whose name matches a candidate's name"""
        candidates = [c for c in candidates if c.stable_id and c.names]
        if not candidates:
            return 0

        linked = 0
        try:
            async with self.get_session() as session:
                query = select(LeaderboardRow).where(LeaderboardRow.steam_id.is_(None))
                if regions:
                    query = query.where(LeaderboardRow.region.in_([Region.parse(r).value for r in regions]))
                rows = (await session.execute(query)).scalars().all()

                for candidate in candidates:
                    for name in candidate.names:
                        for row in rows:
                            if row.steam_id is None and self._names_match(name, row.name):
                                row.steam_id = candidate.stable_id
                                linked += 1
                                logger.info(f"Linked '{row.name}' ({row.region} #{row.rank}) -> {candidate.stable_id}")
        except SQLAlchemyError as e:
            raise PersistenceError("link_stable_ids", str(e)) from e

        logger.info(f"Identity linking complete: {linked} rows linked")
        return linked

    def _names_match(self, candidate: str, observed: str) -> bool:
        if not candidate or not observed:
            return False
        if candidate.lower() == observed.lower():
            return True
        a, b = clean_name(candidate), clean_name(observed)
        if len(a) < 3 or len(b) < 3:
            return False
        return a == b or fuzz.ratio(a, b) >= self.link_threshold


class _PreviousRowMatcher:
    """Pairs incoming entries with the rows they replace, each old row used at most once"""

    def __init__(self, rows):
        self._by_id: Dict[str, LeaderboardRow] = {}
        self._by_name: Dict[str, LeaderboardRow] = {}
        self._used = set()
        for row in rows:
            if row.steam_id:
                self._by_id.setdefault(row.steam_id, row)
            self._by_name.setdefault(row.name.lower(), row)

    def match(self, entry: LeaderboardEntry) -> Optional[LeaderboardRow]:
        row = None
        if entry.stable_id:
            row = self._by_id.get(entry.stable_id)
        if row is None:
            row = self._by_name.get(entry.display_name.lower())
        if row is None or id(row) in self._used:
            return None
        self._used.add(id(row))
        return row


def _row_to_entry(row: LeaderboardRow, region: Region) -> LeaderboardEntry:
    return LeaderboardEntry(
        region=region,
        rank=row.rank,
        display_name=row.name,
        team_tag=row.team_tag,
        country=row.country,
        stable_id=row.steam_id,
        previous_rank=row.previous_rank,
        rank_change=row.rank_change,
    )
