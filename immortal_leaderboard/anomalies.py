#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Rank anomaly detection against the known players registry.

Detection is read-only. Change log rows are only written through
record_change, which the registry's reconciliation path calls.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from .config import Config
from .database import KnownPlayer, LeaderboardChange
from .models import ChangeType, LeaderboardEntry, Region

logger = logging.getLogger(__name__)

# (upper rank bound, allowed movement)
VOLATILITY_SECTORS = (
    (100, 100),
    (500, 200),
    (1000, 300),
    (2000, 400),
    (3000, 500),
)
ADAPTATION_SECTOR = 600


def volatility_sector(rank: int) -> int:
    """Maximum plausible rank movement for a rank; widens further from the top"""
    for upper, sector in VOLATILITY_SECTORS:
        if rank <= upper:
            return sector
    return ADAPTATION_SECTOR


def is_policed(rank: int) -> bool:
    """Ranks in the adaptation zone are not checked for volatility"""
    return volatility_sector(rank) != ADAPTATION_SECTOR


def exceeds_volatility(rank: int, previous_rank: Optional[int]) -> bool:
    if previous_rank is None or not is_policed(rank):
        return False
    return abs(previous_rank - rank) > volatility_sector(rank)


@dataclass
class AnomalyReport:
    volatility_anomalies: List[Dict[str, Any]] = field(default_factory=list)
    unknown_players: List[Dict[str, Any]] = field(default_factory=list)
    name_changes: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def summary(self) -> Dict[str, int]:
        return {
            "total_anomalies": len(self.volatility_anomalies) + len(self.unknown_players) + len(self.name_changes),
            "volatility_issues": len(self.volatility_anomalies),
            "unknown_in_top": len(self.unknown_players),
            "name_change_alerts": len(self.name_changes),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "volatility_anomalies": self.volatility_anomalies,
            "unknown_players": self.unknown_players,
            "name_changes": self.name_changes,
            "summary": self.summary,
        }


class AnomalyDetector:
    """Compares a region's current entries with its known players"""

    def __init__(self, unknown_top_n: Optional[int] = None):
        self.unknown_top_n = unknown_top_n or Config.UNKNOWN_TOP_N

    def detect(self, entries: Iterable[LeaderboardEntry], known_players: Iterable[KnownPlayer]) -> AnomalyReport:
        known = {p.steam_id: p for p in known_players}
        report = AnomalyReport()
        seen = set()

        for entry in sorted(entries, key=lambda e: e.rank):
            player = known.get(entry.stable_id) if entry.stable_id else None

            if player is None:
                if entry.rank <= self.unknown_top_n:
                    report.unknown_players.append({
                        "stable_id": entry.stable_id,
                        "display_name": entry.display_name,
                        "rank": entry.rank,
                        "team_tag": entry.team_tag,
                    })
                continue

            # Duplicate rows for one identity: only the best rank counts
            if entry.stable_id in seen:
                continue
            seen.add(entry.stable_id)

            if exceeds_volatility(entry.rank, entry.previous_rank):
                expected = volatility_sector(entry.rank)
                movement = abs(entry.previous_rank - entry.rank)
                report.volatility_anomalies.append({
                    "stable_id": entry.stable_id,
                    "display_name": entry.display_name,
                    "rank": entry.rank,
                    "previous_rank": entry.previous_rank,
                    "rank_change": entry.previous_rank - entry.rank,
                    "expected_volatility": expected,
                    "exceeded_by": movement - expected,
                    "competitive_name": player.competitive_name,
                    "confidence_level": player.confidence_level,
                })

            if player.observed_display_name and player.observed_display_name != entry.display_name:
                report.name_changes.append({
                    "stable_id": entry.stable_id,
                    "old_value": player.observed_display_name,
                    "new_value": entry.display_name,
                    "competitive_name": player.competitive_name,
                    "rank": entry.rank,
                    "confidence_level": player.confidence_level,
                })

        report.volatility_anomalies.sort(key=lambda a: a["exceeded_by"], reverse=True)
        return report


def record_change(session: AsyncSession, region: Region, change_type: ChangeType, *,
                  stable_id: Optional[str] = None, display_name: Optional[str] = None,
                  old_value: Any = None, new_value: Any = None,
                  rank_position: Optional[int] = None, previous_rank: Optional[int] = None,
                  volatility_exceeded: bool = False,
                  detail: Optional[Dict[str, Any]] = None) -> LeaderboardChange:
    """Append a change log row to the session (committed with the caller's transaction)"""
    change = LeaderboardChange(
        region=Region.parse(region).value,
        steam_id=stable_id,
        player_name=display_name,
        change_type=ChangeType(change_type).value,
        old_value=None if old_value is None else str(old_value),
        new_value=None if new_value is None else str(new_value),
        rank_position=rank_position,
        previous_rank=previous_rank,
        volatility_exceeded=volatility_exceeded,
        change_details=detail or {},
    )
    session.add(change)
    logger.debug(f"Change logged: {change.change_type} {display_name or stable_id} ({change.region})")
    return change
