#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Leaderboard data models shared by the scraper, cache, store and registry.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .errors import ValidationError


# ============== Enums ==============


class Region(str, Enum):
    AMERICAS = "americas"
    EUROPE = "europe"
    SE_ASIA = "se_asia"
    CHINA = "china"

    @classmethod
    def parse(cls, value) -> "Region":
        """Accept a Region or its code; anything else is a ValidationError"""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = ", ".join(r.value for r in cls)
            raise ValidationError(
                f"Invalid region '{value}'", f"Invalid region. Use: {valid}"
            ) from None


class ConfidenceLevel(str, Enum):
    CONFIRMED = "confirmed"
    HIGH = "high"
    MEDIUM = "medium"
    OBSERVATION = "observation"
    UNKNOWN = "unknown"

    @property
    def weight(self) -> int:
        """Higher means more trusted"""
        return _CONFIDENCE_WEIGHTS[self]

    def outranks(self, other: "ConfidenceLevel") -> bool:
        return self.weight > other.weight


_CONFIDENCE_WEIGHTS = {
    ConfidenceLevel.CONFIRMED: 5,
    ConfidenceLevel.HIGH: 4,
    ConfidenceLevel.MEDIUM: 3,
    ConfidenceLevel.OBSERVATION: 2,
    ConfidenceLevel.UNKNOWN: 1,
}


class PlayerStatus(str, Enum):
    ACTIVE = "active"
    MISSING = "missing"
    INACTIVE = "inactive"


class ChangeType(str, Enum):
    NEW_KNOWN_PLAYER = "new_known_player"
    PLAYER_UPDATED = "player_updated"
    PLAYER_REMOVED = "player_removed"
    VOLATILITY_ALERT = "volatility_alert"
    NAME_CHANGE = "name_change"
    NEW_PLAYER = "new_player"
    MISSING_PLAYER = "missing_player"
    CONFIDENCE_DOWNGRADE = "confidence_downgrade"


# ============== Data models ==============


@dataclass(frozen=True)
class LeaderboardEntry:
    """One player's position in one region at one point in time"""

    region: Region
    rank: int
    display_name: str
    team_tag: Optional[str] = None
    country: Optional[str] = None
    stable_id: Optional[str] = None
    previous_rank: Optional[int] = None  # only set on rows read back from the store
    rank_change: Optional[int] = None

    def with_history(self, previous_rank: Optional[int], stable_id: Optional[str]) -> "LeaderboardEntry":
        rank_change = previous_rank - self.rank if previous_rank is not None else None
        return replace(
            self,
            previous_rank=previous_rank,
            rank_change=rank_change,
            stable_id=self.stable_id or stable_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["region"] = self.region.value
        return data


@dataclass(frozen=True)
class Snapshot:
    """Immutable ordered leaderboard read-out for a region"""

    region: Region
    entries: Tuple[LeaderboardEntry, ...]
    fetched_at: datetime

    def __len__(self) -> int:
        return len(self.entries)


@dataclass
class LeaderboardResult:
    """Read-API response for one region"""

    success: bool
    region: Region
    entries: List[LeaderboardEntry] = field(default_factory=list)
    fetched_at: Optional[datetime] = None
    source: str = "live"  # live | database
    error: Optional[str] = None
    snapshot: Optional[Snapshot] = field(default=None, repr=False, compare=False)

    @property
    def total_count(self) -> int:
        return len(self.entries)

    @classmethod
    def from_snapshot(cls, snapshot: Snapshot, source: str = "live") -> "LeaderboardResult":
        return cls(
            success=True,
            region=snapshot.region,
            entries=list(snapshot.entries),
            fetched_at=snapshot.fetched_at,
            source=source,
            snapshot=snapshot,
        )

    @classmethod
    def empty(cls, region: Region, error: str = "No data available") -> "LeaderboardResult":
        return cls(success=False, region=region, entries=[], error=error)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "success": self.success,
            "region": self.region.value,
            "entries": [e.to_dict() for e in self.entries],
            "fetched_at": self.fetched_at.isoformat() if self.fetched_at else None,
            "source": self.source,
            "total_count": self.total_count,
        }
        if self.error:
            data["error"] = self.error
        return data
