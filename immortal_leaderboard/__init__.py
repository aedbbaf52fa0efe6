"""
Dota 2 Immortal leaderboard scraper, cache and known players registry.
"""

from .anomalies import AnomalyDetector, AnomalyReport, volatility_sector
from .database import Database
from .errors import (
    DuplicatePlayerError,
    ExtractionEmpty,
    FetchError,
    LeaderboardError,
    PersistenceError,
    PlayerNotFoundError,
    ValidationError,
)
from .extractor import extract
from .known_players import KnownPlayersService
from .leaderboard_service import LeaderboardService, RefreshCoordinator, RegionCache
from .models import (
    ChangeType,
    ConfidenceLevel,
    LeaderboardEntry,
    LeaderboardResult,
    PlayerStatus,
    Region,
    Snapshot,
)
from .scheduler import LeaderboardScheduler
from .sources import CurlLeaderboardSource, LeaderboardSource, PlaywrightLeaderboardSource, create_source
from .store import LinkCandidate, PersistenceStore

__version__ = "1.0.0"

__all__ = [
    "AnomalyDetector",
    "AnomalyReport",
    "ChangeType",
    "ConfidenceLevel",
    "CurlLeaderboardSource",
    "Database",
    "DuplicatePlayerError",
    "ExtractionEmpty",
    "FetchError",
    "KnownPlayersService",
    "LeaderboardEntry",
    "LeaderboardError",
    "LeaderboardResult",
    "LeaderboardScheduler",
    "LeaderboardService",
    "LeaderboardSource",
    "LinkCandidate",
    "PersistenceError",
    "PersistenceStore",
    "PlayerNotFoundError",
    "PlayerStatus",
    "PlaywrightLeaderboardSource",
    "RefreshCoordinator",
    "Region",
    "RegionCache",
    "Snapshot",
    "ValidationError",
    "create_source",
    "extract",
    "volatility_sector",
]
