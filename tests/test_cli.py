from datetime import datetime, timezone

import pytest

from immortal_leaderboard.cli import (
    build_parser,
    format_anomalies,
    format_cache_status,
    format_leaderboard,
    parse_field_pairs,
)
from immortal_leaderboard.errors import ValidationError
from immortal_leaderboard.models import LeaderboardEntry, LeaderboardResult, Region, Snapshot


def _result(source="live"):
    entries = (
        LeaderboardEntry(Region.EUROPE, 1, "Topson", team_tag="OG", country="FI", previous_rank=3, rank_change=2),
        LeaderboardEntry(Region.EUROPE, 2, "Miracle-"),
    )
    snapshot = Snapshot(Region.EUROPE, entries, datetime(2026, 3, 1, 12, 18, tzinfo=timezone.utc))
    return LeaderboardResult.from_snapshot(snapshot, source=source)


def test_format_leaderboard():
    content = format_leaderboard(_result("database"), limit=1)

    assert "europe Immortal leaderboard (2 players)" in content
    assert "source: database" in content
    assert "[OG] Topson (FI) ▲2" in content
    assert "Miracle-" not in content
    assert "1 more" in content


def test_format_leaderboard_without_data():
    content = format_leaderboard(LeaderboardResult.empty(Region.CHINA, "connection reset"))

    assert "No leaderboard data for china" in content


def test_format_anomalies():
    report = {
        "volatility_anomalies": [{
            "competitive_name": "Ame", "display_name": "Ame", "previous_rank": 120, "rank": 500,
            "expected_volatility": 200, "exceeded_by": 180,
        }],
        "name_changes": [{"competitive_name": "X", "old_value": "Foo", "new_value": "Bar", "rank": 4}],
        "unknown_players": [],
        "summary": {"total_anomalies": 2, "volatility_issues": 1, "unknown_in_top": 0, "name_change_alerts": 1},
    }

    content = format_anomalies(Region.EUROPE, report)

    assert "#120 -> #500" in content
    assert "Foo -> Bar" in content
    assert "Unknown players" not in content


def test_format_cache_status():
    status = {
        "europe": {"cached": True, "fresh": False, "refreshing": True, "count": 10,
                   "fetched_at": datetime(2026, 3, 1, 12, 18, tzinfo=timezone.utc)},
        "china": {"cached": False, "fresh": False, "refreshing": False, "count": 0, "fetched_at": None},
    }

    content = format_cache_status(status)

    assert "10 entries" in content
    assert "stale (refreshing)" in content
    assert "china     empty" in content


def test_parser_accepts_commands():
    parser = build_parser()

    args = parser.parse_args(["show", "europe", "--limit", "5"])
    assert (args.command, args.region, args.limit) == ("show", "europe", 5)

    args = parser.parse_args(["update-player", "3", "confidence_level=high", "notes=verified"])
    assert args.id == 3
    assert args.fields == ["confidence_level=high", "notes=verified"]

    with pytest.raises(SystemExit):
        parser.parse_args(["show", "antarctica"])


def test_field_pairs():
    assert parse_field_pairs(["notes=a=b", " status =missing"]) == {"notes": "a=b", "status": "missing"}

    with pytest.raises(ValidationError):
        parse_field_pairs(["confidence_level"])
    with pytest.raises(ValidationError):
        parse_field_pairs(["=high"])
