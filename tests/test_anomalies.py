from immortal_leaderboard.anomalies import (
    AnomalyDetector,
    exceeds_volatility,
    is_policed,
    volatility_sector,
)
from immortal_leaderboard.database import KnownPlayer
from immortal_leaderboard.models import LeaderboardEntry, Region


def _entry(rank, name, stable_id=None, previous_rank=None):
    return LeaderboardEntry(
        region=Region.EUROPE,
        rank=rank,
        display_name=name,
        stable_id=stable_id,
        previous_rank=previous_rank,
        rank_change=None if previous_rank is None else previous_rank - rank,
    )


def _known(stable_id, competitive_name, observed=None, confidence="confirmed"):
    return KnownPlayer(
        steam_id=stable_id,
        region="europe",
        competitive_name=competitive_name,
        observed_display_name=observed,
        confidence_level=confidence,
    )


def test_volatility_sector_buckets():
    assert [volatility_sector(r) for r in (1, 100, 101, 500, 501, 1000, 1001, 2000, 2001, 3000, 3001)] == [
        100, 100, 200, 200, 300, 300, 400, 400, 500, 500, 600,
    ]


def test_volatility_sector_is_monotonic():
    sectors = [volatility_sector(rank) for rank in range(1, 5001)]
    assert all(a <= b for a, b in zip(sectors, sectors[1:]))


def test_adaptation_zone_is_not_policed():
    assert is_policed(3000)
    assert not is_policed(3001)
    assert not exceeds_volatility(4500, 3200)


def test_exceeds_volatility():
    assert exceeds_volatility(500, 120)
    assert not exceeds_volatility(300, 120)
    assert not exceeds_volatility(50, None)


def test_volatility_alert_for_known_player():
    entries = [_entry(500, "Ame", "1", previous_rank=120), _entry(10, "Other", "2", previous_rank=12)]
    known = [_known("1", "Ame", observed="Ame"), _known("2", "Other", observed="Other")]

    report = AnomalyDetector(unknown_top_n=3000).detect(entries, known)

    assert len(report.volatility_anomalies) == 1
    anomaly = report.volatility_anomalies[0]
    assert anomaly["stable_id"] == "1"
    assert anomaly["expected_volatility"] == 200
    assert anomaly["exceeded_by"] == 180
    assert anomaly["rank_change"] == -380


def test_volatility_anomalies_sorted_by_exceeded_by():
    entries = [_entry(500, "A", "1", previous_rank=120), _entry(900, "B", "2", previous_rank=100)]
    known = [_known("1", "A"), _known("2", "B")]

    report = AnomalyDetector().detect(entries, known)

    assert [a["stable_id"] for a in report.volatility_anomalies] == ["2", "1"]


def test_volatility_ignored_for_unknown_players():
    report = AnomalyDetector().detect([_entry(500, "Nobody", previous_rank=10)], [])

    assert report.volatility_anomalies == []
    assert [u["display_name"] for u in report.unknown_players] == ["Nobody"]


def test_name_change_reported_once():
    entries = [_entry(42, "Bar", "1", previous_rank=40), _entry(43, "Bar", "1")]
    known = [_known("1", "Competitor", observed="Foo")]

    report = AnomalyDetector().detect(entries, known)

    assert len(report.name_changes) == 1
    change = report.name_changes[0]
    assert (change["old_value"], change["new_value"]) == ("Foo", "Bar")
    assert change["rank"] == 42


def test_unknown_players_limited_to_top_n():
    entries = [_entry(1, "A"), _entry(2, "B", "9"), _entry(3, "C")]

    report = AnomalyDetector(unknown_top_n=2).detect(entries, [_known("9", "B")])

    assert [u["display_name"] for u in report.unknown_players] == ["A"]


def test_detection_is_idempotent():
    entries = [_entry(500, "Bar", "1", previous_rank=120), _entry(7, "Ghost")]
    known = [_known("1", "Competitor", observed="Foo")]
    detector = AnomalyDetector()

    first = detector.detect(entries, known).to_dict()
    second = detector.detect(entries, known).to_dict()

    assert first == second
    assert first["summary"] == {
        "total_anomalies": 3,
        "volatility_issues": 1,
        "unknown_in_top": 1,
        "name_change_alerts": 1,
    }
