#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Command-line interface for the Immortal leaderboard service.

Usage:
    immortal-leaderboard <command> [options]

Examples:
    # Run the hourly scheduler until interrupted
    immortal-leaderboard run

    # Refresh one region now and show the top 20
    immortal-leaderboard refresh europe
    immortal-leaderboard show europe --limit 20

    # Search every region for a player
    immortal-leaderboard search "Miracle-"

    # Registry maintenance
    immortal-leaderboard add-player https://steamcommunity.com/profiles/76561198000000000 Ame europe
    immortal-leaderboard sync europe
    immortal-leaderboard anomalies europe
    immortal-leaderboard changes --region europe --limit 20
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional, Tuple

from .config import Config
from .database import Database
from .errors import LeaderboardError, ValidationError
from .known_players import KnownPlayersService
from .leaderboard_service import LeaderboardService
from .logger import setup_logging
from .models import LeaderboardResult, Region
from .scheduler import LeaderboardScheduler
from .sources import create_source
from .store import PersistenceStore

logger = logging.getLogger(__name__)


class LeaderboardApp:
    """Wires the database, source, services and scheduler together"""

    def __init__(self, database_url: Optional[str] = None, source: Optional[str] = None):
        self.database = Database(database_url)
        self.store = PersistenceStore(self.database)
        self.service = LeaderboardService(create_source(source), self.store)
        self.registry = KnownPlayersService(self.database, self.store)
        self.scheduler = LeaderboardScheduler(self.service, self.registry)

    async def __aenter__(self) -> "LeaderboardApp":
        await self.database.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.scheduler.stop()
        await self.service.close()
        await self.database.close()


# ============== Formatting ==============


def format_leaderboard(result: LeaderboardResult, limit: int = 25) -> str:
    if not result.success:
        return f"❌ No leaderboard data for {result.region.value}: {result.error}"

    fetched = result.fetched_at.strftime("%Y-%m-%d %H:%M UTC") if result.fetched_at else "unknown"
    source_icon = "🟢" if result.source == "live" else "💾"
    content = f"🏆 {result.region.value} Immortal leaderboard ({result.total_count} players)\n"
    content += f"{source_icon} source: {result.source}, fetched {fetched}\n\n"
    for entry in result.entries[:limit]:
        tag = f"[{entry.team_tag}] " if entry.team_tag else ""
        change = ""
        if entry.rank_change:
            change = f" ▲{entry.rank_change}" if entry.rank_change > 0 else f" ▼{-entry.rank_change}"
        country = f" ({entry.country})" if entry.country else ""
        content += f"#{entry.rank:<5} {tag}{entry.display_name}{country}{change}\n"
    if result.total_count > limit:
        content += f"... {result.total_count - limit} more\n"
    return content


def format_search(name: str, matches: List[Dict[str, Any]]) -> str:
    if not matches:
        return f"🔍 No region lists a player named '{name}'"
    content = f"🔍 '{name}' found in {len(matches)} region(s):\n\n"
    for match in matches:
        entry = match["entry"]
        content += f"{match['region'].value:<9} #{entry.rank:<5} {entry.display_name} ({match['match_type']})\n"
    return content


def format_anomalies(region: Region, report: Dict[str, Any]) -> str:
    summary = report["summary"]
    content = f"🚨 Anomalies in {region.value}: {summary['total_anomalies']}\n"

    if report["volatility_anomalies"]:
        content += f"\n📈 Volatility ({summary['volatility_issues']}):\n"
        for a in report["volatility_anomalies"]:
            content += (
                f"  {a['competitive_name']} ({a['display_name']}): #{a['previous_rank']} -> #{a['rank']}, "
                f"allowed {a['expected_volatility']}, exceeded by {a['exceeded_by']}\n"
            )

    if report["name_changes"]:
        content += f"\n🏷️ Name changes ({summary['name_change_alerts']}):\n"
        for n in report["name_changes"]:
            content += f"  {n['competitive_name']}: {n['old_value']} -> {n['new_value']} (#{n['rank']})\n"

    if report["unknown_players"]:
        content += f"\n❓ Unknown players ({summary['unknown_in_top']}):\n"
        for u in report["unknown_players"][:25]:
            content += f"  #{u['rank']} {u['display_name']}\n"
        if summary["unknown_in_top"] > 25:
            content += f"  ... {summary['unknown_in_top'] - 25} more\n"
    return content


def format_changes(changes: List[Dict[str, Any]]) -> str:
    if not changes:
        return "📋 No changes recorded"
    content = f"📋 Recent changes ({len(changes)}):\n\n"
    for c in changes:
        when = c["detected_at"].strftime("%Y-%m-%d %H:%M") if c["detected_at"] else "?"
        values = ""
        if c["old_value"] is not None or c["new_value"] is not None:
            values = f" {c['old_value'] or '-'} -> {c['new_value'] or '-'}"
        content += f"{when} [{c['region']}] {c['change_type']}: {c['player_name'] or c['steam_id']}{values}\n"
    return content


def format_cache_status(status: Dict[str, Dict[str, Any]]) -> str:
    content = "🗄️ Cache status:\n"
    for region, s in status.items():
        if not s["cached"]:
            state = "empty"
        else:
            fetched = s["fetched_at"].strftime("%Y-%m-%d %H:%M UTC")
            state = f"{s['count']} entries, fetched {fetched}, {'fresh' if s['fresh'] else 'stale'}"
        if s["refreshing"]:
            state += " (refreshing)"
        content += f"  {region:<9} {state}\n"
    return content


def format_known_players(region: Region, players: List[Dict[str, Any]]) -> str:
    if not players:
        return f"👥 No known players in {region.value}"
    content = f"👥 Known players in {region.value} ({len(players)}):\n\n"
    for p in players:
        rank = f"#{p['current_rank']}" if p["current_rank"] else "off-board"
        content += f"{p['id']:>4}. {p['competitive_name']:<20} {rank:<10} {p['confidence_level']:<12} {p['status']}\n"
    return content


# ============== Commands ==============


async def _run(app: LeaderboardApp, args) -> Tuple[bool, str]:
    app.scheduler.start()
    stop = asyncio.Event()
    try:
        await stop.wait()
    except asyncio.CancelledError:
        pass
    return True, "Scheduler stopped"


async def _refresh(app: LeaderboardApp, args) -> Tuple[bool, str]:
    if args.region == "all":
        results = await app.scheduler.run_manual()
        return True, json.dumps(results, indent=2)
    result = await app.service.force_refresh(args.region)
    return result.success, format_leaderboard(result, args.limit)


async def _show(app: LeaderboardApp, args) -> Tuple[bool, str]:
    result = await app.service.get_leaderboard(args.region)
    return result.success, format_leaderboard(result, args.limit)


async def _search(app: LeaderboardApp, args) -> Tuple[bool, str]:
    matches = await app.service.find_player_across_regions(args.name)
    return True, format_search(args.name, matches)


async def _anomalies(app: LeaderboardApp, args) -> Tuple[bool, str]:
    region = Region.parse(args.region)
    return True, format_anomalies(region, await app.registry.detect_anomalies(region))


async def _sync(app: LeaderboardApp, args) -> Tuple[bool, str]:
    result = await app.registry.sync_with_leaderboard(args.region)
    return True, f"🔄 Sync complete: {len(result['updated'])} updated, {len(result['missing'])} missing"


async def _changes(app: LeaderboardApp, args) -> Tuple[bool, str]:
    region = Region.parse(args.region) if args.region else None
    return True, format_changes(await app.registry.get_recent_changes(region, args.limit))


async def _cache_status(app: LeaderboardApp, args) -> Tuple[bool, str]:
    return True, format_cache_status(app.service.cache_status())


async def _players(app: LeaderboardApp, args) -> Tuple[bool, str]:
    region = Region.parse(args.region)
    return True, format_known_players(region, await app.registry.list_known_players(region))


async def _add_player(app: LeaderboardApp, args) -> Tuple[bool, str]:
    player = await app.registry.add_known_player(args.identity, args.name, args.region, args.notes)
    return True, f"✅ Added {player['competitive_name']} ({player['steam_id']}) to {player['region']}"


def parse_field_pairs(pairs: List[str]) -> Dict[str, str]:
    """['notes=x', 'status=active'] -> {'notes': 'x', 'status': 'active'}"""
    fields = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ValidationError(
                f"Malformed field assignment: {pair!r}",
                f"Expected field=value, got '{pair}'"
            )
        fields[key.strip()] = value
    return fields


async def _update_player(app: LeaderboardApp, args) -> Tuple[bool, str]:
    fields = parse_field_pairs(args.fields)
    player = await app.registry.update_known_player(args.id, fields)
    return True, f"✅ Updated {player['competitive_name']}: {', '.join(sorted(fields))}"


async def _remove_player(app: LeaderboardApp, args) -> Tuple[bool, str]:
    player = await app.registry.remove_known_player(args.id)
    return True, f"🗑️ Removed {player['competitive_name']} ({player['steam_id']})"


async def _similar(app: LeaderboardApp, args) -> Tuple[bool, str]:
    matches = await app.registry.find_similar_players(args.name, args.region)
    if not matches:
        return True, f"🔍 No known players resemble '{args.name}'"
    content = f"🔍 Known players resembling '{args.name}':\n"
    for m in matches:
        content += f"  {m['competitive_name']:<20} {m['observed_display_name'] or '-':<20} {m['similarity_score']:.2f}\n"
    return True, content


async def _stats(app: LeaderboardApp, args) -> Tuple[bool, str]:
    stats = await app.registry.get_player_stats(args.region)
    return True, json.dumps(stats, indent=2)


COMMANDS = {
    "run": _run,
    "refresh": _refresh,
    "show": _show,
    "search": _search,
    "anomalies": _anomalies,
    "sync": _sync,
    "changes": _changes,
    "cache-status": _cache_status,
    "players": _players,
    "add-player": _add_player,
    "update-player": _update_player,
    "remove-player": _remove_player,
    "similar": _similar,
    "stats": _stats,
}


def build_parser() -> argparse.ArgumentParser:
    regions = [r.value for r in Region]
    parser = argparse.ArgumentParser(
        prog="immortal-leaderboard",
        description="Dota 2 Immortal leaderboard scraper and known players registry",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--database-url", help=f"Database URL (default: {Config.DATABASE_URL})")
    parser.add_argument("--source", choices=["curl", "playwright"], help="Leaderboard source")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Run the hourly scheduler until interrupted")

    p = sub.add_parser("refresh", help="Force a live refresh")
    p.add_argument("region", choices=regions + ["all"])
    p.add_argument("--limit", type=int, default=25)

    p = sub.add_parser("show", help="Show a region's leaderboard")
    p.add_argument("region", choices=regions)
    p.add_argument("--limit", type=int, default=25)

    p = sub.add_parser("search", help="Find a player in every region")
    p.add_argument("name")

    for name, help_text in (("anomalies", "Detect rank anomalies"),
                            ("sync", "Reconcile known players with the latest snapshot"),
                            ("players", "List known players"),
                            ("stats", "Known player statistics")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("region", choices=regions)

    p = sub.add_parser("changes", help="Show the change log")
    p.add_argument("--region", choices=regions)
    p.add_argument("--limit", type=int, default=50)

    sub.add_parser("cache-status", help="Show in-memory cache state")

    p = sub.add_parser("add-player", help="Register a known player")
    p.add_argument("identity", help="SteamID64 or Steam profile URL")
    p.add_argument("name", help="Competitive name")
    p.add_argument("region", choices=regions)
    p.add_argument("--notes", default="")

    p = sub.add_parser("update-player", help="Update known player fields (field=value ...)")
    p.add_argument("id", type=int)
    p.add_argument("fields", nargs="+")

    p = sub.add_parser("remove-player", help="Remove a known player")
    p.add_argument("id", type=int)

    p = sub.add_parser("similar", help="Known players with similar names")
    p.add_argument("name")
    p.add_argument("region", choices=regions)

    return parser


async def run_command(args) -> Tuple[bool, str]:
    async with LeaderboardApp(args.database_url, args.source) as app:
        try:
            return await COMMANDS[args.command](app, args)
        except LeaderboardError as e:
            logger.error(f"{args.command} failed: {e}")
            return False, f"❌ {e.user_message}"


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        Config.DEBUG = True
    setup_logging()
    try:
        Config.validate()
    except ValueError as e:
        parser.error(str(e))

    try:
        ok, content = asyncio.run(run_command(args))
    except KeyboardInterrupt:
        return 0
    print(content)
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
