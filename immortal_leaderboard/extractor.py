#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Leaderboard extraction: raw markup in, ranked entries out.

The upstream page changes without notice, so every lookup is an ordered list
of strategies tried until one yields something. If no row strategy matches at
all, a plain-text scan produces a smaller positional ranking instead.
"""

from __future__ import annotations

import logging
import re
from typing import Callable, List, Optional, Sequence, Tuple

from bs4 import BeautifulSoup

from .config import Config
from .models import LeaderboardEntry, Region

logger = logging.getLogger(__name__)

RowStrategy = Tuple[str, Callable[[BeautifulSoup], list]]
FieldStrategy = Callable[[object], Optional[str]]

TEAM_TAG_RE = re.compile(r"\[([^\[\]]+)\]")
FLAG_RE = re.compile(r"flags?/([a-z]{2})\.", re.IGNORECASE)

HEADER_WORDS = {
    "#", "rank", "ranking", "position", "player", "players", "name", "team",
    "country", "flag", "leaderboard", "leaderboards", "region", "americas",
    "europe", "se asia", "southeast asia", "china", "immortal",
}
INVISIBLE_TAGS = ("script", "style", "noscript", "head", "title", "template", "svg")


# ============== Strategies ==============


def _select(selector: str) -> Callable[[BeautifulSoup], list]:
    return lambda soup: soup.select(selector)


ROW_STRATEGIES: Sequence[RowStrategy] = (
    ("leaderboard_row", _select(".leaderboard_row")),
    ("leaderboard", _select("[id*='leaderboard'] tr, tr[class*='leaderboard'], li[class*='leaderboard']")),
    ("player-row", _select(".player-row")),
    ("player", _select("tr[class*='player'], li[class*='player']")),
)


def _text_of(selector: str) -> FieldStrategy:
    def strategy(row) -> Optional[str]:
        element = row.select_one(selector)
        return element.get_text(" ", strip=True) if element else None
    return strategy


def _cell(index: int) -> FieldStrategy:
    def strategy(row) -> Optional[str]:
        cells = row.find_all("td")
        return cells[index].get_text(" ", strip=True) if len(cells) > index else None
    return strategy


NAME_STRATEGIES: Sequence[FieldStrategy] = (
    _text_of(".player_name"),
    _text_of(".name"),
    _text_of("[class*='name']"),
    _cell(1),
)

RANK_STRATEGIES: Sequence[FieldStrategy] = (
    _text_of(".rank"),
    _text_of("[class*='rank']"),
    _cell(0),
)


def first_match(strategies: Sequence[FieldStrategy], row) -> Optional[str]:
    """Run strategies in order and return the first non-empty result"""
    for strategy in strategies:
        value = strategy(row)
        if value:
            return value
    return None


# ============== Field parsing ==============


def parse_rank(text: Optional[str]) -> Optional[int]:
    """Digits-only rank parsing; None when nothing usable is left"""
    if not text:
        return None
    digits = re.sub(r"[^0-9]", "", text)
    if not digits:
        return None
    rank = int(digits)
    return rank if rank > 0 else None


def split_team_tag(name: str) -> Tuple[str, Optional[str]]:
    """'[OG] Player' -> ('Player', 'OG')"""
    match = TEAM_TAG_RE.search(name)
    if not match:
        return name.strip(), None
    tag = match.group(1).strip() or None
    cleaned = (name[:match.start()] + " " + name[match.end():])
    return " ".join(cleaned.split()), tag


def _team_element_tag(row, name: str) -> Tuple[str, Optional[str]]:
    element = row.select_one("[class*='team'], [class*='tag']")
    if not element:
        return name, None
    tag = element.get_text(strip=True).strip("[] ")
    if not tag or tag == name:
        return name, None
    return name, tag


def _country(row) -> Optional[str]:
    flag = row.select_one("img[src*='flag'], img[class*='flag']")
    if not flag:
        return None
    match = FLAG_RE.search(flag.get("src", ""))
    return match.group(1).upper() if match else None


# ============== Extraction ==============


def find_rows(soup: BeautifulSoup) -> Tuple[Optional[str], list]:
    """Return (strategy name, rows) for the first row strategy with any match"""
    for name, strategy in ROW_STRATEGIES:
        rows = strategy(soup)
        if rows:
            return name, rows
    return None, []


def parse_row(row, position: int, region: Region) -> Optional[LeaderboardEntry]:
    raw_name = first_match(NAME_STRATEGIES, row)
    if not raw_name:
        return None

    name, team_tag = split_team_tag(raw_name)
    if team_tag is None:
        name, team_tag = _team_element_tag(row, name)
    if not name:
        return None

    rank = parse_rank(first_match(RANK_STRATEGIES, row)) or position
    return LeaderboardEntry(
        region=region,
        rank=rank,
        display_name=name,
        team_tag=team_tag,
        country=_country(row),
    )


def scan_text(soup: BeautifulSoup, region: Region, limit: int) -> List[LeaderboardEntry]:
    """Heuristic fallback: surviving visible text lines ranked by scan order"""
    for tag in soup(INVISIBLE_TAGS):
        tag.decompose()

    entries: List[LeaderboardEntry] = []
    for line in soup.get_text("\n").splitlines():
        line = line.strip()
        if not line or re.fullmatch(r"[#\d.,\s]+", line):
            continue
        if line.lower() in HEADER_WORDS:
            continue
        if not 2 <= len(line) <= 50 or not any(ch.isalnum() for ch in line):
            continue

        name, team_tag = split_team_tag(line)
        if not name:
            continue
        entries.append(LeaderboardEntry(
            region=region, rank=len(entries) + 1, display_name=name, team_tag=team_tag,
        ))
        if len(entries) >= limit:
            break
    return entries


def extract(markup: str, region: Region, max_entries: int = None,
            heuristic_limit: int = None) -> List[LeaderboardEntry]:
    """Parse leaderboard markup into ranked entries (possibly empty, never raises on bad markup)"""
    region = Region.parse(region)
    max_entries = max_entries or Config.MAX_ENTRIES
    heuristic_limit = heuristic_limit or Config.HEURISTIC_MAX_ENTRIES

    if not markup or not markup.strip():
        return []

    soup = BeautifulSoup(markup, "lxml")
    strategy, rows = find_rows(soup)

    if rows:
        entries = []
        for position, row in enumerate(rows, 1):
            try:
                entry = parse_row(row, position, region)
            except Exception as e:
                logger.debug(f"Failed to parse row {position}: {e}")
                continue
            if entry:
                entries.append(entry)
        logger.debug(f"{region.value}: strategy '{strategy}' matched {len(rows)} rows, {len(entries)} entries")
    else:
        logger.warning(f"{region.value}: no structural match, falling back to text scan")
        entries = scan_text(soup, region, heuristic_limit)

    entries = [e for e in entries if e.display_name.strip()]
    return entries[:max_entries]
