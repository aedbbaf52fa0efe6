#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Known players registry.

Curated identities per region, reconciled against the latest persisted
snapshot. This service owns every KnownPlayer write and every change log row
that comes with one; anomaly detection itself stays read-only.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Iterable, List, Mapping, Optional

from rapidfuzz import fuzz
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .anomalies import AnomalyDetector, exceeds_volatility, record_change, volatility_sector
from .config import Config
from .database import BaseService, Database, KnownPlayer, LeaderboardChange
from .errors import DuplicatePlayerError, PersistenceError, PlayerNotFoundError, ValidationError
from .identity import SteamIdentityResolver
from .models import ChangeType, ConfidenceLevel, LeaderboardEntry, PlayerStatus, Region
from .store import LinkCandidate, PersistenceStore, from_utc_naive

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = (
    "competitive_name",
    "observed_display_name",
    "confidence_level",
    "status",
    "notes",
    "last_known_rank",
)


def best_entries(entries: Iterable[LeaderboardEntry]) -> Dict[str, LeaderboardEntry]:
    """stable_id -> its best ranked entry; unlinked entries are ignored"""
    best: Dict[str, LeaderboardEntry] = {}
    for entry in entries:
        if not entry.stable_id:
            continue
        current = best.get(entry.stable_id)
        if current is None or entry.rank < current.rank:
            best[entry.stable_id] = entry
    return best


def _append_note(notes: Optional[str], note: str) -> str:
    return f"{notes} | {note}" if notes else note


class KnownPlayersService(BaseService):
    """Registry CRUD, reconciliation and anomaly views for known players"""

    def __init__(self, database: Database, store: PersistenceStore,
                 detector: Optional[AnomalyDetector] = None,
                 resolver: Optional[SteamIdentityResolver] = None,
                 similarity_threshold: Optional[float] = None,
                 similarity_limit: Optional[int] = None):
        super().__init__(database)
        self.store = store
        self.detector = detector or AnomalyDetector()
        self.resolver = resolver or SteamIdentityResolver()
        self.similarity_threshold = (
            Config.SIMILARITY_THRESHOLD if similarity_threshold is None else similarity_threshold
        )
        self.similarity_limit = similarity_limit or Config.SIMILARITY_LIMIT

    @asynccontextmanager
    async def _transaction(self, operation: str):
        try:
            async with self.get_session() as session:
                yield session
        except SQLAlchemyError as e:
            logger.error(f"Database error during {operation}: {e}")
            raise PersistenceError(operation, str(e)) from e

    async def _current_entries(self, region: Region) -> Dict[str, LeaderboardEntry]:
        snapshot = await self.store.load_snapshot(region)
        return best_entries(snapshot.entries) if snapshot else {}

    async def _players(self, region: Optional[Region] = None) -> List[KnownPlayer]:
        async with self._transaction("load_known_players") as session:
            query = select(KnownPlayer)
            if region is not None:
                query = query.where(KnownPlayer.region == region.value)
            result = await session.execute(query.order_by(KnownPlayer.id.asc()))
            return list(result.scalars().all())

    # ============== Registry CRUD ==============

    async def list_known_players(self, region: Region) -> List[Dict[str, Any]]:
        """Known players with their current standing, most trusted first"""
        region = Region.parse(region)
        current = await self._current_entries(region)
        players = []
        for player in await self._players(region):
            data = player.to_dict()
            entry = current.get(player.steam_id)
            data["current_rank"] = entry.rank if entry else None
            data["current_name"] = entry.display_name if entry else None
            players.append(data)

        def sort_key(p):
            level = ConfidenceLevel(p["confidence_level"])
            rank = p["current_rank"] or p["last_known_rank"] or 9999
            return -level.weight, rank

        return sorted(players, key=sort_key)

    async def add_known_player(self, identity_ref: str, competitive_name: str,
                               region: Region, notes: str = "") -> Dict[str, Any]:
        competitive_name = (competitive_name or "").strip()
        if not competitive_name:
            raise ValidationError("competitive_name is required", "A competitive name is required.")
        region = Region.parse(region)
        steam_id = await self.resolver.resolve(identity_ref)

        entry = (await self._current_entries(region)).get(steam_id)
        observed_name = entry.display_name if entry else None
        if observed_name is None:
            profile = await self.resolver.get_profile(steam_id)
            if profile:
                observed_name = profile.get("personaname")

        current_rank = entry.rank if entry else None

        async with self._transaction("add_known_player") as session:
            existing = await session.execute(
                select(KnownPlayer.id).where(
                    KnownPlayer.steam_id == steam_id, KnownPlayer.region == region.value
                )
            )
            if existing.scalar_one_or_none() is not None:
                raise DuplicatePlayerError(steam_id, region.value)

            player = KnownPlayer(
                steam_id=steam_id,
                region=region.value,
                competitive_name=competitive_name,
                observed_display_name=observed_name,
                confidence_level=ConfidenceLevel.CONFIRMED.value,
                last_known_rank=current_rank,
                volatility_sector=volatility_sector(current_rank) if current_rank else None,
                status=PlayerStatus.ACTIVE.value,
                notes=notes or "",
            )
            session.add(player)
            try:
                await session.flush()
            except IntegrityError as e:
                raise DuplicatePlayerError(steam_id, region.value) from e

            record_change(
                session, region, ChangeType.NEW_KNOWN_PLAYER,
                stable_id=steam_id,
                display_name=competitive_name,
                new_value=competitive_name,
                rank_position=current_rank,
                detail={"added_by": "admin", "observed_display_name": observed_name},
            )

        logger.info(f"Known player added: {competitive_name} ({steam_id}, {region.value})")
        return player.to_dict()

    async def update_known_player(self, player_id: int, fields: Mapping[str, Any]) -> Dict[str, Any]:
        """Apply whitelisted field updates; the only way confidence goes up"""
        updates = {k: v for k, v in (fields or {}).items() if k in UPDATABLE_FIELDS}
        if not updates:
            raise ValidationError(
                f"No updatable fields in {sorted(fields or {})}",
                f"Nothing to update. Allowed fields: {', '.join(UPDATABLE_FIELDS)}"
            )
        updates = _validate_updates(updates)

        async with self._transaction("update_known_player") as session:
            player = await session.get(KnownPlayer, player_id)
            if player is None:
                raise PlayerNotFoundError(player_id)

            previous = {name: getattr(player, name) for name in updates}
            for name, value in updates.items():
                setattr(player, name, value)
            if "last_known_rank" in updates:
                rank = updates["last_known_rank"]
                player.volatility_sector = volatility_sector(rank) if rank else None

            record_change(
                session, player.region, ChangeType.PLAYER_UPDATED,
                stable_id=player.steam_id,
                display_name=player.competitive_name,
                detail={
                    "updated_fields": sorted(updates),
                    "previous": {k: v for k, v in previous.items() if v != updates[k]},
                    "updated_by": "admin",
                },
            )
            await session.flush()
            data = player.to_dict()

        logger.info(f"Known player {player_id} updated: {', '.join(sorted(updates))}")
        return data

    async def remove_known_player(self, player_id: int) -> Dict[str, Any]:
        async with self._transaction("remove_known_player") as session:
            player = await session.get(KnownPlayer, player_id)
            if player is None:
                raise PlayerNotFoundError(player_id)

            data = player.to_dict()
            await session.delete(player)
            record_change(
                session, player.region, ChangeType.PLAYER_REMOVED,
                stable_id=player.steam_id,
                display_name=player.competitive_name,
                old_value=player.competitive_name,
                detail={"removed_by": "admin", "confidence_level": player.confidence_level},
            )

        logger.info(f"Known player removed: {data['competitive_name']} ({data['steam_id']})")
        return data

    # ============== Reconciliation ==============

    def _downgrade(self, session, player: KnownPlayer, reason: str) -> bool:
        """Drop a player to observation if it currently sits above it"""
        level = ConfidenceLevel(player.confidence_level)
        if not level.outranks(ConfidenceLevel.OBSERVATION):
            return False

        player.confidence_level = ConfidenceLevel.OBSERVATION.value
        player.notes = _append_note(player.notes, f"Marked for observation: {reason}")
        record_change(
            session, player.region, ChangeType.CONFIDENCE_DOWNGRADE,
            stable_id=player.steam_id,
            display_name=player.competitive_name,
            old_value=level.value,
            new_value=ConfidenceLevel.OBSERVATION.value,
            rank_position=player.last_known_rank,
            detail={"reason": reason, "automated": True},
        )
        logger.warning(f"{player.competitive_name} ({player.steam_id}) downgraded to observation: {reason}")
        return True

    async def mark_for_observation(self, stable_ids: Iterable[str], reason: str = "automated_detection",
                                   region: Optional[Region] = None) -> List[Dict[str, Any]]:
        stable_ids = [s for s in stable_ids if s]
        if not stable_ids:
            return []

        marked = []
        async with self._transaction("mark_for_observation") as session:
            query = select(KnownPlayer).where(KnownPlayer.steam_id.in_(stable_ids))
            if region is not None:
                query = query.where(KnownPlayer.region == Region.parse(region).value)
            for player in (await session.execute(query)).scalars().all():
                if self._downgrade(session, player, reason):
                    marked.append({
                        "stable_id": player.steam_id,
                        "competitive_name": player.competitive_name,
                        "region": player.region,
                    })
        return marked

    async def sync_with_leaderboard(self, region: Region) -> Dict[str, List[Dict[str, Any]]]:
        """Refresh every known player from the latest snapshot; returns {updated, missing}"""
        region = Region.parse(region)
        snapshot = await self.store.load_snapshot(region)
        if snapshot is None:
            logger.warning(f"No persisted snapshot for {region.value}, skipping known player sync")
            return {"updated": [], "missing": []}

        current = best_entries(snapshot.entries)
        updated, missing = [], []

        async with self._transaction("sync_with_leaderboard") as session:
            result = await session.execute(select(KnownPlayer).where(KnownPlayer.region == region.value))
            for player in result.scalars().all():
                entry = current.get(player.steam_id)

                if entry is None:
                    if player.status == PlayerStatus.ACTIVE.value:
                        player.status = PlayerStatus.MISSING.value
                        record_change(
                            session, region, ChangeType.MISSING_PLAYER,
                            stable_id=player.steam_id,
                            display_name=player.competitive_name,
                            old_value=PlayerStatus.ACTIVE.value,
                            new_value=PlayerStatus.MISSING.value,
                            previous_rank=player.last_known_rank,
                        )
                        missing.append({"stable_id": player.steam_id, "competitive_name": player.competitive_name})
                    continue

                if player.observed_display_name and player.observed_display_name != entry.display_name:
                    record_change(
                        session, region, ChangeType.NAME_CHANGE,
                        stable_id=player.steam_id,
                        display_name=entry.display_name,
                        old_value=player.observed_display_name,
                        new_value=entry.display_name,
                        rank_position=entry.rank,
                        detail={"competitive_name": player.competitive_name},
                    )

                previous_rank = player.last_known_rank
                if previous_rank != entry.rank and exceeds_volatility(entry.rank, previous_rank):
                    expected = volatility_sector(entry.rank)
                    movement = abs(previous_rank - entry.rank)
                    record_change(
                        session, region, ChangeType.VOLATILITY_ALERT,
                        stable_id=player.steam_id,
                        display_name=entry.display_name,
                        old_value=previous_rank,
                        new_value=entry.rank,
                        rank_position=entry.rank,
                        previous_rank=previous_rank,
                        volatility_exceeded=True,
                        detail={"expected_volatility": expected, "exceeded_by": movement - expected},
                    )
                    self._downgrade(session, player, "volatility_alert")

                if previous_rank != entry.rank:
                    player.last_known_rank = entry.rank
                    player.volatility_sector = volatility_sector(entry.rank)
                if player.observed_display_name != entry.display_name:
                    player.observed_display_name = entry.display_name
                if player.status != PlayerStatus.ACTIVE.value:
                    player.status = PlayerStatus.ACTIVE.value

                updated.append({
                    "stable_id": player.steam_id,
                    "competitive_name": player.competitive_name,
                    "rank": entry.rank,
                })

        logger.info(f"Known player sync for {region.value}: {len(updated)} updated, {len(missing)} missing")
        return {"updated": updated, "missing": missing}

    # ============== Read views ==============

    async def detect_anomalies(self, region: Region) -> Dict[str, Any]:
        region = Region.parse(region)
        snapshot = await self.store.load_snapshot(region)
        entries = snapshot.entries if snapshot else ()
        return self.detector.detect(entries, await self._players(region)).to_dict()

    async def find_similar_players(self, name: str, region: Region) -> List[Dict[str, Any]]:
        """Known players whose names resemble `name`, best match first"""
        name = (name or "").strip()
        if not name:
            raise ValidationError("Search name is required")
        region = Region.parse(region)
        needle = name.lower()

        matches = []
        for player in await self._players(region):
            score = max(
                fuzz.ratio(needle, player.competitive_name.lower()),
                fuzz.ratio(needle, (player.observed_display_name or "").lower()),
            ) / 100
            if score > self.similarity_threshold:
                matches.append({
                    "stable_id": player.steam_id,
                    "competitive_name": player.competitive_name,
                    "observed_display_name": player.observed_display_name,
                    "confidence_level": player.confidence_level,
                    "similarity_score": round(score, 3),
                })

        matches.sort(key=lambda m: m["similarity_score"], reverse=True)
        return matches[:self.similarity_limit]

    async def get_recent_changes(self, region: Optional[Region] = None, limit: int = 50) -> List[Dict[str, Any]]:
        async with self._transaction("get_recent_changes") as session:
            query = select(LeaderboardChange)
            if region is not None:
                query = query.where(LeaderboardChange.region == Region.parse(region).value)
            query = query.order_by(LeaderboardChange.detected_at.desc(), LeaderboardChange.id.desc()).limit(limit)
            changes = (await session.execute(query)).scalars().all()

        results = []
        for change in changes:
            data = change.to_dict()
            data["detected_at"] = from_utc_naive(change.detected_at)
            results.append(data)
        return results

    async def get_player_stats(self, region: Region) -> Dict[str, Any]:
        region = Region.parse(region)
        players = await self._players(region)
        total = len(players)

        confidence = {level.value: 0 for level in ConfidenceLevel}
        status = {s.value: 0 for s in PlayerStatus}
        for player in players:
            confidence[player.confidence_level] = confidence.get(player.confidence_level, 0) + 1
            status[player.status] = status.get(player.status, 0) + 1

        trusted = confidence[ConfidenceLevel.CONFIRMED.value] + confidence[ConfidenceLevel.HIGH.value]
        return {
            "region": region.value,
            "total_known_players": total,
            "confidence": confidence,
            "status": status,
            "confidence_percentage": round(trusted * 100.0 / total, 2) if total else None,
        }

    async def get_enriched_leaderboard(self, region: Region, limit: int = 4000) -> List[Dict[str, Any]]:
        """Current entries annotated with their registry record, if any"""
        region = Region.parse(region)
        snapshot = await self.store.load_snapshot(region)
        if snapshot is None:
            return []

        known = {p.steam_id: p for p in await self._players(region)}
        rows = []
        for entry in snapshot.entries[:limit]:
            player = known.get(entry.stable_id) if entry.stable_id else None
            data = entry.to_dict()
            data["known_player"] = {
                "id": player.id,
                "competitive_name": player.competitive_name,
                "confidence_level": player.confidence_level,
                "status": player.status,
                "notes": player.notes,
            } if player else None
            data["confidence_level"] = player.confidence_level if player else ConfidenceLevel.UNKNOWN.value
            data["volatility_exceeded"] = exceeds_volatility(entry.rank, entry.previous_rank)
            rows.append(data)
        return rows

    async def link_candidates(self) -> List[LinkCandidate]:
        """Registry identities and the names they go by, for the linking pass"""
        names: Dict[str, List[str]] = {}
        for player in await self._players():
            bucket = names.setdefault(player.steam_id, [])
            for name in (player.observed_display_name, player.competitive_name):
                if name and name not in bucket:
                    bucket.append(name)
        return [LinkCandidate(stable_id, tuple(n)) for stable_id, n in names.items() if n]


def _validate_updates(updates: Dict[str, Any]) -> Dict[str, Any]:
    clean = dict(updates)
    if "confidence_level" in clean:
        try:
            clean["confidence_level"] = ConfidenceLevel(clean["confidence_level"]).value
        except ValueError:
            valid = ", ".join(c.value for c in ConfidenceLevel)
            raise ValidationError(f"Invalid confidence_level '{clean['confidence_level']}'",
                                  f"Invalid confidence level. Use: {valid}") from None
    if "status" in clean:
        try:
            clean["status"] = PlayerStatus(clean["status"]).value
        except ValueError:
            valid = ", ".join(s.value for s in PlayerStatus)
            raise ValidationError(f"Invalid status '{clean['status']}'",
                                  f"Invalid status. Use: {valid}") from None
    if "competitive_name" in clean:
        name = (clean["competitive_name"] or "").strip()
        if not name:
            raise ValidationError("competitive_name cannot be blank")
        clean["competitive_name"] = name
    if "last_known_rank" in clean and clean["last_known_rank"] is not None:
        try:
            rank = int(clean["last_known_rank"])
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid last_known_rank '{clean['last_known_rank']}'") from None
        if rank <= 0:
            raise ValidationError("last_known_rank must be positive")
        clean["last_known_rank"] = rank
    if "notes" in clean and clean["notes"] is None:
        clean["notes"] = ""
    return clean
