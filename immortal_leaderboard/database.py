"""
Database schema and async session management.

Three tables: the latest leaderboard snapshot per region, the curated known
players registry, and the append-only change log.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Callable, Optional

from sqlalchemy import (
    JSON, Boolean, Column, DateTime, Index, Integer, String, Text, UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from .config import Config

logger = logging.getLogger(__name__)

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column stores UTC without tzinfo"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class LeaderboardRow(Base):
    __tablename__ = 'leaderboard_cache'

    id = Column(Integer, primary_key=True)
    region = Column(String(20), nullable=False)
    rank = Column(Integer, nullable=False)
    name = Column(String(200), nullable=False)
    team_tag = Column(String(50), nullable=True)
    country = Column(String(5), nullable=True)
    steam_id = Column(String(32), nullable=True, index=True)

    # Derived on replace by comparing against the row this one supersedes
    previous_rank = Column(Integer, nullable=True)
    rank_change = Column(Integer, nullable=True)

    updated_at = Column(DateTime, default=utcnow)

    __table_args__ = (Index('ix_leaderboard_cache_region_rank', 'region', 'rank'),)

    def __repr__(self):
        return f"<LeaderboardRow(region='{self.region}', rank={self.rank}, name='{self.name}')>"


class KnownPlayer(Base):
    __tablename__ = 'known_players'

    id = Column(Integer, primary_key=True)
    steam_id = Column(String(32), nullable=False, index=True)
    region = Column(String(20), nullable=False)
    competitive_name = Column(String(100), nullable=False)
    observed_display_name = Column(String(200), nullable=True)  # last name seen on the leaderboard

    confidence_level = Column(String(20), nullable=False, default='confirmed')
    last_known_rank = Column(Integer, nullable=True)
    volatility_sector = Column(Integer, nullable=True)
    status = Column(String(20), nullable=False, default='active')
    notes = Column(Text, default='')

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (UniqueConstraint('steam_id', 'region', name='uq_known_player_region'),)

    def to_dict(self):
        return {
            'id': self.id,
            'steam_id': self.steam_id,
            'region': self.region,
            'competitive_name': self.competitive_name,
            'observed_display_name': self.observed_display_name,
            'confidence_level': self.confidence_level,
            'last_known_rank': self.last_known_rank,
            'volatility_sector': self.volatility_sector,
            'status': self.status,
            'notes': self.notes,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
        }

    def __repr__(self):
        return f"<KnownPlayer(steam_id='{self.steam_id}', name='{self.competitive_name}', region='{self.region}')>"


class LeaderboardChange(Base):
    __tablename__ = 'leaderboard_changes'

    id = Column(Integer, primary_key=True)
    region = Column(String(20), nullable=False, index=True)
    steam_id = Column(String(32), nullable=True)
    player_name = Column(String(200), nullable=True)
    change_type = Column(String(30), nullable=False)
    old_value = Column(Text, nullable=True)
    new_value = Column(Text, nullable=True)
    rank_position = Column(Integer, nullable=True)
    previous_rank = Column(Integer, nullable=True)
    volatility_exceeded = Column(Boolean, default=False)
    change_details = Column(JSON, default=dict)
    detected_at = Column(DateTime, default=utcnow, index=True)

    def to_dict(self):
        return {
            'id': self.id,
            'region': self.region,
            'steam_id': self.steam_id,
            'player_name': self.player_name,
            'change_type': self.change_type,
            'old_value': self.old_value,
            'new_value': self.new_value,
            'rank_position': self.rank_position,
            'previous_rank': self.previous_rank,
            'volatility_exceeded': self.volatility_exceeded,
            'change_details': self.change_details or {},
            'detected_at': self.detected_at,
        }


class Database:
    def __init__(self, database_url: Optional[str] = None, echo: Optional[bool] = None):
        self.database_url = database_url or Config.DATABASE_URL
        self.echo = Config.DEBUG if echo is None else echo
        self.engine = None
        self.async_session = None

    async def initialize(self):
        """Initialize the database connection and create tables"""
        logger.info("Initializing database...")

        # Convert sqlite URL to async if needed
        database_url = self.database_url
        if database_url.startswith('sqlite:///'):
            database_url = database_url.replace('sqlite:///', 'sqlite+aiosqlite:///')

        self.engine = create_async_engine(database_url, echo=self.echo, future=True)
        self.async_session = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        logger.info("Database initialized successfully")

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Provide a transactional scope: commit on success, rollback on error"""
        session = self.async_session()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def close(self):
        if self.engine:
            await self.engine.dispose()
            self.engine = None
            logger.info("Database connection closed")


class BaseService:
    """Base class for services that talk to the database."""

    def __init__(self, database: Database):
        self.database = database

    def get_session(self):
        return self.database.get_session()

    async def execute_with_retry(self, func: Callable, max_retries: int = 3) -> Any:
        """Execute a function with automatic retry on database errors."""
        for attempt in range(max_retries):
            try:
                return await func()
            except Exception as e:
                if attempt == max_retries - 1:
                    raise
                logger.warning(f"Retry attempt {attempt + 1} for {func.__name__}: {e}")
                await asyncio.sleep(0.1 * (2 ** attempt))
