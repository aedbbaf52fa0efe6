#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Runtime configuration, read once from the environment (and a local .env file).
"""

import os

from dotenv import load_dotenv

load_dotenv()


class Config:
    """Service configuration settings"""

    # Database settings
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///immortal_leaderboard.db")
    DEBUG = os.getenv("DEBUG", "False").lower() == "true"

    # Upstream source
    LEADERBOARD_SOURCE = os.getenv("LEADERBOARD_SOURCE", "curl")  # curl | playwright
    LEADERBOARD_URL_TEMPLATE = os.getenv(
        "LEADERBOARD_URL_TEMPLATE", "https://www.dota2.com/leaderboards/#{region}"
    )
    FETCH_TIMEOUT = int(os.getenv("FETCH_TIMEOUT", 30))

    # Cache / refresh coordination
    CACHE_TTL_HOURS = int(os.getenv("CACHE_TTL_HOURS", 24))
    INFLIGHT_WAIT_SECONDS = int(os.getenv("INFLIGHT_WAIT_SECONDS", 30))

    # Extraction limits
    MAX_ENTRIES = 1000          # upstream pagination boundary
    HEURISTIC_MAX_ENTRIES = 100

    # Known players / anomalies
    UNKNOWN_TOP_N = 3000
    SIMILARITY_THRESHOLD = 0.3
    SIMILARITY_LIMIT = 10
    LINK_MATCH_THRESHOLD = int(os.getenv("LINK_MATCH_THRESHOLD", 90))
    STEAM_API_KEY = os.getenv("STEAM_API_KEY")

    # Scheduler
    SCHEDULE_MINUTE = int(os.getenv("SCHEDULE_MINUTE", 18))
    RUN_ON_START = os.getenv("RUN_ON_START", "False").lower() == "true"

    @classmethod
    def get_regions(cls):
        """Regions to scrape, overridable with a comma-separated REGIONS variable"""
        from .models import Region

        raw = os.getenv("REGIONS", "")
        if not raw:
            return list(Region)
        return [Region.parse(code) for code in raw.split(",") if code.strip()]

    @classmethod
    def validate(cls):
        """Validate that configuration values are usable"""
        if cls.LEADERBOARD_SOURCE not in ("curl", "playwright"):
            raise ValueError("LEADERBOARD_SOURCE must be 'curl' or 'playwright'")
        if not 0 <= cls.SCHEDULE_MINUTE <= 59:
            raise ValueError("SCHEDULE_MINUTE must be between 0 and 59")
        if cls.FETCH_TIMEOUT <= 0:
            raise ValueError("FETCH_TIMEOUT must be positive")
