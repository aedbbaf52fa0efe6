#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Leaderboard sources (the fetch step).

Two interchangeable ways to pull raw leaderboard markup for a region:
curl_cffi with Chrome impersonation, or a headless Playwright browser for
when the board only exists after client-side rendering. Neither retries;
a failed fetch is retried by the next scheduled cycle.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

from curl_cffi import requests as curl_requests

from .config import Config
from .errors import FetchError
from .models import Region

logger = logging.getLogger(__name__)

# Upstream rejects requests that do not look like a browser
BROWSER_HEADERS: Dict[str, str] = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
    "Upgrade-Insecure-Requests": "1",
}


class LeaderboardSource(ABC):
    """Base class for anything that can fetch a region's leaderboard markup"""

    def __init__(self, url_template: Optional[str] = None, timeout: Optional[int] = None):
        self.url_template = url_template or Config.LEADERBOARD_URL_TEMPLATE
        self.timeout = timeout or Config.FETCH_TIMEOUT

    def url_for(self, region: Region) -> str:
        return self.url_template.format(region=Region.parse(region).value)

    @abstractmethod
    async def fetch(self, region: Region) -> str:
        """Return raw markup for the region or raise FetchError"""
        pass

    async def close(self):
        """Release resources"""
        pass


# ============== curl_cffi source ==============


class CurlLeaderboardSource(LeaderboardSource):
    """Single GET with a browser fingerprint"""

    def __init__(self, url_template: Optional[str] = None, timeout: Optional[int] = None,
                 impersonate: str = "chrome"):
        super().__init__(url_template, timeout)
        self.impersonate = impersonate

    async def fetch(self, region: Region) -> str:
        region = Region.parse(region)
        url = self.url_for(region)

        loop = asyncio.get_running_loop()
        try:
            response = await loop.run_in_executor(
                None,
                lambda: curl_requests.get(
                    url,
                    headers=BROWSER_HEADERS,
                    impersonate=self.impersonate,
                    timeout=self.timeout,
                ),
            )
        except Exception as e:
            logger.error(f"Request error: {url} -> {e}")
            raise FetchError(region.value, str(e)) from e

        if not 200 <= response.status_code < 300:
            logger.warning(f"Request failed: {url} -> {response.status_code}")
            raise FetchError(region.value, f"HTTP {response.status_code}", response.status_code)

        logger.debug(f"Fetched {len(response.text)} bytes for {region.value}")
        return response.text


# ============== Playwright source ==============


class PlaywrightLeaderboardSource(LeaderboardSource):
    """Headless browser source for the client-rendered leaderboard page"""

    READY_SELECTOR = "#leaderboard_body .player_name"

    def __init__(self, url_template: Optional[str] = None, timeout: Optional[int] = None,
                 headless: bool = True, browser: str = "chromium"):
        super().__init__(url_template, timeout)
        self._headless = headless
        self._browser_type = browser
        self._playwright = None
        self._browser = None
        self._context = None
        self._init_lock = asyncio.Lock()

    async def _ensure_init(self) -> bool:
        async with self._init_lock:
            if self._context:
                return True
            try:
                from playwright.async_api import async_playwright
            except ImportError:
                logger.warning("playwright is not installed: pip install 'immortal-leaderboard[browser]' && playwright install")
                return False

            try:
                self._playwright = await async_playwright().start()
                launcher = getattr(self._playwright, self._browser_type, self._playwright.chromium)
                self._browser = await launcher.launch(
                    headless=self._headless,
                    args=["--no-sandbox", "--disable-setuid-sandbox"],
                )
                self._context = await self._browser.new_context(
                    user_agent=BROWSER_HEADERS["User-Agent"],
                    extra_http_headers={"Accept-Language": BROWSER_HEADERS["Accept-Language"]},
                )
                logger.info(f"Playwright source initialised (browser={self._browser_type})")
                return True
            except Exception as e:
                logger.error(f"Playwright initialisation failed: {e}")
                await self.close()
                return False

    async def fetch(self, region: Region) -> str:
        region = Region.parse(region)
        if not await self._ensure_init():
            raise FetchError(region.value, "browser source unavailable")

        url = self.url_for(region)
        timeout_ms = self.timeout * 1000
        page = await self._context.new_page()
        try:
            response = await page.goto(url, wait_until="networkidle", timeout=timeout_ms)
            if response is not None and not response.ok:
                raise FetchError(region.value, f"HTTP {response.status}", response.status)
            await page.wait_for_selector(self.READY_SELECTOR, timeout=timeout_ms)
            return await page.content()
        except FetchError:
            raise
        except Exception as e:
            logger.error(f"Playwright fetch failed: {url} -> {e}")
            raise FetchError(region.value, str(e)) from e
        finally:
            await page.close()

    async def close(self):
        if self._context:
            await self._context.close()
            self._context = None
        if self._browser:
            await self._browser.close()
            self._browser = None
        if self._playwright:
            await self._playwright.stop()
            self._playwright = None


def create_source(name: Optional[str] = None, **kwargs) -> LeaderboardSource:
    """Build a source by name ("curl" or "playwright")"""
    name = (name or Config.LEADERBOARD_SOURCE).lower()
    if name == "curl":
        return CurlLeaderboardSource(**kwargs)
    if name == "playwright":
        return PlaywrightLeaderboardSource(**kwargs)
    raise ValueError(f"Unknown leaderboard source: {name}")
