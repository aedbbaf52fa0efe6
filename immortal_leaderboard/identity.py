"""
Steam identity resolution for known-player registration.

Accepts a raw SteamID64, a /profiles/<id> URL, or a /id/<vanity> URL. Vanity
URLs and profile lookups need STEAM_API_KEY.
"""

import asyncio
import logging
import re
from typing import Any, Dict, Optional

from curl_cffi import requests as curl_requests

from .config import Config
from .errors import ValidationError

logger = logging.getLogger(__name__)

STEAM_ID64_RE = re.compile(r"^7656119\d{10}$")
PROFILE_URL_RE = re.compile(r"steamcommunity\.com/profiles/(\d+)")
VANITY_URL_RE = re.compile(r"steamcommunity\.com/id/([^/?#]+)")

STEAM_API_BASE = "https://api.steampowered.com/ISteamUser"


class SteamIdentityResolver:
    """Turns user-supplied identity references into SteamID64 strings"""

    def __init__(self, api_key: Optional[str] = None, timeout: int = 15):
        self.api_key = api_key if api_key is not None else Config.STEAM_API_KEY
        self.timeout = timeout

    async def resolve(self, identity_ref: str) -> str:
        """Return a SteamID64 or raise ValidationError"""
        ref = (identity_ref or "").strip()
        if not ref:
            raise ValidationError("Empty identity reference", "A Steam profile URL or SteamID64 is required.")

        if STEAM_ID64_RE.match(ref):
            return ref

        match = PROFILE_URL_RE.search(ref)
        if match:
            steam_id = match.group(1)
            if not STEAM_ID64_RE.match(steam_id):
                raise ValidationError(f"Malformed SteamID64 in profile URL: {ref}")
            return steam_id

        match = VANITY_URL_RE.search(ref)
        if match:
            return await self.resolve_vanity_url(match.group(1))

        raise ValidationError(
            f"Unrecognised Steam URL/ID: {ref}",
            "Could not resolve a SteamID from the given reference."
        )

    async def resolve_vanity_url(self, vanity: str) -> str:
        if not self.api_key:
            raise ValidationError("Steam API key not configured; cannot resolve vanity URL")

        data = await self._get("ResolveVanityURL/v0001/", {"vanityurl": vanity})
        response = (data or {}).get("response", {})
        if response.get("success") == 1 and response.get("steamid"):
            return response["steamid"]
        raise ValidationError(f"Vanity URL not found on Steam: {vanity}")

    async def get_profile(self, steam_id: str) -> Optional[Dict[str, Any]]:
        """Steam player summary, or None when unavailable"""
        if not self.api_key:
            logger.debug("Steam API key not configured, skipping profile lookup")
            return None

        data = await self._get("GetPlayerSummaries/v0002/", {"steamids": steam_id})
        players = (data or {}).get("response", {}).get("players", [])
        return players[0] if players else None

    async def _get(self, path: str, params: Dict[str, str]) -> Optional[Dict[str, Any]]:
        url = f"{STEAM_API_BASE}/{path}"
        query = {"key": self.api_key, **params}
        loop = asyncio.get_running_loop()
        try:
            response = await loop.run_in_executor(
                None, lambda: curl_requests.get(url, params=query, timeout=self.timeout)
            )
        except Exception as e:
            logger.error(f"Steam API request error: {path} -> {e}")
            return None
        if response.status_code != 200:
            logger.warning(f"Steam API request failed: {path} -> {response.status_code}")
            return None
        return response.json()
