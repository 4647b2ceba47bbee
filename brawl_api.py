"""Brawl Stars API client module using httpx."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from config import (
    API_TIMEOUT_SECONDS,
    BRAWL_API_BASE_URL,
    RANKED_API_BASE_URL,
    RANKED_API_TIMEOUT_SECONDS,
)
from tags import encode_tag, normalize_tag

logger = logging.getLogger(__name__)

RETRY_STATUSES = {429, 502, 503, 504}
MAX_ATTEMPTS = 3
RETRY_BASE_DELAY_SECONDS = 1.0

LEAGUE_NAMES = ("Bronze", "Silver", "Gold", "Diamond", "Mythic", "Legendary", "Masters")
LEAGUE_SUBS = ("I", "II", "III")

# Stat ids returned by the ranked API profile endpoint
RANKED_STAT_HIGHEST_TIER = 22
RANKED_STAT_CURRENT_TIER = 23
RANKED_STAT_CURRENT_POINTS = 24
RANKED_STAT_HIGHEST_POINTS = 25

UNRANKED = "Unranked"


class BrawlStarsAPIError(Exception):
    """Custom exception for Brawl Stars API errors."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(f"Brawl Stars API Error {status_code}: {message}")

    @property
    def is_forbidden(self) -> bool:
        return self.status_code == 403

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404

    @property
    def is_rate_limited(self) -> bool:
        return self.status_code == 429


@dataclass(slots=True)
class RankedInfo:
    current_rank: str = UNRANKED
    highest_rank: str = UNRANKED
    current_points: int = 0
    highest_points: int = 0


def format_league_rank(rank_tier: int) -> str:
    """Map a ranked tier number (1..22) to its label."""
    if rank_tier <= 0:
        return UNRANKED
    if rank_tier >= 22:
        return "Pro"
    league_index = (rank_tier - 1) // 3
    sub_index = (rank_tier - 1) % 3
    return f"{LEAGUE_NAMES[league_index]} {LEAGUE_SUBS[sub_index]}"


def _stat_value(stats: list[dict[str, Any]], stat_id: int) -> int:
    for stat in stats:
        if stat.get("id") == stat_id:
            try:
                return int(stat.get("value") or 0)
            except (TypeError, ValueError):
                return 0
    return 0


def parse_ranked_stats(payload: Any) -> RankedInfo:
    if not isinstance(payload, dict) or not payload.get("ok"):
        return RankedInfo()
    stats = (payload.get("result") or {}).get("stats")
    if not isinstance(stats, list):
        return RankedInfo()
    return RankedInfo(
        current_rank=format_league_rank(_stat_value(stats, RANKED_STAT_CURRENT_TIER)),
        highest_rank=format_league_rank(_stat_value(stats, RANKED_STAT_HIGHEST_TIER)),
        current_points=_stat_value(stats, RANKED_STAT_CURRENT_POINTS),
        highest_points=_stat_value(stats, RANKED_STAT_HIGHEST_POINTS),
    )


class BrawlStarsAPI:
    """Async client for the Brawl Stars API.

    One instance is built per sync run with the API key resolved for that
    run, and closed when the run ends.
    """

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = BRAWL_API_BASE_URL,
        ranked_base_url: str = RANKED_API_BASE_URL,
        timeout: float = API_TIMEOUT_SECONDS,
        ranked_timeout: float = RANKED_API_TIMEOUT_SECONDS,
    ):
        self._api_key = api_key
        self._base_url = base_url
        self._ranked_base_url = ranked_base_url
        self._timeout = timeout
        self._ranked_timeout = ranked_timeout
        self._client: httpx.AsyncClient | None = None
        self._ranked_client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "BrawlStarsAPI":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Accept": "application/json",
                },
                timeout=self._timeout,
            )
        return self._client

    async def _get_ranked_client(self) -> httpx.AsyncClient:
        if self._ranked_client is None or self._ranked_client.is_closed:
            self._ranked_client = httpx.AsyncClient(
                base_url=self._ranked_base_url,
                headers={"Accept": "application/json"},
                timeout=self._ranked_timeout,
            )
        return self._ranked_client

    async def close(self) -> None:
        """Close the HTTP clients."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        if self._ranked_client is not None:
            await self._ranked_client.aclose()
            self._ranked_client = None

    async def _request(self, endpoint: str) -> dict[str, Any]:
        """Make an API request and return JSON response."""
        client = await self._get_client()

        for attempt in range(1, MAX_ATTEMPTS + 1):
            delay = RETRY_BASE_DELAY_SECONDS * attempt
            try:
                response = await client.get(endpoint)
            except httpx.RequestError as e:
                if attempt < MAX_ATTEMPTS:
                    logger.warning(
                        "HTTP request error (attempt %s/%s): %s",
                        attempt,
                        MAX_ATTEMPTS,
                        e,
                    )
                    await asyncio.sleep(delay)
                    continue
                logger.error("HTTP request error: %s", e)
                raise BrawlStarsAPIError(0, f"Network error: {e}")

            if response.status_code == 200:
                return response.json()
            if response.status_code == 404:
                raise BrawlStarsAPIError(404, "Resource not found")
            if response.status_code == 403:
                raise BrawlStarsAPIError(
                    403,
                    "Access denied - check the API key and make sure the "
                    "calling IP address is allowlisted for it",
                )
            if response.status_code in RETRY_STATUSES:
                if attempt < MAX_ATTEMPTS:
                    logger.warning(
                        "Brawl Stars API retry (status %s) attempt %s/%s; sleeping %.1fs",
                        response.status_code,
                        attempt,
                        MAX_ATTEMPTS,
                        delay,
                    )
                    await asyncio.sleep(delay)
                    continue
                if response.status_code == 429:
                    raise BrawlStarsAPIError(429, "Rate limit exceeded")
            raise BrawlStarsAPIError(
                response.status_code,
                f"API request failed: {response.text}",
            )
        raise BrawlStarsAPIError(0, "Request attempts exhausted")

    async def get_club(self, club_tag: str) -> dict[str, Any]:
        """
        Get club information including its member roster.

        Args:
            club_tag: Club tag (with or without #)

        Returns:
            Club data dictionary
        """
        return await self._request(f"/clubs/{encode_tag(club_tag)}")

    async def get_player(self, player_tag: str) -> dict[str, Any]:
        """
        Get player profile including the brawler list.

        Args:
            player_tag: Player tag (with or without #)

        Returns:
            Player data dictionary
        """
        return await self._request(f"/players/{encode_tag(player_tag)}")

    async def get_battle_log(self, player_tag: str) -> list[dict[str, Any]]:
        """
        Get the most recent battles of a player.

        A private or brand new account answers 404; that is treated as an
        empty log instead of a failure.
        """
        try:
            response = await self._request(
                f"/players/{encode_tag(player_tag)}/battlelog"
            )
        except BrawlStarsAPIError as e:
            if e.is_not_found:
                logger.info("Battle log not available for %s; treating as empty", player_tag)
                return []
            raise
        items = response.get("items", []) if isinstance(response, dict) else []
        return items if isinstance(items, list) else []

    async def get_ranked_info(self, player_tag: str) -> RankedInfo:
        """Fetch ranked tiers from the secondary API; failures yield Unranked."""
        clean_tag = normalize_tag(player_tag).lstrip("#")
        try:
            client = await self._get_ranked_client()
            response = await client.get("/profile", params={"tag": clean_tag})
            if response.status_code != 200:
                logger.warning(
                    "Ranked API returned %s for %s", response.status_code, player_tag
                )
                return RankedInfo()
            return parse_ranked_stats(response.json())
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Error fetching ranked data for %s: %s", player_tag, e)
            return RankedInfo()

    async def verify_club(self, club_tag: str) -> dict[str, Any]:
        """Check that the club exists and the key works; returns a summary."""
        club = await self.get_club(club_tag)
        return {
            "club_name": club.get("name", "Unknown"),
            "member_count": len(club.get("members") or []),
            "required_trophies": club.get("requiredTrophies"),
        }
