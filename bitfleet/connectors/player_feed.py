"""Off-chain player feed connector.

Two endpoints:
  - paged list of players sorted newest wallet first
  - per-wallet stats (win rate, kills, games played, creation time)
"""

from __future__ import annotations

from typing import Any

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential

from bitfleet.config import FeedsConfig
from bitfleet.connectors.rate_limiter import rate_limiter
from bitfleet.errors import PlayerStatsError
from bitfleet.observability.logger import get_logger

log = get_logger(__name__)


class PlayerFeedClient:
    """Async client for the player list and stats endpoints."""

    def __init__(self, config: FeedsConfig | None = None, client: httpx.AsyncClient | None = None):
        self.config = config or FeedsConfig()
        self._client = client or httpx.AsyncClient(
            timeout=self.config.request_timeout_secs,
            headers={"Accept": "application/json"},
        )

    async def close(self) -> None:
        await self._client.aclose()

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10))
    async def _get(self, url: str, params: dict[str, Any] | None = None) -> Any:
        await rate_limiter.get("player_feed").acquire()
        resp = await self._client.get(url, params=params)
        resp.raise_for_status()
        return resp.json()

    async def fetch_page(self, page: int) -> list[dict[str, Any]]:
        """One page of player records; an empty list on any failure."""
        try:
            data = await self._get(f"{self.config.players_url}{page}")
        except Exception as e:
            log.error("player_feed.fetch_failed", page=page, error=str(e))
            return []
        records = data.get("data") if isinstance(data, dict) else None
        return records if isinstance(records, list) else []

    async def get_player_stats(self, wallet: str) -> dict[str, Any]:
        await rate_limiter.get("player_stats").acquire()
        try:
            resp = await self._client.get(self.config.stats_url, params={"wallet": wallet})
        except httpx.HTTPError as e:
            raise PlayerStatsError(f"no response from stats server: {e}") from e
        if resp.status_code >= 400:
            raise PlayerStatsError(f"server error: {resp.status_code} - {resp.text[:200]}")
        try:
            payload = resp.json()
        except ValueError as e:
            raise PlayerStatsError(f"stats response is not JSON: {e}") from e
        if payload.get("message") != "success":
            raise PlayerStatsError("failed to retrieve player stats")
        return payload.get("data") or {}
