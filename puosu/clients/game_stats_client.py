import time
from typing import List, Optional

import httpx

from puosu.config import settings
from puosu.diagnostics import DiagnosticsBuffer
from puosu.errors import ExternalServiceError
from puosu.logging_config import get_logger
from puosu.result import Err, Ok, Result

logger = get_logger(__name__)

STAT_KEYS = {
    "userId": "user_id",
    "score": "score",
    "kills": "kills",
    "deaths": "deaths",
    "assists": "assists",
    "damage": "damage",
    "placement": "placement",
}


class GameStatsClient:
    """
    Untrusted game-stats API. Calls are never retried: any failure is returned
    as ``Err`` and the caller treats the result as unavailable for this sweep.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        rate_limit_per_minute: Optional[int] = None,
        diagnostics: Optional[DiagnosticsBuffer] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client = httpx.AsyncClient(
            base_url=base_url or settings.game_stats_base_url,
            timeout=timeout if timeout is not None else settings.game_stats_timeout_seconds,
            transport=transport,
        )
        self._tokens: List[float] = []
        self.rate_limit_per_minute = (
            rate_limit_per_minute if rate_limit_per_minute is not None else settings.rate_limit_per_minute
        )
        self.diagnostics = diagnostics

    def _respect_rate_limit(self) -> bool:
        now = time.time()
        self._tokens = [t for t in self._tokens if now - t < 60]
        if len(self._tokens) >= self.rate_limit_per_minute:
            return False
        self._tokens.append(now)
        return True

    def _record(self, url: str, status: Optional[int], started: float, error: Optional[str] = None) -> None:
        if self.diagnostics is None:
            return
        self.diagnostics.record(
            service="game_stats",
            method="GET",
            url=url,
            status=status,
            duration_ms=round((time.monotonic() - started) * 1000, 1),
            error=error,
        )

    async def fetch_match_results(self, game_slug: str, challenge_id: str) -> Result:
        """
        Fetch per-player result lines for a challenge's match as snake_case dicts.
        """
        url = f"/games/{game_slug}/matches/{challenge_id}/results"
        if not self._respect_rate_limit():
            self._record(url, 429, time.monotonic(), "rate limited")
            return Err(ExternalServiceError("game stats rate limit reached"))

        started = time.monotonic()
        try:
            resp = await self.client.get(url)
        except httpx.RequestError as exc:
            self._record(url, None, started, str(exc))
            logger.warning("Game stats request error for challenge %s: %s", challenge_id, exc)
            return Err(ExternalServiceError(f"game stats request error: {exc}"))

        if resp.status_code != 200:
            self._record(url, resp.status_code, started, resp.text[:200])
            logger.info("Game stats unavailable for challenge %s: status=%s", challenge_id, resp.status_code)
            return Err(ExternalServiceError(f"game stats returned {resp.status_code}"))

        try:
            payload = resp.json()
            lines = [
                {STAT_KEYS[key]: value for key, value in raw.items() if key in STAT_KEYS}
                for raw in payload.get("results", [])
            ]
        except (ValueError, AttributeError) as exc:
            self._record(url, resp.status_code, started, f"malformed body: {exc}")
            return Err(ExternalServiceError(f"malformed game stats response: {exc}"))

        if any("user_id" not in line for line in lines):
            self._record(url, resp.status_code, started, "result line without userId")
            return Err(ExternalServiceError("game stats result line without userId"))
        self._record(url, resp.status_code, started)
        return Ok(lines)

    async def aclose(self) -> None:
        await self.client.aclose()
