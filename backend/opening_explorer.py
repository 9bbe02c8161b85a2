"""
Lichess Opening Explorer API client with caching.
Serves as a reference database: per-move human results for a position.
"""

import aiohttp
import asyncio
import logging
import time
from typing import Dict, List, Optional, Sequence

from variant_models import MoveStats

logger = logging.getLogger(__name__)


class ReferenceDatabaseError(Exception):
    pass


class LichessExplorerClient:
    """Client for querying the Lichess Opening Explorer API."""

    BASE_URL = "https://explorer.lichess.ovh"
    CACHE_TTL = 3600  # 1 hour
    MAX_CACHE_ENTRIES = 1000

    def __init__(
        self,
        db: str = "lichess",
        speeds: Optional[Sequence[str]] = None,
        ratings: Optional[Sequence[int]] = None,
        since: Optional[str] = None,
    ):
        self.db = db
        self.speeds = list(speeds or ["blitz", "rapid", "classical"])
        self.ratings = list(ratings or [1600, 1800, 2000, 2200])
        self.since = since
        self._cache: Dict[str, tuple[Dict, float]] = {}  # {cache_key: (data, timestamp)}
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def name(self) -> str:
        return f"lichess-explorer:{self.db}"

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self):
        """Close the aiohttp session."""
        if self._session and not self._session.closed:
            await self._session.close()

    def _make_cache_key(self, fen: str) -> str:
        speeds_str = ",".join(sorted(self.speeds))
        ratings_str = ",".join(str(r) for r in sorted(self.ratings))
        return f"{fen}|{self.db}|{speeds_str}|{ratings_str}"

    def _get_cached(self, cache_key: str) -> Optional[Dict]:
        """Get data from cache if valid."""
        if cache_key in self._cache:
            data, timestamp = self._cache[cache_key]
            if time.time() - timestamp < self.CACHE_TTL:
                return data
            del self._cache[cache_key]
        return None

    def _set_cache(self, cache_key: str, data: Dict):
        now = time.time()
        if cache_key not in self._cache and len(self._cache) >= self.MAX_CACHE_ENTRIES:
            expired = [k for k, (_, ts) in self._cache.items() if now - ts >= self.CACHE_TTL]
            for k in expired:
                del self._cache[k]
            # Still full: drop the oldest insertions
            while len(self._cache) >= self.MAX_CACHE_ENTRIES:
                del self._cache[next(iter(self._cache))]
        self._cache[cache_key] = (data, now)

    async def query_position(self, fen: str) -> Dict:
        """
        Query the Lichess Opening Explorer for a position.

        Returns:
            {
                "white": int, "draws": int, "black": int,
                "moves": [
                    {"uci": str, "san": str, "white": int, "draws": int, "black": int, ...}
                ],
                "opening": {"eco": str, "name": str}?
            }

        Raises:
            ReferenceDatabaseError: on HTTP errors and timeouts
        """
        cache_key = self._make_cache_key(fen)
        cached = self._get_cached(cache_key)
        if cached is not None:
            return cached

        params = {"variant": "standard", "fen": fen}
        if self.db == "lichess":
            params["speeds"] = ",".join(self.speeds)
            params["ratings"] = ",".join(map(str, self.ratings))
            if self.since:
                params["since"] = self.since

        session = await self._get_session()
        url = f"{self.BASE_URL}/{self.db}"

        try:
            async with session.get(url, params=params, timeout=aiohttp.ClientTimeout(total=10)) as response:
                if response.status == 429:
                    logger.warning(f"[EXPLORER] Rate limited by {url}")
                    raise ReferenceDatabaseError("Lichess API rate limited (429)")
                if response.status != 200:
                    raise ReferenceDatabaseError(f"Lichess API error: {response.status}")
                data = await response.json()
        except asyncio.TimeoutError as e:
            logger.warning(f"[EXPLORER] Timed out querying {url}")
            raise ReferenceDatabaseError("Lichess API timeout") from e
        except aiohttp.ClientError as e:
            raise ReferenceDatabaseError(f"Failed to query Lichess explorer: {e}") from e

        self._set_cache(cache_key, data)
        return data

    async def moves_from(self, fen: str) -> List[MoveStats]:
        data = await self.query_position(fen)
        return parse_explorer_moves(data)


def parse_explorer_moves(data: Dict) -> List[MoveStats]:
    """Explorer JSON -> MoveStats, keeping the explorer's order."""
    out: List[MoveStats] = []
    for move in data.get("moves") or []:
        san = move.get("san")
        if not san:
            continue
        out.append(MoveStats(
            san=san,
            uci=move.get("uci"),
            white=int(move.get("white", 0) or 0),
            draws=int(move.get("draws", 0) or 0),
            black=int(move.get("black", 0) or 0),
        ))
    return out
