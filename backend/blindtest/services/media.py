import logging
from typing import List, Optional

import httpx
from pydantic import ValidationError

from blindtest.config import DEEZER_API_URL, HTTP_TIMEOUT_SEC, TEST_TRACK_QUERIES
from blindtest.models.room import Track

logger = logging.getLogger(__name__)


def _parse_tracks(items) -> List[Track]:
    tracks = []
    for item in items or []:
        try:
            tracks.append(Track.model_validate(item))
        except ValidationError:
            # Entries without a preview cannot be played in a round
            continue
    return tracks


class TrackSearch:
    """Track lookup against the Deezer public API.

    Failures of any kind (network, HTTP status, malformed JSON) are logged
    and reported as "no candidates": the room never depends on search.
    """

    def __init__(self, base_url: str = DEEZER_API_URL, client: httpx.AsyncClient = None, test_queries: List[str] = None):
        self.base_url = base_url.rstrip("/")
        self._client = client
        self._test_queries = test_queries if test_queries is not None else TEST_TRACK_QUERIES
        self._test_track: Optional[Track] = None

    async def _get_json(self, path: str, params: dict = None):
        if self._client is not None:
            response = await self._client.get(f"{self.base_url}{path}", params=params)
        else:
            async with httpx.AsyncClient(timeout=HTTP_TIMEOUT_SEC) as client:
                response = await client.get(f"{self.base_url}{path}", params=params)
        response.raise_for_status()
        return response.json()

    async def search(self, query: str) -> List[Track]:
        query = (query or "").strip()
        if not query:
            return []
        try:
            payload = await self._get_json("/search", {"q": query})
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Track search failed for {query!r}: {e}")
            return []
        if not isinstance(payload, dict) or payload.get("error"):
            logger.warning(f"Track search for {query!r} returned an error: {payload}")
            return []
        return _parse_tracks(payload.get("data"))

    async def fetch_by_id(self, track_id) -> Optional[Track]:
        try:
            payload = await self._get_json(f"/track/{track_id}")
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Track lookup failed for {track_id}: {e}")
            return None
        if not isinstance(payload, dict) or payload.get("error"):
            return None
        try:
            return Track.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"Track {track_id} is not playable: {e.error_count()} validation error(s)")
            return None

    async def test_track(self) -> Optional[Track]:
        """Track used for non-scoring test rounds, looked up once per process."""
        if self._test_track is not None:
            return self._test_track
        for query in self._test_queries:
            results = await self.search(query)
            if results:
                self._test_track = results[0]
                logger.info(f"Test track resolved via {query!r}: {self._test_track.title}")
                return self._test_track
        logger.warning("No test track could be resolved")
        return None
