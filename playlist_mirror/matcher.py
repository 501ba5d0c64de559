"""Track matching logic using ISRC and title/duration search."""

import re
from typing import List, Optional

from rapidfuzz import fuzz

from playlist_mirror.catalog import CatalogAdapter
from playlist_mirror.models import (
    MATCH_ISRC,
    MATCH_NAME_ALBUM,
    MATCH_NAME_ARTIST,
    MatchCandidate,
    TrackRef,
)
from playlist_mirror.utils.logger import get_logger


logger = get_logger()


SUFFIX_START = re.compile(r'[-(\[]')


def normalize_title(title: str) -> str:
    """
    Strip edition suffixes from a track title.

    Everything from the first "-", "(" or "[" on is dropped, so
    "Song Title (feat. Artist) - Remix" becomes "Song Title". A title that
    starts with one of those characters is kept whole.
    """
    title = title or ""
    cut = SUFFIX_START.split(title, maxsplit=1)[0].strip()
    return cut or title.strip()


class TrackMatcher:
    """Matcher for finding destination tracks that correspond to source tracks."""

    SEARCH_CANDIDATES = 5
    DURATION_TOLERANCE_SECONDS = 5

    def __init__(self, destination: CatalogAdapter, country_code: Optional[str] = None):
        """
        Initialize track matcher.

        Args:
            destination: Authenticated destination catalog adapter
            country_code: Market passed to searches (adapter default when None)
        """
        self.destination = destination
        self.country_code = country_code

    async def match(self, source_track: TrackRef) -> Optional[MatchCandidate]:
        """
        Match a source track to a destination track.

        Strategy:
        1. ISRC lookup (if the track has one); a hit is final
        2. Search "<title> <album>" and take the first acceptable result
        3. Search "<title> <first artist>" and take the first acceptable result

        Returns:
            MatchCandidate if a match is found, None otherwise

        Raises:
            CatalogError: If the destination catalog fails
        """
        if source_track.isrc:
            track = await self.destination.get_track_by_isrc(source_track.isrc, self.country_code)
            if track:
                logger.info(f"ISRC match: {source_track} -> {track.title} ({track.external_id})")
                return MatchCandidate(track=track, method=MATCH_ISRC, score=100.0)
            logger.debug(f"ISRC {source_track.isrc} not found, falling back to search: {source_track}")

        title = normalize_title(source_track.title)

        queries = [(f"{title} {source_track.album}".strip(), MATCH_NAME_ALBUM)]
        if source_track.primary_artist:
            queries.append((f"{title} {source_track.primary_artist}", MATCH_NAME_ARTIST))

        for query, method in queries:
            logger.debug(f"Searching destination for: {query}")
            results = await self.destination.search_tracks(query, self.country_code)
            candidate = self._first_acceptable(source_track, title, results, method)
            if candidate:
                return candidate

        logger.debug(f"No match for: {source_track}")
        return None

    def _first_acceptable(
        self,
        source_track: TrackRef,
        title: str,
        results: List[TrackRef],
        method: str
    ) -> Optional[MatchCandidate]:
        for track in results[:self.SEARCH_CANDIDATES]:
            if self.title_matches(title, track.title) and self.duration_matches(
                source_track.duration_seconds, track.duration_seconds
            ):
                score = fuzz.ratio(title.lower(), track.title.lower())
                logger.info(
                    f"Search match ({method}, score={score:.2f}): "
                    f"{source_track} -> {track.title} ({track.external_id})"
                )
                return MatchCandidate(track=track, method=method, score=score)

            logger.debug(
                f"Rejected candidate {track.title} ({track.duration_seconds}s) "
                f"for {source_track.title} ({source_track.duration_seconds}s)"
            )
        return None

    @staticmethod
    def title_matches(normalized_title: str, candidate_title: str) -> bool:
        return normalized_title.lower() in (candidate_title or "").lower()

    @classmethod
    def duration_matches(cls, source_seconds: int, candidate_seconds: int) -> bool:
        return abs(source_seconds - candidate_seconds) <= cls.DURATION_TOLERANCE_SECONDS
