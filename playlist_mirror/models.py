"""Catalog-agnostic playlist and track records."""

from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional


MATCH_ISRC = 'isrc-exact'
MATCH_NAME_ALBUM = 'name-album-search'
MATCH_NAME_ARTIST = 'name-artist-search'


@dataclass
class PlaylistRef:
    """A playlist as seen in one catalog. Identity is external_id within that catalog."""

    external_id: str
    name: str
    description: Optional[str] = None
    track_count: int = 0

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class TrackRef:
    """A track as seen in one catalog."""

    external_id: str
    title: str
    artists: List[str] = field(default_factory=list)
    album: str = ""
    duration_seconds: int = 0
    isrc: Optional[str] = None

    @property
    def primary_artist(self) -> Optional[str]:
        return self.artists[0] if self.artists else None

    def to_dict(self) -> Dict:
        return asdict(self)

    def __str__(self) -> str:
        artist = ", ".join(self.artists) if self.artists else "Unknown"
        return f"{self.title} by {artist}"


@dataclass
class MatchCandidate:
    """
    A destination track proposed as equivalent to a source track.

    method is one of MATCH_ISRC, MATCH_NAME_ALBUM, MATCH_NAME_ARTIST and
    score is a 0-100 title similarity kept for diagnostics only.
    """

    track: TrackRef
    method: str
    score: float = 100.0

    def __repr__(self) -> str:
        return f"MatchCandidate(method={self.method}, score={self.score:.2f}, id={self.track.external_id})"
