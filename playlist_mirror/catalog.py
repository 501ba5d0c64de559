"""Capability set every catalog adapter implements."""

from abc import ABC, abstractmethod
from typing import List, Optional

from playlist_mirror.models import PlaylistRef, TrackRef


class CatalogAdapter(ABC):
    """
    Catalog-agnostic view of one music service.

    Adapters translate the service's wire shapes into PlaylistRef / TrackRef
    and route every remote call through their ResilientClient. Failures are
    raised as CatalogError (or AuthenticationError when credentials are
    rejected); a missing ISRC is reported as None, never as an error.
    """

    name = "catalog"

    @abstractmethod
    async def list_playlists(self) -> List[PlaylistRef]:
        """List all playlists of the authenticated user."""

    @abstractmethod
    async def get_playlist(self, playlist_id: str) -> PlaylistRef:
        """Fetch one playlist's metadata."""

    @abstractmethod
    async def list_tracks(self, playlist_id: str) -> List[TrackRef]:
        """List a playlist's tracks in playlist order."""

    @abstractmethod
    async def create_playlist(self, name: str, description: str) -> PlaylistRef:
        """Create a private playlist."""

    @abstractmethod
    async def update_playlist(self, playlist_id: str, name: str, description: str) -> None:
        """Replace a playlist's name and description."""

    @abstractmethod
    async def add_track(self, playlist_id: str, track_id: str) -> None:
        """Append one track to a playlist."""

    @abstractmethod
    async def search_tracks(self, query: str, country_code: Optional[str] = None) -> List[TrackRef]:
        """Free-text track search, bounded to a handful of results."""

    @abstractmethod
    async def get_track_by_isrc(self, isrc: str, country_code: Optional[str] = None) -> Optional[TrackRef]:
        """Exact ISRC lookup. Returns None when the catalog has no such recording."""
