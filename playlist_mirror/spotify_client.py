"""Spotify catalog adapter built on spotipy."""

from typing import Dict, List, Optional

import requests
import spotipy
from spotipy.oauth2 import SpotifyOAuth

from playlist_mirror.catalog import CatalogAdapter
from playlist_mirror.exceptions import AuthenticationError, CatalogError
from playlist_mirror.models import PlaylistRef, TrackRef
from playlist_mirror.rate_limiter import TokenBucket
from playlist_mirror.resilient_client import ResilientClient
from playlist_mirror.utils.logger import get_logger


logger = get_logger()


def _to_track(track_data: Dict) -> TrackRef:
    """Convert a spotipy track object to a TrackRef."""
    try:
        external_ids = track_data.get('external_ids') or {}
        album = track_data.get('album') or {}
        return TrackRef(
            external_id=track_data['id'],
            title=track_data['name'],
            artists=[artist['name'] for artist in track_data.get('artists') or []],
            album=album.get('name') or "",
            duration_seconds=int(track_data['duration_ms']) // 1000,
            isrc=external_ids.get('isrc') or None
        )
    except (KeyError, TypeError, ValueError) as e:
        raise CatalogError(f"Malformed Spotify track: {e}")


def _to_playlist(item: Dict) -> PlaylistRef:
    try:
        return PlaylistRef(
            external_id=item['id'],
            name=item.get('name') or "",
            description=item.get('description') or None,
            track_count=(item.get('tracks') or {}).get('total', 0)
        )
    except (KeyError, TypeError) as e:
        raise CatalogError(f"Malformed Spotify playlist: {e}")


class SpotifyClient(CatalogAdapter):
    """Client for interacting with Spotify Web API."""

    name = "spotify"

    SCOPE = (
        "playlist-read-private playlist-read-collaborative "
        "playlist-modify-private playlist-modify-public"
    )
    RATE_PER_SECOND = 10
    BURST = 5
    PLAYLIST_PAGE_SIZE = 50
    TRACK_PAGE_SIZE = 100
    SEARCH_LIMIT = 5
    TRACK_FIELDS = (
        'items(track(id,name,type,artists(name),album(name),duration_ms,external_ids)),next'
    )

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        client: ResilientClient = None,
        country_code: str = "US",
        cache_path: Optional[str] = None
    ):
        """
        Initialize Spotify client.

        Args:
            client_id: Spotify application client ID
            client_secret: Spotify application client secret
            redirect_uri: OAuth redirect URI
            client: Resilient client owning this catalog's rate limiter
            country_code: Default market for searches
            cache_path: Where spotipy caches the OAuth token
        """
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.country_code = country_code
        self.cache_path = cache_path
        self.client = client or ResilientClient(
            "Spotify", TokenBucket(self.RATE_PER_SECOND, self.BURST)
        )
        self.sp: Optional[spotipy.Spotify] = None
        self.user_id: Optional[str] = None

    async def authenticate_user(self) -> None:
        """
        Authenticate user with Spotify using OAuth.

        Raises:
            AuthenticationError: If authentication fails
        """
        auth_manager = SpotifyOAuth(
            client_id=self.client_id,
            client_secret=self.client_secret,
            redirect_uri=self.redirect_uri,
            scope=self.SCOPE,
            cache_path=self.cache_path,
            open_browser=True
        )
        # A plain session keeps spotipy from mounting its urllib3 Retry adapter,
        # so 429 and 5xx reach the resilient client with their real status and headers
        self.sp = spotipy.Spotify(
            auth_manager=auth_manager,
            requests_session=requests.Session(),
            requests_timeout=10
        )

        try:
            user = await self.client.call(self.sp.current_user, label="current_user")
        except CatalogError as e:
            raise AuthenticationError(f"Spotify authentication failed: {e}")

        self.user_id = user['id']
        logger.info(f"Authenticated as Spotify user: {user.get('display_name') or self.user_id}")

    def _require_auth(self) -> spotipy.Spotify:
        if not self.sp:
            raise AuthenticationError("Not authenticated. Call authenticate_user() first.")
        return self.sp

    async def list_playlists(self) -> List[PlaylistRef]:
        sp = self._require_auth()
        playlists = []
        offset = 0

        while True:
            results = await self.client.call(
                sp.current_user_playlists,
                limit=self.PLAYLIST_PAGE_SIZE,
                offset=offset,
                label="list playlists"
            )

            for item in results['items']:
                if not item:
                    continue
                playlist = _to_playlist(item)
                playlists.append(playlist)
                logger.debug(f"Found playlist: {playlist.name} ({playlist.track_count} tracks)")

            if not results['next']:
                break

            offset += self.PLAYLIST_PAGE_SIZE

        logger.info(f"Retrieved {len(playlists)} playlists from Spotify")
        return playlists

    async def get_playlist(self, playlist_id: str) -> PlaylistRef:
        sp = self._require_auth()
        item = await self.client.call(
            sp.playlist,
            playlist_id,
            fields='id,name,description,tracks.total',
            label=f"get playlist {playlist_id}"
        )
        return _to_playlist(item)

    async def list_tracks(self, playlist_id: str) -> List[TrackRef]:
        """
        List all tracks in a playlist.

        Local files and podcast episodes have no catalog identity and are skipped.
        """
        sp = self._require_auth()
        tracks = []
        offset = 0

        while True:
            results = await self.client.call(
                sp.playlist_items,
                playlist_id,
                offset=offset,
                limit=self.TRACK_PAGE_SIZE,
                fields=self.TRACK_FIELDS,
                additional_types=('track',),
                label=f"list tracks {playlist_id}"
            )

            for item in results['items']:
                track_data = item.get('track')
                if not track_data or not track_data.get('id') or track_data.get('type', 'track') != 'track':
                    continue
                tracks.append(_to_track(track_data))

            if not results['next']:
                break

            offset += self.TRACK_PAGE_SIZE

        logger.info(f"Retrieved {len(tracks)} tracks from playlist {playlist_id}")
        return tracks

    async def create_playlist(self, name: str, description: str) -> PlaylistRef:
        sp = self._require_auth()
        item = await self.client.call(
            sp.user_playlist_create,
            self.user_id,
            name,
            public=False,
            description=description,
            label=f"create playlist {name}"
        )
        playlist = _to_playlist(item)
        logger.info(f"Created Spotify playlist: {name} (ID: {playlist.external_id})")
        return playlist

    async def update_playlist(self, playlist_id: str, name: str, description: str) -> None:
        sp = self._require_auth()
        await self.client.call(
            sp.playlist_change_details,
            playlist_id,
            name=name,
            description=description,
            label=f"update playlist {playlist_id}"
        )

    async def add_track(self, playlist_id: str, track_id: str) -> None:
        sp = self._require_auth()
        await self.client.call(
            sp.playlist_add_items,
            playlist_id,
            [track_id],
            label=f"add track {track_id}"
        )
        logger.debug(f"Added track {track_id} to playlist {playlist_id}")

    async def search_tracks(self, query: str, country_code: Optional[str] = None) -> List[TrackRef]:
        sp = self._require_auth()
        results = await self.client.call(
            sp.search,
            q=query,
            type='track',
            limit=self.SEARCH_LIMIT,
            market=country_code or self.country_code,
            label="search"
        )
        items = (results.get('tracks') or {}).get('items') or []
        return [_to_track(item) for item in items[:self.SEARCH_LIMIT] if item]

    async def get_track_by_isrc(self, isrc: str, country_code: Optional[str] = None) -> Optional[TrackRef]:
        sp = self._require_auth()
        results = await self.client.call(
            sp.search,
            q=f"isrc:{isrc}",
            type='track',
            limit=1,
            market=country_code or self.country_code,
            label=f"isrc lookup {isrc}"
        )
        items = (results.get('tracks') or {}).get('items') or []
        if not items:
            logger.debug(f"No track found for ISRC: {isrc}")
            return None
        return _to_track(items[0])
