"""
Tidal catalog adapter.

Catalog lookups (ISRC, search) go to the public OpenAPI v2 with the
application's client-credentials token; user resources (playlists) go to the
v1 API with the device-flow user token.
"""

import re
from typing import Dict, List, Optional
from urllib.parse import quote

import requests

from playlist_mirror.catalog import CatalogAdapter
from playlist_mirror.exceptions import AuthenticationError, CatalogError
from playlist_mirror.models import PlaylistRef, TrackRef
from playlist_mirror.rate_limiter import TokenBucket
from playlist_mirror.resilient_client import ResilientClient
from playlist_mirror.utils.logger import get_logger


logger = get_logger()


ISO_DURATION = re.compile(r'^P(?:(\d+)D)?(?:T(?:(\d+)H)?(?:(\d+)M)?(?:(\d+(?:\.\d+)?)S)?)?$')


def parse_iso_duration(value: str) -> int:
    """
    Convert an ISO 8601 duration (e.g. "PT3M20S") to whole seconds.

    Raises:
        ValueError: If the value is not an ISO 8601 duration
    """
    match = ISO_DURATION.match(value or "")
    if not match or value == "P":
        raise ValueError(f"invalid ISO 8601 duration: {value!r}")
    days, hours, minutes, seconds = match.groups()
    total = (
        int(days or 0) * 86400
        + int(hours or 0) * 3600
        + int(minutes or 0) * 60
        + float(seconds or 0)
    )
    return int(total)


def _v2_track(resource: Dict) -> TrackRef:
    """Convert an OpenAPI v2 tracks resource to a TrackRef."""
    try:
        attributes = resource['attributes']
        return TrackRef(
            external_id=str(resource['id']),
            title=attributes['title'],
            duration_seconds=parse_iso_duration(attributes['duration']),
            isrc=attributes.get('isrc') or None
        )
    except (KeyError, TypeError, ValueError) as e:
        raise CatalogError(f"Malformed Tidal track resource: {e}")


def _v1_track(item: Dict) -> TrackRef:
    """Convert a v1 track object to a TrackRef."""
    try:
        artists = [artist['name'] for artist in item.get('artists') or []]
        if not artists and item.get('artist'):
            artists = [item['artist']['name']]
        return TrackRef(
            external_id=str(item['id']),
            title=item['title'],
            artists=artists,
            album=(item.get('album') or {}).get('title') or "",
            duration_seconds=int(item.get('duration') or 0),
            isrc=item.get('isrc') or None
        )
    except (KeyError, TypeError, ValueError) as e:
        raise CatalogError(f"Malformed Tidal track: {e}")


def _v1_playlist(item: Dict) -> PlaylistRef:
    try:
        return PlaylistRef(
            external_id=item['uuid'],
            name=item.get('title') or "",
            description=item.get('description') or None,
            track_count=item.get('numberOfTracks', 0)
        )
    except (KeyError, TypeError) as e:
        raise CatalogError(f"Malformed Tidal playlist: {e}")


class TidalClient(CatalogAdapter):
    """Client for interacting with the Tidal APIs."""

    name = "tidal"

    API_URL = "https://api.tidal.com/v1"
    OPENAPI_URL = "https://openapi.tidal.com/v2"

    # 5 requests per second with bursts of 2
    RATE_PER_SECOND = 5
    BURST = 2
    PAGE_SIZE = 100
    SEARCH_LIMIT = 5
    TIMEOUT = 10

    def __init__(
        self,
        client_access_token: str,
        access_token: str,
        user_id: str,
        country_code: str = "US",
        client: ResilientClient = None
    ):
        """
        Initialize Tidal client.

        Args:
            client_access_token: Client-credentials token for catalog (OpenAPI) calls
            access_token: Device-flow user token for playlist (v1) calls
            user_id: Tidal user ID owning the playlists
            country_code: Default country for catalog calls
            client: Resilient client owning this catalog's rate limiter
        """
        self.client_access_token = client_access_token
        self.access_token = access_token
        self.user_id = user_id
        self.country_code = country_code
        self.client = client or ResilientClient(
            "Tidal", TokenBucket(self.RATE_PER_SECOND, self.BURST)
        )

        self._session = requests.Session()
        self._session.headers.update({
            "User-Agent": "playlist-mirror",
        })

    def _require_user(self):
        if not self.access_token or not self.user_id:
            raise AuthenticationError("Not authenticated. Run the Tidal device authorization first.")

    def _user_headers(self) -> Dict:
        return {"Authorization": f"Bearer {self.access_token}"}

    def _catalog_headers(self) -> Dict:
        return {
            "Authorization": f"Bearer {self.client_access_token}",
            "Accept": "application/vnd.api+json",
        }

    async def _request(
        self,
        method: str,
        url: str,
        label: str,
        params: Dict = None,
        data: Dict = None,
        headers: Dict = None
    ) -> requests.Response:
        """
        Make a rate-limited, retried request.

        Returns:
            The successful response

        Raises:
            CatalogError: If the request fails for good
            AuthenticationError: If the token is rejected
        """
        return await self.client.call(
            self._session.request,
            method,
            url,
            params=params,
            data=data,
            headers=headers,
            timeout=self.TIMEOUT,
            label=label
        )

    @staticmethod
    def _json(response: requests.Response) -> Dict:
        try:
            return response.json()
        except ValueError as e:
            raise CatalogError(f"Invalid JSON from Tidal: {e}", response.status_code)

    async def list_playlists(self) -> List[PlaylistRef]:
        self._require_user()
        playlists = []
        offset = 0

        while True:
            response = await self._request(
                "GET",
                f"{self.API_URL}/users/{self.user_id}/playlists",
                label="list playlists",
                params={'countryCode': self.country_code, 'limit': self.PAGE_SIZE, 'offset': offset},
                headers=self._user_headers()
            )
            data = self._json(response)
            items = data.get('items') or []
            playlists.extend(_v1_playlist(item) for item in items)

            offset += len(items)
            if not items or offset >= data.get('totalNumberOfItems', 0):
                break

        logger.info(f"Found {len(playlists)} Tidal playlists")
        return playlists

    async def _fetch_playlist(self, playlist_id: str) -> requests.Response:
        return await self._request(
            "GET",
            f"{self.API_URL}/playlists/{playlist_id}",
            label=f"get playlist {playlist_id}",
            params={'countryCode': self.country_code},
            headers=self._user_headers()
        )

    async def get_playlist(self, playlist_id: str) -> PlaylistRef:
        self._require_user()
        response = await self._fetch_playlist(playlist_id)
        return _v1_playlist(self._json(response))

    async def list_tracks(self, playlist_id: str) -> List[TrackRef]:
        self._require_user()
        tracks = []
        offset = 0

        while True:
            response = await self._request(
                "GET",
                f"{self.API_URL}/playlists/{playlist_id}/tracks",
                label=f"list tracks {playlist_id}",
                params={'countryCode': self.country_code, 'limit': self.PAGE_SIZE, 'offset': offset},
                headers=self._user_headers()
            )
            data = self._json(response)
            items = data.get('items') or []
            tracks.extend(_v1_track(item) for item in items)

            offset += len(items)
            if not items or offset >= data.get('totalNumberOfItems', 0):
                break

        logger.debug(f"Found {len(tracks)} tracks in Tidal playlist {playlist_id}")
        return tracks

    async def create_playlist(self, name: str, description: str) -> PlaylistRef:
        self._require_user()
        response = await self._request(
            "POST",
            f"{self.API_URL}/users/{self.user_id}/playlists",
            label=f"create playlist {name}",
            params={'countryCode': self.country_code},
            data={'title': name, 'description': description},
            headers=self._user_headers()
        )
        playlist = _v1_playlist(self._json(response))
        logger.info(f"Created Tidal playlist: {name} (ID: {playlist.external_id})")
        return playlist

    async def update_playlist(self, playlist_id: str, name: str, description: str) -> None:
        self._require_user()
        await self._request(
            "POST",
            f"{self.API_URL}/playlists/{playlist_id}",
            label=f"update playlist {playlist_id}",
            params={'countryCode': self.country_code},
            data={'title': name, 'description': description},
            headers=self._user_headers()
        )
        logger.info(f"Updated Tidal playlist {playlist_id}: {name}")

    async def add_track(self, playlist_id: str, track_id: str) -> None:
        """Append a track; Tidal requires the playlist's current ETag for edits."""
        self._require_user()
        playlist_response = await self._fetch_playlist(playlist_id)
        etag = playlist_response.headers.get('ETag')
        if not etag:
            raise CatalogError(f"Tidal playlist {playlist_id} returned no ETag")

        headers = self._user_headers()
        headers['If-None-Match'] = etag
        await self._request(
            "POST",
            f"{self.API_URL}/playlists/{playlist_id}/items",
            label=f"add track {track_id}",
            params={'countryCode': self.country_code},
            data={'trackIds': str(track_id), 'onDupes': 'FAIL', 'onArtifactNotFound': 'FAIL'},
            headers=headers
        )
        logger.debug(f"Added track {track_id} to playlist {playlist_id}")

    async def search_tracks(self, query: str, country_code: Optional[str] = None) -> List[TrackRef]:
        response = await self._request(
            "GET",
            f"{self.OPENAPI_URL}/searchResults/{quote(query, safe='')}/relationships/tracks",
            label="search",
            params={'countryCode': country_code or self.country_code, 'include': 'tracks'},
            headers=self._catalog_headers()
        )
        data = self._json(response)

        # Relationship order is the search ranking; resources come in "included"
        included = {
            str(resource.get('id')): resource
            for resource in data.get('included') or []
            if resource.get('type') == 'tracks'
        }
        tracks = []
        for ref in (data.get('data') or [])[:self.SEARCH_LIMIT]:
            resource = included.get(str(ref.get('id')))
            if resource is None:
                logger.warning(f"Tidal search result {ref.get('id')} missing from included resources")
                continue
            tracks.append(_v2_track(resource))
        return tracks

    async def get_track_by_isrc(self, isrc: str, country_code: Optional[str] = None) -> Optional[TrackRef]:
        response = await self._request(
            "GET",
            f"{self.OPENAPI_URL}/tracks",
            label=f"isrc lookup {isrc}",
            params={'countryCode': country_code or self.country_code, 'filter[isrc]': isrc},
            headers=self._catalog_headers()
        )
        resources = self._json(response).get('data') or []
        if not resources:
            logger.debug(f"No track found for ISRC: {isrc}")
            return None
        return _v2_track(resources[0])
