"""JSON exports written after a run: missing tracks, playlist snapshots, Navidrome imports."""

import json
from pathlib import Path
from typing import Dict, List

from playlist_mirror.models import PlaylistRef, TrackRef


MISSING_DIR = "missing"
SNAPSHOT_DIR = "tidal"
NAVIDROME_DIR = "navidrome"


def _write_json(path: Path, data: Dict) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    return path


def write_missing_tracks(data_path: str, playlist: PlaylistRef, tracks: List[Dict]) -> Path:
    """
    Write the tracks of a source playlist that found no destination match.

    Args:
        data_path: Base data directory
        playlist: Source playlist
        tracks: Missing tracks as dictionaries (RunReport.missing_tracks() entries)

    Returns:
        Path of the written file: <data_path>/missing/<source playlist id>.json
    """
    path = Path(data_path) / MISSING_DIR / f"{playlist.external_id}.json"
    return _write_json(path, {'playlist': playlist.to_dict(), 'tracks': tracks})


def write_playlist_snapshot(data_path: str, playlist: PlaylistRef, tracks: List[TrackRef]) -> Path:
    """Write the destination playlist as it stands after the run, with its tracks."""
    data = playlist.to_dict()
    data['tracks'] = [track.to_dict() for track in tracks]
    path = Path(data_path) / SNAPSHOT_DIR / f"{playlist.external_id}.json"
    return _write_json(path, data)


def navidrome_playlist(source: PlaylistRef, destination: PlaylistRef, tracks: List[TrackRef]) -> Dict:
    """Build the Navidrome import document for a mirrored playlist."""
    return {
        'source_id': source.external_id,
        'destination_id': destination.external_id,
        'name': source.name,
        'description': source.description or "",
        'tracks': [
            {
                'id': track.external_id,
                'title': track.title,
                'album': track.album,
                'artist': track.primary_artist or "",
                'duration': track.duration_seconds,
                'isrc': track.isrc or "",
            }
            for track in tracks
        ],
    }


def write_navidrome_playlist(
    data_path: str,
    source: PlaylistRef,
    destination: PlaylistRef,
    tracks: List[TrackRef]
) -> Path:
    path = Path(data_path) / NAVIDROME_DIR / f"{destination.external_id}.json"
    return _write_json(path, navidrome_playlist(source, destination, tracks))
