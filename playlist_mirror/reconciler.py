"""Reconciliation of source playlists into a destination catalog."""

import json
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

from playlist_mirror.cancellation import CancellationToken
from playlist_mirror.catalog import CatalogAdapter
from playlist_mirror.exceptions import CatalogError, LedgerError, SyncCancelled
from playlist_mirror.ledger import IdempotencyLedger
from playlist_mirror.matcher import TrackMatcher
from playlist_mirror.models import PlaylistRef, TrackRef
from playlist_mirror.utils.logger import get_logger


logger = get_logger()


UNRESOLVED = 'unresolved'
PAIRED = 'paired'
SYNCING = 'syncing'
DONE = 'done'
FAILED = 'failed'
CANCELLED = 'cancelled'

UNTITLED = "Untitled"


def correlation_marker(playlist: PlaylistRef) -> str:
    """Description written to the destination playlist: "<source id>:<source description>"."""
    return f"{playlist.external_id}:{playlist.description or ''}"


def carries_marker(destination: PlaylistRef, source_id: str) -> bool:
    return (destination.description or "").startswith(f"{source_id}:")


class PlaylistResult:
    """Outcome of one source playlist within a run."""

    def __init__(self, source: PlaylistRef):
        self.source = source
        self.destination: Optional[PlaylistRef] = None
        self.status = UNRESOLVED
        self.created = False
        self.updated = False
        self.matched = 0
        self.already_synced = 0
        self.already_present = 0
        self.failed = 0
        self.missing: List[Tuple[TrackRef, Optional[str]]] = []
        self.error: Optional[str] = None

    def add_missing(self, track: TrackRef, reason: Optional[str] = None):
        self.missing.append((track, reason))

    def fail(self, error: str):
        self.status = FAILED
        self.error = error

    def to_dict(self) -> Dict:
        return {
            'source_id': self.source.external_id,
            'name': self.source.name,
            'destination_id': self.destination.external_id if self.destination else None,
            'status': self.status,
            'created': self.created,
            'updated': self.updated,
            'matched': self.matched,
            'missing': len(self.missing),
            'already_synced': self.already_synced,
            'already_present': self.already_present,
            'failed': self.failed,
            'error': self.error,
        }


class RunReport:
    """Report of one reconciliation run."""

    def __init__(self, dry_run: bool = False):
        self.start_time = datetime.now()
        self.end_time = None
        self.dry_run = dry_run
        self.cancelled = False
        self.playlists: List[PlaylistResult] = []
        self.match_methods: Dict[str, int] = {}
        self.errors: List[str] = []

    def add_playlist(self, result: PlaylistResult):
        self.playlists.append(result)

    def add_match(self, method: str):
        self.match_methods[method] = self.match_methods.get(method, 0) + 1

    def add_error(self, error: str):
        self.errors.append(error)

    def finalize(self):
        self.end_time = datetime.now()

    def _total(self, attribute: str) -> int:
        return sum(getattr(result, attribute) for result in self.playlists)

    @property
    def tracks_matched(self) -> int:
        return self._total('matched')

    @property
    def tracks_missing(self) -> int:
        return sum(len(result.missing) for result in self.playlists)

    @property
    def tracks_already_synced(self) -> int:
        return self._total('already_synced')

    @property
    def playlists_synced(self) -> int:
        return sum(1 for result in self.playlists if result.status == DONE)

    @property
    def playlists_failed(self) -> int:
        return sum(1 for result in self.playlists if result.status == FAILED)

    def missing_tracks(self) -> Dict[str, List[Dict]]:
        """Missing tracks keyed by source playlist ID."""
        missing = {}
        for result in self.playlists:
            if result.missing:
                missing[result.source.external_id] = [
                    dict(track.to_dict(), reason=reason) for track, reason in result.missing
                ]
        return missing

    def to_dict(self) -> Dict:
        duration = None
        if self.end_time:
            duration = (self.end_time - self.start_time).total_seconds()

        attempted = self.tracks_matched + self.tracks_missing
        return {
            'start_time': self.start_time.isoformat(),
            'end_time': self.end_time.isoformat() if self.end_time else None,
            'duration_seconds': duration,
            'dry_run': self.dry_run,
            'cancelled': self.cancelled,
            'playlists_synced': self.playlists_synced,
            'playlists_failed': self.playlists_failed,
            'tracks_matched': self.tracks_matched,
            'tracks_missing': self.tracks_missing,
            'tracks_already_synced': self.tracks_already_synced,
            'match_rate': f"{(self.tracks_matched / attempted * 100):.2f}%" if attempted > 0 else "0%",
            'match_methods': dict(self.match_methods),
            'playlists': [result.to_dict() for result in self.playlists],
            'missing_tracks': self.missing_tracks(),
            'errors': self.errors,
        }

    def save_to_file(self, filepath: str):
        """Save report to JSON file."""
        with open(filepath, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2, ensure_ascii=False)


class Reconciler:
    """
    Mirrors source playlists into the destination catalog.

    Playlists and tracks are processed strictly in sequence. Per playlist the
    flow is unresolved -> paired -> syncing -> done; a failure to pair or to
    list tracks fails that playlist only.
    """

    TRACK_DELAY_SECONDS = 1.0

    def __init__(
        self,
        source: CatalogAdapter,
        destination: CatalogAdapter,
        ledger: IdempotencyLedger,
        matcher: TrackMatcher = None,
        cancel_token: CancellationToken = None,
        track_delay: float = None,
        dry_run: bool = False
    ):
        """
        Initialize reconciler.

        Args:
            source: Catalog playlists are read from
            destination: Catalog playlists are mirrored into
            ledger: Record of already reconciled source tracks
            matcher: Track matcher over the destination (built if omitted)
            cancel_token: Run-scoped cancellation signal
            track_delay: Pause after every processed track, in seconds
            dry_run: If True, resolve matches but change nothing
        """
        self.source = source
        self.destination = destination
        self.ledger = ledger
        self.matcher = matcher or TrackMatcher(destination)
        self.cancel_token = cancel_token or CancellationToken()
        self.track_delay = self.TRACK_DELAY_SECONDS if track_delay is None else track_delay
        self.dry_run = dry_run

    def cancel(self):
        """Cancel the running reconciliation; a partial report is returned."""
        logger.info("Sync cancellation requested")
        self.cancel_token.cancel()

    async def run(self, playlist_ids: List[str] = None) -> RunReport:
        """
        Reconcile source playlists into the destination.

        Args:
            playlist_ids: Optional source playlist IDs to restrict the run to

        Returns:
            RunReport, partial if the run was cancelled

        Raises:
            AuthenticationError: If a catalog rejects our credentials
        """
        report = RunReport(dry_run=self.dry_run)
        logger.info("Starting playlist synchronization...")
        if self.dry_run:
            logger.info("DRY RUN MODE - No changes will be made")

        try:
            source_playlists = await self.source.list_playlists()
            destination_playlists = await self.destination.list_playlists()
        except CatalogError as e:
            logger.error(f"Could not list playlists: {e}")
            report.add_error(f"Could not list playlists: {e}")
            report.finalize()
            return report
        except SyncCancelled:
            report.cancelled = True
            report.finalize()
            return report

        if playlist_ids:
            wanted = set(playlist_ids)
            unknown = wanted - {p.external_id for p in source_playlists}
            for playlist_id in sorted(unknown):
                logger.warning(f"Source playlist {playlist_id} not found, skipping")
                report.add_error(f"Source playlist not found: {playlist_id}")
            source_playlists = [p for p in source_playlists if p.external_id in wanted]

        for i, playlist in enumerate(source_playlists, 1):
            logger.info(f"Processing playlist {i}/{len(source_playlists)}: {playlist.name}")
            try:
                await self._sync_playlist(playlist, destination_playlists, report)
            except SyncCancelled:
                logger.warning("Sync cancelled, returning partial report")
                report.cancelled = True
                break

        report.finalize()
        self._log_summary(report)
        return report

    async def _sync_playlist(
        self,
        playlist: PlaylistRef,
        destination_playlists: List[PlaylistRef],
        report: RunReport
    ):
        result = PlaylistResult(playlist)
        report.add_playlist(result)

        try:
            destination = await self._pair(playlist, destination_playlists, result)
            result.destination = destination
            result.status = PAIRED

            source_tracks = await self.source.list_tracks(playlist.external_id)
            destination_track_ids: Set[str] = set()
            if destination:
                destination_track_ids = {
                    t.external_id for t in await self.destination.list_tracks(destination.external_id)
                }
        except (CatalogError, LedgerError) as e:
            logger.error(f"Error syncing playlist {playlist.name}: {e}")
            result.fail(str(e))
            report.add_error(f"Playlist {playlist.name}: {e}")
            return
        except SyncCancelled:
            result.status = CANCELLED
            raise

        result.status = SYNCING
        try:
            for track in source_tracks:
                self.cancel_token.raise_if_cancelled()
                await self._sync_track(track, result, destination_track_ids, report)
                await self.cancel_token.sleep(self.track_delay)
        except LedgerError as e:
            logger.error(f"Ledger unavailable while syncing {playlist.name}: {e}")
            result.fail(str(e))
            report.add_error(f"Playlist {playlist.name}: {e}")
            return
        except SyncCancelled:
            result.status = CANCELLED
            raise

        result.status = DONE
        logger.info(
            f"Playlist sync complete: {playlist.name} - {result.matched} added, "
            f"{len(result.missing)} missing, {result.already_synced} already synced"
        )

    async def _pair(
        self,
        playlist: PlaylistRef,
        destination_playlists: List[PlaylistRef],
        result: PlaylistResult
    ) -> Optional[PlaylistRef]:
        """
        Find the destination playlist carrying this playlist's marker, or create it.

        Returns:
            The paired destination playlist; None only in dry-run mode when
            nothing exists yet
        """
        marker = correlation_marker(playlist)
        name = playlist.name or UNTITLED

        paired = [p for p in destination_playlists if carries_marker(p, playlist.external_id)]
        if len(paired) > 1:
            logger.warning(
                f"{len(paired)} destination playlists carry the marker of {playlist.external_id}, "
                f"using {paired[0].external_id}"
            )

        if not paired:
            if self.dry_run:
                logger.info(f"Would create playlist: {name}")
                return None
            logger.info(f"Creating playlist: {name} - {playlist.description or ''}")
            destination = await self.destination.create_playlist(name, marker)
            result.created = True
            destination_playlists.append(destination)
            return destination

        destination = paired[0]
        name_changed = bool(playlist.name) and destination.name != playlist.name
        if name_changed or (destination.description or "") != marker:
            if self.dry_run:
                logger.info(f"Would update playlist: {name}")
                return destination
            logger.info(f"Updating playlist: {name} - {playlist.description or ''}")
            await self.destination.update_playlist(destination.external_id, name, marker)
            destination.name = name
            destination.description = marker
            result.updated = True

        return destination

    async def _sync_track(
        self,
        track: TrackRef,
        result: PlaylistResult,
        destination_track_ids: Set[str],
        report: RunReport
    ):
        playlist_id = result.source.external_id

        if await self.ledger.has(playlist_id, track.external_id):
            logger.debug(f"Already synced according to ledger: {track}")
            result.already_synced += 1
            return

        try:
            candidate = await self.matcher.match(track)
        except CatalogError as e:
            logger.error(f"Failed to find track on {self.destination.name}: {track} ({e})")
            result.add_missing(track, str(e))
            return

        if candidate is None:
            logger.warning(f"No match found for: {track}")
            result.add_missing(track)
            return

        destination_track_id = candidate.track.external_id

        if self.dry_run:
            report.add_match(candidate.method)
            result.matched += 1
            return

        if destination_track_id in destination_track_ids:
            logger.debug(f"Already in destination playlist: {track}")
            report.add_match(candidate.method)
            result.already_present += 1
            await self._record(playlist_id, track, report)
            return

        destination_id = result.destination.external_id
        try:
            await self.destination.add_track(destination_id, destination_track_id)
        except CatalogError as e:
            logger.error(f"Error adding {track} to playlist {destination_id}: {e}")
            result.failed += 1
            return

        logger.info(f"Added {track} to {result.destination.name}")
        destination_track_ids.add(destination_track_id)
        report.add_match(candidate.method)
        result.matched += 1
        await self._record(playlist_id, track, report)

    async def _record(self, playlist_id: str, track: TrackRef, report: RunReport):
        try:
            await self.ledger.record(playlist_id, track.external_id)
        except LedgerError as e:
            logger.error(f"Error recording {track} in ledger: {e}")
            report.add_error(str(e))

    def _log_summary(self, report: RunReport):
        logger.info("=" * 60)
        logger.info("SYNC CANCELLED" if report.cancelled else "SYNC COMPLETE")
        logger.info("=" * 60)
        logger.info(f"Playlists synced: {report.playlists_synced}")
        logger.info(f"Playlists failed: {report.playlists_failed}")
        logger.info(f"Tracks added: {report.tracks_matched}")
        logger.info(f"Tracks missing: {report.tracks_missing}")
        logger.info(f"Tracks already synced: {report.tracks_already_synced}")
        for method, count in sorted(report.match_methods.items()):
            logger.info(f"{method} matches: {count}")
