"""Synchronization service for mirroring Spotify playlists to Tidal."""

import argparse
import asyncio
import logging
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from playlist_mirror.cancellation import CancellationToken
from playlist_mirror.exceptions import AuthenticationError, CatalogError, SyncCancelled, SyncError
from playlist_mirror.ledger import IdempotencyLedger
from playlist_mirror.matcher import TrackMatcher
from playlist_mirror.rate_limiter import TokenBucket
from playlist_mirror.reconciler import FAILED, Reconciler, RunReport
from playlist_mirror.reports import write_missing_tracks, write_navidrome_playlist, write_playlist_snapshot
from playlist_mirror.resilient_client import ResilientClient
from playlist_mirror.spotify_client import SpotifyClient
from playlist_mirror.storage import Storage
from playlist_mirror.tidal_auth import TidalAuth
from playlist_mirror.tidal_client import TidalClient
from playlist_mirror.utils.credentials import CredentialsError, parse_credentials
from playlist_mirror.utils.logger import setup_logger


TIDAL_SERVICE = "tidal"


class SyncService:
    """Wires catalogs, ledger and storage together and runs one reconciliation."""

    def __init__(self, credentials_path: str = "credentials.md", log_file: str = None):
        """
        Initialize sync service.

        Args:
            credentials_path: Path to credentials file
            log_file: Optional path to log file
        """
        self.credentials_path = credentials_path

        # Auto-generate log file name if not provided
        if log_file is None:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            log_file = f"sync_logs/sync_{timestamp}.log"

        self.logger = setup_logger(log_file=log_file)
        self.logger.info(f"Sync log file: {log_file}")

        self.cancel_token = CancellationToken()
        self.data_path = "data"
        self.country_code = "US"
        self.spotify_client: Optional[SpotifyClient] = None
        self.tidal_client: Optional[TidalClient] = None
        self.ledger: Optional[IdempotencyLedger] = None
        self.storage: Optional[Storage] = None

    def load_credentials(self) -> Dict[str, str]:
        """
        Load credentials from file (or the environment).

        Raises:
            CredentialsError: If credentials cannot be loaded
        """
        try:
            self.logger.info(f"Loading credentials from {self.credentials_path}")
            credentials = parse_credentials(self.credentials_path)
        except CredentialsError as e:
            self.logger.error(f"Failed to load credentials: {e}")
            raise

        self.data_path = credentials['DATA_PATH']
        self.country_code = credentials['COUNTRY_CODE']
        if credentials['DEBUG'].lower() == 'true':
            for handler in self.logger.handlers:
                handler.setLevel(logging.DEBUG)
        return credentials

    async def authenticate_clients(self, credentials: Dict[str, str], reauthorize_tidal: bool = False):
        """
        Authenticate Spotify and Tidal and open the local databases.

        Args:
            credentials: Parsed credentials
            reauthorize_tidal: Forget stored Tidal tokens and run the device flow again

        Raises:
            AuthenticationError: If either catalog rejects the credentials
        """
        self.storage = Storage(str(Path(self.data_path) / "runs.db"))
        await self.storage.init_db()

        self.logger.info("Authenticating with Spotify...")
        self.spotify_client = SpotifyClient(
            client_id=credentials['SPOTIFY_CLIENT_ID'],
            client_secret=credentials['SPOTIFY_CLIENT_SECRET'],
            redirect_uri=credentials['SPOTIFY_REDIRECT_URI'],
            client=ResilientClient(
                "Spotify",
                TokenBucket(SpotifyClient.RATE_PER_SECOND, SpotifyClient.BURST),
                self.cancel_token
            ),
            country_code=self.country_code,
            cache_path=str(Path(self.data_path) / ".spotify_cache")
        )
        await self.spotify_client.authenticate_user()

        self.logger.info("Authenticating with Tidal...")
        auth = TidalAuth(
            credentials['TIDAL_CLIENT_ID'],
            credentials['TIDAL_CLIENT_SECRET'],
            self.cancel_token
        )
        if reauthorize_tidal:
            self.logger.info("Forgetting stored Tidal login")
            await self.storage.delete_credentials(TIDAL_SERVICE)
        loop = asyncio.get_running_loop()
        client_token = await loop.run_in_executor(None, auth.client_credentials)
        tokens = await auth.user_tokens(await self.storage.get_credentials(TIDAL_SERVICE))
        await self.storage.save_credentials(TIDAL_SERVICE, tokens)

        self.tidal_client = TidalClient(
            client_access_token=client_token,
            access_token=tokens['access_token'],
            user_id=tokens['user_id'],
            country_code=tokens.get('country_code') or self.country_code,
            client=ResilientClient(
                "Tidal",
                TokenBucket(TidalClient.RATE_PER_SECOND, TidalClient.BURST),
                self.cancel_token
            )
        )

        self.ledger = IdempotencyLedger(str(Path(self.data_path) / "tracks.db"))
        await self.ledger.init_db()
        self.logger.info("Authentication successful")

    async def history(self, limit: int = 10) -> List[Dict]:
        """Recent runs from the run history, newest first."""
        storage = Storage(str(Path(self.data_path) / "runs.db"))
        await storage.init_db()
        return await storage.get_runs(limit)

    def cancel(self):
        """Request cancellation; the current run stops at its next wait."""
        self.logger.warning("Cancellation requested, finishing with a partial report")
        self.cancel_token.cancel()

    async def sync(
        self,
        dry_run: bool = False,
        playlist_ids: List[str] = None,
        save_missing_tracks: bool = False,
        save_tidal_playlist: bool = False,
        save_navidrome_playlist: bool = False,
        report_path: str = None
    ) -> RunReport:
        """
        Mirror Spotify playlists into Tidal and write the requested exports.

        Args:
            dry_run: If True, resolve matches but change nothing
            playlist_ids: Optional Spotify playlist IDs to restrict the run to
            save_missing_tracks: Write unmatched tracks per playlist
            save_tidal_playlist: Write a snapshot of each mirrored playlist
            save_navidrome_playlist: Write a Navidrome import file per playlist
            report_path: Where to save the JSON report (timestamped name if None)

        Returns:
            The run report (partial if the run was cancelled)

        Raises:
            AuthenticationError: If a catalog rejects our credentials mid-run
        """
        run_id = await self.storage.create_run(dry_run=dry_run)
        reconciler = Reconciler(
            self.spotify_client,
            self.tidal_client,
            self.ledger,
            matcher=TrackMatcher(self.tidal_client),
            cancel_token=self.cancel_token,
            dry_run=dry_run
        )

        try:
            report = await reconciler.run(playlist_ids)
        except AuthenticationError as e:
            await self.storage.update_run(
                run_id, status="failed", completed_at=datetime.now().isoformat()
            )
            self.logger.error(f"Sync failed: {e}")
            raise

        await self.export(report, save_missing_tracks, save_tidal_playlist, save_navidrome_playlist)

        for result in report.playlists:
            if result.status != FAILED:
                synced = await self.ledger.count(result.source.external_id)
                self.logger.debug(f"Ledger holds {synced} tracks for {result.source.name}")

        await self.storage.complete_run(
            run_id, report.to_dict(), status="cancelled" if report.cancelled else "completed"
        )

        if report_path is None:
            report_path = f"sync_report_{datetime.now().strftime('%Y%m%d_%H%M%S')}.json"
        report.save_to_file(report_path)
        self.logger.info(f"Report saved to: {report_path}")
        return report

    async def export(
        self,
        report: RunReport,
        save_missing_tracks: bool = False,
        save_tidal_playlist: bool = False,
        save_navidrome_playlist: bool = False
    ):
        """Write per-playlist JSON exports. Destination snapshots are skipped after a cancel."""
        missing = report.missing_tracks()

        for result in report.playlists:
            source_id = result.source.external_id
            if save_missing_tracks and source_id in missing:
                path = write_missing_tracks(self.data_path, result.source, missing[source_id])
                self.logger.info(
                    f"{result.source.name}: {len(missing[source_id])} missing tracks written to {path}"
                )

            if not (save_tidal_playlist or save_navidrome_playlist):
                continue
            if report.cancelled or result.destination is None or result.status == FAILED:
                continue

            destination_id = result.destination.external_id
            try:
                playlist = await self.tidal_client.get_playlist(destination_id)
                tracks = await self.tidal_client.list_tracks(destination_id)
            except (CatalogError, SyncCancelled) as e:
                self.logger.error(f"Could not export playlist {destination_id}: {e}")
                report.add_error(f"Export of {destination_id} failed: {e}")
                continue

            if save_tidal_playlist:
                path = write_playlist_snapshot(self.data_path, playlist, tracks)
                self.logger.debug(f"Playlist snapshot written to {path}")
            if save_navidrome_playlist:
                path = write_navidrome_playlist(self.data_path, result.source, playlist, tracks)
                self.logger.debug(f"Navidrome playlist written to {path}")

    def close(self):
        for catalog in (self.spotify_client, self.tidal_client):
            if catalog is not None:
                catalog.client.close()


def _flag(value: str) -> bool:
    return value == 'true'


async def _show_history(service: SyncService, limit: int):
    service.load_credentials()
    runs = await service.history(limit)
    if not runs:
        print("No runs recorded yet")
    for run in runs:
        mode = " (dry run)" if run['dry_run'] else ""
        print(
            f"#{run['id']} {run['started_at']} {run['status']}{mode}: "
            f"{run['playlists_synced']}/{run['playlists_total']} playlists, "
            f"{run['tracks_matched']} tracks added, {run['tracks_missing']} missing"
        )


async def _run(service: SyncService, args: argparse.Namespace) -> RunReport:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, service.cancel)
    except NotImplementedError:
        # add_signal_handler is unavailable on Windows event loops
        pass

    try:
        credentials = service.load_credentials()
        await service.authenticate_clients(credentials, reauthorize_tidal=_flag(args.reauthorize_tidal))
        return await service.sync(
            dry_run=_flag(args.dry_run),
            playlist_ids=args.playlist_id,
            save_missing_tracks=_flag(args.save_missing_tracks),
            save_tidal_playlist=_flag(args.save_tidal_playlist),
            save_navidrome_playlist=_flag(args.save_navidrome_playlist),
            report_path=args.report
        )
    finally:
        service.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Mirror Spotify playlists to Tidal"
    )
    parser.add_argument(
        '--dry-run',
        type=str,
        choices=['true', 'false'],
        default='false',
        help='Run in dry-run mode (no changes made)'
    )
    parser.add_argument(
        '--playlist-id',
        action='append',
        default=None,
        help='Spotify playlist ID to sync (repeatable; default: all playlists)'
    )
    parser.add_argument(
        '--credentials',
        type=str,
        default='credentials.md',
        help='Path to credentials file (default: credentials.md)'
    )
    parser.add_argument(
        '--log-file',
        type=str,
        default=None,
        help='Path to log file (default: sync_logs/sync_<timestamp>.log)'
    )
    for name, help_text in (
        ('--save-missing-tracks', 'Write unmatched tracks to <DATA_PATH>/missing/'),
        ('--save-tidal-playlist', 'Write mirrored playlists to <DATA_PATH>/tidal/'),
        ('--save-navidrome-playlist', 'Write Navidrome import files to <DATA_PATH>/navidrome/'),
        ('--reauthorize-tidal', 'Forget the stored Tidal login and authorize again'),
    ):
        parser.add_argument(name, type=str, choices=['true', 'false'], default='false', help=help_text)
    parser.add_argument(
        '--report',
        type=str,
        default=None,
        help='Path of the JSON run report (default: sync_report_<timestamp>.json)'
    )
    parser.add_argument(
        '--history',
        type=int,
        default=None,
        metavar='N',
        help='Show the last N recorded runs and exit'
    )
    return parser


def main():
    """Main entry point for CLI."""
    args = build_parser().parse_args()

    try:
        service = SyncService(
            credentials_path=args.credentials,
            log_file=args.log_file
        )
        if args.history is not None:
            asyncio.run(_show_history(service, args.history))
            sys.exit(0)
        report = asyncio.run(_run(service, args))
    except KeyboardInterrupt:
        print("\n\nSync interrupted by user")
        sys.exit(1)
    except (SyncError, CredentialsError) as e:
        print(f"\nSync failed: {e}")
        sys.exit(1)

    if report.cancelled:
        print("\nSync cancelled, partial report written")
        sys.exit(1)

    print("\nSync completed successfully!")
    sys.exit(0)


if __name__ == '__main__':
    main()
