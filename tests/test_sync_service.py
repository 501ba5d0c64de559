"""Unit tests for sync service."""

import asyncio
import json
import logging
from unittest.mock import AsyncMock, Mock, patch

import pytest

from playlist_mirror.exceptions import AuthenticationError, CatalogError
from playlist_mirror.ledger import IdempotencyLedger
from playlist_mirror.models import PlaylistRef, TrackRef
from playlist_mirror.reconciler import DONE, FAILED, PlaylistResult, RunReport
from playlist_mirror.storage import Storage
from playlist_mirror.sync_service import SyncService, build_parser, main
from playlist_mirror.utils.credentials import CredentialsError
from playlist_mirror.utils.logger import LOGGER_NAME


@pytest.fixture(autouse=True)
def reset_logger():
    """Drop handlers added by SyncService so each test gets its own log file."""
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in logger.handlers[:]:
        if isinstance(handler, logging.FileHandler):
            logger.removeHandler(handler)
            handler.close()


@pytest.fixture
def mock_credentials():
    """Create mock credentials."""
    return {
        'SPOTIFY_CLIENT_ID': 'test_spotify_id',
        'SPOTIFY_CLIENT_SECRET': 'test_spotify_secret',
        'SPOTIFY_REDIRECT_URI': 'http://localhost:8888/callback',
        'TIDAL_CLIENT_ID': 'test_tidal_id',
        'TIDAL_CLIENT_SECRET': 'test_tidal_secret',
        'COUNTRY_CODE': 'US',
        'DATA_PATH': 'data',
        'DEBUG': 'false',
    }


@pytest.fixture
def sync_service(tmp_path):
    """Create a SyncService with local databases and mocked catalogs."""
    service = SyncService(credentials_path="test_credentials.md", log_file=str(tmp_path / "sync.log"))
    service.data_path = str(tmp_path / "data")
    service.storage = Storage(str(tmp_path / "data" / "runs.db"))
    asyncio.run(service.storage.init_db())
    service.ledger = IdempotencyLedger(str(tmp_path / "data" / "tracks.db"))
    asyncio.run(service.ledger.init_db())
    service.spotify_client = Mock()
    service.tidal_client = Mock()
    service.tidal_client.get_playlist = AsyncMock(
        return_value=PlaylistRef("uuid-1", "Road Trip", "sp1:summer")
    )
    service.tidal_client.list_tracks = AsyncMock(return_value=[
        TrackRef(external_id="101", title="Test Track", artists=["Test Artist"], duration_seconds=200)
    ])
    return service


@pytest.fixture
def report():
    """A finished report with one mirrored playlist carrying one missing track."""
    report = RunReport()
    result = PlaylistResult(PlaylistRef("sp1", "Road Trip", "summer"))
    result.destination = PlaylistRef("uuid-1", "Road Trip", "sp1:summer")
    result.status = DONE
    result.matched = 1
    result.add_missing(TrackRef(external_id="a2", title="Lost Song"))
    report.add_playlist(result)
    report.finalize()
    return report


class TestLoadCredentials:
    """Test cases for SyncService.load_credentials."""

    @patch('playlist_mirror.sync_service.parse_credentials')
    def test_load_credentials(self, mock_parse, sync_service, mock_credentials):
        mock_parse.return_value = dict(mock_credentials, DATA_PATH='/srv/data', COUNTRY_CODE='NO')

        credentials = sync_service.load_credentials()

        assert credentials['TIDAL_CLIENT_ID'] == 'test_tidal_id'
        assert sync_service.data_path == '/srv/data'
        assert sync_service.country_code == 'NO'
        mock_parse.assert_called_once_with("test_credentials.md")

    @patch('playlist_mirror.sync_service.parse_credentials')
    def test_load_credentials_failure(self, mock_parse, sync_service):
        mock_parse.side_effect = CredentialsError("Missing required credentials: TIDAL_CLIENT_ID")

        with pytest.raises(CredentialsError):
            sync_service.load_credentials()


class TestAuthenticateClients:
    """Test cases for SyncService.authenticate_clients."""

    @patch('playlist_mirror.sync_service.TidalClient')
    @patch('playlist_mirror.sync_service.TidalAuth')
    @patch('playlist_mirror.sync_service.SpotifyClient')
    def test_authenticate_clients(self, mock_spotify_class, mock_auth_class, mock_tidal_class,
                                  tmp_path, mock_credentials):
        """Test that Tidal user tokens are stored and both catalogs share the cancel token."""
        service = SyncService(log_file=str(tmp_path / "sync.log"))
        service.data_path = str(tmp_path / "data")
        mock_spotify_class.RATE_PER_SECOND, mock_spotify_class.BURST = 10, 5
        mock_tidal_class.RATE_PER_SECOND, mock_tidal_class.BURST = 5, 2
        mock_spotify_class.return_value.authenticate_user = AsyncMock()
        auth = mock_auth_class.return_value
        auth.client_credentials.return_value = "app_token"
        tokens = {'access_token': 'user', 'refresh_token': 'r', 'user_id': '42', 'country_code': 'NO'}
        auth.user_tokens = AsyncMock(return_value=tokens)

        asyncio.run(service.authenticate_clients(mock_credentials))

        mock_spotify_class.return_value.authenticate_user.assert_awaited_once()
        auth.user_tokens.assert_awaited_once_with(None)
        assert asyncio.run(service.storage.get_credentials('tidal')) == tokens
        _, kwargs = mock_tidal_class.call_args
        assert kwargs['client_access_token'] == "app_token"
        assert kwargs['user_id'] == '42'
        assert kwargs['country_code'] == 'NO'
        assert kwargs['client'].cancel_token is service.cancel_token
        assert service.ledger is not None

    @patch('playlist_mirror.sync_service.TidalClient')
    @patch('playlist_mirror.sync_service.TidalAuth')
    @patch('playlist_mirror.sync_service.SpotifyClient')
    def test_reauthorize_tidal_forgets_stored_login(self, mock_spotify_class, mock_auth_class, mock_tidal_class,
                                                    tmp_path, mock_credentials):
        """Test that stored Tidal tokens are dropped so the device flow runs again."""
        service = SyncService(log_file=str(tmp_path / "sync.log"))
        service.data_path = str(tmp_path / "data")
        stored = Storage(str(tmp_path / "data" / "runs.db"))
        asyncio.run(stored.init_db())
        asyncio.run(stored.save_credentials('tidal', {'access_token': 'stale', 'refresh_token': 'r'}))
        mock_spotify_class.RATE_PER_SECOND, mock_spotify_class.BURST = 10, 5
        mock_tidal_class.RATE_PER_SECOND, mock_tidal_class.BURST = 5, 2
        mock_spotify_class.return_value.authenticate_user = AsyncMock()
        auth = mock_auth_class.return_value
        auth.client_credentials.return_value = "app_token"
        auth.user_tokens = AsyncMock(return_value={'access_token': 'fresh', 'user_id': '42'})

        asyncio.run(service.authenticate_clients(mock_credentials, reauthorize_tidal=True))

        auth.user_tokens.assert_awaited_once_with(None)
        assert asyncio.run(service.storage.get_credentials('tidal'))['access_token'] == 'fresh'

    @patch('playlist_mirror.sync_service.SpotifyClient')
    def test_authenticate_clients_failure(self, mock_spotify_class, tmp_path, mock_credentials):
        service = SyncService(log_file=str(tmp_path / "sync.log"))
        service.data_path = str(tmp_path / "data")
        mock_spotify_class.RATE_PER_SECOND, mock_spotify_class.BURST = 10, 5
        mock_spotify_class.return_value.authenticate_user = AsyncMock(
            side_effect=AuthenticationError("Spotify authentication failed")
        )

        with pytest.raises(AuthenticationError):
            asyncio.run(service.authenticate_clients(mock_credentials))


class TestSync:
    """Test cases for SyncService.sync and export."""

    @patch('playlist_mirror.sync_service.Reconciler')
    def test_sync_records_run_and_report(self, mock_reconciler_class, sync_service, report, tmp_path):
        mock_reconciler_class.return_value.run = AsyncMock(return_value=report)
        report_path = tmp_path / "report.json"

        result = asyncio.run(sync_service.sync(
            dry_run=True, playlist_ids=["sp1"], report_path=str(report_path)
        ))

        assert result is report
        mock_reconciler_class.return_value.run.assert_awaited_once_with(["sp1"])
        _, kwargs = mock_reconciler_class.call_args
        assert kwargs['dry_run'] is True
        assert kwargs['cancel_token'] is sync_service.cancel_token
        assert json.loads(report_path.read_text(encoding='utf-8'))['tracks_missing'] == 1
        runs = asyncio.run(sync_service.storage.get_runs())
        assert runs[0]['status'] == 'completed'
        assert runs[0]['dry_run'] == 1
        assert runs[0]['tracks_matched'] == 1

    @patch('playlist_mirror.sync_service.Reconciler')
    def test_sync_cancelled_run(self, mock_reconciler_class, sync_service, report, tmp_path):
        report.cancelled = True
        mock_reconciler_class.return_value.run = AsyncMock(return_value=report)

        asyncio.run(sync_service.sync(report_path=str(tmp_path / "report.json")))

        assert asyncio.run(sync_service.storage.get_runs())[0]['status'] == 'cancelled'

    @patch('playlist_mirror.sync_service.Reconciler')
    def test_sync_authentication_error(self, mock_reconciler_class, sync_service):
        mock_reconciler_class.return_value.run = AsyncMock(side_effect=AuthenticationError("HTTP 401"))

        with pytest.raises(AuthenticationError):
            asyncio.run(sync_service.sync())

        assert asyncio.run(sync_service.storage.get_runs())[0]['status'] == 'failed'

    def test_export_writes_all_files(self, sync_service, report, tmp_path):
        asyncio.run(sync_service.export(
            report, save_missing_tracks=True, save_tidal_playlist=True, save_navidrome_playlist=True
        ))

        data = tmp_path / "data"
        missing = json.loads((data / "missing" / "sp1.json").read_text(encoding='utf-8'))
        assert missing['tracks'][0]['external_id'] == "a2"
        snapshot = json.loads((data / "tidal" / "uuid-1.json").read_text(encoding='utf-8'))
        assert snapshot['tracks'][0]['external_id'] == "101"
        navidrome = json.loads((data / "navidrome" / "uuid-1.json").read_text(encoding='utf-8'))
        assert navidrome['source_id'] == "sp1"
        assert navidrome['tracks'][0]['artist'] == "Test Artist"

    def test_export_nothing_requested(self, sync_service, report, tmp_path):
        asyncio.run(sync_service.export(report))

        assert not (tmp_path / "data" / "missing").exists()
        sync_service.tidal_client.get_playlist.assert_not_awaited()

    def test_export_skips_failed_and_cancelled(self, sync_service, report):
        report.playlists[0].status = FAILED
        asyncio.run(sync_service.export(report, save_tidal_playlist=True))

        report.playlists[0].status = DONE
        report.cancelled = True
        asyncio.run(sync_service.export(report, save_tidal_playlist=True))

        sync_service.tidal_client.get_playlist.assert_not_awaited()

    def test_export_failure_reported(self, sync_service, report, tmp_path):
        sync_service.tidal_client.get_playlist.side_effect = CatalogError("HTTP 404", 404)

        asyncio.run(sync_service.export(report, save_navidrome_playlist=True))

        assert "Export of uuid-1 failed" in report.errors[0]
        assert not (tmp_path / "data" / "navidrome").exists()

    def test_history(self, sync_service, report):
        run_id = asyncio.run(sync_service.storage.create_run(dry_run=True))
        asyncio.run(sync_service.storage.complete_run(run_id, report.to_dict()))
        asyncio.run(sync_service.storage.create_run())

        runs = asyncio.run(sync_service.history(limit=5))

        assert [run['status'] for run in runs] == ['running', 'completed']
        assert runs[1]['tracks_missing'] == 1

    def test_cancel(self, sync_service):
        sync_service.cancel()

        assert sync_service.cancel_token.cancelled is True


class TestCli:
    """Test cases for the command line entry point."""

    def test_parser_defaults(self):
        args = build_parser().parse_args([])

        assert args.dry_run == 'false'
        assert args.playlist_id is None
        assert args.credentials == 'credentials.md'
        assert args.save_navidrome_playlist == 'false'
        assert args.reauthorize_tidal == 'false'
        assert args.history is None

    def test_parser_options(self):
        args = build_parser().parse_args([
            '--dry-run', 'true',
            '--playlist-id', 'a',
            '--playlist-id', 'b',
            '--save-missing-tracks', 'true',
            '--report', 'out.json',
            '--reauthorize-tidal', 'true',
            '--history', '3',
        ])

        assert args.dry_run == 'true'
        assert args.playlist_id == ['a', 'b']
        assert args.save_missing_tracks == 'true'
        assert args.report == 'out.json'
        assert args.reauthorize_tidal == 'true'
        assert args.history == 3

    @patch('playlist_mirror.sync_service.SyncService')
    @patch('playlist_mirror.sync_service._run', new_callable=AsyncMock)
    def test_main_success(self, mock_run, mock_service_class):
        mock_run.return_value = RunReport()

        with patch('sys.argv', ['playlist-mirror', '--dry-run', 'true']):
            with pytest.raises(SystemExit) as exc_info:
                main()

        assert exc_info.value.code == 0
        mock_run.assert_awaited_once()

    @patch('playlist_mirror.sync_service.SyncService')
    @patch('playlist_mirror.sync_service._run', new_callable=AsyncMock)
    def test_main_cancelled(self, mock_run, mock_service_class):
        report = RunReport()
        report.cancelled = True
        mock_run.return_value = report

        with patch('sys.argv', ['playlist-mirror']):
            with pytest.raises(SystemExit) as exc_info:
                main()

        assert exc_info.value.code == 1

    @patch('playlist_mirror.sync_service.SyncService')
    @patch('playlist_mirror.sync_service._run', new_callable=AsyncMock)
    def test_main_fatal_error(self, mock_run, mock_service_class):
        mock_run.side_effect = AuthenticationError("Tidal auth failed - device code expired")

        with patch('sys.argv', ['playlist-mirror']):
            with pytest.raises(SystemExit) as exc_info:
                main()

        assert exc_info.value.code == 1

    @patch('playlist_mirror.sync_service.SyncService')
    @patch('playlist_mirror.sync_service._run', new_callable=AsyncMock)
    def test_main_history(self, mock_run, mock_service_class, capsys):
        """Test that --history lists recorded runs without starting a sync."""
        service = mock_service_class.return_value
        service.history = AsyncMock(return_value=[{
            'id': 7,
            'started_at': '2024-05-01T10:00:00',
            'status': 'completed',
            'dry_run': 0,
            'playlists_synced': 2,
            'playlists_total': 3,
            'tracks_matched': 40,
            'tracks_missing': 5,
        }])

        with patch('sys.argv', ['playlist-mirror', '--history', '5']):
            with pytest.raises(SystemExit) as exc_info:
                main()

        assert exc_info.value.code == 0
        service.history.assert_awaited_once_with(5)
        mock_run.assert_not_awaited()
        assert "#7 2024-05-01T10:00:00 completed: 2/3 playlists, 40 tracks added, 5 missing" in capsys.readouterr().out
