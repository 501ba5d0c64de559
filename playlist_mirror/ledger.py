"""Idempotency ledger of (source playlist, source track) pairs already mirrored."""

from datetime import datetime
from pathlib import Path

import aiosqlite

from playlist_mirror.exceptions import LedgerError


class IdempotencyLedger:
    """
    SQLite-backed record of reconciled source tracks, keyed per source playlist.

    Only source-side identity is stored; what the destination playlist
    actually contains is always read from the destination. record() must only
    be called once the destination mutation is confirmed.
    """

    def __init__(self, db_path: str = "data/tracks.db"):
        self.db_path = db_path
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

    async def init_db(self):
        """Initialize ledger table."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS playlist_tracks (
                        playlist_id TEXT NOT NULL,
                        track_id TEXT NOT NULL,
                        synced_at TEXT NOT NULL,
                        UNIQUE(playlist_id, track_id)
                    )
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_playlist_tracks_playlist
                    ON playlist_tracks (playlist_id)
                """)
                await db.commit()
        except aiosqlite.Error as e:
            raise LedgerError(f"Could not initialize ledger at {self.db_path}: {e}")

    async def has(self, playlist_id: str, track_id: str) -> bool:
        """Check if a source track has already been reconciled into its playlist."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    "SELECT 1 FROM playlist_tracks WHERE playlist_id = ? AND track_id = ?",
                    (playlist_id, track_id)
                )
                row = await cursor.fetchone()
                return row is not None
        except aiosqlite.Error as e:
            raise LedgerError(f"Ledger lookup failed for {playlist_id}/{track_id}: {e}")

    async def record(self, playlist_id: str, track_id: str):
        """Mark a source track as reconciled. Recording twice is harmless."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("""
                    INSERT OR IGNORE INTO playlist_tracks (playlist_id, track_id, synced_at)
                    VALUES (?, ?, ?)
                """, (playlist_id, track_id, datetime.now().isoformat()))
                await db.commit()
        except aiosqlite.Error as e:
            raise LedgerError(f"Ledger write failed for {playlist_id}/{track_id}: {e}")

    async def count(self, playlist_id: str) -> int:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    "SELECT COUNT(*) FROM playlist_tracks WHERE playlist_id = ?",
                    (playlist_id,)
                )
                row = await cursor.fetchone()
                return row[0] if row else 0
        except aiosqlite.Error as e:
            raise LedgerError(f"Ledger count failed for {playlist_id}: {e}")
