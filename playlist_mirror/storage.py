"""SQLite storage for run history and catalog tokens."""

import aiosqlite
import json
import os
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional
from cryptography.fernet import Fernet, InvalidToken

from playlist_mirror.exceptions import SyncError


class Storage:
    """SQLite-based storage for tokens and run history."""

    def __init__(self, db_path: str = "data/runs.db"):
        self.db_path = db_path
        self._ensure_directory()
        self._encryption_key = self._get_or_create_key()
        self._fernet = Fernet(self._encryption_key)

    def _ensure_directory(self):
        """Ensure the data directory exists."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

    def _get_or_create_key(self) -> bytes:
        """Get or create encryption key for token storage."""
        key_path = Path(self.db_path).parent / ".encryption_key"
        if key_path.exists():
            return key_path.read_bytes()
        key = Fernet.generate_key()
        key_path.write_bytes(key)
        os.chmod(key_path, 0o600)
        return key

    def _encrypt(self, data: str) -> str:
        return self._fernet.encrypt(data.encode()).decode()

    def _decrypt(self, data: str) -> str:
        try:
            return self._fernet.decrypt(data.encode()).decode()
        except InvalidToken:
            raise SyncError(f"Stored credentials in {self.db_path} cannot be decrypted with the current key")

    async def init_db(self):
        """Initialize database tables."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS credentials (
                    id INTEGER PRIMARY KEY,
                    service TEXT UNIQUE NOT NULL,
                    data TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    started_at TEXT NOT NULL,
                    completed_at TEXT,
                    status TEXT NOT NULL,
                    dry_run INTEGER DEFAULT 0,
                    playlists_total INTEGER DEFAULT 0,
                    playlists_synced INTEGER DEFAULT 0,
                    playlists_failed INTEGER DEFAULT 0,
                    tracks_matched INTEGER DEFAULT 0,
                    tracks_missing INTEGER DEFAULT 0,
                    report_json TEXT
                )
            """)

            await db.commit()

    async def save_credentials(self, service: str, credentials: Dict):
        """Save encrypted credentials."""
        encrypted = self._encrypt(json.dumps(credentials))
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                INSERT OR REPLACE INTO credentials (service, data, updated_at)
                VALUES (?, ?, ?)
            """, (service, encrypted, datetime.now().isoformat()))
            await db.commit()

    async def get_credentials(self, service: str) -> Optional[Dict]:
        """Get decrypted credentials."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "SELECT data FROM credentials WHERE service = ?",
                (service,)
            )
            row = await cursor.fetchone()
            if row:
                return json.loads(self._decrypt(row[0]))
            return None

    async def delete_credentials(self, service: str):
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("DELETE FROM credentials WHERE service = ?", (service,))
            await db.commit()

    async def create_run(self, dry_run: bool = False) -> int:
        """Create a new run record in the 'running' state."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("""
                INSERT INTO runs (started_at, status, dry_run)
                VALUES (?, ?, ?)
            """, (datetime.now().isoformat(), "running", 1 if dry_run else 0))
            await db.commit()
            return cursor.lastrowid

    async def update_run(self, run_id: int, **kwargs):
        """Update run record; unknown fields are ignored."""
        allowed_fields = {
            'completed_at', 'status', 'playlists_total', 'playlists_synced',
            'playlists_failed', 'tracks_matched', 'tracks_missing', 'report_json'
        }
        updates = {k: v for k, v in kwargs.items() if k in allowed_fields}
        if not updates:
            return

        set_clause = ", ".join(f"{k} = ?" for k in updates.keys())
        values = list(updates.values()) + [run_id]

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                f"UPDATE runs SET {set_clause} WHERE id = ?",
                values
            )
            await db.commit()

    async def complete_run(self, run_id: int, report: Dict, status: str = "completed"):
        """
        Close a run record with the totals of its report.

        Args:
            run_id: ID returned by create_run()
            report: RunReport.to_dict() output
            status: Final status (completed, cancelled, failed)
        """
        await self.update_run(
            run_id,
            completed_at=datetime.now().isoformat(),
            status=status,
            playlists_total=len(report.get('playlists', [])),
            playlists_synced=report.get('playlists_synced', 0),
            playlists_failed=report.get('playlists_failed', 0),
            tracks_matched=report.get('tracks_matched', 0),
            tracks_missing=report.get('tracks_missing', 0),
            report_json=json.dumps(report, ensure_ascii=False)
        )

    async def get_runs(self, limit: int = 20) -> List[Dict]:
        """Get recent runs, newest first."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("""
                SELECT * FROM runs
                ORDER BY id DESC
                LIMIT ?
            """, (limit,))
            rows = await cursor.fetchall()
            return [dict(row) for row in rows]
