"""SQLite fingerprint index."""

import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

from .config import DB_PATH, LOOKUP_BATCH_SIZE
from .errors import DuplicateTrack, IndexUnavailable
from .index import FingerprintIndex
from .models import Couple, Track, track_key

# AUTOINCREMENT keeps ids of deleted tracks from ever being handed out again.
SCHEMA = """
CREATE TABLE IF NOT EXISTS tracks (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    title         TEXT NOT NULL,
    artist        TEXT NOT NULL,
    external_ref  TEXT NOT NULL DEFAULT '',
    key           TEXT NOT NULL UNIQUE,
    file_hash     TEXT,
    indexed_at    TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS fingerprints (
    address         INTEGER NOT NULL,
    track_id        INTEGER NOT NULL REFERENCES tracks(id),
    anchor_time_ms  INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_fingerprints_address ON fingerprints(address);
CREATE INDEX IF NOT EXISTS idx_fingerprints_track ON fingerprints(track_id);
CREATE INDEX IF NOT EXISTS idx_tracks_file_hash ON tracks(file_hash);
"""


def _row_to_track(row: sqlite3.Row | None) -> Track | None:
    if row is None:
        return None
    return Track(
        track_id=row["id"],
        title=row["title"],
        artist=row["artist"],
        external_ref=row["external_ref"],
        key=row["key"],
        file_hash=row["file_hash"],
    )


class Store(FingerprintIndex):
    def __init__(self, path: Path = DB_PATH):
        path = Path(path)
        self.path = path
        self._lock = threading.RLock()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.executescript(SCHEMA)
            self._conn.commit()
        except (OSError, sqlite3.Error) as e:
            raise IndexUnavailable(f"cannot open index at {path}: {e}") from e

    def close(self):
        with self._lock:
            self._conn.close()

    @contextmanager
    def _guard(self, action: str):
        """Serialize access and translate sqlite errors into IndexUnavailable."""
        with self._lock:
            try:
                yield
            except sqlite3.Error as e:
                raise IndexUnavailable(f"{action} failed: {e}") from e

    # ------------------------------------------------------------------
    # Tracks
    # ------------------------------------------------------------------

    def register_track(self, title, artist, external_ref="", file_hash=None) -> int:
        key = track_key(title, artist)
        now = datetime.now(timezone.utc).isoformat()
        with self._guard("register track"):
            try:
                with self._conn:
                    cur = self._conn.execute(
                        """
                        INSERT INTO tracks (title, artist, external_ref, key, file_hash, indexed_at)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (title, artist, external_ref or "", key, file_hash, now),
                    )
            except sqlite3.IntegrityError as e:
                existing = self.get_track_by_key(key)
                raise DuplicateTrack(key, existing.track_id if existing else None) from e
            return cur.lastrowid

    def delete_track(self, track_id: int) -> None:
        with self._guard("delete track"):
            with self._conn:
                self._conn.execute("DELETE FROM fingerprints WHERE track_id = ?", (track_id,))
                self._conn.execute("DELETE FROM tracks WHERE id = ?", (track_id,))

    def rekey_track(self, track_id: int, key: str) -> None:
        with self._guard("rekey track"):
            try:
                with self._conn:
                    self._conn.execute("UPDATE tracks SET key = ? WHERE id = ?", (key, track_id))
            except sqlite3.IntegrityError as e:
                existing = self.get_track_by_key(key)
                raise DuplicateTrack(key, existing.track_id if existing else None) from e

    def get_track(self, track_id: int) -> Track | None:
        with self._guard("get track"):
            row = self._conn.execute("SELECT * FROM tracks WHERE id = ?", (track_id,)).fetchone()
        return _row_to_track(row)

    def get_track_by_key(self, key: str) -> Track | None:
        with self._guard("get track by key"):
            row = self._conn.execute("SELECT * FROM tracks WHERE key = ?", (key,)).fetchone()
        return _row_to_track(row)

    def get_track_by_hash(self, file_hash: str) -> Track | None:
        with self._guard("get track by hash"):
            row = self._conn.execute(
                "SELECT * FROM tracks WHERE file_hash = ? ORDER BY id LIMIT 1", (file_hash,)
            ).fetchone()
        return _row_to_track(row)

    def all_tracks(self) -> list[Track]:
        with self._guard("list tracks"):
            rows = self._conn.execute("SELECT * FROM tracks ORDER BY id").fetchall()
        return [_row_to_track(r) for r in rows]

    # ------------------------------------------------------------------
    # Fingerprints
    # ------------------------------------------------------------------

    def store_fingerprints(self, fingerprints: dict[int, list[Couple]]) -> None:
        rows = (
            (address, couple.track_id, couple.anchor_time_ms)
            for address, couples in fingerprints.items()
            for couple in couples
        )
        with self._guard("store fingerprints"):
            with self._conn:
                self._conn.executemany(
                    "INSERT INTO fingerprints (address, track_id, anchor_time_ms) VALUES (?, ?, ?)",
                    rows,
                )

    def get_couples(self, addresses: Iterable[int]) -> dict[int, list[Couple]]:
        wanted = sorted(set(addresses))
        result: dict[int, list[Couple]] = {}
        with self._guard("lookup fingerprints"):
            # stay under SQLite's bound-parameter limit
            for start in range(0, len(wanted), LOOKUP_BATCH_SIZE):
                chunk = wanted[start:start + LOOKUP_BATCH_SIZE]
                placeholders = ",".join("?" * len(chunk))
                rows = self._conn.execute(
                    f"""
                    SELECT address, track_id, anchor_time_ms FROM fingerprints
                    WHERE address IN ({placeholders})
                    ORDER BY rowid
                    """,
                    chunk,
                ).fetchall()
                for row in rows:
                    result.setdefault(row["address"], []).append(
                        Couple(row["track_id"], row["anchor_time_ms"])
                    )
        return result

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def erase(self) -> None:
        with self._guard("erase"):
            with self._conn:
                self._conn.execute("DELETE FROM fingerprints")
                self._conn.execute("DELETE FROM tracks")

    def stats(self) -> dict:
        with self._guard("stats"):
            tracks = self._conn.execute("SELECT COUNT(*) FROM tracks").fetchone()[0]
            total = self._conn.execute("SELECT COUNT(*) FROM fingerprints").fetchone()[0]
            unique = self._conn.execute(
                "SELECT COUNT(DISTINCT address) FROM fingerprints"
            ).fetchone()[0]
        return {
            "total_tracks": tracks,
            "fingerprints": total,
            "unique_addresses": unique,
        }
