"""Fingerprint index boundary.

The engine only talks to a FingerprintIndex. Store (store.py) keeps the index
in SQLite; MemoryIndex keeps it in process and backs the tests.
"""

import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import replace
from typing import Iterable

from .errors import DuplicateTrack
from .models import Couple, Track, track_key


class FingerprintIndex(ABC):
    """Address -> (track id, anchor time) store plus the track registry."""

    @abstractmethod
    def store_fingerprints(self, fingerprints: dict[int, list[Couple]]) -> None:
        """Append couples for every address. All or nothing."""

    @abstractmethod
    def get_couples(self, addresses: Iterable[int]) -> dict[int, list[Couple]]:
        """Batched reverse lookup. Addresses without hits are absent."""

    @abstractmethod
    def register_track(
        self,
        title: str,
        artist: str,
        external_ref: str = "",
        file_hash: str | None = None,
    ) -> int:
        """Create a track record and return its new id. Raises DuplicateTrack."""

    @abstractmethod
    def delete_track(self, track_id: int) -> None:
        """Remove a track and all of its fingerprints."""

    @abstractmethod
    def rekey_track(self, track_id: int, key: str) -> None:
        """Change the uniqueness key of a track. Raises DuplicateTrack."""

    @abstractmethod
    def get_track(self, track_id: int) -> Track | None: ...

    @abstractmethod
    def get_track_by_key(self, key: str) -> Track | None: ...

    @abstractmethod
    def get_track_by_hash(self, file_hash: str) -> Track | None: ...

    @abstractmethod
    def all_tracks(self) -> list[Track]: ...

    @abstractmethod
    def stats(self) -> dict: ...

    @abstractmethod
    def erase(self) -> None:
        """Drop every track and fingerprint. Ids are still never reused."""

    def track_exists_by_key(self, key: str) -> bool:
        return self.get_track_by_key(key) is not None

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, *_):
        self.close()


class MemoryIndex(FingerprintIndex):
    """In-process index. Safe to share between threads."""

    def __init__(self):
        self._lock = threading.Lock()
        self._table: dict[int, list[Couple]] = defaultdict(list)
        self._tracks: dict[int, Track] = {}
        self._next_id = 1

    def store_fingerprints(self, fingerprints: dict[int, list[Couple]]) -> None:
        with self._lock:
            for address, couples in fingerprints.items():
                self._table[address].extend(couples)

    def get_couples(self, addresses: Iterable[int]) -> dict[int, list[Couple]]:
        with self._lock:
            return {a: list(self._table[a]) for a in set(addresses) if self._table.get(a)}

    def register_track(self, title, artist, external_ref="", file_hash=None) -> int:
        key = track_key(title, artist)
        with self._lock:
            for track in self._tracks.values():
                if track.key == key:
                    raise DuplicateTrack(key, track.track_id)
            track_id = self._next_id
            self._next_id += 1
            self._tracks[track_id] = Track(
                track_id=track_id,
                title=title,
                artist=artist,
                external_ref=external_ref or "",
                key=key,
                file_hash=file_hash,
            )
        return track_id

    def delete_track(self, track_id: int) -> None:
        with self._lock:
            self._tracks.pop(track_id, None)
            for address in list(self._table):
                kept = [c for c in self._table[address] if c.track_id != track_id]
                if kept:
                    self._table[address] = kept
                else:
                    del self._table[address]

    def rekey_track(self, track_id: int, key: str) -> None:
        with self._lock:
            for track in self._tracks.values():
                if track.key == key and track.track_id != track_id:
                    raise DuplicateTrack(key, track.track_id)
            track = self._tracks.get(track_id)
            if track is not None:
                self._tracks[track_id] = replace(track, key=key)

    def get_track(self, track_id: int) -> Track | None:
        with self._lock:
            return self._tracks.get(track_id)

    def get_track_by_key(self, key: str) -> Track | None:
        with self._lock:
            return next((t for t in self._tracks.values() if t.key == key), None)

    def get_track_by_hash(self, file_hash: str) -> Track | None:
        with self._lock:
            return next((t for t in self._tracks.values() if t.file_hash == file_hash), None)

    def all_tracks(self) -> list[Track]:
        with self._lock:
            return sorted(self._tracks.values(), key=lambda t: t.track_id)

    def stats(self) -> dict:
        with self._lock:
            total = sum(len(v) for v in self._table.values())
            return {
                "total_tracks": len(self._tracks),
                "fingerprints": total,
                "unique_addresses": len(self._table),
            }

    def erase(self) -> None:
        with self._lock:
            self._table.clear()
            self._tracks.clear()
