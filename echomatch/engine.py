"""Pipeline operations: samples → spectrogram → peaks → fingerprints → index / matches."""

import hashlib
import logging
import time

import numpy as np

from .cache import ResultCache
from .config import TOP_MATCHES
from .errors import DuplicateTrack, IndexUnavailable, PartialIndexFailure
from .features import extract_peaks, generate_spectrogram
from .fingerprint import count_couples, fingerprint_track, generate_fingerprints
from .index import FingerprintIndex
from .matcher import match
from .models import DecodedAudio, Match, Peak, track_key

logger = logging.getLogger(__name__)


def analyze(samples: np.ndarray, sample_rate: int, duration: float | None = None) -> tuple[list[Peak], float]:
    """Return the constellation peaks and the frame duration in ms."""
    spectrogram = generate_spectrogram(samples, sample_rate)
    peaks = extract_peaks(spectrogram, duration)
    return peaks, spectrogram.frame_ms


def query_fingerprints(samples: np.ndarray, sample_rate: int, duration: float | None = None) -> list[tuple[int, int]]:
    peaks, frame_ms = analyze(samples, sample_rate, duration)
    return generate_fingerprints(peaks, frame_ms)


def index_track(
    index: FingerprintIndex,
    samples: np.ndarray,
    sample_rate: int,
    duration: float | None,
    track_id: int,
) -> int:
    """Fingerprint samples under track_id and store them. Returns the fingerprint count."""
    peaks, frame_ms = analyze(samples, sample_rate, duration)
    table = fingerprint_track(peaks, track_id, frame_ms)
    if table:
        index.store_fingerprints(table)
    return count_couples(table)


def register_and_index(
    index: FingerprintIndex,
    audio: DecodedAudio,
    title: str,
    artist: str,
    external_ref: str = "",
    file_hash: str | None = None,
    overwrite: bool = False,
) -> tuple[int, int]:
    """
    Register a track and store its fingerprints.

    Raises DuplicateTrack if the (title, artist) key is taken, unless
    `overwrite` is set, in which case the new track gets a fresh id and the
    old one is deleted once the new fingerprints are stored. If storing
    fingerprints fails the new track record is deleted again, any old track
    is left as it was, and PartialIndexFailure is raised.

    Returns (track_id, fingerprint_count).
    """
    # Analysis is pure; do it before touching the index so bad input
    # never leaves a registration behind.
    peaks, frame_ms = analyze(audio.samples, audio.sample_rate, audio.duration_seconds)
    return store_track(
        index, peaks, frame_ms, title, artist,
        external_ref=external_ref, file_hash=file_hash, overwrite=overwrite,
    )


def _rollback(index: FingerprintIndex, track_id: int) -> bool:
    try:
        index.delete_track(track_id)
    except IndexUnavailable as e:
        logger.error("Could not roll back track %d: %s", track_id, e)
        return False
    return True


def store_track(
    index: FingerprintIndex,
    peaks: list[Peak],
    frame_ms: float,
    title: str,
    artist: str,
    external_ref: str = "",
    file_hash: str | None = None,
    overwrite: bool = False,
) -> tuple[int, int]:
    """
    Registration and storage half of register_and_index, for peaks computed elsewhere.

    On overwrite the old track is moved aside under a parking key while the
    new one is written, and only deleted once the new fingerprints are in.
    If the write fails the old track gets its key back untouched.
    """
    key = track_key(title, artist)
    existing = index.get_track_by_key(key)
    if existing is not None:
        if not overwrite:
            raise DuplicateTrack(key, existing.track_id)
        index.rekey_track(existing.track_id, f"{key}#replacing-{existing.track_id}")

    try:
        track_id = index.register_track(title, artist, external_ref, file_hash)
    except Exception:
        if existing is not None:
            index.rekey_track(existing.track_id, key)
        raise

    try:
        table = fingerprint_track(peaks, track_id, frame_ms)
        if table:
            index.store_fingerprints(table)
    except Exception as e:
        rolled_back = _rollback(index, track_id)
        if existing is not None and rolled_back:
            try:
                index.rekey_track(existing.track_id, key)
            except IndexUnavailable as restore_error:
                logger.error("Could not restore key of track %d: %s", existing.track_id, restore_error)
        raise PartialIndexFailure(title, artist, track_id, str(e), rolled_back=rolled_back) from e

    if existing is not None:
        logger.info("Replacing track %d ('%s' by '%s') with track %d", existing.track_id, title, artist, track_id)
        index.delete_track(existing.track_id)

    count = count_couples(table)
    logger.info("Indexed '%s' by '%s' as track %d with %d fingerprints", title, artist, track_id, count)
    return track_id, count


def search(
    index: FingerprintIndex,
    samples: np.ndarray,
    sample_rate: int,
    duration: float | None = None,
    top_n: int | None = TOP_MATCHES,
) -> tuple[list[Match], float]:
    """
    Identify samples against the index.

    Returns (matches, elapsed_seconds) where elapsed covers fingerprinting
    and matching. An empty list is a valid "no match" result.
    """
    start = time.perf_counter()
    query = query_fingerprints(samples, sample_rate, duration)
    matches, _ = match(query, index, top_n)
    return matches, time.perf_counter() - start


def samples_digest(samples: np.ndarray, sample_rate: int) -> str:
    h = hashlib.sha256()
    h.update(str(int(sample_rate)).encode())
    h.update(np.ascontiguousarray(samples, dtype=np.float32).tobytes())
    return h.hexdigest()


class Recognizer:
    """
    Long-lived front end over one index for request-serving callers.

    Search results are cached by query content; any change to the index made
    through the recognizer drops the cache.
    """

    def __init__(self, index: FingerprintIndex, cache: ResultCache | None = None):
        self.index = index
        self.cache = cache if cache is not None else ResultCache()

    def add(
        self,
        audio: DecodedAudio,
        title: str,
        artist: str,
        external_ref: str = "",
        file_hash: str | None = None,
        overwrite: bool = False,
    ) -> tuple[int, int]:
        try:
            return register_and_index(
                self.index, audio, title, artist,
                external_ref=external_ref, file_hash=file_hash, overwrite=overwrite,
            )
        finally:
            self.cache.clear()

    def remove(self, track_id: int) -> None:
        try:
            self.index.delete_track(track_id)
        finally:
            self.cache.clear()

    def identify(
        self,
        samples: np.ndarray,
        sample_rate: int,
        duration: float | None = None,
        top_n: int | None = TOP_MATCHES,
    ) -> tuple[list[Match], float]:
        start = time.perf_counter()
        key = (samples_digest(samples, sample_rate), top_n)
        cached = self.cache.get(key)
        if cached is not None:
            return list(cached), time.perf_counter() - start
        matches, elapsed = search(self.index, samples, sample_rate, duration, top_n)
        self.cache.put(key, tuple(matches))
        return matches, elapsed
