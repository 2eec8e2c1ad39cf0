"""Data types shared across the pipeline."""

import unicodedata
from dataclasses import dataclass
from typing import NamedTuple

import numpy as np


class Peak(NamedTuple):
    frame_index: int
    frequency_bin: int
    magnitude: float


class Couple(NamedTuple):
    """Payload stored per fingerprint address."""

    track_id: int
    anchor_time_ms: int


@dataclass(frozen=True)
class DecodedAudio:
    """Output of the decode collaborator: mono samples at a fixed rate."""

    samples: np.ndarray
    sample_rate: int
    duration_seconds: float


@dataclass(frozen=True)
class Spectrogram:
    """Magnitude spectrogram, [frames × bins]."""

    magnitudes: np.ndarray
    sample_rate: int
    hop_length: int

    def __len__(self) -> int:
        return self.magnitudes.shape[0]

    @property
    def n_bins(self) -> int:
        return self.magnitudes.shape[1]

    @property
    def frame_ms(self) -> float:
        return self.hop_length * 1000.0 / self.sample_rate


@dataclass(frozen=True)
class Track:
    track_id: int
    title: str
    artist: str
    external_ref: str
    key: str
    file_hash: str | None = None


@dataclass(frozen=True)
class Match:
    track_id: int
    title: str
    artist: str
    score: float
    external_ref: str
    timestamp: int          # ms into the track where the query lines up

    def to_dict(self) -> dict:
        """Stable record shape consumed by clients and printers."""
        return {
            "title": self.title,
            "artist": self.artist,
            "score": self.score,
            "external_ref": self.external_ref,
            "timestamp": self.timestamp,
            "track_id": self.track_id,
        }


def _normalize(text: str) -> str:
    text = unicodedata.normalize("NFKC", text or "")
    return " ".join(text.casefold().split())


def track_key(title: str, artist: str) -> str:
    """Normalized (title, artist) composite used for uniqueness."""
    return f"{_normalize(title)}---{_normalize(artist)}"
