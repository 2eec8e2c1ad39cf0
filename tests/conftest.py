import numpy as np
import pytest

from echomatch.config import SAMPLE_RATE
from echomatch.index import MemoryIndex
from echomatch.models import DecodedAudio
from echomatch.store import Store


def tone_mix(freqs, seconds, sr=SAMPLE_RATE, amplitude=0.4):
    t = np.arange(int(seconds * sr)) / sr
    signal = np.zeros_like(t)
    for f in freqs:
        signal += amplitude * np.sin(2 * np.pi * f * t)
    return signal.astype(np.float32)


def melody(seconds, seed, sr=SAMPLE_RATE):
    """Random two-tone notes of uneven length, deterministic per seed."""
    rng = np.random.default_rng(seed)
    total = int(seconds * sr)
    chunks = []
    n = 0
    while n < total:
        length = int(rng.integers(int(0.3 * sr), int(0.6 * sr)))
        f1, f2 = rng.uniform(150, 4000, size=2)
        t = np.arange(length) / sr
        chunks.append(0.35 * np.sin(2 * np.pi * f1 * t) + 0.35 * np.sin(2 * np.pi * f2 * t))
        n += length
    return np.concatenate(chunks)[:total].astype(np.float32)


def as_audio(samples, sr=SAMPLE_RATE):
    return DecodedAudio(samples=samples, sample_rate=sr, duration_seconds=len(samples) / sr)


@pytest.fixture
def memory_index():
    return MemoryIndex()


@pytest.fixture
def store(tmp_path):
    s = Store(tmp_path / "library.db")
    yield s
    s.close()


@pytest.fixture(scope="session")
def song_a():
    return melody(30, seed=1)


@pytest.fixture(scope="session")
def song_b():
    return melody(30, seed=2)
