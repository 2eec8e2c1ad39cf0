"""Feature extraction pipeline: audio → spectrogram → constellation peaks."""

import hashlib
import logging
import subprocess
from pathlib import Path

import numpy as np
import scipy.fft
import scipy.signal

from .config import (
    SAMPLE_RATE,
    WINDOW_SIZE,
    HOP_LENGTH,
    BAND_EDGES,
    MIN_PEAK_MAGNITUDE,
    NOISE_FLOOR_DECAY,
    NOISE_FLOOR_RATIO,
    PEAK_TIME_SEPARATION,
    PEAK_FREQ_SEPARATION,
    PEAK_TIE_TOLERANCE,
)
from .errors import InvalidInput
from .models import DecodedAudio, Peak, Spectrogram

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Step 1: Audio decode
# ---------------------------------------------------------------------------

def decode_audio(path: str | Path) -> DecodedAudio:
    """
    Decode any audio file to mono float32 PCM at SAMPLE_RATE using ffmpeg.
    Raises InvalidInput if ffmpeg fails or produces no samples.
    """
    cmd = [
        "ffmpeg",
        "-loglevel", "error",
        "-i", str(path),
        "-ac", "1",                        # mono
        "-ar", str(SAMPLE_RATE),           # resample
        "-f", "f32le",                     # raw float32 little-endian PCM
        "-",                               # stdout
    ]
    try:
        result = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    except FileNotFoundError as e:
        raise InvalidInput(f"ffmpeg not found while decoding {path}") from e
    if result.returncode != 0:
        raise InvalidInput(f"ffmpeg failed on {path}: {result.stderr.decode(errors='replace')}")
    audio = np.frombuffer(result.stdout, dtype=np.float32)
    if len(audio) == 0:
        raise InvalidInput(f"ffmpeg produced no audio for {path}")
    # Peak normalize
    peak = np.abs(audio).max()
    if peak > 0:
        audio = audio / peak
    return DecodedAudio(
        samples=audio,
        sample_rate=SAMPLE_RATE,
        duration_seconds=len(audio) / SAMPLE_RATE,
    )


def file_hash(path: str | Path) -> str:
    """SHA256 of the first 1 MB of a file, fast enough for change detection."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        h.update(f.read(1024 * 1024))
    return h.hexdigest()


# ---------------------------------------------------------------------------
# Step 2: Magnitude spectrogram
# ---------------------------------------------------------------------------

def n_frames_for(n_samples: int, window: int = WINDOW_SIZE, hop: int = HOP_LENGTH) -> int:
    """Frame count = ceil((N - window) / hop) + 1, and at least one frame."""
    if n_samples <= window:
        return 1
    return -(-(n_samples - window) // hop) + 1


def generate_spectrogram(samples: np.ndarray, sample_rate: int) -> Spectrogram:
    """
    Hann-windowed STFT magnitude of a mono buffer.

    Returns a Spectrogram of shape [T × WINDOW_SIZE/2]. The tail is zero
    padded to complete the last frame, so a buffer shorter than one window
    still yields exactly one frame.
    """
    if sample_rate is None or sample_rate <= 0:
        raise InvalidInput(f"sample rate must be positive, got {sample_rate}")
    audio = np.asarray(samples, dtype=np.float32)
    if audio.ndim != 1:
        raise InvalidInput(f"expected mono samples, got shape {audio.shape}")
    if len(audio) == 0:
        raise InvalidInput("sample buffer is empty")

    n_frames = n_frames_for(len(audio))
    padded_len = (n_frames - 1) * HOP_LENGTH + WINDOW_SIZE
    if padded_len > len(audio):
        audio = np.pad(audio, (0, padded_len - len(audio)))
    audio = np.ascontiguousarray(audio)

    frames = np.lib.stride_tricks.as_strided(
        audio,
        shape=(n_frames, WINDOW_SIZE),
        strides=(audio.strides[0] * HOP_LENGTH, audio.strides[0]),
    ).copy()
    frames *= scipy.signal.get_window("hann", WINDOW_SIZE).astype(np.float32)

    spectra = scipy.fft.rfft(frames, n=WINDOW_SIZE, axis=1)     # [T × (W/2 + 1)]
    magnitudes = np.abs(spectra[:, : WINDOW_SIZE // 2]).astype(np.float32)

    return Spectrogram(magnitudes=magnitudes, sample_rate=int(sample_rate), hop_length=HOP_LENGTH)


# ---------------------------------------------------------------------------
# Step 3: Constellation peaks
# ---------------------------------------------------------------------------

def _bands(n_bins: int) -> list[tuple[int, int]]:
    bands = []
    for lo, hi in zip(BAND_EDGES[:-1], BAND_EDGES[1:]):
        hi = min(hi, n_bins)
        if lo < hi:
            bands.append((lo, hi))
    return bands


def _dominated(frame_index: int, freq_bin: int, magnitude: float, neighbours: list[Peak]) -> bool:
    for p in neighbours:
        if (
            frame_index - p.frame_index <= PEAK_TIME_SEPARATION
            and abs(p.frequency_bin - freq_bin) <= PEAK_FREQ_SEPARATION
            and p.magnitude > magnitude * (1.0 + PEAK_TIE_TOLERANCE)
        ):
            return True
    return False


def extract_peaks(spectrogram: Spectrogram, duration: float | None = None) -> list[Peak]:
    """
    Pick at most one peak per frequency band per frame.

    A band maximum is kept when it clears the frame mean of all band maxima,
    a fraction of the running average of those means (adaptive noise floor)
    and an absolute floor. A maximum is dropped when a stronger peak was
    already retained within PEAK_TIME_SEPARATION frames and
    PEAK_FREQ_SEPARATION bins; magnitudes within PEAK_TIE_TOLERANCE of each
    other are equal, so neither suppresses the other.

    Returns peaks ordered by (frame_index, frequency_bin).
    """
    magnitudes = spectrogram.magnitudes
    if magnitudes.size == 0:
        return []

    n_frames, n_bins = magnitudes.shape
    bands = _bands(n_bins)
    peaks: list[Peak] = []
    recent: list[Peak] = []
    running = None

    for t in range(n_frames):
        frame = magnitudes[t]
        candidates = []
        for lo, hi in bands:
            idx = lo + int(np.argmax(frame[lo:hi]))
            candidates.append((idx, float(frame[idx])))

        frame_mean = sum(m for _, m in candidates) / len(candidates)
        if running is None:
            running = frame_mean
        else:
            running = (1.0 - NOISE_FLOOR_DECAY) * running + NOISE_FLOOR_DECAY * frame_mean
        floor = max(MIN_PEAK_MAGNITUDE, frame_mean, NOISE_FLOOR_RATIO * running)

        recent = [p for p in recent if t - p.frame_index <= PEAK_TIME_SEPARATION]
        kept: list[Peak] = []
        # strongest first so the neighbourhood check sees the dominant peak
        for idx, mag in sorted(candidates, key=lambda c: (-c[1], c[0])):
            if mag < floor:
                continue
            if _dominated(t, idx, mag, recent + kept):
                continue
            kept.append(Peak(t, idx, mag))

        kept.sort(key=lambda p: p.frequency_bin)
        peaks.extend(kept)
        recent.extend(kept)

    if duration:
        logger.debug("%d peaks over %.2fs (%.1f peaks/second)", len(peaks), duration, len(peaks) / duration)
    else:
        logger.debug("%d peaks over %d frames", len(peaks), n_frames)
    return peaks
