"""echomatch configuration and paths."""

import os
from pathlib import Path

# Data directory: ~/.echomatch/
DATA_DIR = Path(os.environ.get("ECHOMATCH_DATA_DIR", Path.home() / ".echomatch"))
DB_PATH = DATA_DIR / "library.db"

# Canonical analysis rate; the decoder resamples everything to it
SAMPLE_RATE = 11025

# Spectrogram
WINDOW_SIZE = 2048                  # samples per frame (~186 ms)
HOP_LENGTH = 512                    # 75% overlap
N_BINS = WINDOW_SIZE // 2           # Nyquist bin dropped so bins fit in 10 bits
FRAME_MS = HOP_LENGTH * 1000.0 / SAMPLE_RATE

# Peak extraction
# Logarithmic bands in bin units (~5.4 Hz per bin at 11025 Hz / 2048)
BAND_EDGES = (0, 10, 20, 40, 80, 160, 320, 640, N_BINS)
MIN_PEAK_MAGNITUDE = 1e-2           # absolute floor, silence yields nothing
NOISE_FLOOR_DECAY = 0.05            # weight of the newest frame in the running average
NOISE_FLOOR_RATIO = 0.5             # peaks below this fraction of the running average are noise
PEAK_TIME_SEPARATION = 1            # frames
PEAK_FREQ_SEPARATION = 3            # bins
PEAK_TIE_TOLERANCE = 0.01           # magnitudes this close (relative) count as equal

# Fingerprint address layout (MSB -> LSB): [anchor bin:10][target bin:10][delta frames:12]
# Changing any of these invalidates every existing index.
FREQ_BITS = 10
DELTA_BITS = 12
FREQ_QUANTUM = 2                    # bins are rounded down to a multiple of this
MIN_DELTA_FRAMES = 1
MAX_DELTA_FRAMES = 64               # target zone, ~3 s
FAN_OUT = 10                        # max targets per anchor

# Matching
DELTA_BUCKET_MS = 100               # histogram granularity for time alignment
LOOKUP_BATCH_SIZE = 500             # addresses per index round trip
TOP_MATCHES = 20
LOW_CONFIDENCE_RATIO = 0.05         # score / query fingerprints below this is noise
HIGH_CONFIDENCE_RATIO = 0.25

# Search result cache
CACHE_MAX_ENTRIES = 256
CACHE_TTL_SECONDS = 300.0

# Audio formats supported via ffmpeg
AUDIO_EXTENSIONS = {".mp3", ".flac", ".wav", ".m4a", ".ogg", ".opus", ".aac", ".wma"}
