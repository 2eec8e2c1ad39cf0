"""Combinatorial fingerprints: peak pairs packed into 32-bit addresses.

Address layout (MSB -> LSB)::

    [anchor bin:10][target bin:10][delta frames:12]

Frequency bins are rounded down to a multiple of FREQ_QUANTUM before packing
so a peak that wobbles by one bin still lands on the same address.
"""

from collections import defaultdict

from .config import (
    FREQ_BITS,
    DELTA_BITS,
    FREQ_QUANTUM,
    MIN_DELTA_FRAMES,
    MAX_DELTA_FRAMES,
    FAN_OUT,
    FRAME_MS,
)
from .models import Couple, Peak

FREQ_MASK = (1 << FREQ_BITS) - 1
DELTA_MASK = (1 << DELTA_BITS) - 1
TARGET_SHIFT = DELTA_BITS
ANCHOR_SHIFT = DELTA_BITS + FREQ_BITS


def quantize_bin(freq_bin: int) -> int:
    """Round down to the nearest multiple of FREQ_QUANTUM, clamped to FREQ_BITS."""
    q = freq_bin - (freq_bin % FREQ_QUANTUM)
    return max(0, min(q, FREQ_MASK))


def pack_address(anchor_bin: int, target_bin: int, delta_frames: int) -> int:
    fa = quantize_bin(anchor_bin)
    fb = quantize_bin(target_bin)
    dt = max(0, min(delta_frames, DELTA_MASK))
    return (fa << ANCHOR_SHIFT) | (fb << TARGET_SHIFT) | dt


def unpack_address(address: int) -> tuple[int, int, int]:
    """Inverse of pack_address (on the quantized values)."""
    return (
        (address >> ANCHOR_SHIFT) & FREQ_MASK,
        (address >> TARGET_SHIFT) & FREQ_MASK,
        address & DELTA_MASK,
    )


def _pairs(peaks: list[Peak]):
    """
    Yield (anchor, target, delta_frames) for every pair in the target zone.

    Peaks are sorted first so the result does not depend on input order.
    Each anchor takes at most FAN_OUT targets, nearest in time first.
    """
    ordered = sorted(peaks, key=lambda p: (p.frame_index, p.frequency_bin))
    n = len(ordered)
    for i, anchor in enumerate(ordered):
        taken = 0
        for j in range(i + 1, n):
            target = ordered[j]
            dt = target.frame_index - anchor.frame_index
            if dt < MIN_DELTA_FRAMES:
                continue  # same frame, not strictly after
            if dt > MAX_DELTA_FRAMES:
                break
            yield anchor, target, dt
            taken += 1
            if taken == FAN_OUT:
                break


def generate_fingerprints(peaks: list[Peak], frame_ms: float = FRAME_MS) -> list[tuple[int, int]]:
    """
    Query-side fingerprints: ordered (address, anchor_time_ms) tuples.

    Repeated addresses are kept; every occurrence is a separate vote.
    """
    return [
        (pack_address(a.frequency_bin, b.frequency_bin, dt), int(round(a.frame_index * frame_ms)))
        for a, b, dt in _pairs(peaks)
    ]


def fingerprint_track(peaks: list[Peak], track_id: int, frame_ms: float = FRAME_MS) -> dict[int, list[Couple]]:
    """
    Index-side fingerprints: address -> couples for one track.

    Every occurrence of an address is kept so repeated structure in the
    track still lines up at match time.
    """
    table: dict[int, list[Couple]] = defaultdict(list)
    for address, anchor_ms in generate_fingerprints(peaks, frame_ms):
        table[address].append(Couple(track_id, anchor_ms))
    return dict(table)


def count_couples(table: dict[int, list[Couple]]) -> int:
    return sum(len(v) for v in table.values())
