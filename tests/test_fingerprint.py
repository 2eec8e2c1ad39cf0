import random

import pytest

from echomatch.config import FAN_OUT, FRAME_MS, MAX_DELTA_FRAMES
from echomatch.fingerprint import (
    count_couples,
    fingerprint_track,
    generate_fingerprints,
    pack_address,
    quantize_bin,
    unpack_address,
)
from echomatch.models import Couple, Peak


def test_address_layout():
    address = pack_address(100, 200, 5)
    assert address == (100 << 22) | (200 << 12) | 5
    assert unpack_address(address) == (100, 200, 5)
    assert address < 2 ** 32


def test_bins_are_quantized():
    assert quantize_bin(101) == 100
    assert pack_address(101, 201, 5) == pack_address(100, 200, 5)
    assert pack_address(1023, 1023, 4095) == 0xFFFFFFFF - (1 << 22) - (1 << 12)


def test_delta_is_clamped():
    assert unpack_address(pack_address(10, 10, 10_000))[2] == 4095


def test_empty_and_single_peak():
    assert generate_fingerprints([]) == []
    assert generate_fingerprints([Peak(0, 10, 1.0)]) == []
    assert fingerprint_track([], track_id=1) == {}


def test_same_frame_peaks_are_not_paired():
    peaks = [Peak(3, 10, 1.0), Peak(3, 50, 1.0)]
    assert generate_fingerprints(peaks) == []


def test_target_zone_upper_bound():
    inside = [Peak(0, 10, 1.0), Peak(MAX_DELTA_FRAMES, 20, 1.0)]
    outside = [Peak(0, 10, 1.0), Peak(MAX_DELTA_FRAMES + 1, 20, 1.0)]
    assert len(generate_fingerprints(inside)) == 1
    assert generate_fingerprints(outside) == []


def test_fan_out_takes_nearest_targets():
    anchor = Peak(0, 100, 1.0)
    targets = [Peak(t, 200, 1.0) for t in range(1, 30)]
    prints = [fp for fp in generate_fingerprints([anchor] + targets) if fp[1] == 0]
    assert len(prints) == FAN_OUT
    deltas = [unpack_address(address)[2] for address, _ in prints]
    assert deltas == list(range(1, FAN_OUT + 1))


def test_anchor_time_in_ms():
    peaks = [Peak(10, 40, 1.0), Peak(12, 60, 1.0)]
    [(address, anchor_ms)] = generate_fingerprints(peaks)
    assert anchor_ms == int(round(10 * FRAME_MS))
    assert unpack_address(address) == (40, 60, 2)


def test_input_order_does_not_matter():
    rng = random.Random(7)
    peaks = [Peak(rng.randrange(200), rng.randrange(1024), 1.0) for _ in range(300)]
    peaks = list(dict.fromkeys(peaks))
    shuffled = peaks[:]
    rng.shuffle(shuffled)
    assert generate_fingerprints(peaks) == generate_fingerprints(shuffled)


def test_repeated_addresses_keep_every_occurrence():
    # a steady tone produces the same address at every anchor
    peaks = [Peak(t, 80, 1.0) for t in range(5)]
    table = fingerprint_track(peaks, track_id=7)
    address = pack_address(80, 80, 1)
    assert len(table[address]) == 4
    assert all(isinstance(c, Couple) and c.track_id == 7 for c in table[address])
    assert count_couples(table) == len(generate_fingerprints(peaks))


@pytest.mark.parametrize("frame_ms", [FRAME_MS, 10.0])
def test_index_and_query_side_agree(frame_ms):
    peaks = [Peak(t, 50 + 7 * t, 1.0) for t in range(20)]
    table = fingerprint_track(peaks, 1, frame_ms)
    for address, anchor_ms in generate_fingerprints(peaks, frame_ms):
        assert Couple(1, anchor_ms) in table[address]
