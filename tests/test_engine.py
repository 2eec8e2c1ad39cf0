import threading

import numpy as np
import pytest

from conftest import as_audio, melody, tone_mix
from echomatch.cache import ResultCache
from echomatch.config import LOW_CONFIDENCE_RATIO, SAMPLE_RATE
from echomatch.engine import (
    Recognizer,
    index_track,
    query_fingerprints,
    register_and_index,
    search,
)
from echomatch.errors import DuplicateTrack, IndexUnavailable, InvalidInput, PartialIndexFailure
from echomatch.index import MemoryIndex
from echomatch.matcher import confidence
from echomatch.models import track_key


class BrokenWritesIndex(MemoryIndex):
    def store_fingerprints(self, fingerprints):
        raise IndexUnavailable("disk full")


def test_self_match_dual_tone(memory_index):
    samples = tone_mix([440, 880], 5.0)
    track_id, count = register_and_index(memory_index, as_audio(samples), "A", "Synth")
    query = query_fingerprints(samples, SAMPLE_RATE)
    assert count == len(query) > 0

    matches, elapsed = search(memory_index, samples, SAMPLE_RATE)
    assert matches[0].track_id == track_id
    assert matches[0].score == len(query)
    assert matches[0].timestamp == 0
    assert elapsed >= 0


def test_unindexed_tone_is_not_matched(memory_index):
    register_and_index(memory_index, as_audio(tone_mix([440, 880], 5.0)), "A", "Synth")
    other = tone_mix([523.25, 1318.5], 5.0)
    query = query_fingerprints(other, SAMPLE_RATE)
    matches, _ = search(memory_index, other, SAMPLE_RATE)
    assert all(confidence(m.score, len(query)) < LOW_CONFIDENCE_RATIO for m in matches)


def test_self_match_melody_ranks_first(memory_index, song_a, song_b):
    a, _ = register_and_index(memory_index, as_audio(song_a), "Song A", "X")
    b, _ = register_and_index(memory_index, as_audio(song_b), "Song B", "X")
    matches, _ = search(memory_index, song_a, SAMPLE_RATE)
    assert matches[0].track_id == a
    assert matches[0].score == len(query_fingerprints(song_a, SAMPLE_RATE))
    if len(matches) > 1:
        assert matches[1].track_id == b
        assert matches[1].score < 0.05 * matches[0].score


def test_noisy_copy_still_matches(memory_index, song_a, song_b):
    a, _ = register_and_index(memory_index, as_audio(song_a), "Song A", "X")
    register_and_index(memory_index, as_audio(song_b), "Song B", "X")
    rng = np.random.default_rng(0)
    noisy = (song_a + rng.normal(0, 0.01, size=len(song_a))).astype(np.float32)
    query = query_fingerprints(noisy, SAMPLE_RATE)
    matches, _ = search(memory_index, noisy, SAMPLE_RATE)
    assert matches[0].track_id == a
    assert matches[0].score >= 0.5 * len(query)


def test_excerpt_reports_offset(memory_index, song_a, song_b):
    a, _ = register_and_index(memory_index, as_audio(song_a), "Song A", "X")
    register_and_index(memory_index, as_audio(song_b), "Song B", "X")
    clip = song_a[10 * SAMPLE_RATE:20 * SAMPLE_RATE]
    query = query_fingerprints(clip, SAMPLE_RATE)
    matches, _ = search(memory_index, clip, SAMPLE_RATE)
    assert matches[0].track_id == a
    assert abs(matches[0].timestamp - 10_000) <= 200
    assert confidence(matches[0].score, len(query)) >= LOW_CONFIDENCE_RATIO


def test_unrelated_melody_is_low_confidence(memory_index, song_a):
    register_and_index(memory_index, as_audio(song_a), "Song A", "X")
    other = melody(10, seed=99)
    query = query_fingerprints(other, SAMPLE_RATE)
    matches, _ = search(memory_index, other, SAMPLE_RATE)
    assert all(confidence(m.score, len(query)) < LOW_CONFIDENCE_RATIO for m in matches)


def test_empty_input_raises(memory_index):
    with pytest.raises(InvalidInput):
        search(memory_index, np.array([], dtype=np.float32), SAMPLE_RATE)
    with pytest.raises(InvalidInput):
        register_and_index(memory_index, as_audio(np.array([], dtype=np.float32)), "A", "X")
    assert memory_index.all_tracks() == []


def test_silence_and_short_clips_find_nothing(memory_index, song_a):
    register_and_index(memory_index, as_audio(song_a), "Song A", "X")
    assert search(memory_index, np.zeros(SAMPLE_RATE, dtype=np.float32), SAMPLE_RATE)[0] == []
    assert search(memory_index, song_a[:1000], SAMPLE_RATE)[0] == []


def test_failed_storage_rolls_back_registration():
    index = BrokenWritesIndex()
    with pytest.raises(PartialIndexFailure) as exc:
        register_and_index(index, as_audio(tone_mix([440, 880], 2.0)), "A", "X")
    assert exc.value.track_id == 1
    assert isinstance(exc.value.__cause__, IndexUnavailable)
    assert index.get_track_by_key(track_key("A", "X")) is None
    assert index.all_tracks() == []


def test_failed_storage_rolls_back_sqlite(store, monkeypatch):
    def fail(fingerprints):
        raise IndexUnavailable("disk full")

    monkeypatch.setattr(store, "store_fingerprints", fail)
    with pytest.raises(PartialIndexFailure):
        register_and_index(store, as_audio(tone_mix([440, 880], 2.0)), "A", "X")
    assert store.stats() == {"total_tracks": 0, "fingerprints": 0, "unique_addresses": 0}


def test_duplicate_and_overwrite(memory_index):
    audio = as_audio(tone_mix([440, 880], 2.0))
    first, _ = register_and_index(memory_index, audio, "A", "X")
    with pytest.raises(DuplicateTrack) as exc:
        register_and_index(memory_index, audio, "a", " x")
    assert exc.value.track_id == first

    second, count = register_and_index(memory_index, audio, "A", "X", overwrite=True)
    assert second != first
    assert memory_index.get_track(first) is None
    assert memory_index.stats()["fingerprints"] == count


def test_index_track_under_existing_id(memory_index):
    samples = tone_mix([440, 880], 2.0)
    track_id = memory_index.register_track("A", "X")
    count = index_track(memory_index, samples, SAMPLE_RATE, 2.0, track_id)
    assert count == memory_index.stats()["fingerprints"] > 0


def test_recognizer_caches_until_index_changes(song_a, song_b):
    index = MemoryIndex()
    recognizer = Recognizer(index, ResultCache(max_entries=8))
    a, _ = recognizer.add(as_audio(song_a), "Song A", "X")
    clip = song_a[5 * SAMPLE_RATE:12 * SAMPLE_RATE]

    first, _ = recognizer.identify(clip, SAMPLE_RATE)
    assert first[0].track_id == a
    assert len(recognizer.cache) == 1
    again, _ = recognizer.identify(clip, SAMPLE_RATE)
    assert again == first

    recognizer.add(as_audio(song_b), "Song B", "X")
    assert len(recognizer.cache) == 0
    recognizer.remove(a)
    after, _ = recognizer.identify(clip, SAMPLE_RATE)
    assert all(m.track_id != a for m in after)


def test_fingerprinting_is_deterministic(song_a):
    clip = song_a[:5 * SAMPLE_RATE]
    assert query_fingerprints(clip, SAMPLE_RATE) == query_fingerprints(clip.copy(), SAMPLE_RATE)


def test_failed_overwrite_keeps_original_track(memory_index, monkeypatch):
    audio = as_audio(tone_mix([440, 880], 2.0))
    original, count = register_and_index(memory_index, audio, "A", "X")

    def fail(fingerprints):
        raise IndexUnavailable("disk full")

    monkeypatch.setattr(memory_index, "store_fingerprints", fail)
    with pytest.raises(PartialIndexFailure) as exc:
        register_and_index(memory_index, audio, "A", "X", overwrite=True)
    assert exc.value.rolled_back

    track = memory_index.get_track_by_key(track_key("A", "X"))
    assert track is not None and track.track_id == original
    assert memory_index.stats()["total_tracks"] == 1
    assert memory_index.stats()["fingerprints"] == count
    matches, _ = search(memory_index, audio.samples, SAMPLE_RATE)
    assert matches[0].track_id == original


def test_failed_overwrite_keeps_original_track_sqlite(store, monkeypatch):
    audio = as_audio(tone_mix([440, 880], 2.0))
    original, count = register_and_index(store, audio, "A", "X")

    def fail(fingerprints):
        raise IndexUnavailable("disk full")

    monkeypatch.setattr(store, "store_fingerprints", fail)
    with pytest.raises(PartialIndexFailure):
        register_and_index(store, audio, "A", "X", overwrite=True)
    assert store.get_track_by_key(track_key("A", "X")).track_id == original
    assert store.stats()["total_tracks"] == 1
    assert store.stats()["fingerprints"] == count


class UndeletableIndex(BrokenWritesIndex):
    def delete_track(self, track_id):
        raise IndexUnavailable("read-only")


def test_failed_rollback_is_reported():
    index = UndeletableIndex()
    with pytest.raises(PartialIndexFailure) as exc:
        register_and_index(index, as_audio(tone_mix([440, 880], 2.0)), "A", "X")
    assert not exc.value.rolled_back
    assert "NOT removed" in str(exc.value)
    assert index.get_track(exc.value.track_id) is not None


@pytest.mark.parametrize("backend", ["memory_index", "store"])
def test_searches_run_alongside_indexing(backend, request, song_a):
    index = request.getfixturevalue(backend)
    a, _ = register_and_index(index, as_audio(song_a), "Song A", "X")
    clip = song_a[8 * SAMPLE_RATE:14 * SAMPLE_RATE]
    errors = []
    results = []

    def searcher():
        try:
            for _ in range(3):
                results.append(search(index, clip, SAMPLE_RATE)[0][0].track_id)
        except Exception as e:
            errors.append(e)

    def indexer():
        try:
            for i in range(4):
                register_and_index(index, as_audio(tone_mix([300 + 50 * i, 1500], 2.0)), f"Tone {i}", "Y")
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=searcher) for _ in range(3)] + [threading.Thread(target=indexer)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(60)

    assert errors == []
    assert results == [a] * 9
    assert index.stats()["total_tracks"] == 5
