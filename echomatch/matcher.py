"""Matching engine: reverse lookup, delta histograms, ranking."""

import logging
import time
from collections import Counter, defaultdict
from typing import Iterable

from .config import (
    DELTA_BUCKET_MS,
    LOOKUP_BATCH_SIZE,
    TOP_MATCHES,
    LOW_CONFIDENCE_RATIO,
    HIGH_CONFIDENCE_RATIO,
)
from .errors import IndexUnavailable
from .index import FingerprintIndex
from .models import Couple, Match

logger = logging.getLogger(__name__)


def lookup_couples(
    index: FingerprintIndex,
    addresses: Iterable[int],
    batch_size: int | None = None,
) -> dict[int, list[Couple]]:
    """
    Reverse-lookup addresses in batches.

    A batch the index fails to answer is skipped; if every batch fails the
    index is considered down and IndexUnavailable is raised.
    """
    batch_size = batch_size or LOOKUP_BATCH_SIZE
    wanted = sorted(set(addresses))
    found: dict[int, list[Couple]] = {}
    batches = 0
    failed = 0
    for start in range(0, len(wanted), batch_size):
        batch = wanted[start:start + batch_size]
        batches += 1
        try:
            found.update(index.get_couples(batch))
        except IndexUnavailable as e:
            failed += 1
            logger.warning("Skipping %d addresses after lookup error: %s", len(batch), e)
    if batches and failed == batches:
        raise IndexUnavailable(f"all {batches} lookup batches failed")
    return found


def delta_bucket(db_anchor_ms: int, query_anchor_ms: int) -> int:
    return round((db_anchor_ms - query_anchor_ms) / DELTA_BUCKET_MS)


def score_candidates(
    query: list[tuple[int, int]],
    couples_by_address: dict[int, list[Couple]],
) -> dict[int, tuple[int, int]]:
    """
    Build a delta histogram per track and return track_id -> (score, bucket).

    A query occurrence votes at most once per (track, bucket), so the score
    of a track can never exceed the number of query fingerprints. The score
    is the tallest bucket; ties go to the earliest bucket.
    """
    histograms: dict[int, Counter] = defaultdict(Counter)
    for address, query_ms in query:
        couples = couples_by_address.get(address)
        if not couples:
            continue
        voted = set()
        for track_id, db_ms in couples:
            vote = (track_id, delta_bucket(db_ms, query_ms))
            if vote in voted:
                continue
            voted.add(vote)
            histograms[track_id][vote[1]] += 1

    scores = {}
    for track_id, histogram in histograms.items():
        bucket, count = max(histogram.items(), key=lambda kv: (kv[1], -kv[0]))
        scores[track_id] = (count, bucket)
    return scores


def match(
    query: list[tuple[int, int]],
    index: FingerprintIndex,
    top_n: int | None = TOP_MATCHES,
) -> tuple[list[Match], float]:
    """
    Rank indexed tracks against query fingerprints.

    Returns (matches, elapsed_seconds). Matches are ordered by score
    descending, then by lowest track id. An empty list means no match.
    """
    start = time.perf_counter()
    if not query:
        return [], time.perf_counter() - start

    couples = lookup_couples(index, (address for address, _ in query))
    scores = score_candidates(query, couples)
    ranked = sorted(scores.items(), key=lambda kv: (-kv[1][0], kv[0]))

    matches: list[Match] = []
    for track_id, (count, bucket) in ranked:
        if top_n is not None and len(matches) >= top_n:
            break
        track = index.get_track(track_id)
        if track is None:
            continue  # deleted while we were scoring
        matches.append(
            Match(
                track_id=track_id,
                title=track.title,
                artist=track.artist,
                score=float(count),
                external_ref=track.external_ref,
                timestamp=max(0, bucket * DELTA_BUCKET_MS),
            )
        )

    elapsed = time.perf_counter() - start
    logger.debug(
        "Matched %d query fingerprints against %d addresses: %d candidates in %.1f ms",
        len(query), len(couples), len(scores), elapsed * 1000,
    )
    return matches, elapsed


def confidence(score: float, query_size: int) -> float:
    """Fraction of query fingerprints that agree on the winning alignment."""
    if query_size <= 0:
        return 0.0
    return score / query_size


def confidence_label(score: float, query_size: int) -> str:
    c = confidence(score, query_size)
    if c >= HIGH_CONFIDENCE_RATIO:
        return "high"
    if c >= LOW_CONFIDENCE_RATIO:
        return "medium"
    return "low"
