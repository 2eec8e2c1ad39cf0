"""Error kinds raised by the engine and its index collaborators.

A search that finds nothing is not an error: it returns an empty match list.
"""


class EchomatchError(Exception):
    """Base class for every error raised by echomatch."""


class InvalidInput(EchomatchError, ValueError):
    """Malformed or empty sample buffer, bad sample rate, undecodable file."""


class IndexUnavailable(EchomatchError):
    """The fingerprint index could not be reached or refused the operation."""


class PartialIndexFailure(EchomatchError):
    """Fingerprint storage failed after the track was registered.

    `rolled_back` tells whether the registration was removed again. When it
    is False the track record is orphaned and has to be removed by hand.
    """

    def __init__(self, title: str, artist: str, track_id: int, reason: str, rolled_back: bool = True):
        self.title = title
        self.artist = artist
        self.track_id = track_id
        self.reason = reason
        self.rolled_back = rolled_back
        outcome = "removed" if rolled_back else "NOT removed, delete it manually"
        super().__init__(
            f"failed to store fingerprints for '{title}' by '{artist}' "
            f"(track {track_id} {outcome}): {reason}"
        )


class DuplicateTrack(EchomatchError):
    """A track with the same normalized (title, artist) key is already indexed."""

    def __init__(self, key: str, track_id: int | None = None):
        self.key = key
        self.track_id = track_id
        super().__init__(f"track already indexed: {key}")
