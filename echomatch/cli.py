"""echomatch CLI."""

import logging
import os
import sys
import time
from pathlib import Path

import click
from tqdm import tqdm

from .config import AUDIO_EXTENSIONS, DB_PATH, TOP_MATCHES
from .engine import analyze, query_fingerprints, register_and_index, store_track
from .errors import DuplicateTrack, EchomatchError, IndexUnavailable, PartialIndexFailure
from .features import decode_audio, file_hash
from .logging_config import setup_logging
from .matcher import confidence_label, match
from .store import Store
from .workers import WorkerPool


# ---------------------------------------------------------------------------
# Parallel scan worker (runs in a subprocess, no DB access here)
# ---------------------------------------------------------------------------

def _read_tags(path: Path) -> dict:
    try:
        import mutagen
    except ImportError:
        return {}
    try:
        meta = mutagen.File(path, easy=True)
    except Exception:
        return {}
    if not meta:
        return {}
    return {
        "title": (meta.get("title") or [None])[0],
        "artist": (meta.get("artist") or [None])[0],
        "external_ref": (meta.get("isrc") or [None])[0],
    }


def _scan_worker(path_str: str) -> dict:
    """
    Decode one file and compute its constellation peaks.
    Runs in a worker process. Returns a plain dict so it's picklable.
    """
    path = Path(path_str)
    result = {
        "path": path_str,
        "fhash": None,
        "title": None, "artist": None, "external_ref": None,
        "peaks": None, "frame_ms": None, "duration_s": None,
        "error": None,
    }
    try:
        result["fhash"] = file_hash(path)
        result.update({k: v for k, v in _read_tags(path).items() if v})
        audio = decode_audio(path)
        result["duration_s"] = audio.duration_seconds
        result["peaks"], result["frame_ms"] = analyze(audio.samples, audio.sample_rate, audio.duration_seconds)
    except Exception as e:
        result["error"] = str(e)
    return result


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _open_store(db: Path | None) -> Store:
    try:
        return Store(db or DB_PATH)
    except IndexUnavailable as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def _format_track(title: str, artist: str) -> str:
    return f"{title} by {artist}" if artist else title


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Debug logging.")
def cli(verbose: bool):
    """echomatch: identify recorded audio against a library of indexed tracks."""
    setup_logging(logging.DEBUG if verbose else logging.WARNING)


@cli.command()
@click.argument("directory", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--update", is_flag=True, help="Skip files whose content is already indexed.")
@click.option("--overwrite", is_flag=True, help="Re-index tracks whose title/artist is already indexed.")
@click.option("--workers", "-j", default=None, type=int,
              help="Parallel workers (default: CPU count).")
@click.option("--db", type=click.Path(path_type=Path), default=None,
              help="Database path (default: ~/.echomatch/library.db).")
def scan(directory: Path, update: bool, overwrite: bool, workers: int | None, db: Path | None):
    """Fingerprint every audio file under DIRECTORY."""
    n_workers = workers or os.cpu_count() or 4

    audio_files = sorted(
        p for p in directory.rglob("*")
        if p.suffix.lower() in AUDIO_EXTENSIONS
    )
    click.echo(f"Found {len(audio_files)} audio files in {directory}")

    with _open_store(db) as store:
        # If --update, pre-filter files that are already indexed so workers
        # don't waste time on them. Hash check is fast enough to do on the main thread.
        if update:
            filtered = []
            for path in audio_files:
                if store.get_track_by_hash(file_hash(path)) is None:
                    filtered.append(path)
            click.echo(f"Skipping {len(audio_files) - len(filtered)} indexed files, processing {len(filtered)}.")
            audio_files = filtered

        if not audio_files:
            click.echo("Nothing to do.")
            return

        click.echo(f"Processing with {n_workers} workers...")

        indexed = 0
        skipped = 0
        errors = 0
        work_args = [str(p.resolve()) for p in audio_files]

        # Workers handle all CPU-bound work; main thread owns the DB connection.
        with WorkerPool(processes=n_workers) as pool:
            with tqdm(total=len(work_args), unit="track") as pbar:
                for result in pool.imap_unordered(_scan_worker, work_args):
                    pbar.update(1)
                    name = Path(result["path"]).name
                    if result["error"]:
                        tqdm.write(f"ERROR {name}: {result['error']}")
                        errors += 1
                        continue
                    title = result["title"] or Path(result["path"]).stem
                    artist = result["artist"] or "Unknown"
                    try:
                        store_track(
                            store,
                            result["peaks"],
                            result["frame_ms"],
                            title,
                            artist,
                            external_ref=result["external_ref"] or "",
                            file_hash=result["fhash"],
                            overwrite=overwrite,
                        )
                        indexed += 1
                    except DuplicateTrack:
                        tqdm.write(f"SKIP {name}: '{title}' by '{artist}' already indexed")
                        skipped += 1
                    except (PartialIndexFailure, IndexUnavailable) as e:
                        tqdm.write(f"ERROR {name}: {e}")
                        errors += 1

    click.echo(f"Done. Indexed: {indexed}. Skipped: {skipped}. Errors: {errors}.")


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--title", default=None, help="Track title (default: tag or file name).")
@click.option("--artist", default=None, help="Track artist (default: tag or 'Unknown').")
@click.option("--ref", "external_ref", default=None, help="External reference id.")
@click.option("--overwrite", is_flag=True, help="Replace an indexed track with the same title/artist.")
@click.option("--db", type=click.Path(path_type=Path), default=None)
def add(file: Path, title: str | None, artist: str | None, external_ref: str | None,
        overwrite: bool, db: Path | None):
    """Fingerprint a single FILE and add it to the library."""
    tags = _read_tags(file)
    title = title or tags.get("title") or file.stem
    artist = artist or tags.get("artist") or "Unknown"
    external_ref = external_ref or tags.get("external_ref") or ""

    try:
        audio = decode_audio(file)
    except EchomatchError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    with _open_store(db) as store:
        try:
            track_id, count = register_and_index(
                store, audio, title, artist,
                external_ref=external_ref, file_hash=file_hash(file), overwrite=overwrite,
            )
        except DuplicateTrack as e:
            click.echo(f"'{title}' by '{artist}' is already indexed as track {e.track_id}. "
                       f"Use --overwrite to replace it.", err=True)
            sys.exit(1)
        except EchomatchError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

    click.echo(f"Indexed {_format_track(title, artist)} as track {track_id} ({count} fingerprints)")


@cli.command()
@click.argument("clip", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("-k", "--count", default=TOP_MATCHES, show_default=True, help="Number of results.")
@click.option("--db", type=click.Path(path_type=Path), default=None)
def identify(clip: Path, count: int, db: Path | None):
    """Identify CLIP against the library."""
    start = time.perf_counter()
    try:
        audio = decode_audio(clip)
        query = query_fingerprints(audio.samples, audio.sample_rate, audio.duration_seconds)
    except EchomatchError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    with _open_store(db) as store:
        try:
            matches, _ = match(query, store, top_n=count)
        except IndexUnavailable as e:
            click.echo(f"Search failed: {e}", err=True)
            sys.exit(1)
    elapsed = time.perf_counter() - start

    if not matches:
        click.echo("\nNo match found.")
        click.echo(f"\nSearch took: {elapsed:.3f}s")
        return

    click.echo(f"\nTop {len(matches)} matches:\n" if len(matches) > 1 else "\nMatch:\n")
    for rank, m in enumerate(matches, 1):
        label = confidence_label(m.score, len(query))
        click.echo(f"  {rank:2d}. [{m.score:.0f} {label}]  {_format_track(m.title, m.artist)}"
                   f"  @ {m.timestamp / 1000:.1f}s")

    click.echo(f"\nSearch took: {elapsed:.3f}s")
    top = matches[0]
    click.echo(f"\nFinal prediction: {_format_track(top.title, top.artist)}, score: {top.score:.0f}")


@cli.command()
@click.argument("track_id", type=int)
@click.option("--db", type=click.Path(path_type=Path), default=None)
def remove(track_id: int, db: Path | None):
    """Remove TRACK_ID and its fingerprints from the library."""
    with _open_store(db) as store:
        track = store.get_track(track_id)
        if track is None:
            click.echo(f"No track with id {track_id}.", err=True)
            sys.exit(1)
        store.delete_track(track_id)
    click.echo(f"Removed {_format_track(track.title, track.artist)}")


@cli.command()
@click.confirmation_option(prompt="Delete every track and fingerprint?")
@click.option("--db", type=click.Path(path_type=Path), default=None)
def erase(db: Path | None):
    """Delete every track and fingerprint from the library."""
    with _open_store(db) as store:
        store.erase()
    click.echo("Erase complete")


@cli.command()
@click.option("--db", type=click.Path(path_type=Path), default=None)
def stats(db: Path | None):
    """Show library statistics."""
    db_path = db or DB_PATH
    with _open_store(db_path) as store:
        s = store.stats()
    click.echo(f"Tracks:           {s['total_tracks']}")
    click.echo(f"Fingerprints:     {s['fingerprints']}")
    click.echo(f"Unique addresses: {s['unique_addresses']}")
    click.echo(f"Database:         {db_path}")


if __name__ == "__main__":
    cli()
