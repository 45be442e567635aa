"""Populate references for photos that were never processed."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol

from facecluster.concurrency import ProgressCallback, ProgressCounter, WorkerPool
from facecluster.storage.library import Library
from facecluster.types import AlbumEntry, LibraryError, Reference

LOGGER = logging.getLogger("facecluster.references")


class Extractor(Protocol):
    def extract(self, path: Path, id_prefix: str) -> List[Reference]:
        ...


@dataclass
class ExtractionStats:
    photos: int = 0
    processed: int = 0
    already_done: int = 0
    faces: int = 0
    failed: int = 0


async def _process_entry(library: Library, extractor: Extractor, entry: AlbumEntry, stats: ExtractionStats) -> None:
    if await library.read_references(entry) is not None:
        stats.already_done += 1
        return
    path = library.picture_path(entry)
    try:
        references = await asyncio.to_thread(extractor.extract, path, entry.entry_id)
    except (OSError, ValueError) as exc:
        # An empty list marks the photo as processed so it is not retried on every run.
        LOGGER.warning("Extraction failed for %s: %s", path, exc)
        stats.failed += 1
        references = []
    await library.write_references(entry, references)
    stats.processed += 1
    stats.faces += len(references)


async def populate_references(
    library: Library,
    extractor: Extractor,
    workers: int = 30,
    progress: Optional[ProgressCallback] = None,
) -> ExtractionStats:
    """Extract references for every photo whose references are missing."""
    stats = ExtractionStats()
    counter = ProgressCounter(callback=progress)
    pool = WorkerPool(workers)
    entries: List[AlbumEntry] = []
    for album in await library.list_albums():
        try:
            entries.extend(await library.list_entries(album))
        except (OSError, LibraryError) as exc:
            LOGGER.warning("Skipping album %s: %s", album.display_name, exc)
    stats.photos = len(entries)
    counter.reset(len(entries))

    async def _one(entry: AlbumEntry) -> None:
        try:
            await _process_entry(library, extractor, entry, stats)
        except (OSError, LibraryError) as exc:
            LOGGER.warning("Could not store references for %s: %s", entry.entry_id, exc)
            stats.failed += 1
        finally:
            counter.advance()

    await pool.map(_one, entries)
    LOGGER.info(
        "Extraction done: photos=%d processed=%d already_done=%d faces=%d failed=%d",
        stats.photos,
        stats.processed,
        stats.already_done,
        stats.faces,
        stats.failed,
    )
    return stats
