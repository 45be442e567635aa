from __future__ import annotations

import asyncio
from pathlib import Path

from facecluster.references import populate_references
from facecluster.storage.library import MemoryLibrary


class _CountingExtractor:
    def __init__(self, make_reference, faces_per_photo=1, failing=()):
        self.make_reference = make_reference
        self.faces_per_photo = faces_per_photo
        self.failing = set(failing)
        self.calls = []

    def extract(self, path: Path, id_prefix: str):
        self.calls.append(path.name)
        if path.name in self.failing:
            raise OSError(f"cannot decode {path}")
        return [
            self.make_reference([0.1 * idx, 0.2], ref_id=f"{id_prefix}:{idx}") for idx in range(self.faces_per_photo)
        ]


def test_only_unprocessed_photos_are_extracted(make_reference):
    library = MemoryLibrary()
    library.add_photo("a", "done.jpg", [make_reference([0.5, 0.5])])
    library.add_photo("a", "new.jpg", None)
    library.add_photo("b", "empty.jpg", [])
    extractor = _CountingExtractor(make_reference, faces_per_photo=2)

    stats = asyncio.run(populate_references(library, extractor, workers=2))

    assert extractor.calls == ["new.jpg"]
    assert stats.photos == 3
    assert stats.processed == 1
    assert stats.already_done == 2
    assert stats.faces == 2
    assert [r.id for r in library.photos["a"]["new.jpg"]] == ["a|new.jpg:0", "a|new.jpg:1"]


def test_failed_extraction_marks_photo_processed(make_reference):
    library = MemoryLibrary()
    library.add_photo("a", "broken.jpg", None)
    library.add_photo("a", "fine.jpg", None)
    extractor = _CountingExtractor(make_reference, failing={"broken.jpg"})

    stats = asyncio.run(populate_references(library, extractor))

    assert stats.failed == 1
    assert library.photos["a"]["broken.jpg"] == []
    assert len(library.photos["a"]["fine.jpg"]) == 1

    rerun = _CountingExtractor(make_reference)
    asyncio.run(populate_references(library, rerun))
    assert rerun.calls == []


def test_progress_is_reported_per_photo(make_reference):
    library = MemoryLibrary()
    for name in ("1.jpg", "2.jpg", "3.jpg"):
        library.add_photo("a", name, None)
    seen = []

    extractor = _CountingExtractor(make_reference)
    asyncio.run(populate_references(library, extractor, progress=lambda done, total: seen.append((done, total))))

    assert seen[0] == (0, 3)
    assert seen[-1] == (3, 3)
