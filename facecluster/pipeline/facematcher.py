"""Face-matcher strategy: suggest contacts for faces similar to labeled ones.

Labeled references (those under a user-named rectangle) are hashed into a
sortable index. Every other useful reference is looked up in the index and
the hit is confirmed with the true Euclidean distance before a candidate
annotation is written.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np

from facecluster.concurrency import ProgressCallback, ProgressCounter, WorkerPool
from facecluster.config import ClusterConfig
from facecluster.pipeline.cluster_strategy import ALBUM_IO_ERRORS
from facecluster.recognition.proximity import find_owner
from facecluster.recognition.quality import Purpose, is_useful_reference
from facecluster.recognition.sortable_index import KnownHashTable, SortableEmbeddingIndex
from facecluster.storage.library import Library
from facecluster.types import Album, Contact, Reference, euclidean_distance, rect_of_reference

LOGGER = logging.getLogger("facecluster.pipeline.facematcher")


@dataclass
class MatcherOutcome:
    ok: bool
    identified_references: int = 0
    kept_references: int = 0
    candidates: int = 0
    skipped_albums: List[str] = field(default_factory=list)
    error: Optional[str] = None


def prune_similar_references(references: List[Reference], max_distance: float) -> List[Reference]:
    """Drop references that are nearly identical to an earlier one of the same contact."""
    kept: List[Reference] = []
    for reference in references:
        if all(euclidean_distance(reference.embedding, other.embedding) >= max_distance for other in kept):
            kept.append(reference)
    return kept


class FaceMatcherStrategy:
    def __init__(
        self,
        library: Library,
        config: Optional[ClusterConfig] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> None:
        self.library = library
        self.config = config or ClusterConfig()
        self.progress = ProgressCounter(callback=progress)
        self.labeled: Dict[str, List[Reference]] = {}
        self.contacts: Dict[str, Contact] = {}
        self.identified_ids: set = set()
        self.table: Optional[KnownHashTable[Tuple[Contact, np.ndarray]]] = None

    def _usable(self, reference: Reference) -> bool:
        return reference.has_valid_embedding(self.config.embedding_dim) and is_useful_reference(
            reference, Purpose.MEMBER, self.config.member_quality
        )

    async def collect_labeled(self, album: Album) -> None:
        for entry in await self.library.list_entries(album):
            references = await self.library.read_references(entry)
            if not references:
                continue
            identified = await self.library.list_identified_contacts(entry)
            if not identified:
                continue
            for reference in references:
                if not self._usable(reference):
                    continue
                owner = find_owner(reference, identified)
                if owner is None:
                    continue
                self.contacts[owner.contact.key] = owner.contact
                self.labeled.setdefault(owner.contact.key, []).append(reference)
                self.identified_ids.add(reference.id)

    def build_index(self) -> KnownHashTable:
        dims = {int(np.asarray(r.embedding).size) for refs in self.labeled.values() for r in refs}
        if len(dims) > 1:
            raise ValueError(f"Labeled references have mixed embedding sizes: {sorted(dims)}")
        dim = dims.pop() if dims else (self.config.embedding_dim or 128)
        table: KnownHashTable = KnownHashTable(SortableEmbeddingIndex(dim, self.config.index))
        for contact_key, references in self.labeled.items():
            kept = prune_similar_references(references, self.config.similar_reference_threshold)
            LOGGER.debug(
                "Contact %s: %d labeled references, %d kept",
                self.contacts[contact_key].name,
                len(references),
                len(kept),
            )
            for reference in kept:
                table.add(reference.embedding, (self.contacts[contact_key], np.asarray(reference.embedding)))
        self.table = table
        return table

    async def suggest_candidates(self, album: Album) -> int:
        if self.table is None:
            raise RuntimeError("build_index must run first")
        written = 0
        for entry in await self.library.list_entries(album):
            references = await self.library.read_references(entry)
            if not references:
                continue
            for reference in references:
                if reference.id in self.identified_ids or not self._usable(reference):
                    continue
                if np.asarray(reference.embedding).size != self.table.index.dim:
                    continue
                hit = self.table.lookup(reference.embedding)
                if hit is None:
                    continue
                contact, known_embedding = hit[1]
                if euclidean_distance(reference.embedding, known_embedding) >= self.config.facematcher_threshold:
                    continue
                try:
                    rect = rect_of_reference(reference)
                except ValueError as exc:
                    LOGGER.warning("Cannot annotate %s: %s", reference.id, exc)
                    continue
                if await self.library.record_candidate_face(
                    entry, rect, contact, reference.id, self.config.facematcher_tag
                ):
                    written += 1
        return written

    async def run(self) -> MatcherOutcome:
        outcome = MatcherOutcome(ok=False)
        pool = WorkerPool(self.config.album_workers)

        async def _guard(album: Album, step) -> int:
            try:
                return await step(album) or 0
            except ALBUM_IO_ERRORS as exc:
                LOGGER.warning("Skipping album %s: %s", album.display_name, exc)
                if album.key not in outcome.skipped_albums:
                    outcome.skipped_albums.append(album.key)
                return 0
            finally:
                self.progress.advance()

        try:
            albums = await self.library.list_albums()
            self.progress.reset(len(albums))
            await pool.map(lambda album: _guard(album, self.collect_labeled), albums)
            table = self.build_index()
            outcome.identified_references = len(self.identified_ids)
            outcome.kept_references = len(table)
            if not len(table):
                LOGGER.info("No labeled faces found; nothing to match against")
                outcome.ok = True
                return outcome
            self.progress.reset(len(albums))
            counts = await pool.map(lambda album: _guard(album, self.suggest_candidates), albums)
            outcome.candidates = sum(counts)
            outcome.ok = True
        except ALBUM_IO_ERRORS + (ValueError,) as exc:
            LOGGER.error("Face matcher strategy failed: %s", exc)
            outcome.error = str(exc)
        LOGGER.info(
            "Face matcher: %d labeled refs (%d indexed), %d candidates written",
            outcome.identified_references,
            outcome.kept_references,
            outcome.candidates,
        )
        return outcome


def run_facematcher_strategy(
    library: Library,
    config: Optional[ClusterConfig] = None,
    progress: Optional[ProgressCallback] = None,
) -> MatcherOutcome:
    return asyncio.run(FaceMatcherStrategy(library, config, progress).run())
