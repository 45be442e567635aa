"""Incremental two-pass clustering of face references.

Pass 1 discovers roots: every useful reference is compared with the existing
roots, close ones are only tallied, far ones of root quality become new
clusters. After every album the long tail of single-member clusters is pruned
back to ``max_clusters``. Pass 2 repeats the nearest-root search and persists
each match as a membership. Pass 2 must only start once Pass 1 has drained.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

import numpy as np

from facecluster.config import ClusterConfig
from facecluster.recognition.quality import Purpose, is_useful_reference
from facecluster.storage.library import Library
from facecluster.storage.store import ClusterStore
from facecluster.types import Album, Cluster, Reference, cluster_id_for

LOGGER = logging.getLogger("facecluster.clustering.engine")


@dataclass
class AlbumStats:
    album: str
    references: int = 0
    skipped_quality: int = 0
    skipped_defect: int = 0
    skipped_known: int = 0
    matched: int = 0
    created: int = 0
    unmatched: int = 0
    pruned: int = 0

    def merge(self, other: "AlbumStats") -> None:
        for name in ("references", "skipped_quality", "skipped_defect", "skipped_known",
                     "matched", "created", "unmatched", "pruned"):
            setattr(self, name, getattr(self, name) + getattr(other, name))


@dataclass
class _RootMatrix:
    cluster_ids: List[str] = field(default_factory=list)
    vectors: Optional[np.ndarray] = None


class ClusterEngine:
    """Sole writer of clusters and memberships."""

    def __init__(self, store: ClusterStore, library: Library, config: ClusterConfig) -> None:
        self.store = store
        self.library = library
        self.config = config
        self.embedding_dim = config.embedding_dim
        self._tallies: Dict[str, int] = defaultdict(int)
        self._pending: Set[str] = set()
        self._roots = _RootMatrix()
        self._roots_version = -1
        self._version = 0

    # -- root search -----------------------------------------------------

    def _invalidate(self) -> None:
        self._version += 1

    def _root_matrix(self) -> _RootMatrix:
        if self._roots_version != self._version:
            clusters = self.store.clusters()
            ids = [c.id for c in clusters]
            vectors = (
                np.stack([np.asarray(c.root.embedding, dtype=np.float64) for c in clusters])
                if clusters
                else None
            )
            self._roots = _RootMatrix(ids, vectors)
            self._roots_version = self._version
        return self._roots

    def nearest_cluster(self, embedding: np.ndarray) -> Optional[Tuple[Cluster, float]]:
        """Closest root strictly within ``merge_threshold``; ties keep creation order."""
        roots = self._root_matrix()
        if roots.vectors is None:
            return None
        query = np.asarray(embedding, dtype=np.float64)
        distances = np.linalg.norm(roots.vectors - query, axis=1)
        best = int(np.argmin(distances))
        distance = float(distances[best])
        if distance >= self.config.merge_threshold:
            return None
        cluster = self.store.get(roots.cluster_ids[best])
        if cluster is None:
            return None
        return cluster, distance

    def _accepts_embedding(self, reference: Reference) -> bool:
        if not reference.has_valid_embedding(self.embedding_dim):
            return False
        if self.embedding_dim is None:
            self.embedding_dim = int(np.asarray(reference.embedding).size)
            LOGGER.info("Embedding dimension inferred as %d", self.embedding_dim)
        return True

    async def _screen(self, reference: Reference, stats: AlbumStats) -> bool:
        """Common gate of both passes: embedding sanity, member quality, not already clustered."""
        stats.references += 1
        if not self._accepts_embedding(reference):
            stats.skipped_defect += 1
            LOGGER.warning("Skipping reference %s: missing or malformed embedding", reference.id)
            return False
        if not is_useful_reference(reference, Purpose.MEMBER, self.config.member_quality):
            stats.skipped_quality += 1
            return False
        if await self.store.cluster_of(reference.id) is not None:
            stats.skipped_known += 1
            return False
        return True

    # -- pass 1 ----------------------------------------------------------

    def begin_discovery(self) -> None:
        self._tallies.clear()
        self._invalidate()

    async def discover_roots(self, album: Album) -> AlbumStats:
        stats = AlbumStats(album=album.key)
        for entry in await self.library.list_entries(album):
            references = await self.library.read_references(entry)
            if references is None:
                continue
            for reference in references:
                if not await self._screen(reference, stats):
                    continue
                found = self.nearest_cluster(reference.embedding)
                if found is not None:
                    self._tallies[found[0].id] += 1
                    stats.matched += 1
                    continue
                if not is_useful_reference(reference, Purpose.ROOT, self.config.root_quality):
                    stats.unmatched += 1
                    continue
                await self._create_cluster(reference)
                stats.created += 1
        stats.pruned = await self.prune()
        LOGGER.info(
            "Root discovery %s: refs=%d created=%d matched=%d pruned=%d clusters=%d",
            album.display_name,
            stats.references,
            stats.created,
            stats.matched,
            stats.pruned,
            len(self.store),
        )
        return stats

    async def _create_cluster(self, reference: Reference) -> Cluster:
        cluster = self.store.create(cluster_id_for(reference), reference)
        self._invalidate()
        self._pending.add(cluster.id)
        try:
            await self.store.add_member(cluster, reference, is_root=True)
            await self.store.persist_cluster(cluster)
        finally:
            self._pending.discard(cluster.id)
        LOGGER.debug("Created cluster %s rooted at %s", cluster.id, reference.id)
        return cluster

    def effective_count(self, cluster: Cluster) -> int:
        return max(cluster.member_count, 1) + self._tallies.get(cluster.id, 0)

    async def prune(self) -> int:
        """Delete the smallest single-member clusters while above ``max_clusters``.

        A cluster that already has a second member is never pruned, so the
        ceiling can stay exceeded when many multi-member clusters exist.
        """
        if len(self.store) <= self.config.max_clusters:
            return 0
        candidates = sorted(
            (c for c in self.store.clusters() if c.id not in self._pending),
            key=lambda c: (self.effective_count(c), c.creation_index),
        )
        victims: List[Cluster] = []
        excess = len(self.store) - self.config.max_clusters
        for cluster in candidates:
            if len(victims) >= excess or self.effective_count(cluster) != 1:
                break
            victims.append(cluster)
        for cluster in victims:
            self.store.discard(cluster.id)
            self._tallies.pop(cluster.id, None)
        if victims:
            self._invalidate()
        for cluster in victims:
            LOGGER.debug("Pruning single-member cluster %s", cluster.id)
            await self.store.delete_cluster(cluster.id)
        return len(victims)

    # -- pass 2 ----------------------------------------------------------

    async def assign_members(self, album: Album) -> AlbumStats:
        stats = AlbumStats(album=album.key)
        for entry in await self.library.list_entries(album):
            references = await self.library.read_references(entry)
            if references is None:
                continue
            for reference in references:
                if not await self._screen(reference, stats):
                    continue
                found = self.nearest_cluster(reference.embedding)
                if found is None:
                    stats.unmatched += 1
                    continue
                cluster, distance = found
                if await self.store.add_member(cluster, reference, is_root=False):
                    stats.matched += 1
                    LOGGER.debug(
                        "Reference %s joins cluster %s (distance %.4f)", reference.id, cluster.id, distance
                    )
                else:
                    stats.skipped_known += 1
        LOGGER.info(
            "Assignment %s: refs=%d matched=%d unmatched=%d",
            album.display_name,
            stats.references,
            stats.matched,
            stats.unmatched,
        )
        return stats
