"""Attach contacts to clusters and publish candidate-face annotations."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Optional, Set

from facecluster.concurrency import WorkerPool
from facecluster.recognition.proximity import find_owner
from facecluster.storage.library import Library
from facecluster.storage.store import ClusterStore
from facecluster.types import Cluster, Contact, LibraryError, decode_reference_id, rect_of_reference

LOGGER = logging.getLogger("facecluster.clustering.propagation")

_CONTACT_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "facecluster/synthesized-contact")


def synthesized_contact(cluster_id: str) -> Contact:
    """Placeholder contact; the key is stable for a given cluster id."""
    return Contact(
        key=str(uuid.uuid5(_CONTACT_NAMESPACE, cluster_id)),
        name=f"Cluster {cluster_id}",
        synthesized=True,
    )


@dataclass
class PropagationStats:
    labeled: int = 0
    synthesized: int = 0
    annotations: int = 0
    missing_references: int = 0
    failed_clusters: int = 0


class IdentityPropagator:
    def __init__(
        self,
        store: ClusterStore,
        library: Library,
        strategy: str = "cluster",
        pool: Optional[WorkerPool] = None,
    ) -> None:
        self.store = store
        self.library = library
        self.strategy = strategy
        self.pool = pool or WorkerPool(4)
        self.stats = PropagationStats()
        self.annotated: Set[str] = set()

    async def run(self) -> PropagationStats:
        self.stats = PropagationStats()
        self.annotated = set()
        await self.attach_labels()
        await self.annotate_remaining()
        LOGGER.info(
            "Propagation done: labeled=%d synthesized=%d annotations=%d",
            self.stats.labeled,
            self.stats.synthesized,
            self.stats.annotations,
        )
        return self.stats

    async def attach_labels(self) -> None:
        for cluster in self.store.clusters():
            try:
                await self._attach_label(cluster)
            except (OSError, LibraryError) as exc:
                self.stats.failed_clusters += 1
                LOGGER.warning("Could not label cluster %s this pass: %s", cluster.id, exc)

    async def _attach_label(self, cluster: Cluster) -> None:
        entry, _ = decode_reference_id(cluster.root.id)
        identified = await self.library.list_identified_contacts(entry)
        owner = find_owner(cluster.root, identified)
        if owner is None:
            return
        if cluster.contact != owner.contact:
            LOGGER.info("Cluster %s identified as %s", cluster.id, owner.contact.name)
            cluster.contact = owner.contact
            await self.store.persist_cluster(cluster)
            self.stats.labeled += 1
        await self.annotate_members(cluster, owner.contact)
        self.annotated.add(cluster.id)

    async def annotate_remaining(self) -> None:
        """Annotate clusters step 1 did not reach, synthesizing a contact where none is set.

        This covers contacts assigned by hand whose root no longer sits under a label.
        """
        for cluster in self.store.clusters():
            if cluster.id in self.annotated:
                continue
            try:
                if cluster.contact is None:
                    cluster.contact = synthesized_contact(cluster.id)
                    await self.store.persist_cluster(cluster)
                    self.stats.synthesized += 1
                await self.annotate_members(cluster, cluster.contact)
            except (OSError, LibraryError) as exc:
                self.stats.failed_clusters += 1
                LOGGER.warning("Could not annotate cluster %s this pass: %s", cluster.id, exc)

    async def annotate_members(self, cluster: Cluster, contact: Contact) -> int:
        """Write a candidate annotation for every recorded member of the cluster."""
        members = await self.store.members_of(cluster)

        async def _annotate(reference_id: str) -> bool:
            reference = await self.library.read_reference(reference_id)
            if reference is None:
                self.stats.missing_references += 1
                LOGGER.warning("Member %s of cluster %s no longer exists", reference_id, cluster.id)
                return False
            try:
                rect = rect_of_reference(reference)
            except ValueError as exc:
                LOGGER.warning("Cannot annotate %s: %s", reference_id, exc)
                return False
            entry, _ = decode_reference_id(reference_id)
            return await self.library.record_candidate_face(entry, rect, contact, reference_id, self.strategy)

        results = await self.pool.map(_annotate, [m.reference_id for m in members])
        written = sum(1 for changed in results if changed)
        self.stats.annotations += written
        return written


async def assign_cluster_to_contact(
    store: ClusterStore,
    library: Library,
    cluster_id: str,
    contact: Contact,
    strategy: str = "cluster",
) -> bool:
    """Name a cluster from outside (e.g. a user confirming it) and re-annotate its members."""
    cluster = store.get(cluster_id)
    if cluster is None:
        LOGGER.warning("Cannot assign contact to unknown cluster %s", cluster_id)
        return False
    cluster.contact = contact
    await store.persist_cluster(cluster)
    await IdentityPropagator(store, library, strategy).annotate_members(cluster, contact)
    return True
