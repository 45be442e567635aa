"""Cluster arena and its persistence backends.

``ClusterStore`` owns the in-memory clusters (an arena keyed by cluster id, in
creation order) and forwards every durable write to a ``ClusterBackend``.
Backends only persist; they never decide anything about clustering.
"""

from __future__ import annotations

import abc
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterator, List, Optional

from facecluster.concurrency import KeyedLock
from facecluster.types import Cluster, ClusterInvariantError, Contact, Reference

LOGGER = logging.getLogger("facecluster.storage.store")

ReferenceLoader = Callable[[str], Awaitable[Optional[Reference]]]


@dataclass(frozen=True)
class Membership:
    reference_id: str
    is_root: bool


@dataclass
class StoredCluster:
    """Serialized form of a cluster: the root is kept as a reference id."""

    id: str
    root_reference_id: str
    member_count: int
    creation_index: int
    contact: Optional[Contact] = None

    @classmethod
    def from_cluster(cls, cluster: Cluster) -> "StoredCluster":
        return cls(
            id=cluster.id,
            root_reference_id=cluster.root.id,
            member_count=cluster.member_count,
            creation_index=cluster.creation_index,
            contact=cluster.contact,
        )


class ReverseIndex(abc.ABC):
    """Key-value map from reference id to the cluster holding it."""

    @abc.abstractmethod
    async def get(self, reference_id: str) -> Optional[str]:
        ...

    @abc.abstractmethod
    async def put(self, reference_id: str, cluster_id: str) -> None:
        ...

    @abc.abstractmethod
    async def delete(self, reference_id: str) -> None:
        ...


class ClusterBackend(abc.ABC):
    reverse_index: ReverseIndex

    @abc.abstractmethod
    async def list_clusters(self) -> List[StoredCluster]:
        ...

    @abc.abstractmethod
    async def save_cluster(self, cluster: StoredCluster) -> None:
        ...

    @abc.abstractmethod
    async def delete_cluster(self, cluster_id: str) -> None:
        ...

    @abc.abstractmethod
    async def append_member(self, cluster_id: str, membership: Membership) -> None:
        ...

    @abc.abstractmethod
    async def list_members(self, cluster_id: str) -> List[Membership]:
        ...

    async def flush(self) -> None:
        return None


class MemoryReverseIndex(ReverseIndex):
    def __init__(self) -> None:
        self.data: Dict[str, str] = {}

    async def get(self, reference_id: str) -> Optional[str]:
        return self.data.get(reference_id)

    async def put(self, reference_id: str, cluster_id: str) -> None:
        self.data[reference_id] = cluster_id

    async def delete(self, reference_id: str) -> None:
        self.data.pop(reference_id, None)


class MemoryClusterBackend(ClusterBackend):
    """Volatile backend for tests and dry runs."""

    def __init__(self) -> None:
        self.reverse_index = MemoryReverseIndex()
        self.clusters: Dict[str, StoredCluster] = {}
        self.members: Dict[str, List[Membership]] = {}
        self.flushes = 0

    async def list_clusters(self) -> List[StoredCluster]:
        return sorted(self.clusters.values(), key=lambda c: c.creation_index)

    async def save_cluster(self, cluster: StoredCluster) -> None:
        self.clusters[cluster.id] = cluster

    async def delete_cluster(self, cluster_id: str) -> None:
        self.clusters.pop(cluster_id, None)
        self.members.pop(cluster_id, None)

    async def append_member(self, cluster_id: str, membership: Membership) -> None:
        self.members.setdefault(cluster_id, []).append(membership)

    async def list_members(self, cluster_id: str) -> List[Membership]:
        return list(self.members.get(cluster_id, []))

    async def flush(self) -> None:
        self.flushes += 1


class ClusterStore:
    """Arena of clusters plus serialized access to their persistent records."""

    def __init__(self, backend: ClusterBackend) -> None:
        self.backend = backend
        self._clusters: "OrderedDict[str, Cluster]" = OrderedDict()
        self._next_creation_index = 0
        self._locks = KeyedLock()

    def __len__(self) -> int:
        return len(self._clusters)

    def __iter__(self) -> Iterator[Cluster]:
        return iter(list(self._clusters.values()))

    def __contains__(self, cluster_id: str) -> bool:
        return cluster_id in self._clusters

    def get(self, cluster_id: str) -> Optional[Cluster]:
        return self._clusters.get(cluster_id)

    def clusters(self) -> List[Cluster]:
        return list(self._clusters.values())

    async def load(self, load_reference: ReferenceLoader) -> int:
        """Rebuild the arena from the backend; clusters whose root vanished are dropped."""
        self._clusters.clear()
        self._next_creation_index = 0
        for stored in await self.backend.list_clusters():
            root = await load_reference(stored.root_reference_id)
            if root is None:
                LOGGER.warning(
                    "Cluster %s root %s no longer exists; skipping",
                    stored.id,
                    stored.root_reference_id,
                )
                continue
            # The member log is authoritative; the record's count is only rewritten on flush.
            member_count = len(await self.backend.list_members(stored.id))
            if member_count != stored.member_count:
                LOGGER.warning(
                    "Cluster %s records %d members but %d are persisted; using %d",
                    stored.id,
                    stored.member_count,
                    member_count,
                    member_count,
                )
            cluster = Cluster(
                id=stored.id,
                root=root,
                member_count=member_count,
                contact=stored.contact,
                creation_index=stored.creation_index,
            )
            self._clusters[cluster.id] = cluster
            self._next_creation_index = max(self._next_creation_index, cluster.creation_index + 1)
        LOGGER.info("Loaded %d clusters", len(self._clusters))
        return len(self._clusters)

    def create(self, cluster_id: str, root: Reference) -> Cluster:
        """Add a cluster to the arena. Persistence follows with ``persist_cluster``."""
        existing = self._clusters.get(cluster_id)
        if existing is not None:
            if existing.root.id != root.id:
                raise ClusterInvariantError(
                    f"Cluster id {cluster_id} already rooted at {existing.root.id}, not {root.id}"
                )
            return existing
        cluster = Cluster(
            id=cluster_id,
            root=root,
            member_count=0,
            creation_index=self._next_creation_index,
        )
        self._next_creation_index += 1
        self._clusters[cluster_id] = cluster
        return cluster

    def discard(self, cluster_id: str) -> Optional[Cluster]:
        return self._clusters.pop(cluster_id, None)

    async def persist_cluster(self, cluster: Cluster) -> None:
        async with self._locks.hold(f"cluster:{cluster.id}"):
            await self.backend.save_cluster(StoredCluster.from_cluster(cluster))

    async def delete_cluster(self, cluster_id: str) -> None:
        """Delete a cluster record, its member list and its reverse index entries."""
        async with self._locks.hold(f"cluster:{cluster_id}"):
            members = await self.backend.list_members(cluster_id)
            for membership in members:
                await self.backend.reverse_index.delete(membership.reference_id)
            await self.backend.delete_cluster(cluster_id)
        LOGGER.debug("Deleted cluster %s (%d memberships)", cluster_id, len(members))

    async def cluster_of(self, reference_id: str) -> Optional[str]:
        return await self.backend.reverse_index.get(reference_id)

    async def add_member(self, cluster: Cluster, reference: Reference, is_root: bool) -> bool:
        """Persist a membership and bump the member count.

        Returns False when the reference is already recorded in this cluster.
        Raises ``ClusterInvariantError`` when it is recorded in another one.
        """
        async with self._locks.hold(f"reference:{reference.id}"):
            current = await self.backend.reverse_index.get(reference.id)
            if current == cluster.id:
                return False
            if current is not None:
                raise ClusterInvariantError(
                    f"Reference {reference.id} already belongs to cluster {current}, "
                    f"refusing to add it to {cluster.id}"
                )
            await self.backend.reverse_index.put(reference.id, cluster.id)
        async with self._locks.hold(f"members:{cluster.id}"):
            await self.backend.append_member(cluster.id, Membership(reference.id, is_root))
        cluster.member_count += 1
        return True

    async def members_of(self, cluster: Cluster) -> List[Membership]:
        return await self.backend.list_members(cluster.id)

    async def flush(self) -> None:
        for cluster in self.clusters():
            await self.persist_cluster(cluster)
        await self.backend.flush()
