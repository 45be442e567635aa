"""On-disk cluster backend.

Layout under the strategy folder::

    clusters/<cluster id>.json     one record per cluster
    members/<cluster id>.jsonl     append-only membership log
    reverse-index.jsonl            append-only put/delete log, compacted on flush
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Dict, List, Optional

from facecluster.io_utils import append_jsonl, dump_json, ensure_dir, iter_jsonl, load_json
from facecluster.storage.store import ClusterBackend, Membership, ReverseIndex, StoredCluster
from facecluster.types import LibraryError, contact_from_dict, contact_to_dict

LOGGER = logging.getLogger("facecluster.storage.files")


class JsonlReverseIndex(ReverseIndex):
    """Reverse index replayed from an append-only log into memory."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._data: Dict[str, str] = {}
        self._loaded = False

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        for record in iter_jsonl(self.path):
            reference_id = record.get("reference_id")
            if not reference_id:
                continue
            if record.get("op") == "delete":
                self._data.pop(reference_id, None)
            else:
                self._data[reference_id] = record["cluster_id"]
        self._loaded = True
        LOGGER.debug("Replayed reverse index %s (%d entries)", self.path, len(self._data))

    async def get(self, reference_id: str) -> Optional[str]:
        self._ensure_loaded()
        return self._data.get(reference_id)

    async def put(self, reference_id: str, cluster_id: str) -> None:
        self._ensure_loaded()
        await asyncio.to_thread(
            append_jsonl, self.path, {"op": "put", "reference_id": reference_id, "cluster_id": cluster_id}
        )
        self._data[reference_id] = cluster_id

    async def delete(self, reference_id: str) -> None:
        self._ensure_loaded()
        if reference_id not in self._data:
            return
        await asyncio.to_thread(append_jsonl, self.path, {"op": "delete", "reference_id": reference_id})
        del self._data[reference_id]

    def compact(self) -> None:
        self._ensure_loaded()
        ensure_dir(self.path.parent)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as fh:
            for reference_id, cluster_id in sorted(self._data.items()):
                record = {"op": "put", "reference_id": reference_id, "cluster_id": cluster_id}
                fh.write(json.dumps(record, ensure_ascii=False) + "\n")
        os.replace(tmp_path, self.path)


class FileClusterBackend(ClusterBackend):
    def __init__(self, root: Path) -> None:
        self.root = root
        self.clusters_dir = root / "clusters"
        self.members_dir = root / "members"
        self.reverse_index = JsonlReverseIndex(root / "reverse-index.jsonl")

    def _cluster_path(self, cluster_id: str) -> Path:
        return self.clusters_dir / f"{cluster_id}.json"

    def _members_path(self, cluster_id: str) -> Path:
        return self.members_dir / f"{cluster_id}.jsonl"

    def _read_clusters(self) -> List[StoredCluster]:
        if not self.clusters_dir.exists():
            return []
        clusters: List[StoredCluster] = []
        for path in sorted(self.clusters_dir.glob("*.json")):
            raw = load_json(path)
            try:
                clusters.append(
                    StoredCluster(
                        id=raw["id"],
                        root_reference_id=raw["root_reference_id"],
                        member_count=int(raw.get("member_count", 1)),
                        creation_index=int(raw.get("creation_index", 0)),
                        contact=contact_from_dict(raw.get("contact")),
                    )
                )
            except (AttributeError, KeyError, TypeError, ValueError) as exc:
                raise LibraryError(f"Corrupt cluster record {path}: {exc!r}") from exc
        clusters.sort(key=lambda c: c.creation_index)
        return clusters

    async def list_clusters(self) -> List[StoredCluster]:
        return await asyncio.to_thread(self._read_clusters)

    async def save_cluster(self, cluster: StoredCluster) -> None:
        payload = {
            "id": cluster.id,
            "root_reference_id": cluster.root_reference_id,
            "member_count": cluster.member_count,
            "creation_index": cluster.creation_index,
            "contact": contact_to_dict(cluster.contact),
        }
        await asyncio.to_thread(dump_json, self._cluster_path(cluster.id), payload)

    def _remove_files(self, cluster_id: str) -> None:
        for path in (self._cluster_path(cluster_id), self._members_path(cluster_id)):
            if path.exists():
                path.unlink()

    async def delete_cluster(self, cluster_id: str) -> None:
        await asyncio.to_thread(self._remove_files, cluster_id)

    async def append_member(self, cluster_id: str, membership: Membership) -> None:
        await asyncio.to_thread(
            append_jsonl,
            self._members_path(cluster_id),
            {"reference_id": membership.reference_id, "root": membership.is_root},
        )

    async def list_members(self, cluster_id: str) -> List[Membership]:
        records = await asyncio.to_thread(lambda: list(iter_jsonl(self._members_path(cluster_id))))
        return [Membership(r["reference_id"], bool(r.get("root", False))) for r in records]

    async def flush(self) -> None:
        await asyncio.to_thread(self.reverse_index.compact)
        LOGGER.info("Flushed cluster backend at %s", self.root)
