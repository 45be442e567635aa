from __future__ import annotations

import asyncio
import json

import pytest

from facecluster.storage.files import FileClusterBackend, JsonlReverseIndex
from facecluster.storage.store import Membership, StoredCluster
from facecluster.types import Contact, LibraryError


def test_cluster_records_survive_a_new_backend(tmp_path):
    backend = FileClusterBackend(tmp_path)
    alice = Contact(key="alice", name="Alice")
    asyncio.run(backend.save_cluster(StoredCluster("c2", "a|2.jpg:0", 3, 1, alice)))
    asyncio.run(backend.save_cluster(StoredCluster("c1", "a|1.jpg:0", 1, 0)))

    clusters = asyncio.run(FileClusterBackend(tmp_path).list_clusters())

    assert [c.id for c in clusters] == ["c1", "c2"]
    assert clusters[1].contact == alice
    assert clusters[1].member_count == 3
    assert clusters[0].contact is None


def test_members_are_appended_and_deleted_with_cluster(tmp_path):
    backend = FileClusterBackend(tmp_path)
    asyncio.run(backend.save_cluster(StoredCluster("c1", "a|1.jpg:0", 2, 0)))
    asyncio.run(backend.append_member("c1", Membership("a|1.jpg:0", True)))
    asyncio.run(backend.append_member("c1", Membership("a|2.jpg:0", False)))

    assert asyncio.run(backend.list_members("c1")) == [
        Membership("a|1.jpg:0", True),
        Membership("a|2.jpg:0", False),
    ]

    asyncio.run(backend.delete_cluster("c1"))
    assert asyncio.run(backend.list_members("c1")) == []
    assert asyncio.run(backend.list_clusters()) == []


def test_reverse_index_replays_puts_and_deletes(tmp_path):
    path = tmp_path / "reverse-index.jsonl"
    index = JsonlReverseIndex(path)
    asyncio.run(index.put("r1", "c1"))
    asyncio.run(index.put("r2", "c1"))
    asyncio.run(index.delete("r1"))
    asyncio.run(index.delete("never-there"))

    replayed = JsonlReverseIndex(path)
    assert asyncio.run(replayed.get("r1")) is None
    assert asyncio.run(replayed.get("r2")) == "c1"
    assert len(path.read_text(encoding="utf-8").splitlines()) == 3


def test_flush_compacts_the_reverse_index(tmp_path):
    backend = FileClusterBackend(tmp_path)
    for ref in ("r1", "r2", "r3"):
        asyncio.run(backend.reverse_index.put(ref, "c1"))
    asyncio.run(backend.reverse_index.delete("r2"))

    asyncio.run(backend.flush())

    lines = (tmp_path / "reverse-index.jsonl").read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["reference_id"] for line in lines] == ["r1", "r3"]


def test_torn_trailing_line_is_ignored(tmp_path):
    path = tmp_path / "reverse-index.jsonl"
    path.write_text('{"op": "put", "reference_id": "r1", "cluster_id": "c1"}\n{"op": "pu', encoding="utf-8")

    assert asyncio.run(JsonlReverseIndex(path).get("r1")) == "c1"


def test_corrupt_cluster_record_raises_library_error(tmp_path):
    backend = FileClusterBackend(tmp_path)
    asyncio.run(backend.save_cluster(StoredCluster("c1", "a|1.jpg:0", 1, 0)))
    (tmp_path / "clusters" / "c2.json").write_text(json.dumps({"id": "c2"}), encoding="utf-8")

    with pytest.raises(LibraryError, match="c2.json"):
        asyncio.run(backend.list_clusters())
