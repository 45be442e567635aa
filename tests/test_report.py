from __future__ import annotations

import json

import pandas as pd
import pytest

from facecluster.report import clusters_to_frame, contact_totals, write_report
from facecluster.storage.store import ClusterStore, MemoryClusterBackend
from facecluster.types import Contact


def _store(make_reference):
    store = ClusterStore(MemoryClusterBackend())
    small = store.create("small", make_reference([0.0], ref_id="a|1.jpg:0"))
    small.member_count = 1
    big = store.create("big", make_reference([1.0], ref_id="a|2.jpg:0"))
    big.member_count = 5
    big.contact = Contact("alice", "Alice")
    other = store.create("other", make_reference([2.0], ref_id="a|3.jpg:0"))
    other.member_count = 2
    other.contact = Contact("k", "Cluster other", synthesized=True)
    return store


def test_frame_is_sorted_largest_first(make_reference):
    df = clusters_to_frame(_store(make_reference))
    assert df["cluster_id"].tolist() == ["big", "other", "small"]
    assert df.loc[0, "contact_name"] == "Alice"
    assert bool(df.loc[1, "synthesized"])


def test_empty_store_gives_empty_frame():
    df = clusters_to_frame(ClusterStore(MemoryClusterBackend()))
    assert df.empty
    assert contact_totals(df).empty


def test_write_report_outputs(tmp_path, make_reference):
    pytest.importorskip("pyarrow")
    paths = write_report(_store(make_reference), tmp_path / "report", summary={"ok": True})

    csv = pd.read_csv(paths["clusters_csv"])
    parquet = pd.read_parquet(paths["clusters_parquet"])
    summary = json.loads(paths["summary"].read_text(encoding="utf-8"))
    totals = pd.read_csv(paths["contacts_csv"])

    assert len(csv) == len(parquet) == 3
    assert summary == {"ok": True, "clusters": 3, "faces": 8, "named_clusters": 1}
    assert totals.loc[0, "contact_name"] == "Alice"
    assert totals.loc[0, "faces"] == 5
