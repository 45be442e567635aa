"""Tabular export of a clustering pass."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

from facecluster.io_utils import dump_json, ensure_dir
from facecluster.storage.store import ClusterStore

LOGGER = logging.getLogger("facecluster.report")

CLUSTER_COLUMNS = [
    "cluster_id",
    "creation_index",
    "member_count",
    "root_reference_id",
    "contact_key",
    "contact_name",
    "synthesized",
]


def clusters_to_frame(store: ClusterStore) -> pd.DataFrame:
    """One row per cluster, largest first."""
    rows: List[Dict[str, Any]] = []
    for cluster in store.clusters():
        contact = cluster.contact
        rows.append(
            {
                "cluster_id": cluster.id,
                "creation_index": cluster.creation_index,
                "member_count": cluster.member_count,
                "root_reference_id": cluster.root.id,
                "contact_key": contact.key if contact else None,
                "contact_name": contact.name if contact else None,
                "synthesized": bool(contact.synthesized) if contact else False,
            }
        )
    if not rows:
        return pd.DataFrame(columns=CLUSTER_COLUMNS)
    df = pd.DataFrame(rows, columns=CLUSTER_COLUMNS)
    return df.sort_values(["member_count", "creation_index"], ascending=[False, True]).reset_index(drop=True)


def contact_totals(df: pd.DataFrame) -> pd.DataFrame:
    """Faces per contact across all of its clusters."""
    if df.empty:
        return pd.DataFrame(columns=["contact_name", "clusters", "faces"])
    named = df.dropna(subset=["contact_name"])
    totals = (
        named.groupby("contact_name")
        .agg(clusters=("cluster_id", "count"), faces=("member_count", "sum"))
        .reset_index()
        .sort_values("faces", ascending=False)
    )
    return totals.reset_index(drop=True)


def write_report(
    store: ClusterStore,
    output_dir: Path,
    summary: Optional[Dict[str, Any]] = None,
) -> Dict[str, Path]:
    """Write clusters.csv, clusters.parquet, contacts.csv and summary.json."""
    ensure_dir(output_dir)
    df = clusters_to_frame(store)
    paths = {
        "clusters_csv": output_dir / "clusters.csv",
        "clusters_parquet": output_dir / "clusters.parquet",
        "contacts_csv": output_dir / "contacts.csv",
        "summary": output_dir / "summary.json",
    }
    df.to_csv(paths["clusters_csv"], index=False)
    df.to_parquet(paths["clusters_parquet"], index=False)
    contact_totals(df).to_csv(paths["contacts_csv"], index=False)
    payload: Dict[str, Any] = dict(summary or {})
    payload.update(
        {
            "clusters": int(len(df)),
            "faces": int(df["member_count"].sum()) if not df.empty else 0,
            "named_clusters": int((~df["synthesized"].astype(bool) & df["contact_key"].notna()).sum())
            if not df.empty
            else 0,
        }
    )
    dump_json(paths["summary"], payload)
    LOGGER.info("Wrote clustering report (%d clusters) to %s", len(df), output_dir)
    return paths
