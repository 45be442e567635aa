from __future__ import annotations

import asyncio
import json

import numpy as np
import pytest

from facecluster.storage.library import FolderLibrary
from facecluster.types import Album, AlbumEntry
from scripts.run_clustering import parse_args, resolve_config, run


def test_cli_overrides_yaml_values(tmp_path):
    config_path = tmp_path / "c.yaml"
    config_path.write_text("merge_threshold: 0.3\nmax_clusters: 50\n", encoding="utf-8")
    args = parse_args(
        ["lib", "--data-dir", str(tmp_path), "--config", str(config_path), "--max-clusters", "7"]
    )

    config = resolve_config(args)

    assert args.strategy == "cluster"
    assert config.merge_threshold == 0.3
    assert config.max_clusters == 7


def test_strategy_choice_is_validated(tmp_path):
    with pytest.raises(SystemExit):
        parse_args(["lib", "--data-dir", str(tmp_path), "--strategy", "kmeans"])


def test_run_end_to_end_writes_state_and_report(tmp_path, make_reference):
    pytest.importorskip("pyarrow")
    root = tmp_path / "photos"
    (root / "trip").mkdir(parents=True)
    for name in ("1.jpg", "2.jpg"):
        (root / "trip" / name).write_bytes(b"")
    data_dir = tmp_path / "data"
    library = FolderLibrary(root, data_dir)
    for name in ("1.jpg", "2.jpg"):
        entry = AlbumEntry(Album("trip", "trip"), name)
        asyncio.run(library.write_references(entry, [make_reference(np.array([0.3, 0.4, 0.5]))]))

    args = parse_args(
        [
            str(root),
            "--data-dir",
            str(data_dir),
            "--report-dir",
            str(tmp_path / "report"),
            "--no-progress",
        ]
    )
    assert run(args) == 0

    cluster_files = list((data_dir / "strategies" / "cluster" / "clusters").glob("*.json"))
    assert len(cluster_files) == 1
    assert json.loads(cluster_files[0].read_text(encoding="utf-8"))["member_count"] == 2
    summary = json.loads((tmp_path / "report" / "summary.json").read_text(encoding="utf-8"))
    assert summary["clusters"] == 1
    metadata = json.loads((root / "trip" / ".faces.json").read_text(encoding="utf-8"))
    assert len(metadata["candidates"]["cluster"]["1.jpg"]) == 1
