#!/usr/bin/env python3
"""CLI for running a clustering strategy over a photo library."""

from __future__ import annotations

import argparse
import logging
from dataclasses import replace
from pathlib import Path
from typing import Optional, Sequence

from tqdm import tqdm

from facecluster.config import ClusterConfig, load_config
from facecluster.io_utils import dump_json, setup_logging
from facecluster.pipeline.cluster_strategy import run_cluster_strategy
from facecluster.pipeline.facematcher import run_facematcher_strategy
from facecluster.report import write_report
from facecluster.storage.files import FileClusterBackend
from facecluster.storage.library import FolderLibrary
from facecluster.storage.store import ClusterStore


LOGGER = logging.getLogger("scripts.run_clustering")
DEFAULT_CONFIG = Path("configs/clustering.yaml")


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Group faces of a photo library into identity clusters.")
    parser.add_argument("library_root", type=Path, help="Root folder of the photo library.")
    parser.add_argument(
        "--data-dir",
        type=Path,
        required=True,
        help="Folder holding extracted references and cluster state.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="YAML clustering config (defaults to configs/clustering.yaml when present).",
    )
    parser.add_argument(
        "--strategy",
        choices=("cluster", "facematcher"),
        default="cluster",
        help="cluster: unsupervised clustering; facematcher: suggest matches for labeled faces.",
    )
    parser.add_argument("--merge-threshold", type=float, default=None, help="Override merge_threshold.")
    parser.add_argument("--max-clusters", type=int, default=None, help="Override max_clusters.")
    parser.add_argument("--workers", type=int, default=None, help="Override album_workers.")
    parser.add_argument(
        "--report-dir",
        type=Path,
        default=None,
        help="Optional folder for clusters.csv/parquet and summary.json (cluster strategy only).",
    )
    parser.add_argument("--no-progress", action="store_true", help="Disable the progress bar.")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging.")
    return parser.parse_args(argv)


def resolve_config(args: argparse.Namespace) -> ClusterConfig:
    """YAML values first, then any CLI override that was given."""
    config_path: Optional[Path] = args.config
    if config_path is None and DEFAULT_CONFIG.exists():
        config_path = DEFAULT_CONFIG
    config = load_config(config_path)
    overrides = {}
    if args.merge_threshold is not None:
        overrides["merge_threshold"] = args.merge_threshold
    if args.max_clusters is not None:
        overrides["max_clusters"] = args.max_clusters
    if args.workers is not None:
        overrides["album_workers"] = args.workers
    return replace(config, **overrides) if overrides else config


class _ProgressBar:
    """Adapts a tqdm bar to the (done, total) progress callback."""

    def __init__(self, desc: str, disable: bool) -> None:
        self.bar = tqdm(total=0, desc=desc, unit="album", disable=disable)

    def __call__(self, done: int, total: int) -> None:
        if self.bar.total != total:
            self.bar.reset(total=total)
        self.bar.n = done
        self.bar.refresh()

    def close(self) -> None:
        self.bar.close()


def run(args: argparse.Namespace) -> int:
    config = resolve_config(args)
    library = FolderLibrary(args.library_root, args.data_dir)
    progress = _ProgressBar(args.strategy, disable=args.no_progress)
    try:
        if args.strategy == "facematcher":
            outcome = run_facematcher_strategy(library, config, progress)
            LOGGER.info(
                "Face matcher finished ok=%s candidates=%d skipped_albums=%d",
                outcome.ok,
                outcome.candidates,
                len(outcome.skipped_albums),
            )
            return 0 if outcome.ok else 1

        backend = FileClusterBackend(args.data_dir / "strategies" / config.strategy_tag)
        store = ClusterStore(backend)
        outcome = run_cluster_strategy(library, store, config, progress)
    finally:
        progress.close()

    print(outcome.summary())
    if args.report_dir is not None:
        write_report(store, args.report_dir, summary={"ok": outcome.ok, "error": outcome.error})
        dump_json(
            args.report_dir / "outcome.json",
            {
                "ok": outcome.ok,
                "strategy": outcome.strategy,
                "discovery": outcome.discovery,
                "assignment": outcome.assignment,
                "propagation": outcome.propagation,
                "skipped_albums": outcome.skipped_albums,
                "error": outcome.error,
            },
        )
    return 0 if outcome.ok else 1


def main() -> None:
    args = parse_args()
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)
    raise SystemExit(run(args))


if __name__ == "__main__":
    main()
