#!/usr/bin/env python3
"""CLI for extracting face references from every unprocessed photo of a library."""

from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path
from typing import Sequence

from tqdm import tqdm

from facecluster.config import ClusterConfig
from facecluster.io_utils import setup_logging
from facecluster.recognition.extractor import InsightFaceExtractor
from facecluster.references import populate_references
from facecluster.storage.library import FolderLibrary


LOGGER = logging.getLogger("scripts.extract_references")


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Detect and embed faces for photos without references.")
    parser.add_argument("library_root", type=Path, help="Root folder of the photo library.")
    parser.add_argument("--data-dir", type=Path, required=True, help="Folder receiving the references.")
    parser.add_argument("--model", type=str, default="buffalo_l", help="InsightFace model pack name.")
    parser.add_argument(
        "--providers",
        type=str,
        nargs="*",
        default=None,
        help="Optional ONNX providers (e.g. CoreMLExecutionProvider CPUExecutionProvider).",
    )
    parser.add_argument(
        "--det-size",
        type=int,
        nargs=2,
        default=(640, 640),
        metavar=("W", "H"),
        help="Detector input size.",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=ClusterConfig().extract_workers,
        help="Concurrent extractions (default 30).",
    )
    parser.add_argument("--no-progress", action="store_true", help="Disable the progress bar.")
    return parser.parse_args(argv)


def main() -> None:
    args = parse_args()
    setup_logging()

    extractor = InsightFaceExtractor(
        model_name=args.model,
        providers=args.providers,
        det_size=tuple(args.det_size),
    )
    library = FolderLibrary(args.library_root, args.data_dir)
    bar = tqdm(total=0, desc="extract", unit="photo", disable=args.no_progress)

    def _progress(done: int, total: int) -> None:
        if bar.total != total:
            bar.reset(total=total)
        bar.n = done
        bar.refresh()

    try:
        stats = asyncio.run(populate_references(library, extractor, workers=args.workers, progress=_progress))
    finally:
        bar.close()
    LOGGER.info("Stored references for %d photos (%d faces)", stats.processed, stats.faces)
    raise SystemExit(0 if stats.failed == 0 else 1)


if __name__ == "__main__":
    main()
