"""Tuning parameters for the clustering strategies.

Values come from dataclass defaults, optionally overridden by a YAML file
(see ``configs/clustering.yaml``) and then by CLI flags.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

from facecluster.io_utils import load_yaml

LOGGER = logging.getLogger("facecluster.config")


@dataclass(frozen=True)
class QualityThresholds:
    min_score: float
    min_size_px: float
    max_angle_deg: float
    min_sharpness: Optional[float] = 2.0


ROOT_QUALITY = QualityThresholds(min_score=0.9, min_size_px=200, max_angle_deg=60)
MEMBER_QUALITY = QualityThresholds(min_score=0.7, min_size_px=50, max_angle_deg=80)


@dataclass(frozen=True)
class IndexConfig:
    bits: int = 8
    low: float = -1.0
    high: float = 1.0
    # Keys may differ in this many low-order bit planes and still be looked up.
    tolerance_planes: int = 2


@dataclass
class ClusterConfig:
    merge_threshold: float = 0.5
    max_clusters: int = 500
    embedding_dim: Optional[int] = None
    root_quality: QualityThresholds = ROOT_QUALITY
    member_quality: QualityThresholds = MEMBER_QUALITY
    album_workers: int = 4
    extract_workers: int = 30
    strategy_tag: str = "cluster"
    # Face-matcher strategy
    facematcher_tag: str = "facematcher"
    facematcher_threshold: float = 0.5
    similar_reference_threshold: float = 0.6
    index: IndexConfig = field(default_factory=IndexConfig)


_NESTED = {
    "root_quality": QualityThresholds,
    "member_quality": QualityThresholds,
    "index": IndexConfig,
}


def config_from_dict(raw: Dict[str, Any], base: Optional[ClusterConfig] = None) -> ClusterConfig:
    """Overlay a plain mapping onto a config, rejecting unknown keys."""
    config = base or ClusterConfig()
    known = {f.name for f in fields(ClusterConfig)}
    updates: Dict[str, Any] = {}
    for key, value in raw.items():
        if key not in known:
            raise ValueError(f"Unknown clustering config key: {key}")
        if key in _NESTED:
            if not isinstance(value, dict):
                raise ValueError(f"Config section {key} must be a mapping")
            updates[key] = replace(getattr(config, key), **value)
        else:
            updates[key] = value
    return replace(config, **updates)


def load_config(path: Optional[Path]) -> ClusterConfig:
    if path is None:
        return ClusterConfig()
    raw = load_yaml(path)
    config = config_from_dict(raw.get("clustering", raw))
    LOGGER.info(
        "Loaded clustering config %s (merge_threshold=%.3f max_clusters=%d)",
        path,
        config.merge_threshold,
        config.max_clusters,
    )
    return config
