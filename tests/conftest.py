from __future__ import annotations

from typing import Optional, Sequence

import numpy as np
import pytest

from facecluster.types import FaceBox, Pose, Reference


def build_reference(
    embedding: Optional[Sequence[float]],
    *,
    x: float = 100,
    y: float = 100,
    size: float = 300,
    image: float = 1000,
    score: float = 0.99,
    pose: Optional[Pose] = None,
    sharpness: Optional[float] = None,
    ref_id: str = "album|photo.jpg:0",
) -> Reference:
    return Reference(
        id=ref_id,
        embedding=None if embedding is None else np.asarray(embedding, dtype=np.float64),
        box=FaceBox(x=x, y=y, width=size, height=size, image_width=image, image_height=image),
        detection_score=score,
        pose=pose or Pose(),
        sharpness=sharpness,
    )


@pytest.fixture
def make_reference():
    """Factory for references; defaults describe a large, sharp, frontal face."""
    return build_reference
