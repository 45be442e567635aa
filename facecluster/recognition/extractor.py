"""InsightFace-backed face extraction producing references for a picture."""

from __future__ import annotations

import logging
import os
import platform
from pathlib import Path
from typing import Any, List, Optional, Sequence, Tuple

import numpy as np

from facecluster.types import FaceBox, Pose, Reference

LOGGER = logging.getLogger("facecluster.recognition.extractor")


def _default_providers() -> Tuple[str, ...]:
    """Choose default ONNX providers based on platform."""
    system = platform.system()
    machine = platform.machine().lower()
    if system == "Darwin" and machine in {"arm64", "aarch64"}:
        return ("CoreMLExecutionProvider", "CPUExecutionProvider")
    return ("CPUExecutionProvider",)


def _import_cv2() -> Any:
    try:
        import cv2  # type: ignore[import]
    except ImportError as exc:  # pragma: no cover - import guard
        raise RuntimeError(
            "opencv-python is required for InsightFaceExtractor. "
            "Install it via `pip install facecluster[extract]`."
        ) from exc
    return cv2


def laplacian_sharpness(cv2: Any, image: np.ndarray, bbox: Sequence[float]) -> Optional[float]:
    """Variance of the Laplacian over the face crop; None for an empty crop."""
    height, width = image.shape[:2]
    x1, y1, x2, y2 = [int(round(v)) for v in bbox]
    x1, y1 = max(0, x1), max(0, y1)
    x2, y2 = min(width, x2), min(height, y2)
    if x2 <= x1 or y2 <= y1:
        return None
    crop = image[y1:y2, x1:x2]
    gray = cv2.cvtColor(crop, cv2.COLOR_BGR2GRAY) if crop.ndim == 3 else crop
    return float(cv2.Laplacian(gray, cv2.CV_64F).var())


class InsightFaceExtractor:
    """Runs InsightFace ``FaceAnalysis`` (detection, landmarks, recognition) on a picture.

    ``app`` and ``cv2_module`` can be injected so the mapping from InsightFace
    faces to references can be exercised without model weights.
    """

    def __init__(
        self,
        model_name: str = "buffalo_l",
        providers: Optional[Sequence[str]] = None,
        det_size: Tuple[int, int] = (640, 640),
        app: Any = None,
        cv2_module: Any = None,
    ) -> None:
        self.cv2 = cv2_module or _import_cv2()
        if app is None:
            os.environ.setdefault("OMP_NUM_THREADS", "2")
            os.environ.setdefault("ORT_INTRA_OP_NUM_THREADS", "2")
            try:
                from insightface.app import FaceAnalysis
            except ImportError as exc:  # pragma: no cover - import guard
                raise RuntimeError(
                    "insightface is required for InsightFaceExtractor. "
                    "Install it via `pip install facecluster[extract]`."
                ) from exc
            provider_list = tuple(providers) if providers is not None else _default_providers()
            LOGGER.info("Loading FaceAnalysis %s det_size=%s providers=%s", model_name, det_size, provider_list)
            app = FaceAnalysis(name=model_name, providers=list(provider_list))
            app.prepare(ctx_id=0, det_size=det_size)
        self.app = app

    def read_image(self, path: Path) -> np.ndarray:
        image = self.cv2.imread(str(path))
        if image is None:
            raise OSError(f"Unable to decode picture {path}")
        return image

    def to_reference(self, face: Any, image: np.ndarray, ref_id: str) -> Reference:
        height, width = image.shape[:2]
        x1, y1, x2, y2 = (float(v) for v in face.bbox)
        embedding = getattr(face, "normed_embedding", None)
        if embedding is None:
            embedding = getattr(face, "embedding", None)
        pose = getattr(face, "pose", None)
        if pose is not None:
            # InsightFace reports (pitch, yaw, roll) in degrees.
            pitch, yaw, roll = (float(v) for v in pose)
            face_pose = Pose(roll=roll, yaw=yaw, pitch=pitch)
        else:
            face_pose = Pose()
        return Reference(
            id=ref_id,
            embedding=None if embedding is None else np.asarray(embedding, dtype=np.float32).reshape(-1),
            box=FaceBox(
                x=x1,
                y=y1,
                width=x2 - x1,
                height=y2 - y1,
                image_width=float(width),
                image_height=float(height),
            ),
            detection_score=float(face.det_score),
            pose=face_pose,
            sharpness=laplacian_sharpness(self.cv2, image, (x1, y1, x2, y2)),
        )

    def extract(self, path: Path, id_prefix: str) -> List[Reference]:
        """Detect and embed every face of the picture at ``path``.

        Reference ids are ``<id_prefix>:<ordinal>`` in detection order.
        """
        image = self.read_image(path)
        faces = self.app.get(image)
        references = [self.to_reference(face, image, f"{id_prefix}:{idx}") for idx, face in enumerate(faces)]
        LOGGER.debug("Extracted %d faces from %s", len(references), path)
        return references
