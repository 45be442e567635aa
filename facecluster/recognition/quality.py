"""Reliability gate for detected faces.

Cluster roots must be canonical faces since every later distance is measured
against them; members only need to be recognizable.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from facecluster.config import MEMBER_QUALITY, ROOT_QUALITY, QualityThresholds
from facecluster.types import Reference


class Purpose(str, Enum):
    ROOT = "root"
    MEMBER = "member"


def _angle_exceeds(angle: Optional[float], ceiling: float) -> bool:
    # Extractors report 0 or None when the angle is unknown.
    return bool(angle) and abs(angle) > ceiling


def is_useful_reference(
    reference: Reference,
    purpose: Purpose,
    thresholds: Optional[QualityThresholds] = None,
) -> bool:
    if thresholds is None:
        thresholds = ROOT_QUALITY if purpose is Purpose.ROOT else MEMBER_QUALITY
    if reference.detection_score < thresholds.min_score:
        return False
    box = reference.box
    if box.width < thresholds.min_size_px or box.height < thresholds.min_size_px:
        return False
    pose = reference.pose
    if _angle_exceeds(pose.roll, thresholds.max_angle_deg):
        return False
    if _angle_exceeds(pose.yaw, thresholds.max_angle_deg):
        return False
    if _angle_exceeds(pose.pitch, thresholds.max_angle_deg / 2):
        return False
    if (
        thresholds.min_sharpness is not None
        and reference.sharpness is not None
        and reference.sharpness < thresholds.min_sharpness
    ):
        return False
    return True
