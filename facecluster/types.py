"""Common dataclasses and helpers used across the facecluster package."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

import numpy as np

Point = Tuple[float, float]

REFERENCE_ID_SEPARATOR = "|"


def _escape_album_key(key: str) -> str:
    return key.replace("%", "%25").replace(REFERENCE_ID_SEPARATOR, "%7C")


def _unescape_album_key(key: str) -> str:
    return key.replace("%7C", REFERENCE_ID_SEPARATOR).replace("%25", "%")


class ClusterInvariantError(RuntimeError):
    """Raised when persisted cluster state contradicts itself.

    A reference already mapped to one cluster being written to another is the
    canonical case. Callers abort the pass rather than reassign identities.
    """


class LibraryError(RuntimeError):
    """Raised by library collaborators when an album cannot be read or written."""


@dataclass(frozen=True)
class Album:
    key: str
    name: str = ""

    @property
    def display_name(self) -> str:
        return self.name or self.key


@dataclass(frozen=True)
class AlbumEntry:
    album: Album
    name: str

    @property
    def entry_id(self) -> str:
        # Album keys are escaped so the first separator always ends the album part.
        return f"{_escape_album_key(self.album.key)}{REFERENCE_ID_SEPARATOR}{self.name}"


@dataclass(frozen=True)
class FaceBox:
    """Detection box in source-image pixel space."""

    x: float
    y: float
    width: float
    height: float
    image_width: float
    image_height: float

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def bottom(self) -> float:
        return self.y + self.height

    def normalized_center(self) -> Point:
        return (
            (self.x + self.width / 2) / self.image_width,
            (self.y + self.height / 2) / self.image_height,
        )

    def contains_normalized(self, point: Point) -> bool:
        px, py = point
        return (
            self.x / self.image_width <= px <= self.right / self.image_width
            and self.y / self.image_height <= py <= self.bottom / self.image_height
        )


@dataclass(frozen=True)
class Pose:
    roll: Optional[float] = None
    yaw: Optional[float] = None
    pitch: Optional[float] = None


@dataclass(frozen=True)
class NormalizedRect:
    """Rectangle expressed as fractions of the image dimensions."""

    top: float
    left: float
    right: float
    bottom: float

    def __post_init__(self) -> None:
        if not (self.left < self.right and self.top < self.bottom):
            raise ValueError(f"Degenerate rect: {self}")

    @property
    def center(self) -> Point:
        return ((self.left + self.right) / 2, (self.top + self.bottom) / 2)

    def contains(self, point: Point) -> bool:
        px, py = point
        return self.left <= px <= self.right and self.top <= py <= self.bottom


@dataclass(eq=False)
class Reference:
    """One detected face instance produced by the extractor."""

    id: str
    embedding: Optional[np.ndarray]
    box: FaceBox
    detection_score: float
    pose: Pose = field(default_factory=Pose)
    sharpness: Optional[float] = None

    def has_valid_embedding(self, dim: Optional[int] = None) -> bool:
        if self.embedding is None:
            return False
        emb = np.asarray(self.embedding)
        if emb.ndim != 1 or emb.size == 0:
            return False
        if dim is not None and emb.size != dim:
            return False
        return bool(np.all(np.isfinite(emb)))


@dataclass(frozen=True)
class Contact:
    key: str
    name: str
    synthesized: bool = False


@dataclass(frozen=True)
class IdentifiedContact:
    """A user label: a rectangle on a photo named with a contact."""

    face_hash: str
    rect: NormalizedRect
    contact: Contact


@dataclass
class Cluster:
    id: str
    root: Reference
    member_count: int = 1
    contact: Optional[Contact] = None
    creation_index: int = 0


def contact_to_dict(contact: Optional[Contact]) -> Optional[Dict]:
    if contact is None:
        return None
    return {"key": contact.key, "name": contact.name, "synthesized": contact.synthesized}


def contact_from_dict(raw: Optional[Dict]) -> Optional[Contact]:
    if not raw:
        return None
    return Contact(key=raw["key"], name=raw.get("name", ""), synthesized=bool(raw.get("synthesized", False)))


def reference_id(entry: AlbumEntry, index: int) -> str:
    return f"{entry.entry_id}:{index}"


def decode_reference_id(ref_id: str) -> Tuple[AlbumEntry, int]:
    """Split a reference id back into its photo entry and ordinal index."""
    try:
        entry_id, index = ref_id.rsplit(":", 1)
        album_key, name = entry_id.split(REFERENCE_ID_SEPARATOR, 1)
        return AlbumEntry(album=Album(key=_unescape_album_key(album_key)), name=name), int(index)
    except ValueError as exc:
        raise ValueError(f"Malformed reference id: {ref_id!r}") from exc


def cluster_id_for(reference: Reference) -> str:
    """Cluster ids derive from the root reference so re-runs are idempotent."""
    return hashlib.sha1(reference.id.encode("utf-8")).hexdigest()[:16]


def euclidean_distance(a: np.ndarray, b: np.ndarray) -> float:
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    if a.shape != b.shape:
        raise ValueError("Embedding shapes do not match")
    return float(np.linalg.norm(a - b))


def rect_of_reference(reference: Reference) -> NormalizedRect:
    """Normalize a reference box to image-relative coordinates, clamped to [0, 1]."""
    box = reference.box
    if box.width <= 0 or box.height <= 0:
        raise ValueError(f"Invalid reference rect for {reference.id}")
    return NormalizedRect(
        top=max(0.0, box.y / box.image_height),
        left=max(0.0, box.x / box.image_width),
        right=min(1.0, box.right / box.image_width),
        bottom=min(1.0, box.bottom / box.image_height),
    )


def encode_rect(rect: NormalizedRect) -> str:
    """Encode as rect64: four 16-bit fractions (left, top, right, bottom) in hex."""
    return "".join(
        f"{int(value * 65535):04x}" for value in (rect.left, rect.top, rect.right, rect.bottom)
    )


def decode_rect(encoded: str) -> NormalizedRect:
    raw = encoded.strip().lower()
    if raw.startswith("rect64(") and raw.endswith(")"):
        raw = raw[len("rect64("):-1]
    raw = raw.zfill(16)
    if len(raw) != 16:
        raise ValueError(f"Malformed rect64 value: {encoded!r}")
    left, top, right, bottom = (int(raw[i:i + 4], 16) / 65535 for i in range(0, 16, 4))
    return NormalizedRect(top=top, left=left, right=right, bottom=bottom)

