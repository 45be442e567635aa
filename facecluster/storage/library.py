"""Photo library collaborators.

``Library`` is the contract the clustering core consumes: album enumeration,
per-photo references, user labels, and candidate-face annotations.
``FolderLibrary`` implements it over a directory tree, where every directory
holding pictures is an album and each album keeps its face metadata in a
``.faces.json`` file next to the pictures.
"""

from __future__ import annotations

import abc
import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np

from facecluster.concurrency import KeyedLock
from facecluster.io_utils import PICTURE_SUFFIXES, dump_json, ensure_dir, list_pictures, load_json
from facecluster.types import (
    Album,
    AlbumEntry,
    Contact,
    FaceBox,
    IdentifiedContact,
    LibraryError,
    NormalizedRect,
    Pose,
    Reference,
    decode_reference_id,
    decode_rect,
    encode_rect,
    reference_id,
)

LOGGER = logging.getLogger("facecluster.storage.library")

METADATA_FILENAME = ".faces.json"


def reference_to_dict(reference: Reference) -> Dict[str, Any]:
    box = reference.box
    return {
        "embedding": None if reference.embedding is None else np.asarray(reference.embedding).tolist(),
        "box": {
            "x": box.x,
            "y": box.y,
            "width": box.width,
            "height": box.height,
            "image_width": box.image_width,
            "image_height": box.image_height,
        },
        "score": reference.detection_score,
        "pose": {"roll": reference.pose.roll, "yaw": reference.pose.yaw, "pitch": reference.pose.pitch},
        "sharpness": reference.sharpness,
    }


def reference_from_dict(ref_id: str, raw: Dict[str, Any]) -> Reference:
    """Build a Reference from its stored form.

    A missing or non-numeric embedding is kept as ``None`` so that callers can
    skip the reference instead of failing the whole photo.
    """
    embedding: Optional[np.ndarray] = None
    raw_embedding = raw.get("embedding")
    if raw_embedding is not None:
        try:
            embedding = np.asarray(raw_embedding, dtype=np.float32).reshape(-1)
        except (TypeError, ValueError):
            LOGGER.warning("Reference %s has a malformed embedding", ref_id)
    box = raw["box"]
    pose = raw.get("pose") or {}
    return Reference(
        id=ref_id,
        embedding=embedding,
        box=FaceBox(
            x=float(box["x"]),
            y=float(box["y"]),
            width=float(box["width"]),
            height=float(box["height"]),
            image_width=float(box["image_width"]),
            image_height=float(box["image_height"]),
        ),
        detection_score=float(raw.get("score", 0.0)),
        pose=Pose(roll=pose.get("roll"), yaw=pose.get("yaw"), pitch=pose.get("pitch")),
        sharpness=raw.get("sharpness"),
    )


class Library(abc.ABC):
    """What the clustering core needs from the photo library."""

    @abc.abstractmethod
    async def list_albums(self) -> List[Album]:
        ...

    @abc.abstractmethod
    async def list_entries(self, album: Album) -> List[AlbumEntry]:
        ...

    @abc.abstractmethod
    async def read_references(self, entry: AlbumEntry) -> Optional[List[Reference]]:
        """References of a photo; ``None`` when the photo was never processed."""

    @abc.abstractmethod
    async def write_references(self, entry: AlbumEntry, references: List[Reference]) -> None:
        ...

    @abc.abstractmethod
    async def list_identified_contacts(self, entry: AlbumEntry) -> List[IdentifiedContact]:
        ...

    @abc.abstractmethod
    async def record_candidate_face(
        self,
        entry: AlbumEntry,
        rect: NormalizedRect,
        contact: Contact,
        reference_id: str,
        strategy: str,
    ) -> bool:
        """Append or update a candidate annotation; returns True if anything changed."""

    def picture_path(self, entry: AlbumEntry) -> Path:
        raise NotImplementedError(f"{type(self).__name__} cannot locate picture files")

    async def read_reference(self, ref_id: str) -> Optional[Reference]:
        entry, index = decode_reference_id(ref_id)
        references = await self.read_references(entry)
        if references is None or not 0 <= index < len(references):
            return None
        return references[index]


class FolderLibrary(Library):
    def __init__(self, root: Path, data_dir: Path) -> None:
        self.root = root
        self.references_dir = data_dir / "references"
        self._locks = KeyedLock()

    def _album_path(self, album: Album) -> Path:
        return self.root / album.key if album.key != "." else self.root

    def _metadata_path(self, album: Album) -> Path:
        return self._album_path(album) / METADATA_FILENAME

    def picture_path(self, entry: AlbumEntry) -> Path:
        return self._album_path(entry.album) / entry.name

    def _references_path(self, entry: AlbumEntry) -> Path:
        return self.references_dir / entry.album.key / f"{entry.name}.json"

    def _scan_albums(self) -> List[Album]:
        if not self.root.is_dir():
            raise LibraryError(f"Library root {self.root} is not a directory")
        albums: List[Album] = []
        for directory in sorted([self.root, *(p for p in self.root.rglob("*") if p.is_dir())]):
            if any(
                child.is_file() and child.suffix.lower() in PICTURE_SUFFIXES for child in directory.iterdir()
            ):
                key = directory.relative_to(self.root).as_posix()
                albums.append(Album(key=key, name=directory.name))
        return albums

    async def list_albums(self) -> List[Album]:
        return await asyncio.to_thread(self._scan_albums)

    async def list_entries(self, album: Album) -> List[AlbumEntry]:
        album_path = self._album_path(album)
        if not album_path.is_dir():
            raise LibraryError(f"Album {album.key} vanished")
        pictures = await asyncio.to_thread(list_pictures, album_path)
        return [AlbumEntry(album=album, name=p.name) for p in pictures]

    def _read_reference_file(self, entry: AlbumEntry) -> Optional[List[Reference]]:
        path = self._references_path(entry)
        if not path.exists():
            return None
        raw = load_json(path)
        return [reference_from_dict(reference_id(entry, idx), item) for idx, item in enumerate(raw)]

    async def read_references(self, entry: AlbumEntry) -> Optional[List[Reference]]:
        try:
            return await asyncio.to_thread(self._read_reference_file, entry)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            raise LibraryError(f"Unreadable references for {entry.entry_id}: {exc}") from exc

    async def write_references(self, entry: AlbumEntry, references: List[Reference]) -> None:
        path = self._references_path(entry)
        async with self._locks.hold(str(path)):
            await asyncio.to_thread(dump_json, path, [reference_to_dict(r) for r in references])

    def _read_metadata(self, album: Album) -> Dict[str, Any]:
        path = self._metadata_path(album)
        if not path.exists():
            return {"contacts": {}, "faces": {}, "candidates": {}}
        try:
            data = load_json(path)
        except json.JSONDecodeError as exc:
            raise LibraryError(f"Corrupt face metadata in {path}: {exc}") from exc
        data.setdefault("contacts", {})
        data.setdefault("faces", {})
        data.setdefault("candidates", {})
        return data

    async def list_identified_contacts(self, entry: AlbumEntry) -> List[IdentifiedContact]:
        metadata = await asyncio.to_thread(self._read_metadata, entry.album)
        contacts = metadata["contacts"]
        identified: List[IdentifiedContact] = []
        for face in metadata["faces"].get(entry.name, []):
            raw_contact = contacts.get(face.get("hash"))
            if not raw_contact:
                continue
            try:
                rect = decode_rect(face["rect"])
            except (KeyError, ValueError):
                LOGGER.warning("Ignoring malformed face rect in %s/%s", entry.album.key, entry.name)
                continue
            identified.append(
                IdentifiedContact(
                    face_hash=face["hash"],
                    rect=rect,
                    contact=Contact(key=raw_contact["key"], name=raw_contact.get("name", "")),
                )
            )
        return identified

    async def label_face(self, entry: AlbumEntry, face_hash: str, rect: NormalizedRect, contact: Contact) -> None:
        """Write a user label for a face rectangle (what a labeling UI would do)."""
        async with self._locks.hold(str(self._metadata_path(entry.album))):
            metadata = await asyncio.to_thread(self._read_metadata, entry.album)
            faces = metadata["faces"].setdefault(entry.name, [])
            faces[:] = [f for f in faces if f.get("hash") != face_hash]
            faces.append({"hash": face_hash, "rect": encode_rect(rect)})
            metadata["contacts"][face_hash] = {"key": contact.key, "name": contact.name}
            await asyncio.to_thread(dump_json, self._metadata_path(entry.album), metadata)

    async def list_candidate_faces(self, entry: AlbumEntry, strategy: str) -> List[Dict[str, Any]]:
        metadata = await asyncio.to_thread(self._read_metadata, entry.album)
        return list(metadata["candidates"].get(strategy, {}).get(entry.name, []))

    async def record_candidate_face(
        self,
        entry: AlbumEntry,
        rect: NormalizedRect,
        contact: Contact,
        reference_id: str,
        strategy: str,
    ) -> bool:
        path = self._metadata_path(entry.album)
        async with self._locks.hold(str(path)):
            metadata = await asyncio.to_thread(self._read_metadata, entry.album)
            faces = metadata["candidates"].setdefault(strategy, {}).setdefault(entry.name, [])
            record = {
                "reference_id": reference_id,
                "rect": encode_rect(rect),
                "contact_key": contact.key,
                "contact_name": contact.name,
            }
            for idx, face in enumerate(faces):
                if face.get("reference_id") == reference_id:
                    if face == record:
                        return False
                    faces[idx] = record
                    break
            else:
                faces.append(record)
            ensure_dir(path.parent)
            await asyncio.to_thread(dump_json, path, metadata)
        return True


class MemoryLibrary(Library):
    """Volatile library for tests and dry runs.

    References are added per photo with ``add_photo``; ids are assigned from
    the photo position exactly as ``FolderLibrary`` does.
    """

    def __init__(self) -> None:
        self.albums: Dict[str, Album] = {}
        self.photos: Dict[str, Dict[str, Optional[List[Reference]]]] = {}
        self.identified: Dict[str, List[IdentifiedContact]] = {}
        self.candidates: Dict[str, Dict[str, Dict[str, Dict[str, Any]]]] = {}
        self.broken_albums: set = set()

    def add_photo(self, album_key: str, name: str, references: Optional[List[Reference]]) -> AlbumEntry:
        album = self.albums.setdefault(album_key, Album(key=album_key, name=album_key))
        entry = AlbumEntry(album=album, name=name)
        if references is not None:
            for idx, reference in enumerate(references):
                reference.id = reference_id(entry, idx)
        self.photos.setdefault(album_key, {})[name] = references
        return entry

    def label(self, entry: AlbumEntry, rect: NormalizedRect, contact: Contact) -> None:
        faces = self.identified.setdefault(entry.entry_id, [])
        faces.append(IdentifiedContact(face_hash=f"{contact.key}-{len(faces)}", rect=rect, contact=contact))

    def candidate_faces(self, strategy: str) -> Dict[str, Dict[str, Any]]:
        """Candidate records of a strategy keyed by reference id."""
        flat: Dict[str, Dict[str, Any]] = {}
        for records in self.candidates.get(strategy, {}).values():
            flat.update(records)
        return flat

    async def list_albums(self) -> List[Album]:
        return list(self.albums.values())

    async def list_entries(self, album: Album) -> List[AlbumEntry]:
        if album.key in self.broken_albums:
            raise LibraryError(f"Album {album.key} is unavailable")
        return [AlbumEntry(album=self.albums[album.key], name=name) for name in self.photos.get(album.key, {})]

    async def read_references(self, entry: AlbumEntry) -> Optional[List[Reference]]:
        if entry.album.key in self.broken_albums:
            raise LibraryError(f"Album {entry.album.key} is unavailable")
        return self.photos.get(entry.album.key, {}).get(entry.name)

    async def write_references(self, entry: AlbumEntry, references: List[Reference]) -> None:
        for idx, reference in enumerate(references):
            reference.id = reference_id(entry, idx)
        self.photos.setdefault(entry.album.key, {})[entry.name] = list(references)

    async def list_identified_contacts(self, entry: AlbumEntry) -> List[IdentifiedContact]:
        return list(self.identified.get(entry.entry_id, []))

    async def record_candidate_face(
        self,
        entry: AlbumEntry,
        rect: NormalizedRect,
        contact: Contact,
        reference_id: str,
        strategy: str,
    ) -> bool:
        records = self.candidates.setdefault(strategy, {}).setdefault(entry.entry_id, {})
        record = {"rect": encode_rect(rect), "contact_key": contact.key, "contact_name": contact.name}
        if records.get(reference_id) == record:
            return False
        records[reference_id] = record
        return True

    def picture_path(self, entry: AlbumEntry) -> Path:
        return Path(entry.album.key) / entry.name
