from __future__ import annotations

import asyncio

import numpy as np
import pytest

from facecluster.config import ClusterConfig
from facecluster.pipeline.facematcher import FaceMatcherStrategy, prune_similar_references
from facecluster.storage.library import MemoryLibrary
from facecluster.types import Album, Contact, NormalizedRect

ALICE = Contact(key="alice", name="Alice")
AROUND_DEFAULT_FACE = NormalizedRect(top=0.1, left=0.1, right=0.4, bottom=0.4)
ALICE_VEC = np.array([0.2, -0.4, 0.6, 0.1])
STRANGER_VEC = np.array([-0.8, 0.7, -0.5, 0.9])


def _run(library, config=None):
    return asyncio.run(FaceMatcherStrategy(library, config or ClusterConfig()).run())


def test_similar_faces_get_candidates_for_labeled_contact(make_reference):
    library = MemoryLibrary()
    labeled = make_reference(ALICE_VEC)
    entry = library.add_photo("a", "1.jpg", [labeled])
    library.label(entry, AROUND_DEFAULT_FACE, ALICE)
    lookalike = make_reference(ALICE_VEC.copy())
    stranger = make_reference(STRANGER_VEC)
    library.add_photo("a", "2.jpg", [lookalike, stranger])

    outcome = _run(library)

    assert outcome.ok
    assert outcome.identified_references == 1
    assert outcome.candidates == 1
    candidates = library.candidate_faces("facematcher")
    assert set(candidates) == {lookalike.id}
    assert candidates[lookalike.id]["contact_name"] == "Alice"
    assert library.candidate_faces("cluster") == {}


def test_rerun_writes_nothing_new(make_reference):
    library = MemoryLibrary()
    entry = library.add_photo("a", "1.jpg", [make_reference(ALICE_VEC)])
    library.label(entry, AROUND_DEFAULT_FACE, ALICE)
    library.add_photo("b", "2.jpg", [make_reference(ALICE_VEC.copy())])

    assert _run(library).candidates == 1
    assert _run(library).candidates == 0


def test_no_labels_means_nothing_to_match(make_reference):
    library = MemoryLibrary()
    library.add_photo("a", "1.jpg", [make_reference(ALICE_VEC)])

    outcome = _run(library)

    assert outcome.ok
    assert outcome.kept_references == 0
    assert library.candidate_faces("facematcher") == {}


def test_unreadable_album_is_reported_not_fatal(make_reference):
    library = MemoryLibrary()
    entry = library.add_photo("a", "1.jpg", [make_reference(ALICE_VEC)])
    library.label(entry, AROUND_DEFAULT_FACE, ALICE)
    library.add_photo("broken", "2.jpg", [make_reference(ALICE_VEC.copy())])
    library.broken_albums.add("broken")

    outcome = _run(library)

    assert outcome.ok
    assert outcome.skipped_albums == ["broken"]


def test_near_duplicate_references_are_pruned(make_reference):
    refs = [
        make_reference(ALICE_VEC),
        make_reference(ALICE_VEC + 0.01),
        make_reference(STRANGER_VEC),
    ]
    kept = prune_similar_references(refs, 0.6)
    assert kept == [refs[0], refs[2]]


def test_suggesting_before_building_the_index_is_an_error():
    matcher = FaceMatcherStrategy(MemoryLibrary(), ClusterConfig())

    with pytest.raises(RuntimeError, match="build_index must run first"):
        asyncio.run(matcher.suggest_candidates(Album(key="a")))
