import numpy as np
import pytest

from facecluster.config import IndexConfig
from facecluster.recognition.sortable_index import (
    KnownHashTable,
    SortableEmbeddingIndex,
    key_distance,
    nearest_known,
)


def _from_levels(*levels, bits=8):
    """Embedding in [-1, 1] that quantizes exactly to the given levels."""
    top = (1 << bits) - 1
    return np.array([level * 2.0 / top - 1.0 for level in levels], dtype=np.float64)


def test_hash_is_stable_and_fixed_width():
    index = SortableEmbeddingIndex(4)
    embedding = np.array([0.1, -0.3, 0.9, -1.0])
    assert index.hash(embedding) == index.hash(embedding.copy())
    assert len(index.hash(embedding)) == 8
    assert len(SortableEmbeddingIndex(3).hash([0.0, 0.0, 0.0])) == 6


def test_quantize_clips_to_range():
    index = SortableEmbeddingIndex(3)
    assert index.quantize([-5.0, 0.0, 5.0]).tolist() == [0, 128, 255]


def test_most_significant_plane_is_emitted_first():
    index = SortableEmbeddingIndex(2, IndexConfig(bits=2))
    # Levels (2, 1) = (10b, 01b): plane 1 -> "10", plane 0 -> "01".
    assert index.hash(_from_levels(2, 1, bits=2)) == "9"


def test_difference_in_lowest_plane_stays_within_tolerance():
    index = SortableEmbeddingIndex(4)
    base = index.hash(_from_levels(128, 40, 200, 7))
    neighbour = index.hash(_from_levels(128, 41, 200, 7))
    assert base != neighbour
    assert key_distance(base, neighbour) < index.max_distance
    assert index.nearest_known(neighbour, [base]) == base


def test_difference_in_top_plane_is_not_found():
    index = SortableEmbeddingIndex(4)
    base = index.hash(_from_levels(0, 40, 200, 7))
    far = index.hash(_from_levels(128, 40, 200, 7))
    assert index.nearest_known(far, [base]) is None


def test_quantize_rejects_bad_embeddings():
    index = SortableEmbeddingIndex(3)
    with pytest.raises(ValueError):
        index.quantize([0.1, 0.2])
    with pytest.raises(ValueError):
        index.quantize([0.1, float("nan"), 0.2])


def test_nearest_known_checks_both_neighbours():
    keys = ["00", "10", "20"]
    assert nearest_known("11", keys, 16) == "10"
    assert nearest_known("1f", keys, 16) == "20"
    assert nearest_known("ff", keys, 16) is None
    assert nearest_known("11", [], 16) is None


def test_nearest_known_ties_go_to_predecessor_and_limit_is_exclusive():
    keys = ["10", "20"]
    assert nearest_known("18", keys, 16) == "10"
    assert nearest_known("18", keys, 8) is None


def test_known_table_returns_payload_of_hit():
    index = SortableEmbeddingIndex(4)
    table = KnownHashTable(index)
    table.add(_from_levels(10, 20, 30, 40), "alice")
    table.add(_from_levels(200, 20, 30, 40), "bob")
    assert len(table) == 2
    assert table.keys == sorted(table.keys)

    hit = table.lookup(_from_levels(200, 20, 30, 41))
    assert hit is not None and hit[1] == "bob"
    assert table.lookup(_from_levels(100, 100, 100, 100)) is None
