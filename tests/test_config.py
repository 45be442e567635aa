from pathlib import Path

import pytest

from facecluster.config import ClusterConfig, config_from_dict, load_config

REPO_ROOT = Path(__file__).resolve().parents[1]


def test_shipped_config_matches_defaults():
    assert load_config(REPO_ROOT / "configs" / "clustering.yaml") == ClusterConfig()


def test_missing_path_gives_defaults():
    assert load_config(None) == ClusterConfig()


def test_yaml_overrides_top_level_and_nested_values(tmp_path):
    path = tmp_path / "custom.yaml"
    path.write_text(
        "clustering:\n"
        "  merge_threshold: 0.42\n"
        "  member_quality:\n"
        "    min_size_px: 30\n"
        "  index:\n"
        "    bits: 4\n",
        encoding="utf-8",
    )

    config = load_config(path)

    assert config.merge_threshold == 0.42
    assert config.member_quality.min_size_px == 30
    assert config.member_quality.min_score == 0.7
    assert config.index.bits == 4
    assert config.max_clusters == 500


def test_unknown_keys_are_rejected():
    with pytest.raises(ValueError):
        config_from_dict({"merge_treshold": 0.4})
    with pytest.raises(ValueError):
        config_from_dict({"index": 8})
    with pytest.raises(TypeError):
        config_from_dict({"index": {"planes": 2}})
