from __future__ import annotations

import pytest
import yaml

from ihtcv.models.errors import ConfigurationError
from ihtcv.utils.config_parser import load_and_merge, load_config, merge_overrides, parse_overrides


def _write(path, payload):
    path.write_text(yaml.safe_dump(payload), encoding="utf-8")
    return path


def test_parse_overrides_keeps_yaml_types():
    parsed = parse_overrides(["cv.q=5", "model.debias=true", "cv.path=[1, 2, 3]", "model.family=poisson", "cv.destin="])
    assert parsed == {
        "cv": {"q": 5, "path": [1, 2, 3], "destin": None},
        "model": {"debias": True, "family": "poisson"},
    }


@pytest.mark.parametrize("pair", ["cv.q", "=3"])
def test_parse_overrides_rejects_malformed_pairs(pair):
    with pytest.raises(ConfigurationError):
        parse_overrides([pair])


def test_defaults_chain_and_overrides(tmp_path):
    _write(tmp_path / "base.yaml", {"cv": {"q": 5, "axis": "path"}, "model": {"family": "normal"}})
    child = _write(tmp_path / "child.yaml", {"defaults": "base.yaml", "cv": {"axis": "fold"}})
    merged = load_and_merge([child], ["model.family=bernoulli"])
    assert merged == {"cv": {"q": 5, "axis": "fold"}, "model": {"family": "bernoulli"}}


def test_shared_parent_is_not_a_cycle(tmp_path):
    _write(tmp_path / "root.yaml", {"seed": 1})
    _write(tmp_path / "a.yaml", {"defaults": "root.yaml", "a": 1})
    _write(tmp_path / "b.yaml", {"defaults": "root.yaml", "b": 2})
    top = _write(tmp_path / "top.yaml", {"defaults": ["a.yaml", "b.yaml"]})
    assert load_and_merge([top]) == {"seed": 1, "a": 1, "b": 2}


def test_cyclic_defaults_are_rejected(tmp_path):
    _write(tmp_path / "a.yaml", {"defaults": "b.yaml"})
    _write(tmp_path / "b.yaml", {"defaults": "a.yaml"})
    with pytest.raises(ConfigurationError):
        load_and_merge([tmp_path / "a.yaml"])


def test_load_config_requires_mapping(tmp_path):
    (tmp_path / "empty.yaml").write_text("", encoding="utf-8")
    assert load_config(tmp_path / "empty.yaml") == {}
    (tmp_path / "list.yaml").write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_config(tmp_path / "list.yaml")


def test_merge_overrides_does_not_mutate_input():
    base = {"cv": {"q": 5}}
    merged = merge_overrides(base, {"cv": {"q": 10}})
    assert merged["cv"]["q"] == 10
    assert base["cv"]["q"] == 5
