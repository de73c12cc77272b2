"""YAML configuration loading with ``defaults`` inheritance and dotted overrides."""
from __future__ import annotations

import copy
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence

import yaml

from ihtcv.models.errors import ConfigurationError


def load_config(path: Path) -> dict[str, Any]:
    """Load a YAML config file into a dictionary (empty files give ``{}``)."""
    payload = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ConfigurationError(f"Config {path} must contain a mapping at the top level.")
    return payload


def deep_update(base: Dict[str, Any], update: Mapping[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``update`` into ``base`` (in place) and return it."""
    for key, value in update.items():
        if isinstance(value, Mapping) and isinstance(base.get(key), dict):
            deep_update(base[key], value)
        else:
            base[key] = copy.deepcopy(value)
    return base


def parse_overrides(pairs: Optional[Sequence[str]]) -> Dict[str, Any]:
    """Turn ``["cv.q=5", "model.family=poisson"]`` into a nested dict.

    Values are parsed as YAML scalars so numbers, booleans and lists keep their type.
    """
    result: Dict[str, Any] = {}
    for pair in pairs or []:
        if "=" not in pair:
            raise ConfigurationError(f"Override '{pair}' must look like key.path=value.")
        key, raw = pair.split("=", 1)
        value = yaml.safe_load(raw) if raw.strip() else None
        node = result
        parts = [p for p in key.strip().split(".") if p]
        if not parts:
            raise ConfigurationError(f"Override '{pair}' has an empty key.")
        for part in parts[:-1]:
            node = node.setdefault(part, {})
        node[parts[-1]] = value
    return result


def _resolve_defaults(path: Path, seen: Optional[set] = None) -> Dict[str, Any]:
    path = Path(path).resolve()
    seen = set() if seen is None else set(seen)
    if path in seen:
        raise ConfigurationError(f"Circular 'defaults' chain through {path}.")
    seen.add(path)
    cfg = load_config(path)
    parents = cfg.pop("defaults", None) or []
    if isinstance(parents, (str, Path)):
        parents = [parents]
    merged: Dict[str, Any] = {}
    for parent in parents:
        parent_path = Path(parent)
        if not parent_path.is_absolute():
            parent_path = path.parent / parent_path
        deep_update(merged, _resolve_defaults(parent_path, seen))
    return deep_update(merged, cfg)


def load_and_merge(paths: Iterable[Path], overrides: Optional[Sequence[str]] = None) -> Dict[str, Any]:
    """Merge config files left to right, then apply dotted overrides."""
    merged: Dict[str, Any] = {}
    for path in paths:
        deep_update(merged, _resolve_defaults(Path(path)))
    return deep_update(merged, parse_overrides(overrides))


def merge_overrides(config: dict[str, Any], overrides: Mapping[str, Any]) -> dict[str, Any]:
    """Return a copy of ``config`` with nested ``overrides`` merged in."""
    return deep_update(copy.deepcopy(config), overrides)
