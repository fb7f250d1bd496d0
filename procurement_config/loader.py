"""
Configuration Loader (``procurement_config.loader``).

Responsibility
--------------
Reads a YAML configuration file and parses it into an ``EngineConfig``.
Callers obtain configuration through
``procurement_config.get_active_config()``, not from here.

Invariants enforced
-------------------
* Unknown keys are rejected (typos never silently fall back to defaults).
* ``compute_checksum`` is deterministic for a given configuration.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Top level not a mapping, or unknown keys  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import yaml

from procurement_config.schema import EngineConfig


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a YAML file and return its top-level mapping.

    An empty file yields an empty dict.
    """
    with open(path) as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping, got {type(data).__name__}")
    return data


def load_config(path: Path | str) -> EngineConfig:
    """Parse ``path`` into an ``EngineConfig``.

    An ``engine:`` section is accepted as the root when present.
    """
    data = load_yaml_file(Path(path))
    if set(data) == {"engine"} and isinstance(data["engine"], dict):
        data = data["engine"]
    return EngineConfig.from_dict(data)


def compute_checksum(config: EngineConfig) -> str:
    """SHA-256 over the canonical JSON form of the configuration."""
    canonical = json.dumps(config.to_dict(redact_secrets=False), sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
