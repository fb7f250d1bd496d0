"""
procurement_config -- single public entrypoint for engine configuration.

Responsibility:
    Provides the way to obtain configuration at runtime through
    ``get_active_config()``.  Services receive an ``EngineConfig`` instance
    and never read files or environment variables themselves.

Architecture position:
    Configuration.  Sits beside ``procurement_kernel`` (whose logging it
    uses) and below ``procurement_services``.  The kernel never imports
    from this package.

Failure modes:
    - ``FileNotFoundError`` -- the configuration file does not exist.
    - ``ValueError`` -- unknown keys or out-of-range values.
    - ``yaml.YAMLError`` -- malformed YAML.

Every successful ``get_active_config()`` call emits a
``PROCUREMENT_CONFIG_TRACE`` log entry with the source path and checksum,
tying the engine's behaviour to the exact configuration that governed it.
"""

from __future__ import annotations

import logging
from pathlib import Path

from procurement_config.loader import compute_checksum, load_config
from procurement_config.schema import EngineConfig

_logger = logging.getLogger("procurement.config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults.yaml"


def get_active_config(path: Path | str | None = None) -> EngineConfig:
    """Load the engine configuration.

    Args:
        path: YAML file to load.  Defaults to the packaged defaults.yaml.
    """
    source = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    config = load_config(source)

    _logger.info(
        "PROCUREMENT_CONFIG_TRACE",
        extra={
            "trace_type": "PROCUREMENT_CONFIG_TRACE",
            "source": str(source),
            "checksum": compute_checksum(config),
            "currency": config.currency,
            "database_dialect": config.database_url.split(":", 1)[0],
        },
    )
    return config


__all__ = [
    "DEFAULT_CONFIG_PATH",
    "EngineConfig",
    "compute_checksum",
    "get_active_config",
    "load_config",
]
