"""Filesystem locations used by the harvester."""

from __future__ import annotations

import os
from pathlib import Path

DATA_ROOT_ENV = "HARVESTER_DATA_ROOT"
CONFIG_FILE_ENV = "HARVESTER_CONFIG"


def get_data_root() -> Path:
    """Directory holding the persisted stores (sources.json, batches.json, ...)."""
    return Path(os.environ.get(DATA_ROOT_ENV, "data"))


def get_config_file() -> Path:
    override = os.environ.get(CONFIG_FILE_ENV)
    if override:
        return Path(override)
    return get_data_root() / "config.json"
