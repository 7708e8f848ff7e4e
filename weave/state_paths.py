"""Shared helpers for resolving Weave state paths.

All components (store, logging, CLI) resolve their files through these
helpers so they agree on a single state directory.
"""
from __future__ import annotations

import os
import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = Path.home() / ".local" / "state" / "weave"

CANONICAL_DB_NAME = "weave.sqlite"


def resolve_state_dir(base_dir: Optional[Path] = None) -> Path:
    """Resolve the Weave base state directory.

    Handles both ~ and $HOME/$VAR expansion for compatibility with
    systemd EnvironmentFile and shell scripts.
    """
    if base_dir is not None:
        return Path(os.path.expandvars(str(base_dir))).expanduser()
    env_dir = os.getenv("WEAVE_STATE_DIR") or os.getenv("STATE_DIR")
    if env_dir:
        return Path(os.path.expandvars(env_dir)).expanduser()
    return DEFAULT_STATE_DIR


def resolve_state_subdir(name: str, base_dir: Optional[Path] = None) -> Path:
    """Resolve a named subdirectory within the Weave state directory."""
    return resolve_state_dir(base_dir) / name


def resolve_db_path(base_dir: Optional[Path] = None) -> Path:
    """Resolve the canonical graph database path, creating its directory.

    `WEAVE_DB_PATH` overrides the location entirely.
    """
    override = os.getenv("WEAVE_DB_PATH")
    if override and base_dir is None:
        db_path = Path(os.path.expandvars(override)).expanduser()
    else:
        db_path = resolve_state_dir(base_dir) / CANONICAL_DB_NAME
    db_path.parent.mkdir(parents=True, exist_ok=True)
    logger.debug(f"Resolved graph database path: {db_path}")
    return db_path
