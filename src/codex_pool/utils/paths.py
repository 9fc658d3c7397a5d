# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/codex_pool/utils/paths.py

import os
from pathlib import Path
from typing import Optional, Union

STORAGE_FILE_NAME = "accounts.json"


def get_default_root() -> Path:
    """Per-user data directory (``CODEX_POOL_HOME`` or ``~/.codex_pool``)."""
    override = os.getenv("CODEX_POOL_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".codex_pool"


def get_logs_dir(root: Optional[Union[str, Path]] = None) -> Path:
    logs_dir = Path(root) if root else get_default_root()
    logs_dir = logs_dir / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    return logs_dir


def get_data_file(
    filename: str = STORAGE_FILE_NAME, root: Optional[Union[str, Path]] = None
) -> Path:
    return (Path(root) if root else get_default_root()) / filename
