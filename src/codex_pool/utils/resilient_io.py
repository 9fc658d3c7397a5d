# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/codex_pool/utils/resilient_io.py

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Optional, Union


def safe_mkdir(path: Union[str, Path], logger: logging.Logger) -> bool:
    """Create a directory tree, logging instead of raising on failure."""
    try:
        Path(path).mkdir(parents=True, exist_ok=True)
        return True
    except OSError as e:
        logger.error(f"Failed to create directory '{path}': {e}")
        return False


def safe_read_json(
    path: Union[str, Path],
    logger: logging.Logger,
    parse_json: bool = True,
) -> Optional[Any]:
    """
    Read a JSON file.

    Returns None when the file is missing, unreadable or not valid JSON. The
    failure is logged; callers decide what an absent document means.
    """
    file_path = Path(path)
    if not file_path.exists():
        return None

    try:
        raw = file_path.read_text(encoding="utf-8")
    except OSError as e:
        logger.error(f"Failed to read '{file_path}': {e}")
        return None

    if not parse_json:
        return raw

    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        logger.error(f"Corrupt JSON in '{file_path}': {e}")
        return None


def safe_write_json(
    path: Union[str, Path],
    data: Any,
    logger: logging.Logger,
    secure_permissions: bool = False,
) -> bool:
    """
    Atomically write JSON to disk (temp file in the same directory + rename).

    Returns False and logs on failure; never raises.
    """
    file_path = Path(path)
    if not safe_mkdir(file_path.parent, logger):
        return False

    tmp_path: Optional[str] = None
    try:
        fd, tmp_path = tempfile.mkstemp(
            dir=str(file_path.parent), prefix=f".{file_path.name}.", suffix=".tmp"
        )
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)

        if secure_permissions:
            try:
                os.chmod(tmp_path, 0o600)
            except OSError:
                # Not supported on every platform
                pass

        os.replace(tmp_path, file_path)
        tmp_path = None
        return True
    except (OSError, TypeError, ValueError) as e:
        logger.error(f"Failed to write '{file_path}': {e}")
        return False
    finally:
        if tmp_path and os.path.exists(tmp_path):
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
