# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/codex_pool/config.py

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from .utils.paths import get_data_file

lib_logger = logging.getLogger("codex_pool")

DEFAULT_API_BASE = "https://chatgpt.com/backend-api"
DEFAULT_MAX_RETRIES = 5
DEFAULT_QUOTA_COOLDOWN_SECONDS = 60 * 60
DEFAULT_USAGE_TTL_SECONDS = 5 * 60
DEFAULT_USAGE_TIMEOUT_SECONDS = 10


def _env_int(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        lib_logger.warning(f"Invalid {key} value: {raw}, using default {default}")
        return default


def _env_list(key: str) -> List[str]:
    raw = os.getenv(key, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class PoolSettings:
    """Runtime settings for the pool; see ``from_env`` for the variables."""

    storage_file: Path = field(default_factory=get_data_file)
    api_base: str = DEFAULT_API_BASE
    max_retries: int = DEFAULT_MAX_RETRIES
    quota_cooldown_seconds: int = DEFAULT_QUOTA_COOLDOWN_SECONDS
    usage_ttl_seconds: int = DEFAULT_USAGE_TTL_SECONDS
    usage_timeout_seconds: int = DEFAULT_USAGE_TIMEOUT_SECONDS
    model_ids: Optional[List[str]] = None

    @classmethod
    def from_env(cls) -> "PoolSettings":
        """
        Environment variables:
        - CODEX_POOL_STORAGE_FILE
        - CODEX_POOL_API_BASE
        - CODEX_POOL_MAX_RETRIES
        - CODEX_POOL_QUOTA_COOLDOWN_SECONDS
        - CODEX_POOL_USAGE_TTL_SECONDS
        - CODEX_POOL_USAGE_TIMEOUT_SECONDS
        - CODEX_POOL_MODELS (comma separated model ids)
        """
        storage = os.getenv("CODEX_POOL_STORAGE_FILE")
        max_retries = _env_int("CODEX_POOL_MAX_RETRIES", DEFAULT_MAX_RETRIES)
        if max_retries < 0:
            lib_logger.warning(
                f"CODEX_POOL_MAX_RETRIES must not be negative, using {DEFAULT_MAX_RETRIES}"
            )
            max_retries = DEFAULT_MAX_RETRIES

        return cls(
            storage_file=Path(storage).expanduser() if storage else get_data_file(),
            api_base=os.getenv("CODEX_POOL_API_BASE", DEFAULT_API_BASE).rstrip("/"),
            max_retries=max_retries,
            quota_cooldown_seconds=_env_int(
                "CODEX_POOL_QUOTA_COOLDOWN_SECONDS", DEFAULT_QUOTA_COOLDOWN_SECONDS
            ),
            usage_ttl_seconds=_env_int(
                "CODEX_POOL_USAGE_TTL_SECONDS", DEFAULT_USAGE_TTL_SECONDS
            ),
            usage_timeout_seconds=_env_int(
                "CODEX_POOL_USAGE_TIMEOUT_SECONDS", DEFAULT_USAGE_TIMEOUT_SECONDS
            ),
            model_ids=_env_list("CODEX_POOL_MODELS") or None,
        )
