# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/codex_pool/utils/__init__.py

from .paths import get_default_root, get_logs_dir, get_data_file
from .resilient_io import safe_write_json, safe_read_json, safe_mkdir
from .openai_codex_jwt import (
    AUTH_CLAIM,
    ACCOUNT_ID_CLAIM,
    account_id_from_token,
    decode_jwt_unverified,
    extract_account_id_from_payload,
    extract_email_from_payload,
    extract_expiry_ms_from_payload,
)

__all__ = [
    "get_default_root",
    "get_logs_dir",
    "get_data_file",
    "safe_write_json",
    "safe_read_json",
    "safe_mkdir",
    "AUTH_CLAIM",
    "ACCOUNT_ID_CLAIM",
    "account_id_from_token",
    "decode_jwt_unverified",
    "extract_account_id_from_payload",
    "extract_email_from_payload",
    "extract_expiry_ms_from_payload",
]
