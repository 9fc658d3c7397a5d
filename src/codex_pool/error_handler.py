# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/codex_pool/error_handler.py

import json
import re
from typing import Any, Optional

QUOTA_ERROR_PATTERN = re.compile(
    r"\b429\b|quota|usage limit|rate.?limit|too many requests|limit reached",
    re.IGNORECASE,
)


class CodexPoolError(Exception):
    """Base class for errors raised by the account pool."""


class NoAvailableAccountsError(CodexPoolError):
    """Raised when no pooled account can serve a request."""

    def __init__(self, message: Optional[str] = None):
        super().__init__(
            message
            or "No available Codex pool accounts. Add one with `codex-pool login <email>`."
        )


class TokenRefreshError(CodexPoolError):
    """
    Raised when an account's refresh token cannot produce a new access token.

    The credential is unusable until the user logs in again; this is not a
    quota condition and is never retried on the same account.
    """

    def __init__(self, email: str, message: str, status_code: Optional[int] = None):
        self.email = email
        self.status_code = status_code
        super().__init__(message)


class UsageFetchError(CodexPoolError):
    """Raised internally when the usage endpoint cannot be read."""


class LoginError(CodexPoolError):
    """Raised when the interactive OAuth login does not yield credentials."""


class RequestAbortedError(CodexPoolError):
    """Raised when the caller's abort signal fires during a network call."""

    def __init__(self, message: str = "Request was aborted"):
        super().__init__(message)


def is_quota_error_message(message: str) -> bool:
    """True if an upstream error message looks like a quota / rate-limit error."""
    if not message:
        return False
    return QUOTA_ERROR_PATTERN.search(message) is not None


def get_error_message(err: Any) -> str:
    if isinstance(err, BaseException):
        return str(err) or err.__class__.__name__
    if isinstance(err, str):
        return err
    try:
        return json.dumps(err)
    except (TypeError, ValueError):
        return repr(err)


def mask_credential(value: Optional[str]) -> str:
    """Mask an email or token for log output."""
    if not value:
        return "<none>"
    if "@" in value:
        local, _, domain = value.partition("@")
        return f"{local[:2]}***@{domain}"
    if len(value) <= 8:
        return "****"
    return f"{value[:4]}****{value[-4:]}"
