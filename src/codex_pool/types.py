# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Shared data types for the account pool.

All timestamps are integer epoch milliseconds.
"""

import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional


def now_ms() -> int:
    return int(time.time() * 1000)


# =============================================================================
# CREDENTIAL TYPES
# =============================================================================


@dataclass
class OAuthCredentials:
    """Token set produced by a login or a refresh."""

    access: str
    refresh: str
    expires: int
    account_id: Optional[str] = None


@dataclass
class Account:
    """
    One OAuth-authenticated identity in the pool.

    ``email`` is the unique key. ``quota_exhausted_until`` absent or in the
    past means the account is available for selection.
    """

    email: str
    access_token: str
    refresh_token: str
    expires_at: int
    account_id: Optional[str] = None
    last_used: Optional[int] = None
    quota_exhausted_until: Optional[int] = None

    def is_available(self, now: Optional[int] = None) -> bool:
        if self.quota_exhausted_until is None:
            return True
        current = now_ms() if now is None else now
        return self.quota_exhausted_until <= current

    def apply_credentials(self, creds: OAuthCredentials) -> None:
        self.access_token = creds.access
        self.refresh_token = creds.refresh
        self.expires_at = int(creds.expires)
        if creds.account_id:
            self.account_id = creds.account_id

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["Account"]:
        """Build an account from a stored record, or None if it is unusable."""
        email = data.get("email")
        if not isinstance(email, str) or not email:
            return None

        def _opt_int(key: str) -> Optional[int]:
            value = data.get(key)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                return int(value)
            return None

        account_id = data.get("account_id")
        return cls(
            email=email,
            access_token=str(data.get("access_token") or ""),
            refresh_token=str(data.get("refresh_token") or ""),
            expires_at=_opt_int("expires_at") or 0,
            account_id=account_id if isinstance(account_id, str) and account_id else None,
            last_used=_opt_int("last_used"),
            quota_exhausted_until=_opt_int("quota_exhausted_until"),
        )


# =============================================================================
# USAGE TYPES
# =============================================================================


@dataclass(frozen=True)
class UsageWindow:
    """One quota window. At least one of the two fields is always known."""

    used_percent: Optional[float] = None
    reset_at: Optional[int] = None


@dataclass(frozen=True)
class UsageSnapshot:
    """
    Cached view of an account's quota windows.

    ``primary`` is the short window (5 hours), ``secondary`` the long one
    (weekly). A window that reported nothing is None, not a zeroed window.
    """

    primary: Optional[UsageWindow] = None
    secondary: Optional[UsageWindow] = None
    fetched_at: int = 0
