# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Credential store.

Holds the pooled accounts and the active-account pointer, and persists the
whole record as one JSON document after every mutation.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .error_handler import mask_credential
from .types import Account, OAuthCredentials, now_ms
from .utils.resilient_io import safe_read_json, safe_write_json

lib_logger = logging.getLogger("codex_pool")


class CredentialStore:
    """
    Ordered collection of accounts plus an optional ``active_email``.

    The store is the only owner of account records. Every mutating method is
    synchronous and ends with a full rewrite of the file, so under asyncio a
    mutation is never interleaved with another one.

    Load failures degrade to an empty pool. Save failures are logged and
    swallowed; in-memory state stays authoritative for the process lifetime.

    Pass ``file_path=None`` for a purely in-memory store.
    """

    def __init__(self, file_path: Optional[Union[str, Path]] = None):
        self.file_path = Path(file_path) if file_path else None
        self._accounts: List[Account] = []
        self._active_email: Optional[str] = None
        self.load()

    # =========================================================================
    # Persistence
    # =========================================================================

    def load(self) -> None:
        self._accounts = []
        self._active_email = None

        if self.file_path is None:
            return

        data = safe_read_json(self.file_path, lib_logger)
        if data is None:
            return
        if not isinstance(data, dict):
            lib_logger.error(
                f"Ignoring account store '{self.file_path}': expected an object"
            )
            return

        seen = set()
        for record in data.get("accounts") or []:
            if not isinstance(record, dict):
                continue
            account = Account.from_dict(record)
            if account is None or account.email in seen:
                continue
            seen.add(account.email)
            self._accounts.append(account)

        active = data.get("active_email")
        if isinstance(active, str) and active in seen:
            self._active_email = active

        lib_logger.debug(f"Loaded {len(self._accounts)} accounts from {self.file_path}")

    def save(self) -> bool:
        if self.file_path is None:
            return True

        data: Dict[str, Any] = {
            "accounts": [account.to_dict() for account in self._accounts],
        }
        if self._active_email:
            data["active_email"] = self._active_email

        saved = safe_write_json(
            self.file_path, data, lib_logger, secure_permissions=True
        )
        if not saved:
            lib_logger.error(
                f"Failed to persist account store '{self.file_path.name}'; "
                "keeping in-memory state"
            )
        return saved

    # =========================================================================
    # Accessors
    # =========================================================================

    @property
    def active_email(self) -> Optional[str]:
        if self._active_email and self.get(self._active_email):
            return self._active_email
        return None

    def list(self) -> List[Account]:
        return list(self._accounts)

    def get(self, email: str) -> Optional[Account]:
        for account in self._accounts:
            if account.email == email:
                return account
        return None

    def get_active(self) -> Optional[Account]:
        email = self.active_email
        return self.get(email) if email else None

    # =========================================================================
    # Mutations
    # =========================================================================

    def upsert(self, email: str, creds: OAuthCredentials) -> Account:
        """Insert or update an account from fresh credentials and make it active."""
        account = self.get(email)
        if account:
            account.apply_credentials(creds)
            lib_logger.info(f"Updated credentials for {mask_credential(email)}")
        else:
            account = Account(
                email=email,
                access_token=creds.access,
                refresh_token=creds.refresh,
                expires_at=int(creds.expires),
                account_id=creds.account_id,
            )
            self._accounts.append(account)
            lib_logger.info(f"Added account {mask_credential(email)} to the pool")

        self._active_email = email
        account.last_used = now_ms()
        self.save()
        return account

    def update_credentials(self, email: str, creds: OAuthCredentials) -> Optional[Account]:
        """Overwrite token fields without touching the active pointer."""
        account = self.get(email)
        if account is None:
            return None
        account.apply_credentials(creds)
        self.save()
        return account

    def set_active(self, email: str) -> None:
        account = self.get(email)
        if account is None:
            return
        self._active_email = email
        account.last_used = now_ms()
        self.save()

    def mark_exhausted(self, email: str, until: int) -> None:
        account = self.get(email)
        if account is None:
            return
        account.quota_exhausted_until = int(until)
        self.save()

    def clear_expired_exhaustion(self, now: Optional[int] = None) -> int:
        """Clear every cooldown that has passed; persists once if any changed."""
        current = now_ms() if now is None else now
        cleared = 0
        for account in self._accounts:
            until = account.quota_exhausted_until
            if until is not None and until <= current:
                account.quota_exhausted_until = None
                cleared += 1

        if cleared:
            lib_logger.debug(f"Cleared {cleared} expired quota cooldown(s)")
            self.save()
        return cleared

    def remove(self, email: str) -> bool:
        account = self.get(email)
        if account is None:
            return False
        self._accounts.remove(account)
        if self._active_email == email:
            self._active_email = None
        self.save()
        lib_logger.info(f"Removed account {mask_credential(email)} from the pool")
        return True
