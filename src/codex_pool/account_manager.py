# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/codex_pool/account_manager.py

import asyncio
import logging
from typing import Callable, Iterable, List, Optional

from .config import DEFAULT_QUOTA_COOLDOWN_SECONDS, PoolSettings
from .error_handler import mask_credential
from .selection import pick_best_account
from .storage import CredentialStore
from .token_refresher import TokenRefresher
from .types import Account, OAuthCredentials, UsageSnapshot, now_ms
from .usage_cache import UsageCache, get_next_reset_at

lib_logger = logging.getLogger("codex_pool")


class AccountManager:
    """
    Orchestrates the credential store, usage cache, token refresher and
    selection policy.

    Holds no durable state of its own: every persistent change goes through
    the store. The usage cache and the manual pin are process-lifetime only.
    """

    def __init__(
        self,
        store: CredentialStore,
        usage_cache: Optional[UsageCache] = None,
        token_refresher: Optional[TokenRefresher] = None,
        quota_cooldown_seconds: int = DEFAULT_QUOTA_COOLDOWN_SECONDS,
        warn: Optional[Callable[[str], None]] = None,
    ):
        self.store = store
        self.token_refresher = token_refresher or TokenRefresher(store)
        self.usage_cache = usage_cache or UsageCache(
            self.token_refresher.ensure_valid_token, warn=warn
        )
        self.quota_cooldown_ms = int(quota_cooldown_seconds * 1000)
        self._manual_email: Optional[str] = None

    @classmethod
    def from_settings(
        cls,
        settings: PoolSettings,
        warn: Optional[Callable[[str], None]] = None,
    ) -> "AccountManager":
        store = CredentialStore(settings.storage_file)
        refresher = TokenRefresher(store)
        usage_cache = UsageCache(
            refresher.ensure_valid_token,
            api_base=settings.api_base,
            ttl_seconds=settings.usage_ttl_seconds,
            timeout_seconds=settings.usage_timeout_seconds,
            warn=warn,
        )
        return cls(
            store,
            usage_cache=usage_cache,
            token_refresher=refresher,
            quota_cooldown_seconds=settings.quota_cooldown_seconds,
            warn=warn,
        )

    def set_warning_handler(self, warn: Optional[Callable[[str], None]]) -> None:
        self.usage_cache.warn = warn

    # =========================================================================
    # Read accessors
    # =========================================================================

    def get_accounts(self) -> List[Account]:
        return self.store.list()

    def get_account(self, email: str) -> Optional[Account]:
        return self.store.get(email)

    def get_active_account(self) -> Optional[Account]:
        return self.store.get_active()

    def get_usage(self, email: str) -> Optional[UsageSnapshot]:
        return self.usage_cache.get(email)

    @staticmethod
    def is_available(account: Account, now: Optional[int] = None) -> bool:
        return account.is_available(now)

    # =========================================================================
    # Mutations
    # =========================================================================

    def add_or_update_account(self, email: str, creds: OAuthCredentials) -> Account:
        return self.store.upsert(email, creds)

    def remove_account(self, email: str) -> bool:
        if self._manual_email == email:
            self._manual_email = None
        return self.store.remove(email)

    # =========================================================================
    # Manual pin
    # =========================================================================

    @property
    def manual_email(self) -> Optional[str]:
        return self._manual_email

    def set_manual_account(self, email: str) -> bool:
        """Pin an account ahead of automatic selection; False if unknown."""
        if self.store.get(email) is None:
            return False
        self._manual_email = email
        self.store.set_active(email)
        lib_logger.info(f"Pinned account {mask_credential(email)}")
        return True

    def get_available_manual_account(self) -> Optional[Account]:
        if not self._manual_email:
            return None
        account = self.store.get(self._manual_email)
        if account is None or not account.is_available():
            return None
        return account

    def clear_manual_account(self) -> None:
        if self._manual_email:
            lib_logger.info(f"Cleared manual pin {mask_credential(self._manual_email)}")
        self._manual_email = None

    # =========================================================================
    # Selection + quota
    # =========================================================================

    async def activate_best(
        self,
        exclude_emails: Iterable[str] = (),
        signal: Optional[asyncio.Event] = None,
    ) -> Optional[Account]:
        """Pick the best usable account now and mark it active."""
        excluded = set(exclude_emails)
        self.store.clear_expired_exhaustion()

        accounts = self.store.list()
        if not accounts:
            return None

        await self.usage_cache.refresh_stale(accounts, signal=signal)

        selected = pick_best_account(
            self.store.list(),
            self.usage_cache.snapshot_map(),
            exclude_emails=excluded,
        )
        if selected is None:
            lib_logger.warning(
                f"No available account among {len(accounts)} "
                f"({len(excluded)} excluded for this request)"
            )
            return None

        self.store.set_active(selected.email)
        lib_logger.debug(f"Selected account {mask_credential(selected.email)}")
        return selected

    async def handle_quota_exceeded(
        self,
        account: Account,
        signal: Optional[asyncio.Event] = None,
    ) -> int:
        """Put an account into cooldown; returns the cooldown end (epoch ms)."""
        snapshot = await self.usage_cache.refresh(account, force=True, signal=signal)

        now = now_ms()
        next_reset = get_next_reset_at(snapshot)
        if next_reset is not None and next_reset > now:
            until = next_reset
        else:
            until = now + self.quota_cooldown_ms

        self.store.mark_exhausted(account.email, until)
        lib_logger.warning(
            f"Quota exhausted for {mask_credential(account.email)}; "
            f"cooling down for {max(0, until - now) // 1000}s"
        )
        return until

    async def refresh_usage_for_all(self, force: bool = False) -> None:
        accounts = self.store.list()
        if force:
            await asyncio.gather(*(self.usage_cache.refresh(a, force=True) for a in accounts))
        else:
            await self.usage_cache.refresh_stale(accounts)

    async def ensure_valid_token(self, account: Account) -> str:
        return await self.token_refresher.ensure_valid_token(account)
