# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
User commands and session hooks for the account pool.

Everything user-visible goes through a ``PoolUI`` so the same commands work
in a terminal host, an editor plugin or a test double.
"""

import logging
from typing import Any, Awaitable, Callable, List, Optional, Protocol, Tuple

from .account_manager import AccountManager
from .error_handler import get_error_message, mask_credential
from .provider import PROVIDER_ID
from .types import Account, OAuthCredentials, now_ms
from .usage_cache import format_usage_tag

lib_logger = logging.getLogger("codex_pool")

LoginFunction = Callable[..., Awaitable[Tuple[OAuthCredentials, Optional[str]]]]


class PoolUI(Protocol):
    def notify(self, message: str, level: str = "info") -> None: ...

    async def select(self, title: str, options: List[str]) -> Optional[str]: ...

    async def input(self, prompt: str) -> Optional[str]: ...

    def set_status(self, key: str, text: str) -> None: ...


class PoolCommands:
    """login / list / use / auto / remove plus the session lifecycle hooks."""

    def __init__(
        self,
        manager: AccountManager,
        ui: PoolUI,
        login_fn: Optional[LoginFunction] = None,
    ):
        self.manager = manager
        self.ui = ui
        if login_fn is None:
            from .providers.openai_codex_auth import login_openai_codex

            login_fn = login_openai_codex
        self.login_fn = login_fn

    # =========================================================================
    # Status line
    # =========================================================================

    def format_status(self, now: Optional[int] = None) -> str:
        active = self.manager.get_active_account()
        if active is None:
            return "No account"

        status = active.email
        if not active.is_available(now):
            status += " (Quota Hit)"
        if self.manager.manual_email == active.email:
            status += " [manual]"
        return status

    def update_status(self) -> None:
        self.ui.set_status(PROVIDER_ID, self.format_status())

    # =========================================================================
    # Commands
    # =========================================================================

    async def login(self, email: str) -> Optional[Account]:
        email = (email or "").strip()
        if not email:
            self.ui.notify(
                "Please provide an email/identifier: codex-pool login my@email.com",
                "error",
            )
            return None

        self.ui.notify(f"Starting login for {email}... Check your browser.", "info")

        def on_auth(url: str, instructions: str = "") -> None:
            self.ui.notify(f"Please open this URL to login: {url}", "info")
            lib_logger.info(f"Login URL for {mask_credential(email)}: {url}")

        async def on_prompt(message: str) -> str:
            return (await self.ui.input(message)) or ""

        try:
            creds, token_email = await self.login_fn(on_auth=on_auth, on_prompt=on_prompt)
        except Exception as e:
            lib_logger.warning(f"Login failed for {mask_credential(email)}: {e}")
            self.ui.notify(f"Login failed: {get_error_message(e)}", "error")
            return None

        if token_email and token_email.lower() != email.lower():
            lib_logger.info(
                f"Login identifier {mask_credential(email)} differs from token email "
                f"{mask_credential(token_email)}; storing under the identifier"
            )

        account = self.manager.add_or_update_account(email, creds)
        self.ui.notify(f"Successfully logged in as {email}", "info")
        self.update_status()
        return account

    async def list_accounts(self) -> List[str]:
        accounts = self.manager.get_accounts()
        if not accounts:
            self.ui.notify("No accounts logged in. Use codex-pool login first.", "warning")
            return []

        await self.manager.refresh_usage_for_all()

        now = now_ms()
        active = self.manager.get_active_account()
        lines = []
        for account in accounts:
            markers = []
            if active is not None and account.email == active.email:
                markers.append("active")
            if self.manager.manual_email == account.email:
                markers.append("manual")
            if not account.is_available(now):
                markers.append("quota")
            label = f" ({', '.join(markers)})" if markers else ""
            usage = format_usage_tag(self.manager.get_usage(account.email), now)
            lines.append(f"{account.email}{label} - {usage}")
        return lines

    async def use(self, email: Optional[str] = None) -> Optional[str]:
        accounts = self.manager.get_accounts()
        if not accounts:
            self.ui.notify("No accounts logged in. Use codex-pool login first.", "warning")
            return None

        if not email:
            now = now_ms()
            options = [
                a.email + ("" if a.is_available(now) else " (Quota)") for a in accounts
            ]
            selected = await self.ui.select("Select Account", options)
            if not selected:
                return None
            email = selected.split(" ")[0]

        if not self.manager.set_manual_account(email):
            self.ui.notify(f"Unknown account: {email}", "error")
            return None

        self.update_status()
        self.ui.notify(f"Switched to {email}", "info")
        return email

    def auto(self) -> None:
        self.manager.clear_manual_account()
        self.update_status()
        self.ui.notify("Automatic account selection enabled", "info")

    def remove(self, email: str) -> bool:
        email = (email or "").strip()
        if not email or not self.manager.remove_account(email):
            self.ui.notify(f"Unknown account: {email}", "error")
            return False
        self.update_status()
        self.ui.notify(f"Removed {email}", "info")
        return True

    # =========================================================================
    # Hooks
    # =========================================================================

    async def on_session_start(self, event: Any = None) -> None:
        active = self.manager.get_active_account()
        if (active is None or not active.is_available()) and self.manager.get_accounts():
            await self.manager.activate_best()
        self.update_status()

    async def on_session_switch(self, reason: Optional[str] = None) -> None:
        if reason != "new":
            return
        if self.manager.get_available_manual_account() is None:
            await self.manager.activate_best()
        self.update_status()
