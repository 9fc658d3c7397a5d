# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/codex_pool/usage_cache.py
"""
Codex usage cache.

Fetches quota-window usage from the Codex usage endpoint and keeps one
snapshot per account email for a short TTL.

Usage structure (from the Codex API):
- Primary window: short-term limit (5 hours)
- Secondary window: long-term limit (weekly)

Snapshots are process-lifetime only and never written to disk. A failed
fetch is logged, reported through the warning sink, and falls back to the
previous snapshot; it never fails the caller.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import httpx

from .config import DEFAULT_API_BASE, DEFAULT_USAGE_TIMEOUT_SECONDS, DEFAULT_USAGE_TTL_SECONDS
from .error_handler import RequestAbortedError, UsageFetchError, mask_credential
from .types import Account, UsageSnapshot, UsageWindow, now_ms
from .utils.abort import run_abortable

lib_logger = logging.getLogger("codex_pool")

USAGE_ENDPOINT_PATH = "/wham/usage"

TokenSource = Callable[[Account], Awaitable[str]]
WarningSink = Callable[[str], None]


# =============================================================================
# PARSING
# =============================================================================


def _parse_percent(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        return None
    try:
        percent = float(value)
    except ValueError:
        return None
    if percent != percent:  # NaN
        return None
    return max(0.0, min(100.0, percent))


def _parse_reset_ms(value: Any) -> Optional[int]:
    """Upstream reports epoch seconds; the pool works in epoch milliseconds."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(float(value) * 1000)


def _parse_window(data: Any) -> Optional[UsageWindow]:
    if not isinstance(data, dict):
        return None
    used_percent = _parse_percent(data.get("used_percent"))
    reset_at = _parse_reset_ms(data.get("reset_at"))
    if used_percent is None and reset_at is None:
        return None
    return UsageWindow(used_percent=used_percent, reset_at=reset_at)


def parse_codex_usage_response(
    payload: Dict[str, Any], fetched_at: Optional[int] = None
) -> UsageSnapshot:
    """
    Normalize a usage endpoint payload.

    Accepts ``{"rate_limit": {"primary_window": ..., "secondary_window": ...}}``
    as well as the windows at top level.
    """
    if not isinstance(payload, dict):
        payload = {}
    rate_limit = payload.get("rate_limit")
    if not isinstance(rate_limit, dict):
        rate_limit = payload

    return UsageSnapshot(
        primary=_parse_window(rate_limit.get("primary_window")),
        secondary=_parse_window(rate_limit.get("secondary_window")),
        fetched_at=now_ms() if fetched_at is None else fetched_at,
    )


def is_usage_untouched(snapshot: Optional[UsageSnapshot]) -> bool:
    """True only if both windows report exactly 0% used. Unknown is not untouched."""
    if snapshot is None or snapshot.primary is None or snapshot.secondary is None:
        return False
    return snapshot.primary.used_percent == 0 and snapshot.secondary.used_percent == 0


def get_next_reset_at(snapshot: Optional[UsageSnapshot]) -> Optional[int]:
    if snapshot is None:
        return None
    resets = [
        window.reset_at
        for window in (snapshot.primary, snapshot.secondary)
        if window is not None and window.reset_at is not None
    ]
    return min(resets) if resets else None


def _format_duration(ms: int) -> str:
    minutes = max(0, ms) // 60000
    days, rem = divmod(minutes, 24 * 60)
    hours, minutes = divmod(rem, 60)
    if days:
        return f"{days}d {hours}h"
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def format_usage_tag(snapshot: Optional[UsageSnapshot], now: Optional[int] = None) -> str:
    """Short human-readable usage summary for account listings."""
    if snapshot is None:
        return "usage unknown"

    current = now_ms() if now is None else now
    parts: List[str] = []
    for label, window in (("5h", snapshot.primary), ("wk", snapshot.secondary)):
        if window is None or window.used_percent is None:
            parts.append(f"{label} ?")
        else:
            parts.append(f"{label} {window.used_percent:.0f}%")

    tag = " / ".join(parts)
    next_reset = get_next_reset_at(snapshot)
    if next_reset is not None and next_reset > current:
        tag += f" resets in {_format_duration(next_reset - current)}"
    return tag


# =============================================================================
# CACHE
# =============================================================================


class UsageCache:
    """
    Per-email usage snapshots with a TTL.

    ``token_source`` returns a live bearer token for an account (normally
    ``TokenRefresher.ensure_valid_token``).
    """

    def __init__(
        self,
        token_source: TokenSource,
        api_base: str = DEFAULT_API_BASE,
        ttl_seconds: int = DEFAULT_USAGE_TTL_SECONDS,
        timeout_seconds: float = DEFAULT_USAGE_TIMEOUT_SECONDS,
        warn: Optional[WarningSink] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.token_source = token_source
        self.api_base = api_base.rstrip("/")
        self.ttl_ms = int(ttl_seconds * 1000)
        self.timeout_seconds = timeout_seconds
        self.warn = warn
        self._client = client
        self._snapshots: Dict[str, UsageSnapshot] = {}

    @property
    def usage_url(self) -> str:
        return f"{self.api_base}{USAGE_ENDPOINT_PATH}"

    def get(self, email: str) -> Optional[UsageSnapshot]:
        return self._snapshots.get(email)

    def snapshot_map(self) -> Dict[str, UsageSnapshot]:
        return dict(self._snapshots)

    def is_stale(self, email: str, now: Optional[int] = None) -> bool:
        snapshot = self._snapshots.get(email)
        if snapshot is None:
            return True
        current = now_ms() if now is None else now
        return current - snapshot.fetched_at >= self.ttl_ms

    async def _fetch_usage(self, account: Account) -> UsageSnapshot:
        token = await self.token_source(account)

        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
            "User-Agent": "codex-cli",
        }
        if account.account_id:
            headers["ChatGPT-Account-Id"] = account.account_id

        if self._client is not None:
            response = await self._client.get(self.usage_url, headers=headers)
        else:
            async with httpx.AsyncClient() as client:
                response = await client.get(self.usage_url, headers=headers)

        if response.status_code >= 400:
            raise UsageFetchError(f"HTTP {response.status_code}: {response.text[:200]}")

        try:
            payload = response.json()
        except ValueError as e:
            raise UsageFetchError(f"Invalid usage payload: {e}") from e

        return parse_codex_usage_response(payload)

    async def refresh(
        self,
        account: Account,
        force: bool = False,
        signal: Optional[asyncio.Event] = None,
    ) -> Optional[UsageSnapshot]:
        """Return a fresh-enough snapshot, fetching it if stale or forced."""
        cached = self._snapshots.get(account.email)
        if cached is not None and not force and not self.is_stale(account.email):
            return cached

        try:
            snapshot = await run_abortable(
                self._fetch_usage(account), signal, timeout=self.timeout_seconds
            )
        except asyncio.CancelledError:
            raise
        except RequestAbortedError:
            lib_logger.debug(f"Usage fetch aborted for {mask_credential(account.email)}")
            return cached
        except asyncio.TimeoutError:
            self._report(account, f"timed out after {self.timeout_seconds}s")
            return cached
        except Exception as e:
            self._report(account, str(e) or e.__class__.__name__)
            return cached

        self._snapshots[account.email] = snapshot
        lib_logger.debug(
            f"Fetched Codex usage for {mask_credential(account.email)}: "
            f"{format_usage_tag(snapshot)}"
        )
        return snapshot

    async def refresh_stale(
        self,
        accounts: Iterable[Account],
        signal: Optional[asyncio.Event] = None,
    ) -> None:
        """Refresh every account with an absent or stale snapshot, in parallel."""
        stale = [a for a in accounts if self.is_stale(a.email)]
        if not stale:
            return

        lib_logger.debug(f"Refreshing Codex usage for {len(stale)} account(s)")
        await asyncio.gather(*(self.refresh(a, signal=signal) for a in stale))

    def _report(self, account: Account, reason: str) -> None:
        message = f"Failed to fetch Codex usage for {account.email}: {reason}"
        lib_logger.warning(message)
        if self.warn:
            try:
                self.warn(message)
            except Exception as e:
                lib_logger.debug(f"Usage warning sink failed: {e}")
