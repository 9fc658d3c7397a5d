# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/codex_pool/token_refresher.py

import asyncio
import logging
import time
from typing import Any, Dict, Optional

import httpx

from .error_handler import TokenRefreshError, mask_credential
from .storage import CredentialStore
from .types import Account, OAuthCredentials, now_ms
from .utils.openai_codex_jwt import (
    account_id_from_token,
    decode_jwt_unverified,
    extract_expiry_ms_from_payload,
)

lib_logger = logging.getLogger("codex_pool")

# OAuth constants (Codex CLI public client)
CLIENT_ID = "app_EMoamEEZ73f0CkXaXp7hrann"
TOKEN_ENDPOINT = "https://auth.openai.com/oauth/token"

# Refresh when token is close to expiry
REFRESH_EXPIRY_BUFFER_MS = 5 * 60 * 1000

TOKEN_REQUEST_HEADERS = {
    "Content-Type": "application/x-www-form-urlencoded",
    "Accept": "application/json",
    "User-Agent": "codex-pool",
}


def credentials_from_token_response(
    token_data: Dict[str, Any],
    previous_refresh_token: Optional[str] = None,
) -> OAuthCredentials:
    """
    Build credentials from an OAuth token endpoint response.

    Expiry comes from ``expires_in`` when present, else from the access
    token's ``exp`` claim. The account id comes from ``account_id`` /
    ``chatgpt_account_id`` or the JWT claims.
    """
    access_token = token_data.get("access_token")
    if not isinstance(access_token, str) or not access_token:
        raise ValueError("Token response missing access_token")

    refresh_token = token_data.get("refresh_token") or previous_refresh_token
    if not isinstance(refresh_token, str) or not refresh_token:
        raise ValueError("Token response missing refresh_token")

    expires_in = token_data.get("expires_in")
    if isinstance(expires_in, (int, float)):
        expires = int((time.time() + float(expires_in)) * 1000)
    else:
        expires = extract_expiry_ms_from_payload(decode_jwt_unverified(access_token))
        if expires is None:
            raise ValueError("Token response missing expires_in")

    account_id = token_data.get("account_id") or token_data.get("chatgpt_account_id")
    if not isinstance(account_id, str) or not account_id:
        account_id = account_id_from_token(access_token) or account_id_from_token(
            token_data.get("id_token", "")
        )

    return OAuthCredentials(
        access=access_token,
        refresh=refresh_token,
        expires=expires,
        account_id=account_id,
    )


async def refresh_openai_codex_token(
    refresh_token: str,
    client: Optional[httpx.AsyncClient] = None,
    timeout: float = 30.0,
) -> OAuthCredentials:
    """Exchange a refresh token for a fresh token set. Raises httpx errors."""
    payload = {
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
        "client_id": CLIENT_ID,
    }

    if client is not None:
        response = await client.post(
            TOKEN_ENDPOINT, headers=TOKEN_REQUEST_HEADERS, data=payload, timeout=timeout
        )
        response.raise_for_status()
        token_data = response.json()
    else:
        async with httpx.AsyncClient(timeout=timeout) as own_client:
            response = await own_client.post(
                TOKEN_ENDPOINT, headers=TOKEN_REQUEST_HEADERS, data=payload
            )
            response.raise_for_status()
            token_data = response.json()

    if not isinstance(token_data, dict):
        raise ValueError("Token response is not a JSON object")

    return credentials_from_token_response(token_data, previous_refresh_token=refresh_token)


class TokenRefresher:
    """
    Keeps account bearer tokens valid.

    Tokens are reused until five minutes before expiry. Concurrent refreshes
    of the same account share one network call.
    """

    def __init__(
        self,
        store: CredentialStore,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.store = store
        self._client = client
        self._refresh_locks: Dict[str, asyncio.Lock] = {}

    @staticmethod
    def is_token_fresh(account: Account, now: Optional[int] = None) -> bool:
        current = now_ms() if now is None else now
        return current < account.expires_at - REFRESH_EXPIRY_BUFFER_MS

    def _get_lock(self, email: str) -> asyncio.Lock:
        lock = self._refresh_locks.get(email)
        if lock is None:
            lock = asyncio.Lock()
            self._refresh_locks[email] = lock
        return lock

    async def ensure_valid_token(self, account: Account) -> str:
        if self.is_token_fresh(account):
            return account.access_token

        async with self._get_lock(account.email):
            # Another request may have refreshed while we waited
            if self.is_token_fresh(account):
                return account.access_token

            if not account.refresh_token:
                raise TokenRefreshError(
                    account.email,
                    f"No refresh token stored for {account.email}. Please log in again.",
                )

            lib_logger.info(f"Refreshing access token for {mask_credential(account.email)}")

            try:
                creds = await refresh_openai_codex_token(
                    account.refresh_token, client=self._client
                )
            except httpx.HTTPStatusError as e:
                status_code = e.response.status_code
                detail = ""
                try:
                    body = e.response.json()
                    detail = body.get("error_description") or body.get("error") or ""
                except ValueError:
                    detail = e.response.text[:200]
                raise TokenRefreshError(
                    account.email,
                    f"Token refresh failed for {account.email} (HTTP {status_code})"
                    + (f": {detail}" if detail else ""),
                    status_code=status_code,
                ) from e
            except (httpx.RequestError, ValueError) as e:
                raise TokenRefreshError(
                    account.email, f"Token refresh failed for {account.email}: {e}"
                ) from e

            account.apply_credentials(creds)
            self.store.update_credentials(account.email, creds)
            lib_logger.debug(
                f"Token refreshed for {mask_credential(account.email)}, "
                f"expires at {account.expires_at}"
            )
            return account.access_token
