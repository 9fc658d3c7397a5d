# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/codex_pool/providers/openai_codex_auth.py

import asyncio
import base64
import hashlib
import inspect
import logging
import os
import secrets
import webbrowser
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Union
from urllib.parse import parse_qs, urlencode, urlparse

import httpx
from aiohttp import web
from rich.console import Console
from rich.markup import escape as rich_escape
from rich.panel import Panel
from rich.text import Text

from ..error_handler import LoginError, get_error_message
from ..token_refresher import (
    CLIENT_ID,
    TOKEN_ENDPOINT,
    TOKEN_REQUEST_HEADERS,
    credentials_from_token_response,
)
from ..types import OAuthCredentials
from ..utils.openai_codex_jwt import decode_jwt_unverified, extract_email_from_payload

lib_logger = logging.getLogger("codex_pool")

SCOPE = "openid profile email offline_access"
AUTHORIZATION_ENDPOINT = "https://auth.openai.com/oauth/authorize"
# Redirect path registered for the Codex CLI client.
# `/oauth2callback` is still accepted for older URLs.
CALLBACK_PATH = "/auth/callback"
LEGACY_CALLBACK_PATH = "/oauth2callback"
CALLBACK_PORT = 1455
CALLBACK_ENV_VAR = "OPENAI_CODEX_OAUTH_PORT"
DEFAULT_LOGIN_TIMEOUT_SECONDS = 300.0

console = Console()

AuthCallback = Callable[[str, str], Any]
PromptCallback = Callable[[str], Union[str, Awaitable[str]]]


class OAuthCallbackServer:
    """Minimal HTTP server for handling OpenAI Codex OAuth callbacks."""

    SUCCESS_HTML = """<!doctype html>
<html lang=\"en\">
<head>
  <meta charset=\"utf-8\" />
  <title>Authentication successful</title>
</head>
<body>
  <p>Authentication successful. Return to your terminal to continue.</p>
</body>
</html>"""

    def __init__(self, port: int = CALLBACK_PORT):
        self.port = port
        self.app = web.Application()
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None
        self.result_future: Optional[asyncio.Future] = None
        self.expected_state: Optional[str] = None

    async def start(self, expected_state: str):
        """Start callback server on localhost:<port>."""
        self.expected_state = expected_state
        self.result_future = asyncio.get_running_loop().create_future()

        for callback_path in (CALLBACK_PATH, LEGACY_CALLBACK_PATH):
            self.app.router.add_get(callback_path, self._handle_callback)

        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, "localhost", self.port)
        await self.site.start()

        lib_logger.debug(
            f"OAuth callback server started on localhost:{self.port}{CALLBACK_PATH}"
        )

    async def stop(self):
        if self.site:
            await self.site.stop()
        if self.runner:
            await self.runner.cleanup()
        lib_logger.debug("OAuth callback server stopped")

    def _fail(self, message: str) -> None:
        if self.result_future is not None and not self.result_future.done():
            self.result_future.set_exception(LoginError(message))

    async def _handle_callback(self, request: web.Request) -> web.Response:
        query = request.query

        if "error" in query:
            error = query.get("error", "unknown_error")
            error_desc = query.get("error_description", "")
            self._fail(f"OAuth error: {error} ({error_desc})")
            return web.Response(status=400, text=f"OAuth error: {error}")

        code = query.get("code")
        state = query.get("state", "")

        if not code:
            self._fail("Missing authorization code")
            return web.Response(status=400, text="Missing authorization code")

        if state != self.expected_state:
            self._fail("State parameter mismatch")
            return web.Response(status=400, text="State mismatch")

        if not self.result_future.done():
            self.result_future.set_result(code)

        return web.Response(status=200, text=self.SUCCESS_HTML, content_type="text/html")

    async def wait_for_callback(self, timeout: float = DEFAULT_LOGIN_TIMEOUT_SECONDS) -> str:
        try:
            return await asyncio.wait_for(asyncio.shield(self.result_future), timeout=timeout)
        except asyncio.TimeoutError:
            raise LoginError("Timeout waiting for OAuth callback")


def get_callback_port() -> int:
    """Get OAuth callback port from env or fallback default."""
    env_value = os.getenv(CALLBACK_ENV_VAR)
    if env_value:
        try:
            return int(env_value)
        except ValueError:
            lib_logger.warning(
                f"Invalid {CALLBACK_ENV_VAR} value: {env_value}, using default {CALLBACK_PORT}"
            )
    return CALLBACK_PORT


def generate_pkce_pair() -> Tuple[str, str]:
    """PKCE verifier/challenge (base64url, no padding)."""
    code_verifier = (
        base64.urlsafe_b64encode(secrets.token_bytes(32)).decode("utf-8").rstrip("=")
    )
    code_challenge = (
        base64.urlsafe_b64encode(hashlib.sha256(code_verifier.encode("utf-8")).digest())
        .decode("utf-8")
        .rstrip("=")
    )
    return code_verifier, code_challenge


def build_authorization_url(redirect_uri: str, code_challenge: str, state: str) -> str:
    auth_params = {
        "response_type": "code",
        "client_id": CLIENT_ID,
        "redirect_uri": redirect_uri,
        "scope": SCOPE,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
        "state": state,
        "id_token_add_organizations": "true",
        "codex_cli_simplified_flow": "true",
        "originator": "pi",
    }
    return f"{AUTHORIZATION_ENDPOINT}?{urlencode(auth_params)}"


def parse_authorization_input(value: str, expected_state: str) -> str:
    """
    Extract the authorization code from a pasted redirect URL or raw code.

    Raises ``LoginError`` on a state mismatch or when no code is present.
    """
    value = (value or "").strip()
    if not value:
        raise LoginError("No authorization code provided")

    if "://" in value or value.startswith("?") or "code=" in value:
        query = urlparse(value).query if "://" in value else value.lstrip("?")
        params = parse_qs(query)
        state = (params.get("state") or [""])[0]
        if state and state != expected_state:
            raise LoginError("State parameter mismatch")
        code = (params.get("code") or [""])[0]
        if not code:
            raise LoginError("Missing authorization code")
        return code

    # code#state form
    if "#" in value:
        code, _, state = value.partition("#")
        if state and state != expected_state:
            raise LoginError("State parameter mismatch")
        return code
    return value


async def exchange_code_for_tokens(
    code: str,
    code_verifier: str,
    redirect_uri: str,
    client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, Any]:
    """Exchange OAuth authorization code for tokens."""
    payload = {
        "grant_type": "authorization_code",
        "code": code,
        "client_id": CLIENT_ID,
        "redirect_uri": redirect_uri,
        "code_verifier": code_verifier,
    }

    if client is not None:
        response = await client.post(TOKEN_ENDPOINT, headers=TOKEN_REQUEST_HEADERS, data=payload)
        response.raise_for_status()
        token_data = response.json()
    else:
        async with httpx.AsyncClient(timeout=30.0) as own_client:
            response = await own_client.post(
                TOKEN_ENDPOINT, headers=TOKEN_REQUEST_HEADERS, data=payload
            )
            response.raise_for_status()
            token_data = response.json()

    if not isinstance(token_data, dict) or not token_data.get("access_token"):
        raise ValueError("Token exchange response missing required fields")
    return token_data


def show_auth_panel(url: str, instructions: str) -> None:
    """Default ``on_auth``: print the URL in a rich panel and open a browser."""
    console.print(
        Panel(
            Text.from_markup(instructions),
            title="[bold yellow]OpenAI Codex OAuth[/bold yellow]",
            style="bold blue",
        )
    )
    console.print(f"[bold]URL:[/bold] [link={url}]{rich_escape(url)}[/link]\n")
    try:
        webbrowser.open(url)
        lib_logger.info("Browser opened for OpenAI Codex OAuth flow")
    except Exception as e:
        lib_logger.warning(f"Failed to auto-open browser for OpenAI Codex OAuth: {e}")


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


async def login_openai_codex(
    on_auth: Optional[AuthCallback] = None,
    on_prompt: Optional[PromptCallback] = None,
    port: Optional[int] = None,
    timeout: float = DEFAULT_LOGIN_TIMEOUT_SECONDS,
    client: Optional[httpx.AsyncClient] = None,
) -> Tuple[OAuthCredentials, Optional[str]]:
    """
    Run the OAuth Authorization Code + PKCE flow.

    ``on_auth(url, instructions)`` shows the authorization URL. When the
    local callback server cannot be started, ``on_prompt(message)`` is asked
    for the redirect URL (or code) instead.

    Returns the credentials and the email from the ID token, if any.
    Raises ``LoginError`` on any failure.
    """
    on_auth = on_auth or show_auth_panel
    code_verifier, code_challenge = generate_pkce_pair()
    state = secrets.token_hex(32)

    callback_port = port or get_callback_port()
    redirect_uri = f"http://localhost:{callback_port}{CALLBACK_PATH}"
    auth_url = build_authorization_url(redirect_uri, code_challenge, state)

    callback_server = OAuthCallbackServer(port=callback_port)
    server_started = False
    try:
        try:
            await callback_server.start(expected_state=state)
            server_started = True
        except OSError as e:
            lib_logger.warning(f"OAuth callback server unavailable on port {callback_port}: {e}")
            if on_prompt is None:
                raise LoginError(
                    f"Cannot listen on localhost:{callback_port} for the OAuth callback"
                ) from e

        if server_started:
            instructions = "Open the URL below, complete sign-in, and return here."
        else:
            instructions = (
                "Open the URL below and complete sign-in.\n"
                "Then paste the URL you were redirected to."
            )
        await _maybe_await(on_auth(auth_url, instructions))

        if server_started:
            code = await callback_server.wait_for_callback(timeout=timeout)
        else:
            pasted = await _maybe_await(on_prompt("Paste the redirect URL or code:"))
            code = parse_authorization_input(pasted, state)

        token_data = await exchange_code_for_tokens(
            code=code,
            code_verifier=code_verifier,
            redirect_uri=redirect_uri,
            client=client,
        )
        creds = credentials_from_token_response(token_data)
    except LoginError:
        raise
    except (httpx.HTTPError, ValueError) as e:
        raise LoginError(f"OAuth login failed: {get_error_message(e)}") from e
    finally:
        if server_started:
            await callback_server.stop()

    email = extract_email_from_payload(
        decode_jwt_unverified(token_data.get("id_token") or "")
    ) or extract_email_from_payload(decode_jwt_unverified(creds.access))

    lib_logger.info("OpenAI Codex OAuth login completed")
    return creds, email
