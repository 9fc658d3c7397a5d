import asyncio
import base64
import json
import socket
import time
from urllib.parse import parse_qs, urlparse

import aiohttp
import httpx
import pytest
import respx

from codex_pool.error_handler import LoginError
from codex_pool.providers import openai_codex_auth
from codex_pool.providers.openai_codex_auth import (
    CALLBACK_PATH,
    LEGACY_CALLBACK_PATH,
    build_authorization_url,
    generate_pkce_pair,
    get_callback_port,
    login_openai_codex,
    parse_authorization_input,
)
from codex_pool.token_refresher import TOKEN_ENDPOINT
from codex_pool.utils.openai_codex_jwt import (
    decode_jwt_unverified,
    extract_account_id_from_payload,
    extract_email_from_payload,
)


def _build_jwt(payload: dict) -> str:
    header = {"alg": "HS256", "typ": "JWT"}

    def b64url(data: dict) -> str:
        raw = json.dumps(data, separators=(",", ":")).encode("utf-8")
        return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")

    return f"{b64url(header)}.{b64url(payload)}.signature"


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("localhost", 0))
        return sock.getsockname()[1]


def _token_response() -> dict:
    access = _build_jwt(
        {
            "exp": int(time.time()) + 3600,
            "https://api.openai.com/auth": {"chatgpt_account_id": "acct_login"},
        }
    )
    return {
        "access_token": access,
        "refresh_token": "rt_login",
        "id_token": _build_jwt({"email": "login@example.com"}),
        "expires_in": 3600,
    }


def test_callback_paths_match_codex_oauth_client_registration():
    assert CALLBACK_PATH == "/auth/callback"
    assert LEGACY_CALLBACK_PATH == "/oauth2callback"


def test_callback_port_env_override(monkeypatch):
    monkeypatch.setenv("OPENAI_CODEX_OAUTH_PORT", "18080")
    assert get_callback_port() == 18080

    monkeypatch.setenv("OPENAI_CODEX_OAUTH_PORT", "not-a-port")
    assert get_callback_port() == 1455


def test_decode_jwt_helpers():
    token = _build_jwt(
        {
            "sub": "user-123",
            "email": "user@example.com",
            "https://api.openai.com/auth": {"chatgpt_account_id": "acct_123"},
        }
    )
    payload = decode_jwt_unverified(token)

    assert extract_email_from_payload(payload) == "user@example.com"
    assert extract_account_id_from_payload(payload) == "acct_123"
    assert decode_jwt_unverified("not-a-jwt") is None
    assert decode_jwt_unverified("a.b") is None


def test_authorization_url_carries_pkce_and_state():
    verifier, challenge = generate_pkce_pair()
    url = build_authorization_url("http://localhost:1455/auth/callback", challenge, "state-1")
    params = parse_qs(urlparse(url).query)

    assert url.startswith("https://auth.openai.com/oauth/authorize?")
    assert params["code_challenge"] == [challenge]
    assert params["code_challenge_method"] == ["S256"]
    assert params["state"] == ["state-1"]
    assert params["scope"] == ["openid profile email offline_access"]
    assert "=" not in verifier


def test_parse_authorization_input_variants():
    assert parse_authorization_input(
        "http://localhost:1455/auth/callback?code=abc&state=s1", "s1"
    ) == "abc"
    assert parse_authorization_input("code=abc&state=s1", "s1") == "abc"
    assert parse_authorization_input("abc#s1", "s1") == "abc"
    assert parse_authorization_input("  rawcode  ", "s1") == "rawcode"

    with pytest.raises(LoginError):
        parse_authorization_input("http://localhost/cb?code=abc&state=other", "s1")
    with pytest.raises(LoginError):
        parse_authorization_input("", "s1")


@pytest.mark.asyncio
async def test_login_completes_via_local_callback():
    port = _free_port()
    callback_tasks = []

    async def hit_callback(url: str):
        state = parse_qs(urlparse(url).query)["state"][0]
        async with aiohttp.ClientSession() as session:
            async with session.get(
                f"http://localhost:{port}{CALLBACK_PATH}",
                params={"code": "auth-code", "state": state},
            ) as response:
                assert response.status == 200

    def on_auth(url: str, instructions: str):
        callback_tasks.append(asyncio.ensure_future(hit_callback(url)))

    with respx.mock(assert_all_called=True) as mock_router:
        route = mock_router.post(TOKEN_ENDPOINT)

        def responder(request: httpx.Request) -> httpx.Response:
            form = parse_qs(request.content.decode("utf-8"))
            assert form["grant_type"] == ["authorization_code"]
            assert form["code"] == ["auth-code"]
            assert form["redirect_uri"] == [f"http://localhost:{port}{CALLBACK_PATH}"]
            assert form["code_verifier"][0]
            return httpx.Response(200, json=_token_response())

        route.mock(side_effect=responder)
        creds, email = await login_openai_codex(on_auth=on_auth, port=port, timeout=5)

    await asyncio.gather(*callback_tasks)
    assert email == "login@example.com"
    assert creds.refresh == "rt_login"
    assert creds.account_id == "acct_login"


@pytest.mark.asyncio
async def test_login_rejects_state_mismatch():
    port = _free_port()
    callback_tasks = []

    async def hit_callback():
        async with aiohttp.ClientSession() as session:
            async with session.get(
                f"http://localhost:{port}{LEGACY_CALLBACK_PATH}",
                params={"code": "auth-code", "state": "forged"},
            ) as response:
                assert response.status == 400

    def on_auth(url: str, instructions: str):
        callback_tasks.append(asyncio.ensure_future(hit_callback()))

    with pytest.raises(LoginError):
        await login_openai_codex(on_auth=on_auth, port=port, timeout=5)
    await asyncio.gather(*callback_tasks)


@pytest.mark.asyncio
async def test_login_falls_back_to_pasted_redirect(monkeypatch):
    async def refuse_start(self, expected_state):
        raise OSError("address in use")

    monkeypatch.setattr(openai_codex_auth.OAuthCallbackServer, "start", refuse_start)
    seen = {}

    def on_auth(url: str, instructions: str):
        seen["state"] = parse_qs(urlparse(url).query)["state"][0]
        seen["instructions"] = instructions

    async def on_prompt(message: str) -> str:
        return f"http://localhost:1455/auth/callback?code=pasted&state={seen['state']}"

    with respx.mock(assert_all_called=True) as mock_router:
        route = mock_router.post(TOKEN_ENDPOINT).mock(
            return_value=httpx.Response(200, json=_token_response())
        )
        creds, email = await login_openai_codex(on_auth=on_auth, on_prompt=on_prompt)

    assert parse_qs(route.calls.last.request.content.decode("utf-8"))["code"] == ["pasted"]
    assert "paste" in seen["instructions"]
    assert email == "login@example.com"


@pytest.mark.asyncio
async def test_login_without_server_or_prompt_fails(monkeypatch):
    async def refuse_start(self, expected_state):
        raise OSError("address in use")

    monkeypatch.setattr(openai_codex_auth.OAuthCallbackServer, "start", refuse_start)

    with pytest.raises(LoginError):
        await login_openai_codex(on_auth=lambda url, instructions: None)


@pytest.mark.asyncio
async def test_token_exchange_failure_is_login_error(monkeypatch):
    async def refuse_start(self, expected_state):
        raise OSError("address in use")

    monkeypatch.setattr(openai_codex_auth.OAuthCallbackServer, "start", refuse_start)

    async def on_prompt(message: str) -> str:
        return "rawcode"

    with respx.mock(assert_all_called=True) as mock_router:
        mock_router.post(TOKEN_ENDPOINT).mock(
            return_value=httpx.Response(400, json={"error": "invalid_grant"})
        )
        with pytest.raises(LoginError):
            await login_openai_codex(on_auth=lambda url, instructions: None, on_prompt=on_prompt)
