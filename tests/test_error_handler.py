import pytest

from codex_pool.error_handler import (
    CodexPoolError,
    LoginError,
    NoAvailableAccountsError,
    RequestAbortedError,
    TokenRefreshError,
    UsageFetchError,
    get_error_message,
    is_quota_error_message,
    mask_credential,
)


@pytest.mark.parametrize(
    "message",
    [
        "HTTP 429 Too Many Requests",
        "You have hit your ChatGPT usage limit.",
        "Quota exceeded",
        "rate limit exceeded",
        "Rate-Limit: exceeded",
        "ratelimit",
        "too many requests",
        "Limit reached for this window",
    ],
)
def test_quota_messages_are_detected(message):
    assert is_quota_error_message(message) is True


@pytest.mark.parametrize(
    "message",
    ["network error", "bad request", "HTTP 500: internal", "code 14290", ""],
)
def test_unrelated_messages_are_not_quota_errors(message):
    assert is_quota_error_message(message) is False


def test_error_hierarchy():
    for cls in (NoAvailableAccountsError, UsageFetchError, LoginError, RequestAbortedError):
        assert issubclass(cls, CodexPoolError)

    err = TokenRefreshError("a@example.com", "refresh failed", status_code=401)
    assert isinstance(err, CodexPoolError)
    assert err.email == "a@example.com"
    assert err.status_code == 401
    assert str(err) == "refresh failed"


def test_no_available_accounts_default_message_mentions_login():
    assert "login" in str(NoAvailableAccountsError())


def test_get_error_message_variants():
    assert get_error_message(ValueError("boom")) == "boom"
    assert get_error_message(ValueError()) == "ValueError"
    assert get_error_message("plain") == "plain"
    assert get_error_message({"a": 1}) == '{"a": 1}'


def test_mask_credential():
    assert mask_credential("someone@example.com") == "so***@example.com"
    assert mask_credential("abcdefghijkl") == "abcd****ijkl"
    assert mask_credential("short") == "****"
    assert mask_credential(None) == "<none>"
