import random

from codex_pool.selection import pick_best_account
from codex_pool.types import UsageSnapshot, UsageWindow

from conftest import make_account


def _usage(p_pct, p_reset, s_pct, s_reset) -> UsageSnapshot:
    return UsageSnapshot(
        primary=UsageWindow(used_percent=p_pct, reset_at=p_reset),
        secondary=UsageWindow(used_percent=s_pct, reset_at=s_reset),
        fetched_at=0,
    )


def test_prefers_untouched_accounts():
    accounts = [make_account("a"), make_account("b")]
    usage = {
        "a": _usage(10, 5000, 10, 6000),
        "b": _usage(0, 4000, 0, 7000),
    }

    assert pick_best_account(accounts, usage, now=0).email == "b"


def test_untouched_wins_even_with_later_reset():
    accounts = [make_account("a"), make_account("b")]
    usage = {
        "a": _usage(50, 100, 50, 200),
        "b": _usage(0, 9000, 0, 9999),
    }

    assert pick_best_account(accounts, usage, now=0).email == "b"


def test_prefers_earliest_reset_when_all_touched():
    accounts = [make_account("a"), make_account("b")]
    usage = {
        "a": _usage(10, 5000, 10, 8000),
        "b": _usage(20, 3000, 20, 9000),
    }

    assert pick_best_account(accounts, usage, now=0).email == "b"


def test_secondary_reset_counts_toward_earliest():
    accounts = [make_account("a"), make_account("b")]
    usage = {
        "a": UsageSnapshot(
            primary=UsageWindow(used_percent=10),
            secondary=UsageWindow(used_percent=10, reset_at=1000),
        ),
        "b": _usage(10, 3000, 10, 9000),
    }

    assert pick_best_account(accounts, usage, now=0).email == "a"


def test_falls_back_to_random_available_when_usage_unknown():
    accounts = [make_account("a"), make_account("b")]

    selected = pick_best_account(accounts, {}, now=0)
    assert selected.email in {"a", "b"}


def test_random_fallback_uses_injected_rng():
    accounts = [make_account("a"), make_account("b"), make_account("c")]
    picks = {
        pick_best_account(accounts, {}, now=0, rng=random.Random(seed)).email
        for seed in range(30)
    }
    assert picks <= {"a", "b", "c"}
    assert len(picks) > 1


def test_ignores_exhausted_accounts():
    accounts = [
        make_account("a", quota_exhausted_until=2000),
        make_account("b"),
    ]
    usage = {
        "a": _usage(0, 1000, 0, 1000),
        "b": _usage(50, 9000, 50, 9000),
    }

    assert pick_best_account(accounts, usage, now=1000).email == "b"


def test_expired_cooldown_counts_as_available():
    accounts = [make_account("a", quota_exhausted_until=500)]

    assert pick_best_account(accounts, {}, now=1000).email == "a"


def test_excluded_accounts_are_never_returned():
    accounts = [make_account("a"), make_account("b")]
    usage = {"a": _usage(0, 1, 0, 1)}

    assert pick_best_account(accounts, usage, exclude_emails={"a"}, now=0).email == "b"


def test_returns_none_when_nothing_is_available():
    accounts = [
        make_account("a", quota_exhausted_until=5000),
        make_account("b"),
    ]

    assert pick_best_account(accounts, {}, exclude_emails={"b"}, now=0) is None
    assert pick_best_account([], {}, now=0) is None


def test_usage_without_resets_falls_back_to_random():
    accounts = [make_account("a"), make_account("b")]
    usage = {"a": UsageSnapshot(primary=UsageWindow(used_percent=40))}

    assert pick_best_account(accounts, usage, now=0).email in {"a", "b"}
