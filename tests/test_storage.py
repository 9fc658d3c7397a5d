import json
from pathlib import Path

from codex_pool.storage import CredentialStore
from codex_pool.types import OAuthCredentials


def _creds(tag: str, expires: int = 10_000, account_id=None) -> OAuthCredentials:
    return OAuthCredentials(
        access=f"access-{tag}", refresh=f"refresh-{tag}", expires=expires, account_id=account_id
    )


def test_missing_file_is_an_empty_pool(tmp_path: Path):
    store = CredentialStore(tmp_path / "nope" / "accounts.json")

    assert store.list() == []
    assert store.active_email is None
    assert store.get_active() is None


def test_corrupt_file_is_an_empty_pool(store_path: Path):
    store_path.write_text("{not json", encoding="utf-8")

    store = CredentialStore(store_path)
    assert store.list() == []


def test_upsert_persists_and_sets_active(store: CredentialStore, store_path: Path):
    account = store.upsert("a@example.com", _creds("1", account_id="acct_1"))

    assert account.account_id == "acct_1"
    assert account.last_used is not None
    assert store.active_email == "a@example.com"

    data = json.loads(store_path.read_text(encoding="utf-8"))
    assert data["active_email"] == "a@example.com"
    assert data["accounts"][0]["email"] == "a@example.com"
    assert data["accounts"][0]["access_token"] == "access-1"
    assert "quota_exhausted_until" not in data["accounts"][0]


def test_upsert_same_email_updates_in_place(store: CredentialStore):
    store.upsert("a@example.com", _creds("1", account_id="acct_1"))
    store.upsert("b@example.com", _creds("2"))
    store.mark_exhausted("a@example.com", 99_999)

    updated = store.upsert("a@example.com", _creds("3", expires=20_000))

    assert [a.email for a in store.list()] == ["a@example.com", "b@example.com"]
    assert updated.access_token == "access-3"
    assert updated.expires_at == 20_000
    # Missing account id in the new credentials keeps the known one
    assert updated.account_id == "acct_1"
    # Re-login does not lift a cooldown
    assert updated.quota_exhausted_until == 99_999
    assert store.active_email == "a@example.com"


def test_round_trip_through_disk(store: CredentialStore, store_path: Path):
    store.upsert("a@example.com", _creds("1"))
    store.upsert("b@example.com", _creds("2"))
    store.mark_exhausted("a@example.com", 5_000)
    store.set_active("b@example.com")

    reloaded = CredentialStore(store_path)

    assert [a.email for a in reloaded.list()] == ["a@example.com", "b@example.com"]
    assert reloaded.get("a@example.com").quota_exhausted_until == 5_000
    assert reloaded.active_email == "b@example.com"


def test_dangling_active_email_is_treated_as_absent(store_path: Path):
    store_path.write_text(
        json.dumps(
            {
                "accounts": [
                    {"email": "a@example.com", "access_token": "x", "refresh_token": "y", "expires_at": 1},
                    {"email": "a@example.com", "access_token": "dup", "refresh_token": "dup", "expires_at": 2},
                    {"access_token": "no-email"},
                    "junk",
                ],
                "active_email": "ghost@example.com",
            }
        ),
        encoding="utf-8",
    )

    store = CredentialStore(store_path)

    assert [a.email for a in store.list()] == ["a@example.com"]
    assert store.get("a@example.com").access_token == "x"
    assert store.active_email is None


def test_update_credentials_keeps_active_pointer(store: CredentialStore):
    store.upsert("a@example.com", _creds("1"))
    store.upsert("b@example.com", _creds("2"))

    store.update_credentials("a@example.com", _creds("refreshed", expires=50_000))

    assert store.active_email == "b@example.com"
    assert store.get("a@example.com").access_token == "access-refreshed"
    assert store.update_credentials("ghost@example.com", _creds("x")) is None


def test_clear_expired_exhaustion_saves_once(store: CredentialStore, monkeypatch):
    store.upsert("a@example.com", _creds("1"))
    store.upsert("b@example.com", _creds("2"))
    store.upsert("c@example.com", _creds("3"))
    store.mark_exhausted("a@example.com", 100)
    store.mark_exhausted("b@example.com", 200)
    store.mark_exhausted("c@example.com", 10_000)

    saves = []
    original_save = store.save

    def counting_save():
        saves.append(1)
        return original_save()

    monkeypatch.setattr(store, "save", counting_save)

    assert store.clear_expired_exhaustion(now=1_000) == 2
    assert len(saves) == 1
    assert store.get("a@example.com").quota_exhausted_until is None
    assert store.get("b@example.com").quota_exhausted_until is None
    assert store.get("c@example.com").quota_exhausted_until == 10_000

    assert store.clear_expired_exhaustion(now=1_000) == 0
    assert len(saves) == 1


def test_remove_clears_active(store: CredentialStore, store_path: Path):
    store.upsert("a@example.com", _creds("1"))

    assert store.remove("a@example.com") is True
    assert store.remove("a@example.com") is False
    assert store.active_email is None
    assert json.loads(store_path.read_text(encoding="utf-8"))["accounts"] == []


def test_set_active_ignores_unknown_email(store: CredentialStore):
    store.upsert("a@example.com", _creds("1"))
    store.set_active("ghost@example.com")

    assert store.active_email == "a@example.com"


def test_in_memory_store_never_touches_disk(tmp_path: Path):
    store = CredentialStore(None)
    store.upsert("a@example.com", _creds("1"))

    assert store.get("a@example.com") is not None
    assert store.save() is True
    assert not any(p.name == "accounts.json" for p in tmp_path.rglob("*"))


def test_save_failure_keeps_memory_state(tmp_path: Path):
    blocker = tmp_path / "blocker"
    blocker.write_text("file, not a directory", encoding="utf-8")
    store = CredentialStore(blocker / "accounts.json")

    account = store.upsert("a@example.com", _creds("1"))

    assert account.email == "a@example.com"
    assert store.save() is False
    assert store.get("a@example.com") is not None
