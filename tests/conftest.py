import sys
import time
from pathlib import Path

import pytest


ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from codex_pool.storage import CredentialStore  # noqa: E402
from codex_pool.types import Account  # noqa: E402


@pytest.fixture(autouse=True)
def isolated_pool_home(tmp_path: Path, monkeypatch):
    """Keep every test away from the real ~/.codex_pool directory."""
    monkeypatch.setenv("CODEX_POOL_HOME", str(tmp_path / "pool_home"))
    for key in (
        "CODEX_POOL_STORAGE_FILE",
        "CODEX_POOL_API_BASE",
        "CODEX_POOL_MAX_RETRIES",
        "CODEX_POOL_QUOTA_COOLDOWN_SECONDS",
        "CODEX_POOL_USAGE_TTL_SECONDS",
        "CODEX_POOL_USAGE_TIMEOUT_SECONDS",
        "CODEX_POOL_MODELS",
    ):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def store_path(tmp_path: Path) -> Path:
    return tmp_path / "accounts.json"


@pytest.fixture
def store(store_path: Path) -> CredentialStore:
    return CredentialStore(store_path)


def make_account(email: str, **overrides) -> Account:
    fields = {
        "email": email,
        "access_token": f"access-{email}",
        "refresh_token": f"refresh-{email}",
        # Fresh for an hour so no test refreshes by accident
        "expires_at": int(time.time() * 1000) + 3600 * 1000,
    }
    fields.update(overrides)
    return Account(**fields)
