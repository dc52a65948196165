import os
import sys
import tempfile
from pathlib import Path

# Configure the environment before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="tessera_test_")
os.environ.setdefault("STATE_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("TOKEN_CLEANUP_INTERVAL_SECONDS", "0")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tessera.config import TokenConfig  # noqa: E402
from tessera.service.refresh_tokens import RefreshTokenManager  # noqa: E402
from tessera.service.runtime import reset_runtime_for_tests  # noqa: E402
from tessera.service.sessions import SessionService  # noqa: E402
from tessera.service.tokens import TokenIssuer  # noqa: E402
from tessera.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "unit-test-signing-secret-0123456789abcdef"


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Fresh snapshot directory per test so state never leaks between tests
    monkeypatch.setenv("STATE_ROOT", str(tmp_path / "state_root"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def token_config():
    return TokenConfig(secret=TEST_SECRET)


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "store"), timeout_seconds=1.0)


@pytest.fixture
def session_service(memory_store, token_config):
    issuer = TokenIssuer(token_config)
    manager = RefreshTokenManager(memory_store, token_config)
    return SessionService(memory_store, issuer, manager)
