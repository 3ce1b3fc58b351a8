import os

# Keep a developer's config.json out of the test run
os.environ["CONFIG_PATH"] = os.path.join(os.path.dirname(__file__), "nonexistent-config.json")

import pytest  # noqa: E402

from app.config.settings import TokenConfig  # noqa: E402
from app.infra.concurrency import MemoryConcurrencyGate  # noqa: E402
from app.infra.token_store import MemoryTokenStore  # noqa: E402
from app.services.download import DownloadOrchestrator  # noqa: E402
from app.services.stream_token import StreamTokenService  # noqa: E402
from app.services.ytdlp import ProcessRunner  # noqa: E402
from helpers import STUB_COMMAND, FakeClock  # noqa: E402

STUB_ENV_VARS = (
    "STUB_EXIT", "STUB_STDERR", "STUB_STDERR_REPEAT", "STUB_SLEEP", "STUB_IGNORE_TERM", "STUB_PID_FILE",
    "STUB_SPAWN_CHILD", "STUB_CHILD_PID_FILE", "STUB_LOG", "STUB_MALFORMED",
    "STUB_INFO_JSON", "STUB_BYTES", "STUB_EXT", "STUB_NO_OUTPUT",
)


@pytest.fixture(autouse=True)
def clean_stub_env(monkeypatch):
    for name in STUB_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def token_config():
    return TokenConfig(ttl_seconds=60, retention_seconds=300)


@pytest.fixture
def token_store(clock):
    return MemoryTokenStore(clock=clock)


@pytest.fixture
def tokens(token_store, token_config, clock):
    return StreamTokenService(token_store, token_config, clock=clock)


@pytest.fixture
def gate():
    return MemoryConcurrencyGate(
        global_limit=2,
        tier_limits={"basic": 1, "premium": 5},
        default_tier="basic",
    )


@pytest.fixture
def runner():
    return ProcessRunner(STUB_COMMAND, timeout=20, info_timeout=10, kill_grace=0.5)


@pytest.fixture
def temp_dir(tmp_path):
    path = tmp_path / "downloads"
    path.mkdir()
    return path


@pytest.fixture
def orchestrator(tokens, gate, runner, temp_dir):
    return DownloadOrchestrator(
        tokens,
        gate,
        runner,
        temp_dir=str(temp_dir),
        chunk_size=1024,
        poll_interval=0.05,
        reverify_after=60.0,
    )
