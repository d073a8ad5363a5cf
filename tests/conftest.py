import pytest
import pytest_asyncio

from vidiary.config import StoreSettings
from vidiary.memory.retry import RetryPolicy
from vidiary.memory.service import MemoryService
from vidiary.memory.store import MemoryStore

FAST_RETRY = RetryPolicy(max_attempts=3, delay_sec=0.0)


@pytest.fixture
def retry():
    return FAST_RETRY


@pytest.fixture
def settings(tmp_path):
    return StoreSettings(
        data_dir=str(tmp_path / "data"),
        retry_delay_sec=0.0,
        log_file=None,
    )


@pytest.fixture
def make_file(tmp_path):
    """Create a source file of ``size`` bytes outside the data dir."""
    src_dir = tmp_path / "sources"
    src_dir.mkdir()
    counter = {"n": 0}

    def _make(suffix=".mp4", size=16):
        counter["n"] += 1
        path = src_dir / f"source_{counter['n']}{suffix}"
        path.write_bytes(b"x" * size)
        return path

    return _make


@pytest_asyncio.fixture
async def store(tmp_path, retry):
    s = await MemoryStore.open(tmp_path / "mem.db", retry=retry)
    yield s
    await s.close()


@pytest_asyncio.fixture
async def service(settings, retry):
    svc = await MemoryService.open(settings, retry=retry)
    yield svc
    await svc.close()
