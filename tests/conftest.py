# tests/conftest.py
import pytest
import pytest_asyncio

from tests.fakes import FIVE_MINUTES_MS, ManualClock, MemoryBroadcastHub, MemoryCounterStore, MemoryEventLog
from votestream.config import Settings
from votestream.main import VotingService
from votestream.store import RecordStore


@pytest.fixture
def settings(tmp_path):
    return Settings(
        sqlite_path=str(tmp_path / "test_votes_store.db"),
        reclaim_min_idle_ms=FIVE_MINUTES_MS,
        reclaim_interval_seconds=0,
        pending_page_size=2,
        read_batch_size=10,
        read_block_ms=5,
        shutdown_timeout_seconds=2.0,
    )


@pytest.fixture
def clock():
    return ManualClock()


@pytest_asyncio.fixture
async def event_log(clock, settings):
    log = MemoryEventLog(clock)
    await log.ensure_group(settings.stream_name, settings.group_name)
    return log


@pytest.fixture
def counters():
    return MemoryCounterStore()


@pytest.fixture
def hub():
    return MemoryBroadcastHub()


@pytest.fixture
def store(settings):
    return RecordStore(settings.sqlite_path)


@pytest.fixture
def service(settings, event_log, counters, hub, store):
    return VotingService(settings, event_log, counters, hub, store, consumer_name="consumer-test-a")
