import pytest

from stream_guard.config import Config
from stream_guard.schedule_store import ScheduleStore

from tests.fakes import FakeClock, FakeController, FakeNow


@pytest.fixture
def cfg():
    return Config(LOG_TO_FILE_ENABLED=False, WEB_HUD_ENABLED=False)


@pytest.fixture
def now():
    return FakeNow()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def controller():
    return FakeController()


@pytest.fixture
def schedule_path(tmp_path):
    return str(tmp_path / "schedule.json")


@pytest.fixture
def store(schedule_path, now):
    return ScheduleStore(schedule_path, now_fn=now)
