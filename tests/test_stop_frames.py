import json

import pytest

from stream_guard.notify import STOP_FRAME_FILTERS
from stream_guard.schedule_store import ScheduleStore
from stream_guard.session import Session
from stream_guard.stop_frames import (
    NOTICE_CONFLICT,
    NOTICE_DISABLED,
    StopFrameFilter,
    StopFrameFilterStore,
)

from tests.fakes import T0, RecordingNotifier, session_dict, write_schedule


@pytest.fixture
def frame(tmp_path):
    p = tmp_path / "end.png"
    p.write_bytes(b"png")
    return str(p)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def filters_path(tmp_path):
    return str(tmp_path / "stopframe-filters.json")


@pytest.fixture
def filters(filters_path, notifier):
    return StopFrameFilterStore(filters_path, notifier=notifier)


def write_filters(path, rows):
    with open(path, "w", encoding="utf-8") as f:
        json.dump(rows, f)


def sessions(*names):
    return [Session.from_dict(session_dict(f"s{i}", T0, name=n)) for i, n in enumerate(names)]


def test_missing_file_leaves_sessions_alone(filters):
    raw = session_dict("a", T0, stopFramePath="own.png")
    loaded = [Session.from_dict(raw)]
    assert filters.apply(loaded)[0].reference_frame_path == "own.png"


def test_matching_show_gets_filter_frame(filters, filters_path, frame):
    write_filters(filters_path, [{"id": "f1", "name": "Sunday", "enabled": True,
                                  "shows": [" Sunday Service "], "stopFramePath": frame}])
    out = filters.apply(sessions("Sunday Service", "Youth Night"))
    assert out[0].reference_frame_path == frame
    # no matching filter means no stop frame, even if the schedule had one
    assert out[1].reference_frame_path is None


def test_disabled_filter_does_not_match(filters, filters_path, frame):
    write_filters(filters_path, [{"id": "f1", "enabled": False, "shows": ["Sunday Service"],
                                  "stopFramePath": frame}])
    assert filters.apply(sessions("Sunday Service"))[0].reference_frame_path is None


def test_filter_with_missing_image_is_disabled_and_saved(filters, filters_path, notifier, tmp_path):
    gone = str(tmp_path / "gone.png")
    write_filters(filters_path, [{"id": "f1", "name": "Sunday", "enabled": True,
                                  "shows": ["Sunday Service"], "stopFramePath": gone}])

    out = filters.apply(sessions("Sunday Service"))

    assert out[0].reference_frame_path is None
    assert filters.read()[0].enabled is False
    [notice] = notifier.of_kind(STOP_FRAME_FILTERS)
    assert notice["type"] == NOTICE_DISABLED
    assert notice["reason"] == "missing_file"


def test_empty_image_path_is_reported(filters, filters_path, notifier):
    write_filters(filters_path, [{"id": "f1", "enabled": True, "shows": ["Sunday Service"]}])
    filters.apply(sessions("Sunday Service"))
    assert notifier.of_kind(STOP_FRAME_FILTERS)[0]["reason"] == "empty_path"


def test_conflict_gives_no_frame_and_one_notice(filters, filters_path, notifier, frame):
    write_filters(filters_path, [
        {"id": "f1", "name": "A", "enabled": True, "shows": ["Sunday Service"], "stopFramePath": frame},
        {"id": "f2", "name": "B", "enabled": True, "shows": ["Sunday Service", "Vespers"], "stopFramePath": frame},
    ])

    out = filters.apply(sessions("Sunday Service", "Vespers"))
    filters.apply(sessions("Sunday Service", "Vespers"))

    assert out[0].reference_frame_path is None
    assert out[1].reference_frame_path == frame
    [notice] = notifier.of_kind(STOP_FRAME_FILTERS)
    assert notice["type"] == NOTICE_CONFLICT
    assert notice["show"] == "Sunday Service"
    assert notice["filter_ids"] == ["f1", "f2"]


def test_unreadable_file_matches_nothing(filters, filters_path):
    with open(filters_path, "w", encoding="utf-8") as f:
        f.write("{not json")
    assert filters.read() == []
    assert filters.apply(sessions("Sunday Service"))[0].reference_frame_path is None


def test_rows_are_normalized():
    f = StopFrameFilter.from_dict({"enabled": "yes", "shows": ["A", 3, None], "stopFramePath": 7})
    assert f.id
    assert f.name == "Untitled filter"
    assert f.enabled is False
    assert f.shows == ["A"]
    assert f.stop_frame_path == ""
    assert StopFrameFilter.from_dict("nonsense") is None


def test_create_update_delete(filters, frame):
    f = filters.create("Sunday", ["Sunday Service", "  "], frame)
    assert f.enabled is False
    assert f.shows == ["Sunday Service"]

    updated = filters.update(f.id, enabled=True)
    assert updated.enabled is True
    assert filters.read() == [updated]
    assert filters.update("nope", enabled=True) is None

    assert filters.delete(f.id) is True
    assert filters.delete(f.id) is False
    assert filters.read() == []


def test_schedule_load_applies_filters(schedule_path, filters_path, now, frame):
    write_schedule(schedule_path, [session_dict("a", T0, name="Sunday Service")])
    write_filters(filters_path, [{"id": "f1", "enabled": True, "shows": ["Sunday Service"],
                                  "stopFramePath": frame}])
    store = ScheduleStore(schedule_path, now_fn=now, filters=StopFrameFilterStore(filters_path))

    assert store.get("a").reference_frame_path == frame


def test_set_status_does_not_persist_filter_frame(schedule_path, filters_path, now, frame):
    write_schedule(schedule_path, [session_dict("a", T0, name="Sunday Service")])
    write_filters(filters_path, [{"id": "f1", "enabled": True, "shows": ["Sunday Service"],
                                  "stopFramePath": frame}])
    store = ScheduleStore(schedule_path, now_fn=now, filters=StopFrameFilterStore(filters_path))

    store.set_status("a", store.get("a").status)

    with open(schedule_path, encoding="utf-8") as f:
        assert "stopFramePath" not in json.load(f)[0]
