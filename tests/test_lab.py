import json

import pytest

from stream_guard import lab
from stream_guard.config import AutoStopSettings
from stream_guard.errors import StreamGuardError
from stream_guard.lab import Peak, TimelinePoint, detect_peak, replay_video, write_report

from tests.fakes import DESCENDING_FRAME, FLAT_FRAME


def _timeline(distances):
    return [TimelinePoint(i + 1, float(i + 1), d) for i, d in enumerate(distances)]


def test_peak_spans_frames_near_the_best_match():
    peak = detect_peak(_timeline([40, 38, 5, 3, 4, 30, 41]))
    assert peak == Peak(start_sec=3.0, end_sec=5.0, distance=3)


def test_no_peak_without_contrast():
    assert detect_peak(_timeline([20, 21, 19, 20])) is None
    assert detect_peak([]) is None


@pytest.fixture
def fake_ffmpeg(monkeypatch):
    state = {"frames": [], "code": 0, "args": None}

    class ReplaySource:
        def __init__(self, ffmpeg_path, input_args, fps, on_frame):
            state["args"] = input_args
            self.on_frame = on_frame

        async def start(self):
            for i, frame in enumerate(state["frames"], start=1):
                self.on_frame(frame, i)
            return True

        async def wait(self):
            return state["code"]

        def stop(self):
            pass

    async def convert(ffmpeg_path, image_path):
        return DESCENDING_FRAME

    monkeypatch.setattr(lab, "FrameSource", ReplaySource)
    monkeypatch.setattr(lab, "read_gray_9x8", convert)
    return state


@pytest.fixture
def video(tmp_path):
    path = tmp_path / "service.mp4"
    path.write_bytes(b"mp4")
    return str(path)


@pytest.mark.asyncio
async def test_replay_finds_stop_frame(fake_ffmpeg, video):
    fake_ffmpeg["frames"] = [FLAT_FRAME, FLAT_FRAME, DESCENDING_FRAME, DESCENDING_FRAME, DESCENDING_FRAME,
                             FLAT_FRAME]
    result = await replay_video("ffmpeg", video, "end.png", AutoStopSettings(fps=1.0))

    assert result.frames == 6
    assert result.reference_hash == "ffffffffffffffff"
    assert result.min_distance == 0
    assert result.min_distance_at == 3.0
    assert result.first_hit_at == 3.0
    assert result.triggers == [5.0]
    assert result.first_trigger_at == 5.0
    assert result.peak == Peak(3.0, 5.0, 0)
    assert video in fake_ffmpeg["args"]


@pytest.mark.asyncio
async def test_replay_without_match(fake_ffmpeg, video):
    fake_ffmpeg["frames"] = [FLAT_FRAME] * 4
    result = await replay_video("ffmpeg", video, "end.png", AutoStopSettings(fps=2.0))
    assert result.frames == 4
    assert result.first_hit_at is None
    assert result.first_trigger_at is None
    assert [p.t_sec for p in result.timeline] == [0.5, 1.0, 1.5, 2.0]


@pytest.mark.asyncio
async def test_replay_reports_ffmpeg_failure(fake_ffmpeg, video):
    fake_ffmpeg["code"] = 1
    with pytest.raises(StreamGuardError):
        await replay_video("ffmpeg", video, "end.png", AutoStopSettings())


@pytest.mark.asyncio
async def test_replay_needs_video_and_ffmpeg(fake_ffmpeg, tmp_path, video):
    with pytest.raises(StreamGuardError):
        await replay_video("ffmpeg", str(tmp_path / "missing.mp4"), "end.png", AutoStopSettings())
    with pytest.raises(StreamGuardError):
        await replay_video(None, video, "end.png", AutoStopSettings())


@pytest.mark.asyncio
async def test_report_is_json(fake_ffmpeg, video, tmp_path):
    fake_ffmpeg["frames"] = [DESCENDING_FRAME] * 3
    result = await replay_video("ffmpeg", video, "end.png", AutoStopSettings(fps=1.0))
    out = tmp_path / "reports" / "run.json"
    write_report(result, str(out))

    data = json.loads(out.read_text(encoding="utf-8"))
    assert data["first_trigger_at"] == 3.0
    assert len(data["timeline"]) == 3
