import pytest

from stream_guard import autostop as autostop_mod
from stream_guard.autostop import AutoStopService
from stream_guard.config import AutoStopSettings
from stream_guard.dhash import dhash_9x8
from stream_guard.errors import ReferenceLoadError

from tests.fakes import DESCENDING_FRAME, FLAT_FRAME, FakeClock, FakeSource


class Harness:
    def __init__(self, settings=None, start_ok=True):
        self.clock = FakeClock(0.0)
        self.sources = []
        self.start_ok = start_ok
        self.service = AutoStopService(settings or AutoStopSettings(enabled=True), self._factory,
                                       ffmpeg_path="ffmpeg", clock=self.clock)

    def _factory(self, fps, on_frame, on_exit):
        src = FakeSource(fps, on_frame, on_exit, start_ok=self.start_ok)
        self.sources.append(src)
        return src

    def push(self, frame, times=1):
        for _ in range(times):
            self.sources[-1].push(frame)
            self.clock.advance(1.0)


@pytest.mark.asyncio
async def test_start_is_ignored_without_reference_or_when_disabled():
    h = Harness()
    assert await h.service.start() is False
    assert h.sources == []

    h.service.set_reference_hash(dhash_9x8(DESCENDING_FRAME))
    h.service.set_enabled(False)
    assert await h.service.start() is False
    assert not h.service.is_running()


@pytest.mark.asyncio
async def test_trigger_callback_fires_once():
    h = Harness()
    h.service.set_reference_hash(dhash_9x8(DESCENDING_FRAME))
    fired = []
    assert await h.service.start(on_triggered=lambda: fired.append(h.clock()))
    assert await h.service.start() is False  # already running

    h.push(FLAT_FRAME, 2)
    h.push(DESCENDING_FRAME, 3)
    assert fired == [4.0]

    # cooldown over, matches again: scanning goes on but the callback is spent
    h.clock.advance(30.0)
    h.push(DESCENDING_FRAME, 3)
    assert fired == [4.0]
    assert h.service.is_running()


@pytest.mark.asyncio
async def test_running_scan_keeps_its_settings_snapshot():
    h = Harness(AutoStopSettings(enabled=True, required_hits=3))
    h.service.set_reference_hash(dhash_9x8(DESCENDING_FRAME))
    await h.service.start()
    h.service.update_settings(required_hits=1, fps=10.0)

    assert h.service.engine.required_hits == 3
    assert h.sources[-1].fps == 3.0
    assert h.service.status()["required_hits"] == 3

    h.service.stop()
    await h.service.start()
    assert h.service.engine.required_hits == 1
    assert h.sources[-1].fps == 10.0


@pytest.mark.asyncio
async def test_failed_source_leaves_service_stopped():
    h = Harness(start_ok=False)
    h.service.set_reference_hash(0)
    assert await h.service.start() is False
    assert not h.service.is_running()
    assert h.sources[-1].stopped == 1


@pytest.mark.asyncio
async def test_stop_is_idempotent():
    h = Harness()
    h.service.stop()
    h.service.set_reference_hash(0)
    await h.service.start()
    h.service.stop()
    h.service.stop()
    assert not h.service.is_running()
    assert h.sources[-1].stopped == 1


@pytest.mark.asyncio
async def test_bad_frame_is_skipped():
    h = Harness()
    h.service.set_reference_hash(dhash_9x8(DESCENDING_FRAME))
    await h.service.start()
    h.sources[-1].push(b"\x00" * 10)
    assert h.service.engine.hits == []


@pytest.mark.asyncio
async def test_load_reference_failure_clears_reference(monkeypatch):
    h = Harness()
    h.service.set_reference_hash(123, "old.png")

    async def broken(ffmpeg_path, image_path):
        raise ReferenceLoadError("conversion failed")

    monkeypatch.setattr(autostop_mod, "read_gray_9x8", broken)
    with pytest.raises(ReferenceLoadError):
        await h.service.load_reference("new.png")
    assert h.service.reference_hash is None
    assert h.service.status()["has_reference"] is False


@pytest.mark.asyncio
async def test_load_reference_hashes_the_converted_image(monkeypatch):
    h = Harness()

    async def convert(ffmpeg_path, image_path):
        return DESCENDING_FRAME

    monkeypatch.setattr(autostop_mod, "read_gray_9x8", convert)
    assert await h.service.load_reference("end.png") == (1 << 64) - 1
    assert h.service.reference_path == "end.png"


@pytest.mark.asyncio
async def test_frame_source_exit_ends_the_scan():
    h = Harness()
    h.service.set_reference_hash(dhash_9x8(DESCENDING_FRAME))
    lost = []
    assert await h.service.start(on_source_lost=lambda: lost.append(True))

    h.sources[-1].exit(1)

    assert not h.service.is_running()
    assert h.service.status()["running"] is False
    assert lost == [True]
    # a late exit from the same source changes nothing
    h.sources[-1].exit(1)
    assert lost == [True]
