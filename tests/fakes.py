"""Test doubles for the OBS controller, clocks and frames."""

from __future__ import annotations

import datetime as dt
import json
import os
from typing import List, Optional

T0 = dt.datetime(2026, 3, 1, 10, 0, tzinfo=dt.timezone.utc)

# every row strictly descending -> every comparison is a 1 bit
DESCENDING_FRAME = bytes(v for _ in range(8) for v in range(200, 110, -10))
FLAT_FRAME = bytes(72)


class FakeClock:
    def __init__(self, t: float = 1000.0):
        self.t = t

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


class FakeNow:
    def __init__(self, now: dt.datetime = T0):
        self.now = now

    def __call__(self) -> dt.datetime:
        return self.now

    def set(self, now: dt.datetime) -> None:
        self.now = now


async def no_sleep(_seconds: float) -> None:
    return None


class FakeController:
    """Same (ok, msg) surface as ObsController, recording every call."""

    def __init__(self, profiles: Optional[List[str]] = None, current: str = "SingleStream"):
        self.profiles = list(profiles if profiles is not None else ["SingleStream", "MultiStream"])
        self.current = current
        self.fail = set()
        self.calls = []

    def _result(self, name: str, *args):
        self.calls.append((name,) + args)
        if name in self.fail:
            return False, f"{name} failed"
        return True, "ok"

    def names(self) -> List[str]:
        return [c[0] for c in self.calls]

    def start_stream(self, key=None, server=None):
        return self._result("start_stream", key, server)

    def stop_stream(self):
        return self._result("stop_stream")

    def get_profile_list(self):
        self.calls.append(("get_profile_list",))
        if "get_profile_list" in self.fail:
            return "", [], "OBS not connected"
        return self.current, list(self.profiles), ""

    def set_current_profile(self, name):
        ok, msg = self._result("set_current_profile", name)
        if ok:
            self.current = name
        return ok, msg

    def start_virtual_cam(self):
        return self._result("start_virtual_cam")

    def stop_virtual_cam(self):
        return self._result("stop_virtual_cam")


class FakeSource:
    """Stands in for FrameSource; the test pushes frames through `push()`."""

    def __init__(self, fps: float, on_frame, on_exit=None, start_ok: bool = True):
        self.fps = fps
        self.on_frame = on_frame
        self.on_exit = on_exit
        self.start_ok = start_ok
        self.started = False
        self.stopped = 0
        self.index = 0

    async def start(self) -> bool:
        self.started = self.start_ok
        return self.start_ok

    def stop(self) -> None:
        self.stopped += 1

    def push(self, frame: bytes) -> None:
        self.index += 1
        self.on_frame(frame, self.index)

    def exit(self, code: int = 1) -> None:
        """ffmpeg died on its own."""
        if self.on_exit is not None:
            self.on_exit(code)


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def publish(self, kind: str, payload: dict) -> None:
        self.events.append((kind, dict(payload)))

    def of_kind(self, kind: str):
        return [p for k, p in self.events if k == kind]


def session_dict(sid: str, start: dt.datetime, minutes: int = 30, platform: str = "single",
                 key: Optional[str] = "live_abc", **extra) -> dict:
    raw = {
        "id": sid,
        "name": f"Service {sid}",
        "platform": platform,
        "startTime": start.isoformat(),
        "durationMinutes": minutes,
    }
    if key:
        raw["streamKey"] = key
    raw.update(extra)
    return raw


def write_schedule(path, sessions: List[dict]) -> str:
    path = os.fspath(path)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(sessions, f)
    return path
