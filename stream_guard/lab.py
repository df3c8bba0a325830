"""
lab.py

Offline validation: replay a recorded service against a stop frame with the
same hashing and DecisionEngine the live scan uses.

The engine's clock is the frame timestamp (index / fps), so a replay gives
the same answer as the live scan would have at that sample rate, however
fast ffmpeg decodes the file.
"""

from __future__ import annotations

import json
import logging
import os
import statistics
from dataclasses import asdict, dataclass, field
from typing import List, Optional

from .config import AutoStopSettings
from .decision import DecisionEngine
from .dhash import dhash_9x8, format_hash, hamming_distance
from .errors import StreamGuardError
from .ffmpeg import FrameSource, file_input_args, read_gray_9x8

log = logging.getLogger(__name__)


@dataclass
class TimelinePoint:
    frame: int
    t_sec: float
    distance: int


@dataclass
class Peak:
    """Contiguous run of frames around the best match (distance <= peak + margin)."""
    start_sec: float
    end_sec: float
    distance: int


@dataclass
class ReplayResult:
    video: str
    reference: str
    reference_hash: str
    fps: float
    max_distance: int
    frames: int = 0
    min_distance: Optional[int] = None
    min_distance_at: Optional[float] = None
    first_hit_at: Optional[float] = None
    triggers: List[float] = field(default_factory=list)
    peak: Optional[Peak] = None
    timeline: List[TimelinePoint] = field(default_factory=list)

    @property
    def first_trigger_at(self) -> Optional[float]:
        return self.triggers[0] if self.triggers else None


def detect_peak(timeline: List[TimelinePoint], margin: int = 2, min_contrast: int = 3) -> Optional[Peak]:
    """None when the best match does not stand out from the median distance."""
    if not timeline:
        return None
    distances = [p.distance for p in timeline]
    best = min(range(len(timeline)), key=lambda i: distances[i])
    peak = distances[best]
    if statistics.median(distances) - peak < min_contrast:
        return None

    limit = peak + margin
    left = best
    while left > 0 and distances[left - 1] <= limit:
        left -= 1
    right = best
    while right < len(timeline) - 1 and distances[right + 1] <= limit:
        right += 1
    return Peak(timeline[left].t_sec, timeline[right].t_sec, peak)


async def replay_video(ffmpeg_path: Optional[str], video: str, reference: str,
                       settings: AutoStopSettings) -> ReplayResult:
    if not ffmpeg_path:
        raise StreamGuardError("FFmpeg missing")
    if not os.path.isfile(video):
        raise StreamGuardError(f"Video not found: {video}")

    ref_hash = dhash_9x8(await read_gray_9x8(ffmpeg_path, reference))
    fps = float(settings.fps)
    result = ReplayResult(video=video, reference=reference, reference_hash=format_hash(ref_hash),
                          fps=fps, max_distance=settings.max_distance)

    clock = {"now": 0.0}
    engine = DecisionEngine(settings.max_distance, settings.required_hits, settings.window_sec,
                            settings.cooldown_sec, clock=lambda: clock["now"])

    def on_frame(frame: bytes, index: int) -> None:
        t = index / fps
        distance = hamming_distance(ref_hash, dhash_9x8(frame))
        result.timeline.append(TimelinePoint(index, round(t, 3), distance))
        if result.min_distance is None or distance < result.min_distance:
            result.min_distance = distance
            result.min_distance_at = round(t, 3)
        if result.first_hit_at is None and distance <= settings.max_distance:
            result.first_hit_at = round(t, 3)
        clock["now"] = t
        if engine.register(distance):
            result.triggers.append(round(t, 3))

    source = FrameSource(ffmpeg_path, file_input_args(video), fps, on_frame)
    if not await source.start():
        raise StreamGuardError(f"FFmpeg could not be started for {video}")
    try:
        code = await source.wait()
    finally:
        source.stop()
    if code not in (0, None):
        raise StreamGuardError(f"FFmpeg exited {code} while decoding {video}")

    result.frames = len(result.timeline)
    result.peak = detect_peak(result.timeline)
    log.info("Replay: %d frames, min distance %s at %ss, first trigger %s",
             result.frames, result.min_distance, result.min_distance_at, result.first_trigger_at)
    return result


def write_report(result: ReplayResult, path: str) -> None:
    data = asdict(result)
    data["first_trigger_at"] = result.first_trigger_at
    folder = os.path.dirname(os.path.abspath(path))
    os.makedirs(folder, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
    log.info("Report written: %s", path)
