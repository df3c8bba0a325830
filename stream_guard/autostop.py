"""
autostop.py

AutoStop service: one reference fingerprint, one FrameSource, one
DecisionEngine. It only decides; stopping the stream belongs to the
orchestrator that supplied `on_triggered`.
"""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Callable, Optional

from .config import AutoStopSettings
from .decision import DecisionEngine
from .dhash import dhash_9x8, format_hash, hamming_distance
from .errors import InvalidFrameSize, ReferenceLoadError
from .ffmpeg import ExitCallback, FrameSource, read_gray_9x8

log = logging.getLogger(__name__)

SourceFactory = Callable[[float, Callable[[bytes, int], None], ExitCallback], FrameSource]


class AutoStopService:
    def __init__(self, settings: AutoStopSettings, source_factory: SourceFactory,
                 ffmpeg_path: Optional[str] = None, clock: Callable[[], float] = time.time):
        self.settings = settings
        self.source_factory = source_factory
        self.ffmpeg_path = ffmpeg_path
        self.clock = clock

        self.reference_hash: Optional[int] = None
        self.reference_path: Optional[str] = None

        self.source: Optional[FrameSource] = None
        self.engine: Optional[DecisionEngine] = None
        self.active: Optional[AutoStopSettings] = None  # snapshot of the running scan
        self._on_triggered: Optional[Callable[[], None]] = None
        self._on_source_lost: Optional[Callable[[], None]] = None
        self._running = False

    # -----------------------------
    # Settings
    # -----------------------------
    @property
    def enabled(self) -> bool:
        return bool(self.settings.enabled)

    def set_enabled(self, enabled: bool) -> None:
        if self.settings.enabled != bool(enabled):
            self.settings = replace(self.settings, enabled=bool(enabled))
            log.info("AutoStop %s", "enabled" if enabled else "disabled")

    def update_settings(self, **changes) -> None:
        """Applies to the next scan; a running scan keeps its snapshot."""
        self.settings = replace(self.settings, **changes)

    # -----------------------------
    # Reference frame
    # -----------------------------
    async def load_reference(self, path: str) -> int:
        try:
            gray = await read_gray_9x8(self.ffmpeg_path, path)
        except ReferenceLoadError as e:
            self.reference_hash = None
            self.reference_path = None
            log.error("AutoStop failed to load reference image: %s", e)
            raise
        h = dhash_9x8(gray)
        self.reference_hash = h
        self.reference_path = path
        log.info("AutoStop reference dHash loaded (9x8 gray): %s", format_hash(h))
        return h

    def set_reference_hash(self, h: Optional[int], path: Optional[str] = None) -> None:
        self.reference_hash = h
        self.reference_path = path

    # -----------------------------
    # Scan lifecycle
    # -----------------------------
    def is_running(self) -> bool:
        return self._running

    async def start(self, on_triggered: Optional[Callable[[], None]] = None,
                    on_source_lost: Optional[Callable[[], None]] = None) -> bool:
        if self._running:
            log.debug("AutoStop start ignored (already running)")
            return False
        if not self.settings.enabled:
            log.warning("AutoStop start ignored (enabled=false)")
            return False
        if self.reference_hash is None:
            log.warning("AutoStop start ignored (no reference hash loaded)")
            return False

        snap = self.settings
        self.active = snap
        self._on_triggered = on_triggered
        self._on_source_lost = on_source_lost
        self.engine = DecisionEngine(snap.max_distance, snap.required_hits, snap.window_sec,
                                     snap.cooldown_sec, clock=self.clock)
        self.source = self.source_factory(snap.fps, self._on_frame, self._on_source_exit)
        self._running = True

        ok = await self.source.start()
        if not ok:
            log.error("AutoStop scan aborted (frame source did not start)")
            self.stop()
            return False
        log.info("AutoStop scan started (maxDistance=%d, fps=%g)", snap.max_distance, snap.fps)
        return True

    def stop(self) -> None:
        was_running = self._running
        if self.source is not None:
            self.source.stop()
        self.source = None
        self.engine = None
        self.active = None
        self._on_triggered = None
        self._on_source_lost = None
        self._running = False
        if was_running:
            log.info("AutoStop scan stopped")

    def _on_source_exit(self, code: Optional[int]) -> None:
        if not self._running:
            return
        log.warning("AutoStop scan ended: frame source exited (code %s)", code)
        cb = self._on_source_lost
        self.stop()
        if cb is not None:
            try:
                cb()
            except Exception:
                log.exception("AutoStop source-lost callback error")

    def _on_frame(self, frame: bytes, index: int) -> None:
        if self.engine is None or self.reference_hash is None:
            return
        try:
            cur = dhash_9x8(frame)
        except InvalidFrameSize as e:
            log.warning("Frame #%d hash error: %s", index, e)
            return

        distance = hamming_distance(self.reference_hash, cur)
        log.debug("Frame #%d dHashDistance=%d maxAllowed=%d", index, distance, self.engine.max_distance)

        if self.engine.register(distance):
            log.warning("AutoStop TRIGGERED (frame #%d, distance=%d)", index, distance)
            cb = self._on_triggered
            self._on_triggered = None
            if cb is not None:
                try:
                    cb()
                except Exception:
                    log.exception("AutoStop trigger callback error")

    def status(self) -> dict:
        s = self.active or self.settings
        return {
            "running": self._running,
            "enabled": self.enabled,
            "has_reference": self.reference_hash is not None,
            "reference_path": self.reference_path,
            "fps": s.fps,
            "threshold": s.threshold,
            "max_distance": s.max_distance,
            "required_hits": s.required_hits,
            "window_sec": s.window_sec,
            "cooldown_sec": s.cooldown_sec,
            "lead_minutes": s.effective_lead_minutes(),
        }

