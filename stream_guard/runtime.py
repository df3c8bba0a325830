"""
runtime.py

Builds one instance of every component, hands them to each other, and runs
them on a single asyncio loop until SIGINT/SIGTERM.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Optional

from . import APP_DISPLAY
from .autostop import AutoStopService
from .config import Config, resolve_path
from .control import StreamControl
from .ffmpeg import FrameSource, capture_input_args, resolve_ffmpeg_path
from .logs import RecentLinesHandler
from .notify import STREAM_CONTEXT, Notifier
from .obs import ObsController, ObsEventBridge
from .orchestrator import AutoStopOrchestrator
from .schedule_store import ScheduleStore
from .scheduler import SessionScheduler
from .session import SessionStatus, get_tz
from .stop_frames import StopFrameFilterStore
from .truth import EndReason, StreamContext, StreamTruth
from .web_hud import WebHud

log = logging.getLogger(__name__)


class Runtime:
    def __init__(self, cfg: Config, schedule_path: Optional[str] = None,
                 recent: Optional[RecentLinesHandler] = None):
        self.cfg = cfg
        self.recent = recent

        tz = get_tz(cfg.TIMEZONE)
        if cfg.TIMEZONE and tz is None:
            log.warning("Unknown TIMEZONE %r, using local time", cfg.TIMEZONE)
        self.notifier = Notifier()
        self.filters = StopFrameFilterStore(resolve_path(cfg.STOP_FRAME_FILTERS_FILE), notifier=self.notifier)
        self.store = ScheduleStore(resolve_path(schedule_path or cfg.SCHEDULE_FILE), tz=tz, filters=self.filters)

        self.truth = StreamTruth(self.store, expected_disconnect_window_ms=cfg.EXPECTED_DISCONNECT_WINDOW_MS)
        self.truth.subscribe(self._publish_context)

        self.controller = ObsController(cfg)
        self.control = StreamControl(cfg, self.controller, self.truth)
        self.bridge = ObsEventBridge(cfg, self.controller, self.truth)

        self.ffmpeg_path = resolve_ffmpeg_path(cfg)
        self.autostop = AutoStopService(cfg.autostop_settings(), self._make_source, self.ffmpeg_path)
        self.orchestrator = AutoStopOrchestrator(self.truth, self.autostop, self.control, self.store,
                                                 notifier=self.notifier)
        self.scheduler = SessionScheduler(self.store, self.control, self.truth, notifier=self.notifier)

        self.hud: Optional[WebHud] = None
        if cfg.WEB_HUD_ENABLED:
            self.hud = WebHud(cfg, self.snapshot, self.manual_stop)
            self.notifier.subscribe(self.hud.on_notification)

        self._stop_event: Optional[asyncio.Event] = None

    def _make_source(self, fps: float, on_frame, on_exit) -> FrameSource:
        return FrameSource(self.ffmpeg_path or "ffmpeg", capture_input_args(self.cfg), fps, on_frame, on_exit)

    def _publish_context(self, ctx: StreamContext) -> None:
        self.notifier.publish(STREAM_CONTEXT, ctx.to_dict())

    # -----------------------------
    # Operator actions / HUD
    # -----------------------------
    async def manual_stop(self) -> str:
        sid = self.truth.active_session_id
        if sid:
            # terminated, so the scheduler does not start it again
            self.store.set_status(sid, SessionStatus.TERMINATED)
        await self.control.stop(EndReason.MANUAL)
        return f"stop sent (session {sid or 'unscheduled'})"

    def snapshot(self) -> dict:
        autostop = self.autostop.status()
        autostop["scanning_session_id"] = self.orchestrator.scanning_session_id
        autostop["capture_state"] = self.orchestrator.capture_state.value
        return {
            "type": "state",
            "app": APP_DISPLAY,
            "stream": self.truth.context().to_dict(),
            "obs_connected": self.truth.controller_connected,
            "autostop": autostop,
            "scheduler": self.scheduler.status(),
            "events": list(self.notifier.recent),
            "logs": self.recent.lines(self.cfg.WEB_HUD_LOG_LINES) if self.recent else [],
        }

    # -----------------------------
    # Run
    # -----------------------------
    def request_stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                # Windows: Ctrl+C arrives as KeyboardInterrupt instead
                pass

        log.info("%s starting (schedule: %s)", APP_DISPLAY, self.store.path)
        if not self.ffmpeg_path:
            log.warning("AutoStop will not scan: ffmpeg not found")

        self.bridge.start()
        self.orchestrator.start()
        self.scheduler.start()
        if self.hud is not None:
            try:
                await self.hud.start()
            except OSError as e:
                log.error("WEB: HUD not started: %s", e)
                self.hud = None

        try:
            await self._stop_event.wait()
        finally:
            log.info("Shutting down...")
            if self.hud is not None:
                await self.hud.stop()
            await self.scheduler.stop()
            await self.orchestrator.stop()
            await self.bridge.stop()
            log.info("Stopped")
