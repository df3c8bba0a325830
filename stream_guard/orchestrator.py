"""
orchestrator.py

AutoStop orchestrator: decides when a scan runs, owns the virtual camera and
the stop sequence after a stop frame is seen.

Stream context changes are queued and handled one at a time, in order, by a
single worker task. A fallback timer re-queues the current context while the
stream is live but not scanning, so the lead window opening is noticed even
without a context change.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import os
from enum import Enum
from typing import Awaitable, Callable, Optional, Set

from .autostop import AutoStopService
from .config import AUTOSTOP_FALLBACK_SECONDS
from .errors import ControllerError, ReferenceLoadError, ScheduleStoreError
from .logs import log_action
from .notify import AUTOSTOP
from .session import Session
from .truth import EndReason, StreamContext, StreamState, StreamTruth

log = logging.getLogger(__name__)


class CaptureState(str, Enum):
    OFF = "off"
    STARTING = "starting"
    ON = "on"
    STOPPING = "stopping"


def _now_local() -> dt.datetime:
    return dt.datetime.now().astimezone()


def _readable_file(path: Optional[str]) -> bool:
    p = (path or "").strip()
    return bool(p) and os.path.isfile(p) and os.access(p, os.R_OK)


class AutoStopOrchestrator:
    def __init__(self, truth: StreamTruth, service: AutoStopService, control, store,
                 notifier=None, now_fn: Callable[[], dt.datetime] = _now_local,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 fallback_seconds: float = AUTOSTOP_FALLBACK_SECONDS):
        self.truth = truth
        self.service = service
        self.control = control
        self.store = store
        self.notifier = notifier
        self.now_fn = now_fn
        self.sleep = sleep
        self.fallback_seconds = fallback_seconds

        self.scanning_session_id: Optional[str] = None
        self.scanned: Set[str] = set()
        self.capture_state = CaptureState.OFF
        self.stop_sent = False

        self._queue: "asyncio.Queue[StreamContext]" = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._fallback: Optional[asyncio.Task] = None
        self._shutdown: Optional[asyncio.Task] = None
        self._recovery: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    # -----------------------------
    # Lifecycle
    # -----------------------------
    def start(self) -> None:
        if self._worker is not None:
            return
        self._unsubscribe = self.truth.subscribe(self._on_context)
        self._worker = asyncio.create_task(self._run())
        log.info("AutoStop orchestrator started")

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        for task in (self._worker, self._shutdown, self._recovery):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._worker = None
        self._shutdown = None
        self._recovery = None
        await self.cleanup("shutdown")
        log.info("AutoStop orchestrator stopped")

    def _on_context(self, ctx: StreamContext) -> None:
        self._queue.put_nowait(ctx)

    async def _run(self) -> None:
        while True:
            ctx = await self._queue.get()
            try:
                await self.handle_context(ctx)
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("AutoStop context handling failed")

    # -----------------------------
    # Notifications
    # -----------------------------
    def _emit(self, kind: str, session_id: Optional[str], **extra) -> None:
        log_action(log, f"autostop_{kind}", session=session_id, **extra)
        if self.notifier is not None:
            self.notifier.publish(AUTOSTOP, {"type": kind, "session_id": session_id, **extra})

    # -----------------------------
    # Context handling
    # -----------------------------
    async def handle_context(self, ctx: StreamContext) -> None:
        try:
            await self._handle(ctx)
        finally:
            self._sync_fallback(ctx)

    async def _handle(self, ctx: StreamContext) -> None:
        reason = ctx.end_reason
        if reason in (EndReason.CRASH, EndReason.MANUAL, EndReason.DURATION):
            await self.cleanup(reason.value)
            return

        if ctx.stream_state in (StreamState.ENDED, StreamState.IDLE):
            await self.cleanup(reason.value if reason else "ended")
            if ctx.stream_state == StreamState.IDLE and self.scanned:
                self.scanned.clear()
            return

        if self.scanning_session_id and ctx.active_session_id != self.scanning_session_id:
            # someone else took over the stream
            await self.cleanup("manual")
            return

        await self.maybe_start(ctx)

    def _not_started(self, reason: str, **fields) -> None:
        log_action(log, "autostop_guard_not_started", logging.DEBUG, reason=reason, **fields)

    def _find_session(self, session_id: Optional[str]) -> Optional[Session]:
        try:
            return self.store.get(session_id)
        except ScheduleStoreError as e:
            log.warning("AutoStop could not read schedule: %s", e)
            return None

    async def maybe_start(self, ctx: StreamContext) -> bool:
        if self.scanning_session_id is not None or self.service.is_running():
            return False

        if ctx.stream_state == StreamState.LIVE and not self.service.enabled:
            # AutoStop is always on while a session is live
            self.service.set_enabled(True)
            log_action(log, "autostop_force_enabled")
        if not self.service.enabled:
            self._not_started("autostop_off")
            return False

        if ctx.stream_state not in (StreamState.LIVE, StreamState.ENDING):
            self._not_started("not_live", stream_state=ctx.stream_state.value)
            return False

        session = self._find_session(ctx.active_session_id)
        if session is None:
            self._not_started("no_active_session")
            return False
        if not _readable_file(session.reference_frame_path):
            self._not_started("no_valid_stop_frame", session=session.id)
            return False

        lead = self.service.settings.effective_lead_minutes()
        until_end = session.minutes_until_end(self.now_fn())
        if until_end > lead:
            self._not_started("outside_window", session=session.id, until_end_min=until_end, lead_min=lead)
            return False
        if until_end <= 0:
            self._not_started("already_ended_window", session=session.id, until_end_min=until_end)
            return False

        if session.id in self.scanned:
            return False

        if not await self._start_capture():
            self._not_started("virtualcam_failed", session=session.id)
            return False

        try:
            await self.service.load_reference(session.reference_frame_path)
        except ReferenceLoadError:
            self._not_started("reference_failed", session=session.id)
            await self._stop_capture()
            return False

        self.scanned.add(session.id)
        self.scanning_session_id = session.id
        self.stop_sent = False

        if not await self.service.start(on_triggered=self._on_triggered, on_source_lost=self._on_source_lost):
            await self.cleanup("scan_failed")
            return False

        self._emit("scan_started", session.id, lead_min=lead)
        return True

    # -----------------------------
    # Virtual camera (OFF -> STARTING -> ON -> STOPPING -> OFF)
    # -----------------------------
    async def _start_capture(self) -> bool:
        if self.capture_state == CaptureState.ON:
            return True
        if self.capture_state != CaptureState.OFF:
            log.debug("Virtual camera busy (%s)", self.capture_state.value)
            return False
        self.capture_state = CaptureState.STARTING
        ok = False
        try:
            ok = await self.control.start_capture()
        finally:
            self.capture_state = CaptureState.ON if ok else CaptureState.OFF
        return ok

    async def _stop_capture(self) -> None:
        if self.capture_state != CaptureState.ON:
            return
        self.capture_state = CaptureState.STOPPING
        try:
            await self.control.stop_capture()
        finally:
            self.capture_state = CaptureState.OFF

    # -----------------------------
    # Trigger -> stop sequence
    # -----------------------------
    def _on_triggered(self) -> None:
        if self._shutdown is not None and not self._shutdown.done():
            return
        self._shutdown = asyncio.create_task(self.shutdown_sequence(self.scanning_session_id))

    async def shutdown_sequence(self, session_id: Optional[str]) -> None:
        snap = self.service.active or self.service.settings
        # scan is over; the ended context this stop causes must not report it again
        self.scanning_session_id = None
        self._emit("stopframe_detected", session_id)
        try:
            self.service.stop()
            await self._stop_capture()
            await self.sleep(snap.pre_stop_delay_ms / 1000.0)

            if not self.stop_sent:
                self.stop_sent = True
                self._emit("stream_stop_sent", session_id)
                try:
                    await self.control.stop(EndReason.AUTOSTOP)
                except ControllerError as e:
                    log.error("AutoStop could not stop the stream: %s", e)

            await self.sleep(snap.post_stop_delay_ms / 1000.0)
        finally:
            self._emit("scan_stopped", session_id, reason="stopframe_detected")
        await self.cleanup("stopframe_detected")

    def _shutting_down(self) -> bool:
        return self._shutdown is not None and not self._shutdown.done()

    def _on_source_lost(self) -> None:
        sid = self.scanning_session_id
        if sid is None:
            return
        self._recovery = asyncio.get_running_loop().create_task(self._recover_scan(sid))

    async def _recover_scan(self, session_id: str) -> None:
        await self.cleanup("frame_source_exited")
        # let the fallback timer try this session again
        self.scanned.discard(session_id)
        self._sync_fallback(self.truth.context())

    async def cleanup(self, reason: str) -> None:
        if self.service.is_running():
            self.service.stop()
        sid = self.scanning_session_id
        self.scanning_session_id = None
        if sid:
            self._emit("scan_stopped", sid, reason=reason)
        self._cancel_fallback()
        await self._stop_capture()

    # -----------------------------
    # Fallback timer
    # -----------------------------
    def _sync_fallback(self, ctx: StreamContext) -> None:
        wanted = (ctx.stream_state == StreamState.LIVE
                  and self.scanning_session_id is None
                  and not self._shutting_down()
                  and self._worker is not None)
        if not wanted:
            self._cancel_fallback()
        elif self._fallback is None or self._fallback.done():
            self._fallback = asyncio.create_task(self._fallback_loop())

    async def _fallback_loop(self) -> None:
        while True:
            await asyncio.sleep(self.fallback_seconds)
            self._queue.put_nowait(self.truth.context())

    def _cancel_fallback(self) -> None:
        task, self._fallback = self._fallback, None
        if task is not None and not task.done():
            task.cancel()
