"""
scheduler.py

Session scheduler: a 5 s polling loop that starts and stops scheduled
sessions through StreamControl.

Local tracking (`active_id`, `is_streaming`) only covers streams this
scheduler started. Runtime Truth is re-checked right before every start, so a
stream started by someone else is never clobbered.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from typing import Awaitable, Callable, List, Optional, Set

from .config import (
    MAX_CONSECUTIVE_FAILURES,
    SCHEDULER_INITIAL_DELAY_SECONDS,
    SCHEDULER_TICK_SECONDS,
)
from .errors import ScheduleStoreError
from .notify import SCHEDULER_PAUSED, SESSION_SKIPPED, SESSION_WARNING
from .session import Session, SessionStatus
from .truth import EndReason, StreamState, StreamTruth

log = logging.getLogger(__name__)

SKIP_REASON_BLOCKED = "blocked by already-live session"


def _now_local() -> dt.datetime:
    return dt.datetime.now().astimezone()


class SessionScheduler:
    def __init__(self, store, control, truth: StreamTruth, notifier=None,
                 now_fn: Callable[[], dt.datetime] = _now_local,
                 tick_seconds: float = SCHEDULER_TICK_SECONDS,
                 initial_delay: float = SCHEDULER_INITIAL_DELAY_SECONDS,
                 max_failures: int = MAX_CONSECUTIVE_FAILURES):
        self.store = store
        self.control = control
        self.truth = truth
        self.notifier = notifier
        self.now_fn = now_fn
        self.tick_seconds = tick_seconds
        self.initial_delay = initial_delay
        self.max_failures = max_failures

        self.active_id: Optional[str] = None
        self.is_streaming = False
        self.failure_count = 0
        self.paused = False

        self._warned_no_key: Set[str] = set()
        # sessions that ended outside our control this run; never relaunched
        self._finished: Set[str] = set()
        self._task: Optional[asyncio.Task] = None

    # -----------------------------
    # Loop
    # -----------------------------
    def start(self) -> None:
        if self._task is not None:
            return
        log.info("Scheduler started")
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        log.info("Scheduler stopped")

    async def _loop(self) -> None:
        # let the rest of the app settle before the first tick
        await asyncio.sleep(self.initial_delay)
        while True:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("Scheduler tick failed")
            await asyncio.sleep(self.tick_seconds)

    def _notify(self, kind: str, payload: dict) -> None:
        if self.notifier is not None:
            self.notifier.publish(kind, payload)

    async def _safe_call(self, fn: Callable[[], Awaitable[None]], context: str) -> bool:
        try:
            await fn()
        except Exception as e:
            self.failure_count += 1
            log.error("Scheduler error during %s: %s", context, e)
            if self.failure_count >= self.max_failures and not self.paused:
                self.paused = True
                log.error("Scheduler paused after %d consecutive failures", self.failure_count)
                self._notify(SCHEDULER_PAUSED, {"reason": "too many errors", "count": self.failure_count})
            return False
        self.failure_count = 0
        return True

    # -----------------------------
    # Tick
    # -----------------------------
    def select_current(self, sessions: List[Session], now: dt.datetime) -> Optional[Session]:
        for s in sessions:
            if s.is_overridden() or not s.auto_start:
                continue
            if s.id in self._finished:
                continue
            if s.contains(now):
                return s
        return None

    def _reconcile_with_truth(self) -> None:
        """Drop local tracking when the tracked stream ended without us."""
        if not self.is_streaming:
            return
        ctx = self.truth.context()
        if ctx.stream_state in (StreamState.ENDED, StreamState.IDLE) or ctx.active_session_id != self.active_id:
            log.info("Session %s ended outside the scheduler (%s, %s)", self.active_id,
                     ctx.stream_state.value, ctx.end_reason.value if ctx.end_reason else "-")
            self._finished.add(self.active_id)
            self._reset_tracking()

    def _reset_tracking(self) -> None:
        self.active_id = None
        self.is_streaming = False

    async def tick(self) -> None:
        if self.paused:
            log.debug("Scheduler paused due to repeated errors")
            return

        try:
            sessions = self.store.load()
        except ScheduleStoreError as e:
            log.error("Schedule not loaded: %s", e)
            return
        now = self.now_fn()
        self._reconcile_with_truth()
        current = self.select_current(sessions, now)

        if self.is_streaming and current is None:
            # tracked session is no longer current (window over, autoStart off, moved)
            await self._safe_call(lambda: self._stop_tracked(EndReason.DURATION), "stop after duration")
        elif self.is_streaming and current.id != self.active_id:
            # overlap: the next session waits until the tracked one has run its time
            tracked = next((s for s in sessions if s.id == self.active_id), None)
            if tracked is None or now >= tracked.end_time:
                await self._safe_call(lambda: self._stop_tracked(EndReason.DURATION), "stop after duration")

        if current is None:
            if self.truth.state == StreamState.ENDED:
                self.truth.mark_idle()
            return

        if current.requires_stream_key and not current.has_stream_key:
            if current.id not in self._warned_no_key:
                self._warned_no_key.add(current.id)
                log.warning("Scheduler: %r needs a stream key but none provided", current.name)
                self._notify(SESSION_WARNING, {"session_id": current.id, "reason": "missing stream key"})
            if self.is_streaming and self.active_id == current.id:
                await self._safe_call(lambda: self._stop_tracked(EndReason.MANUAL), "stop missing key")
            return

        if not self.is_streaming or self.active_id != current.id:
            await self._start_or_skip(current)
            return

        if now >= current.end_time:
            await self._safe_call(lambda: self._stop_tracked(EndReason.DURATION), "stop after duration")

    async def _start_or_skip(self, session: Session) -> None:
        ctx = self.truth.context()
        if ctx.stream_state in (StreamState.LIVE, StreamState.ENDING):
            if ctx.active_session_id == session.id:
                log.info("Scheduler adopting live session %s", session.id)
                self.active_id = session.id
                self.is_streaming = True
                return
            log.warning("Scheduler: %r skipped, stream already %s (session %s)", session.name,
                        ctx.stream_state.value, ctx.active_session_id or "unscheduled")
            try:
                self.store.set_status(session.id, SessionStatus.SKIPPED, SKIP_REASON_BLOCKED)
            except ScheduleStoreError as e:
                log.error("Could not mark %s skipped: %s", session.id, e)
            self._notify(SESSION_SKIPPED, {"session_id": session.id, "reason": SKIP_REASON_BLOCKED})
            return

        if ctx.stream_state == StreamState.ENDED:
            # previous episode is over; start the new one from a clean context
            self.truth.mark_idle()
        await self._safe_call(lambda: self._start(session), f"start {session.name}")

    async def _start(self, session: Session) -> None:
        await self.control.start(session)
        self.active_id = session.id
        self.is_streaming = True
        self.truth.mark_live(session.id)
        log.info("Scheduler started stream: %s (%s)", session.name, session.platform.value)

    async def _stop_tracked(self, reason: EndReason) -> None:
        try:
            await self.control.stop(reason)
        finally:
            log.info("Scheduler stopped stream %s (%s)", self.active_id, reason.value)
            self._reset_tracking()

    def status(self) -> dict:
        return {
            "running": self._task is not None,
            "paused": self.paused,
            "failure_count": self.failure_count,
            "active_id": self.active_id,
            "is_streaming": self.is_streaming,
        }
