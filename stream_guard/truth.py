"""
truth.py

Stream Runtime Truth: the one place that knows what the stream is doing.

States move idle -> live -> ending -> ended -> idle. The end reason is
recorded on the way down; once a crash has been recorded nothing else may
replace it until the next idle. Observers get a StreamContext snapshot after
every mutation that changes what they can see.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from .config import ENDED_TO_IDLE_DELAY_SECONDS
from .errors import ScheduleStoreError
from .logs import log_action
from .session import SessionStatus

log = logging.getLogger(__name__)

OUTPUT_STARTING = "OBS_WEBSOCKET_OUTPUT_STARTING"
OUTPUT_STARTED = "OBS_WEBSOCKET_OUTPUT_STARTED"
OUTPUT_STOPPING = "OBS_WEBSOCKET_OUTPUT_STOPPING"
OUTPUT_STOPPED = "OBS_WEBSOCKET_OUTPUT_STOPPED"


class StreamState(str, Enum):
    IDLE = "idle"
    LIVE = "live"
    ENDING = "ending"
    ENDED = "ended"


class EndReason(str, Enum):
    MANUAL = "manual"
    DURATION = "duration"
    CRASH = "crash"
    AUTOSTOP = "autostop"


_REASON_ACTIONS = {
    EndReason.MANUAL: "stream_stop_manual",
    EndReason.DURATION: "stream_stop_duration",
    EndReason.AUTOSTOP: "stream_stop_autostop",
    EndReason.CRASH: "stream_end_obs_crash",
}


@dataclass(frozen=True)
class StreamContext:
    stream_state: StreamState = StreamState.IDLE
    end_reason: Optional[EndReason] = None
    active_session_id: Optional[str] = None
    has_reference_frame: bool = False

    def to_dict(self) -> dict:
        return {
            "stream_state": self.stream_state.value,
            "end_reason": self.end_reason.value if self.end_reason else None,
            "active_session_id": self.active_session_id,
            "has_reference_frame": self.has_reference_frame,
        }


ContextListener = Callable[[StreamContext], None]


class StreamTruth:
    def __init__(self, store=None, expected_disconnect_window_ms: int = 4000,
                 clock: Callable[[], float] = time.monotonic,
                 ended_to_idle_delay: float = ENDED_TO_IDLE_DELAY_SECONDS):
        self.store = store
        self.expected_disconnect_window_ms = expected_disconnect_window_ms
        self.clock = clock
        self.ended_to_idle_delay = ended_to_idle_delay

        self.state = StreamState.IDLE
        self.end_reason: Optional[EndReason] = None
        self.active_session_id: Optional[str] = None
        self.has_reference_frame = False

        self.end_signal_sent = False
        self.end_signal_sent_at = 0.0

        self.controller_connected = False
        self.last_output_state: Optional[str] = None
        self._idle_timer: Optional[asyncio.TimerHandle] = None

        self._listeners: List[ContextListener] = []
        self._last_logged_state = self.state
        self._last_logged_reason: Optional[EndReason] = None
        self._last_emitted: Optional[StreamContext] = None

    # -----------------------------
    # Snapshot + observers
    # -----------------------------
    def context(self) -> StreamContext:
        return StreamContext(self.state, self.end_reason, self.active_session_id, self.has_reference_frame)

    def subscribe(self, listener: ContextListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _log_transitions(self) -> None:
        if self.state != self._last_logged_state:
            log_action(log, "stream_state_changed", **{"from": self._last_logged_state.value, "to": self.state.value})
            self._last_logged_state = self.state
        if self.end_reason != self._last_logged_reason:
            if self.end_reason is not None:
                level = logging.WARNING if self.end_reason == EndReason.CRASH else logging.INFO
                log_action(log, _REASON_ACTIONS[self.end_reason], level, reason=self.end_reason.value)
            self._last_logged_reason = self.end_reason

    def _publish(self) -> None:
        self._log_transitions()
        ctx = self.context()
        if ctx == self._last_emitted:
            return
        self._last_emitted = ctx
        for listener in list(self._listeners):
            try:
                listener(ctx)
            except Exception:
                log.exception("Stream context listener failed")

    # -----------------------------
    # Active session
    # -----------------------------
    def _refresh_reference_flag(self) -> None:
        if not self.active_session_id or self.store is None:
            self.has_reference_frame = False
            return
        try:
            session = self.store.get(self.active_session_id)
        except ScheduleStoreError as e:
            log.warning("Could not read schedule for session %s: %s", self.active_session_id, e)
            session = None
        self.has_reference_frame = bool(session and session.has_reference_frame)

    def set_active_session(self, session_id: Optional[str]) -> None:
        if session_id and self.state == StreamState.IDLE:
            log.warning("Active session %s ignored while idle", session_id)
            return
        self.active_session_id = session_id or None
        self._refresh_reference_flag()
        self._publish()

    # -----------------------------
    # Transitions
    # -----------------------------
    def mark_live(self, session_id: Optional[str] = None) -> None:
        self.state = StreamState.LIVE
        self._reset_end_signal()
        # a crash belongs to the episode that already ended; only idle clears it
        if self.end_reason in (EndReason.MANUAL, EndReason.DURATION):
            self.end_reason = None
        if session_id is not None and session_id != self.active_session_id:
            self.active_session_id = session_id
            self._refresh_reference_flag()
        self._publish()

    def mark_stop_initiated(self, reason: EndReason) -> None:
        if self.end_reason != EndReason.CRASH:
            self.end_reason = reason
        if self.state in (StreamState.LIVE, StreamState.IDLE):
            self.state = StreamState.ENDING
        self._publish()

    def mark_ended(self, reason: EndReason) -> None:
        if self.end_reason == EndReason.CRASH:
            pass
        elif reason == EndReason.CRASH and self.end_signal_sent and self.end_reason is not None:
            # the stop was already sent with its own reason
            log.info("End reason kept as %s (stop already sent)", self.end_reason.value)
        else:
            self.end_reason = reason
        self.state = StreamState.ENDED
        self._publish()

    def mark_idle(self) -> None:
        self._cancel_idle_timer("idle")
        self.state = StreamState.IDLE
        self.end_reason = None
        self.active_session_id = None
        self.has_reference_frame = False
        self._reset_end_signal()
        self._publish()

    # -----------------------------
    # End signal (expected disconnect window)
    # -----------------------------
    def mark_end_signal_sent(self) -> None:
        if self.end_signal_sent:
            return
        self.end_signal_sent = True
        self.end_signal_sent_at = self.clock()

    def _reset_end_signal(self) -> None:
        self.end_signal_sent = False
        self.end_signal_sent_at = 0.0

    def is_expected_disconnect(self) -> bool:
        if not self.end_signal_sent or self.end_signal_sent_at <= 0:
            return False
        elapsed_ms = (self.clock() - self.end_signal_sent_at) * 1000.0
        return 0 <= elapsed_ms <= self.expected_disconnect_window_ms

    # -----------------------------
    # Controller events
    # -----------------------------
    def on_connection_opened(self) -> None:
        self.controller_connected = True
        log.info("OBS connection established")

    def on_connection_closed(self) -> None:
        self.controller_connected = False
        expected = self.is_expected_disconnect()
        if expected:
            log.info("OBS connection closed (expected after End Stream)")
            return
        log.warning("OBS connection lost")

        if self.state not in (StreamState.LIVE, StreamState.ENDING):
            return

        self.mark_ended(EndReason.CRASH)
        sid = self.active_session_id
        if sid:
            # terminated (not just stopped) so the scheduler will not relaunch it
            if self.store is not None:
                try:
                    self.store.set_status(sid, SessionStatus.TERMINATED)
                except ScheduleStoreError as e:
                    log.error("Could not terminate session %s after crash: %s", sid, e)
            self.set_active_session(None)

    def adopt_external_stream(self) -> None:
        """OBS went live without a scheduled start (operator, or running before we connected)."""
        if self.state in (StreamState.LIVE, StreamState.ENDING):
            return
        log.warning("OBS is streaming without a scheduled start; treating it as live")
        if self.state == StreamState.ENDED:
            # new episode; the previous end reason no longer applies
            self.mark_idle()
        self.mark_live()

    def on_output_state_changed(self, output_state: str) -> None:
        self.last_output_state = output_state
        log.info("Stream output state: %s", output_state)

        if output_state in (OUTPUT_STARTING, OUTPUT_STARTED):
            self._cancel_idle_timer(output_state)
            self.adopt_external_stream()
            return
        if output_state == OUTPUT_STOPPED:
            self._schedule_idle_timer()

    def _schedule_idle_timer(self) -> None:
        self._cancel_idle_timer("reschedule")
        loop = asyncio.get_running_loop()
        self._idle_timer = loop.call_later(self.ended_to_idle_delay, self._idle_timer_fired)

    def _cancel_idle_timer(self, why: str) -> None:
        if self._idle_timer is None:
            return
        self._idle_timer.cancel()
        self._idle_timer = None
        log.info("ended->idle timer canceled (%s)", why)

    def _idle_timer_fired(self) -> None:
        self._idle_timer = None
        if self.state != StreamState.ENDED:
            return
        if self.last_output_state != OUTPUT_STOPPED:
            return
        self.mark_idle()
