"""Best-effort notification sink (web HUD, logs). Publishing never blocks and never fails the caller."""

from __future__ import annotations

import collections
import datetime as dt
import logging
from typing import Callable, Deque, Dict, List

log = logging.getLogger(__name__)

STREAM_CONTEXT = "stream_context"
AUTOSTOP = "autostop"
SCHEDULER_PAUSED = "scheduler_paused"
SESSION_SKIPPED = "session_skipped"
SESSION_WARNING = "session_warning"
STOP_FRAME_FILTERS = "stop_frame_filters"

Listener = Callable[[str, dict], None]


class Notifier:
    def __init__(self, history: int = 50):
        self._listeners: List[Listener] = []
        self.latest: Dict[str, dict] = {}
        self.recent: Deque[dict] = collections.deque(maxlen=history)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def publish(self, kind: str, payload: dict) -> None:
        payload = dict(payload or {})
        self.latest[kind] = payload
        if kind != STREAM_CONTEXT:
            self.recent.append({
                "kind": kind,
                "at": dt.datetime.now().astimezone().isoformat(timespec="seconds"),
                **payload,
            })
        for listener in list(self._listeners):
            try:
                listener(kind, payload)
            except Exception:
                log.exception("Notification listener failed (%s)", kind)
