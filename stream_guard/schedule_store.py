"""
schedule_store.py

JSON-file schedule store.

The file is re-read on every call: the operator (or an import tool) may edit
it at any time, so nothing here caches sessions between calls.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import os
from typing import Callable, List, Optional

from .errors import ScheduleStoreError
from .session import Session, SessionStatus, with_status

log = logging.getLogger(__name__)


def _now_local() -> dt.datetime:
    return dt.datetime.now().astimezone()


class ScheduleStore:
    def __init__(self, path: str, tz=None, now_fn: Callable[[], dt.datetime] = _now_local,
                 filters=None):
        self.path = path
        self.tz = tz
        self.now_fn = now_fn
        # StopFrameFilterStore; decides each session's stop frame on load
        self.filters = filters

    def _read_raw(self) -> list:
        if not os.path.exists(self.path):
            log.warning("No schedule file at %s, creating an empty one", self.path)
            self._write_raw([])
            return []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except ValueError as e:
            log.error("Schedule file unreadable (%s): %s", self.path, e)
            return []
        except OSError as e:
            raise ScheduleStoreError(f"cannot read {self.path}: {e}") from e
        return data if isinstance(data, list) else []

    def _write_raw(self, data: list) -> None:
        folder = os.path.dirname(os.path.abspath(self.path))
        tmp = self.path + ".tmp"
        try:
            os.makedirs(folder, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp, self.path)
        except OSError as e:
            raise ScheduleStoreError(f"cannot write {self.path}: {e}") from e

    def load(self) -> List[Session]:
        sessions = self._load_stored()
        if self.filters is not None:
            sessions = self.filters.apply(sessions)
        return sessions

    def _load_stored(self) -> List[Session]:
        now = self.now_fn()
        sessions: List[Session] = []
        for i, raw in enumerate(self._read_raw()):
            try:
                sessions.append(with_status(Session.from_dict(raw, self.tz), now))
            except (ValueError, TypeError) as e:
                log.warning("Schedule entry #%d skipped: %s", i, e)
        return sessions

    def save(self, sessions: List[Session]) -> None:
        now = self.now_fn()
        self._write_raw([with_status(s, now).to_dict() for s in sessions])
        log.info("Schedule saved (%d sessions)", len(sessions))

    def get(self, session_id: Optional[str]) -> Optional[Session]:
        if not session_id:
            return None
        for s in self.load():
            if s.id == session_id:
                return s
        return None

    def set_status(self, session_id: str, status: SessionStatus, skip_reason: Optional[str] = None) -> bool:
        sessions = self._load_stored()
        found = False
        for s in sessions:
            if s.id == session_id:
                s.status = status
                s.skip_reason = skip_reason if status == SessionStatus.SKIPPED else None
                found = True
                break
        if not found:
            log.warning("set_status: session %s not found", session_id)
            return False
        self.save(sessions)
        return True
