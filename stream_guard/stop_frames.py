"""
stop_frames.py

Stop frame filters: map show names to stop frame images, so a recurring
service gets its end card without editing every schedule entry.

stopframe-filters.json is a list of filters:
  {"id": "...", "name": "Sunday", "enabled": true,
   "shows": ["Sunday Service"], "stopFramePath": "C:/frames/sunday.png"}

Applied on every schedule load:
- an enabled filter whose image is missing is disabled and saved back,
- a show claimed by two or more enabled filters gets no stop frame,
- any other session whose name is a show of an enabled filter gets its image,
  sessions matching no filter get none.
Without a filter file the schedule's own stopFramePath values are used as is.
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Set

from .logs import log_action
from .notify import STOP_FRAME_FILTERS
from .session import Session

log = logging.getLogger(__name__)

DEFAULT_FILTER_NAME = "Untitled filter"

NOTICE_DISABLED = "filter_disabled_invalid_stop_frame"
NOTICE_CONFLICT = "conflict"


@dataclass
class StopFrameFilter:
    id: str
    name: str = DEFAULT_FILTER_NAME
    enabled: bool = False
    shows: List[str] = field(default_factory=list)
    stop_frame_path: str = ""

    @classmethod
    def from_dict(cls, raw) -> Optional["StopFrameFilter"]:
        if not isinstance(raw, dict):
            return None
        fid = raw.get("id")
        name = raw.get("name")
        enabled = raw.get("enabled")
        shows = raw.get("shows")
        path = raw.get("stopFramePath")
        return cls(
            id=fid if isinstance(fid, str) and fid.strip() else new_filter_id(),
            name=name if isinstance(name, str) else DEFAULT_FILTER_NAME,
            enabled=enabled if isinstance(enabled, bool) else False,
            shows=[s for s in shows if isinstance(s, str)] if isinstance(shows, list) else [],
            stop_frame_path=path if isinstance(path, str) else "",
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "enabled": self.enabled,
            "shows": list(self.shows),
            "stopFramePath": self.stop_frame_path,
        }


def new_filter_id() -> str:
    return str(uuid.uuid4())


def stop_frame_problem(path: str) -> Optional[str]:
    """None when the image can be used, else "empty_path" / "missing_file"."""
    if not (path or "").strip():
        return "empty_path"
    if not os.path.isfile(path):
        return "missing_file"
    return None


class StopFrameFilterStore:
    def __init__(self, path: str, notifier=None):
        self.path = path
        self.notifier = notifier
        # notices already published, so a standing conflict is reported once
        self._announced: Set[str] = set()

    def exists(self) -> bool:
        return os.path.exists(self.path)

    # -----------------------------
    # File
    # -----------------------------
    def read(self) -> List[StopFrameFilter]:
        if not self.exists():
            return []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            log.warning("Stop frame filters unreadable (%s): %s", self.path, e)
            log_action(log, "stopframe_filters_invalid", logging.WARNING, reason="parse_error")
            return []
        if not isinstance(data, list):
            log_action(log, "stopframe_filters_invalid", logging.WARNING, reason="not_array")
            return []
        filters = [f for f in (StopFrameFilter.from_dict(raw) for raw in data) if f is not None]
        log_action(log, "stopframe_filters_loaded", logging.DEBUG, count=len(filters))
        return filters

    def write(self, filters: List[StopFrameFilter]) -> bool:
        try:
            folder = os.path.dirname(os.path.abspath(self.path))
            os.makedirs(folder, exist_ok=True)
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump([x.to_dict() for x in filters], f, indent=2)
        except OSError as e:
            log.error("Stop frame filters not saved (%s): %s", self.path, e)
            return False
        log_action(log, "stopframe_filters_saved", count=len(filters))
        return True

    # -----------------------------
    # Editing
    # -----------------------------
    def create(self, name: str, shows: List[str], stop_frame_path: str = "",
               enabled: bool = False) -> StopFrameFilter:
        f = StopFrameFilter(new_filter_id(), name or DEFAULT_FILTER_NAME, bool(enabled),
                            [s for s in shows if s.strip()], stop_frame_path or "")
        self.write(self.read() + [f])
        return f

    def update(self, filter_id: str, **changes) -> Optional[StopFrameFilter]:
        filters = self.read()
        for i, f in enumerate(filters):
            if f.id == filter_id:
                filters[i] = replace(f, **changes, id=f.id)
                self.write(filters)
                return filters[i]
        return None

    def delete(self, filter_id: str) -> bool:
        filters = self.read()
        kept = [f for f in filters if f.id != filter_id]
        if len(kept) == len(filters):
            return False
        self.write(kept)
        return True

    # -----------------------------
    # Schedule
    # -----------------------------
    def apply(self, sessions: List[Session]) -> List[Session]:
        if not self.exists():
            return sessions

        notices: List[dict] = []
        filters = self.read()

        changed = False
        for i, f in enumerate(filters):
            if not f.enabled:
                continue
            problem = stop_frame_problem(f.stop_frame_path)
            if problem:
                filters[i] = replace(f, enabled=False)
                changed = True
                notices.append({"type": NOTICE_DISABLED, "filter_id": f.id, "filter_name": f.name,
                                "stop_frame_path": f.stop_frame_path, "reason": problem})
                log_action(log, "stopframe_filter_disabled_invalid", logging.WARNING,
                           filter=f.name, path=f.stop_frame_path, reason=problem)
        if changed:
            self.write(filters)

        by_show: Dict[str, List[StopFrameFilter]] = {}
        for f in filters:
            if not f.enabled:
                continue
            for show in f.shows:
                show = show.strip()
                if show:
                    by_show.setdefault(show, []).append(f)

        conflicted = set()
        for show, claimed in by_show.items():
            if len(claimed) < 2:
                continue
            conflicted.add(show)
            notices.append({"type": NOTICE_CONFLICT, "show": show,
                            "filter_ids": [f.id for f in claimed],
                            "filter_names": [f.name for f in claimed]})
            log_action(log, "stopframe_filters_conflict", logging.WARNING,
                       show=show, filters=",".join(f.name for f in claimed))

        out = []
        for s in sessions:
            show = (s.name or "").strip()
            claimed = by_show.get(show)
            path = claimed[0].stop_frame_path if claimed and show not in conflicted else None
            out.append(replace(s, reference_frame_path=path))

        self._announce(notices)
        return out

    def _announce(self, notices: List[dict]) -> None:
        keys = {}
        for n in notices:
            keys[json.dumps(n, sort_keys=True)] = n
        if self.notifier is not None:
            for key, n in keys.items():
                if key not in self._announced:
                    self.notifier.publish(STOP_FRAME_FILTERS, n)
        self._announced = set(keys)
