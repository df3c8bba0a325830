"""Scheduled session model and time-derived status."""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

try:
    from zoneinfo import ZoneInfo
except Exception:
    ZoneInfo = None


class Platform(str, Enum):
    SINGLE = "single"  # one RTMP destination, key set per session
    MULTI = "multi"    # multi-RTMP profile, key required
    ALT = "alt"        # destination configured inside the OBS profile


class SessionStatus(str, Enum):
    UPCOMING = "upcoming"
    LIVE = "live"
    EXPIRED = "expired"
    TERMINATED = "terminated"
    SKIPPED = "skipped"


OVERRIDE_STATUSES = (SessionStatus.TERMINATED, SessionStatus.SKIPPED)

# Older schedule files use platform names instead of targets.
_PLATFORM_ALIASES = {
    "facebook": Platform.SINGLE,
    "youtube": Platform.ALT,
    "multi": Platform.MULTI,
    "single": Platform.SINGLE,
    "alt": Platform.ALT,
}


def get_tz(name: str):
    if not name or ZoneInfo is None:
        return None
    try:
        return ZoneInfo(name)
    except Exception:
        return None


def parse_timestamp(value, tz=None) -> dt.datetime:
    """ISO-8601 string (or datetime) -> aware datetime. Naive values get `tz` or local time."""
    if isinstance(value, dt.datetime):
        d = value
    else:
        s = str(value).strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        d = dt.datetime.fromisoformat(s)
    if d.tzinfo is None:
        d = d.replace(tzinfo=tz) if tz is not None else d.astimezone()
    return d


@dataclass
class Session:
    id: str
    name: str
    platform: Platform
    start_time: dt.datetime
    duration_minutes: int
    stream_key: Optional[str] = None
    auto_start: bool = True
    status: Optional[SessionStatus] = None
    skip_reason: Optional[str] = None
    reference_frame_path: Optional[str] = None

    @property
    def end_time(self) -> dt.datetime:
        return self.start_time + dt.timedelta(minutes=self.duration_minutes)

    @property
    def requires_stream_key(self) -> bool:
        return self.platform in (Platform.SINGLE, Platform.MULTI)

    @property
    def has_stream_key(self) -> bool:
        return bool((self.stream_key or "").strip())

    @property
    def has_reference_frame(self) -> bool:
        return bool((self.reference_frame_path or "").strip())

    def is_overridden(self) -> bool:
        return self.status in OVERRIDE_STATUSES

    def contains(self, now: dt.datetime) -> bool:
        return self.start_time <= now < self.end_time

    def minutes_until_end(self, now: dt.datetime) -> float:
        return (self.end_time - now).total_seconds() / 60.0

    @classmethod
    def from_dict(cls, raw: dict, tz=None) -> "Session":
        if not isinstance(raw, dict):
            raise ValueError("session entry is not an object")
        sid = str(raw.get("id") or "").strip()
        if not sid:
            raise ValueError("session has no id")

        platform_raw = str(raw.get("platform") or raw.get("platformTarget") or "single").lower()
        if platform_raw not in _PLATFORM_ALIASES:
            raise ValueError(f"unknown platform {platform_raw!r}")

        duration = int(raw.get("durationMinutes"))
        if duration <= 0:
            raise ValueError("durationMinutes must be positive")

        status = raw.get("status")
        status = SessionStatus(status) if status in SessionStatus._value2member_map_ else None

        return cls(
            id=sid,
            name=str(raw.get("name") or sid),
            platform=_PLATFORM_ALIASES[platform_raw],
            start_time=parse_timestamp(raw.get("startTime"), tz),
            duration_minutes=duration,
            stream_key=raw.get("streamKey", raw.get("fbKey")) or None,
            auto_start=raw.get("autoStart") is not False,
            status=status,
            skip_reason=raw.get("skipReason") or None,
            reference_frame_path=raw.get("stopFramePath") or raw.get("referenceFramePath") or None,
        )

    def to_dict(self) -> dict:
        out = {
            "id": self.id,
            "name": self.name,
            "platform": self.platform.value,
            "startTime": self.start_time.isoformat(),
            "durationMinutes": self.duration_minutes,
            "autoStart": self.auto_start,
        }
        if self.stream_key:
            out["streamKey"] = self.stream_key
        if self.status is not None:
            out["status"] = self.status.value
        if self.skip_reason:
            out["skipReason"] = self.skip_reason
        if self.reference_frame_path:
            out["stopFramePath"] = self.reference_frame_path
        return out


def compute_status(session: Session, now: dt.datetime) -> SessionStatus:
    # manual overrides are sticky
    if session.is_overridden():
        return session.status
    if now < session.start_time:
        return SessionStatus.UPCOMING
    if now <= session.end_time:
        return SessionStatus.LIVE
    return SessionStatus.EXPIRED


def with_status(session: Session, now: dt.datetime) -> Session:
    return replace(session, status=compute_status(session, now))
