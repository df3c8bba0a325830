"""
config.py

Configuration for Stream Guard.

- `Config` holds every tunable, grouped by concern (edit defaults here).
- Overrides come from a JSON file next to the app (or any path passed on the
  command line). Only known fields are applied, coerced to the default's type.
- `AutoStopSettings` is the frozen snapshot a scan runs with; edits made while
  a scan is active only apply to the next scan.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, fields
from typing import Optional

log = logging.getLogger(__name__)

# Consecutive controller failures before the scheduler pauses itself.
MAX_CONSECUTIVE_FAILURES = 5

SCHEDULER_TICK_SECONDS = 5.0
SCHEDULER_INITIAL_DELAY_SECONDS = 1.5
ENDED_TO_IDLE_DELAY_SECONDS = 5.0
AUTOSTOP_FALLBACK_SECONDS = 10.0


@dataclass
class Config:
    """Configuration for Stream Guard."""

    # ----------------------------
    # OBS CONNECTION
    # ----------------------------
    OBS_HOST: str = "127.0.0.1"
    OBS_PORT: int = 4455
    OBS_PASSWORD: str = ""
    OBS_TIMEOUT_SECONDS: int = 5
    OBS_RETRY_SECONDS: float = 5.0

    # ----------------------------
    # OBS PROFILES (one per platform target)
    # ----------------------------
    # The stream destination is tied to the active OBS profile, so the scheduler
    # switches to the platform's profile before every start.
    PROFILE_SINGLE: str = "SingleStream"
    PROFILE_MULTI: str = "MultiStream"
    PROFILE_ALT: str = "SingleStream"
    OBS_PROFILE_SWITCH_GRACE_SECONDS: float = 2.0
    # Server used when a session carries its own stream key.
    RTMP_SERVER: str = "rtmp://localhost/live"

    # ----------------------------
    # SCHEDULE
    # ----------------------------
    SCHEDULE_FILE: str = "schedule.json"
    # Show name -> stop frame rules; overrides per-session stopFramePath when present.
    STOP_FRAME_FILTERS_FILE: str = "stopframe-filters.json"
    TIMEZONE: str = ""  # empty = local time for naive schedule timestamps

    # ----------------------------
    # STREAM TRUTH
    # ----------------------------
    # A controller disconnect this soon after End Stream is not a crash.
    EXPECTED_DISCONNECT_WINDOW_MS: int = 4000

    # ----------------------------
    # AUTOSTOP (stop frame detection)
    # ----------------------------
    AUTOSTOP_ENABLED: bool = False
    AUTOSTOP_FPS: float = 3.0
    AUTOSTOP_THRESHOLD: float = 0.2
    AUTOSTOP_REQUIRED_HITS: int = 3
    AUTOSTOP_WINDOW_SEC: float = 3.0
    AUTOSTOP_COOLDOWN_SEC: float = 10.0
    AUTOSTOP_LEAD_MINUTES: float = 5.0
    AUTOSTOP_PRE_STOP_DELAY_MS: int = 1000
    AUTOSTOP_POST_STOP_DELAY_MS: int = 1000

    # ----------------------------
    # CAPTURE DEVICE / FFMPEG
    # ----------------------------
    FFMPEG_PATH: str = ""  # empty = look up "ffmpeg" on PATH
    CAPTURE_INPUT_FORMAT: str = "dshow"  # dshow (Windows), v4l2 (Linux), avfoundation (macOS)
    CAPTURE_DEVICE: str = "video=OBS Virtual Camera"

    # ----------------------------
    # LOGGING
    # ----------------------------
    LOG_LEVEL: str = "INFO"
    LOG_TO_FILE_ENABLED: bool = True
    LOG_RUN_FILE_PREFIX: str = "stream_guard"
    LOG_DIR: str = ""
    LOG_RETENTION_COUNT: int = 30
    LOG_BUFFER_LINES: int = 400

    # ----------------------------
    # WEB HUD
    # ----------------------------
    WEB_HUD_ENABLED: bool = True
    WEB_HUD_HOST: str = "0.0.0.0"
    WEB_HUD_PORT: int = 8765
    WEB_HUD_TOKEN: str = ""
    WEB_HUD_LOG_LINES: int = 30

    def autostop_settings(self) -> "AutoStopSettings":
        return AutoStopSettings(
            enabled=bool(self.AUTOSTOP_ENABLED),
            fps=float(self.AUTOSTOP_FPS),
            threshold=float(self.AUTOSTOP_THRESHOLD),
            required_hits=int(self.AUTOSTOP_REQUIRED_HITS),
            window_sec=float(self.AUTOSTOP_WINDOW_SEC),
            cooldown_sec=float(self.AUTOSTOP_COOLDOWN_SEC),
            lead_minutes=float(self.AUTOSTOP_LEAD_MINUTES),
            pre_stop_delay_ms=int(self.AUTOSTOP_PRE_STOP_DELAY_MS),
            post_stop_delay_ms=int(self.AUTOSTOP_POST_STOP_DELAY_MS),
        )


@dataclass(frozen=True)
class AutoStopSettings:
    enabled: bool = False
    fps: float = 3.0
    threshold: float = 0.2
    required_hits: int = 3
    window_sec: float = 3.0
    cooldown_sec: float = 10.0
    lead_minutes: float = 5.0
    pre_stop_delay_ms: int = 1000
    post_stop_delay_ms: int = 1000

    @property
    def max_distance(self) -> int:
        return max(0, min(64, round(self.threshold * 64)))

    def effective_lead_minutes(self) -> float:
        # Negative or non-finite leads fall back to 5 minutes.
        v = self.lead_minutes
        if v != v or v < 0 or v == float("inf"):
            return 5.0
        return v


# -----------------------------
# Override file support
# -----------------------------
def _coerce(cur, v):
    if isinstance(cur, bool):
        if isinstance(v, str):
            return v.strip().lower() in ("1", "true", "yes", "on")
        return bool(v)
    if isinstance(cur, int):
        return int(v)
    if isinstance(cur, float):
        return float(v)
    if isinstance(cur, str):
        return str(v)
    raise TypeError(f"unsupported type {type(cur).__name__}")


def load_overrides_file(path: str) -> dict:
    if not path or not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        log.warning("Config overrides unreadable (%s): %s", path, e)
        return {}
    if isinstance(data, dict) and isinstance(data.get("overrides"), dict):
        return data["overrides"]
    if isinstance(data, dict):
        # legacy flat dict
        return data
    return {}


def apply_overrides(cfg: Config, overrides: dict) -> Config:
    known = {f.name for f in fields(cfg)}
    for k, v in (overrides or {}).items():
        if k not in known:
            log.warning("Config: unknown key ignored: %s", k)
            continue
        try:
            setattr(cfg, k, _coerce(getattr(cfg, k), v))
        except (TypeError, ValueError) as e:
            log.warning("Config: bad value for %s ignored (%r: %s)", k, v, e)
    return cfg


def load_config(path: Optional[str] = None) -> Config:
    cfg = Config()
    if path:
        apply_overrides(cfg, load_overrides_file(path))
    return cfg


def resolve_path(p: str) -> str:
    """Relative paths in the config are taken from the working directory."""
    if not p or os.path.isabs(p):
        return p
    return os.path.abspath(p)
