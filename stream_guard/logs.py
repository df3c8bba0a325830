"""
logs.py

Run logging for Stream Guard.

- Console + one file per run: <prefix>_run_<YYYY-mm-dd_HH-MM-SS>.log
- Keeps only the newest LOG_RETENTION_COUNT run logs.
- Recent formatted lines are kept in memory for the web HUD.
- `log_action()` writes one-line lifecycle records ("action key=value ...").
"""

from __future__ import annotations

import datetime as dt
import glob
import logging
import os
import threading
from collections import deque
from typing import List, Optional

from .config import Config

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
DATE_FORMAT = "%H:%M:%S"


class RecentLinesHandler(logging.Handler):
    """Ring buffer of the last N formatted lines (read by the web HUD)."""

    def __init__(self, maxlen: int = 400):
        super().__init__()
        self._buf = deque(maxlen=maxlen)
        self._lock_lines = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = self.format(record)
        except Exception:
            self.handleError(record)
            return
        with self._lock_lines:
            self._buf.append(line)

    def lines(self, last: Optional[int] = None) -> List[str]:
        with self._lock_lines:
            out = list(self._buf)
        if last is not None:
            out = out[-int(last):]
        return out


def log_base_dir(cfg: Config) -> str:
    base = (cfg.LOG_DIR or "").strip()
    if base:
        return base
    return os.path.join(os.getcwd(), "logs")


def cleanup_old_logs(base_dir: str, prefix: str, retention: int) -> int:
    """Keep only the most recent `retention` run logs. Returns how many were removed."""
    files = glob.glob(os.path.join(base_dir, f"{prefix}_run_*.log"))
    if len(files) <= retention:
        return 0
    files.sort(key=os.path.getmtime)
    count = 0
    for fpath in (files[:-retention] if retention > 0 else files):
        try:
            os.remove(fpath)
            count += 1
        except OSError:
            continue
    return count


def configure_logging(cfg: Config, console: bool = True) -> RecentLinesHandler:
    root = logging.getLogger()
    root.setLevel(getattr(logging, str(cfg.LOG_LEVEL).upper(), logging.INFO))
    formatter = logging.Formatter(LOG_FORMAT, DATE_FORMAT)

    for h in list(root.handlers):
        if getattr(h, "_stream_guard", False):
            root.removeHandler(h)
            h.close()

    recent = RecentLinesHandler(maxlen=int(cfg.LOG_BUFFER_LINES))
    recent.setFormatter(formatter)
    recent._stream_guard = True
    root.addHandler(recent)

    if console:
        ch = logging.StreamHandler()
        ch.setFormatter(formatter)
        ch._stream_guard = True
        root.addHandler(ch)

    if cfg.LOG_TO_FILE_ENABLED:
        base_dir = log_base_dir(cfg)
        try:
            os.makedirs(base_dir, exist_ok=True)
            removed = cleanup_old_logs(base_dir, cfg.LOG_RUN_FILE_PREFIX, int(cfg.LOG_RETENTION_COUNT))
            ts = dt.datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
            path = os.path.join(base_dir, f"{cfg.LOG_RUN_FILE_PREFIX}_run_{ts}.log")
            fh = logging.FileHandler(path, encoding="utf-8")
            fh.setFormatter(logging.Formatter(LOG_FORMAT, "%Y-%m-%d %H:%M:%S"))
            fh._stream_guard = True
            root.addHandler(fh)
            logging.getLogger(__name__).info("Run log file: %s", path)
            if removed:
                logging.getLogger(__name__).info("Cleanup: removed %d old log files", removed)
        except OSError as e:
            logging.getLogger(__name__).warning("File logging disabled: %s", e)

    return recent


def _fmt_value(v) -> str:
    if isinstance(v, float):
        return f"{v:.2f}"
    s = str(v)
    if " " in s:
        return repr(s)
    return s


def log_action(logger: logging.Logger, action: str, level: int = logging.INFO, **fields) -> None:
    if fields:
        tail = " ".join(f"{k}={_fmt_value(v)}" for k, v in fields.items())
        logger.log(level, "%s %s", action, tail)
    else:
        logger.log(level, "%s", action)
