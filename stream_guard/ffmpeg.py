"""
ffmpeg.py

ffmpeg plumbing for stop frame detection.

- FrameSource: ffmpeg reads the virtual capture device (or a file), scales to
  9x8 gray and writes raw bytes to stdout; every 72 bytes is one frame.
- read_gray_9x8: the same conversion for a still image, so a reference
  fingerprint is bit-comparable with live ones.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import subprocess
from typing import Callable, List, Optional

from .config import Config
from .dhash import FRAME_BYTES, HASH_H, HASH_W
from .errors import ReferenceLoadError

log = logging.getLogger(__name__)

FrameCallback = Callable[[bytes, int], None]
ExitCallback = Callable[[Optional[int]], None]

# Keep ffmpeg from flashing a console window on Windows.
_CREATION_FLAGS = getattr(subprocess, "CREATE_NO_WINDOW", 0)

REFERENCE_TIMEOUT_SECONDS = 15.0


def resolve_ffmpeg_path(cfg: Config) -> Optional[str]:
    p = (cfg.FFMPEG_PATH or "").strip()
    if p:
        if os.path.isfile(p):
            return p
        log.error("FFmpeg not found at configured path: %s", p)
        return None
    found = shutil.which("ffmpeg")
    if not found:
        log.error("FFmpeg not found on PATH")
    return found


def frame_filter(fps: Optional[float] = None) -> str:
    parts = []
    if fps:
        parts.append(f"fps={fps:g}")
    parts += [f"scale={HASH_W}:{HASH_H}", "format=gray"]
    return ",".join(parts)


def capture_input_args(cfg: Config) -> List[str]:
    args = []
    if cfg.CAPTURE_INPUT_FORMAT:
        args += ["-f", cfg.CAPTURE_INPUT_FORMAT]
    return args + ["-i", cfg.CAPTURE_DEVICE]


def file_input_args(path: str) -> List[str]:
    return ["-i", path]


def raw_gray_args(input_args: List[str], fps: Optional[float]) -> List[str]:
    return [
        "-loglevel", "error",
        *input_args,
        "-vf", frame_filter(fps),
        "-an", "-sn", "-dn",
        "-f", "rawvideo",
        "-pix_fmt", "gray",
        "pipe:1",
    ]


class FrameSource:
    """Supervises one ffmpeg process and slices its stdout into frames."""

    def __init__(self, ffmpeg_path: str, input_args: List[str], fps: float, on_frame: FrameCallback,
                 on_exit: Optional[ExitCallback] = None, frame_bytes: int = FRAME_BYTES):
        self.ffmpeg_path = ffmpeg_path
        self.input_args = list(input_args)
        self.fps = fps
        self.on_frame = on_frame
        self.on_exit = on_exit
        self.frame_bytes = frame_bytes

        self.proc: Optional[asyncio.subprocess.Process] = None
        self.frame_index = 0
        self._buffer = bytearray()
        self._reader: Optional[asyncio.Task] = None
        self._stderr_reader: Optional[asyncio.Task] = None
        self._reaper: Optional[asyncio.Task] = None
        self._last_stderr = ""
        self.returncode: Optional[int] = None

    @property
    def running(self) -> bool:
        return self.proc is not None

    async def start(self) -> bool:
        if self.proc is not None:
            return True
        args = raw_gray_args(self.input_args, self.fps)
        log.info("FFmpeg spawn: %s %s", self.ffmpeg_path, " ".join(args))
        try:
            self.proc = await asyncio.create_subprocess_exec(
                self.ffmpeg_path, *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                creationflags=_CREATION_FLAGS,
            )
        except OSError as e:
            log.error("FFmpeg spawn error: %s", e)
            self.proc = None
            return False

        proc = self.proc
        self._reader = asyncio.create_task(self._read_stdout(proc))
        self._stderr_reader = asyncio.create_task(self._read_stderr(proc))
        log.info("FFmpeg frame source started (pid=%s, fps=%g)", proc.pid, self.fps)
        return True

    def feed(self, chunk: bytes) -> None:
        self._buffer += chunk
        n = self.frame_bytes
        while len(self._buffer) >= n:
            frame = bytes(self._buffer[:n])
            del self._buffer[:n]
            self.frame_index += 1
            self.on_frame(frame, self.frame_index)

    async def _read_stdout(self, proc: asyncio.subprocess.Process) -> None:
        while True:
            chunk = await proc.stdout.read(4096)
            if not chunk:
                break
            if proc is not self.proc:
                return
            self.feed(chunk)
        code = await proc.wait()
        if proc is self.proc:
            self.returncode = code
            level = logging.INFO if code == 0 else logging.WARNING
            log.log(level, "FFmpeg exited with code %s%s", code,
                    f" ({self._last_stderr})" if self._last_stderr else "")
            self.proc = None
            self._buffer.clear()
            # exited on its own (end of file, device gone)
            if self.on_exit is not None:
                try:
                    self.on_exit(code)
                except Exception:
                    log.exception("FFmpeg exit callback error")

    async def _read_stderr(self, proc: asyncio.subprocess.Process) -> None:
        while True:
            line = await proc.stderr.readline()
            if not line:
                return
            text = line.decode("utf-8", "replace").strip()
            if text:
                self._last_stderr = text
                log.debug("ffmpeg: %s", text)

    async def wait(self) -> Optional[int]:
        """Until ffmpeg closes stdout (end of a file input). Returns the exit code."""
        task = self._reader
        if task is not None:
            await task
        return self.returncode

    def stop(self) -> None:
        proc = self.proc
        self.proc = None
        self._buffer.clear()
        for task in (self._reader, self._stderr_reader):
            if task is not None and not task.done():
                task.cancel()
        self._reader = None
        self._stderr_reader = None
        if proc is None:
            return
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
        try:
            self._reaper = asyncio.get_running_loop().create_task(self._reap(proc))
        except RuntimeError:
            # no loop (interpreter shutdown); the OS reaps it
            pass
        log.info("FFmpeg frame source stopped")

    async def _reap(self, proc: asyncio.subprocess.Process) -> None:
        code = await proc.wait()
        log.debug("FFmpeg pid=%s reaped (code %s)", proc.pid, code)


async def read_gray_9x8(ffmpeg_path: Optional[str], image_path: str) -> bytes:
    """Still image -> the first 72 bytes of its 9x8 gray conversion."""
    if not ffmpeg_path:
        raise ReferenceLoadError("FFmpeg missing")
    if not image_path or not os.path.isfile(image_path):
        raise ReferenceLoadError(f"Reference image not found: {image_path}")

    args = raw_gray_args(file_input_args(image_path), None)
    args = args[:-1] + ["-frames:v", "1", "pipe:1"]
    try:
        proc = await asyncio.create_subprocess_exec(
            ffmpeg_path, *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            creationflags=_CREATION_FLAGS,
        )
    except OSError as e:
        raise ReferenceLoadError(f"FFmpeg spawn failed: {e}") from e

    try:
        out, err = await asyncio.wait_for(proc.communicate(), timeout=REFERENCE_TIMEOUT_SECONDS)
    except asyncio.TimeoutError as e:
        proc.kill()
        raise ReferenceLoadError("FFmpeg timed out while converting reference") from e

    if proc.returncode != 0:
        detail = err.decode("utf-8", "replace").strip()
        raise ReferenceLoadError(f"FFmpeg exited {proc.returncode} while converting reference: {detail}")
    if len(out) < FRAME_BYTES:
        raise ReferenceLoadError(f"Reference conversion returned {len(out)} bytes, expected {FRAME_BYTES}")
    return out[:FRAME_BYTES]
