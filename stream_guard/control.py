"""
control.py

Async stream control used by the scheduler, the orchestrator and the web HUD.

Controller calls are blocking (obsws-python), so they run in a worker thread.
A failed call raises ControllerError; callers decide whether it counts.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from .config import Config
from .errors import ControllerError, ProfileSwitchError
from .logs import log_action
from .session import Platform, Session
from .truth import EndReason, StreamTruth

log = logging.getLogger(__name__)


class StreamControl:
    def __init__(self, cfg: Config, controller, truth: StreamTruth,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.cfg = cfg
        self.controller = controller
        self.truth = truth
        self.sleep = sleep

    async def _run(self, fn, *args):
        return await asyncio.to_thread(fn, *args)

    def profile_for(self, platform: Platform) -> str:
        if platform == Platform.MULTI:
            return self.cfg.PROFILE_MULTI
        if platform == Platform.ALT:
            return self.cfg.PROFILE_ALT
        return self.cfg.PROFILE_SINGLE

    # -----------------------------
    # Profile preflight
    # -----------------------------
    async def ensure_profile(self, required: str) -> None:
        required = (required or "").strip()
        if not required:
            return
        current, profiles, err = await self._run(self.controller.get_profile_list)
        if err:
            raise ProfileSwitchError(f"profile list unavailable: {err}")
        if current == required:
            log.info("Profile OK: %s", required)
            return
        if required not in profiles:
            raise ProfileSwitchError(f"profile {required!r} not found in OBS")

        log.info("Switching OBS profile: %s -> %s", current or "?", required)
        ok, err = await self._run(self.controller.set_current_profile, required)
        if not ok:
            raise ProfileSwitchError(f"could not switch to {required!r}: {err}")
        # OBS needs a moment to apply the profile's output settings
        await self.sleep(self.cfg.OBS_PROFILE_SWITCH_GRACE_SECONDS)
        log.info("Profile changed to %s", required)

    # -----------------------------
    # Stream start / stop
    # -----------------------------
    async def start(self, session: Session) -> None:
        await self.ensure_profile(self.profile_for(session.platform))
        if session.platform == Platform.ALT:
            # destination lives in the OBS profile; do not touch stream settings
            ok, msg = await self._run(self.controller.start_stream)
        else:
            ok, msg = await self._run(self.controller.start_stream, session.stream_key, self.cfg.RTMP_SERVER)
        if not ok:
            raise ControllerError(f"start failed for {session.name!r}: {msg}")
        log_action(log, "stream_start", session=session.id, platform=session.platform.value)

    async def stop(self, reason: EndReason) -> None:
        self.truth.mark_stop_initiated(reason)
        if self.truth.end_signal_sent:
            log.info("StopStream skipped (already sent)")
            return
        # marked before the call so the disconnect that follows is expected
        self.truth.mark_end_signal_sent()
        ok, msg = await self._run(self.controller.stop_stream)
        if not ok:
            raise ControllerError(f"stop failed: {msg}")
        self.truth.mark_ended(reason)
        log.info("Stream stopped (%s)", reason.value)

    # -----------------------------
    # Virtual capture device
    # -----------------------------
    async def start_capture(self) -> bool:
        ok, msg = await self._run(self.controller.start_virtual_cam)
        if ok:
            log_action(log, "virtualcam_start")
        else:
            log_action(log, "virtualcam_start_failed", logging.WARNING, msg=msg)
        return ok

    async def stop_capture(self) -> bool:
        ok, msg = await self._run(self.controller.stop_virtual_cam)
        if ok:
            log_action(log, "virtualcam_stop")
        else:
            log_action(log, "virtualcam_stop_failed", logging.WARNING, msg=msg)
        return ok
