"""
obs.py

OBS WebSocket v5 adapter (obsws-python).

- ObsController: request client. Every method returns (ok, msg) or a similar
  tuple and never raises; a failed call marks the controller disconnected.
- ObsEventBridge: event client + heartbeat. Forwards StreamStateChanged and
  connection opened/closed transitions to StreamTruth on the event loop.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import List, Optional, Tuple

from obsws_python import EventClient, ReqClient

from .config import Config

log = logging.getLogger(__name__)


def _get(obj, key: str, default=None):
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


class ObsController:
    def __init__(self, cfg: Config):
        self.cfg = cfg
        self.client: Optional[ReqClient] = None
        self.last_error: str = ""
        self.connected: bool = False
        # obsws-python clients are not safe to share between threads
        self._lock = threading.Lock()

    def connect(self) -> bool:
        with self._lock:
            self._close_client()
            try:
                self.client = ReqClient(host=self.cfg.OBS_HOST, port=self.cfg.OBS_PORT,
                                        password=self.cfg.OBS_PASSWORD or None,
                                        timeout=self.cfg.OBS_TIMEOUT_SECONDS)
                self.client.get_version()
                self.connected = True
                self.last_error = ""
                return True
            except Exception as e:
                self.client = None
                self.connected = False
                self.last_error = str(e)
                return False

    def disconnect(self) -> None:
        with self._lock:
            self._close_client()
            self.connected = False

    def _close_client(self) -> None:
        client, self.client = self.client, None
        if client is None:
            return
        try:
            client.disconnect()
        except Exception as e:
            log.debug("OBS request client close: %s", e)

    def _ok(self) -> bool:
        return self.connected and self.client is not None

    def _call(self, method_name: str, *args, **kwargs):
        """Returns (resp, err). err is empty on success."""
        with self._lock:
            if not self._ok():
                return None, self.last_error or "OBS not connected"
            fn = getattr(self.client, method_name, None)
            if fn is None:
                return None, f"missing method: {method_name}"
            try:
                return fn(*args, **kwargs), ""
            except Exception as e:
                self.connected = False
                self.last_error = str(e)
                return None, self.last_error

    def ping(self) -> bool:
        _, err = self._call("get_version")
        return not err

    def get_status(self) -> Tuple[bool, str]:
        """(streaming, err)"""
        resp, err = self._call("get_stream_status")
        if err:
            return False, err
        return bool(_get(resp, "output_active", False)), ""

    def start_stream(self, key: Optional[str] = None, server: Optional[str] = None) -> Tuple[bool, str]:
        if key:
            settings = {
                "service": "Custom Live",
                "server": server or self.cfg.RTMP_SERVER,
                "key": key,
            }
            _, err = self._call("set_stream_service_settings", "rtmp_custom", settings)
            if err:
                return False, f"stream settings: {err}"
        _, err = self._call("start_stream")
        if err:
            return False, err
        return True, "start stream sent"

    def stop_stream(self) -> Tuple[bool, str]:
        _, err = self._call("stop_stream")
        if err:
            return False, err
        return True, "stop stream sent"

    # -----------------------------
    # Profiles
    # -----------------------------
    def get_profile_list(self) -> Tuple[str, List[str], str]:
        """(current_profile_name, profiles, err)"""
        resp, err = self._call("get_profile_list")
        if err or resp is None:
            return "", [], err or "get_profile_list failed"
        current = (_get(resp, "current_profile_name")
                   or _get(resp, "currentProfileName")
                   or "")
        profiles = _get(resp, "profiles") or []
        return str(current), [str(p) for p in profiles], ""

    def set_current_profile(self, name: str) -> Tuple[bool, str]:
        name = (name or "").strip()
        if not name:
            return False, "empty profile name"
        _, err = self._call("set_current_profile", name)
        if err:
            return False, err
        return True, ""

    # -----------------------------
    # Virtual camera
    # -----------------------------
    def start_virtual_cam(self) -> Tuple[bool, str]:
        _, err = self._call("start_virtual_cam")
        if err:
            return False, err
        return True, "virtual camera started"

    def stop_virtual_cam(self) -> Tuple[bool, str]:
        _, err = self._call("stop_virtual_cam")
        if err:
            return False, err
        return True, "virtual camera stopped"


class ObsEventBridge:
    """
    Keeps an EventClient subscribed to OBS and reports to StreamTruth.

    obsws-python delivers events on its own thread, so every callback is
    handed to the loop with call_soon_threadsafe. The heartbeat polls the
    request client; a failed poll is a closed connection, a successful
    reconnect is an opened one.
    """

    def __init__(self, cfg: Config, controller: ObsController, truth):
        self.cfg = cfg
        self.controller = controller
        self.truth = truth
        self.events: Optional[EventClient] = None
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task] = None
        self._connected = False

    # obsws-python dispatches by function name
    def on_stream_state_changed(self, data) -> None:
        state = str(_get(data, "output_state", "") or "")
        if self.loop is not None:
            self.loop.call_soon_threadsafe(self.truth.on_output_state_changed, state)

    def on_current_profile_changed(self, data) -> None:
        log.info("OBS profile changed: %s", _get(data, "profile_name", "?"))

    def _connect_events(self) -> bool:
        self._close_events()
        try:
            self.events = EventClient(host=self.cfg.OBS_HOST, port=self.cfg.OBS_PORT,
                                      password=self.cfg.OBS_PASSWORD or None,
                                      timeout=self.cfg.OBS_TIMEOUT_SECONDS)
            self.events.callback.register([self.on_stream_state_changed, self.on_current_profile_changed])
            return True
        except Exception as e:
            self.events = None
            log.warning("OBS event client not connected: %s", e)
            return False

    def _close_events(self) -> None:
        events, self.events = self.events, None
        if events is None:
            return
        try:
            events.disconnect()
        except Exception as e:
            log.debug("OBS event client close: %s", e)

    def _connect_all(self) -> bool:
        if not self.controller.connect():
            return False
        return self._connect_events()

    async def _check_once(self) -> None:
        if self._connected:
            alive = await asyncio.to_thread(self.controller.ping)
            if alive:
                return
            self._connected = False
            self.truth.on_connection_closed()
            return

        log.info("Connecting to OBS (%s:%s)...", self.cfg.OBS_HOST, self.cfg.OBS_PORT)
        ok = await asyncio.to_thread(self._connect_all)
        if ok:
            self._connected = True
            self.truth.on_connection_opened()
            await self._adopt_running_output()
        else:
            log.warning("OBS not reachable (%s). Retrying in %gs...",
                        self.controller.last_error or "event client", self.cfg.OBS_RETRY_SECONDS)

    async def _adopt_running_output(self) -> None:
        streaming, err = await asyncio.to_thread(self.controller.get_status)
        if err:
            log.warning("OBS stream status unavailable: %s", err)
            return
        if streaming:
            # started outside this process; scheduled starts must not clobber it
            self.truth.adopt_external_stream()

    async def _heartbeat(self) -> None:
        while True:
            try:
                await self._check_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("OBS heartbeat error")
            await asyncio.sleep(self.cfg.OBS_RETRY_SECONDS)

    def start(self) -> None:
        if self._task is not None:
            return
        self.loop = asyncio.get_running_loop()
        self._task = asyncio.create_task(self._heartbeat())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await asyncio.to_thread(self._close_events)
        await asyncio.to_thread(self.controller.disconnect)
        self._connected = False
