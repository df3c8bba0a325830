"""
web_hud.py

Web HUD (phone/tablet): live stream context, AutoStop status and the log
tail, pushed over a WebSocket. One button: manual stop.

Routes:
  GET  /           status page
  GET  /api/state  JSON snapshot
  GET  /ws         snapshot on connect, then a fresh snapshot per notification
  POST /api/stop   operator stop (session terminated, reason manual)

If WEB_HUD_TOKEN is set, every route needs ?token=<value> (403 otherwise).
"""

from __future__ import annotations

import asyncio
import json
import logging
import socket
from typing import Awaitable, Callable, Optional, Set

from aiohttp import WSMsgType, web

from .config import Config

log = logging.getLogger(__name__)


class WebHud:
    def __init__(self, cfg: Config, snapshot: Callable[[], dict], manual_stop: Callable[[], Awaitable[str]]):
        self.cfg = cfg
        self.snapshot = snapshot
        self.manual_stop = manual_stop

        self._ws_clients: Set[web.WebSocketResponse] = set()
        self._runner: Optional[web.AppRunner] = None
        self._dirty = False
        self._push_task: Optional[asyncio.Task] = None

    # -----------------------------
    # Handlers
    # -----------------------------
    def _forbidden(self, request: web.Request) -> bool:
        # optional token check (only if configured)
        if not self.cfg.WEB_HUD_TOKEN:
            return False
        return request.query.get("token", "") != self.cfg.WEB_HUD_TOKEN

    async def index(self, request: web.Request) -> web.StreamResponse:
        if self._forbidden(request):
            return web.Response(status=403, text="Forbidden")
        return web.Response(text=HUD_HTML, content_type="text/html", charset="utf-8")

    async def api_state(self, request: web.Request) -> web.StreamResponse:
        if self._forbidden(request):
            return web.Response(status=403, text="Forbidden")
        return web.json_response(self.snapshot())

    async def api_stop(self, request: web.Request) -> web.StreamResponse:
        if self._forbidden(request):
            return web.Response(status=403, text="Forbidden")
        log.warning("WEB: manual stop requested from %s", request.remote or "?")
        try:
            msg = await self.manual_stop()
        except Exception as e:
            log.error("WEB: manual stop failed: %s", e)
            return web.json_response({"ok": False, "error": str(e)}, status=502)
        return web.json_response({"ok": True, "message": msg})

    async def ws_handler(self, request: web.Request) -> web.StreamResponse:
        if self._forbidden(request):
            return web.Response(status=403, text="Forbidden")

        ws = web.WebSocketResponse(heartbeat=20)
        await ws.prepare(request)
        self._ws_clients.add(ws)
        await ws.send_str(json.dumps(self.snapshot()))

        try:
            async for msg in ws:
                # clients only listen; anything else is ignored
                if msg.type == WSMsgType.ERROR:
                    break
        finally:
            self._ws_clients.discard(ws)
            await ws.close()
        return ws

    def make_app(self) -> web.Application:
        app = web.Application()
        app.add_routes([
            web.get("/", self.index),
            web.get("/api/state", self.api_state),
            web.get("/ws", self.ws_handler),
            web.post("/api/stop", self.api_stop),
        ])
        return app

    # -----------------------------
    # Push
    # -----------------------------
    def on_notification(self, kind: str, payload: dict) -> None:
        """Notifier listener; coalesces bursts into one push."""
        self._dirty = True
        if self._push_task is None or self._push_task.done():
            self._push_task = asyncio.get_running_loop().create_task(self._push())

    async def _push(self) -> None:
        while self._dirty:
            self._dirty = False
            if not self._ws_clients:
                return
            payload = json.dumps(self.snapshot())
            dead = []
            for ws in list(self._ws_clients):
                try:
                    await ws.send_str(payload)
                except (ConnectionError, RuntimeError):
                    dead.append(ws)
            for ws in dead:
                self._ws_clients.discard(ws)

    # -----------------------------
    # Server lifecycle
    # -----------------------------
    async def start(self) -> None:
        runner = web.AppRunner(self.make_app())
        await runner.setup()
        site = web.TCPSite(runner, host=self.cfg.WEB_HUD_HOST, port=int(self.cfg.WEB_HUD_PORT))
        await site.start()
        self._runner = runner
        log.info("WEB: HUD at http://%s:%d", _local_ip_hint(), int(self.cfg.WEB_HUD_PORT))

    async def stop(self) -> None:
        for ws in list(self._ws_clients):
            await ws.close()
        self._ws_clients.clear()
        if self._push_task is not None and not self._push_task.done():
            self._push_task.cancel()
        if self._runner is not None:
            await self._runner.cleanup()
        self._runner = None


def _local_ip_hint() -> str:
    # pick a non-loopback address; nothing is sent
    try:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            s.connect(("8.8.8.8", 80))
            return s.getsockname()[0]
        finally:
            s.close()
    except OSError:
        return "127.0.0.1"


HUD_HTML = """<!doctype html>
<html lang="en">
<head>
<meta charset="utf-8"/>
<meta name="viewport" content="width=device-width, initial-scale=1"/>
<title>Stream Guard HUD</title>
<style>
  :root { color-scheme: dark; }
  body { margin:0; font-family: system-ui, -apple-system, Segoe UI, Roboto, Arial, sans-serif; background:#0b1118; color:#e9eef5; }
  .wrap { max-width:520px; margin:0 auto; padding:14px; }
  .card { background:#121a24; border:3px solid #000; border-radius:16px; padding:14px; margin:10px 0; }
  .title { font-size:20px; font-weight:700; text-align:center; }
  .banner { border:5px solid #000; border-radius:14px; padding:10px 12px; }
  .st-idle { background:#4CAF50; }
  .st-live { background:#2E7D32; }
  .st-ending { background:#FF9800; }
  .st-ended { background:#2196F3; }
  .st-crash { background:#F44336; }
  .line { font-size:13px; opacity:.85; margin-top:4px; }
  .btn { width:100%; padding:14px 10px; border-radius:14px; border:3px solid #000; font-size:16px; font-weight:700; background:#e14b45; color:#fff; cursor:pointer; }
  pre { margin:0; white-space:pre-wrap; word-break:break-word; font-family: ui-monospace, Menlo, Consolas, monospace; font-size:12px; line-height:1.25; }
</style>
</head>
<body>
<div class="wrap">
  <div id="banner" class="banner st-idle"><div id="state" class="title">...</div></div>
  <div class="card">
    <div id="session" class="line"></div>
    <div id="autostop" class="line"></div>
    <div id="scheduler" class="line"></div>
  </div>
  <div class="card"><button id="stop" class="btn">STOP STREAM</button></div>
  <div class="card"><pre id="events"></pre></div>
  <div class="card"><pre id="logs"></pre></div>
</div>
<script>
const q = location.search;
function render(s) {
  const c = s.stream || {};
  const crash = c.end_reason === "crash";
  document.getElementById("banner").className = "banner st-" + (crash ? "crash" : c.stream_state);
  document.getElementById("state").textContent = (c.stream_state || "?").toUpperCase() + (c.end_reason ? " (" + c.end_reason + ")" : "");
  document.getElementById("session").textContent = "Session: " + (c.active_session_id || "-") + (c.has_reference_frame ? " [stop frame]" : "");
  const a = s.autostop || {};
  document.getElementById("autostop").textContent = "AutoStop: " + (a.enabled ? "on" : "off") + (a.running ? ", scanning" : "") + (a.scanning_session_id ? " " + a.scanning_session_id : "");
  const sc = s.scheduler || {};
  document.getElementById("scheduler").textContent = "Scheduler: " + (sc.paused ? "PAUSED (" + sc.failure_count + " failures)" : (sc.running ? "running" : "stopped"));
  document.getElementById("events").textContent = (s.events || []).map(e => e.at + " " + e.kind + " " + (e.type || e.reason || "")).join("\\n");
  document.getElementById("logs").textContent = (s.logs || []).join("\\n");
}
function connect() {
  const ws = new WebSocket((location.protocol === "https:" ? "wss://" : "ws://") + location.host + "/ws" + q);
  ws.onmessage = (ev) => render(JSON.parse(ev.data));
  ws.onclose = () => setTimeout(connect, 2000);
}
document.getElementById("stop").addEventListener("click", () => {
  if (!confirm("Stop the stream now?")) return;
  fetch("/api/stop" + q, { method: "POST" });
});
connect();
</script>
</body>
</html>
"""
