"""Web Control Plane — REST API + SSE for browser-based session control.

Acts as the renderer of the remote session: every throttled render is
published as a snapshot on the event bus and streamed to browsers over
Server-Sent Events together with notices and extension UI requests.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import TYPE_CHECKING

from aiohttp import web

from piremote.core.events import (
    EventBus,
    ExtensionUIRequestEvent,
    SessionConnectedEvent,
    SessionDisconnectedEvent,
    SessionNoticeEvent,
    SessionRenderEvent,
)

if TYPE_CHECKING:
    from piremote.core.commands import Commands
    from piremote.core.session import RemoteSession, RenderSignal

logger = logging.getLogger(__name__)

# All event types the SSE stream subscribes to.
_SSE_EVENT_TYPES: list[type] = [
    SessionNoticeEvent,
    SessionConnectedEvent,
    SessionDisconnectedEvent,
    SessionRenderEvent,
    ExtensionUIRequestEvent,
]

_THINKING_LEVELS = ("off", "low", "medium", "high", "xhigh")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _serialize_event(ev: object) -> dict:
    """Convert a typed event to a JSON-serializable dict for SSE."""
    data: dict = {"type": type(ev).__name__}

    if isinstance(ev, SessionNoticeEvent):
        data["message"] = ev.message
        data["level"] = ev.level.value

    elif isinstance(ev, SessionConnectedEvent):
        data["host"] = ev.host
        data["port"] = ev.port

    elif isinstance(ev, SessionDisconnectedEvent):
        data["port"] = ev.port

    elif isinstance(ev, SessionRenderEvent):
        data["snapshot"] = ev.snapshot
        data["disconnected"] = ev.disconnected

    elif isinstance(ev, ExtensionUIRequestEvent):
        data.update(asdict(ev))

    return data


async def _read_json(request: web.Request) -> dict:
    """Request body as a dict; an empty body reads as {}."""
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except ValueError:
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "invalid JSON body"}),
            content_type="application/json",
        ) from None
    return body if isinstance(body, dict) else {}


def _failed(message: str = "agent command failed") -> web.Response:
    return web.json_response({"error": message}, status=502)


# ---------------------------------------------------------------------------
# Route handlers
# ---------------------------------------------------------------------------

# -- Session ----------------------------------------------------------------

async def _handle_status(request: web.Request) -> web.Response:
    """GET /api/status — connection and turn status."""
    cmd: Commands = request.app["cmd"]
    status = cmd.cmd_status()
    if status is None:
        return web.json_response({"error": "no session"}, status=404)
    return web.json_response(asdict(status))


async def _handle_session(request: web.Request) -> web.Response:
    """GET /api/session — full session snapshot."""
    cmd: Commands = request.app["cmd"]
    snapshot = cmd.cmd_snapshot()
    if snapshot is None:
        return web.json_response({"error": "no session"}, status=404)
    return web.json_response(snapshot)


async def _handle_connect(request: web.Request) -> web.Response:
    """POST /api/connect — connect to the agent, optionally on another port."""
    cmd: Commands = request.app["cmd"]
    body = await _read_json(request)
    port = body.get("port")
    if port is not None and not isinstance(port, int):
        return web.json_response({"error": "port must be an integer"}, status=400)

    ok, message = await cmd.cmd_connect(port)
    if not ok:
        return _failed(message)
    return web.json_response({"ok": True, "message": message})


async def _handle_send_message(request: web.Request) -> web.Response:
    """POST /api/message — prompt the agent (steers a running turn)."""
    cmd: Commands = request.app["cmd"]
    body = await _read_json(request)
    text = str(body.get("text", "")).strip()
    if not text:
        return web.json_response({"error": "text is required"}, status=400)

    session = cmd.session
    if session is None or not session.is_active():
        return web.json_response({"error": "not connected"}, status=409)

    ok = await cmd.cmd_send(text)
    if not ok:
        return _failed("failed to send")
    return web.json_response({"ok": True})


async def _handle_abort(request: web.Request) -> web.Response:
    """POST /api/abort"""
    cmd: Commands = request.app["cmd"]
    if not await cmd.cmd_abort():
        return _failed()
    return web.json_response({"ok": True})


# -- Model / thinking ---------------------------------------------------------

async def _handle_models(request: web.Request) -> web.Response:
    """GET /api/models — models available to the agent."""
    cmd: Commands = request.app["cmd"]
    return web.json_response(await cmd.cmd_list_models())


async def _handle_model(request: web.Request) -> web.Response:
    """POST /api/model — {"provider", "model_id"} or {"cycle": true}."""
    cmd: Commands = request.app["cmd"]
    body = await _read_json(request)

    if body.get("cycle"):
        return web.json_response({"result": await cmd.cmd_cycle_model()})

    provider = body.get("provider")
    model_id = body.get("model_id")
    if not provider or not model_id:
        return web.json_response(
            {"error": "provider and model_id are required"}, status=400,
        )
    model = await cmd.cmd_set_model(provider, model_id)
    if model is None:
        return _failed()
    return web.json_response(model)


async def _handle_thinking(request: web.Request) -> web.Response:
    """POST /api/thinking — {"level"} or {"cycle": true}."""
    cmd: Commands = request.app["cmd"]
    body = await _read_json(request)

    if body.get("cycle"):
        return web.json_response({"result": await cmd.cmd_cycle_thinking_level()})

    level = body.get("level")
    if level not in _THINKING_LEVELS:
        return web.json_response(
            {"error": f"level must be one of {', '.join(_THINKING_LEVELS)}"},
            status=400,
        )
    if not await cmd.cmd_set_thinking_level(level):
        return _failed()
    return web.json_response({"ok": True})


# -- Compaction / bash / stats ---------------------------------------------

async def _handle_compact(request: web.Request) -> web.Response:
    """POST /api/compact"""
    cmd: Commands = request.app["cmd"]
    body = await _read_json(request)
    result = await cmd.cmd_compact(body.get("instructions"))
    if result is None:
        return _failed()
    return web.json_response(result)


async def _handle_bash(request: web.Request) -> web.Response:
    """POST /api/bash — run a shell command through the agent."""
    cmd: Commands = request.app["cmd"]
    body = await _read_json(request)
    command = str(body.get("command", "")).strip()
    if not command:
        return web.json_response({"error": "command is required"}, status=400)
    result = await cmd.cmd_bash(command)
    if result is None:
        return _failed()
    return web.json_response(result)


async def _handle_stats(request: web.Request) -> web.Response:
    """GET /api/stats — token usage and cost of the agent session."""
    cmd: Commands = request.app["cmd"]
    stats = await cmd.cmd_get_stats()
    if stats is None:
        return _failed()
    return web.json_response(stats)


# -- Extension UI -----------------------------------------------------------

async def _handle_list_ui(request: web.Request) -> web.Response:
    """GET /api/ui — pending extension UI requests."""
    cmd: Commands = request.app["cmd"]
    return web.json_response(cmd.cmd_list_ui_requests())


async def _handle_ui_response(request: web.Request) -> web.Response:
    """POST /api/ui/{request_id} — {"value": ...} or {"cancel": true}."""
    cmd: Commands = request.app["cmd"]
    request_id = request.match_info["request_id"]
    body = await _read_json(request)

    if body.get("cancel"):
        ok = cmd.cmd_ui_cancel(request_id)
    elif "value" in body:
        ok = cmd.cmd_ui_respond(request_id, body["value"])
    else:
        return web.json_response({"error": "value or cancel is required"}, status=400)

    if not ok:
        return web.json_response({"error": "request not found"}, status=404)
    return web.json_response({"ok": True})


# -- SSE --------------------------------------------------------------------

async def _handle_sse(request: web.Request) -> web.StreamResponse:
    """GET /api/events — Server-Sent Events stream for all session events."""
    event_bus: EventBus = request.app["event_bus"]

    response = web.StreamResponse(
        status=200,
        reason="OK",
        headers={
            "Content-Type": "text/event-stream",
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
    await response.prepare(request)

    # Subscribe to all event types and merge into a single queue.
    merged: asyncio.Queue = asyncio.Queue()
    subscriptions = [(et, event_bus.subscribe(et)) for et in _SSE_EVENT_TYPES]

    async def _forward(q: asyncio.Queue) -> None:
        while True:
            await merged.put(await q.get())

    tasks = [asyncio.create_task(_forward(q)) for _, q in subscriptions]

    # Cancelled by _close_sse_streams on shutdown
    streams: set[asyncio.Task] = request.app["sse_streams"]
    current = asyncio.current_task()
    if current is not None:
        streams.add(current)

    try:
        while True:
            ev = await merged.get()
            payload = f"data: {json.dumps(_serialize_event(ev), ensure_ascii=False)}\n\n"
            await response.write(payload.encode("utf-8"))
    except ConnectionResetError:
        logger.debug("SSE client disconnected")
    finally:
        streams.discard(current)
        for t in tasks:
            t.cancel()
        for event_type, q in subscriptions:
            event_bus.unsubscribe(event_type, q)

    return response


async def _close_sse_streams(app: web.Application) -> None:
    for task in list(app["sse_streams"]):
        task.cancel()


# -- Logs -------------------------------------------------------------------

async def _handle_logs(request: web.Request) -> web.Response:
    """GET /api/logs — tail of the client log file."""
    try:
        lines_count = int(request.query.get("lines", "200"))
    except (ValueError, TypeError):
        lines_count = 200
    lines_count = min(lines_count, 1000)
    log_file = request.app["log_file"]
    try:
        path = Path(log_file)
        if not path.exists():
            return web.json_response({"lines": []})
        text = path.read_text(encoding="utf-8", errors="replace")
        return web.json_response({"lines": text.splitlines()[-lines_count:]})
    except OSError as e:
        logger.warning("Failed to read log file: %s", e)
        return web.json_response({"lines": ["Error reading log file"]})


# ---------------------------------------------------------------------------
# App factory & server class
# ---------------------------------------------------------------------------

def _build_app(
    commands: Commands,
    event_bus: EventBus,
    log_file: str,
) -> web.Application:
    app = web.Application()
    app["cmd"] = commands
    app["event_bus"] = event_bus
    app["log_file"] = log_file
    app["sse_streams"] = set()
    app.on_shutdown.append(_close_sse_streams)

    # Session
    app.router.add_get("/api/status", _handle_status)
    app.router.add_get("/api/session", _handle_session)
    app.router.add_post("/api/connect", _handle_connect)
    app.router.add_post("/api/message", _handle_send_message)
    app.router.add_post("/api/abort", _handle_abort)

    # Agent settings
    app.router.add_get("/api/models", _handle_models)
    app.router.add_post("/api/model", _handle_model)
    app.router.add_post("/api/thinking", _handle_thinking)
    app.router.add_post("/api/compact", _handle_compact)
    app.router.add_post("/api/bash", _handle_bash)
    app.router.add_get("/api/stats", _handle_stats)

    # Extension UI
    app.router.add_get("/api/ui", _handle_list_ui)
    app.router.add_post("/api/ui/{request_id}", _handle_ui_response)

    # SSE + logs
    app.router.add_get("/api/events", _handle_sse)
    app.router.add_get("/api/logs", _handle_logs)

    return app


class WebControlPlane:
    """aiohttp-based web control plane server.

    Installs itself as the session renderer: renders become
    SessionRenderEvent snapshots on the bus.
    """

    def __init__(
        self,
        commands: Commands,
        event_bus: EventBus,
        log_file: str,
        port: int = 7778,
    ) -> None:
        self._bus = event_bus
        self._app = _build_app(commands, event_bus, log_file)
        self._port = port
        self._runner: web.AppRunner | None = None
        commands.set_renderer(self.render)

    @property
    def app(self) -> web.Application:
        return self._app

    def render(self, session: RemoteSession, signal: RenderSignal) -> None:
        self._bus.publish(SessionRenderEvent(
            snapshot=session.snapshot(), disconnected=signal.disconnected,
        ))

    async def start(self) -> None:
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, "127.0.0.1", self._port)
        await site.start()
        logger.info("Web control plane running at http://localhost:%d", self._port)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            logger.info("Web control plane stopped")
