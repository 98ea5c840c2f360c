"""Async RPC client for the pi coding agent over TCP.

Connects to the agent's RPC port and speaks the newline-delimited JSON
protocol: every command gets a ``req_<n>`` id and a Promise that settles
when the matching response arrives, the request times out, or the
connection closes. Every other frame is an agent event, delivered to the
listeners registered with on_event().

Usage:
    client = RpcClient(port=9999)

    # Callback style
    client.connect().and_then(
        lambda _: client.prompt("Hello!")
    ).and_then(
        lambda _: client.wait_for_idle()
    ).catch(lambda err: print(f"failed: {err}"))

    # Await style
    await client.connect()
    await client.prompt("Hello!")
    await client.wait_for_idle()
    state = await client.get_state()
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Literal

from piremote.core.errors import (
    CommandError,
    ConnectError,
    ConnectionClosedError,
    NotConnectedError,
    RequestTimeoutError,
    SendError,
)
from piremote.core.promise import Promise, spawn
from piremote.core.protocol import FrameDecoder, encode_command, is_response
from piremote.core.wire_log import INCOMING, OUTGOING, WireLog

logger = logging.getLogger(__name__)

ThinkingLevel = Literal["off", "low", "medium", "high", "xhigh"]
QueueMode = Literal["all", "one-at-a-time"]
StreamingBehavior = Literal["steer", "followUp"]

EventListener = Callable[[dict[str, Any]], None]

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 9999
DEFAULT_TIMEOUT = 30.0
DEFAULT_IDLE_TIMEOUT = 60.0

_READ_CHUNK = 65536


@dataclass
class PendingRequest:
    id: str
    command: str
    promise: Promise[dict[str, Any]]
    timer: asyncio.TimerHandle


def _get_data(response: dict[str, Any]) -> Any:
    """Extract ``data`` from a response envelope, raising on failure."""
    if not response.get("success"):
        raise CommandError(
            str(response.get("command", "unknown")),
            response.get("error") or "Unknown error",
        )
    return response.get("data")


class RpcClient:
    """Owns one TCP connection to the agent and multiplexes it."""

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        timeout: float = DEFAULT_TIMEOUT,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        wire_log: WireLog | None = None,
    ) -> None:
        self._host = host
        self._port = port
        self._timeout = timeout
        self._idle_timeout = idle_timeout
        self._wire_log = wire_log

        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._connected = False
        self._connecting: Promise[None] | None = None
        self._reader_task: asyncio.Task | None = None
        self._drain_tasks: set[asyncio.Task] = set()

        self._decoder = FrameDecoder()
        self._request_id = 0
        self._pending: dict[str, PendingRequest] = {}
        self._listener_seq = 0
        self._listeners: dict[int, EventListener] = {}

    # -- Properties ------------------------------------------------------------

    @property
    def host(self) -> str:
        return self._host

    @property
    def port(self) -> int:
        return self._port

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # -- Lifecycle -------------------------------------------------------------

    def connect(self) -> Promise[None]:
        """Open the socket. Resolves once connected, rejects with ConnectError."""
        if self._connected:
            return Promise.resolved(None)
        if self._connecting is not None:
            return self._connecting

        self._connecting = spawn(self._open())

        def _clear(_: Any) -> None:
            self._connecting = None

        self._connecting.and_then(_clear).catch(_clear)
        return self._connecting

    async def _open(self) -> None:
        try:
            reader, writer = await asyncio.open_connection(self._host, self._port)
        except OSError as e:
            raise ConnectError(
                f"Failed to connect to {self._host}:{self._port}: {e}"
            ) from e

        self._reader = reader
        self._writer = writer
        self._decoder.reset()
        self._connected = True
        self._reader_task = asyncio.create_task(self._read_loop(reader))
        logger.info("Connected to agent at %s:%d", self._host, self._port)

    def disconnect(self) -> Promise[None]:
        """Close the socket and reject every pending request."""
        self._handle_disconnect("disconnect requested")
        return Promise.resolved(None)

    def is_connected(self) -> bool:
        return (
            self._connected
            and self._writer is not None
            and not self._writer.is_closing()
        )

    async def __aenter__(self) -> RpcClient:
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.disconnect()

    # -- Events ----------------------------------------------------------------

    def on_event(self, listener: EventListener) -> Callable[[], None]:
        """Subscribe to agent events. Returns an idempotent unsubscribe function."""
        self._listener_seq += 1
        key = self._listener_seq
        self._listeners[key] = listener

        def unsubscribe() -> None:
            self._listeners.pop(key, None)

        return unsubscribe

    # -- Requests --------------------------------------------------------------

    def send(self, command: dict[str, Any]) -> Promise[dict[str, Any]]:
        """Send a command and return a Promise of its response envelope."""
        promise: Promise[dict[str, Any]] = Promise()
        command_type = str(command.get("type", "unknown"))

        if not self.is_connected():
            promise.reject(NotConnectedError("Client not connected"))
            return promise

        self._request_id += 1
        request_id = f"req_{self._request_id}"
        frame = {**command, "id": request_id}

        loop = asyncio.get_running_loop()
        timer = loop.call_later(self._timeout, self._expire, request_id)
        self._pending[request_id] = PendingRequest(
            id=request_id, command=command_type, promise=promise, timer=timer,
        )
        self._write(frame, request_id)
        return promise

    def send_extension_ui_response(self, request_id: str, response: dict[str, Any]) -> bool:
        """Answer an extension_ui_request. Fire-and-forget: no Promise, no timeout."""
        if not self.is_connected():
            return False
        payload = {k: v for k, v in response.items() if k not in ("type", "id")}
        self._write({"type": "extension_ui_response", "id": request_id, **payload})
        return True

    def _write(self, frame: dict[str, Any], request_id: str | None = None) -> None:
        data = encode_command(frame)
        writer = self._writer
        try:
            if writer is None:
                raise ConnectionResetError("socket is closed")
            writer.write(data)
        except (OSError, RuntimeError) as e:
            self._fail_write(request_id, e)
            return

        if self._wire_log:
            self._wire_log.write(OUTGOING, data.decode("utf-8"))

        task = asyncio.create_task(self._drain(writer, request_id))
        self._drain_tasks.add(task)
        task.add_done_callback(self._drain_tasks.discard)

    async def _drain(self, writer: asyncio.StreamWriter, request_id: str | None) -> None:
        try:
            await writer.drain()
        except (OSError, RuntimeError) as e:
            self._fail_write(request_id, e)

    def _fail_write(self, request_id: str | None, error: BaseException) -> None:
        if request_id is None:
            logger.warning("Failed to send extension UI response: %s", error)
            return
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return
        pending.timer.cancel()
        pending.promise.reject(SendError(f"Failed to send command {pending.command}: {error}"))

    def _expire(self, request_id: str) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return
        logger.warning("Request %s (%s) timed out after %.1fs", request_id, pending.command, self._timeout)
        pending.promise.reject(RequestTimeoutError(
            f"Timeout waiting for response to {pending.command}", pending.command,
        ))

    # -- Incoming data ---------------------------------------------------------

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        try:
            while True:
                data = await reader.read(_READ_CHUNK)
                if not data:
                    break
                self._handle_data(data)
        except asyncio.CancelledError:
            raise
        except (ConnectionError, OSError) as e:
            logger.warning("Read from agent failed: %s", e)
        self._handle_disconnect("stream closed")

    def _handle_data(self, data: bytes) -> None:
        for frame in self._decoder.feed(data):
            if self._wire_log:
                self._wire_log.write(INCOMING, json.dumps(frame, ensure_ascii=False))
            self._handle_frame(frame)

    def _handle_frame(self, frame: Any) -> None:
        if not isinstance(frame, dict):
            logger.debug("Ignoring non-object frame: %r", frame)
            return

        if is_response(frame):
            request_id = frame.get("id")
            pending = self._pending.pop(request_id, None) if isinstance(request_id, str) else None
            if pending is None:
                logger.debug("Discarding response for unknown request %s", request_id)
                return
            pending.timer.cancel()
            pending.promise.resolve(frame)
            return

        for listener in list(self._listeners.values()):
            try:
                listener(frame)
            except Exception:
                logger.exception("Event listener failed on %s event", frame.get("type"))

    def _handle_disconnect(self, reason: str) -> None:
        if not self._connected and self._writer is None:
            return
        self._connected = False

        task, self._reader_task = self._reader_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

        writer, self._writer = self._writer, None
        self._reader = None
        if writer is not None:
            writer.close()

        pending, self._pending = self._pending, {}
        for request in pending.values():
            request.timer.cancel()
            request.promise.reject(ConnectionClosedError("Connection closed"))

        self._decoder.reset()
        logger.info(
            "Disconnected from %s:%d (%s, %d pending rejected)",
            self._host, self._port, reason, len(pending),
        )

    # -- Command helpers ---------------------------------------------------------

    def _request(self, command_type: str, **fields: Any) -> Promise[dict[str, Any]]:
        command: dict[str, Any] = {"type": command_type}
        command.update({k: v for k, v in fields.items() if v is not None})
        return self.send(command)

    def _call(self, command_type: str, key: str | None = None, **fields: Any) -> Promise[Any]:
        """Send a command and resolve with ``data`` (or ``data[key]``)."""

        def _extract(response: dict[str, Any]) -> Any:
            data = _get_data(response)
            if key is None:
                return data
            return (data or {}).get(key)

        return self._request(command_type, **fields).and_then(_extract)

    def _call_void(self, command_type: str, **fields: Any) -> Promise[None]:
        """Send a command whose successful response carries no data."""

        def _check(response: dict[str, Any]) -> None:
            _get_data(response)

        return self._request(command_type, **fields).and_then(_check)

    # Prompting

    def prompt(
        self,
        message: str,
        images: list[dict[str, Any]] | None = None,
        streaming_behavior: StreamingBehavior | None = None,
    ) -> Promise[None]:
        return self._call_void(
            "prompt", message=message, images=images, streamingBehavior=streaming_behavior,
        )

    def steer(self, message: str) -> Promise[None]:
        """Queue a steering message that interrupts the running turn."""
        return self._call_void("steer", message=message)

    def follow_up(self, message: str) -> Promise[None]:
        """Queue a message to be processed after the agent finishes."""
        return self._call_void("follow_up", message=message)

    def abort(self) -> Promise[None]:
        return self._call_void("abort")

    # Session

    def new_session(self, parent_session: str | None = None) -> Promise[dict[str, Any]]:
        return self._call("new_session", parentSession=parent_session)

    def get_state(self) -> Promise[dict[str, Any]]:
        return self._call("get_state")

    def switch_session(self, session_path: str) -> Promise[dict[str, Any]]:
        return self._call("switch_session", sessionPath=session_path)

    def fork(self, entry_id: str) -> Promise[dict[str, Any]]:
        return self._call("fork", entryId=entry_id)

    def get_fork_messages(self) -> Promise[list[dict[str, Any]]]:
        return self._call("get_fork_messages", key="messages")

    def get_last_assistant_text(self) -> Promise[str | None]:
        return self._call("get_last_assistant_text", key="text")

    def set_session_name(self, name: str) -> Promise[None]:
        return self._call_void("set_session_name", name=name)

    def get_session_stats(self) -> Promise[dict[str, Any]]:
        return self._call("get_session_stats")

    def export_html(self, output_path: str | None = None) -> Promise[dict[str, Any]]:
        return self._call("export_html", outputPath=output_path)

    def get_messages(self) -> Promise[list[dict[str, Any]]]:
        return self._call("get_messages", key="messages")

    def get_commands(self) -> Promise[list[dict[str, Any]]]:
        """Extension commands, prompt templates and skills."""
        return self._call("get_commands", key="commands")

    # Model

    def set_model(self, provider: str, model_id: str) -> Promise[dict[str, Any]]:
        return self._call("set_model", provider=provider, modelId=model_id)

    def cycle_model(self) -> Promise[dict[str, Any] | None]:
        return self._call("cycle_model")

    def get_available_models(self) -> Promise[list[dict[str, Any]]]:
        return self._call("get_available_models", key="models")

    # Thinking

    def set_thinking_level(self, level: ThinkingLevel) -> Promise[None]:
        return self._call_void("set_thinking_level", level=level)

    def cycle_thinking_level(self) -> Promise[dict[str, Any] | None]:
        return self._call("cycle_thinking_level")

    # Queue modes

    def set_steering_mode(self, mode: QueueMode) -> Promise[None]:
        return self._call_void("set_steering_mode", mode=mode)

    def set_follow_up_mode(self, mode: QueueMode) -> Promise[None]:
        return self._call_void("set_follow_up_mode", mode=mode)

    # Compaction

    def compact(self, custom_instructions: str | None = None) -> Promise[dict[str, Any]]:
        return self._call("compact", customInstructions=custom_instructions)

    def set_auto_compaction(self, enabled: bool) -> Promise[None]:
        return self._call_void("set_auto_compaction", enabled=enabled)

    # Retry

    def set_auto_retry(self, enabled: bool) -> Promise[None]:
        return self._call_void("set_auto_retry", enabled=enabled)

    def abort_retry(self) -> Promise[None]:
        return self._call_void("abort_retry")

    # Bash

    def bash(self, command: str) -> Promise[dict[str, Any]]:
        return self._call("bash", command=command)

    def abort_bash(self) -> Promise[None]:
        return self._call_void("abort_bash")

    # -- Turn helpers ------------------------------------------------------------

    def wait_for_idle(self, timeout: float | None = None) -> Promise[None]:
        """Resolve on the next agent_end event."""
        return self._await_agent_end(
            timeout, collect=False, message="Timeout waiting for agent to become idle",
        )

    def collect_events(self, timeout: float | None = None) -> Promise[list[dict[str, Any]]]:
        """Collect every event up to and including the next agent_end."""
        return self._await_agent_end(
            timeout, collect=True, message="Timeout collecting events",
        )

    def prompt_and_wait(
        self,
        message: str,
        images: list[dict[str, Any]] | None = None,
        timeout: float | None = None,
    ) -> Promise[list[dict[str, Any]]]:
        """Send a prompt and resolve with all events of the resulting turn."""
        events = self.collect_events(timeout)
        return self.prompt(message, images).and_then(lambda _: events)

    def _await_agent_end(self, timeout: float | None, collect: bool, message: str) -> Promise[Any]:
        promise: Promise[Any] = Promise()
        events: list[dict[str, Any]] = []
        loop = asyncio.get_running_loop()
        delay = timeout if timeout is not None else self._idle_timeout

        def cleanup() -> None:
            timer.cancel()
            unsubscribe()

        def on_timeout() -> None:
            cleanup()
            promise.reject(RequestTimeoutError(message, "agent_end"))

        def listener(event: dict[str, Any]) -> None:
            if collect:
                events.append(event)
            if event.get("type") == "agent_end":
                cleanup()
                promise.resolve(events if collect else None)

        timer = loop.call_later(delay, on_timeout)
        unsubscribe = self.on_event(listener)
        return promise
