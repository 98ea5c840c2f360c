"""Remote Session: the agent event stream folded into conversation state.

A RemoteSession owns one RpcClient per connection. It keeps the ordered
message log, the live streaming buffers of the assistant message being
generated and the tool executions of the current turn. Renderers read
that state through the accessors (or snapshot()) and are told when to
redraw through a throttled render hook.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable

from piremote.config import ClientConfig
from piremote.core.errors import NotConnectedError, PiRemoteError, SessionError
from piremote.core.events import (
    EventBus,
    NoticeLevel,
    SessionConnectedEvent,
    SessionDisconnectedEvent,
    SessionNoticeEvent,
)
from piremote.core.extension_ui import ExtensionUI
from piremote.core.promise import Promise, spawn
from piremote.core.rpc_client import RpcClient
from piremote.core.wire_log import WireLog

logger = logging.getLogger(__name__)

DISCONNECT_NOTICE = "Connection to Pi Agent lost"


class SessionState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ACTIVE = "active"
    DISCONNECTED = "disconnected"


class ToolStatus(Enum):
    RUNNING = "running"
    DONE = "done"


@dataclass
class StreamingState:
    """Scratch buffers for the assistant message currently being streamed."""
    message: dict[str, Any] | None = None
    text: str = ""
    thinking: str = ""
    # Message captured from a done/error sub-event
    final_message: dict[str, Any] | None = None
    # Offsets where the current text/thinking content block begins
    text_block_start: int = 0
    thinking_block_start: int = 0

    @property
    def active(self) -> bool:
        return self.message is not None

    @property
    def finished(self) -> bool:
        return self.final_message is not None

    def reset(self) -> None:
        self.message = None
        self.text = ""
        self.thinking = ""
        self.final_message = None
        self.text_block_start = 0
        self.thinking_block_start = 0

    def begin(self, message: dict[str, Any]) -> None:
        self.reset()
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {
            "active": self.active,
            "text": self.text,
            "thinking": self.thinking,
            "finished": self.finished,
        }


@dataclass
class ToolExecution:
    call_id: str
    name: str
    args: dict[str, Any] = field(default_factory=dict)
    status: ToolStatus = ToolStatus.RUNNING
    partial_result: Any = None
    result: Any = None
    is_error: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "call_id": self.call_id,
            "name": self.name,
            "args": self.args,
            "status": self.status.value,
            "partial_result": self.partial_result,
            "result": self.result,
            "is_error": self.is_error,
        }


@dataclass(frozen=True)
class RenderSignal:
    disconnected: bool = False


RenderHook = Callable[["RemoteSession", RenderSignal], None]


def make_user_message(text: str) -> dict[str, Any]:
    """Build the local echo of a user prompt in the agent's message format."""
    return {
        "role": "user",
        "content": [{"type": "text", "text": text}],
        "timestamp": int(time.time() * 1000),
    }


class RemoteSession:
    """One conversation with a remote agent process."""

    def __init__(
        self,
        config: ClientConfig | None = None,
        event_bus: EventBus | None = None,
        renderer: RenderHook | None = None,
    ) -> None:
        self._config = config or ClientConfig()
        self._bus = event_bus or EventBus()
        self._renderer = renderer

        self._state = SessionState.IDLE
        self._closed = False
        self._client: RpcClient | None = None
        self._port: int | None = None
        self._wire_log: WireLog | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._liveness_task: asyncio.Task | None = None

        self._messages: list[dict[str, Any]] = []
        self._streaming = StreamingState()
        self._tool_executions: dict[str, ToolExecution] = {}
        self._is_working = False
        self._extension_ui = ExtensionUI(self._bus)

        self._last_render: float | None = None
        self._render_timer: asyncio.TimerHandle | None = None

    # -- Read-only accessors ---------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def messages(self) -> list[dict[str, Any]]:
        return list(self._messages)

    @property
    def streaming(self) -> StreamingState:
        """Copy of the streaming buffers; changing it does not touch the session."""
        return replace(self._streaming)

    @property
    def tool_executions(self) -> dict[str, ToolExecution]:
        return {call_id: replace(execution) for call_id, execution in self._tool_executions.items()}

    @property
    def is_working(self) -> bool:
        return self._is_working

    @property
    def client(self) -> RpcClient | None:
        return self._client

    @property
    def extension_ui(self) -> ExtensionUI:
        return self._extension_ui

    def is_active(self) -> bool:
        return (
            self._state is SessionState.ACTIVE
            and self._client is not None
            and self._client.is_connected()
        )

    def get_port(self) -> int | None:
        return self._port

    def snapshot(self) -> dict[str, Any]:
        """JSON-ready view of everything a renderer may draw."""
        return {
            "state": self._state.value,
            "port": self._port,
            "is_working": self._is_working,
            "messages": list(self._messages),
            "streaming": self._streaming.to_dict(),
            "tool_executions": [t.to_dict() for t in self._tool_executions.values()],
            "extension_ui": self._extension_ui.to_dict(),
        }

    # -- Connection lifecycle ----------------------------------------------------

    def connect(self, port: int | None = None) -> Promise[RemoteSession]:
        """Connect to the agent. Resolves with this session once active."""
        if self._state is not SessionState.IDLE:
            return Promise.rejected(SessionError(
                f"Cannot connect a session that is {self._state.value}"
            ))
        self._state = SessionState.CONNECTING
        return spawn(self._connect(port if port is not None else self._config.port))

    async def _connect(self, port: int) -> RemoteSession:
        wire_log = None
        if self._config.wire_log_dir is not None:
            wire_log = WireLog(self._config.wire_log_dir / f"port-{port}", str(port))
            wire_log.start()

        client = RpcClient(
            host=self._config.host,
            port=port,
            timeout=self._config.request_timeout,
            idle_timeout=self._config.idle_timeout,
            wire_log=wire_log,
        )
        try:
            await client.connect()
        except PiRemoteError:
            if self._state is SessionState.CONNECTING:
                self._state = SessionState.DISCONNECTED
            if wire_log:
                wire_log.close()
            raise

        if self._state is not SessionState.CONNECTING:
            # close() ran while the socket was opening
            client.disconnect()
            if wire_log:
                wire_log.close()
            raise SessionError("Session closed while connecting")

        self._client = client
        self._port = port
        self._wire_log = wire_log
        self._unsubscribe = client.on_event(self._handle_event)
        self._state = SessionState.ACTIVE
        if wire_log:
            wire_log.logger.info("Connected to %s:%d", client.host, port)
        logger.info("Session connected to %s:%d", client.host, port)
        self._bus.publish(SessionConnectedEvent(host=client.host, port=port))

        if self._config.fetch_history:
            await self._load_history(client)

        self._liveness_task = asyncio.create_task(self._watch_connection(client))
        self._trigger_render()
        return self

    async def _load_history(self, client: RpcClient) -> None:
        try:
            messages = await client.get_messages()
        except PiRemoteError as e:
            logger.warning("Failed to fetch message history: %s", e)
            return
        if isinstance(messages, list) and self._client is client:
            self._messages = messages

    async def _watch_connection(self, client: RpcClient) -> None:
        """Poll the client until it reports the connection gone."""
        await asyncio.sleep(self._config.liveness_delay)
        while self._client is client:
            if not client.is_connected():
                self._liveness_task = None
                self._handle_disconnect()
                return
            await asyncio.sleep(self._config.liveness_interval)

    def _stop_liveness(self) -> None:
        task, self._liveness_task = self._liveness_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _handle_disconnect(self) -> None:
        if self._state is not SessionState.ACTIVE:
            return
        self._state = SessionState.DISCONNECTED
        self._stop_liveness()
        self._cancel_render_timer()

        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

        self._extension_ui.clear()
        self._is_working = False
        self._streaming.reset()

        if self._client is not None:
            self._client.disconnect()
        if self._wire_log:
            self._wire_log.logger.info("Connection lost")
            self._wire_log.close()
            self._wire_log = None

        logger.warning("Lost connection to agent on port %s", self._port)
        self._bus.publish(SessionNoticeEvent(DISCONNECT_NOTICE, NoticeLevel.WARNING))
        self._bus.publish(SessionDisconnectedEvent(port=self._port))
        self._render(RenderSignal(disconnected=True))

    def close(self) -> None:
        """Tear everything down. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._state = SessionState.DISCONNECTED

        self._stop_liveness()
        self._cancel_render_timer()

        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

        self._extension_ui.clear()

        client, self._client = self._client, None
        if client is not None:
            client.disconnect()
        if self._wire_log:
            self._wire_log.close()
            self._wire_log = None

        self._messages = []
        self._streaming.reset()
        self._tool_executions.clear()
        self._is_working = False
        logger.info("Session on port %s closed", self._port)

    # -- Rendering -------------------------------------------------------------

    def set_renderer(self, renderer: RenderHook | None) -> None:
        self._renderer = renderer

    def _cancel_render_timer(self) -> None:
        if self._render_timer is not None:
            self._render_timer.cancel()
            self._render_timer = None

    def _trigger_render(self) -> None:
        """Request a redraw, coalescing requests inside the throttle window."""
        if self._renderer is None:
            return

        loop = asyncio.get_running_loop()
        now = loop.time()
        throttle = self._config.render_throttle

        if self._last_render is None or now - self._last_render >= throttle:
            self._do_render()
        elif self._render_timer is None:
            delay = throttle - (now - self._last_render)
            self._render_timer = loop.call_later(delay, self._do_render)

    def _do_render(self) -> None:
        self._cancel_render_timer()
        self._last_render = asyncio.get_running_loop().time()
        self._render(RenderSignal())

    def _render(self, signal: RenderSignal) -> None:
        if self._renderer is None:
            return
        try:
            self._renderer(self, signal)
        except Exception:
            logger.exception("Render hook failed")

    # -- Event handling ----------------------------------------------------------

    def _handle_event(self, event: dict[str, Any]) -> None:
        etype = event.get("type")

        if etype in ("tool_call", "tool_result"):
            return

        if etype == "extension_ui_request":
            self._extension_ui.handle_request(self._client, event)
            self._trigger_render()

        elif etype == "agent_start":
            self._streaming.reset()
            self._tool_executions.clear()
            self._is_working = True
            self._trigger_render()

        elif etype == "agent_end":
            messages = event.get("messages")
            if isinstance(messages, list):
                self._messages = list(messages)
            self._streaming.reset()
            self._tool_executions.clear()
            self._is_working = False
            self._trigger_render()

        elif etype == "message_start":
            message = event.get("message") or {}
            if message.get("role") == "assistant":
                # A finished message without its message_end is kept
                if self._streaming.finished:
                    self._messages.append(self._streaming.final_message)
                self._streaming.begin(message)
                self._trigger_render()

        elif etype == "message_update":
            self._handle_message_update(event)

        elif etype == "message_end":
            self._handle_message_end(event.get("message") or {})

        elif etype == "tool_execution_start":
            call_id = str(event.get("toolCallId", ""))
            self._tool_executions[call_id] = ToolExecution(
                call_id=call_id,
                name=event.get("toolName", ""),
                args=event.get("args") or {},
            )
            self._trigger_render()

        elif etype == "tool_execution_update":
            execution = self._tool_executions.get(str(event.get("toolCallId", "")))
            if execution is not None:
                execution.partial_result = event.get("partialResult")
                self._trigger_render()

        elif etype == "tool_execution_end":
            call_id = str(event.get("toolCallId", ""))
            execution = self._tool_executions.get(call_id)
            if execution is None:
                execution = ToolExecution(call_id=call_id, name=event.get("toolName", ""))
                self._tool_executions[call_id] = execution
            execution.status = ToolStatus.DONE
            execution.result = event.get("result")
            execution.is_error = bool(event.get("isError", False))
            self._trigger_render()

        else:
            logger.debug("Ignoring agent event: %s", etype)

    def _handle_message_update(self, event: dict[str, Any]) -> None:
        streaming = self._streaming
        if not streaming.active and isinstance(event.get("message"), dict):
            streaming.begin(event["message"])

        delta = event.get("assistantMessageEvent") or {}
        kind = delta.get("type")

        if kind == "text_start":
            if streaming.text:
                streaming.text += "\n\n"
            streaming.text_block_start = len(streaming.text)

        elif kind == "text_delta":
            streaming.text += delta.get("delta") or ""
            self._trigger_render()

        elif kind == "text_end":
            content = delta.get("content")
            if isinstance(content, str):
                streaming.text = streaming.text[:streaming.text_block_start] + content
            self._trigger_render()

        elif kind == "thinking_start":
            if streaming.thinking:
                streaming.thinking += "\n\n"
            streaming.thinking_block_start = len(streaming.thinking)

        elif kind == "thinking_delta":
            streaming.thinking += delta.get("delta") or ""
            self._trigger_render()

        elif kind == "thinking_end":
            content = delta.get("content")
            if isinstance(content, str):
                streaming.thinking = streaming.thinking[:streaming.thinking_block_start] + content
            self._trigger_render()

        elif kind in ("done", "error"):
            final = delta.get("message") if kind == "done" else delta.get("error")
            if isinstance(final, dict):
                streaming.final_message = final
            elif isinstance(event.get("message"), dict):
                streaming.final_message = event["message"]
            self._trigger_render()

    def _handle_message_end(self, message: dict[str, Any]) -> None:
        role = message.get("role")
        if role is None and self._streaming.finished:
            message, role = self._streaming.final_message or {}, "assistant"

        if role == "assistant":
            self._messages.append(message)
            self._streaming.reset()
            self._trigger_render()
        elif role == "toolResult":
            self._messages.append(message)
            self._trigger_render()

    # -- Commands ----------------------------------------------------------------

    def send(self, text: str) -> Promise[None]:
        """Echo *text* locally, then prompt (or steer a running turn)."""
        if not self.is_active():
            return Promise.rejected(NotConnectedError("Not connected to RPC server"))

        assert self._client is not None
        self._messages.append(make_user_message(text))
        self._trigger_render()

        if self._is_working:
            promise = self._client.steer(text)
        else:
            promise = self._client.prompt(text)
        promise.catch(self._on_send_failed)
        return promise

    def _on_send_failed(self, error: BaseException) -> None:
        logger.warning("Message delivery failed: %s", error)
        self._bus.publish(SessionNoticeEvent(
            f"Failed to send message: {error}", NoticeLevel.WARNING,
        ))

    def abort(self) -> Promise[None]:
        if not self.is_active():
            return Promise.rejected(NotConnectedError("Not connected to RPC server"))
        assert self._client is not None
        return self._client.abort()

    def get_rpc_state(self) -> Promise[dict[str, Any]] | None:
        if not self.is_active():
            return None
        assert self._client is not None
        return self._client.get_state()
