"""Command API — the single entry point for all control planes.

Every control plane (Web, CLI) calls these methods. Remote failures are
published as notices on the event bus and turned into None/False returns,
so a control plane never has to handle agent errors itself.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from piremote.config import ClientConfig
from piremote.core.errors import PiRemoteError
from piremote.core.events import EventBus, NoticeLevel, SessionNoticeEvent
from piremote.core.promise import Promise
from piremote.core.rpc_client import RpcClient, ThinkingLevel
from piremote.core.session import RemoteSession, RenderHook, ToolStatus

logger = logging.getLogger(__name__)

NOT_CONNECTED = "Not connected to Pi Agent. Connect first."

_FAILED = object()


# ---------------------------------------------------------------------------
# Return types
# ---------------------------------------------------------------------------

@dataclass
class SessionStatus:
    state: str
    host: str
    port: int | None
    connected: bool
    is_working: bool
    message_count: int
    running_tools: int
    pending_ui: int


# ---------------------------------------------------------------------------
# Command API
# ---------------------------------------------------------------------------

class Commands:
    """Facade exposing all user-facing operations on the current session."""

    def __init__(
        self,
        config: ClientConfig,
        event_bus: EventBus,
        renderer: RenderHook | None = None,
    ) -> None:
        self._config = config
        self._bus = event_bus
        self._renderer = renderer
        self._session: RemoteSession | None = None

    @property
    def session(self) -> RemoteSession | None:
        return self._session

    def set_renderer(self, renderer: RenderHook | None) -> None:
        """Install the render hook on the current and all future sessions."""
        self._renderer = renderer
        if self._session is not None:
            self._session.set_renderer(renderer)

    def _notify(self, message: str, level: NoticeLevel = NoticeLevel.INFO) -> None:
        self._bus.publish(SessionNoticeEvent(message, level))

    async def _remote(self, label: str, call: Callable[[RpcClient], Promise[Any]]) -> Any:
        """Run one agent command, turning failures into notices and _FAILED."""
        session = self._session
        if session is None or not session.is_active() or session.client is None:
            self._notify(NOT_CONNECTED, NoticeLevel.WARNING)
            return _FAILED
        try:
            return await call(session.client)
        except PiRemoteError as e:
            logger.warning("%s failed: %s", label, e)
            self._notify(f"{label} failed: {e}", NoticeLevel.ERROR)
            return _FAILED

    async def _remote_value(self, label: str, call: Callable[[RpcClient], Promise[Any]]) -> Any:
        result = await self._remote(label, call)
        return None if result is _FAILED else result

    async def _remote_ok(self, label: str, call: Callable[[RpcClient], Promise[Any]]) -> bool:
        return await self._remote(label, call) is not _FAILED

    # -- Connection commands -----------------------------------------------

    async def cmd_connect(self, port: int | None = None) -> tuple[bool, str]:
        """Connect a fresh session, replacing any previous one.

        Returns (success, message).
        """
        if self._session is not None:
            self._session.close()
            self._session = None

        target = port if port is not None else self._config.port
        session = RemoteSession(self._config, self._bus, self._renderer)
        self._session = session
        try:
            await session.connect(target)
        except PiRemoteError as e:
            logger.warning("Connect to port %d failed: %s", target, e)
            self._notify(f"Failed to connect: {e}", NoticeLevel.ERROR)
            return False, str(e)
        return True, f"Connected to Pi Agent at {self._config.host}:{target}"

    def cmd_close(self) -> bool:
        """Close the current session. Returns False if there was none."""
        session, self._session = self._session, None
        if session is None:
            return False
        session.close()
        return True

    def cmd_status(self) -> SessionStatus | None:
        session = self._session
        if session is None:
            return None
        tools = session.tool_executions.values()
        return SessionStatus(
            state=session.state.value,
            host=self._config.host,
            port=session.get_port(),
            connected=session.is_active(),
            is_working=session.is_working,
            message_count=len(session.messages),
            running_tools=sum(1 for t in tools if t.status is ToolStatus.RUNNING),
            pending_ui=len(session.extension_ui.pending),
        )

    def cmd_snapshot(self) -> dict[str, Any] | None:
        """Full session view for renderers."""
        if self._session is None:
            return None
        return self._session.snapshot()

    # -- Conversation commands ---------------------------------------------

    async def cmd_send(self, text: str) -> bool:
        """Send a message (prompt, or steer while a turn runs). Returns success."""
        session = self._session
        if session is None or not session.is_active():
            self._notify(NOT_CONNECTED, NoticeLevel.WARNING)
            return False
        try:
            await session.send(text)
        except PiRemoteError as e:
            # The session has already published a notice for this failure
            logger.debug("Send failed: %s", e)
            return False
        return True

    async def cmd_abort(self) -> bool:
        return await self._remote_ok("Abort", lambda c: c.abort())

    async def cmd_new_session(self) -> bool:
        """Start a new agent session. Returns False if cancelled or failed."""
        data = await self._remote("New session", lambda c: c.new_session())
        if data is _FAILED:
            return False
        if (data or {}).get("cancelled"):
            self._notify("New session was cancelled")
            return False
        return True

    async def cmd_compact(self, instructions: str | None = None) -> dict | None:
        return await self._remote_value("Compact", lambda c: c.compact(instructions))

    async def cmd_bash(self, command: str) -> dict | None:
        """Run a shell command in the agent's working directory."""
        return await self._remote_value("Bash", lambda c: c.bash(command))

    # -- Model and thinking commands ---------------------------------------

    async def cmd_get_state(self) -> dict | None:
        return await self._remote_value("Get state", lambda c: c.get_state())

    async def cmd_set_model(self, provider: str, model_id: str) -> dict | None:
        return await self._remote_value(
            "Set model", lambda c: c.set_model(provider, model_id),
        )

    async def cmd_cycle_model(self) -> dict | None:
        return await self._remote_value("Cycle model", lambda c: c.cycle_model())

    async def cmd_list_models(self) -> list[dict]:
        models = await self._remote_value("List models", lambda c: c.get_available_models())
        return models or []

    async def cmd_set_thinking_level(self, level: ThinkingLevel) -> bool:
        return await self._remote_ok(
            "Set thinking level", lambda c: c.set_thinking_level(level),
        )

    async def cmd_cycle_thinking_level(self) -> dict | None:
        return await self._remote_value(
            "Cycle thinking level", lambda c: c.cycle_thinking_level(),
        )

    # -- Stats and export --------------------------------------------------

    async def cmd_get_stats(self) -> dict | None:
        return await self._remote_value("Get stats", lambda c: c.get_session_stats())

    async def cmd_export_html(self, output_path: str | None = None) -> str | None:
        """Export the conversation to HTML. Returns the written path."""
        data = await self._remote_value("Export", lambda c: c.export_html(output_path))
        if data is None:
            return None
        return data.get("path")

    # -- Extension UI commands ---------------------------------------------

    def cmd_list_ui_requests(self) -> list[dict]:
        if self._session is None:
            return []
        return [p.to_dict() for p in self._session.extension_ui.pending]

    def cmd_ui_respond(self, request_id: str, value: Any) -> bool:
        """Answer a pending extension UI request. Returns False if unknown."""
        if self._session is None:
            return False
        return self._session.extension_ui.answer(request_id, value)

    def cmd_ui_cancel(self, request_id: str) -> bool:
        if self._session is None:
            return False
        return self._session.extension_ui.cancel(request_id)
