"""Handling of ``extension_ui_request`` events sent by agent extensions.

Non-interactive methods (notify, setStatus, setWidget, setTitle,
set_editor_text) update local state and are acknowledged immediately.
Interactive methods (select, confirm, input, editor) stay pending until a
control plane answers them, the request's own timeout fires, or clear()
drops them.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from piremote.core.events import (
    EventBus,
    ExtensionUIRequestEvent,
    NoticeLevel,
    SessionNoticeEvent,
)

if TYPE_CHECKING:
    from piremote.core.rpc_client import RpcClient

logger = logging.getLogger(__name__)

INTERACTIVE_METHODS = frozenset({"select", "confirm", "input", "editor"})

_NOTIFY_LEVELS = {
    "warning": NoticeLevel.WARNING,
    "error": NoticeLevel.ERROR,
}

CANCELLED: dict[str, Any] = {"cancelled": True}


@dataclass
class Widget:
    lines: list[str]
    placement: str = "belowEditor"


@dataclass
class PendingUIRequest:
    request_id: str
    method: str
    request: dict[str, Any]
    client: RpcClient | None = field(default=None, repr=False)
    timer: asyncio.TimerHandle | None = field(default=None, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.request_id,
            "method": self.method,
            "title": self.request.get("title", ""),
            "message": self.request.get("message"),
            "options": self.request.get("options") or [],
            "placeholder": self.request.get("placeholder"),
            "prefill": self.request.get("prefill"),
        }


def build_response(method: str, value: Any) -> dict[str, Any]:
    """Shape an answer the way the agent expects for *method*."""
    if method == "confirm":
        return {"confirmed": bool(value)}
    return {"value": value}


class ExtensionUI:
    """Transient extension UI state for one session."""

    def __init__(self, event_bus: EventBus | None = None) -> None:
        self._bus = event_bus or EventBus()
        self._status: dict[str, str] = {}
        self._widgets: dict[str, Widget] = {}
        self._title: str | None = None
        self._editor_text: str | None = None
        self._pending: dict[str, PendingUIRequest] = {}

    @property
    def status(self) -> dict[str, str]:
        return dict(self._status)

    @property
    def widgets(self) -> dict[str, Widget]:
        return dict(self._widgets)

    @property
    def title(self) -> str | None:
        return self._title

    @property
    def editor_text(self) -> str | None:
        return self._editor_text

    @property
    def pending(self) -> list[PendingUIRequest]:
        return list(self._pending.values())

    def get_pending(self, request_id: str) -> PendingUIRequest | None:
        return self._pending.get(request_id)

    # -- Incoming requests -----------------------------------------------------

    def handle_request(self, client: RpcClient | None, request: dict[str, Any]) -> bool:
        """Dispatch one extension_ui_request. Returns False for other events."""
        if request.get("type") != "extension_ui_request":
            return False

        request_id = request.get("id")
        if not request_id:
            logger.warning("Extension UI request without id: %s", request.get("method"))
            return True
        request_id = str(request_id)
        method = request.get("method")

        if method in INTERACTIVE_METHODS:
            self._open(client, request_id, method, request)
        elif method == "notify":
            level = _NOTIFY_LEVELS.get(request.get("notifyType", ""), NoticeLevel.INFO)
            self._bus.publish(SessionNoticeEvent(str(request.get("message", "")), level))
            self._send(client, request_id, {})
        elif method == "setStatus":
            self._status[request.get("statusKey", "")] = request.get("statusText", "")
            self._send(client, request_id, {})
        elif method == "setWidget":
            key = request.get("widgetKey", "")
            if request.get("widgetLines"):
                self._widgets[key] = Widget(
                    lines=list(request["widgetLines"]),
                    placement=request.get("widgetPlacement") or "belowEditor",
                )
            else:
                self._widgets.pop(key, None)
            self._send(client, request_id, {})
        elif method == "setTitle":
            self._title = request.get("title")
            self._send(client, request_id, {})
        elif method == "set_editor_text":
            self._editor_text = request.get("text", "")
            self._send(client, request_id, {})
        else:
            logger.warning("Unknown extension UI method: %s", method)
            self._send(client, request_id, CANCELLED)
        return True

    def _open(
        self,
        client: RpcClient | None,
        request_id: str,
        method: str,
        request: dict[str, Any],
    ) -> None:
        pending = PendingUIRequest(request_id, method, request, client=client)

        timeout_ms = request.get("timeout")
        if isinstance(timeout_ms, (int, float)) and timeout_ms > 0:
            loop = asyncio.get_running_loop()
            pending.timer = loop.call_later(timeout_ms / 1000, self._expire, request_id)

        self._pending[request_id] = pending
        self._bus.publish(ExtensionUIRequestEvent(
            request_id=request_id,
            method=method,
            title=request.get("title", ""),
            message=request.get("message"),
            options=list(request.get("options") or []),
            placeholder=request.get("placeholder"),
            prefill=request.get("prefill"),
            timeout_ms=int(timeout_ms) if isinstance(timeout_ms, (int, float)) else None,
        ))

    def _expire(self, request_id: str) -> None:
        if self._pending.get(request_id) is not None:
            logger.info("Extension UI request %s timed out", request_id)
            self.cancel(request_id)

    # -- Answers ---------------------------------------------------------------

    def respond(self, request_id: str, response: dict[str, Any]) -> bool:
        """Complete a pending request with a raw response payload."""
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return False
        if pending.timer:
            pending.timer.cancel()
        self._send(pending.client, request_id, response)
        return True

    def answer(self, request_id: str, value: Any) -> bool:
        """Complete a pending request with a value shaped for its method."""
        pending = self._pending.get(request_id)
        if pending is None:
            return False
        return self.respond(request_id, build_response(pending.method, value))

    def cancel(self, request_id: str) -> bool:
        return self.respond(request_id, dict(CANCELLED))

    def _send(self, client: RpcClient | None, request_id: str, response: dict[str, Any]) -> None:
        if client is None or not client.send_extension_ui_response(request_id, response):
            logger.warning("Could not deliver extension UI response for %s", request_id)

    def clear(self) -> None:
        """Drop all transient UI state. Pending requests are abandoned silently."""
        for pending in self._pending.values():
            if pending.timer:
                pending.timer.cancel()
        self._pending.clear()
        self._status.clear()
        self._widgets.clear()
        self._title = None
        self._editor_text = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": dict(self._status),
            "widgets": {
                key: {"lines": w.lines, "placement": w.placement}
                for key, w in self._widgets.items()
            },
            "title": self._title,
            "editor_text": self._editor_text,
            "pending": [p.to_dict() for p in self._pending.values()],
        }
