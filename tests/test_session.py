"""Tests for RemoteSession: connection lifecycle, event folding, rendering."""
from __future__ import annotations

import asyncio
import json
from dataclasses import replace
from unittest.mock import MagicMock

import pytest

from piremote.core.errors import ConnectError, NotConnectedError, SessionError
from piremote.core.events import (
    ExtensionUIRequestEvent,
    NoticeLevel,
    SessionConnectedEvent,
    SessionDisconnectedEvent,
    SessionNoticeEvent,
)
from piremote.core.session import (
    RemoteSession,
    RenderSignal,
    SessionState,
    ToolStatus,
    make_user_message,
)


def _text_message(role: str, text: str) -> dict:
    return {"role": role, "content": [{"type": "text", "text": text}]}


def _update(kind: str, **fields) -> dict:
    return {"type": "message_update", "assistantMessageEvent": {"type": kind, **fields}}


def _drain(queue: asyncio.Queue) -> list:
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


@pytest.fixture
async def session(config, event_bus):
    s = RemoteSession(config, event_bus)
    await s.connect()
    yield s
    s.close()


class TestConnect:
    async def test_connect_activates(self, config, event_bus, agent_server):
        connected = event_bus.subscribe(SessionConnectedEvent)
        s = RemoteSession(config, event_bus)
        assert s.state is SessionState.IDLE

        result = await s.connect()
        assert result is s
        assert s.state is SessionState.ACTIVE
        assert s.is_active()
        assert s.get_port() == agent_server.port
        assert connected.get_nowait() == SessionConnectedEvent("127.0.0.1", agent_server.port)
        s.close()

    async def test_connect_only_from_idle(self, session):
        with pytest.raises(SessionError):
            await session.connect()

    async def test_connect_failure(self, config, event_bus, agent_server):
        await agent_server.close()
        s = RemoteSession(config, event_bus)
        with pytest.raises(ConnectError):
            await s.connect()
        assert s.state is SessionState.DISCONNECTED
        assert not s.is_active()

    async def test_history_fetched_on_connect(self, config, event_bus, agent_server):
        history = [_text_message("user", "earlier"), _text_message("assistant", "reply")]
        agent_server.responses["get_messages"] = {"messages": history}
        s = RemoteSession(replace(config, fetch_history=True), event_bus)
        await s.connect()
        assert s.messages == history
        s.close()

    async def test_history_failure_does_not_fail_connect(self, config, event_bus, agent_server):
        agent_server.failures["get_messages"] = "no session"
        s = RemoteSession(replace(config, fetch_history=True), event_bus)
        await s.connect()
        assert s.is_active()
        assert s.messages == []
        s.close()

    async def test_close_while_connecting(self, config, event_bus):
        s = RemoteSession(config, event_bus)
        pending = s.connect()
        s.close()
        with pytest.raises(SessionError):
            await pending
        assert s.client is None


class TestConversation:
    async def test_prompt_stream_and_agent_end(self, session, agent_server, wait_until):
        sent = session.send("hi")
        (frame,) = await agent_server.wait_for_frames(1)
        assert frame["type"] == "prompt" and frame["message"] == "hi"
        assert session.messages[-1]["role"] == "user"

        agent_server.respond(frame)
        assert await sent is None

        final = _text_message("assistant", "Hello")
        agent_server.send({"type": "agent_start"})
        agent_server.send({"type": "message_start", "message": {"role": "assistant", "content": []}})
        agent_server.send(_update("text_delta", delta="He"))
        agent_server.send(_update("text_delta", delta="llo"))
        await wait_until(lambda: session.streaming.text == "Hello")
        assert session.is_working

        agent_server.send(_update("done", reason="stop", message=final))
        agent_server.send({
            "type": "agent_end",
            "messages": [_text_message("user", "hi"), final],
        })
        await wait_until(lambda: not session.is_working)

        assert [m["role"] for m in session.messages] == ["user", "assistant"]
        assert session.messages[-1]["content"][0]["text"] == "Hello"
        assert not session.streaming.active
        assert session.streaming.text == ""
        assert session.streaming.final_message is None

    async def test_send_steers_while_working(self, session, agent_server, wait_until):
        agent_server.responses["steer"] = None
        agent_server.send({"type": "agent_start"})
        await wait_until(lambda: session.is_working)
        await session.send("change course")
        assert agent_server.received[-1]["type"] == "steer"

    async def test_send_when_not_active(self, config, event_bus):
        s = RemoteSession(config, event_bus)
        with pytest.raises(NotConnectedError):
            await s.send("hi")
        assert s.messages == []

    async def test_send_failure_publishes_notice(self, session, agent_server, event_bus):
        notices = event_bus.subscribe(SessionNoticeEvent)
        agent_server.failures["prompt"] = "busy"
        with pytest.raises(Exception, match="busy"):
            await session.send("hi")
        await asyncio.sleep(0)
        (notice,) = _drain(notices)
        assert notice.level is NoticeLevel.WARNING
        assert "busy" in notice.message

    async def test_get_rpc_state_and_abort(self, session, agent_server):
        agent_server.responses["get_state"] = {"isStreaming": False}
        agent_server.responses["abort"] = None
        assert await session.get_rpc_state() == {"isStreaming": False}
        await session.abort()
        assert agent_server.frames_of("abort")

    async def test_rpc_state_none_when_inactive(self, config):
        assert RemoteSession(config).get_rpc_state() is None

    def test_make_user_message(self):
        message = make_user_message("hi")
        assert message["role"] == "user"
        assert message["content"] == [{"type": "text", "text": "hi"}]
        assert isinstance(message["timestamp"], int)


class TestEventFolding:
    """Events fed straight into the handler of an unconnected session."""

    async def test_text_end_replaces_block(self, config):
        s = RemoteSession(config)
        s._handle_event({"type": "message_start", "message": {"role": "assistant"}})
        s._handle_event(_update("text_start"))
        s._handle_event(_update("text_delta", delta="Hel"))
        # A dropped delta is repaired by text_end
        s._handle_event(_update("text_end", content="Hello"))
        assert s.streaming.text == "Hello"
        s._handle_event(_update("text_end", content="Hello"))
        assert s.streaming.text == "Hello"

    async def test_second_text_block_keeps_first(self, config):
        s = RemoteSession(config)
        s._handle_event({"type": "message_start", "message": {"role": "assistant"}})
        s._handle_event(_update("text_start"))
        s._handle_event(_update("text_end", content="one"))
        s._handle_event(_update("text_start"))
        s._handle_event(_update("text_delta", delta="tw"))
        s._handle_event(_update("text_end", content="two"))
        assert s.streaming.text == "one\n\ntwo"

    async def test_thinking_accumulates(self, config):
        s = RemoteSession(config)
        s._handle_event({"type": "message_start", "message": {"role": "assistant"}})
        s._handle_event(_update("thinking_start"))
        s._handle_event(_update("thinking_delta", delta="hmm "))
        s._handle_event(_update("thinking_delta", delta="ok"))
        assert s.streaming.thinking == "hmm ok"
        s._handle_event(_update("thinking_end", content="hmm, ok"))
        assert s.streaming.thinking == "hmm, ok"

    async def test_error_captures_final_message(self, config):
        s = RemoteSession(config)
        failed = {"role": "assistant", "stopReason": "error", "content": []}
        s._handle_event({"type": "message_start", "message": {"role": "assistant"}})
        s._handle_event(_update("error", reason="error", error=failed))
        assert s.streaming.finished
        assert s.streaming.final_message == failed

    async def test_message_end_folds_assistant_and_tool_results(self, config):
        s = RemoteSession(config)
        assistant = _text_message("assistant", "done")
        tool_result = {"role": "toolResult", "toolCallId": "c1", "content": []}
        s._handle_event({"type": "message_start", "message": {"role": "assistant"}})
        s._handle_event(_update("text_delta", delta="done"))
        s._handle_event({"type": "message_end", "message": assistant})
        s._handle_event({"type": "message_end", "message": tool_result})
        s._handle_event({"type": "message_end", "message": _text_message("user", "echoed")})
        assert s.messages == [assistant, tool_result]
        assert not s.streaming.active

    async def test_done_message_kept_when_next_message_starts(self, config):
        s = RemoteSession(config)
        first = _text_message("assistant", "step one")
        s._handle_event({"type": "agent_start"})
        s._handle_event({"type": "message_start", "message": {"role": "assistant"}})
        s._handle_event(_update("text_delta", delta="step one"))
        s._handle_event(_update("done", reason="toolUse", message=first))
        s._handle_event({"type": "message_start", "message": {"role": "assistant"}})
        assert s.messages == [first]
        assert s.streaming.active
        assert not s.streaming.finished

    async def test_message_end_after_done_folds_once(self, config):
        s = RemoteSession(config)
        first = _text_message("assistant", "only")
        s._handle_event({"type": "message_start", "message": {"role": "assistant"}})
        s._handle_event(_update("done", reason="stop", message=first))
        s._handle_event({"type": "message_end", "message": first})
        s._handle_event({"type": "message_start", "message": {"role": "assistant"}})
        assert s.messages == [first]

    async def test_null_deltas_are_ignored(self, config):
        s = RemoteSession(config)
        s._handle_event({"type": "message_start", "message": {"role": "assistant"}})
        s._handle_event(_update("text_delta", delta="Hi"))
        s._handle_event(_update("text_delta", delta=None))
        s._handle_event(_update("thinking_delta", delta=None))
        s._handle_event(_update("thinking_delta", delta="hm"))
        assert s.streaming.text == "Hi"
        assert s.streaming.thinking == "hm"

    async def test_accessors_return_copies(self, config):
        s = RemoteSession(config)
        s._handle_event({"type": "message_start", "message": {"role": "assistant"}})
        s._handle_event(_update("text_delta", delta="kept"))
        s._handle_event({"type": "tool_execution_start", "toolCallId": "c1", "toolName": "bash"})

        streaming = s.streaming
        streaming.text = "changed"
        streaming.reset()
        s.tool_executions["c1"].status = ToolStatus.DONE

        assert s.streaming.text == "kept"
        assert s.streaming.active
        assert s.tool_executions["c1"].status is ToolStatus.RUNNING

    async def test_user_message_start_does_not_stream(self, config):
        s = RemoteSession(config)
        s._handle_event({"type": "message_start", "message": {"role": "user"}})
        assert not s.streaming.active

    async def test_agent_end_without_messages_keeps_log(self, config):
        s = RemoteSession(config)
        s._handle_event({"type": "message_end", "message": _text_message("assistant", "a")})
        s._handle_event({"type": "agent_end"})
        assert len(s.messages) == 1

    async def test_tool_call_echoes_ignored(self, config):
        s = RemoteSession(config)
        renderer = MagicMock()
        s.set_renderer(renderer)
        s._handle_event({"type": "tool_call", "toolCallId": "c1"})
        s._handle_event({"type": "tool_result", "toolCallId": "c1"})
        renderer.assert_not_called()
        assert s.tool_executions == {}


class TestToolExecutions:
    async def test_start_end_then_agent_end_clears(self, config):
        s = RemoteSession(config)
        s._handle_event({"type": "agent_start"})
        s._handle_event({
            "type": "tool_execution_start", "toolCallId": "c1",
            "toolName": "bash", "args": {"command": "ls"},
        })
        record = s.tool_executions["c1"]
        assert record.status is ToolStatus.RUNNING
        assert record.args == {"command": "ls"}

        s._handle_event({
            "type": "tool_execution_update", "toolCallId": "c1",
            "partialResult": {"content": [{"type": "text", "text": "a"}]},
        })
        assert record.partial_result is not None

        s._handle_event({
            "type": "tool_execution_end", "toolCallId": "c1",
            "toolName": "bash", "result": {"content": []}, "isError": False,
        })
        assert record.status is ToolStatus.DONE
        assert record.is_error is False
        assert record.result == {"content": []}

        s._handle_event({"type": "agent_end", "messages": []})
        assert "c1" not in s.tool_executions

    async def test_update_without_start_is_noop(self, config):
        s = RemoteSession(config)
        s._handle_event({"type": "tool_execution_update", "toolCallId": "zz", "partialResult": 1})
        assert s.tool_executions == {}

    async def test_end_without_start_records_done(self, config):
        s = RemoteSession(config)
        s._handle_event({
            "type": "tool_execution_end", "toolCallId": "c9",
            "toolName": "read", "result": "x", "isError": True,
        })
        record = s.tool_executions["c9"]
        assert record.status is ToolStatus.DONE
        assert record.is_error is True

    async def test_agent_start_resets_previous_turn(self, config):
        s = RemoteSession(config)
        s._handle_event({"type": "tool_execution_start", "toolCallId": "c1", "toolName": "bash"})
        s._handle_event({"type": "message_start", "message": {"role": "assistant"}})
        s._handle_event(_update("text_delta", delta="stale"))
        s._handle_event({"type": "agent_start"})
        assert s.tool_executions == {}
        assert s.streaming.text == ""
        assert s.is_working


class TestRenderThrottle:
    async def test_burst_is_coalesced(self, config):
        rendered: list[str] = []
        s = RemoteSession(config, renderer=lambda sess, sig: rendered.append(sess.streaming.text))
        s._handle_event({"type": "message_start", "message": {"role": "assistant"}})
        for i in range(20):
            s._handle_event(_update("text_delta", delta=str(i % 10)))

        await asyncio.sleep(config.render_throttle * 3)
        assert 1 <= len(rendered) < 20
        assert rendered[-1] == "".join(str(i % 10) for i in range(20))

    async def test_first_render_is_immediate(self, config):
        renderer = MagicMock()
        s = RemoteSession(config, renderer=renderer)
        s._handle_event({"type": "agent_start"})
        renderer.assert_called_once_with(s, RenderSignal())

    async def test_single_deferred_render_per_window(self, config):
        renderer = MagicMock()
        s = RemoteSession(config, renderer=renderer)
        s._handle_event({"type": "agent_start"})
        s._handle_event({"type": "tool_execution_start", "toolCallId": "a", "toolName": "x"})
        s._handle_event({"type": "tool_execution_start", "toolCallId": "b", "toolName": "x"})
        assert renderer.call_count == 1
        await asyncio.sleep(config.render_throttle * 2)
        assert renderer.call_count == 2

    async def test_renderer_errors_are_contained(self, config):
        s = RemoteSession(config, renderer=MagicMock(side_effect=RuntimeError("draw")))
        s._handle_event({"type": "agent_start"})
        assert s.is_working

    async def test_no_renderer_is_noop(self, config):
        s = RemoteSession(config)
        s._handle_event({"type": "agent_start"})
        assert s._render_timer is None


class TestDisconnect:
    async def test_disconnect_reported_once(self, config, event_bus, agent_server, wait_until):
        renderer = MagicMock()
        disconnected = event_bus.subscribe(SessionDisconnectedEvent)
        notices = event_bus.subscribe(SessionNoticeEvent)
        s = RemoteSession(config, event_bus, renderer=renderer)
        await s.connect()
        agent_server.send({"type": "agent_start"})
        await wait_until(lambda: s.is_working)

        await agent_server.drop_clients()
        await wait_until(lambda: s.state is SessionState.DISCONNECTED)
        await asyncio.sleep(config.liveness_interval * 4)

        assert len(_drain(disconnected)) == 1
        assert [n.message for n in _drain(notices)] == ["Connection to Pi Agent lost"]
        signals = [c.args[1] for c in renderer.call_args_list]
        assert signals.count(RenderSignal(disconnected=True)) == 1
        assert not s.is_working
        assert not s.is_active()
        s.close()

    async def test_disconnect_clears_extension_ui(self, config, event_bus, agent_server, wait_until):
        s = RemoteSession(config, event_bus)
        await s.connect()
        agent_server.send({
            "type": "extension_ui_request", "id": "u1", "method": "setStatus",
            "statusKey": "k", "statusText": "v",
        })
        await wait_until(lambda: s.extension_ui.status == {"k": "v"})
        await agent_server.drop_clients()
        await wait_until(lambda: s.state is SessionState.DISCONNECTED)
        assert s.extension_ui.status == {}
        s.close()


class TestClose:
    async def test_close_is_idempotent(self, session):
        session._handle_event({"type": "message_end", "message": _text_message("assistant", "x")})
        session.close()
        session.close()
        assert session.state is SessionState.DISCONNECTED
        assert session.messages == []
        assert session.client is None
        assert not session.is_active()

    async def test_close_rejects_pending_send(self, session, agent_server):
        sent = session.send("hi")
        await agent_server.wait_for_frames(1)
        session.close()
        with pytest.raises(Exception, match="Connection closed"):
            await sent

    async def test_close_never_connected(self, config):
        s = RemoteSession(config)
        s.close()
        assert s.state is SessionState.DISCONNECTED


class TestExtensionUIRouting:
    async def test_select_request_published(self, session, agent_server, event_bus, wait_until):
        requests = event_bus.subscribe(ExtensionUIRequestEvent)
        agent_server.send({
            "type": "extension_ui_request", "id": "u1", "method": "select",
            "title": "Pick", "options": ["a", "b"],
        })
        await wait_until(lambda: not requests.empty())
        event = requests.get_nowait()
        assert event.request_id == "u1"
        assert event.options == ["a", "b"]

        assert session.extension_ui.answer("u1", "b")
        await wait_until(lambda: bool(agent_server.frames_of("extension_ui_response")))
        assert agent_server.frames_of("extension_ui_response")[0] == {
            "type": "extension_ui_response", "id": "u1", "value": "b",
        }


class TestSnapshot:
    async def test_snapshot_is_json_ready(self, session):
        session._handle_event({"type": "agent_start"})
        session._handle_event({"type": "tool_execution_start", "toolCallId": "c1", "toolName": "bash"})
        snap = session.snapshot()
        assert snap["state"] == "active"
        assert snap["is_working"] is True
        assert snap["tool_executions"][0]["status"] == "running"
        json.dumps(snap)
