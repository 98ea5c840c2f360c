from __future__ import annotations

import asyncio
import json
from typing import Any, Callable

import pytest

from piremote.config import ClientConfig
from piremote.core.events import EventBus


class FakeAgentServer:
    """In-process stand-in for the agent's RPC port.

    Records every frame it receives. Commands listed in ``responses`` are
    answered automatically with that data (a callable receives the frame),
    commands in ``failures`` with ``success: false``; anything else waits
    for the test to call respond().
    """

    def __init__(self) -> None:
        self.received: list[dict[str, Any]] = []
        self.responses: dict[str, Any] = {}
        self.failures: dict[str, str] = {}
        self.port = 0
        self._server: asyncio.AbstractServer | None = None
        self._writers: list[asyncio.StreamWriter] = []

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._writers.append(writer)
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                frame = json.loads(line)
                self.received.append(frame)
                self._auto_respond(frame)
        except ConnectionError:
            pass
        finally:
            writer.close()

    def _auto_respond(self, frame: dict[str, Any]) -> None:
        command = frame.get("type", "")
        if "id" not in frame:
            return
        if command in self.failures:
            self.respond(frame, success=False, error=self.failures[command])
        elif command in self.responses:
            data = self.responses[command]
            self.respond(frame, data=data(frame) if callable(data) else data)

    @property
    def client_count(self) -> int:
        return sum(1 for w in self._writers if not w.is_closing())

    def frames_of(self, command: str) -> list[dict[str, Any]]:
        return [f for f in self.received if f.get("type") == command]

    def send_raw(self, data: bytes) -> None:
        for writer in self._writers:
            if not writer.is_closing():
                writer.write(data)

    def send(self, frame: dict[str, Any]) -> None:
        self.send_raw((json.dumps(frame) + "\n").encode("utf-8"))

    def respond(
        self,
        request: dict[str, Any],
        data: Any = None,
        success: bool = True,
        error: str | None = None,
    ) -> None:
        response: dict[str, Any] = {
            "type": "response",
            "id": request["id"],
            "command": request["type"],
            "success": success,
        }
        if data is not None:
            response["data"] = data
        if error is not None:
            response["error"] = error
        self.send(response)

    async def drop_clients(self) -> None:
        """Close every client connection from the server side."""
        writers, self._writers = self._writers, []
        for writer in writers:
            writer.close()
        await asyncio.sleep(0)

    async def wait_for_frames(self, count: int, timeout: float = 2.0) -> list[dict[str, Any]]:
        await _wait_until(lambda: len(self.received) >= count, timeout)
        return self.received

    async def close(self) -> None:
        await self.drop_clients()
        if self._server is not None:
            self._server.close()
            try:
                await asyncio.wait_for(self._server.wait_closed(), 1.0)
            except asyncio.TimeoutError:
                pass


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met within timeout")
        await asyncio.sleep(0.01)


@pytest.fixture
async def agent_server():
    server = FakeAgentServer()
    await server.start()
    yield server
    await server.close()


@pytest.fixture
def wait_until():
    """Poll a predicate on the running loop until it holds."""
    return _wait_until


@pytest.fixture
def config(agent_server: FakeAgentServer) -> ClientConfig:
    """Client config pointed at the fake agent, with short timers."""
    return ClientConfig(
        port=agent_server.port,
        request_timeout=1.0,
        idle_timeout=1.0,
        render_throttle=0.05,
        liveness_interval=0.05,
        liveness_delay=0.05,
        fetch_history=False,
    )


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()
