"""Tests for JSON-RPC dispatch over NDJSON frames."""

import asyncio
import base64
import io
import json
from dataclasses import dataclass, field

from photo_agent.api.server import AgentServer, content_payload
from photo_agent.api.stdio import StreamFrameWriter, run
from photo_agent.config import Settings
from photo_agent.containers import build_container
from photo_agent.domain.content import ImageContent, TextContent
from photo_agent.domain.planning import PlannerOutput, PlannerState
from photo_agent.services.planner import RuleBasedPlanner
from tests.conftest import FakeToolProvider


@dataclass
class _ListWriter:
    messages: list[dict[str, object]] = field(default_factory=list)

    async def write(self, message: dict[str, object]) -> None:
        self.messages.append(message)

    def response(self, request_id: object) -> dict[str, object]:
        return next(
            m for m in self.messages if m.get("id") == request_id and "method" not in m
        )

    def updates(self) -> list[dict[str, object]]:
        return [
            m["params"] for m in self.messages if m.get("method") == "session/update"
        ]


@dataclass
class _BlockingPlanner:
    """Planner that waits until released, like a slow model."""

    entered: asyncio.Event = field(default_factory=asyncio.Event)
    release: asyncio.Event = field(default_factory=asyncio.Event)

    async def plan(
        self,
        text: str,
        state: PlannerState | None = None,
        preview_image: bytes | None = None,
        should_stop: object = None,
    ) -> PlannerOutput:
        self.entered.set()
        await self.release.wait()
        return RuleBasedPlanner().plan_text(text, state)


def _frame(request_id: object, method: str, params: dict[str, object]) -> str:
    message = {"jsonrpc": "2.0", "method": method, "params": params}
    if request_id is not None:
        message["id"] = request_id
    return json.dumps(message)


def _prompt(request_id: int, session_id: str, *blocks: dict[str, object]) -> str:
    return _frame(
        request_id, "session/prompt", {"sessionId": session_id, "prompt": list(blocks)}
    )


def _server(settings: Settings) -> tuple[AgentServer, _ListWriter]:
    container = build_container(
        settings, tool_provider_factory=lambda config: FakeToolProvider()
    )
    writer = _ListWriter()
    return AgentServer(container.controller, writer), writer


async def _open_session(server: AgentServer, writer: _ListWriter) -> str:
    await server.handle_line(_frame(1, "initialize", {"protocolVersion": 1}))
    await server.handle_line(_frame(2, "session/new", {"cwd": "/work"}))
    return writer.response(2)["result"]["sessionId"]


def test_parse_errors_and_unknown_methods(settings: Settings) -> None:
    server, writer = _server(settings)

    async def scenario() -> None:
        await server.handle_line("{not json")
        await server.handle_line("[1, 2]")
        await server.handle_line(_frame(5, "session/load", {}))
        await server.handle_line(_frame(None, "session/whatever", {}))
        await server.handle_line("   ")

    asyncio.run(scenario())

    assert [m["error"]["code"] for m in writer.messages] == [-32700, -32600, -32601]
    assert writer.messages[0]["id"] is None
    assert writer.messages[2]["id"] == 5


def test_initialize_validates_version(settings: Settings) -> None:
    server, writer = _server(settings)

    async def scenario() -> None:
        await server.handle_line(_frame(1, "initialize", {"protocolVersion": "1"}))
        await server.handle_line(_frame(2, "initialize", {"protocolVersion": 0}))
        await server.handle_line(_frame(3, "initialize", {"protocolVersion": 3}))

    asyncio.run(scenario())

    assert writer.response(1)["error"]["code"] == -32602
    assert writer.response(2)["error"]["code"] == -32000
    assert writer.response(3)["result"]["protocolVersion"] == 1


def test_session_new_errors(settings: Settings) -> None:
    server, writer = _server(settings)

    async def scenario() -> None:
        await server.handle_line(_frame(1, "session/new", {"cwd": "/work"}))
        await server.handle_line(_frame(2, "initialize", {"protocolVersion": 1}))
        await server.handle_line(_frame(3, "session/new", {"cwd": "relative/dir"}))
        await server.handle_line(
            _frame(4, "session/new", {"cwd": "/w", "plannerConfig": {"maxCalls": 0}})
        )

    asyncio.run(scenario())

    assert writer.response(1)["error"]["code"] == -32000
    assert writer.response(3)["error"] == {
        "code": -32602,
        "message": "cwd must be absolute",
    }
    assert writer.response(4)["error"]["code"] == -32602
    assert "plannerConfig.maxCalls" in writer.response(4)["error"]["message"]


def test_prompt_flow_streams_updates(settings: Settings) -> None:
    server, writer = _server(settings)

    async def scenario() -> str:
        session_id = await _open_session(server, writer)
        await server.handle_line(
            _prompt(
                3,
                session_id,
                {"type": "resource_link", "uri": "photo.jpg", "name": "photo.jpg"},
                {"type": "text", "text": ":exposure --ev 0.5"},
                {"type": "audio", "data": "..."},
            )
        )
        await server.drain()
        return session_id

    session_id = asyncio.run(scenario())

    updates = writer.updates()
    assert all(update["sessionId"] == session_id for update in updates)
    assert updates[0] == {
        "sessionId": session_id,
        "sessionUpdate": "tool_call_update",
        "toolCallId": "call_001",
        "status": "in_progress",
        "rawInput": {"tool": "read_image_metadata", "uri": "/work/photo.jpg"},
    }
    statuses = [(u["toolCallId"], u["status"]) for u in updates]
    assert statuses[-2:] == [("call_002", "in_progress"), ("call_002", "completed")]
    final = updates[-1]["content"]
    assert final[0] == {
        "type": "content",
        "content": {"type": "text", "text": "exposure EV +0.50\nStack: EV +0.50"},
    }
    assert final[1]["content"]["type"] == "image"
    assert base64.b64decode(final[1]["content"]["data"]).startswith(b"\x89PNG")
    assert writer.messages[-1] == {
        "jsonrpc": "2.0",
        "id": 3,
        "result": {"stopReason": "end_turn"},
    }


def test_prompt_errors(settings: Settings) -> None:
    server, writer = _server(settings)

    async def scenario() -> None:
        session_id = await _open_session(server, writer)
        await server.handle_line(
            _frame(3, "session/prompt", {"sessionId": "sess_nope", "prompt": []})
        )
        await server.handle_line(_frame(4, "session/prompt", {"sessionId": session_id}))
        await server.handle_line(_prompt(5, session_id, {"type": "text", "text": "hi"}))
        await server.drain()

    asyncio.run(scenario())

    assert writer.response(3)["error"] == {"code": -32000, "message": "invalid session"}
    assert writer.response(4)["error"]["code"] == -32602
    assert writer.response(5)["result"] == {"stopReason": "end_turn"}
    message = writer.updates()[-1]
    assert message["sessionUpdate"] == "agent_message_chunk"
    assert message["content"] == {
        "type": "text",
        "text": "No image loaded. Attach an image first.",
    }


def test_cancel_interrupts_planning(settings: Settings) -> None:
    server, writer = _server(settings)

    async def scenario() -> None:
        planner = _BlockingPlanner()
        server.controller.planner_factory = lambda config: planner
        session_id = await _open_session(server, writer)
        image = {"type": "resource_link", "uri": "/pics/a.jpg"}
        await server.handle_line(_prompt(3, session_id, image))
        await server.drain()
        await server.handle_line(
            _prompt(4, session_id, {"type": "text", "text": "warmer"})
        )
        await planner.entered.wait()
        await server.handle_line(
            _prompt(5, session_id, {"type": "text", "text": "cooler"})
        )
        await server.handle_line(_frame(6, "session/cancel", {"sessionId": session_id}))
        await server.handle_line(_frame(None, "session/cancel", {"sessionId": "x"}))
        planner.release.set()
        await server.drain()

    asyncio.run(scenario())

    assert writer.response(5)["error"] == {
        "code": -32000,
        "message": "prompt already in progress",
    }
    assert writer.response(6)["result"] == {}
    assert writer.response(4)["result"] == {"stopReason": "cancelled"}
    last = writer.updates()[-1]
    assert last["status"] == "failed"
    assert last["content"][0]["content"]["text"] == "Cancelled"


def test_content_payload_encodes_images() -> None:
    assert content_payload(TextContent("hi")) == {"type": "text", "text": "hi"}
    assert content_payload(ImageContent(b"abc", "image/png")) == {
        "type": "image",
        "data": "YWJj",
        "mimeType": "image/png",
    }


def test_stdio_run_serves_until_eof(settings: Settings) -> None:
    provider = FakeToolProvider()
    container = build_container(
        settings, tool_provider_factory=lambda config: provider
    )
    stdin = io.StringIO(
        _frame(1, "initialize", {"protocolVersion": 1})
        + "\n"
        + _frame(2, "session/new", {"cwd": "/work"})
        + "\n"
    )
    stdout = io.StringIO()

    asyncio.run(run(container, stdin, stdout))

    lines = [json.loads(line) for line in stdout.getvalue().splitlines()]
    assert [line["id"] for line in lines] == [1, 2]
    assert lines[1]["result"]["sessionId"].startswith("sess_")
    assert provider.closed is True


def test_stream_frame_writer_writes_compact_lines() -> None:
    stream = io.StringIO()

    asyncio.run(StreamFrameWriter(stream).write({"jsonrpc": "2.0", "id": 1}))

    assert stream.getvalue() == '{"jsonrpc":"2.0","id":1}\n'
