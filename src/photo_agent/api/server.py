"""JSON-RPC dispatch of NDJSON agent protocol frames."""

import asyncio
import base64
import json
import logging
from collections.abc import AsyncIterable, Awaitable, Callable, Sequence
from typing import Protocol

from pydantic import ValidationError

from photo_agent.api.protocol_models import (
    CancelParams,
    InitializeParams,
    NewSessionParams,
    PromptParams,
    ResourceLinkBlock,
    TextBlock,
)
from photo_agent.domain.content import (
    ImageContent,
    PromptBlock,
    ResourceLink,
    TextContent,
    ToolCallStatus,
    UpdateContent,
)
from photo_agent.domain.planning import PlannerConfig
from photo_agent.services.sessions import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    ProtocolError,
    Session,
    SessionController,
)
from photo_agent.services.tools import ToolProviderConfig

_logger = logging.getLogger(__name__)

RequestId = int | str | None


class FrameWriter(Protocol):
    """Writes one protocol message per line."""

    async def write(self, message: dict[str, object]) -> None:
        """Send a JSON-RPC message."""


class AgentServer:
    """Reads requests, dispatches them and writes responses and updates.

    Prompts run as tasks so cancel requests and other sessions' traffic are
    still read while a prompt waits on the planner or a tool provider.
    """

    def __init__(self, controller: SessionController, writer: FrameWriter) -> None:
        self.controller = controller
        self.writer = writer
        self._tasks: set[asyncio.Task[None]] = set()
        self._handlers: dict[str, Callable[[RequestId, dict], Awaitable[object]]] = {
            "initialize": self._initialize,
            "session/new": self._new_session,
            "session/prompt": self._prompt,
            "session/cancel": self._cancel,
        }

    async def serve(self, lines: AsyncIterable[str]) -> None:
        """Handle every line until the input ends, then finish open prompts."""
        async for line in lines:
            await self.handle_line(line)
        await self.drain()

    async def drain(self) -> None:
        """Wait for prompts still in flight."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def handle_line(self, line: str) -> None:  # noqa: PLR0911
        """Dispatch a single NDJSON frame."""
        line = line.strip()
        if not line:
            return
        try:
            payload = json.loads(line)
        except ValueError:
            _logger.warning("Unparseable frame: %.200s", line)
            await self._error(None, PARSE_ERROR, "Parse error")
            return
        if not isinstance(payload, dict):
            await self._error(None, INVALID_REQUEST, "Invalid request")
            return

        method = payload.get("method")
        has_id = "id" in payload
        request_id = payload.get("id")
        if not isinstance(method, str):
            if has_id and "result" not in payload and "error" not in payload:
                await self._error(request_id, INVALID_REQUEST, "Invalid request")
            return
        handler = self._handlers.get(method)
        if handler is None:
            if has_id:
                await self._error(
                    request_id, METHOD_NOT_FOUND, f"Method not found: {method}"
                )
            else:
                _logger.debug("Ignoring notification: %s", method)
            return
        params = payload.get("params") or {}
        if not isinstance(params, dict):
            if has_id:
                await self._error(request_id, INVALID_PARAMS, "params must be an object")
            return

        try:
            result = await handler(request_id if has_id else None, params)
        except ProtocolError as exc:
            _logger.info("Protocol error: method=%s code=%s %s", method, exc.code, exc)
            if has_id:
                await self._error(request_id, exc.code, exc.message)
            return
        except ValidationError as exc:
            if has_id:
                await self._error(request_id, INVALID_PARAMS, _validation_message(exc))
            return
        except Exception:
            _logger.exception("Request failed: method=%s", method)
            if has_id:
                await self._error(request_id, INTERNAL_ERROR, "Internal error")
            return
        if has_id and result is not None:
            await self.writer.write(
                {"jsonrpc": "2.0", "id": request_id, "result": result}
            )

    async def notify(self, method: str, params: dict[str, object]) -> None:
        """Send a notification to the client."""
        await self.writer.write({"jsonrpc": "2.0", "method": method, "params": params})

    async def _initialize(self, request_id: RequestId, params: dict) -> object:
        parsed = InitializeParams.model_validate(params)
        return self.controller.initialize(parsed.protocol_version)

    async def _new_session(self, request_id: RequestId, params: dict) -> object:
        parsed = NewSessionParams.model_validate(params)
        providers = None
        if parsed.tool_providers:
            providers = [
                ToolProviderConfig(
                    name=provider.name,
                    url=provider.url,
                    headers=provider.headers,
                    **(
                        {"timeout_seconds": provider.timeout_seconds}
                        if provider.timeout_seconds is not None
                        else {}
                    ),
                )
                for provider in parsed.tool_providers
            ]
        planner_config = None
        if parsed.planner_config is not None:
            planner_config = PlannerConfig(
                kind=parsed.planner_config.kind,
                model=parsed.planner_config.model,
                timeout_seconds=parsed.planner_config.timeout_seconds,
                max_calls=parsed.planner_config.max_calls,
            )
        session = self.controller.new_session(parsed.cwd, providers, planner_config)
        return {"sessionId": session.id}

    async def _prompt(self, request_id: RequestId, params: dict) -> object:
        parsed = PromptParams.model_validate(params)
        blocks = _prompt_blocks(parsed.prompt)
        session = self.controller.start_prompt(parsed.session_id)
        task = asyncio.create_task(self._run_prompt(request_id, session, blocks))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return None

    async def _run_prompt(
        self, request_id: RequestId, session: Session, blocks: Sequence[PromptBlock]
    ) -> None:
        sink = SessionUpdateSink(self, session.id)
        try:
            stop_reason = await self.controller.run_prompt(session, blocks, sink)
        except Exception:
            _logger.exception("Prompt crashed: session=%s", session.id)
            if request_id is not None:
                await self._error(request_id, INTERNAL_ERROR, "Internal error")
            return
        if request_id is not None:
            await self.writer.write(
                {
                    "jsonrpc": "2.0",
                    "id": request_id,
                    "result": {"stopReason": stop_reason},
                }
            )

    async def _cancel(self, request_id: RequestId, params: dict) -> object:
        parsed = CancelParams.model_validate(params)
        self.controller.cancel(parsed.session_id)
        return {}

    async def _error(self, request_id: RequestId, code: int, message: str) -> None:
        await self.writer.write(
            {
                "jsonrpc": "2.0",
                "id": request_id,
                "error": {"code": code, "message": message},
            }
        )


class SessionUpdateSink:
    """Streams a session's updates as ``session/update`` notifications."""

    def __init__(self, server: AgentServer, session_id: str) -> None:
        self.server = server
        self.session_id = session_id

    async def agent_message(self, content: UpdateContent) -> None:
        await self.server.notify(
            "session/update",
            {
                "sessionId": self.session_id,
                "sessionUpdate": "agent_message_chunk",
                "content": content_payload(content),
            },
        )

    async def tool_call_update(
        self,
        tool_call_id: str,
        status: ToolCallStatus,
        raw_input: dict[str, object] | None = None,
        content: Sequence[UpdateContent] | None = None,
    ) -> None:
        params: dict[str, object] = {
            "sessionId": self.session_id,
            "sessionUpdate": "tool_call_update",
            "toolCallId": tool_call_id,
            "status": status,
        }
        if raw_input is not None:
            params["rawInput"] = raw_input
        if content:
            params["content"] = [
                {"type": "content", "content": content_payload(item)} for item in content
            ]
        await self.server.notify("session/update", params)


def content_payload(content: UpdateContent) -> dict[str, object]:
    """Encode a content block in its wire shape."""
    if isinstance(content, ImageContent):
        return {
            "type": "image",
            "data": base64.b64encode(content.data).decode("ascii"),
            "mimeType": content.mime_type,
        }
    return {"type": "text", "text": content.text}


def _prompt_blocks(raw_blocks: list[dict[str, object]]) -> list[PromptBlock]:
    blocks: list[PromptBlock] = []
    for raw in raw_blocks:
        block_type = raw.get("type")
        if block_type == "text":
            blocks.append(TextContent(TextBlock.model_validate(raw).text))
        elif block_type == "resource_link":
            link = ResourceLinkBlock.model_validate(raw)
            blocks.append(
                ResourceLink(uri=link.uri, name=link.name, mime_type=link.mime_type)
            )
        else:
            _logger.warning("Ignoring unsupported prompt block: %s", block_type)
    return blocks


def _validation_message(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid params"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    if not location:
        return "Invalid params"
    return f"Invalid params: {location}: {first.get('msg')}"
