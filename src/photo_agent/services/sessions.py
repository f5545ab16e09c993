"""Agent and session state machine for the prompt protocol."""

import logging
import os
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol
from uuid import uuid4

from photo_agent.domain.content import (
    PromptBlock,
    StopReason,
    ToolCallStatus,
    UpdateContent,
)
from photo_agent.domain.images import ImageMetadata
from photo_agent.domain.planning import PendingPlan, PlannerConfig
from photo_agent.services.edit_stack import EditStack
from photo_agent.services.planner import Planner
from photo_agent.services.tools import ToolProviderConfig, ToolProviderRegistry

_logger = logging.getLogger(__name__)

PROTOCOL_VERSION = 1

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
SERVER_ERROR = -32000


class ProtocolError(Exception):
    """A request the agent refuses, reported as a JSON-RPC error."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class AgentState(str, Enum):
    """Whether the client has completed the initialize handshake."""

    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"


class UpdateSink(Protocol):
    """Destination for the updates a prompt streams to the client."""

    async def agent_message(self, content: UpdateContent) -> None:
        """Send an agent message chunk."""

    async def tool_call_update(
        self,
        tool_call_id: str,
        status: ToolCallStatus,
        raw_input: dict[str, object] | None = None,
        content: Sequence[UpdateContent] | None = None,
    ) -> None:
        """Send a tool-call lifecycle update."""


@dataclass
class Session:
    """Editing state of one client session."""

    id: str
    cwd: str
    planner: Planner
    in_flight: bool = False
    cancelled: bool = False
    image_uri: str | None = None
    image_name: str | None = None
    metadata: ImageMetadata | None = None
    stack: EditStack | None = None
    pending_plan: PendingPlan | None = None
    max_calls: int | None = None
    tool_call_count: int = 0

    def bind_image(self, uri: str, name: str) -> EditStack:
        """Make uri the current image with a fresh edit stack."""
        self.image_uri = uri
        self.image_name = name
        self.metadata = None
        self.pending_plan = None
        self.stack = EditStack(uri)
        return self.stack

    def next_tool_call_id(self) -> str:
        self.tool_call_count += 1
        return f"call_{self.tool_call_count:03d}"


class PromptHandler(Protocol):
    """Interprets the content of one prompt against a session."""

    async def handle(
        self, session: Session, blocks: Sequence[PromptBlock], sink: UpdateSink
    ) -> None:
        """Process prompt blocks, streaming updates to sink."""


@dataclass
class SessionRegistry:
    """Live sessions by id."""

    _sessions: dict[str, Session] = field(default_factory=dict)

    def create(self, cwd: str, planner: Planner) -> Session:
        """Create a session with a fresh id."""
        session_id = f"sess_{uuid4().hex[:8]}"
        while session_id in self._sessions:
            session_id = f"sess_{uuid4().hex[:8]}"
        session = Session(id=session_id, cwd=cwd, planner=planner)
        self._sessions[session_id] = session
        return session

    def get(self, session_id: str) -> Session | None:
        """Return a session by id, if present."""
        return self._sessions.get(session_id)

    def destroy(self, session_id: str) -> Session | None:
        """Forget a session and return it."""
        return self._sessions.pop(session_id, None)

    def ids(self) -> list[str]:
        return list(self._sessions)


@dataclass
class SessionController:
    """Lifecycle of the agent, its sessions and their prompts."""

    handler: PromptHandler
    planner_factory: Callable[[PlannerConfig | None], Planner]
    tool_providers: ToolProviderRegistry
    sessions: SessionRegistry = field(default_factory=SessionRegistry)
    state: AgentState = AgentState.UNINITIALIZED

    def initialize(self, protocol_version: object) -> dict[str, object]:
        """Negotiate the protocol version and describe agent capabilities."""
        if isinstance(protocol_version, bool) or not isinstance(protocol_version, int):
            raise ProtocolError(INVALID_PARAMS, "protocolVersion must be an integer")
        if protocol_version < PROTOCOL_VERSION:
            raise ProtocolError(
                SERVER_ERROR,
                f"unsupported protocol version {protocol_version}; "
                f"agent requires {PROTOCOL_VERSION}",
            )
        self.state = AgentState.ACTIVE
        _logger.info("Agent initialized: client_version=%s", protocol_version)
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "agentCapabilities": {
                "loadSession": False,
                "promptCapabilities": {
                    "image": True,
                    "audio": False,
                    "embeddedContext": False,
                },
            },
            "authMethods": [],
        }

    def new_session(
        self,
        cwd: object,
        tool_providers: Sequence[ToolProviderConfig] | None = None,
        planner_config: PlannerConfig | None = None,
    ) -> Session:
        """Create a session bound to an absolute working directory."""
        if self.state is not AgentState.ACTIVE:
            raise ProtocolError(SERVER_ERROR, "agent not initialized")
        if not isinstance(cwd, str) or not os.path.isabs(cwd):
            raise ProtocolError(INVALID_PARAMS, "cwd must be absolute")
        session = self.sessions.create(cwd, self.planner_factory(planner_config))
        if planner_config is not None:
            session.max_calls = planner_config.max_calls
        names = self.tool_providers.connect(session.id, tool_providers)
        _logger.info(
            "Session created: id=%s cwd=%s tool_providers=%s",
            session.id,
            cwd,
            ",".join(names) or "-",
        )
        return session

    def start_prompt(self, session_id: object) -> Session:
        """Claim a session for a new prompt.

        Runs synchronously before any prompt work is scheduled, so two
        prompts for the same session can never both pass this check.
        """
        session = self._session(session_id)
        if session.in_flight:
            raise ProtocolError(SERVER_ERROR, "prompt already in progress")
        session.in_flight = True
        session.cancelled = False
        return session

    async def run_prompt(
        self, session: Session, blocks: Sequence[PromptBlock], sink: UpdateSink
    ) -> StopReason:
        """Run a claimed prompt to completion and release the session."""
        try:
            await self.handler.handle(session, blocks, sink)
        finally:
            session.in_flight = False
        stop_reason: StopReason = "cancelled" if session.cancelled else "end_turn"
        _logger.info("Prompt finished: session=%s stop_reason=%s", session.id, stop_reason)
        return stop_reason

    def cancel(self, session_id: object) -> None:
        """Flag the session's in-flight prompt as cancelled."""
        session = self.sessions.get(session_id) if isinstance(session_id, str) else None
        if session is None:
            _logger.warning("Cancel for unknown session ignored: %s", session_id)
            return
        if session.in_flight:
            session.cancelled = True
            _logger.info("Prompt cancel requested: session=%s", session.id)

    async def close_session(self, session_id: str) -> None:
        """Destroy a session and close its tool providers."""
        self.sessions.destroy(session_id)
        await self.tool_providers.close(session_id)

    async def shutdown(self) -> None:
        """Destroy every session."""
        for session_id in self.sessions.ids():
            await self.close_session(session_id)
        await self.tool_providers.close_all()

    def _session(self, session_id: object) -> Session:
        if self.state is not AgentState.ACTIVE:
            raise ProtocolError(SERVER_ERROR, "agent not initialized")
        session = self.sessions.get(session_id) if isinstance(session_id, str) else None
        if session is None:
            raise ProtocolError(SERVER_ERROR, "invalid session")
        return session
