"""Pydantic models for agent protocol request params."""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class _ProtocolModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class InitializeParams(_ProtocolModel):
    """initialize params."""

    protocol_version: object = Field(default=None, alias="protocolVersion")


class ToolProviderParams(_ProtocolModel):
    """Tool provider the client wants connected to a session."""

    name: str
    url: str
    headers: dict[str, str] = Field(default_factory=dict)
    timeout_seconds: float | None = Field(default=None, alias="timeoutSeconds", gt=0)


class PlannerConfigParams(_ProtocolModel):
    """Planner selection for a session."""

    kind: Literal["rule", "llm"] = "rule"
    model: str | None = None
    timeout_seconds: float | None = Field(default=None, alias="timeoutSeconds", gt=0)
    max_calls: int | None = Field(default=None, alias="maxCalls", ge=1)


class NewSessionParams(_ProtocolModel):
    """session/new params."""

    cwd: object = None
    tool_providers: list[ToolProviderParams] | None = Field(
        default=None, alias="toolProviders"
    )
    planner_config: PlannerConfigParams | None = Field(
        default=None, alias="plannerConfig"
    )


class TextBlock(_ProtocolModel):
    """Text prompt content."""

    type: Literal["text"]
    text: str


class ResourceLinkBlock(_ProtocolModel):
    """Link to a resource, usually an image file."""

    type: Literal["resource_link"]
    uri: str
    name: str | None = None
    mime_type: str | None = Field(default=None, alias="mimeType")


class PromptParams(_ProtocolModel):
    """session/prompt params; blocks are parsed per type by the server."""

    session_id: str = Field(alias="sessionId")
    prompt: list[dict[str, object]]


class CancelParams(_ProtocolModel):
    """session/cancel params."""

    session_id: object = Field(default=None, alias="sessionId")
