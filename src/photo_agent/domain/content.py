"""Prompt and update content blocks exchanged with the client."""

from dataclasses import dataclass
from typing import Literal

ToolCallStatus = Literal["in_progress", "completed", "failed"]
StopReason = Literal["end_turn", "cancelled"]


@dataclass(frozen=True)
class TextContent:
    text: str


@dataclass(frozen=True)
class ImageContent:
    data: bytes
    mime_type: str = "image/jpeg"


@dataclass(frozen=True)
class ResourceLink:
    """Reference to an image the client wants edited."""

    uri: str
    name: str | None = None
    mime_type: str | None = None


PromptBlock = TextContent | ResourceLink
UpdateContent = TextContent | ImageContent
