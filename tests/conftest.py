"""Shared test fixtures."""

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field

import pytest

from photo_agent.config import Settings
from photo_agent.domain.content import ImageContent, TextContent, UpdateContent
from photo_agent.domain.images import (
    ExportResult,
    Histogram,
    ImageMetadata,
    ImageStats,
    RenderedImage,
)
from photo_agent.domain.operations import EditStackSnapshot, Rect
from photo_agent.services.cache import InMemoryCache, PreviewCache
from photo_agent.services.commands import CommandRouter
from photo_agent.services.edit_stack import parse_aspect
from photo_agent.services.llm_planner import LlmClient
from photo_agent.services.planner import RuleBasedPlanner
from photo_agent.services.sessions import Session, UpdateSink
from photo_agent.services.tools import (
    ToolProvider,
    ToolProviderConfig,
    ToolProviderError,
    ToolProviderRegistry,
)


def make_stats(  # noqa: PLR0913
    width: int = 4000,
    height: int = 3000,
    a_mean: float = 0.0,
    b_mean: float = 0.0,
    p50: float = 50.0,
    colorfulness: float = 30.0,
) -> ImageStats:
    return ImageStats.model_validate(
        {
            "w": width,
            "h": height,
            "mime": "image/jpeg",
            "L": {"p5": 10, "p50": p50, "p95": 90, "mean": p50, "stdev": 20},
            "AB": {"a_mean": a_mean, "b_mean": b_mean, "chroma_mean": 10},
            "sat": {"hsv_mean": 0.3, "hsv_p95": 0.6, "colorfulness": colorfulness},
            "contrast_index": 0.5,
        }
    )


@dataclass
class FakeToolProvider(ToolProvider):
    """Fake tool provider that records calls and renders placeholder bytes."""

    width: int = 4000
    height: int = 3000
    stats: dict[str, ImageStats] = field(default_factory=dict)
    fail_on: set[str] = field(default_factory=set)
    calls: list[tuple[str, object]] = field(default_factory=list)
    exports: list[dict[str, object]] = field(default_factory=list)
    closed: bool = False

    def _record(self, name: str, payload: object) -> None:
        self.calls.append((name, payload))
        if name in self.fail_on:
            raise ToolProviderError(f"{name} exploded")

    def count(self, name: str) -> int:
        return sum(1 for call_name, _ in self.calls if call_name == name)

    async def read_image_metadata(self, uri: str) -> ImageMetadata:
        self._record("read_image_metadata", uri)
        return ImageMetadata(width=self.width, height=self.height, mime="image/jpeg")

    async def render_preview(
        self, uri: str, edit_stack: EditStackSnapshot, max_pixels: int
    ) -> RenderedImage:
        self._record("render_preview", edit_stack)
        return RenderedImage(data=b"\x89PNG\r\n\x1a\npreview", mime_type="image/png")

    async def render_thumbnail(self, uri: str, max_pixels: int) -> RenderedImage:
        self._record("render_thumbnail", uri)
        return RenderedImage(data=b"\xff\xd8\xffthumb", mime_type="image/jpeg")

    async def compute_aspect_rect(self, width: int, height: int, aspect: str) -> Rect:
        self._record("compute_aspect_rect", aspect)
        ratio = parse_aspect(aspect)
        if ratio is None:
            raise ToolProviderError(f"bad aspect {aspect}")
        image_ratio = width / height
        if ratio > image_ratio:
            w, h = 1.0, image_ratio / ratio
        else:
            w, h = ratio / image_ratio, 1.0
        return ((1.0 - w) / 2, (1.0 - h) / 2, w, h)

    async def compute_image_stats(self, uri: str) -> ImageStats:
        self._record("compute_image_stats", uri)
        return self.stats.get(uri, make_stats())

    async def compute_histogram(
        self, uri: str, edit_stack: EditStackSnapshot, bins: int
    ) -> Histogram:
        self._record("compute_histogram", edit_stack)
        ramp = [round(100 * index / (bins - 1)) for index in range(bins)]
        return Histogram.model_validate(
            {
                "luma": ramp,
                "r": ramp,
                "g": [0] * bins,
                "b": ramp[::-1],
                "clip": {"lowPct": 0.4, "highPct": 2.5},
            }
        )

    async def export_image(  # noqa: PLR0913
        self,
        uri: str,
        edit_stack: EditStackSnapshot,
        dst: str,
        image_format: str,
        quality: int,
        overwrite: bool,
    ) -> ExportResult:
        self._record("export_image", dst)
        self.exports.append(
            {
                "uri": uri,
                "ops": len(edit_stack.ops),
                "dst": dst,
                "format": image_format,
                "quality": quality,
                "overwrite": overwrite,
            }
        )
        return ExportResult(path=dst, bytes_written=1234)

    async def close(self) -> None:
        self.closed = True


@dataclass
class FakeLlmClient(LlmClient):
    """Fake LLM client replaying scripted replies or errors."""

    replies: list[object] = field(default_factory=list)
    requests: list[dict[str, object]] = field(default_factory=list)

    async def complete(  # noqa: PLR0913
        self,
        *,
        model: str,
        reasoning_effort: str | None,
        store: bool,
        system_prompt: str,
        user_prompt: str,
        image_data_url: str | None,
    ) -> str:
        self.requests.append(
            {
                "model": model,
                "system_prompt": system_prompt,
                "user_prompt": user_prompt,
                "image_data_url": image_data_url,
            }
        )
        index = min(len(self.requests), len(self.replies)) - 1
        reply = self.replies[index]
        if isinstance(reply, Exception):
            raise reply
        return str(reply)


@dataclass
class HangingLlmClient(LlmClient):
    """Fake LLM client that never answers."""

    attempts: int = 0

    async def complete(  # noqa: PLR0913
        self,
        *,
        model: str,
        reasoning_effort: str | None,
        store: bool,
        system_prompt: str,
        user_prompt: str,
        image_data_url: str | None,
    ) -> str:
        self.attempts += 1
        await asyncio.sleep(3600)
        return "{}"


@dataclass
class RecordingSink(UpdateSink):
    """Update sink that keeps everything it is sent."""

    messages: list[UpdateContent] = field(default_factory=list)
    updates: list[dict[str, object]] = field(default_factory=list)

    async def agent_message(self, content: UpdateContent) -> None:
        self.messages.append(content)

    async def tool_call_update(
        self,
        tool_call_id: str,
        status: str,
        raw_input: dict[str, object] | None = None,
        content: Sequence[UpdateContent] | None = None,
    ) -> None:
        self.updates.append(
            {
                "id": tool_call_id,
                "status": status,
                "raw_input": raw_input,
                "content": list(content or []),
            }
        )

    def statuses(self, tool_call_id: str) -> list[str]:
        return [u["status"] for u in self.updates if u["id"] == tool_call_id]

    def tool_call_ids(self) -> list[str]:
        return list(dict.fromkeys(u["id"] for u in self.updates))

    def texts(self) -> list[str]:
        return [m.text for m in self.messages if isinstance(m, TextContent)]

    def update_texts(self) -> list[str]:
        return [
            item.text
            for update in self.updates
            for item in update["content"]
            if isinstance(item, TextContent)
        ]

    def images(self) -> list[ImageContent]:
        return [
            item
            for update in self.updates
            for item in update["content"]
            if isinstance(item, ImageContent)
        ]


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        openai_api_key=None,
        tool_provider_url="http://tools.local",
    )


@pytest.fixture
def tool_provider() -> FakeToolProvider:
    return FakeToolProvider()


@pytest.fixture
def registry(tool_provider: FakeToolProvider) -> ToolProviderRegistry:
    return ToolProviderRegistry(
        factory=lambda config: tool_provider,
        default_configs=(ToolProviderConfig(name="default", url="http://tools.local"),),
    )


@pytest.fixture
def router(registry: ToolProviderRegistry) -> CommandRouter:
    return CommandRouter(
        tool_providers=registry,
        previews=PreviewCache(cache=InMemoryCache()),
    )


@pytest.fixture
def session(registry: ToolProviderRegistry) -> Session:
    session = Session(id="sess_test0001", cwd="/work", planner=RuleBasedPlanner())
    registry.connect(session.id)
    return session


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()
