"""Tool-provider port for pixel work the agent delegates."""

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from photo_agent.domain.images import (
    ExportResult,
    Histogram,
    ImageMetadata,
    ImageStats,
    RenderedImage,
)
from photo_agent.domain.operations import EditStackSnapshot, Rect

_logger = logging.getLogger(__name__)


class ToolProviderError(Exception):
    """A tool call failed or returned an unusable result."""


@dataclass(frozen=True)
class ToolProviderConfig:
    """Connection settings for one tool provider."""

    name: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    timeout_seconds: float = 30.0


class ToolProvider(Protocol):
    """Interface for the process that reads, renders and exports images."""

    async def read_image_metadata(self, uri: str) -> ImageMetadata:
        """Return size and type of the image at uri."""

    async def render_preview(
        self, uri: str, edit_stack: EditStackSnapshot, max_pixels: int
    ) -> RenderedImage:
        """Render the image with its edit stack applied."""

    async def render_thumbnail(self, uri: str, max_pixels: int) -> RenderedImage:
        """Render the unedited image at reduced size."""

    async def compute_aspect_rect(self, width: int, height: int, aspect: str) -> Rect:
        """Return the largest centered normalized rect with the given aspect."""

    async def compute_image_stats(self, uri: str) -> ImageStats:
        """Return color and tone statistics of the image."""

    async def compute_histogram(
        self, uri: str, edit_stack: EditStackSnapshot, bins: int
    ) -> Histogram:
        """Return channel histograms of the image with color edits applied."""

    async def export_image(  # noqa: PLR0913
        self,
        uri: str,
        edit_stack: EditStackSnapshot,
        dst: str,
        image_format: str,
        quality: int,
        overwrite: bool,
    ) -> ExportResult:
        """Write the edited image to dst."""

    async def close(self) -> None:
        """Release the connection."""


ToolProviderFactory = Callable[[ToolProviderConfig], ToolProvider]


@dataclass
class ToolProviderRegistry:
    """Tool-provider connections, grouped by the session that owns them."""

    factory: ToolProviderFactory
    default_configs: tuple[ToolProviderConfig, ...] = ()
    _connections: dict[str, dict[str, ToolProvider]] = field(default_factory=dict)

    def connect(
        self, session_id: str, configs: Sequence[ToolProviderConfig] | None = None
    ) -> list[str]:
        """Open connections for a session; returns the provider names."""
        selected = list(configs) if configs else list(self.default_configs)
        providers = self._connections.setdefault(session_id, {})
        for config in selected:
            providers[config.name] = self.factory(config)
            _logger.info(
                "Tool provider connected: session=%s name=%s url=%s",
                session_id,
                config.name,
                config.url,
            )
        return list(providers)

    def lookup(self, session_id: str, name: str | None = None) -> ToolProvider | None:
        """Return the named provider, or the first one when name is None."""
        providers = self._connections.get(session_id) or {}
        if name is not None:
            return providers.get(name)
        return next(iter(providers.values()), None)

    async def close(self, session_id: str) -> None:
        """Close and forget every provider of a session."""
        providers = self._connections.pop(session_id, {})
        for name, provider in providers.items():
            try:
                await provider.close()
            except Exception:
                _logger.exception(
                    "Failed to close tool provider: session=%s name=%s", session_id, name
                )

    async def close_all(self) -> None:
        """Close the providers of every session."""
        for session_id in list(self._connections):
            await self.close(session_id)
