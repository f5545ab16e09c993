"""Preview cache keyed by edit-stack content."""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Protocol

from photo_agent.domain.images import RenderedImage
from photo_agent.services.edit_stack import EditStack
from photo_agent.services.tools import ToolProvider

_logger = logging.getLogger(__name__)


class Cache(Protocol):
    """Cache interface for simple key-value data."""

    def get(self, key: str) -> object | None:
        """Return a cached value if present and not expired."""

    def set(self, key: str, value: object, ttl_seconds: int) -> None:
        """Store a cached value with a TTL in seconds."""


@dataclass
class _CacheEntry:
    value: object
    expires_at: datetime


@dataclass
class InMemoryCache(Cache):
    """In-memory cache bounded by entry count."""

    _entries: dict[str, _CacheEntry]
    max_entries: int

    def __init__(self, max_entries: int = 64) -> None:
        self._entries = {}
        self.max_entries = max_entries

    def get(self, key: str) -> object | None:
        """Return a cached value if it hasn't expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if datetime.now(tz=UTC) >= entry.expires_at:
            self._entries.pop(key, None)
            return None
        return entry.value

    def set(self, key: str, value: object, ttl_seconds: int) -> None:
        """Store a cached value with a TTL, evicting the oldest when full."""
        self._entries.pop(key, None)
        while self._entries and len(self._entries) >= self.max_entries:
            self._entries.pop(next(iter(self._entries)))
        expires_at = datetime.now(tz=UTC) + timedelta(seconds=ttl_seconds)
        self._entries[key] = _CacheEntry(value=value, expires_at=expires_at)

    def __len__(self) -> int:
        return len(self._entries)


def preview_key(uri: str, stack_hash: str, max_pixels: int) -> str:
    """Build the cache key for a rendered preview."""
    return f"preview:{uri}:{stack_hash}:{max_pixels}"


@dataclass
class PreviewCache:
    """Renders previews through a tool provider, reusing identical renders."""

    cache: Cache
    ttl_seconds: int = 600

    async def render(
        self, provider: ToolProvider, stack: EditStack, max_pixels: int
    ) -> RenderedImage:
        """Return a preview of stack, rendering only on a cache miss."""
        key = preview_key(stack.base_uri, stack.hash(), max_pixels)
        cached = self.cache.get(key)
        if isinstance(cached, RenderedImage):
            _logger.debug("Preview cache hit: %s", key)
            return cached
        image = await provider.render_preview(stack.base_uri, stack.snapshot(), max_pixels)
        self.cache.set(key, image, self.ttl_seconds)
        return image
