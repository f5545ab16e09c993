"""JSON-over-HTTP tool-provider client."""

import base64
import binascii
from dataclasses import dataclass

import httpx
from pydantic import BaseModel, ValidationError

from photo_agent.domain.images import (
    ExportResult,
    Histogram,
    ImageMetadata,
    ImageStats,
    RenderedImage,
)
from photo_agent.domain.operations import EditStackSnapshot, Rect
from photo_agent.services.tools import ToolProvider, ToolProviderError


@dataclass
class HttpxToolProviderClient(ToolProvider):
    """HTTPX-backed tool provider posting calls to ``<url>/tools/call``."""

    base_url: str
    http_client: httpx.AsyncClient
    timeout_seconds: float = 30.0

    @classmethod
    def create(
        cls,
        base_url: str,
        headers: dict[str, str] | None = None,
        timeout_seconds: float = 30.0,
    ) -> "HttpxToolProviderClient":
        """Create a tool-provider client with a managed httpx session."""
        return cls(
            base_url=base_url.rstrip("/"),
            http_client=httpx.AsyncClient(headers=headers or {}),
            timeout_seconds=timeout_seconds,
        )

    async def read_image_metadata(self, uri: str) -> ImageMetadata:
        """Read image size, type and EXIF."""
        result = await self._call("read_image_metadata", {"uri": uri})
        return _validated(ImageMetadata, result)

    async def render_preview(
        self, uri: str, edit_stack: EditStackSnapshot, max_pixels: int
    ) -> RenderedImage:
        """Render an edited preview."""
        result = await self._call(
            "render_preview",
            {"baseUri": uri, "editStack": edit_stack.to_payload(), "maxPx": max_pixels},
        )
        return _decode_image(result)

    async def render_thumbnail(self, uri: str, max_pixels: int) -> RenderedImage:
        """Render an unedited thumbnail."""
        result = await self._call("render_thumbnail", {"uri": uri, "maxPx": max_pixels})
        return _decode_image(result)

    async def compute_aspect_rect(self, width: int, height: int, aspect: str) -> Rect:
        """Compute a centered crop rect for an aspect."""
        result = await self._call(
            "compute_aspect_rect", {"width": width, "height": height, "aspect": aspect}
        )
        rect = result.get("rectNorm")
        if not isinstance(rect, list) or len(rect) != 4:
            raise ToolProviderError("compute_aspect_rect returned no rectNorm")
        return (float(rect[0]), float(rect[1]), float(rect[2]), float(rect[3]))

    async def compute_image_stats(self, uri: str) -> ImageStats:
        """Compute color and tone statistics."""
        result = await self._call("compute_image_stats", {"uri": uri})
        return _validated(ImageStats, result)

    async def compute_histogram(
        self, uri: str, edit_stack: EditStackSnapshot, bins: int
    ) -> Histogram:
        """Compute channel histograms and clipping."""
        result = await self._call(
            "compute_histogram",
            {"baseUri": uri, "editStack": edit_stack.to_payload(), "bins": bins},
        )
        return _validated(Histogram, result)

    async def export_image(  # noqa: PLR0913
        self,
        uri: str,
        edit_stack: EditStackSnapshot,
        dst: str,
        image_format: str,
        quality: int,
        overwrite: bool,
    ) -> ExportResult:
        """Export the edited image."""
        result = await self._call(
            "export_image",
            {
                "baseUri": uri,
                "editStack": edit_stack.to_payload(),
                "dstUri": dst,
                "format": image_format,
                "quality": quality,
                "overwrite": overwrite,
            },
        )
        return ExportResult(
            path=str(result.get("path") or dst),
            bytes_written=result.get("bytesWritten"),
        )

    async def close(self) -> None:
        """Close the underlying HTTP session."""
        await self.http_client.aclose()

    async def _call(self, name: str, arguments: dict[str, object]) -> dict[str, object]:
        try:
            response = await self.http_client.post(
                f"{self.base_url}/tools/call",
                json={"name": name, "arguments": arguments},
                timeout=self.timeout_seconds,
            )
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as exc:
            raise ToolProviderError(f"{name} failed: {exc}") from exc
        except ValueError as exc:
            raise ToolProviderError(f"{name} returned invalid JSON") from exc
        if not isinstance(body, dict):
            raise ToolProviderError(f"{name} returned an unexpected payload")
        error = body.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else error
            raise ToolProviderError(f"{name} failed: {message}")
        result = body.get("result", body)
        if not isinstance(result, dict):
            raise ToolProviderError(f"{name} returned an unexpected result")
        return result


def _validated(model: type[BaseModel], payload: dict[str, object]) -> BaseModel:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise ToolProviderError(f"invalid {model.__name__}: {exc}") from exc


def _decode_image(result: dict[str, object]) -> RenderedImage:
    data = result.get("data")
    if not isinstance(data, str):
        raise ToolProviderError("render returned no image data")
    try:
        decoded = base64.b64decode(data, validate=True)
    except binascii.Error as exc:
        raise ToolProviderError("render returned invalid base64") from exc
    mime_type = result.get("mimeType")
    return RenderedImage(
        data=decoded,
        mime_type=mime_type if isinstance(mime_type, str) else "image/jpeg",
    )
