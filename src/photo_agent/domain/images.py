"""Models for tool-provider image results."""

from pydantic import BaseModel, ConfigDict, Field


class ImageMetadata(BaseModel):
    """Basic facts about a source image."""

    width: int = Field(gt=0)
    height: int = Field(gt=0)
    mime: str
    exif: dict[str, object] | None = None


class LuminanceStats(BaseModel):
    """Lab L* distribution summary."""

    p5: float
    p50: float
    p95: float
    mean: float
    stdev: float


class ChromaStats(BaseModel):
    """Lab a*/b* channel means."""

    a_mean: float
    b_mean: float
    chroma_mean: float


class SaturationStats(BaseModel):
    """HSV saturation and colorfulness summary."""

    hsv_mean: float
    hsv_p95: float
    colorfulness: float


class ImageStats(BaseModel):
    """Statistics used for reference look matching."""

    model_config = ConfigDict(populate_by_name=True)

    width: int = Field(alias="w", gt=0)
    height: int = Field(alias="h", gt=0)
    mime: str
    luminance: LuminanceStats = Field(alias="L")
    chroma: ChromaStats = Field(alias="AB")
    saturation: SaturationStats = Field(alias="sat")
    contrast_index: float


class ClippingStats(BaseModel):
    """Share of pixels with a channel at 0 or 255, in percent."""

    model_config = ConfigDict(populate_by_name=True)

    low_pct: float = Field(alias="lowPct")
    high_pct: float = Field(alias="highPct")


class Histogram(BaseModel):
    """Per-channel bucket heights scaled to 0..100, after color edits."""

    luma: list[int]
    r: list[int]
    g: list[int]
    b: list[int]
    clip: ClippingStats


class ExportResult(BaseModel):
    """Where an export landed."""

    path: str
    bytes_written: int | None = None


class RenderedImage(BaseModel):
    """Encoded preview or thumbnail bytes."""

    data: bytes
    mime_type: str = "image/jpeg"
