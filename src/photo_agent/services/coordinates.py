"""Map points picked on a transformed preview back to the original image."""

import math
from collections.abc import Iterable
from dataclasses import dataclass

from photo_agent.domain.operations import CropOp, Operation, Rect

_CENTER = 0.5


@dataclass(frozen=True)
class MappedPoint:
    """A point in original-image normalized coordinates."""

    x: float
    y: float
    was_clamped: bool = False


def map_point(preview_x: float, preview_y: float, ops: Iterable[Operation]) -> MappedPoint:
    """Invert the recorded crop/rotate operations for a preview point.

    Operations are undone newest first. For each crop the rotation is undone
    about the frame center before the crop window is undone.
    """
    x, y = preview_x, preview_y
    crops = [op for op in ops if isinstance(op, CropOp)]
    for crop in reversed(crops):
        if crop.angle_deg:
            x, y = _rotate(x, y, -crop.angle_deg)
        if crop.rect_norm is not None:
            origin_x, origin_y, width, height = crop.rect_norm
            x = origin_x + x * width
            y = origin_y + y * height
    was_clamped = not (0.0 <= x <= 1.0 and 0.0 <= y <= 1.0)
    return MappedPoint(
        x=min(1.0, max(0.0, x)),
        y=min(1.0, max(0.0, y)),
        was_clamped=was_clamped,
    )


def map_rect(rect: Rect, ops: Iterable[Operation]) -> tuple[Rect, bool]:
    """Map a preview rect by its corners; returns the rect and a clamp flag."""
    ops = list(ops)
    x, y, width, height = rect
    top_left = map_point(x, y, ops)
    bottom_right = map_point(x + width, y + height, ops)
    left, right = sorted((top_left.x, bottom_right.x))
    top, bottom = sorted((top_left.y, bottom_right.y))
    mapped = (left, top, right - left, bottom - top)
    return mapped, top_left.was_clamped or bottom_right.was_clamped


def _rotate(x: float, y: float, degrees: float) -> tuple[float, float]:
    radians = math.radians(degrees)
    cos, sin = math.cos(radians), math.sin(radians)
    dx, dy = x - _CENTER, y - _CENTER
    return (dx * cos - dy * sin + _CENTER, dx * sin + dy * cos + _CENTER)
