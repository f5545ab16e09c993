"""Versioned edit stack with amend-last merge and undo/redo history."""

import hashlib
import json
import re
from collections.abc import Mapping

from photo_agent.domain.operations import (
    AMOUNT_RANGE,
    EV_RANGE,
    MIN_RECT_SIZE,
    TEMP_RANGE,
    TINT_RANGE,
    UNIT_RANGE,
    ContrastOp,
    CropOp,
    EditStackSnapshot,
    ExposureOp,
    Operation,
    OperationKind,
    Rect,
    SaturationOp,
    VibranceOp,
    WhiteBalanceOp,
    clamp,
    format_number,
)

ASPECT_KEYWORDS = {
    "square": "1:1",
    "landscape": "3:2",
    "portrait": "2:3",
    "wide": "16:9",
    "ultrawide": "21:9",
}

_ASPECT_PATTERN = re.compile(r"^(\d+(?:\.\d+)?):(\d+(?:\.\d+)?)$")

_Ops = tuple[Operation, ...]


class EditStack:
    """Ordered operations for one base image.

    Every mutation snapshots the current operation tuple onto the undo history
    first. Operation models are frozen, so a snapshot is a value: nothing in
    the history can change after it is recorded.
    """

    def __init__(self, base_uri: str) -> None:
        self.base_uri = base_uri
        self._ops: _Ops = ()
        self._undo: list[_Ops] = []
        self._redo: list[_Ops] = []
        self._op_counter = 0

    @property
    def ops(self) -> _Ops:
        """Current operations, oldest first."""
        return self._ops

    def __len__(self) -> int:
        return len(self._ops)

    def snapshot(self) -> EditStackSnapshot:
        """Return an immutable copy of the current stack."""
        return EditStackSnapshot(base_uri=self.base_uri, ops=self._ops)

    def add_operation(
        self,
        kind: OperationKind | str,
        params: Mapping[str, object],
        force_new: bool = False,
    ) -> Operation:
        """Clamp params into an operation and amend or append it."""
        op = self._build(OperationKind(kind), params)
        self._remember()
        last = self._ops[-1] if self._ops else None
        if not force_new and last is not None and last.op == op.op:
            self._ops = (*self._ops[:-1], op)
        else:
            self._ops = (*self._ops, op)
        return op

    def undo(self) -> bool:
        """Restore the previous stack state."""
        if not self._undo:
            return False
        self._redo.append(self._ops)
        self._ops = self._undo.pop()
        return True

    def redo(self) -> bool:
        """Re-apply the most recently undone state."""
        if not self._redo:
            return False
        self._undo.append(self._ops)
        self._ops = self._redo.pop()
        return True

    def reset(self) -> None:
        """Drop all operations."""
        if not self._ops:
            return
        self._remember()
        self._ops = ()

    def hash(self) -> str:
        """Return a short digest of the ordered operation content."""
        content = [
            _canonical(
                op.model_dump(
                    mode="json", by_alias=True, exclude={"id"}, exclude_none=True
                )
            )
            for op in self._ops
        ]
        encoded = json.dumps(content, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(encoded.encode("utf-8")).hexdigest()[:16]

    def last_crop(self) -> CropOp | None:
        """Return the tail operation if it is a crop."""
        if self._ops and isinstance(self._ops[-1], CropOp):
            return self._ops[-1]
        return None

    def stack_summary(self) -> str:
        """One-line summary of every operation."""
        if not self._ops:
            return "No operations"
        return " • ".join(_summarize(op) for op in self._ops)

    def last_op_summary(self) -> str:
        """Detailed summary of the most recent operation."""
        if not self._ops:
            return "No operations"
        op = self._ops[-1]
        parts = [op.op]
        if isinstance(op, CropOp):
            if op.rect_norm is not None:
                rect = ",".join(f"{value:.2f}" for value in op.rect_norm)
                parts.append(f"rect=[{rect}]")
            if op.angle_deg is not None:
                parts.append(f"angle={op.angle_deg:.1f}°")
            if op.aspect:
                parts.append(f"aspect={op.aspect}")
        elif isinstance(op, WhiteBalanceOp):
            if op.method == "gray_point":
                parts.append(f"gray {op.x:.2f},{op.y:.2f}")
            else:
                parts.append(
                    f"temp {format_number(op.temp or 0)} tint {format_number(op.tint or 0)}"
                )
        elif isinstance(op, ExposureOp):
            parts.append(f"EV {_signed(op.ev, 2)}")
        else:
            parts.append(_signed(op.amt))
        return " ".join(parts)

    def _remember(self) -> None:
        self._undo.append(self._ops)
        self._redo.clear()

    def _next_id(self) -> str:
        self._op_counter += 1
        return f"op_{self._op_counter:02d}"

    def _build(self, kind: OperationKind, params: Mapping[str, object]) -> Operation:
        if kind is OperationKind.CROP:
            rect = params.get("rect_norm")
            angle = params.get("angle_deg")
            aspect = params.get("aspect")
            return CropOp(
                id=self._next_id(),
                rect_norm=clamp_rect(_as_rect(rect)) if rect is not None else None,
                angle_deg=(
                    normalize_angle(_as_float(angle, "angle_deg"))
                    if angle is not None
                    else None
                ),
                aspect=str(aspect) if aspect else None,
            )
        if kind is OperationKind.WHITE_BALANCE:
            method = params.get("method", "temp_tint")
            if method == "gray_point":
                return WhiteBalanceOp(
                    id=self._next_id(),
                    method="gray_point",
                    x=clamp(_as_float(params.get("x"), "x"), UNIT_RANGE),
                    y=clamp(_as_float(params.get("y"), "y"), UNIT_RANGE),
                )
            if method != "temp_tint":
                raise ValueError(f"Unknown white balance method: {method}")
            return WhiteBalanceOp(
                id=self._next_id(),
                method="temp_tint",
                temp=clamp(_as_float(params.get("temp", 0), "temp"), TEMP_RANGE),
                tint=clamp(_as_float(params.get("tint", 0), "tint"), TINT_RANGE),
            )
        if kind is OperationKind.EXPOSURE:
            return ExposureOp(
                id=self._next_id(),
                ev=clamp(_as_float(params.get("ev"), "ev"), EV_RANGE),
            )
        amount = clamp(_as_float(params.get("amt"), "amt"), AMOUNT_RANGE)
        if kind is OperationKind.CONTRAST:
            return ContrastOp(id=self._next_id(), amt=amount)
        if kind is OperationKind.SATURATION:
            return SaturationOp(id=self._next_id(), amt=amount)
        return VibranceOp(id=self._next_id(), amt=amount)


def clamp_rect(rect: Rect) -> Rect:
    """Clamp a normalized rect so it is non-empty and inside the frame."""
    x, y, w, h = rect
    x = clamp(x, (0.0, 1.0 - MIN_RECT_SIZE))
    y = clamp(y, (0.0, 1.0 - MIN_RECT_SIZE))
    w = max(MIN_RECT_SIZE, min(1.0 - x, w))
    h = max(MIN_RECT_SIZE, min(1.0 - y, h))
    return (x, y, w, h)


def normalize_angle(angle: float) -> float:
    """Normalize degrees into (-180, 180]."""
    normalized = angle % 360.0
    if normalized > 180.0:
        normalized -= 360.0
    return normalized


def parse_aspect(aspect: str) -> float | None:
    """Parse "W:H" or a keyword such as "square" into a width/height ratio."""
    normalized = ASPECT_KEYWORDS.get(aspect.strip().lower(), aspect.strip())
    match = _ASPECT_PATTERN.match(normalized)
    if not match:
        return None
    width, height = float(match.group(1)), float(match.group(2))
    if width <= 0 or height <= 0:
        return None
    return width / height


def _summarize(op: Operation) -> str:
    if isinstance(op, CropOp):
        summary = "Crop"
        if op.aspect:
            summary += f" {op.aspect}"
        if op.angle_deg:
            summary += f" angle {op.angle_deg:.1f}"
        return summary
    if isinstance(op, WhiteBalanceOp):
        if op.method == "gray_point":
            return f"WB(gray {op.x:.2f},{op.y:.2f})"
        return (
            f"WB(temp {format_number(op.temp or 0)} tint {format_number(op.tint or 0)})"
        )
    if isinstance(op, ExposureOp):
        return f"EV {_signed(op.ev, 2)}"
    labels = {"contrast": "Contrast", "saturation": "Sat", "vibrance": "Vib"}
    return f"{labels[op.op]} {_signed(op.amt)}"


def _signed(value: float, places: int | None = None) -> str:
    text = f"{value:.{places}f}" if places is not None else format_number(value)
    return f"+{text}" if value > 0 else text


def _as_float(value: object, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ValueError(f"{name} must be a number")
    return float(value)


def _as_rect(value: object) -> Rect:
    if not isinstance(value, list | tuple) or len(value) != 4:
        raise ValueError("rect_norm must have four components")
    x, y, w, h = (_as_float(item, "rect_norm") for item in value)
    return (x, y, w, h)


def _canonical(value: object) -> object:
    # -0.0 and 0.0 must digest alike
    if isinstance(value, float):
        return value + 0.0
    if isinstance(value, dict):
        return {key: _canonical(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_canonical(item) for item in value]
    return value
