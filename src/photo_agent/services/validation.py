"""Structural validation and range clamping for planned calls."""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from photo_agent.domain.operations import (
    AMOUNT_RANGE,
    EV_RANGE,
    TEMP_RANGE,
    TINT_RANGE,
    UNIT_RANGE,
    clamp,
    format_number,
)
from photo_agent.domain.planning import PLANNED_FUNCTIONS, PlannedCall

ANGLE_RANGE = (-45.0, 45.0)
QUALITY_RANGE = (1.0, 100.0)
CROP_ASPECTS = ("1:1", "3:2", "4:3", "16:9")
EXPORT_FORMATS = ("jpeg", "png")

PLANNER_LIMITS: dict[str, tuple[float, float]] = {
    "temp": TEMP_RANGE,
    "tint": TINT_RANGE,
    "ev": EV_RANGE,
    "contrast": AMOUNT_RANGE,
    "saturation": AMOUNT_RANGE,
    "vibrance": AMOUNT_RANGE,
    "angle": ANGLE_RANGE,
    "quality": QUALITY_RANGE,
}

_AMOUNT_FUNCTIONS = {
    "set_contrast": "contrast",
    "set_saturation": "saturation",
    "set_vibrance": "vibrance",
}


@dataclass(frozen=True)
class ClampRecord:
    """A value that was coerced into its range."""

    name: str
    before: float
    after: float

    def describe(self) -> str:
        return f"{self.name}: {format_number(self.before)} → {format_number(self.after)}"


@dataclass(frozen=True)
class ValidatedCall:
    """A structurally valid call with its values inside their ranges."""

    call: PlannedCall
    clamps: list[ClampRecord] = field(default_factory=list)


@dataclass
class ReviewResult:
    """Outcome of validating a batch of raw planner calls."""

    calls: list[PlannedCall]
    notes: list[str]
    dropped: list[str] = field(default_factory=list)
    clamps: list[ClampRecord] = field(default_factory=list)


class _Clamper:
    def __init__(self) -> None:
        self.records: list[ClampRecord] = []

    def __call__(self, name: str, value: float, bounds: tuple[float, float]) -> float:
        clamped = clamp(value, bounds)
        if clamped != value:
            self.records.append(ClampRecord(name=name, before=value, after=clamped))
        return clamped


def validate_call(raw: object) -> ValidatedCall | None:  # noqa: PLR0911, PLR0912
    """Validate one call and clamp its values.

    Returns None for structurally invalid input instead of raising, so a bad
    call can be dropped without failing the rest of its batch.
    """
    if isinstance(raw, PlannedCall):
        fn, args = raw.fn, raw.args
    elif isinstance(raw, Mapping):
        fn, args = raw.get("fn"), raw.get("args")
    else:
        return None
    if not isinstance(fn, str) or fn not in PLANNED_FUNCTIONS:
        return None
    if args is not None and not isinstance(args, Mapping):
        return None
    args = args or {}
    clamper = _Clamper()

    if fn == "set_white_balance_temp_tint":
        if not _is_number(args.get("temp")) or not _is_number(args.get("tint")):
            return None
        out = {
            "temp": clamper("temp", args["temp"], TEMP_RANGE),
            "tint": clamper("tint", args["tint"], TINT_RANGE),
        }
    elif fn == "set_white_balance_gray":
        if not _is_number(args.get("x")) or not _is_number(args.get("y")):
            return None
        out = {
            "x": clamper("x", args["x"], UNIT_RANGE),
            "y": clamper("y", args["y"], UNIT_RANGE),
        }
    elif fn == "set_exposure":
        if not _is_number(args.get("ev")):
            return None
        out = {"ev": clamper("ev", args["ev"], EV_RANGE)}
    elif fn in _AMOUNT_FUNCTIONS:
        if not _is_number(args.get("amt")):
            return None
        out = {"amt": clamper(_AMOUNT_FUNCTIONS[fn], args["amt"], AMOUNT_RANGE)}
    elif fn == "set_rotate":
        if not _is_number(args.get("angleDeg")):
            return None
        out = {"angleDeg": clamper("angle", args["angleDeg"], ANGLE_RANGE)}
    elif fn == "set_crop":
        out = _validate_crop(args, clamper)
        if out is None:
            return None
    elif fn in {"undo", "redo", "reset"}:
        out = {}
    elif fn == "export_image":
        out = _validate_export(args, clamper)
        if out is None:
            return None
    else:
        return None
    return ValidatedCall(call=PlannedCall(fn=fn, args=out), clamps=clamper.records)


def review_calls(raw_calls: Sequence[object], max_calls: int) -> ReviewResult:
    """Truncate, validate and clamp a batch, describing every change in notes."""
    notes: list[str] = []
    calls: list[PlannedCall] = []
    dropped: list[str] = []
    clamps: list[ClampRecord] = []
    for raw in raw_calls[:max_calls]:
        validated = validate_call(raw)
        if validated is None:
            dropped.append(_call_name(raw))
            continue
        calls.append(validated.call)
        clamps.extend(validated.clamps)
    if dropped:
        notes.append(f"Dropped invalid calls: {', '.join(dropped)}")
    if clamps:
        notes.append(
            "Clamped values: " + ", ".join(record.describe() for record in clamps)
        )
    if len(raw_calls) > max_calls:
        notes.append(f"Truncated to {max_calls} calls (from {len(raw_calls)})")
    return ReviewResult(calls=calls, notes=notes, dropped=dropped, clamps=clamps)


def _validate_crop(
    args: Mapping[str, object], clamper: _Clamper
) -> dict[str, object] | None:
    out: dict[str, object] = {}
    aspect = args.get("aspect")
    if aspect is not None:
        if aspect not in CROP_ASPECTS:
            return None
        out["aspect"] = aspect
    rect = args.get("rectNorm")
    if rect is not None:
        if (
            not isinstance(rect, list | tuple)
            or len(rect) != 4
            or not all(_is_number(value) for value in rect)
        ):
            return None
        names = ("rect.x", "rect.y", "rect.w", "rect.h")
        out["rectNorm"] = [
            clamper(name, value, UNIT_RANGE)
            for name, value in zip(names, rect, strict=True)
        ]
    angle = args.get("angleDeg")
    if angle is not None:
        if not _is_number(angle):
            return None
        out["angleDeg"] = clamper("angle", angle, ANGLE_RANGE)
    return out or None


def _validate_export(
    args: Mapping[str, object], clamper: _Clamper
) -> dict[str, object] | None:
    out: dict[str, object] = {}
    dst = args.get("dst")
    if dst is not None:
        if not isinstance(dst, str) or not dst:
            return None
        out["dst"] = dst
    fmt = args.get("format")
    if fmt is not None:
        if fmt == "jpg":
            fmt = "jpeg"
        if fmt not in EXPORT_FORMATS:
            return None
        out["format"] = fmt
    quality = args.get("quality")
    if quality is not None:
        if not _is_number(quality):
            return None
        out["quality"] = clamper("quality", quality, QUALITY_RANGE)
    overwrite = args.get("overwrite")
    if overwrite is not None:
        if not isinstance(overwrite, bool):
            return None
        out["overwrite"] = overwrite
    return out


def _is_number(value: object) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _call_name(raw: object) -> str:
    if isinstance(raw, PlannedCall):
        return raw.fn
    if isinstance(raw, Mapping) and isinstance(raw.get("fn"), str):
        return str(raw["fn"])
    return "unknown"
