"""Reference look matching from image statistics."""

from photo_agent.domain.images import ImageStats
from photo_agent.domain.operations import (
    AMOUNT_RANGE,
    EV_RANGE,
    TEMP_RANGE,
    TINT_RANGE,
    clamp,
)
from photo_agent.domain.planning import PlannedCall, SuggestedDeltas

# Deltas smaller than these are not worth an edit.
EPSILONS = {
    "temp": 5.0,
    "tint": 5.0,
    "ev": 0.1,
    "contrast": 5.0,
    "saturation": 5.0,
    "vibrance": 5.0,
    "rotate": 0.5,
}

TEMP_PER_A = 2.0
TINT_PER_B = 2.0
EV_PER_L = 1 / 12
CONTRAST_PER_RANGE = 2.0
VIBRANCE_SHARE = 0.7
SATURATION_SHARE = 0.3
ASPECT_TOLERANCE = 0.05
ASPECT_CHANGE_THRESHOLD = 0.1

_PRESET_ASPECTS = (("1:1", 1.0), ("16:9", 16 / 9), ("3:2", 3 / 2), ("4:3", 4 / 3))

AUTO_MODES = ("wb", "exposure", "contrast", "all")
AUTO_TARGET_MIDTONE = 50.0
AUTO_TARGET_RANGE = (5.0, 95.0)
AUTO_EV_LIMIT = 1.5
AUTO_CONTRAST_LIMIT = 40.0


def compute_deltas(target: ImageStats, reference: ImageStats) -> SuggestedDeltas:
    """Suggest adjustments that move target's look toward reference."""
    temp = (reference.chroma.a_mean - target.chroma.a_mean) * TEMP_PER_A
    tint = (reference.chroma.b_mean - target.chroma.b_mean) * TINT_PER_B
    ev = (reference.luminance.p50 - target.luminance.p50) * EV_PER_L
    target_range = target.luminance.p95 - target.luminance.p5
    reference_range = reference.luminance.p95 - reference.luminance.p5
    contrast = (reference_range - target_range) * CONTRAST_PER_RANGE
    colorfulness = reference.saturation.colorfulness - target.saturation.colorfulness

    return SuggestedDeltas(
        temp=_significant("temp", temp, TEMP_RANGE),
        tint=_significant("tint", tint, TINT_RANGE),
        ev=_significant("ev", ev, EV_RANGE),
        contrast=_significant("contrast", contrast, AMOUNT_RANGE),
        saturation=_significant(
            "saturation", colorfulness * SATURATION_SHARE, AMOUNT_RANGE
        ),
        vibrance=_significant("vibrance", colorfulness * VIBRANCE_SHARE, AMOUNT_RANGE),
        aspect=_aspect_change(target, reference),
    )


def auto_deltas(stats: ImageStats, mode: str = "all") -> SuggestedDeltas:
    """Suggest corrections toward a neutral, mid-toned, full-range version.

    The image is matched against an idealized copy of its own statistics, so
    automatic fixes use the same mapping as reference matching.
    """
    low, high = AUTO_TARGET_RANGE
    ideal = stats.model_copy(
        update={
            "chroma": stats.chroma.model_copy(update={"a_mean": 0.0, "b_mean": 0.0}),
            "luminance": stats.luminance.model_copy(
                update={"p5": low, "p50": AUTO_TARGET_MIDTONE, "p95": high}
            ),
        }
    )
    deltas = compute_deltas(stats, ideal)
    wb = mode in {"wb", "all"}
    ev = deltas.ev if mode in {"exposure", "all"} else None
    contrast = deltas.contrast if mode in {"contrast", "all"} else None
    return SuggestedDeltas(
        temp=deltas.temp if wb else None,
        tint=deltas.tint if wb else None,
        ev=None if ev is None else clamp(ev, (-AUTO_EV_LIMIT, AUTO_EV_LIMIT)),
        contrast=(
            None
            if contrast is None
            else clamp(contrast, (-AUTO_CONTRAST_LIMIT, AUTO_CONTRAST_LIMIT))
        ),
    )


def is_negligible(deltas: SuggestedDeltas) -> bool:
    """Return True when no delta clears its threshold."""
    for name, epsilon in EPSILONS.items():
        value = getattr(deltas, name)
        if value is not None and abs(value) >= epsilon:
            return False
    return deltas.aspect is None


def deltas_to_calls(deltas: SuggestedDeltas) -> list[PlannedCall]:
    """Express suggested deltas as planned calls."""
    calls: list[PlannedCall] = []
    if deltas.temp is not None or deltas.tint is not None:
        calls.append(
            PlannedCall(
                fn="set_white_balance_temp_tint",
                args={"temp": deltas.temp or 0, "tint": deltas.tint or 0},
            )
        )
    if deltas.ev is not None:
        calls.append(PlannedCall(fn="set_exposure", args={"ev": deltas.ev}))
    if deltas.contrast is not None:
        calls.append(PlannedCall(fn="set_contrast", args={"amt": deltas.contrast}))
    if deltas.saturation is not None:
        calls.append(PlannedCall(fn="set_saturation", args={"amt": deltas.saturation}))
    if deltas.vibrance is not None:
        calls.append(PlannedCall(fn="set_vibrance", args={"amt": deltas.vibrance}))
    if deltas.rotate is not None:
        calls.append(PlannedCall(fn="set_rotate", args={"angleDeg": deltas.rotate}))
    if deltas.aspect is not None:
        calls.append(PlannedCall(fn="set_crop", args={"aspect": deltas.aspect}))
    return calls


def format_deltas(deltas: SuggestedDeltas) -> str:
    """Describe deltas for the user."""
    if is_negligible(deltas):
        return "Image already matches reference (all deltas below threshold)"
    parts: list[str] = []
    labelled = (
        ("WB Temp", deltas.temp, "{:+.1f}"),
        ("WB Tint", deltas.tint, "{:+.1f}"),
        ("Exposure", deltas.ev, "{:+.2f} EV"),
        ("Contrast", deltas.contrast, "{:+.1f}"),
        ("Saturation", deltas.saturation, "{:+.1f}"),
        ("Vibrance", deltas.vibrance, "{:+.1f}"),
        ("Rotate", deltas.rotate, "{:+.1f}°"),
    )
    for label, value, template in labelled:
        if value is not None:
            parts.append(f"{label}: {template.format(value)}")
    if deltas.aspect is not None:
        parts.append(f"Crop: {deltas.aspect}")
    return f"Computed deltas: {', '.join(parts)}"


def _significant(name: str, value: float, bounds: tuple[float, float]) -> float | None:
    if abs(value) < EPSILONS[name]:
        return None
    return round(clamp(value, bounds), 2)


def _aspect_change(target: ImageStats, reference: ImageStats) -> str | None:
    target_ratio = target.width / target.height
    reference_ratio = reference.width / reference.height
    if abs(target_ratio - reference_ratio) < ASPECT_CHANGE_THRESHOLD:
        return None
    for label, ratio in _PRESET_ASPECTS:
        if abs(reference_ratio - ratio) < ASPECT_TOLERANCE:
            return label
    return None
