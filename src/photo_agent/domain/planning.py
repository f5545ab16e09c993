"""Planner contract types."""

from dataclasses import dataclass, field

from photo_agent.domain.images import ImageMetadata

COLOR_FUNCTIONS = (
    "set_white_balance_gray",
    "set_white_balance_temp_tint",
    "set_exposure",
    "set_contrast",
    "set_saturation",
    "set_vibrance",
)
GEOMETRY_FUNCTIONS = ("set_crop", "set_rotate")
CONTROL_FUNCTIONS = ("undo", "redo", "reset", "export_image")
PLANNED_FUNCTIONS = COLOR_FUNCTIONS + GEOMETRY_FUNCTIONS + CONTROL_FUNCTIONS


@dataclass(frozen=True)
class PlannedCall:
    """Structured editing instruction produced by a planner."""

    fn: str
    args: dict[str, object] = field(default_factory=dict)

    def to_payload(self) -> dict[str, object]:
        """Return the call in its wire shape."""
        if self.args:
            return {"fn": self.fn, "args": dict(self.args)}
        return {"fn": self.fn}


@dataclass(frozen=True)
class Clarification:
    """Question to ask the user when a request is ambiguous."""

    question: str
    options: list[str] = field(default_factory=list)
    context: str | None = None


@dataclass
class PlannerOutput:
    """Calls plus the notes and confidence of a planning run."""

    calls: list[PlannedCall] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    confidence: float = 1.0
    clarification: Clarification | None = None


@dataclass(frozen=True)
class SuggestedDeltas:
    """Adjustments computed to match a reference image."""

    temp: float | None = None
    tint: float | None = None
    ev: float | None = None
    contrast: float | None = None
    saturation: float | None = None
    vibrance: float | None = None
    rotate: float | None = None
    aspect: str | None = None


@dataclass(frozen=True)
class PlannerState:
    """Context about the current image handed to a planner."""

    image_name: str
    image: ImageMetadata | None = None
    stack_summary: str = "No operations"
    suggested_deltas: SuggestedDeltas | None = None


@dataclass(frozen=True)
class PendingPlan:
    """A plan held until the user confirms it."""

    calls: list[PlannedCall]
    notes: list[str] = field(default_factory=list)
    preview_coordinates: bool = False


@dataclass(frozen=True)
class PlannerConfig:
    """Per-session planner selection sent by the client."""

    kind: str = "rule"
    model: str | None = None
    timeout_seconds: float | None = None
    max_calls: int | None = None
