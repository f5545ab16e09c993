"""Rule-based planner turning free text into planned calls."""

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

from photo_agent.domain.planning import (
    Clarification,
    PlannedCall,
    PlannerOutput,
    PlannerState,
    SuggestedDeltas,
)


class Planner(Protocol):
    """Interface shared by the rule-based and LLM-backed planners."""

    async def plan(
        self,
        text: str,
        state: PlannerState | None = None,
        preview_image: bytes | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> PlannerOutput:
        """Return planned calls for a free-text request."""


DEFAULT_AMBIGUOUS_TERMS = ("pop", "cinematic", "dramatic", "moody")
DEFAULT_CLARIFICATION_OPTIONS = (
    "High contrast with deep shadows",
    "Warm and vibrant colors",
    "Cool and moody tones",
    "Bright and airy feel",
)


@dataclass(frozen=True)
class PlannerTuning:
    """Heuristic constants of the rule-based planner."""

    base_confidence: float = 0.95
    empty_confidence: float = 0.2
    ignored_term_penalty: float = 0.1
    busy_call_count: int = 5
    busy_confidence: float = 0.6
    ambiguous_confidence: float = 0.4
    min_confidence: float = 0.1
    ambiguous_terms: tuple[str, ...] = DEFAULT_AMBIGUOUS_TERMS
    clarification_options: tuple[str, ...] = DEFAULT_CLARIFICATION_OPTIONS


# Channel -> step applied by qualitative terms and "more/less <channel>".
CHANNEL_STEPS = {
    "temp": 20.0,
    "tint": 20.0,
    "ev": 0.3,
    "contrast": 20.0,
    "saturation": 20.0,
    "vibrance": 20.0,
}

# Words that name a channel, for "<channel> <number>" and "more <channel>".
CHANNEL_WORDS = {
    "temp": "temp",
    "temperature": "temp",
    "tint": "tint",
    "ev": "ev",
    "exposure": "ev",
    "contrast": "contrast",
    "saturation": "saturation",
    "vibrance": "vibrance",
}

# Qualitative term -> (channel, direction).
QUALITATIVE_TERMS = {
    "warm": ("temp", 1),
    "warmer": ("temp", 1),
    "cool": ("temp", -1),
    "cooler": ("temp", -1),
    "brighter": ("ev", 1),
    "lighter": ("ev", 1),
    "lift": ("ev", 1),
    "darker": ("ev", -1),
    "punchier": ("contrast", 1),
    "flatter": ("contrast", -1),
    "colorful": ("saturation", 1),
    "colourful": ("saturation", 1),
    "saturated": ("saturation", 1),
    "muted": ("saturation", -1),
    "desaturated": ("saturation", -1),
    "vibrant": ("vibrance", 1),
}

ASPECT_TOKENS = {
    "square": "1:1",
    "1:1": "1:1",
    "3:2": "3:2",
    "4:3": "4:3",
    "16:9": "16:9",
}

MONOCHROME_TERMS = {"monochrome", "bw", "b&w", "grayscale", "greyscale"}
ROTATE_TERMS = {"straighten", "rotate", "tilt"}
FILLER_TERMS = {
    "a",
    "add",
    "an",
    "and",
    "apply",
    "bit",
    "by",
    "crop",
    "it",
    "little",
    "look",
    "make",
    "more",
    "less",
    "photo",
    "image",
    "please",
    "slightly",
    "the",
    "then",
    "to",
    "as",
    "with",
}

_TOKEN_SPLIT = re.compile(r"[\s,;]+")
_NUMBER = re.compile(r"^[+-]?\d+(?:\.\d+)?$")

_CHANNEL_CALLS = (
    ("ev", "set_exposure", "ev"),
    ("contrast", "set_contrast", "amt"),
    ("saturation", "set_saturation", "amt"),
    ("vibrance", "set_vibrance", "amt"),
)


def tokenize(text: str) -> list[str]:
    """Split free text into lowercase tokens."""
    return [token for token in _TOKEN_SPLIT.split(text.lower()) if token]


def parse_number(token: str | None) -> float | int | None:
    """Parse a signed numeric token, tolerating a trailing degree sign."""
    if token is None:
        return None
    cleaned = token.removesuffix("°")
    if not _NUMBER.match(cleaned):
        return None
    value = float(cleaned)
    return int(value) if value.is_integer() and "." not in cleaned else value


@dataclass
class _Accumulator:
    """Per-request reducer state."""

    channels: dict[str, float] = field(
        default_factory=lambda: dict.fromkeys(CHANNEL_STEPS, 0)
    )
    gray_point: PlannedCall | None = None
    crop_args: dict[str, object] | None = None
    raw_tokens: list[str] = field(default_factory=list)
    controls: list[PlannedCall] = field(default_factory=list)
    ignored: list[str] = field(default_factory=list)
    ambiguous: list[str] = field(default_factory=list)

    def add(self, channel: str, value: float) -> None:
        self.channels[channel] += value

    def crop(self) -> dict[str, object]:
        if self.crop_args is None:
            self.crop_args = {}
        return self.crop_args

    def seed(self, deltas: SuggestedDeltas) -> None:
        for channel in CHANNEL_STEPS:
            value = getattr(deltas, channel)
            if value:
                self.add(channel, value)
        if deltas.aspect:
            self.crop()["aspect"] = deltas.aspect
        if deltas.rotate:
            self.crop()["angleDeg"] = deltas.rotate

    def calls(self) -> list[PlannedCall]:
        calls: list[PlannedCall] = []
        if self.gray_point is not None:
            calls.append(self.gray_point)
        temp, tint = self.channels["temp"], self.channels["tint"]
        if temp or tint:
            calls.append(
                PlannedCall(
                    fn="set_white_balance_temp_tint",
                    args={"temp": _tidy(temp), "tint": _tidy(tint)},
                )
            )
        for channel, fn, arg in _CHANNEL_CALLS:
            value = self.channels[channel]
            if value:
                calls.append(PlannedCall(fn=fn, args={arg: _tidy(value)}))
        if self.crop_args:
            calls.append(PlannedCall(fn="set_crop", args=dict(self.crop_args)))
        calls.extend(self.controls)
        return calls


@dataclass
class RuleBasedPlanner:
    """Deterministic planner driven by a fixed vocabulary."""

    tuning: PlannerTuning = field(default_factory=PlannerTuning)

    async def plan(
        self,
        text: str,
        state: PlannerState | None = None,
        preview_image: bytes | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> PlannerOutput:
        """Plan asynchronously; see plan_text."""
        return self.plan_text(text, state)

    def plan_text(self, text: str, state: PlannerState | None = None) -> PlannerOutput:
        """Reduce the tokens of text into planned calls."""
        acc = _Accumulator(raw_tokens=[t for t in _TOKEN_SPLIT.split(text) if t])
        if state is not None and state.suggested_deltas is not None:
            acc.seed(state.suggested_deltas)
        tokens = tokenize(text)
        index = 0
        while index < len(tokens):
            index = self._reduce(tokens, index, acc)
        calls = acc.calls()
        notes: list[str] = []
        if acc.ignored:
            notes.append(f"Ignored terms: {', '.join(acc.ignored)}")
        return PlannerOutput(
            calls=calls,
            notes=notes,
            confidence=self._confidence(calls, acc),
            clarification=self._clarification(acc),
        )

    def _reduce(  # noqa: PLR0911, PLR0912
        self, tokens: list[str], index: int, acc: _Accumulator
    ) -> int:
        """Consume one rule starting at index and return the next index."""
        token = tokens[index]
        following = tokens[index + 1] if index + 1 < len(tokens) else None
        after = tokens[index + 2] if index + 2 < len(tokens) else None
        number = parse_number(following)

        if token in self.tuning.ambiguous_terms:
            acc.ambiguous.append(token)
            return index + 1
        if token in QUALITATIVE_TERMS:
            channel, direction = QUALITATIVE_TERMS[token]
            amount = parse_number(after) if following == "by" else None
            if amount is not None:
                acc.add(channel, direction * abs(amount))
                return index + 3
            acc.add(channel, direction * CHANNEL_STEPS[channel])
            return index + 1
        if token in CHANNEL_WORDS and number is not None:
            acc.add(CHANNEL_WORDS[token], number)
            return index + 2
        if following == "ev" and parse_number(token) is not None:
            acc.add("ev", parse_number(token))
            return index + 2
        if token in {"more", "less"} and following in CHANNEL_WORDS:
            direction = 1 if token == "more" else -1
            channel = CHANNEL_WORDS[following]
            acc.add(channel, direction * CHANNEL_STEPS[channel])
            return index + 2
        if token in {"neutral", "auto"} and following in {"wb", "white"}:
            acc.gray_point = PlannedCall(
                fn="set_white_balance_gray", args={"x": 0.5, "y": 0.5}
            )
            return index + 3 if following == "white" and after == "balance" else index + 2
        if token in MONOCHROME_TERMS:
            acc.add("saturation", -100)
            return index + 1
        if token in ASPECT_TOKENS:
            acc.crop()["aspect"] = ASPECT_TOKENS[token]
            return index + 1
        if token in ROTATE_TERMS:
            if number is None:
                return index + 1
            crop = acc.crop()
            crop["angleDeg"] = _tidy(float(crop.get("angleDeg", 0)) + number)
            return index + 2
        if token in {"undo", "redo", "reset"}:
            acc.controls.append(PlannedCall(fn=token))
            return index + 1
        if token in {"export", "save"}:
            return self._reduce_export(tokens, index + 1, acc)
        if token not in FILLER_TERMS and parse_number(token) is None:
            acc.ignored.append(token)
        return index + 1

    def _reduce_export(self, tokens: list[str], index: int, acc: _Accumulator) -> int:
        args: dict[str, object] = {}
        if index + 1 < len(tokens) and tokens[index] == "to":
            args["dst"] = acc.raw_tokens[index + 1]
            index += 2
        while index < len(tokens):
            token = tokens[index]
            following = tokens[index + 1] if index + 1 < len(tokens) else None
            if token == "as" and following in {"png", "jpeg", "jpg"}:
                args["format"] = "jpeg" if following == "jpg" else following
                index += 2
            elif token == "quality" and parse_number(following) is not None:
                args["quality"] = parse_number(following)
                index += 2
            elif token == "overwrite":
                args["overwrite"] = True
                index += 1
            else:
                break
        acc.controls.append(PlannedCall(fn="export_image", args=args))
        return index

    def _confidence(self, calls: list[PlannedCall], acc: _Accumulator) -> float:
        tuning = self.tuning
        if not calls:
            confidence = tuning.empty_confidence
        else:
            confidence = tuning.base_confidence
            if len(calls) >= tuning.busy_call_count:
                confidence = min(confidence, tuning.busy_confidence)
        confidence -= tuning.ignored_term_penalty * len(acc.ignored)
        if acc.ambiguous:
            confidence = min(confidence, tuning.ambiguous_confidence)
        return round(max(tuning.min_confidence, min(1.0, confidence)), 3)

    def _clarification(self, acc: _Accumulator) -> Clarification | None:
        if not acc.ambiguous:
            return None
        terms = ", ".join(f'"{term}"' for term in dict.fromkeys(acc.ambiguous))
        return Clarification(
            question=f"{terms} is ambiguous. Which look did you mean?",
            options=list(self.tuning.clarification_options),
            context=f"Ambiguous terms: {terms}",
        )


def _tidy(value: float) -> float | int:
    """Round away float noise from accumulated steps."""
    rounded = round(value, 4)
    return int(rounded) if float(rounded).is_integer() else rounded
