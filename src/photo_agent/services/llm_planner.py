"""LLM-backed planner with retries and a deterministic fallback."""

import asyncio
import base64
import json
import logging
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Literal, Protocol

from pydantic import BaseModel, ConfigDict, Field

from photo_agent.domain.planning import (
    Clarification,
    PlannerOutput,
    PlannerState,
)
from photo_agent.services.planner import RuleBasedPlanner
from photo_agent.services.reference import deltas_to_calls
from photo_agent.services.validation import (
    CROP_ASPECTS,
    PLANNER_LIMITS,
    review_calls,
)

FallbackReason = Literal[
    "no_api_key", "timeout", "rate_limit", "network_error", "api_error"
]

_logger = logging.getLogger(__name__)

_FENCE_START = re.compile(r"^```(?:json)?\s*\n?")
_FENCE_END = re.compile(r"\n?```\s*$")
_IMAGE_PATH = re.compile(r"/[^\s]+\.(jpg|jpeg|png|tiff|webp)", re.IGNORECASE)


class PlannerTransportError(Exception):
    """A failed request to the planning backend."""

    def __init__(self, reason: FallbackReason, retryable: bool, detail: str = "") -> None:
        super().__init__(detail or reason)
        self.reason = reason
        self.retryable = retryable


class LlmClient(Protocol):
    """Interface for a JSON-producing chat model."""

    async def complete(  # noqa: PLR0913
        self,
        *,
        model: str,
        reasoning_effort: str | None,
        store: bool,
        system_prompt: str,
        user_prompt: str,
        image_data_url: str | None,
    ) -> str:
        """Return the raw text of the model's reply.

        Implementations raise PlannerTransportError for transport failures.
        """


class _LlmClarification(BaseModel):
    question: str
    options: list[str] = Field(default_factory=list)
    context: str | None = None


class LlmPlanResponse(BaseModel):
    """Expected JSON object in a planner reply."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    calls: list[object]
    confidence: float | None = None
    needs_clarification: _LlmClarification | None = Field(
        default=None, alias="needsClarification"
    )


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and backoff schedule for planner requests."""

    max_attempts: int = 3
    backoff_seconds: tuple[float, ...] = (1.0, 2.0, 4.0)
    deadline_seconds: float | None = None


@dataclass
class RetryState:
    """Progress of one planning request through its retry policy."""

    policy: RetryPolicy
    started_at: float
    attempt: int = 0
    last_error: PlannerTransportError | None = None

    def next_delay(self, now: float) -> float | None:
        """Seconds to wait before the next attempt, or None to give up."""
        error = self.last_error
        if error is None or not error.retryable:
            return None
        if self.attempt >= self.policy.max_attempts:
            return None
        schedule = self.policy.backoff_seconds
        delay = schedule[min(self.attempt - 1, len(schedule) - 1)] if schedule else 0.0
        deadline = self.policy.deadline_seconds
        if deadline is not None and (now + delay) - self.started_at > deadline:
            return None
        return delay


@dataclass
class LlmPlanner:
    """Planner that asks a language model and falls back to the rule set."""

    client: LlmClient | None
    model: str
    reasoning_effort: str | None = None
    store: bool = False
    timeout_seconds: float = 60.0
    max_calls: int = 6
    log_text: bool = False
    policy: RetryPolicy = field(default_factory=RetryPolicy)
    fallback: RuleBasedPlanner = field(default_factory=RuleBasedPlanner)
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    async def plan(
        self,
        text: str,
        state: PlannerState | None = None,
        preview_image: bytes | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> PlannerOutput:
        """Plan with the model, falling back on any unrecoverable failure."""
        started = time.monotonic()
        _logger.info(
            "Planner start: model=%s vision=%s text_len=%s",
            self.model,
            preview_image is not None,
            len(text),
        )
        if self.client is None:
            return self._fall_back(text, state, "no_api_key")

        image_data_url = _to_data_url(preview_image) if preview_image else None
        system_prompt = build_system_prompt(
            state, self.max_calls, vision=image_data_url is not None
        )
        user_prompt = self._user_prompt(text, state)
        try:
            raw = await self._request(
                system_prompt, user_prompt, image_data_url, should_stop
            )
            output = self._parse(raw)
        except PlannerTransportError as exc:
            _logger.warning("Planner request failed: reason=%s error=%s", exc.reason, exc)
            return self._fall_back(text, state, exc.reason)
        except ValueError as exc:
            _logger.warning("Planner reply unparseable: %s", exc)
            return self._fall_back(text, state, "api_error")
        except Exception:
            _logger.exception("Planner request raised unexpectedly")
            return self._fall_back(text, state, "api_error")

        _logger.info(
            "Planner result: calls=%s notes=%s confidence=%s latency_ms=%s",
            len(output.calls),
            len(output.notes),
            output.confidence,
            round((time.monotonic() - started) * 1000),
        )
        return output

    async def _request(
        self,
        system_prompt: str,
        user_prompt: str,
        image_data_url: str | None,
        should_stop: Callable[[], bool] | None,
    ) -> str:
        assert self.client is not None
        loop = asyncio.get_running_loop()
        state = RetryState(policy=self.policy, started_at=loop.time())
        while True:
            state.attempt += 1
            try:
                return await asyncio.wait_for(
                    self.client.complete(
                        model=self.model,
                        reasoning_effort=self.reasoning_effort,
                        store=self.store,
                        system_prompt=system_prompt,
                        user_prompt=user_prompt,
                        image_data_url=image_data_url,
                    ),
                    timeout=self.timeout_seconds if self.timeout_seconds > 0 else None,
                )
            except TimeoutError:
                state.last_error = PlannerTransportError(
                    "timeout", retryable=True, detail="planner request timed out"
                )
            except PlannerTransportError as exc:
                state.last_error = exc

            delay = state.next_delay(loop.time())
            if delay is None or (should_stop is not None and should_stop()):
                raise state.last_error
            _logger.info(
                "Planner retry: attempt=%s delay=%s reason=%s",
                state.attempt,
                delay,
                state.last_error.reason,
            )
            await self.sleep(delay)
            if should_stop is not None and should_stop():
                raise state.last_error

    def _parse(self, raw: str) -> PlannerOutput:
        text = _FENCE_END.sub("", _FENCE_START.sub("", raw.strip())).strip()
        response = LlmPlanResponse.model_validate(json.loads(text))
        review = review_calls(
            [
                _normalize_call(call) if isinstance(call, dict) else call
                for call in response.calls
            ],
            self.max_calls,
        )
        confidence = 1.0
        if response.confidence is not None:
            confidence = max(0.0, min(1.0, response.confidence))
        clarification = None
        if response.needs_clarification is not None:
            clarification = Clarification(
                question=response.needs_clarification.question,
                options=response.needs_clarification.options,
                context=response.needs_clarification.context,
            )
        return PlannerOutput(
            calls=review.calls,
            notes=review.notes,
            confidence=confidence,
            clarification=clarification,
        )

    def _fall_back(
        self, text: str, state: PlannerState | None, reason: FallbackReason
    ) -> PlannerOutput:
        _logger.info("Planner fallback: to=rules reason=%s", reason)
        output = self.fallback.plan_text(text, state)
        output.notes.append(f"Planner fell back to rule-based planner ({reason}).")
        return output

    def _user_prompt(self, text: str, state: PlannerState | None) -> str:
        redacted = _IMAGE_PATH.sub("[image]", text)
        if self.log_text:
            _logger.info("Planner text: original=%r redacted=%r", text, redacted)
        if state is None:
            return redacted
        payload: dict[str, object] = {
            "user": redacted,
            "state": {
                "image": {
                    "name": state.image_name,
                    **(state.image.model_dump(exclude={"exif"}) if state.image else {}),
                },
                "stackSummary": state.stack_summary,
                "limits": {name: list(bounds) for name, bounds in PLANNER_LIMITS.items()},
            },
        }
        if state.suggested_deltas is not None:
            payload["suggestedAdjustments"] = [
                call.to_payload() for call in deltas_to_calls(state.suggested_deltas)
            ]
            payload["note"] = (
                "These adjustments were computed locally to match a reference "
                "image. Prefer them unless the user text overrides them."
            )
        return json.dumps(payload)


_TOOL_CATALOG = """<tool_catalog>
set_white_balance_temp_tint {{temp, tint}}: temp {temp}, positive is warmer.
  tint {tint}, positive adds magenta. Always send both.
set_white_balance_gray {{x, y}}: neutral gray point, 0..1 in the image you see.
set_exposure {{ev}}: exposure in stops, {ev}. "brighter" is about +0.3.
set_contrast {{amt}}: {contrast}. "more contrast" is about +20.
set_saturation {{amt}}: {saturation}. -100 is black and white.
set_vibrance {{amt}}: {vibrance}. Saturation that protects skin tones.
set_rotate {{angleDeg}}: {angle} degrees, positive is clockwise.
set_crop {{aspect?, rectNorm?, angleDeg?}}: aspect one of {aspects}.
  rectNorm is [x, y, w, h] in 0..1.
undo, redo, reset: history controls without args.
export_image {{dst?, format?, quality?, overwrite?}}: format jpeg or png.
  quality {quality}.
</tool_catalog>"""


def build_system_prompt(state: PlannerState | None, max_calls: int, vision: bool) -> str:
    """Compose the planner instructions, tool catalog and current state."""
    limits = {name: f"{low:g}..{high:g}" for name, (low, high) in PLANNER_LIMITS.items()}
    catalog = _TOOL_CATALOG.format(aspects=", ".join(CROP_ASPECTS), **limits)
    role = (
        "You are a photo editing assistant that can see the image. Analyze color "
        "casts, exposure, contrast, tilt and composition before choosing edits. "
        "Coordinates refer to the preview image you see."
        if vision
        else "You are a photo editing assistant that translates natural language "
        "requests into precise editing operations."
    )
    sections = [f"<role>{role}</role>", catalog]
    if state is not None:
        image = (
            f"{state.image.width}x{state.image.height}, {state.image.mime}"
            if state.image
            else "unknown size"
        )
        sections.append(
            "<current_state>\n"
            f"Image: {state.image_name} ({image})\n"
            f"Current edits: {state.stack_summary}\n"
            "</current_state>"
        )
    sections.append(
        "<output_requirements>\n"
        'Return ONLY a JSON object: {"calls": [{"fn": ..., "args": {...}}], '
        '"confidence": 0..1, "needsClarification": {"question": ..., '
        '"options": [...], "context": ...}}.\n'
        f"Use at most {max_calls} calls. Order color adjustments before geometry "
        "and export. Amend existing adjustments instead of stacking duplicates.\n"
        "If the intent is ambiguous (for example \"cinematic\" or \"pop\"), set "
        "confidence below 0.5, add needsClarification and still give a best guess.\n"
        "</output_requirements>"
    )
    return "\n\n".join(sections)


_PREVIEW_SIGNATURES = (
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
)


def _to_data_url(preview: bytes) -> str:
    """Encode rendered preview bytes as a data URL for the model."""
    mime_type = next(
        (mime for magic, mime in _PREVIEW_SIGNATURES if preview.startswith(magic)),
        "image/jpeg",
    )
    if preview[:4] == b"RIFF" and preview[8:12] == b"WEBP":
        mime_type = "image/webp"
    return f"data:{mime_type};base64,{base64.b64encode(preview).decode()}"


def _normalize_call(call: dict[str, object]) -> dict[str, object]:
    """Accept the alternative key spellings models sometimes produce."""
    return {
        "fn": call.get("fn") or call.get("tool_name") or call.get("function"),
        "args": call.get("args") or call.get("parameters") or call.get("arguments"),
    }
