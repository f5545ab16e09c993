"""Prompt interpretation: image loads, direct commands and planner batches."""

import logging
import math
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path

from photo_agent.domain.content import (
    ImageContent,
    PromptBlock,
    ResourceLink,
    TextContent,
    UpdateContent,
)
from photo_agent.domain.operations import CropOp, Operation, OperationKind, Rect
from photo_agent.domain.planning import PendingPlan, PlannedCall, PlannerState
from photo_agent.services.cache import PreviewCache
from photo_agent.services.coordinates import map_point, map_rect
from photo_agent.services.edit_stack import ASPECT_KEYWORDS, EditStack, parse_aspect
from photo_agent.services.histogram import HISTOGRAM_BINS, format_histogram
from photo_agent.services.reference import (
    AUTO_MODES,
    auto_deltas,
    compute_deltas,
    deltas_to_calls,
    format_deltas,
    is_negligible,
)
from photo_agent.services.sessions import Session, UpdateSink
from photo_agent.services.tools import (
    ToolProvider,
    ToolProviderError,
    ToolProviderRegistry,
)
from photo_agent.services.validation import review_calls

_logger = logging.getLogger(__name__)

BOOLEAN_FLAGS = frozenset({"new-op", "overwrite", "with-image"})
DIRECT_COMMANDS = (
    "undo",
    "redo",
    "reset",
    "crop",
    "wb",
    "exposure",
    "contrast",
    "saturation",
    "vibrance",
    "auto",
    "hist",
    "export",
    "ask",
    "yes",
    "no",
)

_AMOUNT_COMMANDS = {
    "contrast": OperationKind.CONTRAST,
    "saturation": OperationKind.SATURATION,
    "vibrance": OperationKind.VIBRANCE,
}
_AMOUNT_FUNCTIONS = {
    "set_contrast": OperationKind.CONTRAST,
    "set_saturation": OperationKind.SATURATION,
    "set_vibrance": OperationKind.VIBRANCE,
}


class UserError(Exception):
    """A request that cannot be carried out as asked."""


class PromptCancelled(Exception):
    """The client cancelled the prompt being processed."""


@dataclass(frozen=True)
class DirectCommand:
    """A parsed ``:name --flag value`` command."""

    name: str
    options: dict[str, str | bool] = field(default_factory=dict)
    arguments: list[str] = field(default_factory=list)


def parse_command(text: str) -> DirectCommand:
    """Parse a direct command line starting with ``:``."""
    tokens = text.strip().removeprefix(":").split()
    if not tokens:
        raise UserError("Empty command. Commands start with ':' followed by a name.")
    name, rest = tokens[0].lower(), tokens[1:]
    options: dict[str, str | bool] = {}
    arguments: list[str] = []
    index = 0
    while index < len(rest):
        token = rest[index]
        if token.startswith("--") and len(token) > 2:
            key = token[2:]
            if key in BOOLEAN_FLAGS:
                options[key] = True
                index += 1
                continue
            if index + 1 >= len(rest):
                raise UserError(f"--{key} expects a value")
            options[key] = rest[index + 1]
            index += 2
        else:
            arguments.append(token)
            index += 1
    return DirectCommand(name=name, options=options, arguments=arguments)


class _ToolCall:
    def __init__(self, tool_call_id: str, sink: UpdateSink) -> None:
        self.id = tool_call_id
        self._sink = sink
        self.content: list[UpdateContent] = []

    async def progress(self, *content: UpdateContent) -> None:
        await self._sink.tool_call_update(self.id, "in_progress", content=list(content))

    def finish_with(self, *content: UpdateContent) -> None:
        self.content = list(content)


@dataclass
class CommandRouter:
    """Routes prompt content to the edit stack, planner and tool provider."""

    tool_providers: ToolProviderRegistry
    previews: PreviewCache
    max_calls: int = 6
    preview_max_pixels: int = 1024
    thumbnail_max_pixels: int = 256
    export_quality: int = 90

    async def handle(
        self, session: Session, blocks: Sequence[PromptBlock], sink: UpdateSink
    ) -> None:
        """Process one prompt; failures are reported to the client as text."""
        try:
            await self._handle(session, blocks, sink)
        except PromptCancelled:
            _logger.info("Prompt cancelled: session=%s", session.id)
        except UserError as exc:
            await sink.agent_message(TextContent(str(exc)))
        except ToolProviderError as exc:
            _logger.warning("Tool provider failed: session=%s error=%s", session.id, exc)
            await sink.agent_message(TextContent(f"Tool provider error: {exc}"))
        except Exception as exc:
            _logger.exception("Prompt failed: session=%s", session.id)
            await sink.agent_message(TextContent(f"Internal error: {exc}"))

    async def _handle(
        self, session: Session, blocks: Sequence[PromptBlock], sink: UpdateSink
    ) -> None:
        resources = [block for block in blocks if isinstance(block, ResourceLink)]
        texts = [block.text for block in blocks if isinstance(block, TextContent)]
        for resource in resources:
            _check_cancelled(session)
            await self._load_image(session, resource, sink)

        text = "\n".join(texts).strip()
        if not text:
            if not resources:
                raise UserError("Nothing to do. Attach an image or describe an edit.")
            return
        _check_cancelled(session)
        if text.startswith(":"):
            await self._run_command(session, parse_command(text), sink)
        else:
            await self._plan(session, text, sink)

    async def _load_image(
        self, session: Session, resource: ResourceLink, sink: UpdateSink
    ) -> None:
        provider = self._provider(session)
        uri = _resolve(resource.uri, session.cwd)
        name = resource.name or Path(uri).name
        async with self._tool_call(
            session, sink, {"tool": "read_image_metadata", "uri": uri}
        ) as call:
            session.bind_image(uri, name)
            metadata = await provider.read_image_metadata(uri)
            session.metadata = metadata
            loaded = f"Loaded {name}: {metadata.width}×{metadata.height} {metadata.mime}"
            await call.progress(TextContent(loaded))
            thumbnail = await provider.render_thumbnail(uri, self.thumbnail_max_pixels)
            call.finish_with(
                TextContent(loaded), ImageContent(thumbnail.data, thumbnail.mime_type)
            )

    async def _run_command(  # noqa: PLR0911, PLR0912
        self, session: Session, command: DirectCommand, sink: UpdateSink
    ) -> None:
        name = command.name
        if name in {"undo", "redo", "reset"}:
            await self._history(session, name, sink)
            return
        if name == "crop":
            await self._crop(session, command, sink)
            return
        if name == "wb":
            await self._white_balance(session, command, sink)
            return
        if name == "exposure":
            ev = _number(command, "ev", "Usage: :exposure --ev E")
            await self._edit(
                session, sink, command, OperationKind.EXPOSURE, {"ev": ev}
            )
            return
        if name in _AMOUNT_COMMANDS:
            amount = _number(command, "amt", f"Usage: :{name} --amt A")
            await self._edit(
                session, sink, command, _AMOUNT_COMMANDS[name], {"amt": amount}
            )
            return
        if name == "auto":
            await self._auto(session, command, sink)
            return
        if name == "hist":
            await self._histogram(session, sink)
            return
        if name == "export":
            await self._export_command(session, command, sink)
            return
        if name == "ask":
            await self._ask(session, command, sink)
            return
        if name in {"yes", "no"}:
            await self._confirm(session, name == "yes", sink)
            return
        commands = ", ".join(f":{entry}" for entry in DIRECT_COMMANDS)
        raise UserError(f"Unknown command :{name}. Available commands: {commands}")

    async def _history(self, session: Session, name: str, sink: UpdateSink) -> None:
        stack = self._stack(session)
        provider = self._provider(session)
        async with self._tool_call(session, sink, {"command": name}) as call:
            if name == "undo":
                headline = "Undid last change" if stack.undo() else "Nothing to undo"
            elif name == "redo":
                headline = "Redid last change" if stack.redo() else "Nothing to redo"
            else:
                stack.reset()
                headline = "Reset all edits"
            await self._finish_with_preview(call, provider, stack, headline)

    async def _crop(
        self, session: Session, command: DirectCommand, sink: UpdateSink
    ) -> None:
        usage = "Usage: :crop [--aspect A] [--rect x,y,w,h] [--angle D] [--new-op]"
        aspect = command.options.get("aspect")
        rect = _rect_option(command, "rect", usage)
        angle = _number(command, "angle", usage, required=False)
        if aspect is None and rect is None and angle is None:
            raise UserError(usage)
        if aspect is not None:
            aspect = ASPECT_KEYWORDS.get(str(aspect).lower(), str(aspect))
            if parse_aspect(aspect) is None:
                raise UserError(f"Unknown aspect {aspect}. Use W:H or square, wide, ...")
        stack = self._stack(session)
        provider = self._provider(session)
        force_new = bool(command.options.get("new-op"))
        params = {} if force_new else _tail_crop_params(stack)
        async with self._tool_call(session, sink, _raw_input(command)) as call:
            if rect is None and aspect is not None:
                rect = await self._aspect_rect(session, provider, str(aspect))
            overrides = {"rect_norm": rect, "angle_deg": angle, "aspect": aspect}
            params.update(
                {key: value for key, value in overrides.items() if value is not None}
            )
            stack.add_operation(OperationKind.CROP, params, force_new=force_new)
            await self._finish_with_preview(
                call, provider, stack, stack.last_op_summary()
            )

    async def _white_balance(
        self, session: Session, command: DirectCommand, sink: UpdateSink
    ) -> None:
        usage = "Usage: :wb --temp T [--tint N] | --gray x,y [--new-op]"
        gray = command.options.get("gray")
        stack = self._stack(session)
        headline_note = ""
        if gray is not None:
            point = _floats(str(gray), 2, usage)
            mapped = map_point(point[0], point[1], stack.ops)
            if mapped.was_clamped:
                headline_note = " (pick was outside the image and was clamped)"
            params: dict[str, object] = {
                "method": "gray_point",
                "x": mapped.x,
                "y": mapped.y,
            }
        else:
            temp = _number(command, "temp", usage)
            tint = _number(command, "tint", usage, required=False) or 0.0
            params = {"method": "temp_tint", "temp": temp, "tint": tint}
        provider = self._provider(session)
        async with self._tool_call(session, sink, _raw_input(command)) as call:
            stack.add_operation(
                OperationKind.WHITE_BALANCE,
                params,
                force_new=bool(command.options.get("new-op")),
            )
            await self._finish_with_preview(
                call, provider, stack, stack.last_op_summary() + headline_note
            )

    async def _edit(  # noqa: PLR0913
        self,
        session: Session,
        sink: UpdateSink,
        command: DirectCommand,
        kind: OperationKind,
        params: dict[str, object],
    ) -> None:
        stack = self._stack(session)
        provider = self._provider(session)
        async with self._tool_call(session, sink, _raw_input(command)) as call:
            stack.add_operation(
                kind, params, force_new=bool(command.options.get("new-op"))
            )
            await self._finish_with_preview(
                call, provider, stack, stack.last_op_summary()
            )

    async def _auto(
        self, session: Session, command: DirectCommand, sink: UpdateSink
    ) -> None:
        mode = command.arguments[0].lower() if command.arguments else "all"
        if mode not in AUTO_MODES or len(command.arguments) > 1:
            raise UserError("Usage: :auto [" + "|".join(AUTO_MODES) + "]")
        stack = self._stack(session)
        provider = self._provider(session)
        async with self._tool_call(
            session, sink, {"command": "auto", "mode": mode}
        ) as call:
            stats = await provider.compute_image_stats(stack.base_uri)
            _check_cancelled(session)
            deltas = auto_deltas(stats, mode)
            if is_negligible(deltas):
                lines = ["Image already looks balanced, nothing to adjust"]
            else:
                lines = await self._apply_calls(
                    session, provider, deltas_to_calls(deltas), False
                )
            await self._finish_with_preview(call, provider, stack, "\n".join(lines))

    async def _histogram(self, session: Session, sink: UpdateSink) -> None:
        stack = self._stack(session)
        provider = self._provider(session)
        async with self._tool_call(session, sink, {"command": "hist"}) as call:
            histogram = await provider.compute_histogram(
                stack.base_uri, stack.snapshot(), HISTOGRAM_BINS
            )
            call.finish_with(TextContent(format_histogram(histogram)))

    async def _export_command(
        self, session: Session, command: DirectCommand, sink: UpdateSink
    ) -> None:
        args: dict[str, object] = {"overwrite": bool(command.options.get("overwrite"))}
        for key in ("dst", "format"):
            if key in command.options:
                args[key] = command.options[key]
        if "quality" in command.options:
            args["quality"] = _number(command, "quality", "Usage: :export --quality Q")
        if args.get("format") not in {None, "jpeg", "jpg", "png"}:
            raise UserError("Usage: :export [--format jpeg|png]")
        provider = self._provider(session)
        self._stack(session)
        async with self._tool_call(session, sink, _raw_input(command)) as call:
            call.finish_with(TextContent(await self._export(session, provider, args)))

    async def _ask(
        self, session: Session, command: DirectCommand, sink: UpdateSink
    ) -> None:
        text = " ".join(command.arguments).strip()
        if not text:
            raise UserError("Usage: :ask [--with-image] [--ref URI] TEXT")
        reference = command.options.get("ref")
        await self._plan(
            session,
            text,
            sink,
            with_image=bool(command.options.get("with-image")),
            reference_uri=str(reference) if reference else None,
        )

    async def _confirm(self, session: Session, accepted: bool, sink: UpdateSink) -> None:
        pending = session.pending_plan
        if pending is None:
            raise UserError("There is no plan waiting for confirmation.")
        session.pending_plan = None
        if not accepted:
            await sink.agent_message(TextContent("Discarded the pending plan."))
            return
        stack = self._stack(session)
        provider = self._provider(session)
        raw_input = {"calls": [planned.to_payload() for planned in pending.calls]}
        async with self._tool_call(session, sink, raw_input) as call:
            lines = await self._apply_calls(
                session, provider, pending.calls, pending.preview_coordinates
            )
            await self._finish_with_preview(
                call, provider, stack, "\n".join([*lines, *pending.notes])
            )

    async def _plan(  # noqa: PLR0913
        self,
        session: Session,
        text: str,
        sink: UpdateSink,
        with_image: bool = False,
        reference_uri: str | None = None,
    ) -> None:
        stack = self._stack(session)
        provider = self._provider(session)
        session.pending_plan = None
        raw_input = {"tool": "planner", "text": text}
        async with self._tool_call(session, sink, raw_input) as call:
            preview = None
            if with_image:
                rendered = await self.previews.render(
                    provider, stack, self.preview_max_pixels
                )
                preview = rendered.data
            deltas = None
            if reference_uri is not None:
                target = await provider.compute_image_stats(stack.base_uri)
                reference = await provider.compute_image_stats(
                    _resolve(reference_uri, session.cwd)
                )
                deltas = compute_deltas(target, reference)
                await call.progress(TextContent(format_deltas(deltas)))
            state = PlannerState(
                image_name=session.image_name or Path(stack.base_uri).name,
                image=session.metadata,
                stack_summary=stack.stack_summary(),
                suggested_deltas=deltas,
            )
            output = await session.planner.plan(
                text, state, preview, should_stop=lambda: session.cancelled
            )
            _check_cancelled(session)

            review = review_calls(output.calls, session.max_calls or self.max_calls)
            notes = list(dict.fromkeys([*output.notes, *review.notes]))
            if output.clarification is not None:
                session.pending_plan = PendingPlan(
                    calls=review.calls,
                    notes=notes,
                    preview_coordinates=with_image,
                )
                options = "\n".join(
                    f"{index}. {option}"
                    for index, option in enumerate(output.clarification.options, 1)
                )
                question = (
                    f"{output.clarification.question}\n{options}\n"
                    "Reply :yes to apply my best guess, :no to discard it, "
                    "or describe the look you want."
                )
                await sink.agent_message(TextContent(question))
                call.finish_with(TextContent(question))
                return

            lines = await self._apply_calls(session, provider, review.calls, with_image)
            if not lines:
                lines = ["No edits recognized"]
            lines.append(f"Confidence: {output.confidence:.2f}")
            await self._finish_with_preview(
                call, provider, stack, "\n".join([*lines, *notes])
            )
            await sink.agent_message(TextContent("\n".join([*lines, *notes])))

    async def _apply_calls(  # noqa: PLR0912
        self,
        session: Session,
        provider: ToolProvider,
        calls: Sequence[PlannedCall],
        preview_coordinates: bool,
    ) -> list[str]:
        """Apply validated calls in order and describe each one."""
        _check_cancelled(session)
        stack = self._stack(session)
        preview_ops = stack.ops
        lines: list[str] = []
        for planned in calls:
            fn, args = planned.fn, planned.args
            if fn == "set_white_balance_temp_tint":
                stack.add_operation(
                    OperationKind.WHITE_BALANCE,
                    {"method": "temp_tint", "temp": args["temp"], "tint": args["tint"]},
                )
            elif fn == "set_white_balance_gray":
                x, y = args["x"], args["y"]
                if preview_coordinates:
                    mapped = map_point(x, y, preview_ops)
                    x, y = mapped.x, mapped.y
                stack.add_operation(
                    OperationKind.WHITE_BALANCE, {"method": "gray_point", "x": x, "y": y}
                )
            elif fn == "set_exposure":
                stack.add_operation(OperationKind.EXPOSURE, {"ev": args["ev"]})
            elif fn in _AMOUNT_FUNCTIONS:
                stack.add_operation(_AMOUNT_FUNCTIONS[fn], {"amt": args["amt"]})
            elif fn == "set_crop":
                await self._apply_crop(
                    session, provider, args, preview_ops, preview_coordinates
                )
            elif fn == "set_rotate":
                _apply_rotate(stack, args["angleDeg"])
            elif fn == "undo":
                if not stack.undo():
                    lines.append("Nothing to undo")
                    continue
            elif fn == "redo":
                if not stack.redo():
                    lines.append("Nothing to redo")
                    continue
            elif fn == "reset":
                stack.reset()
            elif fn == "export_image":
                lines.append(await self._export(session, provider, args))
                continue
            if fn.startswith("set_"):
                lines.append(f"Applied {fn}: {stack.last_op_summary()}")
            else:
                lines.append(f"Applied {fn}")
        return lines

    async def _apply_crop(
        self,
        session: Session,
        provider: ToolProvider,
        args: dict[str, object],
        preview_ops: tuple[Operation, ...],
        preview_coordinates: bool,
    ) -> None:
        stack = self._stack(session)
        params = _tail_crop_params(stack)
        rect = args.get("rectNorm")
        if rect is not None:
            rect = tuple(rect)
            if preview_coordinates:
                rect, _ = map_rect(rect, preview_ops)
            params["rect_norm"] = rect
        aspect = args.get("aspect")
        if aspect is not None:
            params["aspect"] = aspect
            if rect is None:
                params["rect_norm"] = await self._aspect_rect(
                    session, provider, str(aspect)
                )
        if args.get("angleDeg") is not None:
            params["angle_deg"] = args["angleDeg"]
        stack.add_operation(OperationKind.CROP, params)

    async def _export(
        self, session: Session, provider: ToolProvider, args: dict[str, object]
    ) -> str:
        stack = self._stack(session)
        dst = args.get("dst")
        if dst:
            destination = _resolve(str(dst), session.cwd)
        else:
            extension = "png" if args.get("format") == "png" else "jpg"
            stem = Path(session.image_name or Path(stack.base_uri).name).stem
            destination = str(Path(session.cwd) / f"{stem}_edited.{extension}")
        image_format = args.get("format")
        if image_format in {None, "jpg"}:
            image_format = "png" if destination.lower().endswith(".png") else "jpeg"
        result = await provider.export_image(
            stack.base_uri,
            stack.snapshot(),
            destination,
            str(image_format),
            int(args.get("quality") or self.export_quality),
            bool(args.get("overwrite", False)),
        )
        _logger.info("Export finished: session=%s path=%s", session.id, result.path)
        return f"Exported to {result.path}"

    async def _aspect_rect(
        self, session: Session, provider: ToolProvider, aspect: str
    ) -> Rect:
        metadata = session.metadata
        if metadata is None:
            raise UserError("Image size is unknown. Load the image again.")
        return await provider.compute_aspect_rect(metadata.width, metadata.height, aspect)

    async def _finish_with_preview(
        self, call: _ToolCall, provider: ToolProvider, stack: EditStack, headline: str
    ) -> None:
        preview = await self.previews.render(provider, stack, self.preview_max_pixels)
        call.finish_with(
            TextContent(f"{headline}\nStack: {stack.stack_summary()}"),
            ImageContent(preview.data, preview.mime_type),
        )

    @asynccontextmanager
    async def _tool_call(
        self, session: Session, sink: UpdateSink, raw_input: dict[str, object]
    ) -> AsyncIterator[_ToolCall]:
        """Wrap one unit of work in an in_progress → completed/failed lifecycle."""
        call = _ToolCall(session.next_tool_call_id(), sink)
        await sink.tool_call_update(call.id, "in_progress", raw_input=raw_input)
        try:
            yield call
        except Exception as exc:
            message = "Cancelled" if isinstance(exc, PromptCancelled) else str(exc)
            await sink.tool_call_update(call.id, "failed", content=[TextContent(message)])
            raise
        await sink.tool_call_update(call.id, "completed", content=call.content or None)

    def _stack(self, session: Session) -> EditStack:
        if session.stack is None:
            raise UserError("No image loaded. Attach an image first.")
        return session.stack

    def _provider(self, session: Session) -> ToolProvider:
        provider = self.tool_providers.lookup(session.id)
        if provider is None:
            raise UserError("No tool provider is configured for this session.")
        return provider


def _tail_crop_params(stack: EditStack) -> dict[str, object]:
    """Fields of the tail crop, so amending it keeps what is not overridden."""
    tail = stack.last_crop()
    if not isinstance(tail, CropOp):
        return {}
    params = {
        "rect_norm": tail.rect_norm,
        "angle_deg": tail.angle_deg,
        "aspect": tail.aspect,
    }
    return {key: value for key, value in params.items() if value is not None}


def _apply_rotate(stack: EditStack, angle: float) -> None:
    """Set the rotation on the tail crop, keeping its window."""
    params = _tail_crop_params(stack)
    params["angle_deg"] = angle
    stack.add_operation(OperationKind.CROP, params)


def _check_cancelled(session: Session) -> None:
    if session.cancelled:
        raise PromptCancelled


def _resolve(uri: str, cwd: str) -> str:
    """Resolve plain relative paths against the session directory."""
    if "://" in uri:
        return uri
    path = Path(uri).expanduser()
    if not path.is_absolute():
        path = Path(cwd) / path
    return str(path)


def _raw_input(command: DirectCommand) -> dict[str, object]:
    return {"command": command.name, **command.options}


def _number(
    command: DirectCommand, key: str, usage: str, required: bool = True
) -> float | None:
    value = command.options.get(key)
    if value is None:
        if required:
            raise UserError(usage)
        return None
    try:
        number = float(str(value))
    except ValueError:
        raise UserError(f"--{key} expects a number, got {value}") from None
    if not math.isfinite(number):
        raise UserError(f"--{key} expects a finite number, got {value}")
    return number


def _floats(value: str, count: int, usage: str) -> list[float]:
    parts = value.split(",")
    if len(parts) != count:
        raise UserError(usage)
    try:
        numbers = [float(part) for part in parts]
    except ValueError:
        raise UserError(usage) from None
    if not all(math.isfinite(number) for number in numbers):
        raise UserError(usage)
    return numbers


def _rect_option(command: DirectCommand, key: str, usage: str) -> Rect | None:
    value = command.options.get(key)
    if value is None:
        return None
    x, y, w, h = _floats(str(value), 4, usage)
    return (x, y, w, h)
