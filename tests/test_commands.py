"""Tests for prompt routing through the command router."""

import asyncio
import json
from dataclasses import dataclass

import pytest

from photo_agent.domain.content import ResourceLink, TextContent
from photo_agent.domain.operations import CropOp, WhiteBalanceOp
from photo_agent.domain.planning import PlannedCall, PlannerOutput, PlannerState
from photo_agent.services.commands import CommandRouter, UserError, parse_command
from photo_agent.services.llm_planner import LlmPlanner
from photo_agent.services.planner import RuleBasedPlanner
from photo_agent.services.sessions import Session
from tests.conftest import FakeLlmClient, RecordingSink, make_stats


def _run(
    router: CommandRouter, session: Session, sink: RecordingSink, *blocks: object
) -> None:
    asyncio.run(router.handle(session, list(blocks), sink))


def _load(router: CommandRouter, session: Session, sink: RecordingSink) -> None:
    _run(router, session, sink, ResourceLink(uri="photo.jpg"))


def _final_text(sink: RecordingSink) -> str:
    completed = [u for u in sink.updates if u["status"] in {"completed", "failed"}]
    return completed[-1]["content"][0].text


@dataclass
class _CancellingPlanner:
    """Planner whose client cancels the prompt while it is thinking."""

    session: Session

    async def plan(
        self,
        text: str,
        state: PlannerState | None = None,
        preview_image: bytes | None = None,
        should_stop: object = None,
    ) -> PlannerOutput:
        self.session.cancelled = True
        return PlannerOutput(calls=[PlannedCall(fn="set_exposure", args={"ev": 1})])


def test_parse_command() -> None:
    command = parse_command(":crop --aspect 16:9 --new-op extra")

    assert command.name == "crop"
    assert command.options == {"aspect": "16:9", "new-op": True}
    assert command.arguments == ["extra"]

    with pytest.raises(UserError):
        parse_command(":wb --temp")


def test_load_image_lifecycle(router, session, sink, tool_provider) -> None:
    _load(router, session, sink)

    assert sink.statuses("call_001") == ["in_progress", "in_progress", "completed"]
    assert sink.updates[0]["raw_input"] == {
        "tool": "read_image_metadata",
        "uri": "/work/photo.jpg",
    }
    assert "Loaded photo.jpg: 4000×3000 image/jpeg" in sink.update_texts()
    assert sink.images()[0].mime_type == "image/jpeg"
    assert session.stack is not None
    assert session.stack.base_uri == "/work/photo.jpg"
    assert session.metadata is not None
    assert tool_provider.count("render_thumbnail") == 1


def test_loading_again_starts_fresh_stack(router, session, sink) -> None:
    _load(router, session, sink)
    _run(router, session, sink, TextContent(":exposure --ev 1"))

    _run(router, session, sink, ResourceLink(uri="file:///pics/other.jpg"))

    assert session.image_uri == "file:///pics/other.jpg"
    assert session.image_name == "other.jpg"
    assert session.stack.ops == ()


def test_direct_commands_amend_tail(router, session, sink) -> None:
    _load(router, session, sink)

    _run(router, session, sink, TextContent(":exposure --ev 0.5"))
    _run(router, session, sink, TextContent(":exposure --ev 1"))

    assert len(session.stack) == 1
    assert session.stack.ops[0].ev == 1.0
    assert _final_text(sink) == "exposure EV +1.00\nStack: EV +1.00"

    _run(router, session, sink, TextContent(":exposure --ev 0.2 --new-op"))
    assert len(session.stack) == 2


def test_history_commands(router, session, sink) -> None:
    _load(router, session, sink)

    _run(router, session, sink, TextContent(":undo"))
    assert _final_text(sink) == "Nothing to undo\nStack: No operations"

    _run(router, session, sink, TextContent(":contrast --amt 20"))
    _run(router, session, sink, TextContent(":undo"))
    assert session.stack.ops == ()
    _run(router, session, sink, TextContent(":redo"))
    assert session.stack.ops[0].amt == 20
    _run(router, session, sink, TextContent(":reset"))
    assert session.stack.ops == ()


def test_commands_without_image(router, session, sink) -> None:
    _run(router, session, sink, TextContent(":exposure --ev 1"))

    assert sink.texts() == ["No image loaded. Attach an image first."]
    assert sink.updates == []


def test_unknown_command_and_empty_prompt(router, session, sink) -> None:
    _run(router, session, sink, TextContent(":blur --amt 3"))
    _run(router, session, sink)

    assert sink.texts()[0].startswith("Unknown command :blur. Available commands:")
    assert sink.texts()[1] == "Nothing to do. Attach an image or describe an edit."


def test_bad_number_is_reported(router, session, sink) -> None:
    _load(router, session, sink)

    _run(router, session, sink, TextContent(":exposure --ev lots"))

    assert sink.texts() == ["--ev expects a number, got lots"]


def test_crop_by_aspect_then_angle_keeps_window(router, session, sink) -> None:
    _load(router, session, sink)

    _run(router, session, sink, TextContent(":crop --aspect square"))
    _run(router, session, sink, TextContent(":crop --angle 2"))

    assert len(session.stack) == 1
    crop = session.stack.ops[0]
    assert isinstance(crop, CropOp)
    assert crop.aspect == "1:1"
    assert crop.rect_norm == pytest.approx((0.125, 0.0, 0.75, 1.0))
    assert crop.angle_deg == 2


def test_unknown_aspect_rejected(router, session, sink) -> None:
    _load(router, session, sink)

    _run(router, session, sink, TextContent(":crop --aspect golden"))

    assert sink.texts()[0].startswith("Unknown aspect golden")


def test_gray_pick_maps_through_crop(router, session, sink) -> None:
    _load(router, session, sink)
    _run(router, session, sink, TextContent(":crop --rect 0.25,0.25,0.5,0.5"))

    _run(router, session, sink, TextContent(":wb --gray 0,0"))

    wb = session.stack.ops[-1]
    assert isinstance(wb, WhiteBalanceOp)
    assert (wb.x, wb.y) == (0.25, 0.25)


def test_temp_without_tint_defaults_to_zero(router, session, sink) -> None:
    _load(router, session, sink)

    _run(router, session, sink, TextContent(":wb --temp 30"))

    wb = session.stack.ops[0]
    assert (wb.temp, wb.tint) == (30, 0)


def test_free_text_is_planned_and_applied(router, session, sink) -> None:
    _load(router, session, sink)

    _run(router, session, sink, TextContent("warmer, contrast 10"))

    assert [op.op for op in session.stack.ops] == ["white_balance", "contrast"]
    message = sink.texts()[-1]
    assert "Applied set_white_balance_temp_tint: white_balance temp 20" in message
    assert "Confidence: 0.95" in message
    planner_call = sink.tool_call_ids()[-1]
    assert sink.statuses(planner_call) == ["in_progress", "completed"]
    assert sink.images()[-1].mime_type == "image/png"


def test_session_max_calls_truncates(router, session, sink) -> None:
    session.max_calls = 1
    _load(router, session, sink)

    _run(router, session, sink, TextContent("warmer, contrast 10"))

    assert len(session.stack) == 1
    assert "Truncated to 1 calls (from 2)" in sink.texts()[-1]


def test_rotate_from_planner_keeps_crop_window(router, session, sink) -> None:
    reply = json.dumps({"calls": [{"fn": "set_rotate", "args": {"angleDeg": 3}}]})
    session.planner = LlmPlanner(client=FakeLlmClient(replies=[reply]), model="m")
    _load(router, session, sink)
    _run(router, session, sink, TextContent(":crop --rect 0.1,0.1,0.8,0.8"))

    _run(router, session, sink, TextContent("straighten it a little"))

    assert len(session.stack) == 1
    crop = session.stack.ops[0]
    assert crop.rect_norm == pytest.approx((0.1, 0.1, 0.8, 0.8))
    assert crop.angle_deg == 3


def test_clarification_waits_for_confirmation(router, session, sink) -> None:
    _load(router, session, sink)

    _run(router, session, sink, TextContent("make it pop and warmer"))

    assert session.stack.ops == ()
    assert session.pending_plan is not None
    assert "Reply :yes" in sink.texts()[-1]
    assert "1. High contrast with deep shadows" in sink.texts()[-1]

    _run(router, session, sink, TextContent(":yes"))

    assert session.pending_plan is None
    assert [op.op for op in session.stack.ops] == ["white_balance"]


def test_clarification_can_be_discarded(router, session, sink) -> None:
    _load(router, session, sink)
    _run(router, session, sink, TextContent("pop warmer"))

    _run(router, session, sink, TextContent(":no"))
    _run(router, session, sink, TextContent(":yes"))

    assert session.stack.ops == ()
    assert sink.texts()[-2:] == [
        "Discarded the pending plan.",
        "There is no plan waiting for confirmation.",
    ]


def test_cancellation_fails_current_unit(router, session, sink) -> None:
    _load(router, session, sink)
    session.planner = _CancellingPlanner(session)

    _run(router, session, sink, TextContent("brighter"))

    planner_call = sink.tool_call_ids()[-1]
    assert sink.statuses(planner_call) == ["in_progress", "failed"]
    assert _final_text(sink) == "Cancelled"
    assert session.stack.ops == ()
    assert sink.texts() == []


def test_tool_provider_failure_is_reported(
    router, session, sink, tool_provider
) -> None:
    _load(router, session, sink)
    tool_provider.fail_on.add("render_preview")

    _run(router, session, sink, TextContent(":exposure --ev 1"))

    assert sink.statuses(sink.tool_call_ids()[-1]) == ["in_progress", "failed"]
    assert _final_text(sink) == "render_preview exploded"
    assert sink.texts() == ["Tool provider error: render_preview exploded"]


def test_session_without_provider(router, sink) -> None:
    lonely = Session(id="sess_lonely", cwd="/work", planner=RuleBasedPlanner())

    _run(router, lonely, sink, ResourceLink(uri="photo.jpg"))

    assert sink.texts() == ["No tool provider is configured for this session."]


def test_export_defaults(router, session, sink, tool_provider) -> None:
    _load(router, session, sink)

    _run(router, session, sink, TextContent(":export"))
    _run(router, session, sink, TextContent(":export --dst out/final.png --overwrite"))

    assert tool_provider.exports[0]["dst"] == "/work/photo_edited.jpg"
    assert tool_provider.exports[0]["format"] == "jpeg"
    assert tool_provider.exports[0]["quality"] == 90
    assert tool_provider.exports[0]["overwrite"] is False
    assert tool_provider.exports[1]["dst"] == "/work/out/final.png"
    assert tool_provider.exports[1]["format"] == "png"
    assert tool_provider.exports[1]["overwrite"] is True
    assert _final_text(sink) == "Exported to /work/out/final.png"


def test_vision_points_map_from_preview(router, session, sink) -> None:
    reply = json.dumps(
        {"calls": [{"fn": "set_white_balance_gray", "args": {"x": 0, "y": 0}}]}
    )
    client = FakeLlmClient(replies=[reply])
    session.planner = LlmPlanner(client=client, model="m")
    _load(router, session, sink)
    _run(router, session, sink, TextContent(":crop --rect 0.25,0.25,0.5,0.5"))

    _run(router, session, sink, TextContent(":ask --with-image fix the cast"))

    assert client.requests[0]["image_data_url"].startswith("data:image/png;base64,")
    assert "fix the cast" in client.requests[0]["user_prompt"]
    wb = session.stack.ops[-1]
    assert (wb.x, wb.y) == (0.25, 0.25)


def test_reference_match_seeds_plan(router, session, sink, tool_provider) -> None:
    tool_provider.stats["/work/ref.jpg"] = make_stats(a_mean=10)
    _load(router, session, sink)

    _run(router, session, sink, TextContent(":ask --ref ref.jpg match it"))

    assert tool_provider.count("compute_image_stats") == 2
    assert "Computed deltas: WB Temp: +20.0" in sink.update_texts()
    wb = session.stack.ops[0]
    assert wb.temp == 20


def test_planner_receives_state(router, session, sink) -> None:
    seen: list[PlannerState] = []

    class _Spy(RuleBasedPlanner):
        def plan_text(
            self, text: str, state: PlannerState | None = None
        ) -> PlannerOutput:
            seen.append(state)
            return super().plan_text(text, state)

    session.planner = _Spy()
    _load(router, session, sink)
    _run(router, session, sink, TextContent(":contrast --amt 10"))

    _run(router, session, sink, TextContent("warmer"))

    assert seen[0].image_name == "photo.jpg"
    assert seen[0].image.width == 4000
    assert seen[0].stack_summary == "Contrast +10"


def test_auto_white_balance_neutralizes_cast(
    router, session, sink, tool_provider
) -> None:
    tool_provider.stats["/work/photo.jpg"] = make_stats(a_mean=6, b_mean=-4, p50=38)
    _load(router, session, sink)

    _run(router, session, sink, TextContent(":auto wb"))

    ops = session.stack.ops
    assert len(ops) == 1
    assert isinstance(ops[0], WhiteBalanceOp)
    assert (ops[0].temp, ops[0].tint) == (-12, 8)
    assert _final_text(sink).endswith("Stack: WB(temp -12 tint 8)")


def test_auto_all_applies_color_then_tone(router, session, sink, tool_provider) -> None:
    tool_provider.stats["/work/photo.jpg"] = make_stats(a_mean=6, b_mean=-4, p50=38)
    _load(router, session, sink)

    _run(router, session, sink, TextContent(":auto"))

    ops = session.stack.ops
    assert [op.op for op in ops] == ["white_balance", "exposure", "contrast"]
    assert ops[1].ev == pytest.approx(1.0)
    assert ops[2].amt == 20
    assert sink.updates[-2]["raw_input"] == {"command": "auto", "mode": "all"}


def test_auto_exposure_is_limited(router, session, sink, tool_provider) -> None:
    tool_provider.stats["/work/photo.jpg"] = make_stats(p50=10)
    _load(router, session, sink)

    _run(router, session, sink, TextContent(":auto exposure"))

    assert [op.op for op in session.stack.ops] == ["exposure"]
    assert session.stack.ops[0].ev == 1.5


def test_auto_on_balanced_image_changes_nothing(
    router, session, sink, tool_provider
) -> None:
    tool_provider.stats["/work/photo.jpg"] = make_stats(a_mean=1, b_mean=-1)
    _load(router, session, sink)

    _run(router, session, sink, TextContent(":auto wb"))

    assert session.stack.ops == ()
    assert _final_text(sink).startswith("Image already looks balanced")


def test_auto_rejects_unknown_mode(router, session, sink) -> None:
    _load(router, session, sink)

    _run(router, session, sink, TextContent(":auto sharpen"))

    assert sink.texts()[-1] == "Usage: :auto [wb|exposure|contrast|all]"
    assert session.stack.ops == ()


def test_hist_reports_edited_histogram(router, session, sink, tool_provider) -> None:
    _load(router, session, sink)
    _run(router, session, sink, TextContent(":exposure --ev 0.5"))

    _run(router, session, sink, TextContent(":hist"))

    text = _final_text(sink)
    assert text.startswith("Histogram:\n  Luma:  ")
    assert "Clipping: shadows 0.4%, highlights 2.5%" in text
    assert text.endswith("Note: highlights are blown")
    snapshot = tool_provider.calls[-1][1]
    assert [op.op for op in snapshot.ops] == ["exposure"]
