"""Tests for the client-side section controller (fake API, no server)."""

import asyncio

import pytest

from playground.client.controller import NEW_SECTION_KEY, SectionController, SectionState
from playground.errors import ApiError, StreamClosedError
from playground.sse import CompleteEvent, ContentEvent, ErrorEvent, MetadataEvent, UsageEvent


def _report(*titles, rid="r1"):
    return {
        "id": rid,
        "sections": [
            {"id": f"s{i}", "title": t, "order": i, "version": 1, "htmlContent": f"<div>{t}</div>"}
            for i, t in enumerate(titles)
        ],
    }


class FakeAPI:
    """Plays back scripted stream events; ``pause_before`` holds the stream at that index."""

    def __init__(self, report):
        self.report = report
        self.events = []
        self.pause_before = None
        self.paused = asyncio.Event()
        self.resume = asyncio.Event()
        self.truncate = False
        self.cancel_result = True
        self.cancelled = []
        self.calls = []
        self.fail = None
        self.block = None

    async def _stream(self, kind, *args, **kwargs):
        self.calls.append((kind, args, kwargs))
        if self.fail is not None:
            raise self.fail
        for i, event in enumerate(self.events):
            if i == self.pause_before:
                self.paused.set()
                await self.resume.wait()
                if self.cancelled and self.cancel_result:
                    # server aborted: stream closes without a terminal frame
                    raise StreamClosedError("event stream closed before completion")
            yield event
        if self.truncate:
            raise StreamClosedError("event stream closed before completion")

    def edit_section(self, report_id, section_id, content, **kwargs):
        return self._stream("edit", report_id, section_id, content, **kwargs)

    def add_section(self, report_id, content, **kwargs):
        return self._stream("add", report_id, content, **kwargs)

    async def cancel(self, generation_id):
        self.cancelled.append(generation_id)
        self.resume.set()
        return self.cancel_result

    async def _direct(self, kind, result):
        self.calls.append((kind,))
        if self.block is not None:
            await self.block.wait()
        if self.fail is not None:
            raise self.fail
        return result

    async def duplicate_section(self, report_id, section_id):
        dup = _report("Revenue", "Revenue (Copy)", "Trend")
        return await self._direct("duplicate", dup)

    async def delete_section(self, report_id, section_id):
        remaining = {
            "id": report_id,
            "sections": [s for s in self.report["sections"] if s["id"] != section_id],
        }
        return await self._direct("delete", remaining)

    async def move_section(self, report_id, section_id, direction):
        return await self._direct("move", {"report": self.report, "moved": direction == "down"})


@pytest.fixture
def report():
    return _report("Revenue", "Trend")


@pytest.fixture
def fake(report):
    return FakeAPI(report)


@pytest.fixture
def state(report):
    return SectionState(report=report)


@pytest.fixture
def ctl(fake, state):
    return SectionController(fake, state, busy_timeout=5.0)


EDITED = {"id": "s1", "title": "Trend v2", "order": 1, "version": 2, "htmlContent": "<div>Trend v2</div>"}
USAGE = {"totalTokens": 30, "totalCost": 0.0, "operations": [{"type": "edit"}]}


def _edit_script():
    updated = _report("Revenue", "Trend v2")
    return [
        MetadataEvent({"generationId": "g1", "mode": "preview", "operation": "edit"}),
        ContentEvent("<div>Trend"),
        ContentEvent(" v2</div>"),
        UsageEvent(10, 20),
        CompleteEvent(report=updated, section=EDITED, usage=USAGE),
    ]


class TestSelection:
    def test_select_and_toggle(self, ctl, state):
        assert ctl.select("s0") is True
        assert state.selected_section_id == "s0"
        assert ctl.toggle_collapse("s0") is True
        assert state.collapsed_sections == {"s0"}
        assert ctl.toggle_collapse("s0") is False
        assert state.collapsed_sections == set()

    async def test_select_rejected_while_editing_another_section(self, ctl, fake, state):
        fake.events = _edit_script()
        fake.pause_before = 1
        task = asyncio.create_task(ctl.edit("s1", "quarterly"))
        await asyncio.wait_for(fake.paused.wait(), timeout=1)

        assert ctl.select("s0") is False
        assert ctl.select("s1") is True

        fake.resume.set()
        await task
        assert ctl.select("s0") is True


class TestStreamingEdit:
    async def test_edit_streams_preview_then_applies_complete(self, ctl, fake, state):
        fake.events = _edit_script()
        fake.pause_before = 4
        task = asyncio.create_task(ctl.edit("s1", "quarterly"))
        await asyncio.wait_for(fake.paused.wait(), timeout=1)

        assert state.editing_context.type == "edit"
        assert state.editing_context.section_id == "s1"
        assert state.section_streaming_state == {"s1": True}
        assert state.section_preview_content["s1"] == "<div>Trend v2</div>"
        assert state.live_usage == (10, 20)
        assert state.generation_id == "g1"

        fake.resume.set()
        section = await task

        assert section == EDITED
        assert state.report["sections"][1]["title"] == "Trend v2"
        assert state.usage == USAGE
        assert state.live_usage is None
        assert state.editing_context is None
        assert state.section_streaming_state == {}
        assert state.section_preview_content == {}
        assert fake.calls[0][0] == "edit"

    async def test_second_edit_is_ignored_while_one_is_open(self, ctl, fake):
        fake.events = _edit_script()
        fake.pause_before = 1
        task = asyncio.create_task(ctl.edit("s1", "a"))
        await asyncio.wait_for(fake.paused.wait(), timeout=1)
        assert await ctl.edit("s0", "b") is None
        assert await ctl.add(0, "c") is None
        fake.resume.set()
        await task
        assert len(fake.calls) == 1

    async def test_unknown_section_is_not_edited(self, ctl, fake):
        assert await ctl.edit("nope", "x") is None
        assert fake.calls == []

    async def test_error_event_leaves_report_untouched(self, ctl, fake, state, report):
        fake.events = [
            MetadataEvent({"generationId": "g1"}),
            ContentEvent("<div>half"),
            ErrorEvent("model exploded"),
        ]
        assert await ctl.edit("s1", "x") is None
        assert state.error == "model exploded"
        assert state.report is report
        assert state.editing_context is None
        assert state.section_preview_content == {}

    async def test_truncated_stream_is_an_error(self, ctl, fake, state, report):
        fake.events = [MetadataEvent({"generationId": "g1"}), ContentEvent("<div>")]
        fake.truncate = True
        assert await ctl.edit("s1", "x") is None
        assert state.error
        assert state.report is report
        assert state.section_streaming_state == {}

    async def test_rejected_request_is_an_error(self, ctl, fake, state):
        fake.fail = ApiError(409, "A generation is already in progress for this report")
        assert await ctl.edit("s1", "x") is None
        assert "409" in state.error
        assert state.editing_context is None


class TestCancel:
    async def test_cancel_mid_stream(self, ctl, fake, state, report):
        fake.events = _edit_script()
        fake.pause_before = 2
        task = asyncio.create_task(ctl.edit("s1", "quarterly"))
        await asyncio.wait_for(fake.paused.wait(), timeout=1)

        assert await ctl.cancel_edit() is True
        assert state.editing_context is None
        assert state.section_preview_content == {}
        assert state.section_streaming_state == {}

        assert await asyncio.wait_for(task, timeout=1) is None
        assert fake.cancelled == ["g1"]
        assert state.error is None
        assert state.report is report

    async def test_cancel_refused_once_finalizing(self, ctl, fake, state):
        fake.events = _edit_script()
        fake.pause_before = 4
        fake.cancel_result = False
        task = asyncio.create_task(ctl.edit("s1", "quarterly"))
        await asyncio.wait_for(fake.paused.wait(), timeout=1)

        assert await ctl.cancel_edit() is False
        assert state.editing_context is not None

        assert await task == EDITED
        assert state.report["sections"][1]["title"] == "Trend v2"

    async def test_cancel_without_open_edit(self, ctl):
        assert await ctl.cancel_edit() is False


class TestAdd:
    async def test_add_selects_the_new_section(self, ctl, fake, state):
        new = {"id": "s9", "title": "Cash", "order": 1, "version": 1, "htmlContent": "<div>Cash</div>"}
        fake.events = [
            MetadataEvent({"generationId": "g2"}),
            ContentEvent("<div>Cash"),
            CompleteEvent(report=_report("Revenue", "Cash", "Trend"), section=new, usage=USAGE),
        ]
        fake.pause_before = 2
        task = asyncio.create_task(ctl.add(1, "cash position", "metric"))
        await asyncio.wait_for(fake.paused.wait(), timeout=1)
        assert state.editing_context.type == "add"
        assert state.editing_context.position == 1
        assert state.section_preview_content[NEW_SECTION_KEY] == "<div>Cash"

        fake.resume.set()
        assert await task == new
        assert state.selected_section_id == "s9"
        assert len(state.sections) == 3
        assert fake.calls[0][2]["position"] == 1
        assert fake.calls[0][2]["type"] == "metric"


class TestDirectOperations:
    async def test_duplicate_replaces_report(self, ctl, state):
        report = await ctl.duplicate("s0")
        assert [s["title"] for s in state.sections] == ["Revenue", "Revenue (Copy)", "Trend"]
        assert report is state.report
        assert not ctl.is_busy("s0")

    async def test_busy_flag_blocks_double_submit(self, ctl, fake):
        fake.block = asyncio.Event()
        first = asyncio.create_task(ctl.duplicate("s0"))
        await asyncio.sleep(0)
        assert ctl.is_busy("s0")
        assert await ctl.duplicate("s0") is None
        fake.block.set()
        await first
        assert not ctl.is_busy("s0")
        assert [c for c in fake.calls if c == ("duplicate",)] == [("duplicate",)]

    async def test_busy_flag_times_out(self, fake, state):
        ctl = SectionController(fake, state, busy_timeout=0.01)
        fake.block = asyncio.Event()
        first = asyncio.create_task(ctl.delete("s0"))
        await asyncio.sleep(0)
        assert ctl.is_busy("s0")
        await asyncio.sleep(0.1)
        assert not ctl.is_busy("s0")
        fake.block.set()
        assert await first is True

    async def test_failed_delete_keeps_state(self, ctl, fake, state, report):
        state.selected_section_id = "s0"
        fake.fail = ApiError(500, "db down")
        assert await ctl.delete("s0") is False
        assert state.report is report
        assert state.selected_section_id == "s0"
        assert state.error == "HTTP 500: db down"
        assert not ctl.is_busy("s0")

    async def test_delete_clears_selection_and_collapse(self, ctl, state):
        state.selected_section_id = "s0"
        state.collapsed_sections.add("s0")
        assert await ctl.delete("s0") is True
        assert [s["id"] for s in state.sections] == ["s1"]
        assert state.selected_section_id is None
        assert state.collapsed_sections == set()

    async def test_move_reports_boundary_noop(self, ctl):
        assert await ctl.move_up("s0") is False
        assert await ctl.move_down("s0") is True
