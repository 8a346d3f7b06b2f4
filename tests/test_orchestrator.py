"""Tests for the streaming orchestrator state machine."""

import asyncio

import pytest
from sqlalchemy import func, select

from playground.errors import AlreadyGeneratingError, LLMError
from playground.jobs import GenerationState
from playground.models import Report, ReportSection, Thread, ThreadMessage, UsageOperation
from playground.services import orchestrator as orchestrator_module
from playground.services.orchestrator import GenerationRequest, StreamingOrchestrator
from playground.services.prompts import REPORT_SYSTEM_PROMPT
from playground.settings.config import settings
from playground.sse import CompleteEvent, ContentEvent, ErrorEvent, MetadataEvent, UsageEvent

from tests.fakes.llm import REPORT_HTML, ScriptedGenerator, fenced

NEW_TREND = '<div data-section-id="section_chart_1"><h3>Trend (quarterly)</h3><svg/></div>'
BALANCE = '<div data-section-id="section_table_2"><h3>Balance sheet</h3><table><tr><td>1</td></tr></table></div>'


def _generation(thread, content="Q3 revenue review", **kw) -> GenerationRequest:
    return GenerationRequest(
        operation="generation", content=content, user_email="analyst@example.com", thread_id=thread.id, **kw
    )


async def _run(orch, req, owner_id=None):
    gen = orch.start(req, owner_id=owner_id)
    events = [e async for e in orch.run(gen, req)]
    return gen, events


async def _count(session_maker, model) -> int:
    async with session_maker() as db:
        return (await db.execute(select(func.count()).select_from(model))).scalar_one()


async def _generated_report(orchestrator, thread) -> dict:
    _, events = await _run(orchestrator, _generation(thread))
    return events[-1].report


class TestGeneration:
    async def test_stream_settles_into_a_report(self, orchestrator, fake_llm, registry, session_maker, thread):
        gen, events = await _run(orchestrator, _generation(thread))

        assert isinstance(events[0], MetadataEvent)
        assert events[0].metadata == {"generationId": gen.id, "mode": "preview", "operation": "generation"}
        assert isinstance(events[-2], UsageEvent)
        assert events[-2] == UsageEvent(120, 480)
        complete = events[-1]
        assert isinstance(complete, CompleteEvent)
        assert "".join(e.content for e in events if isinstance(e, ContentEvent)) == "".join(fake_llm.chunks)

        report = complete.report
        assert [(s["type"], s["title"], s["order"]) for s in report["sections"]] == [
            ("metric", "Revenue", 0),
            ("chart", "Trend", 1),
            ("text", "Outlook", 2),
        ]
        assert report["htmlContent"] == REPORT_HTML
        assert report["insights"][0]["severity"] == "warning"
        assert report["metadata"]["generatedBy"] == "analyst@example.com"
        assert report["metadata"]["prompt"] == "Q3 revenue review"
        assert complete.usage["totalTokens"] == 600
        assert [op["type"] for op in complete.usage["operations"]] == ["generation"]

        assert gen.state == GenerationState.settled
        assert registry.get(gen.id) is None
        assert fake_llm.closed

    async def test_conversation_is_persisted(self, orchestrator, session_maker, thread):
        report = await _generated_report(orchestrator, thread)
        async with session_maker() as db:
            t = await db.get(Thread, thread.id)
            assert t.title == "Q3 revenue review"
            assert t.current_report_id == report["id"]
            assert [m.role for m in t.messages] == ["user", "assistant"]
            assert t.messages[0].content == "Q3 revenue review"
            assert "3 sections with 1 key insights" in t.messages[1].content
            assert t.messages[1].report_id == report["id"]

    async def test_model_gets_history_and_system_prompt(self, orchestrator, fake_llm, session_maker, thread):
        first = await _generated_report(orchestrator, thread)
        second = await _generated_report(orchestrator, thread)

        call = fake_llm.calls[1]
        assert call["system_prompt"] == REPORT_SYSTEM_PROMPT
        assert call["max_tokens"] == settings.DEFAULT_MAX_TOKENS
        assert [m["role"] for m in call["messages"]] == ["user", "assistant", "user"]
        async with session_maker() as db:
            t = await db.get(Thread, thread.id)
            assert t.current_report_id == second["id"] != first["id"]
        assert await _count(session_maker, Report) == 2

    async def test_standard_mode_sends_no_content(self, orchestrator, thread):
        _, events = await _run(orchestrator, _generation(thread, mode="standard"))
        assert [type(e) for e in events] == [MetadataEvent, UsageEvent, CompleteEvent]

    async def test_missing_usage_is_recorded_as_zero(self, session_maker, registry, thread):
        orch = StreamingOrchestrator(session_maker, ScriptedGenerator(fenced(REPORT_HTML), usage=None), registry)
        _, events = await _run(orch, _generation(thread))
        usage = events[-1].usage
        assert usage["totalTokens"] == 0
        assert len(usage["operations"]) == 1

    async def test_unsectioned_output_falls_back_to_whole_document(self, session_maker, registry, thread):
        orch = StreamingOrchestrator(session_maker, ScriptedGenerator(["<h2>Plain</h2>", "<p>text</p>"]), registry)
        _, events = await _run(orch, _generation(thread))
        report = events[-1].report
        assert report["sections"] == []
        assert report["htmlContent"] == "<h2>Plain</h2><p>text</p>"

    async def test_enhance_sends_current_document(self, orchestrator, fake_llm, thread):
        req = GenerationRequest(
            operation="enhance",
            content="Add a cash flow view",
            user_email="analyst@example.com",
            thread_id=thread.id,
            current_html="<div>old report</div>",
        )
        _, events = await _run(orchestrator, req)
        assert isinstance(events[-1], CompleteEvent)
        prompt = fake_llm.calls[0]["messages"][-1]["content"]
        assert "<div>old report</div>" in prompt
        assert "Add a cash flow view" in prompt
        assert [op["type"] for op in events[-1].usage["operations"]] == ["edit"]


class TestConcurrency:
    async def test_second_generation_for_same_thread_is_rejected(self, orchestrator, thread):
        req = _generation(thread)
        gen = orchestrator.start(req)
        with pytest.raises(AlreadyGeneratingError):
            orchestrator.start(_generation(thread))
        events = [e async for e in orchestrator.run(gen, req)]
        assert isinstance(events[-1], CompleteEvent)
        # slot is free again once settled
        orchestrator.release(orchestrator.start(_generation(thread)).id)

    async def test_section_operations_share_the_report_slot(self, orchestrator, thread):
        report = await _generated_report(orchestrator, thread)
        sid = report["sections"][0]["id"]
        edit = GenerationRequest(
            operation="edit", content="x", user_email="a@example.com", report_id=report["id"], section_id=sid,
        )
        add = GenerationRequest(operation="section_add", content="y", user_email="a@example.com", report_id=report["id"])
        gen = orchestrator.start(edit)
        assert orchestrator.is_busy(report["id"])
        with pytest.raises(AlreadyGeneratingError):
            orchestrator.start(add)
        orchestrator.release(gen.id)
        assert not orchestrator.is_busy(report["id"])


class TestAbortAndFailure:
    async def test_cancel_mid_stream_leaves_no_trace(self, session_maker, registry, thread):
        fake = ScriptedGenerator(fenced(REPORT_HTML), pause_before=2)
        orch = StreamingOrchestrator(session_maker, fake, registry)
        req = _generation(thread)
        gen = orch.start(req)
        events = []

        async def consume():
            async for e in orch.run(gen, req):
                events.append(e)

        task = asyncio.create_task(consume())
        await asyncio.wait_for(fake.paused.wait(), timeout=2)
        assert orch.cancel(gen.id) is True
        await asyncio.wait_for(task, timeout=2)

        assert [type(e) for e in events] == [MetadataEvent, ContentEvent, ContentEvent]
        assert gen.state == GenerationState.aborted
        assert fake.closed
        assert registry.get(gen.id) is None
        for model in (Report, ReportSection, UsageOperation, ThreadMessage):
            assert await _count(session_maker, model) == 0

    async def test_closing_the_stream_aborts(self, session_maker, registry, thread):
        fake = ScriptedGenerator(fenced(REPORT_HTML))
        orch = StreamingOrchestrator(session_maker, fake, registry)
        req = _generation(thread)
        gen = orch.start(req)
        stream = orch.run(gen, req)
        assert isinstance(await stream.__anext__(), MetadataEvent)
        assert isinstance(await stream.__anext__(), ContentEvent)
        await stream.aclose()

        assert gen.state == GenerationState.aborted
        assert fake.closed
        assert registry.get(gen.id) is None
        assert await _count(session_maker, Report) == 0

    async def test_upstream_failure_emits_one_error(self, session_maker, registry, thread):
        fake = ScriptedGenerator(fenced(REPORT_HTML), error=LLMError("connection reset"))
        orch = StreamingOrchestrator(session_maker, fake, registry)
        gen, events = await _run(orch, _generation(thread))

        assert events[-1] == ErrorEvent("connection reset")
        assert sum(isinstance(e, ErrorEvent) for e in events) == 1
        assert not any(isinstance(e, CompleteEvent) for e in events)
        assert gen.state == GenerationState.failed
        assert gen.error == "connection reset"
        assert await _count(session_maker, Report) == 0
        assert await _count(session_maker, UsageOperation) == 0

    async def test_empty_output_fails(self, session_maker, registry, thread):
        orch = StreamingOrchestrator(session_maker, ScriptedGenerator(["```html\n", "```"]), registry)
        gen, events = await _run(orch, _generation(thread))
        assert isinstance(events[-1], ErrorEvent)
        assert gen.state == GenerationState.failed
        assert await _count(session_maker, Report) == 0

    async def test_unknown_thread_fails_before_streaming(self, orchestrator, fake_llm, thread):
        req = GenerationRequest(operation="generation", content="x", user_email="a@example.com", thread_id="missing")
        _, events = await _run(orchestrator, req)
        assert [type(e) for e in events] == [MetadataEvent, ErrorEvent]
        assert fake_llm.calls == []

    async def test_persistence_failure_commits_nothing(self, orchestrator, session_maker, thread, monkeypatch):
        async def broken(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(orchestrator_module, "record_operation", broken)
        gen, events = await _run(orchestrator, _generation(thread))

        assert events[-1] == ErrorEvent("disk full")
        assert gen.state == GenerationState.failed
        for model in (Report, ReportSection, ThreadMessage):
            assert await _count(session_maker, model) == 0
        async with session_maker() as db:
            assert (await db.get(Thread, thread.id)).current_report_id is None

    async def test_disconnect_during_commit_keeps_the_slot(self, orchestrator, session_maker, thread, monkeypatch):
        real_record = orchestrator_module.record_operation
        committing = asyncio.Event()
        proceed = asyncio.Event()

        async def slow_record(*args, **kwargs):
            committing.set()
            await proceed.wait()
            return await real_record(*args, **kwargs)

        monkeypatch.setattr(orchestrator_module, "record_operation", slow_record)
        req = _generation(thread)
        gen = orchestrator.start(req)

        async def consume():
            return [e async for e in orchestrator.run(gen, req)]

        consumer = asyncio.create_task(consume())
        await asyncio.wait_for(committing.wait(), timeout=2)
        consumer.cancel()
        with pytest.raises(asyncio.CancelledError):
            await consumer

        assert gen.state == GenerationState.finalizing
        assert orchestrator.registry.is_busy(req.key)
        with pytest.raises(AlreadyGeneratingError):
            orchestrator.start(_generation(thread))
        # the response's cleanup hook must not free it either
        orchestrator.release(gen.id)
        assert orchestrator.registry.is_busy(req.key)

        proceed.set()
        for _ in range(200):
            if gen.state == GenerationState.settled:
                break
            await asyncio.sleep(0.01)
        assert gen.state == GenerationState.settled
        assert not orchestrator.registry.is_busy(req.key)
        assert await _count(session_maker, Report) == 1
        orchestrator.release(orchestrator.start(_generation(thread)).id)


class TestSectionOperations:
    async def test_edit_patches_one_section(self, orchestrator, session_maker, registry, thread):
        report = await _generated_report(orchestrator, thread)
        trend = report["sections"][1]
        fake = ScriptedGenerator(fenced(NEW_TREND), usage=(50, 70))
        orch = StreamingOrchestrator(session_maker, fake, registry)
        req = GenerationRequest(
            operation="edit",
            content="Show it quarterly",
            user_email="editor@example.com",
            report_id=report["id"],
            section_id=trend["id"],
        )
        _, events = await _run(orch, req)

        complete = events[-1]
        section = complete.section
        assert section["id"] == trend["id"]
        assert section["version"] == 2
        assert section["title"] == "Trend (quarterly)"
        assert section["htmlContent"] == NEW_TREND
        assert [e["prompt"] for e in section["editHistory"]] == ["Q3 revenue review", "Show it quarterly"]
        assert [s["id"] for s in complete.report["sections"]] == [s["id"] for s in report["sections"]]
        assert [op["type"] for op in complete.usage["operations"]] == ["generation", "edit"]
        assert complete.usage["totalTokens"] == 600 + 120

        call = fake.calls[0]
        assert call["max_tokens"] == settings.SECTION_MAX_TOKENS
        assert trend["htmlContent"] in call["messages"][0]["content"]
        assert "Show it quarterly" in call["messages"][0]["content"]

    async def test_add_inserts_at_position(self, orchestrator, session_maker, registry, thread):
        report = await _generated_report(orchestrator, thread)
        fake = ScriptedGenerator(fenced(BALANCE))
        orch = StreamingOrchestrator(session_maker, fake, registry)
        req = GenerationRequest(
            operation="section_add",
            content="Add the balance sheet",
            user_email="editor@example.com",
            report_id=report["id"],
            position=1,
        )
        _, events = await _run(orch, req)

        complete = events[-1]
        assert complete.section["type"] == "table"
        assert complete.section["title"] == "Balance sheet"
        assert complete.section["order"] == 1
        assert complete.section["version"] == 1
        assert [s["title"] for s in complete.report["sections"]] == ["Revenue", "Balance sheet", "Trend", "Outlook"]
        assert [s["order"] for s in complete.report["sections"]] == [0, 1, 2, 3]
        assert complete.report["isInteractive"] is True
        assert complete.usage["operations"][-1]["type"] == "section_add"

        prompt = fake.calls[0]["messages"][0]["content"]
        assert "Existing Report Sections" in prompt
        assert "Revenue" in prompt
        assert "Add the balance sheet" in prompt

    async def test_add_without_marker_uses_request_type(self, orchestrator, session_maker, registry, thread):
        report = await _generated_report(orchestrator, thread)
        orch = StreamingOrchestrator(session_maker, ScriptedGenerator(["<p>Watch the FX exposure</p>"]), registry)
        req = GenerationRequest(
            operation="section_add",
            content="Call out FX risk",
            user_email="editor@example.com",
            report_id=report["id"],
            section_type="insight",
            position=99,
        )
        _, events = await _run(orch, req)
        section = events[-1].section
        assert section["type"] == "insight"
        assert section["title"] == "Call out FX risk"
        assert section["order"] == 3
        assert section["anchor"] is None
