# playground/services/orchestrator.py
"""
Drives one model call from request to persisted report.

    Idle -> Streaming -> Finalizing -> Settled
    Streaming -> Aborted                (cancel: nothing persisted)
    Streaming | Finalizing -> Failed    (any exception: one error event, nothing persisted)

``run`` is an async generator of StreamEvents.  It opens its own sessions
through the injected session maker: the request-scoped session is gone by the
time a StreamingResponse body is iterated.  All writes of a run happen in one
transaction at Finalizing, which is shielded from cancellation so a commit
that has started always runs to completion or failure.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from playground import llm_client
from playground.database import async_session_maker
from playground.errors import LLMError, NotFoundError
from playground.jobs import GENERATIONS, Generation, GenerationRegistry, GenerationState
from playground.models import Thread, ThreadMessage, utcnow
from playground.services import prompts
from playground.services.extract import DEFAULT_TITLE, clean_html, extract_insights, scan_sections
from playground.services.report_store import (
    build_section, create_report, find_section, get_report, insert_section, patch_section,
    serialize_report, serialize_section,
)
from playground.services.usage import get_usage, record_operation
from playground.settings.config import settings
from playground.sse import CompleteEvent, ContentEvent, ErrorEvent, MetadataEvent, StreamEvent, UsageEvent

logger = logging.getLogger(__name__)

TokenGenerator = Callable[..., AsyncIterator[str]]

OPERATIONS = ("generation", "enhance", "edit", "section_add")
# operation -> UsageOperation.type
USAGE_TYPES = {"generation": "generation", "enhance": "edit", "edit": "edit", "section_add": "section_add"}


@dataclass
class GenerationRequest:
    operation: str
    content: str
    user_email: str
    model: str = ""
    provider: str = ""
    mode: str = ""
    thread_id: Optional[str] = None
    report_id: Optional[str] = None
    section_id: Optional[str] = None
    position: Optional[int] = None
    section_type: Optional[str] = None
    current_html: Optional[str] = None
    enhance_report_id: Optional[str] = None

    def __post_init__(self):
        if self.operation not in OPERATIONS:
            raise ValueError(f"unknown operation {self.operation!r}")
        self.model = self.model or settings.DEFAULT_MODEL
        self.provider = (self.provider or settings.LLM_PROVIDER).lower()
        self.mode = self.mode or settings.DEFAULT_STREAM_MODE

    @property
    def key(self) -> str:
        if self.operation in ("edit", "section_add"):
            return f"report:{self.report_id}"
        return f"thread:{self.thread_id}"


@dataclass
class _Plan:
    messages: list
    system_prompt: Optional[str]
    max_tokens: int
    thread_id: Optional[str] = None
    position: Optional[int] = None


@dataclass
class _Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    dirty: bool = field(default=False, repr=False)

    def update(self, tin: int, tout: int) -> None:
        if (tin, tout) != (self.input_tokens, self.output_tokens):
            self.input_tokens, self.output_tokens = tin, tout
            self.dirty = True

    def take(self) -> Optional[UsageEvent]:
        if not self.dirty:
            return None
        self.dirty = False
        return UsageEvent(self.input_tokens, self.output_tokens)


class StreamingOrchestrator:
    def __init__(
        self,
        session_maker: async_sessionmaker = async_session_maker,
        generate: TokenGenerator = llm_client.stream_response,
        registry: GenerationRegistry = GENERATIONS,
    ):
        self._session_maker = session_maker
        self._generate = generate
        self._registry = registry

    # ---------------------------
    # Entry points
    # ---------------------------
    def start(self, req: GenerationRequest, owner_id: Optional[int] = None) -> Generation:
        """Claim the report/thread before any stream is opened (AlreadyGeneratingError if busy)."""
        return self._registry.acquire(req.key, req.operation, owner_id=owner_id)

    def cancel(self, gid: str) -> bool:
        return self._registry.cancel(gid)

    def release(self, gid: str) -> None:
        """Free the slot unless a commit is still running; the commit frees it when it lands."""
        gen = self._registry.get(gid)
        if gen and gen.state == GenerationState.finalizing:
            return
        self._registry.release(gid)

    def is_busy(self, report_id: str) -> bool:
        return self._registry.is_busy(f"report:{report_id}")

    @property
    def registry(self) -> GenerationRegistry:
        return self._registry

    async def run(self, gen: Generation, req: GenerationRequest) -> AsyncIterator[StreamEvent]:
        started = time.monotonic()
        detached = False
        try:
            yield MetadataEvent({"generationId": gen.id, "mode": req.mode, "operation": req.operation})

            async with self._session_maker() as db:
                plan = await self._plan(db, req)

            self._registry.set_state(gen.id, GenerationState.streaming)
            logger.info("Generation %s (%s) streaming on %s", gen.id, req.operation, req.key)

            usage = _Usage()
            chunks: list[str] = []
            stream = self._generate(
                messages=plan.messages,
                system_prompt=plan.system_prompt,
                model=req.model,
                provider=req.provider,
                temperature=settings.DEFAULT_TEMPERATURE,
                max_tokens=plan.max_tokens,
                on_usage=usage.update,
            )
            aborted = False
            try:
                while True:
                    step = await self._next_or_cancel(stream, gen)
                    if step is _CANCELLED:
                        aborted = True
                        break
                    if step is _END:
                        break
                    chunks.append(step)
                    event = usage.take()
                    if event:
                        yield event
                    if req.mode == "preview":
                        yield ContentEvent(step)
            finally:
                await stream.aclose()

            if aborted or not self._registry.begin_finalizing(gen.id):
                self._registry.set_state(gen.id, GenerationState.aborted)
                logger.info("Generation %s aborted after %d chunks", gen.id, len(chunks))
                return

            event = usage.take()
            if event:
                yield event

            cleaned = clean_html("".join(chunks))
            if not cleaned:
                raise LLMError("Model returned an empty response")

            elapsed_ms = int((time.monotonic() - started) * 1000)
            commit = asyncio.ensure_future(self._finalize(req, plan, cleaned, usage, elapsed_ms))
            try:
                complete = await asyncio.shield(commit)
            except asyncio.CancelledError:
                # the consumer left mid-commit; the slot stays held until the commit lands
                detached = True
                commit.add_done_callback(lambda task: self._commit_landed(gen, task))
                raise
            self._registry.set_state(gen.id, GenerationState.settled)
            logger.info("Generation %s settled in %d ms", gen.id, elapsed_ms)
            yield complete
        except (asyncio.CancelledError, GeneratorExit):
            if gen.state in (GenerationState.idle, GenerationState.streaming):
                self._registry.set_state(gen.id, GenerationState.aborted)
            raise
        except Exception as e:
            logger.exception("Generation %s failed", gen.id)
            self._registry.set_state(gen.id, GenerationState.failed, error=str(e))
            yield ErrorEvent(str(e) or e.__class__.__name__)
        finally:
            if not detached:
                self._registry.release(gen.id)

    def _commit_landed(self, gen: Generation, task: asyncio.Future) -> None:
        if task.cancelled():
            self._registry.set_state(gen.id, GenerationState.failed, error="commit cancelled")
            logger.error("Generation %s commit was cancelled after its client left", gen.id)
        elif task.exception() is not None:
            self._registry.set_state(gen.id, GenerationState.failed, error=str(task.exception()))
            logger.error("Generation %s failed after its client left", gen.id, exc_info=task.exception())
        else:
            self._registry.set_state(gen.id, GenerationState.settled)
            logger.info("Generation %s settled after its client left", gen.id)
        self._registry.release(gen.id)

    async def _next_or_cancel(self, stream, gen: Generation):
        nxt = asyncio.ensure_future(stream.__anext__())
        cancelled = asyncio.ensure_future(gen.cancel_event.wait())
        try:
            await asyncio.wait({nxt, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not nxt.done():
                nxt.cancel()
            cancelled.cancel()
        if gen.cancel_event.is_set():
            # let the upstream call unwind before the generator is closed
            await asyncio.gather(nxt, return_exceptions=True)
            return _CANCELLED
        try:
            return nxt.result()
        except StopAsyncIteration:
            return _END

    # ---------------------------
    # Context
    # ---------------------------
    async def _plan(self, db: AsyncSession, req: GenerationRequest) -> _Plan:
        if req.operation in ("generation", "enhance"):
            thread = await db.get(Thread, req.thread_id)
            if not thread:
                raise NotFoundError("thread", req.thread_id)
            content = req.content
            current = req.current_html
            if req.enhance_report_id and not current:
                current = (await get_report(db, req.enhance_report_id)).html_content
            if req.operation == "enhance" and current:
                content = prompts.enhance_request(current, req.content)
            messages = prompts.history_messages(thread.messages, settings.HISTORY_LIMIT)
            messages.append({"role": "user", "content": content})
            return _Plan(messages, prompts.REPORT_SYSTEM_PROMPT, settings.DEFAULT_MAX_TOKENS, thread_id=thread.id)

        report = await get_report(db, req.report_id)
        if req.operation == "edit":
            section = find_section(report, req.section_id)
            prompt = prompts.section_edit_prompt(section, req.content)
            return _Plan(
                [{"role": "user", "content": prompt}],
                prompts.REPORT_SYSTEM_PROMPT,
                settings.SECTION_MAX_TOKENS,
                thread_id=report.thread_id,
            )

        sections = sorted(report.sections, key=lambda s: s.order)
        position = len(sections) if req.position is None else max(0, min(req.position, len(sections)))
        thread = await db.get(Thread, report.thread_id)
        prompt = prompts.section_add_prompt(
            report.meta, sections, thread.messages if thread else [],
            req.content, req.section_type or "custom", position,
        )
        return _Plan(
            [{"role": "user", "content": prompt}],
            prompts.REPORT_SYSTEM_PROMPT,
            settings.SECTION_MAX_TOKENS,
            thread_id=report.thread_id,
            position=position,
        )

    # ---------------------------
    # Finalizing (single transaction)
    # ---------------------------
    async def _finalize(self, req: GenerationRequest, plan: _Plan, cleaned: str, usage: _Usage, elapsed_ms: int) -> CompleteEvent:
        async with self._session_maker() as db:
            if req.operation in ("generation", "enhance"):
                event = await self._finalize_report(db, req, plan, cleaned, usage, elapsed_ms)
            elif req.operation == "edit":
                event = await self._finalize_edit(db, req, cleaned, usage)
            else:
                event = await self._finalize_add(db, req, plan, cleaned, usage)
            await db.commit()
            return event

    async def _finalize_report(self, db, req, plan, cleaned, usage, elapsed_ms) -> CompleteEvent:
        sections, dropped = scan_sections(cleaned)
        if dropped:
            logger.warning("Dropped %d unterminated section fragment(s) from model output", dropped)
        insights = extract_insights(cleaned)
        report = await create_report(
            db,
            plan.thread_id,
            sections,
            insights,
            {
                "generatedBy": req.user_email,
                "model": req.model,
                "provider": req.provider,
                "prompt": req.content,
                "generationTimeMs": elapsed_ms,
            },
            fallback_html=cleaned,
            created_by=req.user_email,
        )
        await record_operation(
            db, report.id, USAGE_TYPES[req.operation], req.model, req.provider,
            usage.input_tokens, usage.output_tokens,
        )

        thread = await db.get(Thread, plan.thread_id)
        if not thread:
            raise NotFoundError("thread", plan.thread_id)
        if not thread.title:
            thread.title = req.content[:100]
        thread.current_report_id = report.id
        thread.updated_at = utcnow()
        meta = {"model": req.model, "provider": req.provider, "durationMs": elapsed_ms}
        db.add(ThreadMessage(thread_id=thread.id, role="user", content=req.content))
        db.add(ThreadMessage(
            thread_id=thread.id,
            role="assistant",
            content=prompts.chat_summary(req.content, len(sections), len(insights)),
            report_id=report.id,
            meta=meta,
        ))
        await db.flush()
        return CompleteEvent(report=serialize_report(report), usage=await get_usage(db, report.id))

    async def _finalize_edit(self, db, req, cleaned, usage) -> CompleteEvent:
        sections, _ = scan_sections(cleaned)
        html = sections[0].html_content if sections else cleaned
        title = sections[0].title if sections and sections[0].title != DEFAULT_TITLE else None
        section = await patch_section(
            db, req.report_id, req.section_id, html, req.user_email, req.content, title=title,
        )
        section.meta["model"] = req.model
        await record_operation(
            db, req.report_id, "edit", req.model, req.provider, usage.input_tokens, usage.output_tokens,
        )
        report = await get_report(db, req.report_id)
        return CompleteEvent(
            report=serialize_report(report),
            section=serialize_section(section),
            usage=await get_usage(db, req.report_id),
        )

    async def _finalize_add(self, db, req, plan, cleaned, usage) -> CompleteEvent:
        sections, _ = scan_sections(cleaned)
        if sections:
            first = sections[0]
            html, anchor, stype = first.html_content, first.id, first.type
            title = first.title if first.title != DEFAULT_TITLE else (req.content[:80] or "New Section")
            if stype == "text" and req.section_type:
                stype = req.section_type
        else:
            html, anchor, stype = cleaned, None, req.section_type or "custom"
            title = req.content[:80] or "New Section"
        section = build_section(
            html_content=html,
            title=title,
            type=stype,
            anchor=anchor,
            created_by=req.user_email,
            prompt=req.content,
            model=req.model,
        )
        report = await insert_section(db, req.report_id, plan.position or 0, section)
        await record_operation(
            db, req.report_id, "section_add", req.model, req.provider, usage.input_tokens, usage.output_tokens,
        )
        return CompleteEvent(
            report=serialize_report(report),
            section=serialize_section(section),
            usage=await get_usage(db, req.report_id),
        )


_CANCELLED = object()
_END = object()
