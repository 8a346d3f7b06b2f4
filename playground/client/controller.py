# playground/client/controller.py
"""
Client-side state machine over the sections of one report.

All state lives in an explicit ``SectionState`` that callers share by
reference.  Local state only changes after the server confirmed the
operation: a failed call records ``state.error`` and leaves everything else as
it was.  Per-section busy flags are cleared when the call returns, and by a
timer if it never does.
"""
import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Literal, Optional

import httpx

from playground.errors import ApiError, StreamClosedError
from playground.sse import CompleteEvent, ContentEvent, ErrorEvent, MetadataEvent, UsageEvent

logger = logging.getLogger(__name__)

# preview/streaming key for a section that does not exist yet
NEW_SECTION_KEY = "__new__"


@dataclass
class EditingContext:
    type: Literal["edit", "add"]
    section_id: Optional[str] = None
    position: Optional[int] = None

    @property
    def key(self) -> str:
        return self.section_id if self.type == "edit" else NEW_SECTION_KEY


@dataclass
class SectionState:
    report: dict
    selected_section_id: Optional[str] = None
    editing_context: Optional[EditingContext] = None
    collapsed_sections: set = field(default_factory=set)
    section_preview_content: dict = field(default_factory=dict)
    section_streaming_state: dict = field(default_factory=dict)
    busy: dict = field(default_factory=dict)  # section id -> operation
    generation_id: Optional[str] = None
    live_usage: Optional[tuple] = None  # (input, output) while streaming
    usage: Optional[dict] = None        # last authoritative snapshot
    error: Optional[str] = None

    @property
    def report_id(self) -> str:
        return self.report["id"]

    @property
    def sections(self) -> list:
        return sorted(self.report.get("sections") or [], key=lambda s: s["order"])

    def section(self, section_id: str) -> Optional[dict]:
        return next((s for s in self.report.get("sections") or [] if s["id"] == section_id), None)


class SectionController:
    def __init__(self, api, state: SectionState, *, busy_timeout: float = 10.0,
                 model: Optional[str] = None, provider: Optional[str] = None, mode: str = "preview"):
        self.api = api
        self.state = state
        self.busy_timeout = busy_timeout
        self.model = model
        self.provider = provider
        self.mode = mode
        self._stream_task: Optional[asyncio.Task] = None
        self._cancel_requested = False

    # ---------------------------
    # Selection / collapse (local only)
    # ---------------------------
    def select(self, section_id: Optional[str]) -> bool:
        """Rejected while an edit/add is open on another section."""
        ctx = self.state.editing_context
        if ctx is not None and section_id != ctx.section_id:
            return False
        self.state.selected_section_id = section_id
        return True

    def toggle_collapse(self, section_id: str) -> bool:
        collapsed = self.state.collapsed_sections
        if section_id in collapsed:
            collapsed.discard(section_id)
            return False
        collapsed.add(section_id)
        return True

    # ---------------------------
    # Streaming edit / add
    # ---------------------------
    async def edit(self, section_id: str, instruction: str) -> Optional[dict]:
        if self.state.editing_context is not None or self.state.section(section_id) is None:
            return None
        ctx = EditingContext(type="edit", section_id=section_id)
        events = self.api.edit_section(
            self.state.report_id, section_id, instruction,
            model=self.model, provider=self.provider, mode=self.mode,
        )
        return await self._drive(ctx, events)

    async def add(self, position: int, instruction: str, section_type: Optional[str] = None) -> Optional[dict]:
        if self.state.editing_context is not None:
            return None
        ctx = EditingContext(type="add", position=position)
        events = self.api.add_section(
            self.state.report_id, instruction, position=position, type=section_type,
            model=self.model, provider=self.provider, mode=self.mode,
        )
        return await self._drive(ctx, events)

    async def cancel_edit(self) -> bool:
        """
        Abort the open edit/add. Returns False when the server already began
        finalizing; the result will still arrive through the running stream.
        """
        ctx = self.state.editing_context
        if ctx is None:
            return False
        if self.state.generation_id:
            try:
                accepted = await self.api.cancel(self.state.generation_id)
            except ApiError as e:
                # 404: the generation already finished; nothing left to stop
                if e.status_code != 404:
                    raise
                accepted = True
            if not accepted:
                return False
        self._cancel_requested = True
        if not self.state.generation_id and self._stream_task is not None and not self._stream_task.done():
            self._stream_task.cancel()
        self._clear_stream(ctx)
        return True

    async def _drive(self, ctx: EditingContext, events) -> Optional[dict]:
        st = self.state
        st.editing_context = ctx
        st.section_streaming_state[ctx.key] = True
        st.section_preview_content[ctx.key] = ""
        st.error = None
        self._cancel_requested = False
        self._stream_task = asyncio.current_task()
        result = None
        try:
            async with aclosing(events) as stream:
                async for event in stream:
                    if self._cancel_requested:
                        break
                    if isinstance(event, MetadataEvent):
                        st.generation_id = event.metadata.get("generationId")
                    elif isinstance(event, ContentEvent):
                        preview = st.section_preview_content.get(ctx.key, "")
                        st.section_preview_content[ctx.key] = preview + event.content
                    elif isinstance(event, UsageEvent):
                        st.live_usage = (event.input_tokens, event.output_tokens)
                    elif isinstance(event, CompleteEvent):
                        result = self._apply_complete(ctx, event)
                    elif isinstance(event, ErrorEvent):
                        st.error = event.error
        except asyncio.CancelledError:
            if not self._cancel_requested:
                raise
        except StreamClosedError:
            if not self._cancel_requested:
                st.error = "Connection closed before the section was saved"
        except (ApiError, httpx.HTTPError) as e:
            st.error = str(e)
        finally:
            self._stream_task = None
            self._clear_stream(ctx)
        return result

    def _apply_complete(self, ctx: EditingContext, event: CompleteEvent) -> Optional[dict]:
        st = self.state
        if event.report:
            st.report = event.report
        if event.usage is not None:
            st.usage = event.usage
        st.live_usage = None
        section = event.section
        if ctx.type == "add" and section:
            st.selected_section_id = section["id"]
        return section

    def _clear_stream(self, ctx: EditingContext) -> None:
        st = self.state
        st.section_streaming_state.pop(ctx.key, None)
        st.section_preview_content.pop(ctx.key, None)
        if st.editing_context is ctx:
            st.editing_context = None
            st.generation_id = None
            st.live_usage = None

    # ---------------------------
    # Direct operations (busy-guarded)
    # ---------------------------
    def is_busy(self, section_id: str) -> bool:
        return section_id in self.state.busy

    def _clear_busy(self, section_id: str, operation: str) -> None:
        if self.state.busy.get(section_id) == operation:
            del self.state.busy[section_id]

    async def _guarded(self, section_id: str, operation: str, call: Callable[[], Awaitable]):
        if section_id in self.state.busy:
            return None
        self.state.busy[section_id] = operation
        timer = asyncio.get_running_loop().call_later(self.busy_timeout, self._clear_busy, section_id, operation)
        try:
            result = await call()
        except (ApiError, httpx.HTTPError) as e:
            logger.warning("%s on section %s failed: %s", operation, section_id, e)
            self.state.error = str(e)
            return None
        finally:
            timer.cancel()
            self._clear_busy(section_id, operation)
        self.state.error = None
        return result

    async def duplicate(self, section_id: str) -> Optional[dict]:
        report = await self._guarded(
            section_id, "duplicating", lambda: self.api.duplicate_section(self.state.report_id, section_id)
        )
        if report is not None:
            self.state.report = report
        return report

    async def delete(self, section_id: str) -> bool:
        report = await self._guarded(
            section_id, "deleting", lambda: self.api.delete_section(self.state.report_id, section_id)
        )
        if report is None:
            return False
        self.state.report = report
        self.state.collapsed_sections.discard(section_id)
        if self.state.selected_section_id == section_id:
            self.state.selected_section_id = None
        return True

    async def _move(self, section_id: str, direction: str) -> bool:
        out = await self._guarded(
            section_id, f"moving {direction}",
            lambda: self.api.move_section(self.state.report_id, section_id, direction),
        )
        if out is None:
            return False
        self.state.report = out["report"]
        return bool(out["moved"])

    async def move_up(self, section_id: str) -> bool:
        return await self._move(section_id, "up")

    async def move_down(self, section_id: str) -> bool:
        return await self._move(section_id, "down")
