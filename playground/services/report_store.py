# playground/services/report_store.py
"""
Report aggregate: ordered sections, insights, metadata and per-section history.

Every function works inside the caller's session and only flushes; the caller
owns the transaction and commits.  After any section-level mutation the
sibling orders are renumbered to 0..n-1, the report is flagged interactive and
``html_content`` is rebuilt as the concatenation of the sections in order.

Section versions count content changes.  ``edit_history`` holds one row per
version (the initial content is version 1), so ``len(edit_history) == version``
and the last row always carries the current content.
"""
import logging
from typing import Any, Iterable, Literal, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from playground.errors import NotFoundError
from playground.models import (
    SECTION_ANCHOR_MAX, SECTION_TITLE_MAX, Report, ReportSection, SectionEdit, SectionType, new_id, utcnow,
)

logger = logging.getLogger(__name__)

Direction = Literal["up", "down"]


# ---------------------------
# Reads
# ---------------------------
async def get_report(db: AsyncSession, report_id: str) -> Report:
    report = await db.get(Report, report_id)
    if not report:
        raise NotFoundError("report", report_id)
    return report


def find_section(report: Report, section_id: str) -> ReportSection:
    for s in report.sections:
        if s.id == section_id:
            return s
    raise NotFoundError("section", section_id)


async def get_section(db: AsyncSession, report_id: str, section_id: str) -> ReportSection:
    return find_section(await get_report(db, report_id), section_id)


async def list_thread_reports(db: AsyncSession, thread_id: str) -> list[str]:
    rows = await db.execute(
        select(Report.id).where(Report.thread_id == thread_id).order_by(Report.created_at.asc())
    )
    return list(rows.scalars().all())


# ---------------------------
# Helpers
# ---------------------------
def _clip(value: Optional[str], limit: int) -> Optional[str]:
    if value is None or len(value) <= limit:
        return value
    return value[: limit - 1].rstrip() + "…"


def _coerce_type(value: Optional[str]) -> str:
    try:
        return SectionType(value or "custom").value
    except ValueError:
        return SectionType.custom.value


def build_section(
    *,
    html_content: str,
    title: str,
    type: str = "custom",
    created_by: str,
    anchor: Optional[str] = None,
    prompt: Optional[str] = None,
    model: Optional[str] = None,
    order: int = 0,
) -> ReportSection:
    """A new version-1 section with its initial history row."""
    section = ReportSection(
        id=new_id(),
        anchor=anchor[:SECTION_ANCHOR_MAX] if anchor else anchor,
        type=_coerce_type(type),
        title=_clip(title, SECTION_TITLE_MAX) or "Untitled Section",
        html_content=html_content,
        order=order,
        version=1,
        meta={
            "originallyGeneratedBy": created_by,
            "lastModifiedBy": created_by,
            "model": model,
            "originalPrompt": prompt,
        },
    )
    section.edit_history = [
        SectionEdit(version=1, html_content=html_content, prompt=prompt, edited_by=created_by)
    ]
    return section


def _sort(report: Report) -> None:
    report.sections.sort(key=lambda s: s.order)


def _renumber(report: Report) -> None:
    _sort(report)
    for i, s in enumerate(report.sections):
        if s.order != i:
            s.order = i


def _settle(report: Report) -> None:
    _renumber(report)
    report.html_content = "".join(s.html_content for s in report.sections)
    report.is_interactive = True
    report.updated_at = utcnow()


# ---------------------------
# Writes
# ---------------------------
async def create_report(
    db: AsyncSession,
    thread_id: str,
    sections: Iterable[Any],
    insights: Iterable[Any],
    metadata: dict,
    *,
    fallback_html: str = "",
    created_by: str = "ai",
) -> Report:
    """
    Persist a freshly extracted report.  ``sections`` are extractor results
    (anything with id/type/title/html_content); their ``id`` becomes the
    section anchor.  With no sections the report keeps ``fallback_html``.
    """
    prompt = (metadata or {}).get("prompt")
    model = (metadata or {}).get("model")
    built = [
        build_section(
            html_content=s.html_content,
            title=s.title,
            type=s.type,
            anchor=s.id,
            created_by=created_by,
            prompt=prompt,
            model=model,
            order=i,
        )
        for i, s in enumerate(sections)
    ]
    report = Report(
        id=new_id(),
        thread_id=thread_id,
        html_content="".join(s.html_content for s in built) if built else fallback_html,
        insights=[i.to_dict() if hasattr(i, "to_dict") else dict(i) for i in insights],
        meta=dict(metadata or {}),
        is_interactive=False,
        sections=built,
    )
    db.add(report)
    await db.flush()
    logger.info("Report %s created with %d sections", report.id, len(built))
    return report


async def patch_section(
    db: AsyncSession,
    report_id: str,
    section_id: str,
    html_content: str,
    edited_by: str,
    prompt: Optional[str] = None,
    *,
    title: Optional[str] = None,
) -> ReportSection:
    """Replace a section's content: version + 1 and one new history row, flushed together."""
    report = await get_report(db, report_id)
    section = find_section(report, section_id)
    section.version = (section.version or 0) + 1
    section.html_content = html_content
    if title:
        section.title = _clip(title, SECTION_TITLE_MAX)
    section.updated_at = utcnow()
    section.meta["lastModifiedBy"] = edited_by
    section.edit_history.append(
        SectionEdit(version=section.version, html_content=html_content, prompt=prompt, edited_by=edited_by)
    )
    _settle(report)
    await db.flush()
    return section


async def restore_section(
    db: AsyncSession, report_id: str, section_id: str, version: int, restored_by: str
) -> ReportSection:
    """Bring back an older version's content as a brand new version."""
    section = await get_section(db, report_id, section_id)
    target = next((e for e in section.edit_history if e.version == version), None)
    if target is None:
        raise NotFoundError("version", version)
    return await patch_section(
        db, report_id, section_id, target.html_content, restored_by,
        prompt=f"Restored from version {version}",
    )


async def insert_section(db: AsyncSession, report_id: str, position: int, section: ReportSection) -> Report:
    """Insert at ``position`` (clamped to 0..n); everything at or after it moves down one."""
    report = await get_report(db, report_id)
    _renumber(report)
    position = max(0, min(int(position), len(report.sections)))
    for s in report.sections:
        if s.order >= position:
            s.order += 1
    section.order = position
    report.sections.append(section)
    _settle(report)
    await db.flush()
    return report


async def delete_section(db: AsyncSession, report_id: str, section_id: str) -> Report:
    report = await get_report(db, report_id)
    section = find_section(report, section_id)
    report.sections.remove(section)
    await db.delete(section)
    _settle(report)
    await db.flush()
    return report


async def move_section(
    db: AsyncSession, report_id: str, section_id: str, direction: Direction
) -> tuple[Report, bool]:
    """
    Swap with the neighbour above/below.  At a boundary nothing changes and
    ``moved`` is False; that is a normal outcome, not an error.
    """
    if direction not in ("up", "down"):
        raise ValueError(f"direction must be 'up' or 'down', got {direction!r}")
    report = await get_report(db, report_id)
    section = find_section(report, section_id)
    _sort(report)
    idx = report.sections.index(section)
    other = idx - 1 if direction == "up" else idx + 1
    if other < 0 or other >= len(report.sections):
        return report, False
    neighbour = report.sections[other]
    section.order, neighbour.order = neighbour.order, section.order
    _settle(report)
    await db.flush()
    return report, True


async def duplicate_section(db: AsyncSession, report_id: str, section_id: str, created_by: str) -> Report:
    """Copy placed directly after the source: fresh id, version 1, fresh history."""
    report = await get_report(db, report_id)
    source = find_section(report, section_id)
    copy = build_section(
        html_content=source.html_content,
        title=f"{source.title} (Copy)",
        type=source.type,
        anchor=source.anchor,
        created_by=created_by,
        prompt=f"Duplicate of: {source.title}",
        model=(source.meta or {}).get("model"),
    )
    return await insert_section(db, report_id, source.order + 1, copy)


# ---------------------------
# Serialization (camelCase wire shapes)
# ---------------------------
def _iso(dt) -> Optional[str]:
    return dt.isoformat() if dt else None


def serialize_edit(e: SectionEdit) -> dict:
    return {
        "version": e.version,
        "htmlContent": e.html_content,
        "prompt": e.prompt,
        "editedBy": e.edited_by,
        "editedAt": _iso(e.edited_at),
    }


def serialize_section(s: ReportSection, include_history: bool = True) -> dict:
    out = {
        "id": s.id,
        "reportId": s.report_id,
        "anchor": s.anchor,
        "type": s.type,
        "title": s.title,
        "htmlContent": s.html_content,
        "order": s.order,
        "version": s.version,
        "metadata": dict(s.meta or {}),
        "createdAt": _iso(s.created_at),
        "updatedAt": _iso(s.updated_at),
    }
    if include_history:
        out["editHistory"] = [serialize_edit(e) for e in s.edit_history]
    return out


def serialize_report(r: Report, include_history: bool = False) -> dict:
    return {
        "id": r.id,
        "threadId": r.thread_id,
        "htmlContent": r.html_content,
        "sections": [serialize_section(s, include_history) for s in sorted(r.sections, key=lambda s: s.order)],
        "insights": list(r.insights or []),
        "metadata": dict(r.meta or {}),
        "isInteractive": bool(r.is_interactive),
        "createdAt": _iso(r.created_at),
        "updatedAt": _iso(r.updated_at),
    }
