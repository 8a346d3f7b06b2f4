from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from playground.database import get_db
from playground.models import Report
from playground.routes_shared import get_orchestrator, stream_generation
from playground.schemas import (
    MoveRequest,
    RestoreRequest,
    SectionAddRequest,
    SectionEditRequest,
    SectionPatchRequest,
    SuggestionsRequest,
)
from playground.services import report_store
from playground.services.orchestrator import GenerationRequest, StreamingOrchestrator
from playground.services.suggestions import suggest_sections
from playground.services.usage import get_usage
from playground.utils import require_authenticated_user, require_report_owner

router = APIRouter(prefix="/api/reports", tags=["reports"])


def _ensure_idle(orchestrator: StreamingOrchestrator, report_id: str) -> None:
    # direct mutations wait for a running generation to settle
    if orchestrator.is_busy(report_id):
        raise HTTPException(status_code=409, detail="A generation is already in progress for this report")


# ---------------------------
# Reads
# ---------------------------
@router.get("/{report_id}")
async def get_report(report: Report = Depends(require_report_owner)):
    return report_store.serialize_report(report)


@router.get("/{report_id}/usage")
async def report_usage(report: Report = Depends(require_report_owner), db: AsyncSession = Depends(get_db)):
    return await get_usage(db, report.id)


@router.get("/{report_id}/sections")
async def list_sections(report: Report = Depends(require_report_owner)):
    sections = sorted(report.sections, key=lambda s: s.order)
    return {"sections": [report_store.serialize_section(s, include_history=False) for s in sections]}


@router.get("/{report_id}/sections/{section_id}")
async def get_section(section_id: str, report: Report = Depends(require_report_owner)):
    return report_store.serialize_section(report_store.find_section(report, section_id))


# ---------------------------
# Streaming (model-backed)
# ---------------------------
@router.post("/{report_id}/sections")
async def add_section(
    payload: SectionAddRequest,
    report: Report = Depends(require_report_owner),
    user=Depends(require_authenticated_user),
    orchestrator: StreamingOrchestrator = Depends(get_orchestrator),
):
    req = GenerationRequest(
        operation="section_add",
        content=payload.content,
        user_email=user.email,
        model=payload.model or "",
        provider=payload.provider or "",
        mode=payload.mode or "",
        report_id=report.id,
        position=payload.position,
        section_type=payload.type,
    )
    return stream_generation(orchestrator, req, owner_id=user.id)


@router.post("/{report_id}/sections/{section_id}/edit")
async def edit_section(
    section_id: str,
    payload: SectionEditRequest,
    report: Report = Depends(require_report_owner),
    user=Depends(require_authenticated_user),
    orchestrator: StreamingOrchestrator = Depends(get_orchestrator),
):
    report_store.find_section(report, section_id)
    req = GenerationRequest(
        operation="edit",
        content=payload.content,
        user_email=user.email,
        model=payload.model or "",
        provider=payload.provider or "",
        mode=payload.mode or "",
        report_id=report.id,
        section_id=section_id,
    )
    return stream_generation(orchestrator, req, owner_id=user.id)


# ---------------------------
# Direct mutations
# ---------------------------
@router.patch("/{report_id}/sections/{section_id}")
async def patch_section(
    section_id: str,
    payload: SectionPatchRequest,
    report: Report = Depends(require_report_owner),
    user=Depends(require_authenticated_user),
    orchestrator: StreamingOrchestrator = Depends(get_orchestrator),
    db: AsyncSession = Depends(get_db),
):
    _ensure_idle(orchestrator, report.id)
    section = await report_store.patch_section(
        db, report.id, section_id, payload.html_content, user.email, payload.prompt, title=payload.title,
    )
    await db.commit()
    return report_store.serialize_section(section)


@router.post("/{report_id}/sections/{section_id}/move")
async def move_section(
    section_id: str,
    payload: MoveRequest,
    report: Report = Depends(require_report_owner),
    orchestrator: StreamingOrchestrator = Depends(get_orchestrator),
    db: AsyncSession = Depends(get_db),
):
    _ensure_idle(orchestrator, report.id)
    report, moved = await report_store.move_section(db, report.id, section_id, payload.direction)
    await db.commit()
    return {"report": report_store.serialize_report(report), "moved": moved}


@router.post("/{report_id}/sections/{section_id}/duplicate", status_code=201)
async def duplicate_section(
    section_id: str,
    report: Report = Depends(require_report_owner),
    user=Depends(require_authenticated_user),
    orchestrator: StreamingOrchestrator = Depends(get_orchestrator),
    db: AsyncSession = Depends(get_db),
):
    _ensure_idle(orchestrator, report.id)
    report = await report_store.duplicate_section(db, report.id, section_id, user.email)
    await db.commit()
    return report_store.serialize_report(report)


@router.delete("/{report_id}/sections/{section_id}")
async def delete_section(
    section_id: str,
    report: Report = Depends(require_report_owner),
    orchestrator: StreamingOrchestrator = Depends(get_orchestrator),
    db: AsyncSession = Depends(get_db),
):
    _ensure_idle(orchestrator, report.id)
    report = await report_store.delete_section(db, report.id, section_id)
    await db.commit()
    return report_store.serialize_report(report)


@router.post("/{report_id}/sections/{section_id}/restore")
async def restore_section(
    section_id: str,
    payload: RestoreRequest,
    report: Report = Depends(require_report_owner),
    user=Depends(require_authenticated_user),
    orchestrator: StreamingOrchestrator = Depends(get_orchestrator),
    db: AsyncSession = Depends(get_db),
):
    _ensure_idle(orchestrator, report.id)
    section = await report_store.restore_section(db, report.id, section_id, payload.version, user.email)
    await db.commit()
    return report_store.serialize_section(section)


@router.post("/{report_id}/suggestions")
async def suggestions(
    payload: SuggestionsRequest,
    report: Report = Depends(require_report_owner),
    db: AsyncSession = Depends(get_db),
):
    items = await suggest_sections(db, report.id, model=payload.model, provider=payload.provider, count=payload.count)
    await db.commit()
    return {"suggestions": items}


__all__ = ["router"]
