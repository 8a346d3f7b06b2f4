from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from playground.database import get_db
from playground.models import Report, Thread, ThreadMessage
from playground.routes_shared import get_orchestrator, stream_generation
from playground.schemas import MessageRequest, ThreadCreate
from playground.services.orchestrator import GenerationRequest, StreamingOrchestrator
from playground.services.report_store import list_thread_reports
from playground.utils import require_authenticated_user, require_thread_owner

router = APIRouter(prefix="/api/threads", tags=["threads"])


def serialize_message(m: ThreadMessage) -> dict:
    return {
        "id": m.id,
        "role": m.role,
        "content": m.content,
        "reportId": m.report_id,
        "metadata": m.meta or {},
        "createdAt": m.created_at.isoformat() if m.created_at else None,
    }


async def serialize_thread(db: AsyncSession, t: Thread) -> dict:
    return {
        "id": t.id,
        "title": t.title,
        "currentReportId": t.current_report_id,
        "reportIds": await list_thread_reports(db, t.id),
        "createdAt": t.created_at.isoformat() if t.created_at else None,
        "updatedAt": t.updated_at.isoformat() if t.updated_at else None,
    }


@router.post("", status_code=201)
async def create_thread(
    payload: ThreadCreate,
    user=Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    thread = Thread(user_id=user.id, title=(payload.title or "").strip() or None)
    db.add(thread)
    await db.commit()
    return await serialize_thread(db, thread)


@router.get("/{thread_id}")
async def get_thread(
    thread: Thread = Depends(require_thread_owner),
    db: AsyncSession = Depends(get_db),
):
    return await serialize_thread(db, thread)


@router.get("/{thread_id}/messages")
async def list_messages(thread: Thread = Depends(require_thread_owner)):
    return {"messages": [serialize_message(m) for m in thread.messages]}


@router.post("/{thread_id}/messages")
async def post_message(
    payload: MessageRequest,
    thread: Thread = Depends(require_thread_owner),
    user=Depends(require_authenticated_user),
    orchestrator: StreamingOrchestrator = Depends(get_orchestrator),
    db: AsyncSession = Depends(get_db),
):
    if payload.enhance_widget_id:
        target = await db.get(Report, payload.enhance_widget_id)
        if not target or target.thread_id != thread.id:
            raise HTTPException(status_code=404, detail="Report not found")
    req = GenerationRequest(
        operation="enhance" if payload.is_enhance else "generation",
        content=payload.content,
        user_email=user.email,
        model=payload.model or "",
        provider=payload.provider or "",
        mode=payload.mode or "",
        thread_id=thread.id,
        current_html=payload.current_html,
        enhance_report_id=payload.enhance_widget_id,
    )
    return stream_generation(orchestrator, req, owner_id=user.id)


__all__ = ["router"]
