from fastapi import Depends, HTTPException, Path, status
from fastapi_users import models
from sqlalchemy.ext.asyncio import AsyncSession

from .database import get_db
from .models import Report, Thread
from .users import current_active_user


# Dependency to enforce authentication
async def require_authenticated_user(
    user: models.UP = Depends(current_active_user),
):
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return user


# Ownership checks answer 404 for other users' data so foreign ids look the same as missing ones.
async def require_thread_owner(
    thread_id: str = Path(...),
    user=Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
) -> Thread:
    thread = await db.get(Thread, thread_id)
    if not thread or thread.user_id != user.id:
        raise HTTPException(status_code=404, detail="Thread not found")
    return thread


async def require_report_owner(
    report_id: str = Path(...),
    user=Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
) -> Report:
    report = await db.get(Report, report_id)
    if not report:
        raise HTTPException(status_code=404, detail="Report not found")
    thread = await db.get(Thread, report.thread_id)
    if not thread or thread.user_id != user.id:
        raise HTTPException(status_code=404, detail="Report not found")
    return report
