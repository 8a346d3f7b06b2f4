# playground/services/usage.py
"""
Usage metering per report.

Operations are append-only rows; totals are summed from them on every read and
never stored, so they cannot drift from the rows. The orchestrator is the only
writer and records inside its Finalizing transaction; everybody else reads.
"""
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from playground.models import UsageOperation, UsageType
from playground.services.pricing import calculate_cost


async def record_operation(
    db: AsyncSession,
    report_id: str,
    type: str,
    model: str,
    provider: str,
    input_tokens: Optional[int],
    output_tokens: Optional[int],
) -> UsageOperation:
    """Append one operation; caller commits. Missing token counts are recorded as zero."""
    UsageType(type)  # ValueError on unknown types
    tin = max(0, int(input_tokens or 0))
    tout = max(0, int(output_tokens or 0))
    op = UsageOperation(
        report_id=report_id,
        type=type,
        model=model or "unknown",
        provider=provider or "unknown",
        input_tokens=tin,
        output_tokens=tout,
        cost=calculate_cost(provider, model, tin, tout),
    )
    db.add(op)
    await db.flush()
    return op


async def list_operations(db: AsyncSession, report_id: str) -> list[UsageOperation]:
    rows = await db.execute(
        select(UsageOperation)
        .where(UsageOperation.report_id == report_id)
        .order_by(UsageOperation.id.asc())
    )
    return list(rows.scalars().all())


def serialize_operation(op: UsageOperation) -> dict:
    return {
        "type": op.type,
        "timestamp": op.timestamp.isoformat() if op.timestamp else None,
        "model": op.model,
        "provider": op.provider,
        "inputTokens": op.input_tokens,
        "outputTokens": op.output_tokens,
        "cost": op.cost,
    }


def summarize(ops: list[UsageOperation]) -> dict:
    return {
        "totalTokens": sum(op.input_tokens + op.output_tokens for op in ops),
        "totalCost": sum((op.cost for op in ops), 0.0),
        "operations": [serialize_operation(op) for op in ops],
    }


async def get_usage(db: AsyncSession, report_id: str) -> dict:
    """{totalTokens, totalCost, operations}, recomputed from the rows."""
    return summarize(await list_operations(db, report_id))
