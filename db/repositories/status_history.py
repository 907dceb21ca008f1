"""Status history repository. Rows are only ever appended."""
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.connection import translate_db_errors
from db.models import StatusHistory


@translate_db_errors
async def record(
    session: AsyncSession,
    lead_id: str,
    from_status: str,
    to_status: str,
    changed_by_id: Optional[str] = None,
    changed_by_name: Optional[str] = None,
    notes: Optional[str] = None,
) -> StatusHistory:
    entry = StatusHistory(
        lead_id=lead_id,
        from_status=from_status,
        to_status=to_status,
        changed_by_id=changed_by_id,
        changed_by_name=changed_by_name,
        notes=notes,
    )
    session.add(entry)
    await session.flush()
    return entry


@translate_db_errors
async def list_for_lead(session: AsyncSession, lead_id: str) -> List[StatusHistory]:
    """Oldest first."""
    result = await session.execute(
        select(StatusHistory)
        .where(StatusHistory.lead_id == lead_id)
        .order_by(StatusHistory.created_at, StatusHistory.id)
    )
    return list(result.scalars().all())


@translate_db_errors
async def count_for_lead(session: AsyncSession, lead_id: str) -> int:
    total = await session.scalar(
        select(func.count()).select_from(StatusHistory).where(StatusHistory.lead_id == lead_id)
    )
    return int(total or 0)
