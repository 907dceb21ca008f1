"""Campaign event repository: idempotent event recording and per-campaign stats."""
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger
from sqlalchemy import desc, distinct, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from db.connection import translate_db_errors
from db.models import CampaignEventRecord
from db.repositories.leads import MAX_PAGE_SIZE

EVENT_COLUMNS = {"delivered": "delivered", "opened": "opened", "click": "clicked"}

RECORD_FIELDS = frozenset({
    "event_id",
    "event",
    "campaign_id",
    "campaign_name",
    "email",
    "url",
    "tag",
    "event_at",
})


@translate_db_errors
async def record_event(session: AsyncSession, values: Dict[str, Any]) -> bool:
    """Store one campaign event. Returns False when (event_id, event) was already stored.

    A redelivered webhook hits the unique index and is skipped in the same
    statement, so replays never inflate the counts.
    """
    values = {k: v for k, v in values.items() if k in RECORD_FIELDS}
    insert = sqlite_insert if session.bind.dialect.name == "sqlite" else pg_insert
    stmt = (
        insert(CampaignEventRecord)
        .values(**values)
        .on_conflict_do_nothing(index_elements=["event_id", "event"])
        .returning(CampaignEventRecord.id)
    )
    inserted = (await session.execute(stmt)).scalar_one_or_none()
    if inserted is None:
        logger.info(f"Duplicate campaign event skipped: {values.get('event')} {values.get('event_id')}")
        return False
    return True


def _empty_stats(campaign_id: Optional[str]) -> Dict[str, Any]:
    return {
        "campaign_id": campaign_id,
        "campaign_name": None,
        "delivered": 0,
        "opened": 0,
        "clicked": 0,
        "unique_opens": 0,
        "unique_clicks": 0,
        "open_rate": 0.0,
        "click_rate": 0.0,
        "first_event_at": None,
        "last_event_at": None,
    }


@translate_db_errors
async def campaign_stats(session: AsyncSession, campaign_id: Optional[str] = None) -> List[Dict[str, Any]]:
    """
    Event totals per campaign, most recently active first.

    Rates are unique opens (or clicks) over delivered, as a percentage with
    two decimals; 0 when nothing was delivered.
    """
    stmt = select(
        CampaignEventRecord.campaign_id,
        CampaignEventRecord.event,
        func.count(),
        func.count(distinct(func.lower(CampaignEventRecord.email))),
        func.max(CampaignEventRecord.campaign_name),
        func.min(CampaignEventRecord.event_at),
        func.max(CampaignEventRecord.event_at),
    ).group_by(CampaignEventRecord.campaign_id, CampaignEventRecord.event)
    if campaign_id is not None:
        stmt = stmt.where(CampaignEventRecord.campaign_id == campaign_id)

    campaigns: Dict[Optional[str], Dict[str, Any]] = {}
    for cid, event, total, unique, name, first_at, last_at in (await session.execute(stmt)).all():
        stats = campaigns.setdefault(cid, _empty_stats(cid))
        stats["campaign_name"] = stats["campaign_name"] or name
        column = EVENT_COLUMNS.get(event)
        if column:
            stats[column] = total
        if event == "opened":
            stats["unique_opens"] = unique
        elif event == "click":
            stats["unique_clicks"] = unique
        if stats["first_event_at"] is None or first_at < stats["first_event_at"]:
            stats["first_event_at"] = first_at
        if stats["last_event_at"] is None or last_at > stats["last_event_at"]:
            stats["last_event_at"] = last_at

    for stats in campaigns.values():
        delivered = stats["delivered"]
        if delivered:
            stats["open_rate"] = round(stats["unique_opens"] / delivered * 100, 2)
            stats["click_rate"] = round(stats["unique_clicks"] / delivered * 100, 2)

    rows = sorted(campaigns.values(), key=lambda s: s["last_event_at"], reverse=True)
    for stats in rows:
        for key in ("first_event_at", "last_event_at"):
            stats[key] = stats[key].isoformat()
    return rows


@translate_db_errors
async def list_events(
    session: AsyncSession,
    campaign_id: str,
    event: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> Tuple[List[CampaignEventRecord], int]:
    """Newest-first events for one campaign. Returns (events, total)."""
    conditions = [CampaignEventRecord.campaign_id == campaign_id]
    if event:
        conditions.append(CampaignEventRecord.event == event)
    limit = max(1, min(limit, MAX_PAGE_SIZE))
    page = max(1, page)

    total = await session.scalar(select(func.count()).select_from(CampaignEventRecord).where(*conditions))
    result = await session.execute(
        select(CampaignEventRecord)
        .where(*conditions)
        .order_by(desc(CampaignEventRecord.event_at), desc(CampaignEventRecord.id))
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(result.scalars().all()), int(total or 0)
