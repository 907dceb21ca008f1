"""Dashboard API: lead listing, status changes, lead and campaign stats, dead-letter list and roster."""
import math
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from loguru import logger
from pydantic import BaseModel, Field

from api.webhooks import handle_postback, ingest_campaign_event, parse_campaign_event
from db import get_db
from db.repositories import campaign_events as campaign_events_repo
from db.repositories import leads as leads_repo
from db.repositories import sales_team as sales_team_repo
from db.repositories import status_history as history_repo
from errors import LeadNotFoundError, ValidationError
from graph.workflow import reprocess_lead
from schemas.webhooks import RECORDED_EVENTS, ChatInteraction
from tools.auth import AdminUser, get_current_user, require_admin
from tools.dead_letter import dead_letter_queue
from utils.lead_id import is_valid_lead_uuid

router = APIRouter(prefix="/admin", tags=["admin"])


class StatusUpdateRequest(BaseModel):
    status: str
    expected_version: int = Field(ge=1)
    notes: Optional[str] = Field(default=None, max_length=2000)


class SalesTeamUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    email: Optional[str] = None
    role: Optional[str] = None
    status: Optional[str] = None


def _check_lead_id(lead_id: str) -> None:
    if not is_valid_lead_uuid(lead_id):
        raise ValidationError(f"Invalid lead id: {lead_id}")


@router.get("/leads")
async def list_leads(
    status: Optional[str] = Query(None, description="Comma-separated statuses"),
    owner: Optional[str] = Query(None, description="Owner id, or 'unassigned'"),
    lead_source: Optional[str] = None,
    search: Optional[str] = Query(None, max_length=100),
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    sort_by: str = "created_at",
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=leads_repo.MAX_PAGE_SIZE),
    user: AdminUser = Depends(get_current_user),
):
    statuses = [s.strip() for s in status.split(",") if s.strip()] if status else None
    async with get_db() as db:
        leads, total = await leads_repo.list_leads(
            db,
            statuses=statuses,
            owner_id=owner,
            lead_source=lead_source,
            search=search,
            date_from=date_from,
            date_to=date_to,
            sort_by=sort_by,
            sort_order=sort_order,
            page=page,
            limit=limit,
        )
    return {
        "status": "success",
        "data": {
            "leads": [lead.to_dict() for lead in leads],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": math.ceil(total / limit) if total else 0,
            },
        },
    }


@router.get("/leads/{lead_id}")
async def get_lead(lead_id: str, user: AdminUser = Depends(get_current_user)):
    _check_lead_id(lead_id)
    async with get_db() as db:
        lead = await leads_repo.get_lead(db, lead_id)
        if lead is None:
            raise LeadNotFoundError(f"Lead not found: {lead_id}")
        history = await history_repo.list_for_lead(db, lead_id)
    return {
        "status": "success",
        "data": {"lead": lead.to_dict(), "history": [entry.to_dict() for entry in history]},
    }


@router.post("/leads/{lead_id}/status")
async def update_lead_status(lead_id: str, body: StatusUpdateRequest, user: AdminUser = Depends(require_admin)):
    _check_lead_id(lead_id)
    async with get_db() as db:
        lead = await leads_repo.transition_status(
            db,
            lead_id,
            body.expected_version,
            body.status,
            user.actor_id,
            user.name or user.email,
            is_admin=True,
            notes=body.notes,
        )
        data = lead.to_dict()
    logger.info(f"Admin {user.email} set {lead_id} to {body.status}")
    return {"status": "success", "data": data}


@router.get("/stats")
async def stats(user: AdminUser = Depends(get_current_user)):
    async with get_db() as db:
        by_status = await leads_repo.count_by_status(db)
        by_source = await leads_repo.count_by_source(db)
        by_owner = await leads_repo.count_by_owner(db)
    return {
        "status": "success",
        "data": {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "by_lead_source": by_source,
            "by_owner": by_owner,
            "dead_letter": await dead_letter_queue.stats(),
        },
    }


@router.get("/campaigns")
async def list_campaigns(user: AdminUser = Depends(get_current_user)):
    """Delivered/opened/click totals and rates for every campaign seen."""
    async with get_db() as db:
        campaigns = await campaign_events_repo.campaign_stats(db)
    return {"status": "success", "data": {"campaigns": campaigns}}


@router.get("/campaigns/{campaign_id}/stats")
async def get_campaign_stats(campaign_id: str, user: AdminUser = Depends(get_current_user)):
    async with get_db() as db:
        campaigns = await campaign_events_repo.campaign_stats(db, campaign_id=campaign_id)
    if not campaigns:
        raise HTTPException(status_code=404, detail=f"No events for campaign {campaign_id}")
    return {"status": "success", "data": campaigns[0]}


@router.get("/campaigns/{campaign_id}/events")
async def list_campaign_events(
    campaign_id: str,
    event: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=leads_repo.MAX_PAGE_SIZE),
    user: AdminUser = Depends(get_current_user),
):
    if event is not None and event not in RECORDED_EVENTS:
        raise ValidationError(f"Unknown event {event!r}; expected one of: {', '.join(RECORDED_EVENTS)}")
    async with get_db() as db:
        events, total = await campaign_events_repo.list_events(
            db, campaign_id, event=event, page=page, limit=limit
        )
    return {
        "status": "success",
        "data": {
            "events": [e.to_dict() for e in events],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": math.ceil(total / limit) if total else 0,
            },
        },
    }


@router.get("/dead-letter")
async def list_dead_letter(limit: int = Query(50, ge=1, le=500), user: AdminUser = Depends(get_current_user)):
    events = await dead_letter_queue.list_events(limit)
    return {"status": "success", "data": {"events": [event.to_dict() for event in events]}}


@router.delete("/dead-letter/{event_id}")
async def delete_dead_letter(event_id: str, user: AdminUser = Depends(require_admin)):
    if not await dead_letter_queue.remove(event_id):
        raise HTTPException(status_code=404, detail="Dead-letter event not found")
    return {"status": "success", "message": f"Removed {event_id}"}


@router.post("/dead-letter/{event_id}/retry")
async def retry_dead_letter(
    event_id: str,
    background_tasks: BackgroundTasks,
    user: AdminUser = Depends(require_admin),
):
    """Replay a failed event. The entry is removed once the replay is accepted."""
    event = await dead_letter_queue.mark_retried(event_id)
    if event is None:
        raise HTTPException(status_code=404, detail="Dead-letter event not found")

    logger.info(f"Admin {user.email} retrying {event.type} event {event_id} (attempt {event.retry_count})")
    if event.type == "campaign_webhook":
        result = await ingest_campaign_event(
            parse_campaign_event(event.payload), event.payload, background_tasks.add_task
        )
        if result["status"] == "deferred":
            # Still failing: keep the original entry, drop the one just added
            await dead_letter_queue.remove(result["dead_letter_id"])
            return {"status": "deferred", "data": event.to_dict()}
    elif event.type in ("lead_persist", "chat_notification"):
        background_tasks.add_task(reprocess_lead, event.payload["lead_id"])
        result = {"status": "scheduled", "lead_id": event.payload["lead_id"]}
    elif event.type == "chat_postback":
        background_tasks.add_task(handle_postback, ChatInteraction(**event.payload))
        result = {"status": "scheduled"}
    else:
        raise ValidationError(f"Cannot retry events of type {event.type}")

    await dead_letter_queue.remove(event_id)
    return {"status": "success", "data": result}


@router.get("/sales-team")
async def list_sales_team(active_only: bool = False, user: AdminUser = Depends(get_current_user)):
    async with get_db() as db:
        members = await sales_team_repo.list_members(db, active_only=active_only)
    return {"status": "success", "data": {"members": [m.to_dict() for m in members]}}


@router.put("/sales-team/{chat_user_id}")
async def upsert_sales_team_member(
    chat_user_id: str,
    body: SalesTeamUpdateRequest,
    user: AdminUser = Depends(require_admin),
):
    async with get_db() as db:
        member = await sales_team_repo.upsert(db, chat_user_id, body.model_dump(exclude_none=True))
        data = member.to_dict()
    logger.info(f"Admin {user.email} updated sales team member {chat_user_id}")
    return {"status": "success", "data": data}
