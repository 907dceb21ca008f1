"""Inbound webhooks: campaign events and chat-platform button presses."""
import hmac
import uuid
from typing import Any, Callable, Dict, Optional
from urllib.parse import parse_qs

from fastapi import APIRouter, BackgroundTasks, Header, HTTPException, Request
from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from config import get_settings
from db import get_db
from db.repositories import campaign_events as campaign_events_repo
from db.repositories import leads as leads_repo
from db.repositories import sales_team as sales_team_repo
from errors import (
    AuthenticationError,
    DuplicateLeadError,
    InvalidTransitionError,
    LeadNotFoundError,
    NotLeadOwnerError,
    RaceConditionError,
    TransientInfrastructureError,
    ValidationError,
)
from graph.workflow import process_lead
from schemas.webhooks import (
    CampaignEvent,
    ChatInteraction,
    normalize_campaign_event,
    normalize_event_record,
    parse_chat_interaction,
    parse_postback_data,
)
from tools.dead_letter import dead_letter_queue
from tools.processing_status import processing_status
from tools.retry import with_retry
from tools.slack import format_reply, slack_notifier
from utils.email_parser import build_dedup_key

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def parse_campaign_event(body: Any) -> CampaignEvent:
    if not isinstance(body, dict):
        raise ValidationError("Payload must be a JSON object")
    try:
        return CampaignEvent.model_validate(body)
    except PydanticValidationError as e:
        details = ", ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ValidationError(f"Invalid campaign payload: {details}")


async def ingest_click(event: CampaignEvent, body: Dict[str, Any], schedule: Callable[..., Any]) -> Dict[str, Any]:
    """
    Run the dedup gate for a click and schedule enrichment for a new lead.

    Args:
        event: Validated click event
        body: Raw payload, kept for the dead-letter list
        schedule: Called as schedule(process_lead, lead, correlation_id)

    Returns:
        Response body; status is "accepted", "duplicate" or "deferred"
    """
    fields = normalize_campaign_event(event)
    dedup_key = build_dedup_key(fields["email"], fields["lead_source"])
    settings = get_settings()

    async def create() -> Dict[str, Any]:
        async with get_db() as db:
            lead = await leads_repo.create_if_absent(db, fields)
            return lead.to_dict()

    try:
        lead = await with_retry(
            create,
            attempts=settings.retry_attempts,
            base_delay=settings.retry_base_delay_seconds,
            operation=f"dedup gate {dedup_key}",
        )
    except DuplicateLeadError:
        logger.info(f"Duplicate click ignored: {dedup_key}")
        return {"status": "duplicate", "message": "Lead already processed"}
    except TransientInfrastructureError as e:
        entry = await dead_letter_queue.add("campaign_webhook", body, e)
        return {"status": "deferred", "message": "Lead stored for retry", "dead_letter_id": entry.id}

    correlation_id = str(uuid.uuid4())
    processing_status.create(correlation_id, lead["email"], lead.get("company") or "")
    schedule(process_lead, lead, correlation_id)
    logger.info(f"Lead accepted: {lead['id']} ({dedup_key}), correlation {correlation_id}")
    return {"status": "accepted", "lead_id": lead["id"], "correlation_id": correlation_id}


async def ingest_campaign_event(
    event: CampaignEvent, body: Dict[str, Any], schedule: Callable[..., Any]
) -> Dict[str, Any]:
    """
    Record a delivered/opened/click event for campaign stats, then run a
    click through the dedup gate.

    Recording is idempotent on (event id, event), so a replayed payload
    neither double-counts nor creates a second lead.
    """
    if not event.is_recorded:
        logger.info(f"Ignoring {event.event} event for {event.email}")
        return {"status": "acknowledged", "message": f"Event '{event.event}' not processed"}

    settings = get_settings()
    values = normalize_event_record(event)

    async def record() -> bool:
        async with get_db() as db:
            return await campaign_events_repo.record_event(db, values)

    try:
        recorded = await with_retry(
            record,
            attempts=settings.retry_attempts,
            base_delay=settings.retry_base_delay_seconds,
            operation=f"record {event.event} event {values['event_id']}",
        )
    except TransientInfrastructureError as e:
        entry = await dead_letter_queue.add("campaign_webhook", body, e)
        return {"status": "deferred", "message": "Event stored for retry", "dead_letter_id": entry.id}

    if not event.is_click:
        return {"status": "acknowledged", "event": event.event, "recorded": recorded}
    return await ingest_click(event, body, schedule)


@router.post("/campaign")
async def campaign_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_webhook_secret: Optional[str] = Header(None),
):
    """
    Campaign provider webhook.

    Expected payload:
    {
        "event": "click",
        "email": "somchai@scg.com",
        "id": 991,
        "campaign_id": 12,
        "campaign_name": "Q3 Lubricants",
        "message-id": "<abc@smtp-relay>",
        "contact": {"FIRSTNAME": "Somchai", "LASTNAME": "J.", "COMPANY": "SCG", "PHONE": "+66 81-234-5678"}
    }

    Automation-contact payloads carry no ``event`` key and are only acknowledged.
    """
    secret = get_settings().campaign_webhook_secret
    if secret and not hmac.compare_digest(x_webhook_secret or "", secret):
        raise AuthenticationError("Invalid webhook secret")

    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Request body is not valid JSON")

    if isinstance(body, dict) and "event" not in body:
        logger.info(f"Automation contact webhook acknowledged for {body.get('email')}")
        return {"status": "acknowledged", "message": "Acknowledged"}

    event = parse_campaign_event(body)
    return await ingest_campaign_event(event, body, background_tasks.add_task)


@router.get("/campaign/status/{correlation_id}")
async def campaign_status(correlation_id: str):
    status = processing_status.get(correlation_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Unknown or expired correlation id")
    return {"status": "success", "data": status.to_dict()}


async def handle_postback(interaction: ChatInteraction) -> str:
    """Apply a button press to its lead and reply in the chat. Returns the outcome."""
    context: Dict[str, Any] = {}
    try:
        data = parse_postback_data(interaction.value)
    except ValidationError as e:
        logger.warning(f"Rejected postback from {interaction.user_id}: {e.message}")
        await slack_notifier.reply(interaction.response_url, format_reply("invalid"))
        return "invalid"

    try:
        async with get_db() as db:
            if data.lead_id:
                lead = await leads_repo.get_lead(db, data.lead_id)
            else:
                lead = await leads_repo.get_by_row_number(db, data.row_id)

            if lead is None:
                outcome = "not_found"
            else:
                member = await sales_team_repo.get_member(db, interaction.user_id)
                actor_name = member.name if member else interaction.user_name
                context = {"company": lead.company, "owner_name": lead.owner_name, "status": lead.status}
                try:
                    lead = await leads_repo.transition_status(
                        db,
                        lead.id,
                        lead.version,
                        data.action,
                        interaction.user_id,
                        actor_name,
                        is_admin=bool(member and member.is_admin),
                    )
                    context["status"] = lead.status
                    outcome = "claimed" if data.action == "contacted" else "updated"
                except RaceConditionError:
                    await db.refresh(lead)
                    context.update(owner_name=lead.owner_name, status=lead.status)
                    outcome = "already_claimed" if lead.owner_id else "error"
                except InvalidTransitionError:
                    if data.action == "contacted" and lead.owner_id:
                        outcome = "already_claimed"
                    else:
                        outcome = "invalid_transition"
                except NotLeadOwnerError:
                    outcome = "not_owner"
                except LeadNotFoundError:
                    outcome = "not_found"
    except Exception as e:
        logger.error(f"Postback processing failed for {interaction.user_id}: {e}")
        await dead_letter_queue.add(
            "chat_postback",
            {
                "user_id": interaction.user_id,
                "user_name": interaction.user_name,
                "value": interaction.value,
                "response_url": interaction.response_url,
            },
            e,
        )
        outcome = "error"

    logger.info(f"Postback {interaction.value} by {interaction.user_id}: {outcome}")
    await slack_notifier.reply(interaction.response_url, format_reply(outcome, **context))
    return outcome


@router.post("/chat")
async def chat_webhook(request: Request, background_tasks: BackgroundTasks):
    """Slack interactivity endpoint (form-encoded ``payload`` field)."""
    body = await request.body()
    if not get_settings().skip_chat_signature_verification:
        if not slack_notifier.verify_signature(body, request.headers):
            raise AuthenticationError("Invalid chat signature")

    try:
        form = parse_qs(body.decode("utf-8"))
    except UnicodeDecodeError:
        raise ValidationError("Request body is not valid UTF-8")
    payload = (form.get("payload") or [None])[0]
    if not payload:
        raise ValidationError("Missing interaction payload")

    interaction = parse_chat_interaction(payload)
    background_tasks.add_task(handle_postback, interaction)
    return {"status": "ok"}
