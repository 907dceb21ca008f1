"""Inbound webhook payloads: campaign events and chat postbacks."""
import json
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union
from urllib.parse import parse_qsl, urlencode

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from errors import ValidationError
from utils.email_parser import is_valid_email, normalize_email, normalize_source
from utils.lead_id import is_valid_lead_uuid
from utils.phone import format_phone

CLICK_EVENT = "click"

# Events kept for campaign stats; anything else is acknowledged and dropped
RECORDED_EVENTS = ("delivered", "opened", CLICK_EVENT)

POSTBACK_ACTIONS = ("contacted", "closed", "lost", "unreachable")


class CampaignEvent(BaseModel):
    """Campaign provider webhook body. Contact attributes may sit at the top
    level or under ``contact`` and in either UPPER or lower case."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    event: str
    email: str
    id: Optional[Union[int, str]] = None
    date: Optional[str] = Field(default=None, validation_alias=AliasChoices("date", "date_event"))
    message_id: Optional[str] = Field(default=None, alias="message-id")
    subject: Optional[str] = None
    tag: Optional[str] = None
    link: Optional[str] = Field(default=None, validation_alias=AliasChoices("link", "URL"))
    contact_id: Optional[Union[int, str]] = None
    campaign_id: Optional[Union[int, str]] = Field(
        default=None, validation_alias=AliasChoices("campaign_id", "camp_id")
    )
    campaign_name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("campaign_name", "campaign name")
    )
    contact: Optional[Dict[str, Any]] = None

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        value = normalize_email(value)
        if not is_valid_email(value):
            raise ValueError("Invalid email format")
        return value

    @field_validator("event")
    @classmethod
    def _check_event(cls, value: str) -> str:
        value = value.strip().lower()
        if not value:
            raise ValueError("event is required")
        return value

    @property
    def is_click(self) -> bool:
        return self.event == CLICK_EVENT

    @property
    def is_recorded(self) -> bool:
        return self.event in RECORDED_EVENTS

    def attribute(self, *names: str) -> str:
        """First non-empty contact attribute among ``names`` (case-insensitive)."""
        sources = [self.contact or {}, self.model_extra or {}]
        for name in names:
            for source in sources:
                for key in (name.upper(), name.lower()):
                    value = source.get(key)
                    if value not in (None, ""):
                        return str(value).strip()
        return ""


def _parse_event_time(value: Optional[str]) -> datetime:
    if value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
        except ValueError:
            pass
    return datetime.now(timezone.utc)


def normalize_campaign_event(event: CampaignEvent) -> Dict[str, Any]:
    """Flatten a click event into Lead column values."""
    first = event.attribute("firstname")
    last = event.attribute("lastname")
    return {
        "email": event.email,
        "lead_source": normalize_source(event.attribute("lead_source")),
        "customer_name": f"{first} {last}".strip() or None,
        "phone": format_phone(event.attribute("phone", "sms")) or None,
        "company": event.attribute("company") or None,
        "job_title": event.attribute("job_title") or None,
        "city": event.attribute("city") or None,
        "website": event.attribute("website") or None,
        "source": "campaign",
        "campaign_id": str(event.campaign_id) if event.campaign_id is not None else None,
        "campaign_name": event.campaign_name,
        "email_subject": event.subject,
        "contact_id": str(event.contact_id) if event.contact_id is not None else None,
        "event_id": event.message_id or (str(event.id) if event.id is not None else None),
        "clicked_at": _parse_event_time(event.date),
    }


def normalize_event_record(event: CampaignEvent) -> Dict[str, Any]:
    """Flatten any campaign event into campaign_events column values."""
    return {
        "event_id": str(event.id) if event.id is not None else event.message_id,
        "event": event.event,
        "campaign_id": str(event.campaign_id) if event.campaign_id is not None else None,
        "campaign_name": event.campaign_name,
        "email": event.email,
        "url": event.link,
        "tag": event.tag,
        "event_at": _parse_event_time(event.date),
    }


@dataclass(frozen=True)
class PostbackData:
    action: str
    lead_id: Optional[str] = None
    row_id: Optional[int] = None


def parse_postback_data(data: str) -> PostbackData:
    """
    Parse ``action=<verb>&lead_id=<id>&row_id=<n>``.

    Unknown keys are ignored, a repeated key is an error, and at least one of
    lead_id / row_id is required. When both are given lead_id wins.

    Raises:
        ValidationError: the string does not follow the grammar.
    """
    if not data:
        raise ValidationError("Empty postback data")
    try:
        pairs = parse_qsl(data, keep_blank_values=True, strict_parsing=True)
    except ValueError:
        raise ValidationError(f"Malformed postback data: {data!r}")

    repeated = [key for key, count in Counter(key for key, _ in pairs).items() if count > 1]
    if repeated:
        raise ValidationError(f"Repeated postback keys: {', '.join(sorted(repeated))}")
    params = dict(pairs)

    action = params.get("action", "")
    if action not in POSTBACK_ACTIONS:
        raise ValidationError(f"Unknown postback action: {action!r}")

    lead_id = params.get("lead_id") or None
    if lead_id is not None and not is_valid_lead_uuid(lead_id):
        raise ValidationError(f"Invalid lead_id: {lead_id!r}")

    row_id = None
    raw_row = params.get("row_id")
    if raw_row:
        if not raw_row.isdigit() or int(raw_row) < 1:
            raise ValidationError(f"Invalid row_id: {raw_row!r}")
        row_id = int(raw_row)

    if lead_id is None and row_id is None:
        raise ValidationError("Postback needs lead_id or row_id")
    return PostbackData(action=action, lead_id=lead_id, row_id=row_id)


def build_postback_data(action: str, lead_id: str, row_id: Optional[int] = None) -> str:
    params = {"action": action, "lead_id": lead_id}
    if row_id:
        params["row_id"] = row_id
    return urlencode(params)


@dataclass(frozen=True)
class ChatInteraction:
    """One button press from the chat platform."""

    user_id: str
    user_name: str
    value: str
    response_url: Optional[str] = None


def parse_chat_interaction(payload: str) -> ChatInteraction:
    """Extract the pressed button from a Slack ``block_actions`` payload."""
    try:
        body = json.loads(payload)
    except (TypeError, ValueError):
        raise ValidationError("Interaction payload is not valid JSON")
    if not isinstance(body, dict):
        raise ValidationError("Interaction payload must be an object")

    user = body.get("user")
    actions = body.get("actions")
    if not isinstance(user, dict) or not isinstance(actions, list):
        raise ValidationError("Interaction payload is missing user or actions")
    if not user.get("id") or not actions or not isinstance(actions[0], dict):
        raise ValidationError("Interaction payload is missing user or actions")
    value = actions[0].get("value")
    if not value or not isinstance(value, str):
        raise ValidationError("Interaction action has no value")

    return ChatInteraction(
        user_id=user["id"],
        user_name=user.get("name") or user.get("username") or user["id"],
        value=value,
        response_url=body.get("response_url"),
    )
