import asyncio
from typing import Any, Dict, Mapping, Optional

import aiohttp
from loguru import logger
from slack_sdk.errors import SlackApiError
from slack_sdk.signature import SignatureVerifier
from slack_sdk.web.async_client import AsyncWebClient
from slack_sdk.webhook.async_client import AsyncWebhookClient

from errors import TransientInfrastructureError
from schemas.webhooks import build_postback_data
from tools.retry import CircuitBreaker, with_retry
from utils.phone import format_phone_display, tel_uri

STATUS_LABELS = {
    "new": "New",
    "contacted": "Contacted",
    "closed": "Closed (won)",
    "lost": "Lost",
    "unreachable": "Unreachable",
}


class SlackNotifier:
    """Slack integration for lead cards, postback replies and request signatures."""

    def __init__(self, token: Optional[str] = None, signing_secret: Optional[str] = None,
                 channel: str = "#sales-leads", timeout: float = 20.0,
                 retry_attempts: int = 3, retry_base_delay: float = 0.5,
                 breaker: Optional[CircuitBreaker] = None):
        self.token = token
        self.signing_secret = signing_secret
        self.default_channel = channel
        self.timeout = timeout
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self.breaker = breaker or CircuitBreaker("slack")
        self.enabled = True
        self._client: Optional[AsyncWebClient] = None

    def configure(self, settings) -> None:
        self.enabled = settings.chat_notifications_enabled
        self.token = settings.slack_bot_token
        self.signing_secret = settings.slack_signing_secret
        self.default_channel = settings.slack_sales_channel
        self.timeout = settings.http_timeout_seconds
        self.retry_attempts = settings.retry_attempts
        self.retry_base_delay = settings.retry_base_delay_seconds
        self.breaker = CircuitBreaker(
            "slack", threshold=settings.breaker_threshold, cooldown=settings.breaker_cooldown_seconds
        )
        self._client = None
        if not self.token:
            logger.warning("No Slack token provided, using mock mode")

    @property
    def client(self) -> AsyncWebClient:
        if self._client is None:
            self._client = AsyncWebClient(token=self.token, timeout=int(self.timeout))
        return self._client

    def verify_signature(self, body: bytes, headers: Mapping[str, str]) -> bool:
        """Check the X-Slack-Signature header against the raw request body."""
        if not self.signing_secret:
            return False
        return SignatureVerifier(self.signing_secret).is_valid_request(body, dict(headers))

    async def send_lead_notification(self, lead: Dict[str, Any], channel: Optional[str] = None) -> str:
        """
        Post a lead card with claim and outcome buttons.

        Args:
            lead: Lead row as a dict (see Lead.to_dict)
            channel: Slack channel (optional, uses default if not specified)

        Returns:
            Slack message timestamp

        Raises:
            TransientInfrastructureError: Slack could not be reached after retries
        """
        if not self.token:
            logger.info(f"Mock mode: would send Slack notification for {lead.get('id')}")
            return "mock_timestamp_123"

        target_channel = channel or self.default_channel
        message = self._build_lead_message(lead)

        async def post() -> str:
            try:
                response = await self.client.chat_postMessage(
                    channel=target_channel,
                    text=message["text"],
                    blocks=message["blocks"],
                )
            except SlackApiError as e:
                if e.response.status_code == 429 or e.response.status_code >= 500:
                    raise TransientInfrastructureError("slack", str(e)) from e
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
                raise TransientInfrastructureError("slack", str(e) or type(e).__name__) from e
            return response["ts"]

        message_ts = await self.breaker.call(
            lambda: with_retry(post, attempts=self.retry_attempts, base_delay=self.retry_base_delay,
                               operation="slack notification")
        )
        logger.info(f"Slack notification sent to {target_channel}: {message_ts}")
        return message_ts

    async def reply(self, response_url: Optional[str], text: str) -> bool:
        """Answer a button press in the conversation it came from."""
        if not response_url:
            logger.info(f"Mock mode: would reply to Slack interaction: {text}")
            return True
        try:
            response = await AsyncWebhookClient(response_url, timeout=int(self.timeout)).send(
                text=text, replace_original=False, response_type="ephemeral"
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            logger.error(f"Slack reply failed: {e}")
            return False
        if response.status_code != 200:
            logger.error(f"Slack reply rejected: {response.status_code} {response.body}")
            return False
        return True

    def _build_lead_message(self, lead: Dict[str, Any]) -> Dict[str, Any]:
        """Build Slack message for lead notification."""
        company = lead.get("company") or "Unknown"
        name = lead.get("customer_name") or "Unknown"
        confidence = lead.get("confidence")
        lead_id = lead.get("id", "")
        row_id = lead.get("row_number")

        text = f"New Lead: {name} from {company}"

        fields = [
            {"type": "mrkdwn", "text": f"*Name:*\n{name}"},
            {"type": "mrkdwn", "text": f"*Company:*\n{company}"},
            {"type": "mrkdwn", "text": f"*Email:*\n{lead.get('email', '')}"},
            {"type": "mrkdwn", "text": f"*Phone:*\n{self._phone_text(lead.get('phone'))}"},
            {"type": "mrkdwn", "text": f"*Industry:*\n{lead.get('industry') or 'Unknown'}"},
            {"type": "mrkdwn", "text": f"*Confidence:*\n{confidence if confidence is not None else '-'}%"},
        ]
        if lead.get("registered_capital"):
            fields.append({"type": "mrkdwn", "text": f"*Registered capital:*\n{lead['registered_capital']}"})
        if lead.get("province"):
            fields.append({"type": "mrkdwn", "text": f"*Province:*\n{lead['province']}"})

        blocks = [
            {"type": "header", "text": {"type": "plain_text", "text": f"New Lead: {company}"}},
            # Slack caps a section at 10 fields
            {"type": "section", "fields": fields[:10]},
        ]
        if lead.get("talking_point"):
            blocks.append({
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*Talking point:* {lead['talking_point']}"},
            })
        if lead.get("campaign_name"):
            blocks.append({
                "type": "context",
                "elements": [{"type": "mrkdwn", "text": f"Campaign: {lead['campaign_name']}"}],
            })

        blocks.append({
            "type": "actions",
            "elements": [
                self._button("Claim", "contacted", lead_id, row_id, style="primary"),
                self._button("Closed", "closed", lead_id, row_id),
                self._button("Lost", "lost", lead_id, row_id),
                self._button("Unreachable", "unreachable", lead_id, row_id, style="danger"),
            ],
        })
        return {"text": text, "blocks": blocks}

    @staticmethod
    def _button(label: str, action: str, lead_id: str, row_id: Optional[int], style: Optional[str] = None) -> dict:
        button = {
            "type": "button",
            "text": {"type": "plain_text", "text": label},
            "action_id": f"lead_{action}",
            "value": build_postback_data(action, lead_id, row_id),
        }
        if style:
            button["style"] = style
        return button

    @staticmethod
    def _phone_text(phone: Optional[str]) -> str:
        if not phone:
            return "-"
        return f"<{tel_uri(phone)}|{format_phone_display(phone)}>"


def format_reply(outcome: str, **context: Any) -> str:
    """Human-readable reply for a postback outcome."""
    company = context.get("company") or "this lead"
    if outcome == "claimed":
        return f"You claimed {company}. Good luck!"
    if outcome == "updated":
        return f"{company} marked as {STATUS_LABELS.get(context.get('status'), context.get('status'))}."
    if outcome == "already_claimed":
        return f"{company} was already claimed by {context.get('owner_name') or 'another salesperson'}."
    if outcome == "not_owner":
        return f"Only {context.get('owner_name') or 'the owner'} can update {company}."
    if outcome == "not_found":
        return "That lead could not be found."
    if outcome == "invalid_transition":
        return f"{company} is already {STATUS_LABELS.get(context.get('status'), context.get('status'))}; that update is not allowed."
    if outcome == "invalid":
        return "That button is no longer valid."
    return "Something went wrong, please try again."


# Global Slack notifier instance, configured by the app lifespan
slack_notifier = SlackNotifier()
