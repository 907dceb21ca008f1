import dataclasses
import json
import time
from unittest.mock import AsyncMock, patch
from urllib.parse import urlencode

import pytest
from slack_sdk.signature import SignatureVerifier
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from api.webhooks import handle_postback
from config import get_settings
from db import get_db
from db.repositories import campaign_events as campaign_events_repo
from db.repositories import leads as leads_repo
from db.repositories import sales_team as sales_team_repo
from errors import TransientInfrastructureError
from schemas.webhooks import ChatInteraction
from tools.dead_letter import dead_letter_queue
from tools.llm import CompanyAnalysis
from tools.slack import slack_notifier
from utils.lead_id import generate_lead_uuid

pytestmark = pytest.mark.usefixtures("services")


def click_event(**overrides):
    event = {
        "event": "click",
        "email": "somchai@scg.com",
        "id": 991,
        "date": "2024-06-01T09:30:00Z",
        "message-id": "<abc@relay>",
        "subject": "Q3 Lubricants",
        "campaign_id": 12,
        "campaign_name": "Q3 Lubricants",
        "contact": {"FIRSTNAME": "Somchai", "LASTNAME": "Jaidee", "COMPANY": "SCG Cement", "PHONE": "+66 81-234-5678"},
    }
    event.update(overrides)
    return event


async def all_leads():
    async with get_db() as db:
        leads, _ = await leads_repo.list_leads(db)
        return [lead.to_dict() for lead in leads]


async def campaign_stats():
    async with get_db() as db:
        return await campaign_events_repo.campaign_stats(db)


async def create_lead(**fields):
    values = {"email": "somchai@scg.com", "lead_source": "campaign", "company": "SCG Cement"}
    values.update(fields)
    async with get_db() as db:
        lead = await leads_repo.create_if_absent(db, values)
        return lead.to_dict()


def signed_chat_request(value, user_id="U123", user_name="somsak", secret="test-signing-secret"):
    payload = json.dumps({
        "type": "block_actions",
        "user": {"id": user_id, "username": user_name},
        "actions": [{"action_id": "lead_button", "value": value}],
    })
    body = urlencode({"payload": payload})
    timestamp = str(int(time.time()))
    headers = {
        "Content-Type": "application/x-www-form-urlencoded",
        "X-Slack-Request-Timestamp": timestamp,
        "X-Slack-Signature": SignatureVerifier(secret).generate_signature(timestamp=timestamp, body=body),
    }
    return body, headers


class TestCampaignWebhook:
    """Test click intake, dedup and background processing end to end."""

    async def test_click_creates_and_processes_one_lead(self, client):
        analysis = CompanyAnalysis(industry="Construction", sector_code="23951")
        with patch("graph.nodes.enrich.analyze_company", AsyncMock(return_value=analysis)) as mock_analyze, \
             patch.object(slack_notifier, "send_lead_notification", AsyncMock(return_value="1712.0001")) as mock_send:
            response = await client.post("/webhooks/campaign", json=click_event())

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "accepted"
        assert data["lead_id"].startswith("lead_")

        leads = await all_leads()
        assert len(leads) == 1
        assert leads[0]["id"] == data["lead_id"]
        assert leads[0]["status"] == "new"
        assert leads[0]["version"] == 1
        assert leads[0]["lead_source"] == "unknown"
        assert leads[0]["phone"] == "0812345678"
        assert leads[0]["industry"] == "Construction"
        assert leads[0]["confidence"] is not None
        mock_analyze.assert_awaited_once()
        mock_send.assert_awaited_once()

        status = await client.get(f"/webhooks/campaign/status/{data['correlation_id']}")
        assert status.status_code == 200
        assert status.json()["data"]["status"] == "completed"
        assert status.json()["data"]["lead_id"] == data["lead_id"]

    async def test_replayed_click_is_a_duplicate(self, client):
        with patch("graph.nodes.enrich.analyze_company", AsyncMock(return_value=CompanyAnalysis())) as mock_analyze, \
             patch.object(slack_notifier, "send_lead_notification", AsyncMock(return_value="ts")) as mock_send:
            first = await client.post("/webhooks/campaign", json=click_event())
            second = await client.post("/webhooks/campaign", json=click_event(email="SOMCHAI@scg.com"))

        assert first.json()["status"] == "accepted"
        assert second.status_code == 200
        assert second.json()["status"] == "duplicate"
        assert len(await all_leads()) == 1
        assert mock_analyze.await_count == 1
        assert mock_send.await_count == 1

    async def test_other_lead_source_is_a_new_lead(self, client):
        await client.post("/webhooks/campaign", json=click_event())
        contact = {**click_event()["contact"], "LEAD_SOURCE": "trade-show"}
        response = await client.post("/webhooks/campaign", json=click_event(contact=contact))
        assert response.json()["status"] == "accepted"
        assert len(await all_leads()) == 2

    async def test_non_click_is_acknowledged(self, client):
        response = await client.post("/webhooks/campaign", json=click_event(event="opened"))
        assert response.status_code == 200
        assert response.json()["status"] == "acknowledged"
        assert await all_leads() == []

    @pytest.mark.parametrize(
        "body",
        [
            json.dumps({"event": "click"}),
            json.dumps({"event": "click", "email": "not-an-email"}),
            json.dumps(["click"]),
            "{not json",
        ],
    )
    async def test_bad_payload(self, client, body):
        response = await client.post(
            "/webhooks/campaign", content=body, headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"
        assert await all_leads() == []

    async def test_webhook_secret(self, client):
        settings = dataclasses.replace(get_settings(), campaign_webhook_secret="s3cret")
        with patch("api.webhooks.get_settings", return_value=settings):
            rejected = await client.post("/webhooks/campaign", json=click_event())
            accepted = await client.post(
                "/webhooks/campaign", json=click_event(), headers={"X-Webhook-Secret": "s3cret"}
            )

        assert rejected.status_code == 401
        assert accepted.json()["status"] == "accepted"

    async def test_webhook_secret_is_checked_before_the_body(self, client):
        settings = dataclasses.replace(get_settings(), campaign_webhook_secret="s3cret")
        with patch("api.webhooks.get_settings", return_value=settings):
            opened = await client.post("/webhooks/campaign", json=click_event(event="opened"))
            malformed = await client.post("/webhooks/campaign", json={"event": "click"})
            automation = await client.post("/webhooks/campaign", json={"email": "a@scg.com"})

        assert [r.status_code for r in (opened, malformed, automation)] == [401, 401, 401]
        assert await campaign_stats() == []

    async def test_automation_contact_is_acknowledged(self, client):
        response = await client.post(
            "/webhooks/campaign", json={"email": "somchai@scg.com", "attributes": {"FIRSTNAME": "Somchai"}}
        )
        assert response.status_code == 200
        assert response.json() == {"status": "acknowledged", "message": "Acknowledged"}
        assert await all_leads() == []
        assert await campaign_stats() == []

    async def test_campaign_events_are_counted_once(self, client):
        for event_id, event, email in [
            (1, "delivered", "a@scg.com"),
            (2, "delivered", "b@scg.com"),
            (3, "opened", "a@scg.com"),
            (3, "opened", "a@scg.com"),
            (4, "opened", "a@scg.com"),
            (5, "hard_bounce", "b@scg.com"),
        ]:
            response = await client.post(
                "/webhooks/campaign", json=click_event(id=event_id, event=event, email=email)
            )
            assert response.status_code == 200
            assert response.json()["status"] == "acknowledged"

        [stats] = await campaign_stats()
        assert stats["campaign_id"] == "12"
        assert stats["campaign_name"] == "Q3 Lubricants"
        assert (stats["delivered"], stats["opened"], stats["unique_opens"], stats["clicked"]) == (2, 2, 1, 0)
        assert stats["open_rate"] == 50.0
        assert await all_leads() == []

    async def test_click_is_recorded_and_creates_a_lead(self, client):
        with patch.object(slack_notifier, "send_lead_notification", AsyncMock(return_value="ts")):
            await client.post("/webhooks/campaign", json=click_event(id=7))
            replay = await client.post("/webhooks/campaign", json=click_event(id=7))

        assert replay.json()["status"] == "duplicate"
        [stats] = await campaign_stats()
        assert (stats["clicked"], stats["unique_clicks"]) == (1, 1)
        assert len(await all_leads()) == 1

    async def test_database_outage_is_dead_lettered(self, client):
        outage = AsyncMock(side_effect=TransientInfrastructureError("database", "connection refused"))
        with patch("api.webhooks.leads_repo.create_if_absent", outage):
            response = await client.post("/webhooks/campaign", json=click_event())

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "deferred"
        assert outage.await_count == 2

        events = await dead_letter_queue.list_events()
        assert [e.id for e in events] == [data["dead_letter_id"]]
        assert events[0].type == "campaign_webhook"
        assert events[0].payload["email"] == "somchai@scg.com"
        assert await all_leads() == []

    async def test_commit_failure_is_retried_then_dead_lettered(self, client):
        lost = AsyncMock(side_effect=OperationalError("COMMIT", {}, Exception("connection lost")))
        with patch.object(AsyncSession, "commit", lost):
            response = await client.post("/webhooks/campaign", json=click_event())

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "deferred"
        assert lost.await_count == 2
        events = await dead_letter_queue.list_events()
        assert [(e.type, e.error_code) for e in events] == [("campaign_webhook", "SERVICE_UNAVAILABLE")]
        assert await all_leads() == []

    async def test_unknown_correlation_id(self, client):
        response = await client.get("/webhooks/campaign/status/nope")
        assert response.status_code == 404

    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["dead_letter"] == "memory"
        assert {c["service"]: c["state"] for c in data["circuits"]} == {
            "openai": "closed",
            "registry": "closed",
            "slack": "closed",
        }


class TestChatWebhook:
    """Test signed button presses from the chat platform."""

    async def test_signed_claim(self, client):
        lead = await create_lead()
        body, headers = signed_chat_request(f"action=contacted&lead_id={lead['id']}")

        response = await client.post("/webhooks/chat", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}
        stored = (await all_leads())[0]
        assert stored["status"] == "contacted"
        assert stored["owner_id"] == "U123"
        assert stored["owner_name"] == "somsak"
        assert stored["version"] == 2

    async def test_bad_signature_is_rejected(self, client):
        lead = await create_lead()
        body, headers = signed_chat_request(f"action=contacted&lead_id={lead['id']}", secret="wrong")

        response = await client.post("/webhooks/chat", content=body, headers=headers)

        assert response.status_code == 401
        assert response.json()["code"] == "UNAUTHORIZED"
        assert (await all_leads())[0]["status"] == "new"

    @pytest.mark.parametrize(
        "payload",
        [
            {"user": "U123", "actions": [{"value": "action=contacted&row_id=1"}]},
            {"user": {"id": "U123"}, "actions": {"value": "action=contacted&row_id=1"}},
        ],
    )
    async def test_malformed_interaction_is_rejected(self, client, payload):
        body = urlencode({"payload": json.dumps(payload)})
        timestamp = str(int(time.time()))
        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "X-Slack-Request-Timestamp": timestamp,
            "X-Slack-Signature": SignatureVerifier("test-signing-secret").generate_signature(
                timestamp=timestamp, body=body
            ),
        }
        response = await client.post("/webhooks/chat", content=body, headers=headers)
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    async def test_missing_payload(self, client):
        body = "foo=bar"
        timestamp = str(int(time.time()))
        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "X-Slack-Request-Timestamp": timestamp,
            "X-Slack-Signature": SignatureVerifier("test-signing-secret").generate_signature(
                timestamp=timestamp, body=body
            ),
        }
        response = await client.post("/webhooks/chat", content=body, headers=headers)
        assert response.status_code == 400


class TestHandlePostback:
    """Test postback outcomes and the replies sent back to the chat."""

    def setup_method(self):
        self.reply = AsyncMock(return_value=True)

    def press(self, value, user_id="U1", user_name="Somsak"):
        return ChatInteraction(user_id=user_id, user_name=user_name, value=value, response_url="https://hooks.example/r")

    async def test_claim_then_second_claim(self):
        lead = await create_lead()
        with patch.object(slack_notifier, "reply", self.reply):
            first = await handle_postback(self.press(f"action=contacted&lead_id={lead['id']}"))
            second = await handle_postback(self.press(f"action=contacted&lead_id={lead['id']}", user_id="U2"))

        assert first == "claimed"
        assert second == "already_claimed"
        assert "already claimed by Somsak" in self.reply.await_args.args[1]

    async def test_owner_closes_by_row_id(self):
        await create_lead(row_number=42)
        with patch.object(slack_notifier, "reply", self.reply):
            assert await handle_postback(self.press("action=contacted&row_id=42")) == "claimed"
            assert await handle_postback(self.press("action=closed&row_id=42")) == "updated"

        stored = (await all_leads())[0]
        assert stored["status"] == "closed"
        assert stored["version"] == 3

    async def test_non_owner_cannot_update(self):
        lead = await create_lead()
        with patch.object(slack_notifier, "reply", self.reply):
            await handle_postback(self.press(f"action=contacted&lead_id={lead['id']}"))
            outcome = await handle_postback(self.press(f"action=lost&lead_id={lead['id']}", user_id="U2"))

        assert outcome == "not_owner"
        assert (await all_leads())[0]["status"] == "contacted"

    async def test_roster_admin_can_update_any_lead(self):
        lead = await create_lead()
        async with get_db() as db:
            await sales_team_repo.upsert(db, "UADMIN", {"name": "Manager", "role": "admin"})
        with patch.object(slack_notifier, "reply", self.reply):
            await handle_postback(self.press(f"action=contacted&lead_id={lead['id']}"))
            outcome = await handle_postback(self.press(f"action=unreachable&lead_id={lead['id']}", user_id="UADMIN"))

        assert outcome == "updated"
        assert (await all_leads())[0]["status"] == "unreachable"

    async def test_invalid_transition(self):
        lead = await create_lead()
        with patch.object(slack_notifier, "reply", self.reply):
            outcome = await handle_postback(self.press(f"action=closed&lead_id={lead['id']}"))
        assert outcome == "invalid_transition"
        assert (await all_leads())[0]["version"] == 1

    async def test_unknown_lead(self):
        with patch.object(slack_notifier, "reply", self.reply):
            assert await handle_postback(self.press(f"action=contacted&lead_id={generate_lead_uuid()}")) == "not_found"
            assert await handle_postback(self.press("action=contacted&row_id=999")) == "not_found"

    async def test_malformed_data(self):
        with patch.object(slack_notifier, "reply", self.reply):
            outcome = await handle_postback(self.press("action=contacted&action=closed&row_id=1"))
        assert outcome == "invalid"
        self.reply.assert_awaited_once()

    async def test_database_failure_is_dead_lettered(self):
        outage = AsyncMock(side_effect=TransientInfrastructureError("database", "timeout"))
        with patch.object(slack_notifier, "reply", self.reply), \
             patch("api.webhooks.leads_repo.get_by_row_number", outage):
            outcome = await handle_postback(self.press("action=contacted&row_id=5"))

        assert outcome == "error"
        events = await dead_letter_queue.list_events()
        assert events[0].type == "chat_postback"
        assert events[0].payload["value"] == "action=contacted&row_id=5"
